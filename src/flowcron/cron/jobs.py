"""Job store: durable persistence of job definitions.

The whole set of JobDefinitions lives in one JSON file (an array of
``{workflowId, engine, schedule, inputPayload}`` objects). Every change
rewrites the file completely; writes go to a temp file that is then
atomically renamed over the record, so readers never see a partial file.
Entries that do not validate are skipped on read but kept on rewrite.

Read and write failures never raise: they are logged and reported as an
empty result or a ``False`` return value. The most recent failure is kept
in ``last_error``.
"""

from __future__ import annotations

import contextlib
import json
import os
import tempfile
import threading
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from flowcron.core.errors import PersistenceError, PersistenceReadError, PersistenceWriteError
from flowcron.models import JobDefinition
from flowcron.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_JOBS_FILE = Path("data") / "cron-jobs.json"


class JobStore:
    """Loads and saves JobDefinitions from a JSON file.

    Attributes:
        path: Path of the durable record.
        last_error: Most recent read/write failure, or None.
    """

    def __init__(self, path: Path | str = DEFAULT_JOBS_FILE) -> None:
        """Initialises the JobStore.

        Args:
            path: Path of the JSON record. Does not need to exist yet.
        """
        self.path = Path(path)
        self.last_error: PersistenceError | None = None
        # Serializes read-modify-write cycles within this process
        self._lock = threading.RLock()

    def exists(self) -> bool:
        """True if the durable record exists on disk."""
        return self.path.exists()

    def load_all(self) -> list[JobDefinition]:
        """Reads all job definitions.

        A missing file is a normal first run and yields an empty list. An
        unreadable or corrupt file is logged and also yields an empty list.
        Entries that fail validation are skipped.

        Returns:
            Job definitions in file order.
        """
        jobs: list[JobDefinition] = []
        for index, entry in enumerate(self._read_entries()):
            try:
                jobs.append(JobDefinition.model_validate(entry))
            except ValidationError as exc:
                log.warning(
                    "job_record_invalid",
                    path=str(self.path),
                    index=index,
                    error=str(exc),
                )
        return jobs

    def save_all(self, jobs: Iterable[JobDefinition]) -> bool:
        """Replaces the durable record with exactly ``jobs``.

        Args:
            jobs: Complete set of definitions to persist.

        Returns:
            True on success, False if the write failed.
        """
        return self._write(jobs)

    def upsert(self, definition: JobDefinition) -> bool:
        """Replaces the record with the same key, or appends a new one.

        Entries that do not validate are written back unchanged.

        Returns:
            True if the record was written.
        """
        key = definition.key
        with self._lock:
            entries = [e for e in self._read_entries() if _entry_key(e) != key]
            entries.append(definition)
            return self._write(entries)

    def remove(self, key: str) -> bool:
        """Removes the record for ``key``.

        An unknown key leaves the file untouched.

        Returns:
            False only if a required write failed.
        """
        with self._lock:
            existing = self._read_entries()
            remaining = [e for e in existing if _entry_key(e) != key]
            if len(remaining) == len(existing):
                return True
            return self._write(remaining)

    def get(self, key: str) -> JobDefinition | None:
        """Returns the persisted definition for ``key``, if any."""
        for job in self.load_all():
            if job.key == key:
                return job
        return None

    def _read_entries(self) -> list[Any]:
        """Raw array entries of the record ([] if missing or unreadable)."""
        if not self.path.exists():
            return []

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            self._report(PersistenceReadError(f"Cannot read job record: {exc}", path=self.path))
            return []

        if not isinstance(raw, list):
            self._report(
                PersistenceReadError(
                    f"Job record must be a JSON array, got {type(raw).__name__}",
                    path=self.path,
                )
            )
            return []
        return raw

    def _write(self, entries: Iterable[JobDefinition | Any]) -> bool:
        tmp_name: str | None = None
        try:
            records = [e.to_record() if isinstance(e, JobDefinition) else e for e in entries]
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(records, fh, indent=2, ensure_ascii=False)
                fh.write("\n")
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.path)  # Atomic on POSIX and Windows
        except (OSError, TypeError, ValueError) as exc:
            # PydanticSerializationError is a ValueError
            if tmp_name is not None:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_name)
            self._report(PersistenceWriteError(f"Cannot write job record: {exc}", path=self.path))
            return False

        self.last_error = None
        log.debug("job_record_saved", path=str(self.path), count=len(records))
        return True

    def _report(self, error: PersistenceError) -> None:
        self.last_error = error
        log.error(
            "job_record_error",
            path=str(self.path),
            error_code=error.error_code,
            error=str(error),
        )


def _entry_key(entry: Any) -> str | None:
    """Job key of a raw record entry, None if it does not validate."""
    try:
        return JobDefinition.model_validate(entry).key
    except ValidationError:
        return None
