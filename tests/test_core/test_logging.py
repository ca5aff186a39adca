"""
Tests for flowcron.utils.logging.

Covers:
  - Setup with different configurations
  - JSON file output
  - Context binding
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import structlog

from flowcron.utils.logging import (
    LOG_FILE_NAME,
    bind_context,
    clear_context,
    get_logger,
    setup_logging,
    unbind_context,
)

if TYPE_CHECKING:
    from pathlib import Path


class TestLoggingSetup:
    def test_default_setup(self) -> None:
        setup_logging(level="INFO", console=True)
        get_logger("test").info("test_event", key="value")

    def test_json_mode(self) -> None:
        setup_logging(level="INFO", json_logs=True, console=True)
        get_logger("test.json").info("json_test", number=42)

    def test_file_logging(self, tmp_path: Path) -> None:
        log_dir = tmp_path / "logs"
        setup_logging(level="DEBUG", log_dir=log_dir, json_logs=True, console=False)

        get_logger("test.file").info("file_event", job_key="n8n:wf-1")

        lines = (log_dir / LOG_FILE_NAME).read_text(encoding="utf-8").splitlines()
        record = json.loads(lines[-1])
        assert record["event"] == "file_event"
        assert record["job_key"] == "n8n:wf-1"


    def test_file_gets_json_and_debug_with_console_renderer(self, tmp_path: Path) -> None:
        log_dir = tmp_path / "logs"
        setup_logging(level="WARNING", log_dir=log_dir, json_logs=False, console=True)

        get_logger("test.file.debug").debug("debug_event", attempt=1)

        lines = (log_dir / LOG_FILE_NAME).read_text(encoding="utf-8").splitlines()
        record = json.loads(lines[-1])
        assert record["event"] == "debug_event"
        assert record["level"] == "debug"
        assert record["attempt"] == 1


class TestContextBinding:
    def test_bind_and_unbind(self) -> None:
        clear_context()
        bind_context(job_key="n8n:wf-1", run="manual")
        assert structlog.contextvars.get_contextvars() == {"job_key": "n8n:wf-1", "run": "manual"}

        unbind_context("job_key")
        assert structlog.contextvars.get_contextvars() == {"run": "manual"}

        clear_context()
        assert structlog.contextvars.get_contextvars() == {}
