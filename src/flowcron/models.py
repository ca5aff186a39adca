"""
flowcron · Data models.

Design principles:
  - Immutable (frozen): a job is only ever replaced as a whole
  - camelCase on disk, snake_case in Python
  - JSON-serializable (persistence, dispatcher payloads)
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# ============================================================================
# Job key
# ============================================================================

KEY_SEPARATOR = ":"


def _escape_engine(engine: str) -> str:
    """Escapes the separator inside the engine tag.

    The escaped engine never contains ``:``, so the first separator of a key
    always ends the engine part and keys of distinct pairs cannot collide.
    """
    return engine.replace("%", "%25").replace(KEY_SEPARATOR, "%3A")


def job_key(workflow_id: str, engine: str) -> str:
    """Registry and storage identity of a job.

    Args:
        workflow_id: ID of the target workflow.
        engine: Downstream engine tag (e.g. ``"n8n"``).

    Returns:
        ``"<engine>:<workflow_id>"``, e.g. ``"n8n:wf-1"``.
    """
    return f"{_escape_engine(engine)}{KEY_SEPARATOR}{workflow_id}"


# ============================================================================
# Job definition
# ============================================================================


class JobDefinition(BaseModel):
    """A recurring workflow trigger.

    ``(engine, workflow_id)`` is the natural key. ``input_payload`` is opaque
    and handed to the dispatcher unchanged.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    workflow_id: str = Field(alias="workflowId")
    engine: str
    schedule: str  # Five-field cron expression
    input_payload: Any = Field(default=None, alias="inputPayload")

    @property
    def key(self) -> str:
        """Job key for this definition."""
        return job_key(self.workflow_id, self.engine)

    def to_record(self) -> dict[str, Any]:
        """Serializes to the on-disk record shape (camelCase)."""
        return self.model_dump(by_alias=True, mode="json")
