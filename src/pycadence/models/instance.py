"""Workflow instances: one recipient's progress through a workflow graph."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pycadence.models.status import InstanceStatus


class InstanceCreation(Enum):
    """Result of an atomic instance creation."""

    CREATED = "CREATED"
    DUPLICATE = "DUPLICATE"
    """An instance with the same dedupe key already exists."""
    CAPPED = "CAPPED"
    """The frequency cap for this recipient and workflow is reached."""

    def __str__(self) -> str:
        return self.value


@dataclass
class WorkflowInstance:
    """Durable cursor of one recipient in one workflow.

    No timer is held in memory while waiting: a WAITING instance is
    reclaimed by any clock once resume_at has passed.
    """

    instance_id: str
    """Unique instance identifier (UUIDv7)."""

    workflow_id: str
    recipient_id: str

    cursor: str
    """Id of the node to execute next."""

    status: InstanceStatus = InstanceStatus.ACTIVE

    resume_at: datetime | None = None
    """Set iff WAITING."""

    waiting_on: str | None = None
    """Delay node whose timer is running; the next visit moves past it."""

    attempts: int = 0
    """Failed attempts at the current action node."""

    context: dict[str, Any] = field(default_factory=dict)
    """Trigger event data: {"event_type": ..., "payload": {...}}."""

    dedupe_key: str | None = None
    run_id: str | None = None
    """Enrollment run for DRIP instances."""

    claimed_by: str | None = None
    claimed_at: datetime | None = None
    last_error: str | None = None
    revision: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def event_type(self) -> str | None:
        return self.context.get("event_type")

    @property
    def payload(self) -> dict[str, Any]:
        return self.context.get("payload") or {}

    def __repr__(self) -> str:
        return (
            f"WorkflowInstance(instance_id={self.instance_id!r}, workflow_id={self.workflow_id!r}, "
            f"recipient_id={self.recipient_id!r}, cursor={self.cursor!r}, status={self.status}, "
            f"revision={self.revision})"
        )
