"""Inbound trigger events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


@dataclass(frozen=True)
class TriggerEvent:
    """Something a recipient did (signed up, opened, purchased...).

    Ephemeral: only its dedupe key outlives it, on the instance it creates.
    """

    recipient_id: str
    event_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    event_id: str | None = None
    """Producer-assigned id; duplicate deliveries share it."""
