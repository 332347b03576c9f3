"""Event trigger matcher.

Turns inbound TriggerEvents into workflow instances. For every active
workflow whose trigger listens for the event type:

    1. timing window   - the event must fall inside the trigger's hours/days
    2. suppression     - suppressed recipients never enter a workflow
    3. condition       - the trigger predicate must hold for the event
    4. create          - atomically, subject to the dedupe key and the
                         trigger's frequency cap

Step 4 is a single store operation, so two matchers racing on the same
duplicate delivery create exactly one instance.

The created instance starts on the node after the trigger: WAITING until
occurred_at + offset when the trigger has an offset, otherwise ACTIVE and
unclaimed so the next clock tick picks it up.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum

import xxhash
from uuid_extensions import uuid7

from pycadence.dispatch.interfaces import RecipientDirectory
from pycadence.errors import RecipientResolutionError
from pycadence.models import (
    DEFAULT_EXCLUDED_STATUSES,
    EvaluationScope,
    InstanceCreation,
    InstanceStatus,
    TriggerEvent,
    WorkflowDefinition,
    WorkflowInstance,
)
from pycadence.storage.base import CampaignStore

logger = logging.getLogger(__name__)


class MatchOutcome(Enum):
    CREATED = "CREATED"
    DUPLICATE = "DUPLICATE"
    CAPPED = "CAPPED"
    CONDITION_FAILED = "CONDITION_FAILED"
    OUTSIDE_WINDOW = "OUTSIDE_WINDOW"
    SUPPRESSED = "SUPPRESSED"

    def __str__(self) -> str:
        return self.value


_CREATION_OUTCOMES = {
    InstanceCreation.CREATED: MatchOutcome.CREATED,
    InstanceCreation.DUPLICATE: MatchOutcome.DUPLICATE,
    InstanceCreation.CAPPED: MatchOutcome.CAPPED,
}


@dataclass(frozen=True)
class MatchResult:
    """What happened to one event for one workflow."""

    workflow_id: str
    outcome: MatchOutcome
    instance_id: str | None = None
    """Set when outcome is CREATED."""


class EventTriggerMatcher:
    """Matches events against active workflow triggers.

    Usage:
        matcher = EventTriggerMatcher(store, directory).with_dedupe_window(timedelta(minutes=10))
        results = await matcher.submit(TriggerEvent("r-1", "signup", {"country": "US"}))
    """

    def __init__(self, store: CampaignStore, directory: RecipientDirectory | None = None):
        """
        Args:
            store: Campaign store holding workflows and instances
            directory: When given, suppressed recipients are filtered out
                and their attributes are visible to trigger conditions
        """
        self._store = store
        self._directory = directory
        self._dedupe_window = timedelta(minutes=5)
        self._exclude_statuses: tuple[str, ...] = DEFAULT_EXCLUDED_STATUSES

    def with_dedupe_window(self, window: timedelta) -> EventTriggerMatcher:
        """Events without an event_id dedupe on (recipient, type, window bucket)."""
        if window <= timedelta(0):
            raise ValueError("dedupe window must be positive")
        self._dedupe_window = window
        return self

    def with_exclude_statuses(self, statuses: tuple[str, ...]) -> EventTriggerMatcher:
        self._exclude_statuses = tuple(statuses)
        return self

    async def submit(self, event: TriggerEvent, now: datetime | None = None) -> list[MatchResult]:
        """Match one event against every active workflow.

        Returns:
            One MatchResult per workflow listening for event.event_type

        Raises:
            RecipientResolutionError: If the directory lookup fails
            PersistenceError: If the store fails
        """
        now = now or datetime.now(UTC)
        workflows = await self._store.list_active_workflows(event.event_type)
        if not workflows:
            logger.debug(f"No active workflow listens for {event.event_type!r}")
            return []

        attributes: dict | None = None
        suppressed = False
        if self._directory is not None:
            try:
                recipient = await self._directory.lookup(
                    event.recipient_id, self._exclude_statuses
                )
            except RecipientResolutionError:
                raise
            except Exception as e:
                raise RecipientResolutionError(
                    f"Could not look up recipient {event.recipient_id}: {e}"
                ) from e
            suppressed = recipient is None
            attributes = recipient.attributes if recipient is not None else {}

        results = []
        for workflow in workflows:
            result = await self._match(workflow, event, now, suppressed, attributes or {})
            logger.debug(
                f"Event {event.event_type!r} for {event.recipient_id} -> "
                f"{workflow.workflow_id}: {result.outcome}"
            )
            results.append(result)
        return results

    async def _match(
        self,
        workflow: WorkflowDefinition,
        event: TriggerEvent,
        now: datetime,
        suppressed: bool,
        attributes: dict,
    ) -> MatchResult:
        trigger = workflow.trigger

        if trigger.timing is not None and not trigger.timing.allows(event.occurred_at):
            return MatchResult(workflow.workflow_id, MatchOutcome.OUTSIDE_WINDOW)
        if suppressed:
            return MatchResult(workflow.workflow_id, MatchOutcome.SUPPRESSED)
        if trigger.condition is not None:
            scope = EvaluationScope(
                event_type=event.event_type, payload=event.payload, attributes=attributes
            )
            if not trigger.condition.evaluate(scope):
                return MatchResult(workflow.workflow_id, MatchOutcome.CONDITION_FAILED)

        instance = WorkflowInstance(
            instance_id=str(uuid7()),
            workflow_id=workflow.workflow_id,
            recipient_id=event.recipient_id,
            cursor=workflow.entry_node_id(),
            context={"event_type": event.event_type, "payload": dict(event.payload)},
            dedupe_key=self.dedupe_key(workflow.workflow_id, event),
            created_at=now,
            updated_at=now,
        )
        if trigger.offset > timedelta(0):
            instance.status = InstanceStatus.WAITING
            instance.resume_at = event.occurred_at + trigger.offset

        created = await self._store.create_instance(instance, trigger.frequency_cap)
        outcome = _CREATION_OUTCOMES[created]
        if outcome is MatchOutcome.CREATED:
            logger.info(
                f"Started workflow {workflow.workflow_id} for {event.recipient_id} "
                f"(instance {instance.instance_id})"
            )
            return MatchResult(workflow.workflow_id, outcome, instance.instance_id)
        return MatchResult(workflow.workflow_id, outcome)

    def dedupe_key(self, workflow_id: str, event: TriggerEvent) -> str:
        """Key shared by every delivery of the same event to the same workflow."""
        if event.event_id is not None:
            raw = f"{workflow_id}|evt|{event.event_id}"
        else:
            window = int(self._dedupe_window.total_seconds())
            bucket = int(event.occurred_at.timestamp()) // window
            raw = f"{workflow_id}|{event.recipient_id}|{event.event_type}|{bucket}"
        return xxhash.xxh64_hexdigest(raw.encode("utf-8"))


__all__ = ["EventTriggerMatcher", "MatchOutcome", "MatchResult"]
