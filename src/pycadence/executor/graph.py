"""Workflow graph executor.

Moves a WorkflowInstance through its workflow one node per invocation.
Every step is persisted with a compare-and-set on the instance revision before
the next one starts, so a crash loses at most the node in flight and a
second clock holding a stale copy cannot overwrite progress.

Node semantics:
    condition - evaluate the predicate, follow the "true"/"false" edge
                (or the default edge); no matching edge aborts
    action    - dispatch to the instance's recipient; success or a
                permanent failure moves on, a retryable failure waits
                with backoff; a suppressed recipient aborts
    delay     - first visit parks the instance (WAITING until now+delay),
                the visit after resume_at moves past it
    trigger   - entry only, never executed

A node without outgoing edges completes the instance. Each step releases
the claim, so an instance that moved on is ACTIVE and unowned until the
next clock tick claims it again.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import replace
from datetime import UTC, datetime
from typing import assert_never

from pycadence.dispatch import Dispatcher
from pycadence.errors import ClaimConflictError
from pycadence.models import (
    DEFAULT_EXCLUDED_STATUSES,
    ActionNode,
    AttemptOutcome,
    ConditionNode,
    DelayNode,
    EvaluationScope,
    InstanceStatus,
    RetryPolicy,
    TriggerNode,
    WorkflowDefinition,
    WorkflowInstance,
)
from pycadence.storage.base import CampaignStore

logger = logging.getLogger(__name__)

MAX_STEPS_PER_DRIVE = 1000


def action_run_id(instance: WorkflowInstance, node_id: str) -> str:
    """Ledger run id of one action node for one instance."""
    return f"{instance.instance_id}:{node_id}"


class WorkflowExecutor:
    """Advances workflow instances.

    The caller must own the instance (claimed_by set by the clock); every
    advance() releases the claim, whether the instance moved on, parked or
    finished.
    """

    def __init__(
        self,
        store: CampaignStore,
        dispatcher: Dispatcher,
        retry_policy: RetryPolicy = RetryPolicy.STANDARD,
        exclude_statuses: Sequence[str] = DEFAULT_EXCLUDED_STATUSES,
    ):
        """
        Args:
            store: Campaign store
            dispatcher: Sends workflow actions
            retry_policy: Backoff for retryable action failures (attempt
                counts come from each action's max_retries)
            exclude_statuses: Recipient statuses treated as suppressed
        """
        self._store = store
        self._dispatcher = dispatcher
        self._retry_policy = retry_policy
        self._exclude_statuses = tuple(exclude_statuses)

    async def drive(
        self, instance: WorkflowInstance, now: datetime | None = None
    ) -> WorkflowInstance:
        """Advance repeatedly until the instance parks, finishes or is taken over.

        The clock never calls this; it advances one node per claim. Useful
        for running an instance to its next wait in a single call.

        Returns:
            The last persisted state this executor saw
        """
        current = instance
        for _ in range(MAX_STEPS_PER_DRIVE):
            if current.status is not InstanceStatus.ACTIVE:
                return current
            try:
                current = await self.advance(current, now)
            except ClaimConflictError:
                logger.debug(f"Lost instance {instance.instance_id} to a concurrent update")
                return current
        if current.status is InstanceStatus.ACTIVE:
            logger.warning(
                f"Instance {instance.instance_id} still active after {MAX_STEPS_PER_DRIVE} steps"
            )
        return current

    async def advance(
        self, instance: WorkflowInstance, now: datetime | None = None
    ) -> WorkflowInstance:
        """Execute the node under the cursor and persist the result.

        Raises:
            ClaimConflictError: If the stored instance changed since it was read
            PersistenceError: If the store or ledger fails
        """
        if instance.status is not InstanceStatus.ACTIVE:
            return instance
        now = now or datetime.now(UTC)

        workflow = await self._store.get_workflow(instance.workflow_id)
        if workflow is None:
            return await self._persist(
                instance, _finished(instance, InstanceStatus.ABORTED, now, "workflow not found")
            )

        node = workflow.nodes.get(instance.cursor)
        if node is None:
            updated = _finished(
                instance, InstanceStatus.ABORTED, now, f"unknown node {instance.cursor!r}"
            )
            return await self._persist(instance, updated)

        match node:
            case TriggerNode():
                updated = _finished(instance, InstanceStatus.ABORTED, now, "reached trigger node")
            case ConditionNode():
                updated = await self._evaluate_condition(workflow, node, instance, now)
            case ActionNode():
                updated = await self._run_action(workflow, node, instance, now)
            case DelayNode():
                updated = self._run_delay(workflow, node, instance, now)
            case _:
                assert_never(node)

        return await self._persist(instance, updated)

    async def _persist(
        self, original: WorkflowInstance, updated: WorkflowInstance
    ) -> WorkflowInstance:
        if not await self._store.compare_and_set_instance(updated, original.revision):
            raise ClaimConflictError(f"instance {original.instance_id} changed concurrently")
        if updated.status.is_terminal:
            logger.info(
                f"Instance {updated.instance_id} {updated.status} at {original.cursor}"
                + (f": {updated.last_error}" if updated.status is InstanceStatus.ABORTED else "")
            )
        return updated

    async def _evaluate_condition(
        self,
        workflow: WorkflowDefinition,
        node: ConditionNode,
        instance: WorkflowInstance,
        now: datetime,
    ) -> WorkflowInstance:
        try:
            recipient = await self._dispatcher.directory.lookup(instance.recipient_id, ())
        except Exception as e:
            return self._retry_or_abort(
                instance, now, f"recipient lookup failed: {e}", self._retry_policy
            )

        scope = EvaluationScope(
            event_type=instance.event_type,
            payload=instance.payload,
            attributes=recipient.attributes if recipient is not None else {},
        )
        branch = "true" if node.predicate.evaluate(scope) else "false"
        logger.debug(f"Instance {instance.instance_id}: {node.node_id} -> {branch}")
        return _moved_on(workflow, instance, node.node_id, now, branch)

    async def _run_action(
        self,
        workflow: WorkflowDefinition,
        node: ActionNode,
        instance: WorkflowInstance,
        now: datetime,
    ) -> WorkflowInstance:
        result = await self._dispatcher.dispatch_single(
            action_run_id(instance, node.node_id),
            instance.recipient_id,
            node.content_ref,
            self._exclude_statuses,
        )

        if result.suppressed:
            return _finished(instance, InstanceStatus.ABORTED, now, "recipient suppressed")

        if result.outcome is AttemptOutcome.FAILED:
            if result.retryable:
                policy = self._retry_policy.with_retries(node.max_retries)
                return self._retry_or_move_on(workflow, node, instance, now, result.error, policy)
            logger.warning(
                f"Instance {instance.instance_id}: {node.node_id} failed permanently: "
                f"{result.error}"
            )
            return replace(
                _moved_on(workflow, instance, node.node_id, now), last_error=result.error
            )

        return _moved_on(workflow, instance, node.node_id, now)

    def _retry_or_move_on(
        self,
        workflow: WorkflowDefinition,
        node: ActionNode,
        instance: WorkflowInstance,
        now: datetime,
        error: str | None,
        policy: RetryPolicy,
    ) -> WorkflowInstance:
        delay = policy.backoff(instance.attempts + 1)
        if delay is None:
            logger.warning(
                f"Instance {instance.instance_id}: {node.node_id} retries exhausted: {error}"
            )
            return replace(_moved_on(workflow, instance, node.node_id, now), last_error=error)
        return _parked(
            instance, now, now + delay, attempts=instance.attempts + 1, last_error=error
        )

    def _retry_or_abort(
        self, instance: WorkflowInstance, now: datetime, error: str, policy: RetryPolicy
    ) -> WorkflowInstance:
        delay = policy.backoff(instance.attempts + 1)
        if delay is None:
            return _finished(instance, InstanceStatus.ABORTED, now, error)
        return _parked(
            instance, now, now + delay, attempts=instance.attempts + 1, last_error=error
        )

    def _run_delay(
        self,
        workflow: WorkflowDefinition,
        node: DelayNode,
        instance: WorkflowInstance,
        now: datetime,
    ) -> WorkflowInstance:
        if instance.waiting_on == node.node_id:
            return _moved_on(workflow, instance, node.node_id, now)
        return _parked(instance, now, now + node.delay, waiting_on=node.node_id)


def _moved_on(
    workflow: WorkflowDefinition,
    instance: WorkflowInstance,
    node_id: str,
    now: datetime,
    branch: str | None = None,
) -> WorkflowInstance:
    if not workflow.outgoing(node_id):
        return _finished(instance, InstanceStatus.COMPLETED, now)

    edge = workflow.select_edge(node_id, branch)
    if edge is None:
        error = f"no {branch!r} edge from {node_id}"
        return _finished(instance, InstanceStatus.ABORTED, now, error)

    return replace(
        instance,
        cursor=edge.target,
        status=InstanceStatus.ACTIVE,
        resume_at=None,
        waiting_on=None,
        attempts=0,
        claimed_by=None,
        claimed_at=None,
        updated_at=now,
    )


def _parked(
    instance: WorkflowInstance, now: datetime, resume_at: datetime, **changes
) -> WorkflowInstance:
    return replace(
        instance,
        status=InstanceStatus.WAITING,
        resume_at=resume_at,
        claimed_by=None,
        claimed_at=None,
        updated_at=now,
        **changes,
    )


def _finished(
    instance: WorkflowInstance, status: InstanceStatus, now: datetime, error: str | None = None
) -> WorkflowInstance:
    return replace(
        instance,
        status=status,
        resume_at=None,
        waiting_on=None,
        claimed_by=None,
        claimed_at=None,
        updated_at=now,
        last_error=error if error is not None else instance.last_error,
    )


__all__ = ["WorkflowExecutor", "action_run_id"]
