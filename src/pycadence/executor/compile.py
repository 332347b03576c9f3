"""Compile DRIP and EVENT_TRIGGERED schedules into workflow graphs.

Both schedule types run through the workflow executor, so they are lowered
to ordinary WorkflowDefinitions when the schedule is created.

A drip sequence becomes a chain, one segment per step:

    trigger -> [delay] -> [condition] -true-> action -> next step ...
                              \\-false-> next step

A step whose condition fails is skipped. When the last step's condition
fails there is nothing left to send: its default edge leads to a "done"
node without outgoing edges, and the instance ends COMPLETED.

The drip trigger's event type ("drip:<schedule_id>") is never emitted by
anyone: drip instances are enrolled directly by the clock, and the
compiled workflow stays inactive.
"""

from __future__ import annotations

from datetime import timedelta

from pycadence.models import (
    ActionNode,
    ConditionNode,
    DelayNode,
    Edge,
    FrequencyCap,
    Node,
    ScheduleDefinition,
    TriggerNode,
    WorkflowDefinition,
    parse_predicate,
)

TRIGGER_NODE_ID = "trigger"
DONE_NODE_ID = "done"

# Never branched on: a node without outgoing edges completes the instance
_DONE_PREDICATE = parse_predicate({"field": "event_type", "op": "exists"})


def drip_event_type(schedule_id: str) -> str:
    return f"drip:{schedule_id}"


def workflow_id_for(schedule: ScheduleDefinition) -> str:
    return schedule.workflow_id or f"{schedule.schedule_id}-workflow"


def compile_drip(schedule: ScheduleDefinition) -> WorkflowDefinition:
    """Lower a DRIP schedule's steps to an inactive workflow.

    Raises:
        ValidationError: If the resulting graph is invalid
    """
    nodes: list[Node] = [
        TriggerNode(
            TRIGGER_NODE_ID,
            event_type=drip_event_type(schedule.schedule_id),
            frequency_cap=FrequencyCap(max_count=1),
        )
    ]
    edges: list[Edge] = []

    # (source, branch) edges waiting for the next step's entry node
    dangling: list[tuple[str, str | None]] = [(TRIGGER_NODE_ID, None)]

    for index, step in enumerate(schedule.drip_steps, start=1):
        segment: list[Node] = []
        if step.delay > timedelta(0):
            segment.append(DelayNode(f"step{index}_wait", delay=step.delay))
        if step.condition is not None:
            segment.append(ConditionNode(f"step{index}_check", predicate=step.condition))
        action = ActionNode(
            f"step{index}_send",
            content_ref=step.content_ref,
            max_retries=schedule.settings.max_retries,
        )
        segment.append(action)

        entry = segment[0].node_id
        edges.extend(Edge(source, entry, branch) for source, branch in dangling)
        dangling = []

        for previous, current in zip(segment, segment[1:]):
            branch = "true" if isinstance(previous, ConditionNode) else None
            edges.append(Edge(previous.node_id, current.node_id, branch))
            if isinstance(previous, ConditionNode):
                dangling.append((previous.node_id, "false"))

        dangling.append((action.node_id, None))
        nodes.extend(segment)

    skipped_last = [source for source, branch in dangling if branch == "false"]
    if skipped_last:
        nodes.append(ConditionNode(DONE_NODE_ID, predicate=_DONE_PREDICATE))
        edges.extend(Edge(source, DONE_NODE_ID) for source in skipped_last)

    return WorkflowDefinition.build(
        workflow_id=workflow_id_for(schedule),
        owner=schedule.owner,
        nodes=nodes,
        edges=edges,
        name=f"drip {schedule.schedule_id}",
        active=False,
        schedule_id=schedule.schedule_id,
    )


def compile_trigger(schedule: ScheduleDefinition) -> WorkflowDefinition:
    """Lower an EVENT_TRIGGERED schedule to trigger -> send.

    The workflow starts inactive; it is activated when the schedule runs.
    """
    spec = schedule.trigger
    trigger = TriggerNode(
        TRIGGER_NODE_ID,
        event_type=spec.event_type,
        condition=spec.condition,
        offset=spec.offset,
        frequency_cap=spec.frequency_cap,
        timing=spec.timing,
    )
    action = ActionNode(
        "send", content_ref=schedule.content_ref, max_retries=schedule.settings.max_retries
    )
    return WorkflowDefinition.build(
        workflow_id=workflow_id_for(schedule),
        owner=schedule.owner,
        nodes=[trigger, action],
        edges=[Edge(trigger.node_id, action.node_id)],
        name=f"trigger {schedule.schedule_id}",
        active=False,
        schedule_id=schedule.schedule_id,
    )
