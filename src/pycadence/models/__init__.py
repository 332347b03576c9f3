"""Core data models for campaign scheduling and dispatch.

Defines schedules, workflow graphs and instances, ledger records,
trigger events and the condition grammar.

Design: Dependency-Free Models
These types depend only on pycadence.errors, so storage, dispatch and
executor modules can all import them without cycles.
"""

from pycadence.models.event import TriggerEvent
from pycadence.models.instance import InstanceCreation, WorkflowInstance
from pycadence.models.ledger import (
    ExecutionRecord,
    LedgerPage,
    RunRecord,
    RunSummary,
    ScheduleStats,
    correlation_id_for,
)
from pycadence.models.predicate import (
    AllOf,
    AnyOf,
    Comparison,
    EvaluationScope,
    Not,
    Predicate,
    parse_predicate,
)
from pycadence.models.recurrence import RecurrenceRule, RecurrenceUnit
from pycadence.models.retry import RetryPolicy
from pycadence.models.schedule import (
    DEFAULT_EXCLUDED_STATUSES,
    DripStep,
    ScheduleDefinition,
    ScheduleSettings,
    TriggerSpec,
)
from pycadence.models.status import (
    AttemptOutcome,
    InstanceStatus,
    RunOutcome,
    ScheduleStatus,
    ScheduleType,
)
from pycadence.models.workflow import (
    ActionNode,
    ConditionNode,
    DelayNode,
    Edge,
    FrequencyCap,
    Node,
    TimingWindow,
    TriggerNode,
    WorkflowDefinition,
)

__all__ = [
    "TriggerEvent",
    "InstanceCreation",
    "WorkflowInstance",
    "ExecutionRecord",
    "LedgerPage",
    "RunRecord",
    "RunSummary",
    "ScheduleStats",
    "correlation_id_for",
    "AllOf",
    "AnyOf",
    "Comparison",
    "EvaluationScope",
    "Not",
    "Predicate",
    "parse_predicate",
    "RecurrenceRule",
    "RecurrenceUnit",
    "RetryPolicy",
    "DEFAULT_EXCLUDED_STATUSES",
    "DripStep",
    "ScheduleDefinition",
    "ScheduleSettings",
    "TriggerSpec",
    "AttemptOutcome",
    "InstanceStatus",
    "RunOutcome",
    "ScheduleStatus",
    "ScheduleType",
    "ActionNode",
    "ConditionNode",
    "DelayNode",
    "Edge",
    "FrequencyCap",
    "Node",
    "TimingWindow",
    "TriggerNode",
    "WorkflowDefinition",
]
