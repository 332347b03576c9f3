"""
Core types for the pycadence campaign engine.

This module gathers the fundamental types used throughout pycadence:
- ScheduleDefinition / ScheduleStatus / ScheduleType: what runs when
- RecurrenceRule + next_occurrence / first_occurrence: recurrence calculator
- WorkflowDefinition / WorkflowInstance: workflow graphs and their cursors
- ExecutionRecord / RunSummary: ledger entries and run results
- TriggerEvent: inbound events
- parse_predicate / EvaluationScope: the condition grammar
- RetryPolicy / RetryableError: retry configuration and control
- the error taxonomy
"""

from pycadence.core.recurrence import first_occurrence, next_occurrence, occurrence_at
from pycadence.errors import (
    CadenceError,
    ClaimConflictError,
    InvalidTransitionError,
    RecipientResolutionError,
    RenderError,
    RetryableError,
    TransportError,
    ValidationError,
)
from pycadence.models import (
    AttemptOutcome,
    EvaluationScope,
    ExecutionRecord,
    InstanceStatus,
    RecurrenceRule,
    RecurrenceUnit,
    RetryPolicy,
    RunSummary,
    ScheduleDefinition,
    ScheduleStatus,
    ScheduleType,
    TriggerEvent,
    WorkflowDefinition,
    WorkflowInstance,
    parse_predicate,
)

__all__ = [
    "first_occurrence",
    "next_occurrence",
    "occurrence_at",
    "CadenceError",
    "ClaimConflictError",
    "InvalidTransitionError",
    "RecipientResolutionError",
    "RenderError",
    "RetryableError",
    "TransportError",
    "ValidationError",
    "AttemptOutcome",
    "EvaluationScope",
    "ExecutionRecord",
    "InstanceStatus",
    "RecurrenceRule",
    "RecurrenceUnit",
    "RetryPolicy",
    "RunSummary",
    "ScheduleDefinition",
    "ScheduleStatus",
    "ScheduleType",
    "TriggerEvent",
    "WorkflowDefinition",
    "WorkflowInstance",
    "parse_predicate",
]
