"""
Cadence: Campaign Automation & Dispatch Engine for Python

Decides when a messaging run fires, drives multi-step sequences (drip
campaigns, event-triggered flows) and fans personalized messages out to
many recipients with per-recipient failure isolation, retries and an
exactly-once-per-recipient dispatch ledger.

Design Pattern: Façade Pattern
This module provides a simplified interface to the engine, hiding the
storage, claiming and dispatch machinery.

Example:
    ```python
    import asyncio
    from datetime import UTC, datetime
    from pycadence import (
        Campaigns, Clock, Dispatcher, RecurrenceRule, RecurrenceUnit,
        ScheduleDefinition, ScheduleType, SqliteCampaignStore,
    )

    async def main():
        store = SqliteCampaignStore("campaigns.db")
        await store.connect()

        campaigns = Campaigns(store)
        await campaigns.create_schedule(ScheduleDefinition(
            schedule_id="daily-deals",
            owner="acme",
            schedule_type=ScheduleType.RECURRING,
            content_ref="tpl-deals",
            list_ref="list-all",
            recurrence=RecurrenceRule(
                RecurrenceUnit.DAY,
                anchor=datetime(2025, 1, 1, 9, 0, tzinfo=UTC),
                timezone="America/New_York",
            ),
        ))
        await campaigns.submit_schedule("daily-deals")

        # directory, renderer and transport are supplied by the application
        clock = Clock(store, Dispatcher(store, directory, renderer, transport))
        handle = await clock.start()
        ...
        await handle.shutdown()
        await store.close()

    asyncio.run(main())
    ```
"""

# Core types
from pycadence.core import (
    CadenceError,
    ClaimConflictError,
    InvalidTransitionError,
    RecipientResolutionError,
    RenderError,
    RetryableError,
    TransportError,
    ValidationError,
    first_occurrence,
    next_occurrence,
)
from pycadence.models import (
    ActionNode,
    AttemptOutcome,
    ConditionNode,
    DelayNode,
    DripStep,
    Edge,
    EvaluationScope,
    ExecutionRecord,
    FrequencyCap,
    InstanceStatus,
    LedgerPage,
    RecurrenceRule,
    RecurrenceUnit,
    RetryPolicy,
    RunOutcome,
    RunRecord,
    RunSummary,
    ScheduleDefinition,
    ScheduleSettings,
    ScheduleStats,
    ScheduleStatus,
    ScheduleType,
    TimingWindow,
    TriggerEvent,
    TriggerNode,
    TriggerSpec,
    WorkflowDefinition,
    WorkflowInstance,
    parse_predicate,
)

# Storage (Adapter pattern)
from pycadence.storage import (
    CampaignStore,
    InMemoryCampaignStore,
    PersistenceError,
    SqliteCampaignStore,
)

# Dispatch
from pycadence.dispatch import (
    ContentRenderer,
    Dispatcher,
    DispatchResult,
    OutboundTransport,
    Recipient,
    RecipientDirectory,
    RenderedContent,
    SendResult,
)

# Execution
from pycadence.executor import (
    Clock,
    ClockHandle,
    RunObserverRegistry,
    TickReport,
    WorkflowExecutor,
)

# Triggers
from pycadence.triggers import EventTriggerMatcher, MatchOutcome, MatchResult

# Administration and configuration
from pycadence.service import Campaigns
from pycadence.config import EngineConfig, open_store

# Version
__version__ = "0.1.0"

__all__ = [
    # Errors
    "CadenceError",
    "ClaimConflictError",
    "InvalidTransitionError",
    "PersistenceError",
    "RecipientResolutionError",
    "RenderError",
    "RetryableError",
    "TransportError",
    "ValidationError",

    # Recurrence
    "RecurrenceRule",
    "RecurrenceUnit",
    "first_occurrence",
    "next_occurrence",

    # Schedules
    "DripStep",
    "ScheduleDefinition",
    "ScheduleSettings",
    "ScheduleStatus",
    "ScheduleType",
    "TriggerSpec",
    "RetryPolicy",

    # Workflows
    "ActionNode",
    "ConditionNode",
    "DelayNode",
    "Edge",
    "FrequencyCap",
    "TimingWindow",
    "TriggerNode",
    "WorkflowDefinition",
    "WorkflowInstance",
    "InstanceStatus",
    "EvaluationScope",
    "parse_predicate",

    # Ledger
    "AttemptOutcome",
    "ExecutionRecord",
    "LedgerPage",
    "RunSummary",
    "RunOutcome",
    "RunRecord",
    "ScheduleStats",

    # Storage
    "CampaignStore",
    "InMemoryCampaignStore",
    "SqliteCampaignStore",

    # Dispatch
    "ContentRenderer",
    "Dispatcher",
    "DispatchResult",
    "OutboundTransport",
    "Recipient",
    "RecipientDirectory",
    "RenderedContent",
    "SendResult",

    # Execution
    "Clock",
    "ClockHandle",
    "RunObserverRegistry",
    "TickReport",
    "WorkflowExecutor",

    # Triggers
    "EventTriggerMatcher",
    "MatchOutcome",
    "MatchResult",
    "TriggerEvent",

    # Administration
    "Campaigns",
    "EngineConfig",
    "open_store",

    # Metadata
    "__version__",
]
