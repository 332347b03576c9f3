"""Execution: the clock, schedule runs and the workflow graph executor.

Components:
- Clock / ClockHandle: tick loop claiming due schedules and instances
- execute_run / handle_run_completion / handle_run_error: schedule runs
- WorkflowExecutor: one-node-at-a-time workflow advancement
- compile_drip / compile_trigger: schedules lowered to workflow graphs
- RunObserverRegistry: run summaries surfaced to schedule owners
"""

from pycadence.executor.clock import Clock, ClockHandle, TickReport
from pycadence.executor.compile import compile_drip, compile_trigger, drip_event_type
from pycadence.executor.graph import WorkflowExecutor, action_run_id
from pycadence.executor.observers import RunObserver, RunObserverRegistry
from pycadence.executor.runs import (
    activate_listener,
    drip_dedupe_key,
    enroll_drip,
    execute_run,
    handle_run_completion,
    handle_run_error,
    run_id_for,
)

__all__ = [
    "Clock",
    "ClockHandle",
    "TickReport",
    "compile_drip",
    "compile_trigger",
    "drip_event_type",
    "WorkflowExecutor",
    "action_run_id",
    "RunObserver",
    "RunObserverRegistry",
    "activate_listener",
    "drip_dedupe_key",
    "enroll_drip",
    "execute_run",
    "handle_run_completion",
    "handle_run_error",
    "run_id_for",
]
