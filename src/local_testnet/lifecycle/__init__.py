"""
Lifecycle of a local test network run.

A run moves through IDLE, PLANNING, STARTING, RUNNING, STOPPING and STOPPED,
with FAILED reachable whenever something goes wrong. Its state is persisted so
that separate command invocations operate on the same run.
"""

from .controller import (
    EventKind,
    LifecycleController,
    LifecycleEvent,
    TeardownReport,
    new_run_id,
)
from .record import NodeRecord, RunRecord, RunStore
from .states import LifecycleState

__all__ = [
    "EventKind",
    "LifecycleController",
    "LifecycleEvent",
    "LifecycleState",
    "NodeRecord",
    "RunRecord",
    "RunStore",
    "TeardownReport",
    "new_run_id",
]
