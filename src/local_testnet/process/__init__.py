"""
Node processes: launching, readiness probing and stopping.

Nodes are black-box binaries. They are started from per-role command templates,
judged healthy through their public HTTP endpoints and stopped with signals.
"""

from .command import render, render_command, template_context
from .health import PROBES, ProbeResult, probe
from .manager import (
    HealthOutcome,
    HealthStatus,
    NodeProcessManager,
    RunningNode,
    StopOutcome,
)
from .states import HealthState

__all__ = [
    "PROBES",
    "HealthOutcome",
    "HealthState",
    "HealthStatus",
    "NodeProcessManager",
    "ProbeResult",
    "RunningNode",
    "StopOutcome",
    "probe",
    "render",
    "render_command",
    "template_context",
]
