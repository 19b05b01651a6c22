"""Health state machine of a supervised node."""

from __future__ import annotations

from enum import Enum


class HealthState(Enum):
    """
    Health of a running node.

    State Machine Diagram
    ---------------------
    ::

        STARTING --> HEALTHY --> STOPPED
           |            |           ^
           v            v           |
        UNHEALTHY --> FAILED -------+

    Transitions
    -----------
    STARTING -> HEALTHY
        - Triggered when: The readiness probe succeeds

    STARTING -> UNHEALTHY
        - Triggered when: The probe reports a fatal problem or the process exits

    UNHEALTHY / STARTING / HEALTHY -> FAILED
        - Triggered when: Startup gives up on the node, or it dies while running

    Any -> STOPPED
        - Triggered when: The process is gone after a stop request
    """

    STARTING = "starting"
    """Process spawned; readiness not confirmed yet."""

    HEALTHY = "healthy"
    """Readiness probe succeeded."""

    UNHEALTHY = "unhealthy"
    """A fatal problem was observed; the node will not become healthy."""

    STOPPED = "stopped"
    """Process is gone and its log is flushed. Terminal."""

    FAILED = "failed"
    """Node gave up during startup or died while running."""

    def can_transition_to(self, target: HealthState) -> bool:
        """
        Check if transition to target state is valid.

        Args:
            target: The proposed target state.

        Returns:
            True if the transition is allowed by the state machine rules.
        """
        return target in _VALID_TRANSITIONS.get(self, set())

    @property
    def is_terminal(self) -> bool:
        """Whether no further transitions are possible."""
        return self is HealthState.STOPPED


_VALID_TRANSITIONS: dict[HealthState, set[HealthState]] = {
    HealthState.STARTING: {
        HealthState.HEALTHY,
        HealthState.UNHEALTHY,
        HealthState.FAILED,
        HealthState.STOPPED,
    },
    HealthState.HEALTHY: {HealthState.FAILED, HealthState.STOPPED},
    HealthState.UNHEALTHY: {HealthState.FAILED, HealthState.STOPPED},
    HealthState.FAILED: {HealthState.STOPPED},
    HealthState.STOPPED: set(),
}
"""Valid state transitions for the node health state machine."""
