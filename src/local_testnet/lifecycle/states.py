"""Lifecycle state machine of a test network run."""

from __future__ import annotations

from enum import Enum


class LifecycleState(Enum):
    """
    Phase of a run.

    State Machine Diagram
    ---------------------
    ::

        IDLE --> PLANNING --> STARTING --> RUNNING --> STOPPING --> STOPPED
          ^          |            |           |          ^   |          |
          |          v            v           v          |   v          |
          |          +-------> FAILED <-------+----------+---+          |
          |                      |                                      |
          +----------------------+--------------------------------------+

    Transitions
    -----------
    IDLE -> PLANNING
        - Triggered when: ``start`` is called
        - Action: Build genesis, plan the topology

    PLANNING -> STARTING
        - Triggered when: The topology is validated
        - Action: Launch nodes layer by layer

    STARTING -> RUNNING
        - Triggered when: Every node reported healthy

    RUNNING -> STOPPING, FAILED -> STOPPING
        - Triggered when: ``stop`` is called
        - Action: Stop nodes, dependents first

    STOPPING -> STOPPED
        - Triggered when: Every node is stopped

    PLANNING / STARTING / RUNNING / STOPPING -> FAILED
        - Triggered when: Genesis or planning fails, a node fails to start,
          a running node dies, or a stop step fails

    STOPPED -> IDLE, FAILED -> IDLE
        - Triggered when: ``clean`` released the run's artifacts
    """

    IDLE = "idle"
    """No run exists."""

    PLANNING = "planning"
    """Genesis and topology are being produced. No process runs yet."""

    STARTING = "starting"
    """Nodes are being launched and probed."""

    RUNNING = "running"
    """Every node is healthy."""

    STOPPING = "stopping"
    """Nodes are being stopped."""

    STOPPED = "stopped"
    """Every node is stopped. Artifacts and logs are still on disk."""

    FAILED = "failed"
    """The run failed. Nodes launched before the failure have been stopped."""

    def can_transition_to(self, target: LifecycleState) -> bool:
        """
        Check if transition to target state is valid.

        Args:
            target: The proposed target state.

        Returns:
            True if the transition is allowed by the state machine rules.
        """
        return target in _VALID_TRANSITIONS.get(self, set())

    @property
    def is_active(self) -> bool:
        """Whether node processes may be running in this state."""
        return self in _ACTIVE_STATES

    @property
    def is_transient(self) -> bool:
        """Whether this state only exists while a controller is working on the run."""
        return self in _TRANSIENT_STATES


_VALID_TRANSITIONS: dict[LifecycleState, set[LifecycleState]] = {
    LifecycleState.IDLE: {LifecycleState.PLANNING},
    LifecycleState.PLANNING: {LifecycleState.STARTING, LifecycleState.FAILED},
    LifecycleState.STARTING: {LifecycleState.RUNNING, LifecycleState.FAILED},
    LifecycleState.RUNNING: {LifecycleState.STOPPING, LifecycleState.FAILED},
    LifecycleState.STOPPING: {LifecycleState.STOPPED, LifecycleState.FAILED},
    LifecycleState.STOPPED: {LifecycleState.IDLE},
    LifecycleState.FAILED: {LifecycleState.STOPPING, LifecycleState.IDLE},
}
"""Valid state transitions for the run lifecycle."""

_ACTIVE_STATES = frozenset(
    {LifecycleState.STARTING, LifecycleState.RUNNING, LifecycleState.STOPPING}
)

_TRANSIENT_STATES = frozenset(
    {LifecycleState.PLANNING, LifecycleState.STARTING, LifecycleState.STOPPING}
)
