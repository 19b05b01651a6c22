"""Exception hierarchy for the local testnet orchestrator."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from local_testnet.types import NodeRole


class TestnetError(Exception):
    """
    Base exception for all orchestrator errors.

    Attributes:
        message: Human-readable error description.
    """

    __test__ = False

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r})"


class InvalidParams(TestnetError):
    """
    Raised when run parameters are rejected.

    Always raised before any process starts, so nothing needs cleaning up.
    """


class GenerationFailed(TestnetError):
    """
    Raised when genesis or validator key material cannot be produced.

    Never retried: key generation writes into the run directory and a blind
    retry could mix material from two attempts.
    """


class TopologyInvalid(TestnetError):
    """
    Raised when a planned topology violates its invariants.

    Indicates a planning bug or overlapping user-configured port bases.
    """


class NodeStartupError(TestnetError):
    """
    Base class for a single node failing to come up.

    Attributes:
        node_id: Identifier of the failing node (e.g. ``execution_0``).
        role: Role of the failing node.
        outcome: Short description of the observed outcome.
    """

    def __init__(self, node_id: str, role: NodeRole, outcome: str) -> None:
        self.node_id = node_id
        self.role = role
        self.outcome = outcome
        super().__init__(f"{node_id} ({role.value}): {outcome}")


class NodeLaunchFailed(NodeStartupError):
    """Raised when a node process could not be spawned."""


class NodeUnhealthy(NodeStartupError):
    """Raised when a node reported a fatal health problem or exited during startup."""


class NodeTimedOut(NodeStartupError):
    """Raised when a node did not become healthy within its timeout."""


class StopFailed(TestnetError):
    """
    A node ignored the termination signal and had to be force-killed.

    Logged rather than raised: the force-kill still releases the node's resources.

    Attributes:
        node_id: Identifier of the node that was force-killed.
    """

    def __init__(self, node_id: str, grace: float) -> None:
        self.node_id = node_id
        super().__init__(f"{node_id} did not exit within {grace:.1f}s and was force-killed")


class StartFailed(TestnetError):
    """
    Aggregate failure of a start attempt, raised after rollback completed.

    Attributes:
        cause: The node failure that triggered the rollback.
        rollback_failures: Problems met while tearing down already-started nodes.
    """

    def __init__(
        self,
        cause: NodeStartupError,
        rollback_failures: Sequence[str] = (),
    ) -> None:
        self.cause = cause
        self.rollback_failures = list(rollback_failures)

        msg = f"start failed: {cause.message}"
        if self.rollback_failures:
            msg += f" (rollback problems: {'; '.join(self.rollback_failures)})"
        super().__init__(msg)

    @property
    def node_id(self) -> str:
        """Identifier of the node that triggered the failure."""
        return self.cause.node_id


class TeardownFailed(TestnetError):
    """
    Raised when stop or clean could not complete every step.

    Every remaining step is still attempted; this carries the union of failures.

    Attributes:
        failures: One description per failed step.
    """

    def __init__(self, failures: Sequence[str]) -> None:
        self.failures = list(failures)
        super().__init__(f"teardown incomplete: {'; '.join(self.failures)}")


class RecordUnreadable(TestnetError):
    """
    Raised when the run record on disk cannot be read back.

    The run directory itself is still known and can be removed with ``clean``.

    Attributes:
        run_dir: Directory of the run whose record is unreadable.
    """

    def __init__(self, run_dir: Path, reason: str) -> None:
        self.run_dir = run_dir
        super().__init__(f"unreadable run record in {run_dir}: {reason}")
