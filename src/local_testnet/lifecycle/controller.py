"""
Lifecycle controller: start, supervise, stop and clean a local test network.

The controller sequences genesis generation, topology planning and node
supervision, and owns the single teardown routine shared by start failures,
cancellation and explicit stops.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType

from local_testnet.config import DATA_DIR, TestnetSettings
from local_testnet.exceptions import (
    GenerationFailed,
    InvalidParams,
    NodeStartupError,
    NodeTimedOut,
    NodeUnhealthy,
    RecordUnreadable,
    StartFailed,
    TeardownFailed,
    TopologyInvalid,
)
from local_testnet.genesis import GenesisBuilder, GenesisParams
from local_testnet.logs import LOGS_DIR_NAME, LogAggregator
from local_testnet.process import (
    HealthState,
    HealthStatus,
    NodeProcessManager,
    RunningNode,
    StopOutcome,
)
from local_testnet.topology import NodeCounts, NodeSpec, Topology, plan
from local_testnet.types import NetworkMode

from .record import NodeRecord, RunRecord, RunStore
from .states import LifecycleState

logger = logging.getLogger(__name__)

SUPERVISE_INTERVAL = 1.0
"""Seconds between liveness checks of a running network."""


class EventKind(Enum):
    """What happened to a node."""

    LAUNCHED = "launched"
    HEALTHY = "healthy"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass(frozen=True, slots=True)
class LifecycleEvent:
    """One node event, in the order the controller observed it."""

    kind: EventKind
    """What happened."""

    node_id: str
    """Node it happened to."""

    at: float
    """Monotonic timestamp."""


@dataclass(slots=True)
class TeardownReport:
    """Outcome of stopping every launched node."""

    outcomes: dict[str, StopOutcome] = field(default_factory=dict)
    """Stop outcome by node id, in stop order."""

    failures: list[str] = field(default_factory=list)
    """Steps that could not be completed."""

    @property
    def force_killed(self) -> list[str]:
        """Nodes that ignored SIGTERM."""
        return [
            node_id
            for node_id, outcome in self.outcomes.items()
            if outcome is StopOutcome.FORCE_KILLED
        ]


def new_run_id() -> str:
    """Sortable, unique run identifier."""
    return f"{time.strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"


@dataclass(slots=True)
class LifecycleController:
    """
    Drives one run through its lifecycle.

    A controller either starts a run itself or adopts the current run of its
    data directory from the persisted run record, so that a separate process
    can stop, inspect or clean a network started earlier.
    """

    settings: TestnetSettings = field(default_factory=TestnetSettings)
    """Genesis parameters, node counts, commands and timeouts."""

    data_dir: Path = field(default=DATA_DIR)
    """Root directory holding run directories."""

    genesis_builder: GenesisBuilder = field(default_factory=GenesisBuilder)
    """Genesis builder (injectable clock)."""

    _store: RunStore = field(init=False)
    """Run directories and the current-run pointer."""

    _state: LifecycleState = field(default=LifecycleState.IDLE, init=False)
    """Current lifecycle state."""

    _topology: Topology | None = field(default=None, init=False)
    """Topology of the run, once planned or adopted."""

    _logs: LogAggregator | None = field(default=None, init=False)
    """Log sinks of the run."""

    _manager: NodeProcessManager | None = field(default=None, init=False)
    """Process manager bound to the run's topology."""

    _nodes: dict[str, RunningNode] = field(default_factory=dict, init=False)
    """Launched nodes by id, in launch order."""

    _events: list[LifecycleEvent] = field(default_factory=list, init=False)
    """Node events in observation order."""

    _adopted: bool = field(default=False, init=False)
    """Whether the on-disk record has been consulted."""

    def __post_init__(self) -> None:
        """Bind the run store to the data directory."""
        self.data_dir = Path(self.data_dir)
        self._store = RunStore(self.data_dir)

    @property
    def state(self) -> LifecycleState:
        """Current lifecycle state."""
        return self._state

    @property
    def topology(self) -> Topology | None:
        """Topology of the run, if any."""
        return self._topology

    @property
    def nodes(self) -> Mapping[str, RunningNode]:
        """Launched nodes by id, in launch order."""
        return MappingProxyType(self._nodes)

    @property
    def events(self) -> list[LifecycleEvent]:
        """Node events in the order they were observed."""
        return list(self._events)

    @property
    def run_dir(self) -> Path | None:
        """Directory of the run, if any."""
        return self._topology.run_dir if self._topology is not None else None

    async def start(
        self,
        template_path: Path | str,
        mode: NetworkMode = NetworkMode.STANDARD,
        counts: NodeCounts | None = None,
    ) -> Topology:
        """
        Build genesis, plan the topology and bring every node up.

        Nodes launch layer by layer: a node launches only once every dependency
        reported healthy. Within a layer nodes launch in topology order, then are
        probed concurrently.

        On any node failure, and on cancellation, every launched node is stopped
        (dependents first) before the error propagates. No dependent of a failed
        node is ever launched.

        Args:
            template_path: Execution genesis template.
            mode: Standard or blinded-block production.
            counts: Nodes per role (defaults to the settings).

        Returns:
            The topology of the running network.

        Raises:
            InvalidParams: If a run is already active or the parameters are rejected.
            GenerationFailed: If genesis could not be produced.
            TopologyInvalid: If the planned topology violates its invariants.
            StartFailed: If a node failed to come up. Raised after rollback.
        """
        self._adopt()
        if self._state is not LifecycleState.IDLE:
            run_id = self._topology.run_id if self._topology is not None else "?"
            raise InvalidParams(
                f"run {run_id} is {self._state.value}; stop and clean it before starting another"
            )

        self._reset()
        self._transition(LifecycleState.PLANNING)

        run_id = new_run_id()
        run_dir = self._store.run_dir(run_id)
        try:
            genesis = self.genesis_builder.build(
                GenesisParams.from_settings(self.settings), template_path, run_dir
            )
            topology = plan(
                mode,
                counts or NodeCounts.from_settings(self.settings),
                genesis,
                self.settings,
                run_dir,
                run_id,
                now=self.genesis_builder.time_fn(),
            )
        except (InvalidParams, GenerationFailed, TopologyInvalid):
            # Nothing was launched; the partial run directory has no logs worth keeping.
            if run_dir.exists():
                shutil.rmtree(run_dir)
            self._transition(LifecycleState.FAILED)
            raise

        self._topology = topology
        self._logs = LogAggregator(run_dir / LOGS_DIR_NAME)
        self._manager = NodeProcessManager(topology, self.settings, self._logs)
        self._store.set_current(run_id)
        self._transition(LifecycleState.STARTING)

        try:
            for layer in topology.layers():
                await self._start_layer(layer)
        except NodeStartupError as e:
            logger.error("Start failed at %s, rolling back", e.node_id)
            report = await self._teardown()
            self._transition(LifecycleState.FAILED)
            raise StartFailed(e, report.failures) from e
        except asyncio.CancelledError:
            logger.warning("Start cancelled, rolling back")
            await self._teardown()
            self._transition(LifecycleState.FAILED)
            raise
        except Exception:
            logger.exception("Start aborted, rolling back")
            await self._teardown()
            self._transition(LifecycleState.FAILED)
            raise

        self._transition(LifecycleState.RUNNING)
        logger.info(
            "Testnet %s running (%s mode, %d nodes, genesis at %d)",
            run_id,
            mode.value,
            len(topology.nodes),
            genesis.genesis_time,
        )
        return topology

    async def _start_layer(self, layer: tuple[NodeSpec, ...]) -> None:
        """Launch one dependency layer and wait until all of it is healthy."""
        assert self._manager is not None

        launched: list[RunningNode] = []
        for spec in layer:
            node = await self._manager.launch(spec, self._nodes)
            self._nodes[spec.node_id] = node
            self._record_event(EventKind.LAUNCHED, spec.node_id)
            self._save()
            launched.append(node)

        outcomes = await asyncio.gather(*(self._manager.wait_healthy(node) for node in launched))
        self._save()

        failure: NodeStartupError | None = None
        for node, outcome in zip(launched, outcomes, strict=True):
            if outcome.healthy:
                self._record_event(EventKind.HEALTHY, node.node_id)
                continue

            self._record_event(EventKind.FAILED, node.node_id)
            if failure is None:
                error = NodeTimedOut if outcome.status is HealthStatus.TIMED_OUT else NodeUnhealthy
                failure = error(node.node_id, node.spec.role, str(outcome))

        if failure is not None:
            raise failure

    async def stop(self) -> TeardownReport:
        """
        Stop every node of the run, dependents before dependencies.

        Idempotent: stopping a stopped run, or when there is no run, does nothing.

        Returns:
            Stop outcome per node.

        Raises:
            TeardownFailed: If a node could not be stopped. Every other node is
                still stopped first.
        """
        self._adopt()
        if self._state in (LifecycleState.IDLE, LifecycleState.STOPPED):
            logger.info("No running testnet to stop")
            return TeardownReport()

        self._transition(LifecycleState.STOPPING)
        report = await self._teardown()
        if report.failures:
            self._transition(LifecycleState.FAILED)
            raise TeardownFailed(report.failures)

        self._transition(LifecycleState.STOPPED)
        return report

    async def _teardown(self) -> TeardownReport:
        """
        Stop every launched node, walking dependency layers backwards.

        Nodes of one layer stop concurrently. A failure to stop one node never
        prevents stopping the others.
        """
        report = TeardownReport()
        if self._topology is None or self._manager is None:
            return report

        for layer in reversed(self._topology.layers()):
            nodes = [
                self._nodes[spec.node_id] for spec in reversed(layer) if spec.node_id in self._nodes
            ]
            if not nodes:
                continue

            results = await asyncio.gather(
                *(self._manager.stop(node) for node in nodes), return_exceptions=True
            )
            for node, result in zip(nodes, results, strict=True):
                if isinstance(result, StopOutcome):
                    report.outcomes[node.node_id] = result
                    self._record_event(EventKind.STOPPED, node.node_id)
                elif isinstance(result, Exception):
                    logger.error("Could not stop %s: %s", node.node_id, result)
                    report.failures.append(f"{node.node_id}: {result}")
                else:
                    raise result

        if self._logs is not None:
            self._logs.close_all()
        self._save()
        return report

    async def supervise(self, interval: float = SUPERVISE_INTERVAL) -> RunningNode | None:
        """
        Watch a running network until a node dies or the run leaves RUNNING.

        Args:
            interval: Seconds between liveness checks.

        Returns:
            The node that exited unexpectedly, or None if the run was stopped.
        """
        self._adopt()
        while self._state is LifecycleState.RUNNING and self._manager is not None:
            for node in self._nodes.values():
                if node.state is HealthState.HEALTHY and not self._manager.is_alive(node):
                    node.transition(HealthState.FAILED)
                    node.reason = f"exited unexpectedly (code {node.returncode})"
                    self._record_event(EventKind.FAILED, node.node_id)
                    logger.error("%s %s", node.node_id, node.reason)
                    self._transition(LifecycleState.FAILED)
                    return node
            await asyncio.sleep(interval)
        return None

    async def clean(self) -> None:
        """
        Release every artifact of the run and return to IDLE.

        Stops any node still alive, then removes the run directory (genesis, keys,
        node data, logs, record). Safe to call repeatedly and on a failed run.
        Every step is attempted even if an earlier one fails.

        Raises:
            TeardownFailed: If a node could not be stopped or a directory not removed.
                Raised after the remaining steps, with every failure.
        """
        failures: list[str] = []
        try:
            self._adopt()
        except RecordUnreadable as e:
            logger.warning("%s; removing the run directory anyway", e.message)
            failures += self._remove(e.run_dir)
            self._store.pointer.unlink(missing_ok=True)
            self._reset()
            if failures:
                raise TeardownFailed(failures) from e
            return

        if self._state in (LifecycleState.RUNNING, LifecycleState.FAILED):
            try:
                await self.stop()
            except TeardownFailed as e:
                failures += e.failures

        if self._topology is not None:
            failures += self._remove(self._topology.run_dir)
            self._store.clear_current(self._topology.run_id)

        if failures:
            self._reset()
            raise TeardownFailed(failures)

        if self._state is not LifecycleState.IDLE:
            self._transition(LifecycleState.IDLE)
        self._reset()
        logger.info("Testnet artifacts removed")

    def dump_logs(self, run_id: str | None = None, tail: int | None = None) -> dict[str, str]:
        """
        Read the logs of a run.

        Works mid-run, after a stop or failure, and from another process.

        Args:
            run_id: Run to read (defaults to the current run).
            tail: Keep only the last ``tail`` lines per node.

        Returns:
            Log contents by node id. Empty if there is no such run.

        Raises:
            InvalidParams: If tail is negative.
        """
        if run_id is not None:
            return LogAggregator(self._store.run_dir(run_id) / LOGS_DIR_NAME).dump(tail)

        self._adopt()
        if self._topology is None:
            return {}
        return LogAggregator(self._topology.run_dir / LOGS_DIR_NAME).dump(tail)

    def _adopt(self) -> None:
        """Take over the current run from its record, once, if this controller has none."""
        if self._adopted or self._topology is not None:
            self._adopted = True
            return
        self._adopted = True

        record = self._store.load_current()
        if record is None:
            return

        topology = record.topology
        self._topology = topology
        self._logs = LogAggregator(topology.run_dir / LOGS_DIR_NAME)
        self._manager = NodeProcessManager(topology, self.settings, self._logs)
        self._nodes = {
            node_id: self._manager.adopt(
                topology.get(node_id), node.pid, node.create_time, node.state
            )
            for node_id, node in record.nodes.items()
        }
        for node_id, node in record.nodes.items():
            self._nodes[node_id].reason = node.reason

        self._state = record.state
        if self._state.is_transient:
            # The process that owned the run is gone mid-operation.
            logger.warning(
                "Run %s was left %s; treating it as failed", record.run_id, self._state.value
            )
            self._state = LifecycleState.FAILED
        logger.debug("Adopted run %s (%s)", record.run_id, self._state.value)

    def _transition(self, target: LifecycleState) -> None:
        """
        Move to a new lifecycle state and persist it.

        Raises:
            RuntimeError: If the state machine forbids the transition.
        """
        if not self._state.can_transition_to(target):
            raise RuntimeError(f"Invalid lifecycle transition: {self._state.name} -> {target.name}")

        logger.info("Lifecycle %s -> %s", self._state.name, target.name)
        self._state = target
        self._save()

    def _save(self) -> None:
        """Persist the run record, if the run has a topology and a directory."""
        if self._topology is None or not self._topology.run_dir.exists():
            return
        self._store.save(
            RunRecord(
                topology=self._topology,
                state=self._state,
                nodes={
                    node_id: NodeRecord(
                        pid=node.pid,
                        create_time=node.create_time,
                        state=node.state,
                        reason=node.reason,
                    )
                    for node_id, node in self._nodes.items()
                },
            )
        )

    def _record_event(self, kind: EventKind, node_id: str) -> None:
        self._events.append(LifecycleEvent(kind=kind, node_id=node_id, at=time.monotonic()))

    def _reset(self) -> None:
        """Forget the in-memory run."""
        self._topology = None
        self._logs = None
        self._manager = None
        self._nodes = {}
        self._events = []
        self._state = LifecycleState.IDLE

    @staticmethod
    def _remove(path: Path) -> list[str]:
        """Remove a directory tree, returning the failure if any."""
        try:
            if path.exists():
                shutil.rmtree(path)
        except OSError as e:
            return [f"remove {path}: {e}"]
        return []
