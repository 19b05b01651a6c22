"""
Supervision of node processes.

Every node runs as its own OS process in its own session, so that

- a terminal interrupt reaches the orchestrator, not the nodes
- a stop signal reaches the node and everything it spawned (its process group)
- nodes outlive the ``start`` command and can be stopped by a later ``stop``

A node launched by this process is tracked through its ``Popen`` object. A node
adopted from a run record is tracked by pid and create time, which also guards
against signalling an unrelated process that reused the pid.
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
import shlex
import signal
import subprocess
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Final

import httpx
import psutil

from local_testnet.config import TestnetSettings
from local_testnet.exceptions import NodeLaunchFailed, StopFailed
from local_testnet.logs import LogAggregator, LogHandle
from local_testnet.topology import NodeSpec, Topology, busy_ports

from .command import render, render_command, template_context
from .health import PROBE_TIMEOUT, probe
from .states import HealthState

logger = logging.getLogger(__name__)

KILL_WAIT: Final = 5.0
"""Seconds to wait for the kernel to reap a node after SIGKILL."""

CREATE_TIME_TOLERANCE: Final = 0.5
"""Seconds two create-time readings of the same process may differ by."""

INIT_POLL_INTERVAL: Final = 0.1
"""Seconds between checks on a running init command."""


class HealthStatus(Enum):
    """Result of waiting for a node to become healthy."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    TIMED_OUT = "timed out"


@dataclass(frozen=True, slots=True)
class HealthOutcome:
    """Outcome of ``wait_healthy``."""

    status: HealthStatus
    """Healthy, unhealthy or timed out."""

    reason: str = ""
    """Last observation of the readiness probe or the exit status."""

    @property
    def healthy(self) -> bool:
        """Whether the node became healthy."""
        return self.status is HealthStatus.HEALTHY

    def __str__(self) -> str:
        return f"{self.status.value}: {self.reason}" if self.reason else self.status.value


class StopOutcome(Enum):
    """Result of stopping a node."""

    STOPPED = "stopped"
    """Exited on its own or after SIGTERM, or was not running."""

    FORCE_KILLED = "force-killed"
    """Ignored SIGTERM for the whole grace period and was killed."""


@dataclass(slots=True)
class RunningNode:
    """A launched node: its process, spec, health and log."""

    spec: NodeSpec
    """Planned node."""

    pid: int
    """Process id, also the process group id."""

    create_time: float
    """Process create time, to recognize pid reuse. Zero if unknown."""

    state: HealthState = HealthState.STARTING
    """Current health."""

    log: LogHandle | None = None
    """Log sink, None for nodes adopted from a run record."""

    reason: str | None = None
    """Why the node failed, if it did."""

    _popen: subprocess.Popen[bytes] | None = field(default=None, repr=False)
    """Process handle when this process launched the node."""

    @property
    def node_id(self) -> str:
        """Node identifier."""
        return self.spec.node_id

    @property
    def returncode(self) -> int | None:
        """Exit status, if known."""
        return self._popen.returncode if self._popen is not None else None

    def transition(self, target: HealthState) -> None:
        """
        Move to a new health state.

        Raises:
            RuntimeError: If the state machine forbids the transition.
        """
        if not self.state.can_transition_to(target):
            raise RuntimeError(
                f"{self.node_id}: invalid health transition {self.state.name} -> {target.name}"
            )
        self.state = target


@dataclass(slots=True)
class NodeProcessManager:
    """
    Launches, probes and stops the nodes of one topology.

    Holds no node handles itself; the caller owns every RunningNode it gets back.
    """

    topology: Topology
    """Topology the nodes belong to."""

    settings: TestnetSettings
    """Commands, timeouts and grace periods."""

    logs: LogAggregator
    """Log sinks of the run."""

    clock: Callable[[], float] = field(default=time.monotonic)
    """Monotonic time source for health deadlines."""

    async def launch(self, spec: NodeSpec, healthy: Mapping[str, RunningNode]) -> RunningNode:
        """
        Launch a node.

        Args:
            spec: Node to launch.
            healthy: Nodes already running, by id. Every dependency of spec must
                be among them and HEALTHY; their endpoints are rendered into the
                node's command line.

        Returns:
            The running node, in state STARTING.

        Raises:
            NodeLaunchFailed: If a dependency is not healthy, a port is taken, the
                template is broken, the init command fails or the binary cannot run.
        """
        not_ready = [
            dep
            for dep in spec.dependencies
            if dep not in healthy or healthy[dep].state is not HealthState.HEALTHY
        ]
        if not_ready:
            raise NodeLaunchFailed(
                spec.node_id, spec.role, f"dependencies not healthy: {', '.join(not_ready)}"
            )

        busy = busy_ports(spec.ports.all())
        if busy:
            raise NodeLaunchFailed(spec.node_id, spec.role, f"ports already in use: {busy}")

        command = self.settings.commands[spec.role]
        dependencies = {dep: healthy[dep].spec for dep in spec.dependencies}
        context = template_context(spec, self.topology, dependencies)
        try:
            argv = render_command(command, spec, dependencies, context)
            init_argv = render(command.init_command, context) if command.init_command else None
        except (KeyError, IndexError, ValueError) as e:
            raise NodeLaunchFailed(
                spec.node_id, spec.role, f"bad command template: {e!r}"
            ) from e

        spec.data_dir.mkdir(parents=True, exist_ok=True)
        log = self.logs.attach(spec)

        try:
            if init_argv is not None:
                await self._run_init(spec, init_argv, log)

            log.write_marker(f"exec {shlex.join(argv)}")
            popen = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=log.fileno(),
                stderr=subprocess.STDOUT,
                cwd=spec.data_dir,
                start_new_session=True,
            )
        except OSError as e:
            log.close()
            raise NodeLaunchFailed(
                spec.node_id, spec.role, f"could not execute {argv[0]}: {e}"
            ) from e
        except (NodeLaunchFailed, asyncio.CancelledError):
            log.close()
            raise

        node = RunningNode(
            spec=spec,
            pid=popen.pid,
            create_time=_create_time(popen.pid),
            log=log,
            _popen=popen,
        )
        logger.info("Launched %s (pid %d, rpc %d)", spec.node_id, popen.pid, spec.ports.rpc)
        logger.debug("%s command: %s", spec.node_id, shlex.join(argv))
        return node

    async def _run_init(self, spec: NodeSpec, argv: list[str], log: LogHandle) -> None:
        """
        Run the one-shot init command of a node to completion.

        The command gets its own process group. If it times out, or the launch
        is cancelled while it runs, the whole group is stopped before the error
        propagates.
        """
        log.write_marker(f"init {shlex.join(argv)}")
        try:
            popen = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=log.fileno(),
                stderr=subprocess.STDOUT,
                cwd=spec.data_dir,
                start_new_session=True,
            )
        except OSError as e:
            raise NodeLaunchFailed(
                spec.node_id, spec.role, f"could not execute init command {argv[0]}: {e}"
            ) from e

        timeout = self.settings.health_timeout
        deadline = self.clock() + timeout
        try:
            while (returncode := popen.poll()) is None:
                if self.clock() >= deadline:
                    raise NodeLaunchFailed(
                        spec.node_id, spec.role, f"init command timed out after {timeout:.0f}s"
                    )
                await asyncio.sleep(INIT_POLL_INTERVAL)
        except BaseException:
            await asyncio.to_thread(_terminate, popen, self.settings.stop_grace)
            raise

        if returncode != 0:
            raise NodeLaunchFailed(
                spec.node_id, spec.role, f"init command exited with code {returncode}"
            )

    def adopt(
        self, spec: NodeSpec, pid: int, create_time: float, state: HealthState
    ) -> RunningNode:
        """
        Track a node launched by another process, e.g. an earlier ``start``.

        Args:
            spec: Planned node.
            pid: Recorded process id.
            create_time: Recorded create time of that process.
            state: Recorded health state.
        """
        return RunningNode(spec=spec, pid=pid, create_time=create_time, state=state)

    def is_alive(self, node: RunningNode) -> bool:
        """Whether the node's process is still running."""
        if node._popen is not None:
            return node._popen.poll() is None

        proc = _psutil_process(node)
        if proc is None:
            return False
        try:
            return proc.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False

    async def wait_healthy(self, node: RunningNode, timeout: float | None = None) -> HealthOutcome:
        """
        Poll a node's readiness probe until it succeeds, fails or times out.

        Probes run every HEALTH_POLL_INTERVAL seconds, at most
        ``ceil(timeout / interval)`` times. A process that exits while being
        waited for is unhealthy.

        Args:
            node: Node in state STARTING.
            timeout: Seconds to wait (defaults to HEALTH_TIMEOUT).

        Returns:
            HEALTHY (node moves to HEALTHY), or UNHEALTHY / TIMED_OUT (node moves to FAILED).
        """
        timeout = self.settings.health_timeout if timeout is None else timeout
        interval = self.settings.health_poll_interval
        max_attempts = max(1, math.ceil(timeout / interval))
        deadline = self.clock() + timeout
        last = "no probe completed"

        async with httpx.AsyncClient(timeout=min(PROBE_TIMEOUT, timeout)) as client:
            for _ in range(max_attempts):
                if not self.is_alive(node):
                    return self._fail(
                        node,
                        HealthOutcome(
                            HealthStatus.UNHEALTHY, f"process exited with code {node.returncode}"
                        ),
                    )

                result = await probe(client, node.spec, self.topology)
                if result.ready:
                    node.transition(HealthState.HEALTHY)
                    logger.info("%s is healthy (%s)", node.node_id, result.detail)
                    return HealthOutcome(HealthStatus.HEALTHY, result.detail)

                last = result.detail
                if result.fatal:
                    return self._fail(node, HealthOutcome(HealthStatus.UNHEALTHY, result.detail))

                remaining = deadline - self.clock()
                if remaining <= 0:
                    break
                await asyncio.sleep(min(interval, remaining))

        return self._fail(
            node,
            HealthOutcome(
                HealthStatus.TIMED_OUT, f"not healthy after {timeout:.1f}s (last probe: {last})"
            ),
        )

    def _fail(self, node: RunningNode, outcome: HealthOutcome) -> HealthOutcome:
        """Record a failed startup on the node."""
        if outcome.status is HealthStatus.UNHEALTHY:
            node.transition(HealthState.UNHEALTHY)
        node.transition(HealthState.FAILED)
        node.reason = str(outcome)
        logger.error("%s failed to start: %s", node.node_id, outcome)
        return outcome

    async def stop(self, node: RunningNode, grace: float | None = None) -> StopOutcome:
        """
        Stop a node: SIGTERM, wait up to grace, then SIGKILL.

        Idempotent. Stopping a node that is already STOPPED, or whose process
        is gone, returns STOPPED without sending anything.

        Args:
            node: Node to stop.
            grace: Seconds to wait after SIGTERM (defaults to STOP_GRACE).

        Returns:
            STOPPED, or FORCE_KILLED if the node ignored SIGTERM.
        """
        if node.state is HealthState.STOPPED:
            return StopOutcome.STOPPED

        grace = self.settings.stop_grace if grace is None else grace
        outcome = StopOutcome.STOPPED

        if self.is_alive(node):
            logger.info("Stopping %s (pid %d)", node.node_id, node.pid)
            _signal_group(node.pid, signal.SIGTERM)

            if not await asyncio.to_thread(_wait_exit, node, grace):
                logger.warning("%s", StopFailed(node.node_id, grace).message)
                _signal_group(node.pid, signal.SIGKILL)
                await asyncio.to_thread(_wait_exit, node, KILL_WAIT)
                outcome = StopOutcome.FORCE_KILLED
        elif node._popen is not None:
            # Reap an exited child so it does not linger as a zombie.
            node._popen.poll()

        node.transition(HealthState.STOPPED)
        if node.log is not None:
            node.log.write_marker(f"{outcome.value} (exit code {node.returncode})")
            node.log.close()

        logger.info("%s %s", node.node_id, outcome.value)
        return outcome


def _create_time(pid: int) -> float:
    """Create time of a process, zero if it is already gone."""
    try:
        return psutil.Process(pid).create_time()
    except psutil.NoSuchProcess:
        return 0.0


def _psutil_process(node: RunningNode) -> psutil.Process | None:
    """The node's process, or None if it is gone or the pid now belongs to another process."""
    try:
        proc = psutil.Process(node.pid)
        if node.create_time and abs(proc.create_time() - node.create_time) > CREATE_TIME_TOLERANCE:
            return None
        return proc
    except psutil.NoSuchProcess:
        return None


def _signal_group(pid: int, sig: signal.Signals) -> None:
    """Signal a node's process group, falling back to the process alone."""
    try:
        os.killpg(pid, sig)
    except ProcessLookupError:
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            pass


def _wait_exit(node: RunningNode, timeout: float) -> bool:
    """Block until the node's process exits. Returns False on timeout."""
    if node._popen is not None:
        try:
            node._popen.wait(timeout=timeout)
            return True
        except subprocess.TimeoutExpired:
            return False

    proc = _psutil_process(node)
    if proc is None:
        return True
    try:
        proc.wait(timeout=timeout)
        return True
    except psutil.TimeoutExpired:
        return False
    except psutil.NoSuchProcess:
        return True


def _terminate(popen: subprocess.Popen[bytes], grace: float) -> None:
    """Stop a child and its process group: SIGTERM, then SIGKILL after grace."""
    _signal_group(popen.pid, signal.SIGTERM)
    try:
        popen.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        _signal_group(popen.pid, signal.SIGKILL)
        popen.wait(timeout=KILL_WAIT)
