"""Fixtures for process supervision tests."""

from __future__ import annotations

import contextlib
import os
import signal
from collections.abc import Callable, Iterator

import pytest

from local_testnet.config import NodeCommand, TestnetSettings
from local_testnet.logs import LOGS_DIR_NAME, LogAggregator
from local_testnet.process import NodeProcessManager, RunningNode
from local_testnet.topology import Topology
from local_testnet.types import NodeRole


@pytest.fixture
def launched() -> Iterator[list[RunningNode]]:
    """
    Nodes a test launched.

    Whatever is still running when the test ends is killed with its process group.
    """
    nodes: list[RunningNode] = []
    yield nodes
    for node in nodes:
        with contextlib.suppress(ProcessLookupError):
            os.killpg(node.pid, signal.SIGKILL)
        if node._popen is not None:
            node._popen.wait()
        if node.log is not None:
            node.log.close()


@pytest.fixture
def make_manager(
    make_settings: Callable[..., TestnetSettings], topology: Topology
) -> Callable[..., NodeProcessManager]:
    """Factory for managers of the standard topology with per-role command overrides."""

    def _create(**commands: NodeCommand) -> NodeProcessManager:
        settings = make_settings({NodeRole(role): cmd for role, cmd in commands.items()})
        return NodeProcessManager(
            topology=topology,
            settings=settings,
            logs=LogAggregator(topology.run_dir / LOGS_DIR_NAME),
        )

    return _create


@pytest.fixture
def manager(make_manager: Callable[..., NodeProcessManager]) -> NodeProcessManager:
    """Manager running fake nodes for every role."""
    return make_manager()
