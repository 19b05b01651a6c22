"""
Shared fixtures for local_testnet tests.

End-to-end tests run ``helpers/fake_node.py`` as the binary of every role, so
the whole lifecycle is exercised with real processes, ports and signals.
"""

from __future__ import annotations

import itertools
import json
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

import pytest

from local_testnet.config import MIN_GENESIS_DELAY, NodeCommand, TestnetSettings
from local_testnet.genesis import GenesisBuilder, GenesisParams
from local_testnet.lifecycle import LifecycleController
from local_testnet.topology import NodeCounts, Topology, plan
from local_testnet.types import NetworkMode, NodeRole
from tests.local_testnet.helpers import fake_command

_port_blocks = itertools.count()


@pytest.fixture
def port_bases() -> dict[NodeRole, int]:
    """
    Port bases unique to this test.

    Each test gets its own 300-port block so consecutive runs never race for ports.
    """
    base = 31000 + next(_port_blocks) * 300
    return {
        NodeRole.EXECUTION: base,
        NodeRole.CONSENSUS: base + 100,
        NodeRole.BUILDER_RELAY: base + 200,
    }


@pytest.fixture
def genesis_template(tmp_path: Path) -> Path:
    """Minimal execution genesis template."""
    path = tmp_path / "genesis-template.json"
    path.write_text(
        json.dumps(
            {
                "config": {"chainId": 1, "londonBlock": 0, "terminalTotalDifficulty": 0},
                "alloc": {"0x" + "11" * 20: {"balance": "0x1"}},
                "gasLimit": "0x1c9c380",
                "difficulty": "0x0",
            }
        ),
        encoding="utf-8",
    )
    return path


@pytest.fixture
def make_settings(port_bases: dict[NodeRole, int]) -> Callable[..., TestnetSettings]:
    """Factory for fast settings running fake nodes on this test's ports."""

    def _create(
        commands: dict[NodeRole, NodeCommand] | None = None, **overrides: Any
    ) -> TestnetSettings:
        fields: dict[str, Any] = {
            "validator_count": 4,
            "genesis_delay": MIN_GENESIS_DELAY,
            "health_timeout": 10.0,
            "health_poll_interval": 0.1,
            "stop_grace": 3.0,
            "port_bases": port_bases,
            "commands": {role: fake_command(role) for role in NodeRole} | (commands or {}),
        }
        fields.update(overrides)
        return TestnetSettings(**fields)

    return _create


@pytest.fixture
def settings(make_settings: Callable[..., TestnetSettings]) -> TestnetSettings:
    """Default fast settings."""
    return make_settings()


@pytest.fixture
def make_topology(
    settings: TestnetSettings, genesis_template: Path, tmp_path: Path
) -> Callable[..., Topology]:
    """Factory planning a topology on this test's ports."""

    def _create(mode: NetworkMode = NetworkMode.STANDARD) -> Topology:
        run_dir = tmp_path / "run"
        genesis = GenesisBuilder().build(
            GenesisParams(
                network_id=settings.network_id,
                validator_count=settings.validator_count,
                genesis_delay=settings.genesis_delay,
            ),
            genesis_template,
            run_dir,
        )
        return plan(mode, NodeCounts(), genesis, settings, run_dir, "run-1")

    return _create


@pytest.fixture
def topology(make_topology: Callable[..., Topology]) -> Topology:
    """Standard topology: one execution and one consensus node."""
    return make_topology()


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Data directory of the test's runs."""
    return tmp_path / "data"


@pytest.fixture
async def cleanup_runs(settings: TestnetSettings, data_dir: Path) -> AsyncGenerator[None, None]:
    """
    Stop and remove whatever run the test leaves in data_dir.

    Uses a fresh controller, so it also covers controllers the test built itself.
    """
    yield
    await LifecycleController(settings=settings, data_dir=data_dir).clean()


@pytest.fixture
def controller(
    settings: TestnetSettings, data_dir: Path, cleanup_runs: None
) -> LifecycleController:
    """Provide a lifecycle controller with automatic cleanup."""
    return LifecycleController(settings=settings, data_dir=data_dir)
