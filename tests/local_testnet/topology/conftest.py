"""Fixtures for topology tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from local_testnet.genesis import GenesisBuilder, GenesisParams, GenesisSpec

NOW = 1_700_000_000.0
"""Frozen wall clock of topology tests."""


@pytest.fixture
def genesis(genesis_template: Path, tmp_path: Path) -> GenesisSpec:
    """Genesis with eight validators, 30 seconds after NOW."""
    return GenesisBuilder(time_fn=lambda: NOW).build(
        GenesisParams(network_id=4242, validator_count=8, genesis_delay=30),
        genesis_template,
        tmp_path / "run",
    )
