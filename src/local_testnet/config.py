"""
Configuration for local test networks.

Defaults mirror the classic local testnet variables: a single execution/consensus
pair on chain 4242 with 80 validators, 3 second slots and a genesis three minutes
in the future.

Settings can be overridden with a YAML file using the same UPPERCASE keys::

    NETWORK_ID: 4242
    VALIDATOR_COUNT: 16
    GENESIS_DELAY: 30
    NODE_COUNT: 2
    COMMANDS:
      execution:
        COMMAND: ["geth", "--datadir", "{data_dir}", ...]
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, field_validator

from local_testnet.types import FrozenModel, NodeRole

DEFAULT_DATA_DIR = Path.home() / ".local-testnet"

DATA_DIR = Path(os.environ.get("LOCAL_TESTNET_DIR", DEFAULT_DATA_DIR)).expanduser()
"""Root directory holding run directories. Override with LOCAL_TESTNET_DIR."""

MIN_GENESIS_DELAY = 10
"""Minimum seconds between genesis generation and chain start."""


class NodeCommand(FrozenModel):
    """
    Command template for one node role.

    Every element is a ``str.format`` template rendered with the node's context:
    ports, data directory, genesis artifacts and resolved dependency endpoints.
    """

    command: list[str] = Field(alias="COMMAND", min_length=1)
    """Long-running node process."""

    init_command: list[str] | None = Field(default=None, alias="INIT_COMMAND")
    """One-shot command run to completion before the node starts (e.g. ``geth init``)."""

    peer_args: list[str] = Field(default_factory=list, alias="PEER_ARGS")
    """Appended when the node has bootstrap peers. ``{boot_peers}`` holds their addresses."""

    dependency_args: dict[NodeRole, list[str]] = Field(
        default_factory=dict, alias="DEPENDENCY_ARGS"
    )
    """Appended per dependency role once that dependency is healthy."""


DEFAULT_COMMANDS: dict[NodeRole, NodeCommand] = {
    NodeRole.EXECUTION: NodeCommand(
        command=[
            "geth",
            "--datadir", "{data_dir}",
            "--networkid", "{network_id}",
            "--port", "{p2p_port}",
            "--nodiscover",
            "--http",
            "--http.addr", "127.0.0.1",
            "--http.port", "{rpc_port}",
            "--http.api", "admin,eth,net,web3",
            "--authrpc.addr", "127.0.0.1",
            "--authrpc.port", "{engine_port}",
            "--authrpc.jwtsecret", "{jwt_secret}",
            "--metrics",
            "--metrics.addr", "127.0.0.1",
            "--metrics.port", "{metrics_port}",
            "--syncmode", "full",
        ],  # fmt: skip
        init_command=["geth", "init", "--datadir", "{data_dir}", "{execution_genesis}"],
    ),
    NodeRole.CONSENSUS: NodeCommand(
        command=[
            "lighthouse", "bn",
            "--datadir", "{data_dir}",
            "--testnet-dir", "{testnet_dir}",
            "--enable-private-discovery",
            "--disable-peer-scoring",
            "--staking",
            "--enr-address", "127.0.0.1",
            "--enr-udp-port", "{p2p_port}",
            "--enr-tcp-port", "{p2p_port}",
            "--port", "{p2p_port}",
            "--http-port", "{rpc_port}",
            "--metrics",
            "--metrics-port", "{metrics_port}",
            "--disable-packet-filter",
        ],  # fmt: skip
        peer_args=["--libp2p-addresses", "{boot_peers}"],
        dependency_args={
            NodeRole.EXECUTION: [
                "--execution-endpoint", "{execution_endpoint}",
                "--execution-jwt", "{jwt_secret}",
            ],  # fmt: skip
            NodeRole.BUILDER_RELAY: ["--builder", "{builder_endpoint}"],
        },
    ),
    NodeRole.BUILDER_RELAY: NodeCommand(
        command=[
            "{python}", "-m", "local_testnet.relay",
            "--port", "{rpc_port}",
            "--metrics-port", "{metrics_port}",
            "--network-id", "{network_id}",
            "--genesis-time", "{genesis_time}",
        ],  # fmt: skip
    ),
}
"""geth + lighthouse, with the bundled mock relay as builder."""

DEFAULT_PORT_BASES: dict[NodeRole, int] = {
    NodeRole.EXECUTION: 21000,
    NodeRole.CONSENSUS: 22000,
    NodeRole.BUILDER_RELAY: 23000,
}


class TestnetSettings(FrozenModel):
    """
    All tunables of a local test network run.

    Field names use UPPERCASE aliases to match the YAML configuration file.
    """

    __test__ = False

    network_id: int = Field(default=4242, alias="NETWORK_ID", gt=0)
    """Chain id and network id of the execution layer."""

    validator_count: int = Field(default=80, alias="VALIDATOR_COUNT", gt=0)
    """Number of genesis validators."""

    genesis_delay: int = Field(default=180, alias="GENESIS_DELAY", ge=MIN_GENESIS_DELAY)
    """Seconds between genesis generation and chain start."""

    seconds_per_slot: int = Field(default=3, alias="SECONDS_PER_SLOT", gt=0)
    """Slot duration of the consensus chain."""

    deposit_amount_gwei: int = Field(default=32_000_000_000, alias="DEPOSIT_AMOUNT_GWEI", gt=0)
    """Genesis deposit per validator."""

    initial_balance_wei: int = Field(default=10**24, alias="INITIAL_BALANCE_WEI", ge=0)
    """Execution-layer prefund of every validator address."""

    node_count: int = Field(default=1, alias="NODE_COUNT", gt=0)
    """Number of execution/consensus node pairs."""

    relay_count: int = Field(default=1, alias="RELAY_COUNT", gt=0)
    """Number of builder relays in blinded-block mode."""

    port_bases: dict[NodeRole, int] = Field(default_factory=dict, alias="PORT_BASES")
    """First port of each role's range."""

    port_stride: int = Field(default=10, alias="PORT_STRIDE", ge=4)
    """Ports reserved per node. Each node uses four (p2p, rpc, metrics, engine)."""

    health_timeout: float = Field(default=120.0, alias="HEALTH_TIMEOUT", gt=0)
    """Seconds a node may take to become healthy."""

    health_poll_interval: float = Field(default=0.5, alias="HEALTH_POLL_INTERVAL", gt=0)
    """Seconds between readiness probes."""

    stop_grace: float = Field(default=10.0, alias="STOP_GRACE", ge=0)
    """Seconds a node gets to exit after SIGTERM before it is killed."""

    commands: dict[NodeRole, NodeCommand] = Field(default_factory=dict, alias="COMMANDS")
    """Command template per role."""

    @field_validator("port_bases", mode="before")
    @classmethod
    def merge_port_bases(cls, v: Any) -> dict[Any, Any]:
        """Fill in default port bases for roles the file does not mention."""
        return {**DEFAULT_PORT_BASES, **_role_keys(v or {})}

    @field_validator("commands", mode="before")
    @classmethod
    def merge_commands(cls, v: Any) -> dict[Any, Any]:
        """Fill in default commands for roles the file does not mention."""
        return {**DEFAULT_COMMANDS, **_role_keys(v or {})}

    @classmethod
    def from_yaml_file(cls, path: Path | str) -> TestnetSettings:
        """
        Load settings from a YAML file.

        Raises:
            FileNotFoundError: If the file does not exist.
            yaml.YAMLError: If the file is not valid YAML.
            pydantic.ValidationError: If the data fails validation.
        """
        path = Path(path)
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return cls.model_validate(data or {})

    @classmethod
    def from_yaml(cls, content: str) -> TestnetSettings:
        """Load settings from a YAML string."""
        return cls.model_validate(yaml.safe_load(content) or {})


def _role_keys(mapping: Any) -> dict[Any, Any]:
    """Convert role names (``"execution"``) into NodeRole keys."""
    if not isinstance(mapping, dict):
        raise ValueError(f"expected a mapping keyed by role, got {type(mapping).__name__}")
    return {NodeRole(k) if isinstance(k, str) else k: v for k, v in mapping.items()}
