"""Helpers shared by local_testnet tests."""

from __future__ import annotations

from pathlib import Path

from local_testnet.config import NodeCommand
from local_testnet.types import NodeRole

FAKE_NODE = Path(__file__).parent / "fake_node.py"
"""Stand-in node binary."""


def fake_command(role: NodeRole, *extra: str) -> NodeCommand:
    """Command template running the fake node for a role."""
    return NodeCommand(
        command=[
            "{python}", str(FAKE_NODE),
            "--role", role.value,
            "--port", "{rpc_port}",
            "--network-id", "{network_id}",
            *extra,
        ],  # fmt: skip
        peer_args=["--boot-peers", "{boot_peers}"],
        dependency_args={
            NodeRole.EXECUTION: ["--execution-endpoint", "{execution_endpoint}"],
            NodeRole.BUILDER_RELAY: ["--builder", "{builder_endpoint}"],
        },
    )


__all__ = ["FAKE_NODE", "fake_command"]
