"""
Port planning for local test nodes.

Every role owns a port range starting at its base. Node ``i`` of a role gets the
block ``base + i * stride`` and uses the first four ports of it::

    offset 0   p2p
    offset 1   rpc (JSON-RPC or HTTP API)
    offset 2   metrics
    offset 3   engine API (execution nodes only)

The plan is a pure function of role, index and settings, so a run can be stopped
by a different process that only reads the run record.
"""

from __future__ import annotations

import socket
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Final

from local_testnet.types import NodeRole

from .spec import NodePorts

P2P_OFFSET: Final = 0
RPC_OFFSET: Final = 1
METRICS_OFFSET: Final = 2
ENGINE_OFFSET: Final = 3

LOCALHOST: Final = "127.0.0.1"


@dataclass(slots=True)
class PortAllocator:
    """
    Deterministic port allocator for the nodes of one run.

    Records every handed-out port with its owner so collisions between
    overlapping role ranges can be reported by name.
    """

    bases: Mapping[NodeRole, int]
    """First port of each role's range."""

    stride: int = 10
    """Ports reserved per node."""

    _owners: dict[int, list[str]] = field(default_factory=dict)
    """Node ids per allocated port."""

    def allocate(self, role: NodeRole, index: int, node_id: str) -> NodePorts:
        """
        Allocate the port block of a node.

        Args:
            role: Role of the node.
            index: Ordinal of the node within its role.
            node_id: Owner recorded for collision reports.

        Returns:
            The node's ports.
        """
        block = self.bases[role] + index * self.stride
        ports = NodePorts(
            p2p=block + P2P_OFFSET,
            rpc=block + RPC_OFFSET,
            metrics=block + METRICS_OFFSET,
            engine=block + ENGINE_OFFSET if role is NodeRole.EXECUTION else None,
        )
        for port in ports.all():
            self._owners.setdefault(port, []).append(node_id)
        return ports

    def collisions(self) -> dict[int, list[str]]:
        """Ports handed to more than one node."""
        return {port: owners for port, owners in self._owners.items() if len(owners) > 1}


def busy_ports(ports: Iterable[int], host: str = LOCALHOST) -> list[int]:
    """
    Find ports that cannot be bound on host.

    A leftover node from an earlier run that was never cleaned up shows up here,
    before the new node fails with a less obvious error.
    """
    busy = []
    for port in ports:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind((host, port))
            except OSError:
                busy.append(port)
    return busy
