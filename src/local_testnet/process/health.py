"""
Readiness probes per node role.

A probe answers one question: has this node finished starting up? It never
judges chain progress; a consensus node waiting for genesis is ready.

All probes target the node's RPC port on localhost:

- execution: JSON-RPC ``eth_chainId`` must answer the run's network id
- consensus: ``GET /eth/v1/node/health`` must answer 200 (ready) or 206 (syncing)
- builder relay: ``GET /eth/v1/builder/status`` must answer 200
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Final

import httpx

from local_testnet.topology import NodeSpec, Topology
from local_testnet.types import NodeRole

PROBE_TIMEOUT: Final = 2.0
"""Seconds a single probe request may take."""

CONSENSUS_HEALTH_ENDPOINT: Final = "/eth/v1/node/health"
"""Beacon API node health endpoint."""

BUILDER_STATUS_ENDPOINT: Final = "/eth/v1/builder/status"
"""Builder API status endpoint."""

CONSENSUS_READY_STATUSES: Final = frozenset({200, 206})
"""206 means syncing, which before genesis is the normal state of a started node."""


@dataclass(frozen=True, slots=True)
class ProbeResult:
    """Outcome of one readiness probe."""

    ready: bool
    """Whether the node finished starting up."""

    detail: str
    """What was observed."""

    fatal: bool = False
    """Whether the node can never become ready (e.g. it serves the wrong chain)."""


Probe = Callable[[httpx.AsyncClient, NodeSpec, Topology], Awaitable[ProbeResult]]


async def probe_execution(
    client: httpx.AsyncClient, spec: NodeSpec, topology: Topology
) -> ProbeResult:
    """Ask the execution node for its chain id."""
    response = await client.post(
        spec.rpc_url,
        json={"jsonrpc": "2.0", "id": 1, "method": "eth_chainId", "params": []},
    )
    if response.status_code != 200:
        return ProbeResult(False, f"eth_chainId returned HTTP {response.status_code}")

    body = response.json()
    result = body.get("result") if isinstance(body, dict) else None
    if not isinstance(result, str):
        return ProbeResult(False, f"eth_chainId returned no result: {str(body)[:200]}")

    chain_id = int(result, 16)
    expected = topology.genesis.network_id
    if chain_id != expected:
        return ProbeResult(False, f"serves chain {chain_id}, expected {expected}", fatal=True)
    return ProbeResult(True, f"chain {chain_id}")


async def probe_consensus(
    client: httpx.AsyncClient, spec: NodeSpec, _topology: Topology
) -> ProbeResult:
    """Query the beacon node health endpoint."""
    response = await client.get(f"{spec.rpc_url}{CONSENSUS_HEALTH_ENDPOINT}")
    ready = response.status_code in CONSENSUS_READY_STATUSES
    return ProbeResult(ready, f"node health returned HTTP {response.status_code}")


async def probe_builder_relay(
    client: httpx.AsyncClient, spec: NodeSpec, _topology: Topology
) -> ProbeResult:
    """Query the builder status endpoint."""
    response = await client.get(f"{spec.rpc_url}{BUILDER_STATUS_ENDPOINT}")
    ok = response.status_code == 200
    return ProbeResult(ok, f"builder status returned HTTP {response.status_code}")


PROBES: Final[dict[NodeRole, Probe]] = {
    NodeRole.EXECUTION: probe_execution,
    NodeRole.CONSENSUS: probe_consensus,
    NodeRole.BUILDER_RELAY: probe_builder_relay,
}
"""Readiness probe per role."""


async def probe(client: httpx.AsyncClient, spec: NodeSpec, topology: Topology) -> ProbeResult:
    """
    Run the readiness probe of a node's role.

    Connection problems are not errors: a node that does not listen yet is
    simply not ready.
    """
    try:
        return await PROBES[spec.role](client, spec, topology)
    except httpx.TransportError as e:
        return ProbeResult(False, f"not reachable: {type(e).__name__}")
    except ValueError as e:
        # Malformed JSON or chain id; the node answers but is not a usable endpoint yet.
        return ProbeResult(False, f"unparseable response: {e}")
