"""Topology planning: which nodes a run has, where they listen and what they wait for."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path

from local_testnet.config import TestnetSettings
from local_testnet.exceptions import InvalidParams, TopologyInvalid
from local_testnet.genesis import GenesisSpec
from local_testnet.types import NetworkMode, NodeRole

from .ports import PortAllocator
from .spec import NodeSpec, Topology

logger = logging.getLogger(__name__)

NODES_DIR_NAME = "nodes"
"""Name of the directory holding node data directories inside the run directory."""


@dataclass(frozen=True, slots=True)
class NodeCounts:
    """How many nodes of each role to plan."""

    execution: int = 1
    """Execution nodes."""

    consensus: int = 1
    """Consensus nodes. Each is paired with the execution node of the same index."""

    builder_relay: int = 1
    """Builder relays. Ignored in standard mode."""

    @classmethod
    def from_settings(cls, settings: TestnetSettings) -> NodeCounts:
        """One execution/consensus pair per NODE_COUNT, RELAY_COUNT relays."""
        return cls(
            execution=settings.node_count,
            consensus=settings.node_count,
            builder_relay=settings.relay_count,
        )


def distribute_validators(num_validators: int, num_nodes: int) -> list[list[int]]:
    """
    Distribute validators evenly across nodes.

    Args:
        num_validators: Number of validators.
        num_nodes: Number of nodes.

    Returns:
        List of validator indices for each node.
    """
    if num_nodes == 0:
        return []

    distribution: list[list[int]] = [[] for _ in range(num_nodes)]
    for i in range(num_validators):
        distribution[i % num_nodes].append(i)

    return distribution


def plan(
    mode: NetworkMode,
    counts: NodeCounts,
    genesis: GenesisSpec,
    settings: TestnetSettings,
    run_dir: Path,
    run_id: str,
    now: float | None = None,
) -> Topology:
    """
    Plan the nodes of a run.

    Dependency edges:

    - consensus_i depends on execution_i (its engine API peer)
    - in blinded mode, consensus_i also depends on builder_relay_(i mod relays)
    - relays and execution nodes depend on nothing

    Consensus node i lists consensus nodes 0..i-1 as bootstrap peers; their
    addresses come straight from the port plan, so peers are not dependencies.

    Args:
        mode: Standard or blinded-block production.
        counts: Nodes per role.
        genesis: Genesis of the run.
        settings: Port bases and stride.
        run_dir: Directory owning the run's artifacts.
        run_id: Identifier of the run.
        now: Reference time for the genesis invariant (defaults to the wall clock).

    Returns:
        A validated topology.

    Raises:
        InvalidParams: If the node counts cannot form a network.
        TopologyInvalid: If the plan violates a topology invariant.
    """
    if counts.execution < 1 or counts.consensus < 1:
        raise InvalidParams("at least one execution and one consensus node are required")
    if counts.execution != counts.consensus:
        raise InvalidParams(
            f"every consensus node needs a paired execution node "
            f"(execution={counts.execution}, consensus={counts.consensus})"
        )

    relays = counts.builder_relay if mode is NetworkMode.BLINDED else 0
    if mode is NetworkMode.BLINDED and relays < 1:
        raise InvalidParams("blinded-block mode requires at least one builder relay")

    allocator = PortAllocator(bases=settings.port_bases, stride=settings.port_stride)
    nodes_dir = run_dir / NODES_DIR_NAME
    nodes: list[NodeSpec] = []

    def make(role: NodeRole, index: int, **extra: object) -> NodeSpec:
        node_id = f"{role.value}_{index}"
        return NodeSpec(
            role=role,
            index=index,
            ports=allocator.allocate(role, index, node_id),
            data_dir=nodes_dir / node_id,
            **extra,
        )

    for i in range(relays):
        nodes.append(make(NodeRole.BUILDER_RELAY, i))

    for i in range(counts.execution):
        nodes.append(make(NodeRole.EXECUTION, i))

    validators = distribute_validators(genesis.validator_count, counts.consensus)
    for i in range(counts.consensus):
        deps = [f"{NodeRole.EXECUTION.value}_{i}"]
        if relays:
            deps.append(f"{NodeRole.BUILDER_RELAY.value}_{i % relays}")
        nodes.append(
            make(
                NodeRole.CONSENSUS,
                i,
                dependencies=tuple(deps),
                peers=tuple(f"{NodeRole.CONSENSUS.value}_{j}" for j in range(i)),
                validator_indices=tuple(validators[i]),
            )
        )

    collisions = allocator.collisions()
    if collisions:
        port = min(collisions)
        raise TopologyInvalid(f"port {port} assigned to {', '.join(collisions[port])}")

    topology = Topology(
        run_id=run_id,
        mode=mode,
        run_dir=run_dir,
        genesis=genesis,
        nodes=tuple(nodes),
    )
    topology.validate_invariants(time.time() if now is None else now)

    logger.info(
        "Planned %s topology: %s",
        mode.value,
        ", ".join(
            f"{node.node_id}@{node.ports.rpc}" for node in topology.nodes
        ),
    )
    return topology
