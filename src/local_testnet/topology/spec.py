"""Planned nodes and the topology of a run."""

from __future__ import annotations

from collections import Counter
from pathlib import Path

from local_testnet.exceptions import TopologyInvalid
from local_testnet.genesis import GenesisSpec
from local_testnet.types import FrozenModel, NetworkMode, NodeRole


class NodePorts(FrozenModel):
    """Listen ports of one node."""

    p2p: int
    """Peer-to-peer port."""

    rpc: int
    """JSON-RPC / HTTP API port. Readiness probes target this port."""

    metrics: int
    """Metrics port."""

    engine: int | None = None
    """Engine API port. Execution nodes only."""

    def all(self) -> tuple[int, ...]:
        """Every port this node listens on."""
        ports = (self.p2p, self.rpc, self.metrics)
        return ports if self.engine is None else (*ports, self.engine)


class NodeSpec(FrozenModel):
    """
    One planned node.

    Carries everything needed to launch the node except the endpoints of its
    dependencies, which are resolved only once those report healthy.
    """

    role: NodeRole
    """What the node runs."""

    index: int
    """Ordinal within its role."""

    ports: NodePorts
    """Listen ports."""

    data_dir: Path
    """Node data directory inside the run directory."""

    dependencies: tuple[str, ...] = ()
    """Ids of nodes that must be healthy before this node launches."""

    peers: tuple[str, ...] = ()
    """Ids of same-role nodes passed as bootstrap peers. Not an ordering constraint."""

    validator_indices: tuple[int, ...] = ()
    """Genesis validators hosted by this node."""

    @property
    def node_id(self) -> str:
        """Stable identifier, e.g. ``consensus_0``."""
        return f"{self.role.value}_{self.index}"

    @property
    def rpc_url(self) -> str:
        """Base URL of the node's RPC/HTTP API."""
        return f"http://127.0.0.1:{self.ports.rpc}"

    @property
    def p2p_multiaddr(self) -> str:
        """libp2p address peers use to reach this node."""
        return f"/ip4/127.0.0.1/tcp/{self.ports.p2p}"


class Topology(FrozenModel):
    """
    Every node of one run, with its genesis and mode.

    The single source of truth for addressing: nodes find each other only
    through the ports recorded here.
    """

    run_id: str
    """Identifier of the run."""

    mode: NetworkMode
    """Standard or blinded-block production."""

    run_dir: Path
    """Directory owning every artifact of the run."""

    genesis: GenesisSpec
    """Genesis shared by every node."""

    nodes: tuple[NodeSpec, ...]
    """Nodes in planning order: relays, execution nodes, consensus nodes."""

    def get(self, node_id: str) -> NodeSpec:
        """Look up a node by id."""
        for node in self.nodes:
            if node.node_id == node_id:
                return node
        raise KeyError(node_id)

    @property
    def node_ids(self) -> tuple[str, ...]:
        """Node ids in planning order."""
        return tuple(node.node_id for node in self.nodes)

    def by_role(self, role: NodeRole) -> tuple[NodeSpec, ...]:
        """Nodes of one role, by index."""
        return tuple(node for node in self.nodes if node.role is role)

    def dependents(self, node_id: str) -> tuple[NodeSpec, ...]:
        """Nodes that declare node_id as a dependency."""
        return tuple(node for node in self.nodes if node_id in node.dependencies)

    def layers(self) -> tuple[tuple[NodeSpec, ...], ...]:
        """
        Group nodes into launch layers.

        Layer k holds the nodes whose dependencies all sit in layers < k.
        Within a layer nodes keep planning order. Stopping walks the layers
        backwards, so dependents always stop before their dependencies.

        Raises:
            TopologyInvalid: If the dependency graph has a cycle or a dangling edge.
        """
        remaining = {node.node_id: set(node.dependencies) for node in self.nodes}
        layers: list[tuple[NodeSpec, ...]] = []

        while remaining:
            ready = tuple(
                node
                for node in self.nodes
                if node.node_id in remaining and not remaining[node.node_id]
            )
            if not ready:
                raise TopologyInvalid(f"unresolvable dependencies among {sorted(remaining)}")

            layers.append(ready)
            done = {node.node_id for node in ready}
            for node_id in done:
                del remaining[node_id]
            for deps in remaining.values():
                deps -= done

        return tuple(layers)

    def validate_invariants(self, now: float) -> None:
        """
        Check the invariants every planned topology must satisfy.

        - node ids are unique
        - no two nodes share a port
        - every dependency names another node of this topology
        - the dependency graph is acyclic
        - genesis lies in the future, at least genesis_delay after its anchor

        Args:
            now: Current wall-clock time.

        Raises:
            TopologyInvalid: On the first violated invariant.
        """
        ids = Counter(self.node_ids)
        duplicates = sorted(node_id for node_id, count in ids.items() if count > 1)
        if duplicates:
            raise TopologyInvalid(f"duplicate node ids: {duplicates}")

        owners: dict[int, str] = {}
        for node in self.nodes:
            for port in node.ports.all():
                if port in owners:
                    raise TopologyInvalid(
                        f"port {port} assigned to both {owners[port]} and {node.node_id}"
                    )
                owners[port] = node.node_id

        for node in self.nodes:
            for dep in node.dependencies:
                if dep == node.node_id:
                    raise TopologyInvalid(f"{node.node_id} depends on itself")
                if dep not in ids:
                    raise TopologyInvalid(f"{node.node_id} depends on unknown node {dep}")

        self.layers()

        genesis = self.genesis
        if genesis.genesis_time <= now:
            raise TopologyInvalid(
                f"genesis time {genesis.genesis_time} is not in the future (now={now:.0f})"
            )
        if genesis.genesis_time < genesis.anchor_time + genesis.genesis_delay:
            raise TopologyInvalid(
                f"genesis time {genesis.genesis_time} is less than {genesis.genesis_delay}s "
                f"after its anchor {genesis.anchor_time:.0f}"
            )
