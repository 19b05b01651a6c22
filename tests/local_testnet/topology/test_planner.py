"""Tests for topology planning."""

from __future__ import annotations

from pathlib import Path

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from local_testnet.config import TestnetSettings
from local_testnet.exceptions import InvalidParams, TopologyInvalid
from local_testnet.genesis import GenesisSpec
from local_testnet.topology import NodeCounts, Topology, distribute_validators, plan
from local_testnet.types import NetworkMode, NodeRole


def _plan(
    genesis: GenesisSpec,
    mode: NetworkMode = NetworkMode.STANDARD,
    counts: NodeCounts | None = None,
    settings: TestnetSettings | None = None,
) -> Topology:
    return plan(
        mode,
        counts or NodeCounts(),
        genesis,
        settings or TestnetSettings(),
        Path("/tmp/run"),
        "run-1",
        now=genesis.anchor_time + 1,
    )


class TestDistributeValidators:
    """Round-robin validator assignment."""

    def test_even_split(self) -> None:
        """Validators spread evenly across nodes."""
        assert distribute_validators(6, 3) == [[0, 3], [1, 4], [2, 5]]

    def test_uneven_split(self) -> None:
        """Earlier nodes take the remainder."""
        assert distribute_validators(5, 2) == [[0, 2, 4], [1, 3]]

    def test_no_nodes(self) -> None:
        """Zero nodes get nothing."""
        assert distribute_validators(4, 0) == []


class TestStandardMode:
    """Execution/consensus pairs without a relay."""

    def test_single_pair(self, genesis: GenesisSpec) -> None:
        """One execution node, one consensus node depending on it."""
        topology = _plan(genesis)

        assert topology.node_ids == ("execution_0", "consensus_0")
        assert topology.get("consensus_0").dependencies == ("execution_0",)
        assert topology.get("execution_0").dependencies == ()
        assert topology.by_role(NodeRole.BUILDER_RELAY) == ()

    def test_relay_count_ignored(self, genesis: GenesisSpec) -> None:
        """Standard mode plans no relays even if some are requested."""
        topology = _plan(genesis, counts=NodeCounts(builder_relay=3))
        assert topology.by_role(NodeRole.BUILDER_RELAY) == ()

    def test_ports_follow_role_bases(self, genesis: GenesisSpec) -> None:
        """Node i of a role uses base + i * stride + offset."""
        topology = _plan(genesis, counts=NodeCounts(execution=2, consensus=2))

        ports = topology.get("execution_1").ports
        assert (ports.p2p, ports.rpc, ports.metrics, ports.engine) == (21010, 21011, 21012, 21013)
        assert topology.get("consensus_0").ports.engine is None
        assert topology.get("consensus_0").ports.rpc == 22001

    def test_peers_and_validators(self, genesis: GenesisSpec) -> None:
        """Consensus nodes bootstrap from earlier ones and split the validators."""
        topology = _plan(genesis, counts=NodeCounts(execution=3, consensus=3))

        assert topology.get("consensus_0").peers == ()
        assert topology.get("consensus_2").peers == ("consensus_0", "consensus_1")
        assert topology.get("consensus_1").validator_indices == (1, 4, 7)
        assert topology.get("execution_1").validator_indices == ()

    def test_data_dirs_in_run_dir(self, genesis: GenesisSpec) -> None:
        """Each node gets its own data directory under the run."""
        topology = _plan(genesis)
        assert topology.get("consensus_0").data_dir == Path("/tmp/run/nodes/consensus_0")

    def test_layers(self, genesis: GenesisSpec) -> None:
        """Execution nodes form the first layer, consensus nodes the second."""
        layers = _plan(genesis, counts=NodeCounts(execution=2, consensus=2)).layers()

        assert [[n.node_id for n in layer] for layer in layers] == [
            ["execution_0", "execution_1"],
            ["consensus_0", "consensus_1"],
        ]


class TestBlindedMode:
    """Blinded-block production adds relays and edges."""

    def test_relay_is_a_dependency(self, genesis: GenesisSpec) -> None:
        """Consensus nodes depend on their paired execution node and a relay."""
        topology = _plan(genesis, NetworkMode.BLINDED)

        assert topology.node_ids == ("builder_relay_0", "execution_0", "consensus_0")
        assert topology.get("consensus_0").dependencies == ("execution_0", "builder_relay_0")
        assert topology.mode is NetworkMode.BLINDED

    def test_relays_assigned_round_robin(self, genesis: GenesisSpec) -> None:
        """With fewer relays than consensus nodes, relays are shared."""
        topology = _plan(
            genesis,
            NetworkMode.BLINDED,
            NodeCounts(execution=3, consensus=3, builder_relay=2),
        )

        assert topology.get("consensus_2").dependencies == ("execution_2", "builder_relay_0")
        assert topology.dependents("builder_relay_0") == (
            topology.get("consensus_0"),
            topology.get("consensus_2"),
        )

    def test_relays_in_first_layer(self, genesis: GenesisSpec) -> None:
        """Relays and execution nodes launch before any consensus node."""
        layers = _plan(genesis, NetworkMode.BLINDED).layers()

        assert [n.node_id for n in layers[0]] == ["builder_relay_0", "execution_0"]
        assert [n.node_id for n in layers[1]] == ["consensus_0"]

    def test_requires_a_relay(self, genesis: GenesisSpec) -> None:
        """Blinded mode without relays is rejected."""
        with pytest.raises(InvalidParams):
            _plan(genesis, NetworkMode.BLINDED, NodeCounts(builder_relay=0))


class TestRejectedPlans:
    """Counts and port plans that cannot work."""

    @pytest.mark.parametrize(
        "counts",
        [
            NodeCounts(execution=0, consensus=0),
            NodeCounts(execution=1, consensus=0),
            NodeCounts(execution=2, consensus=1),
        ],
    )
    def test_invalid_counts(self, genesis: GenesisSpec, counts: NodeCounts) -> None:
        """Every consensus node needs exactly one paired execution node."""
        with pytest.raises(InvalidParams):
            _plan(genesis, counts=counts)

    def test_overlapping_port_bases(self, genesis: GenesisSpec) -> None:
        """Role ranges that overlap are a topology violation."""
        settings = TestnetSettings(
            port_bases={NodeRole.EXECUTION: 30000, NodeRole.CONSENSUS: 30010}
        )

        with pytest.raises(TopologyInvalid, match="port 30010"):
            _plan(genesis, counts=NodeCounts(execution=2, consensus=2), settings=settings)

    def test_genesis_in_the_past(self, genesis: GenesisSpec) -> None:
        """Planning after genesis time is rejected."""
        with pytest.raises(TopologyInvalid, match="not in the future"):
            plan(
                NetworkMode.STANDARD,
                NodeCounts(),
                genesis,
                TestnetSettings(),
                Path("/tmp/run"),
                "run-1",
                now=genesis.genesis_time + 1,
            )


class TestInvariants:
    """Properties every planned topology satisfies."""

    @settings(max_examples=50, suppress_health_check=[HealthCheck.function_scoped_fixture])
    @given(
        pairs=st.integers(min_value=1, max_value=8),
        relays=st.integers(min_value=1, max_value=4),
        stride=st.integers(min_value=4, max_value=20),
        mode=st.sampled_from(NetworkMode),
    )
    def test_ports_unique_and_graph_sound(
        self, genesis: GenesisSpec, pairs: int, relays: int, stride: int, mode: NetworkMode
    ) -> None:
        """No shared port, no dangling edge, no cycle, dependencies in earlier layers."""
        topology = _plan(
            genesis,
            mode,
            NodeCounts(execution=pairs, consensus=pairs, builder_relay=relays),
            TestnetSettings(port_stride=stride),
        )

        ports = [port for node in topology.nodes for port in node.ports.all()]
        assert len(ports) == len(set(ports))

        layer_of = {
            node.node_id: depth
            for depth, layer in enumerate(topology.layers())
            for node in layer
        }
        assert set(layer_of) == set(topology.node_ids)
        for node in topology.nodes:
            for dep in node.dependencies:
                assert layer_of[dep] < layer_of[node.node_id]
