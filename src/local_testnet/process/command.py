"""Rendering of node command templates."""

from __future__ import annotations

import sys
from collections.abc import Mapping
from typing import Any

from local_testnet.config import NodeCommand
from local_testnet.topology import NodeSpec, Topology
from local_testnet.types import NodeRole


def template_context(
    spec: NodeSpec,
    topology: Topology,
    dependencies: Mapping[str, NodeSpec],
) -> dict[str, Any]:
    """
    Build the placeholder values available to a node's command template.

    Dependency endpoints are present only for roles the node actually depends on:

    - ``execution_endpoint``, ``execution_rpc``: paired execution node
    - ``builder_endpoint``: builder relay

    Args:
        spec: Node to launch.
        topology: Topology of the run.
        dependencies: Resolved (healthy) dependencies by node id.
    """
    genesis = topology.genesis
    context: dict[str, Any] = {
        "python": sys.executable,
        "node_id": spec.node_id,
        "role": spec.role.value,
        "index": spec.index,
        "data_dir": spec.data_dir,
        "p2p_port": spec.ports.p2p,
        "rpc_port": spec.ports.rpc,
        "metrics_port": spec.ports.metrics,
        "engine_port": spec.ports.engine,
        "network_id": genesis.network_id,
        "genesis_time": genesis.genesis_time,
        "seconds_per_slot": genesis.seconds_per_slot,
        "testnet_dir": genesis.genesis_dir,
        "execution_genesis": genesis.execution_genesis,
        "consensus_config": genesis.consensus_config,
        "keys_dir": genesis.keys_dir,
        "jwt_secret": genesis.jwt_secret,
        "validator_indices": ",".join(str(i) for i in spec.validator_indices),
        "boot_peers": ",".join(topology.get(peer).p2p_multiaddr for peer in spec.peers),
    }

    for dep in dependencies.values():
        if dep.role is NodeRole.EXECUTION:
            context["execution_endpoint"] = f"http://127.0.0.1:{dep.ports.engine}"
            context["execution_rpc"] = dep.rpc_url
        elif dep.role is NodeRole.BUILDER_RELAY:
            context["builder_endpoint"] = dep.rpc_url

    return context


def render(template: list[str], context: Mapping[str, Any]) -> list[str]:
    """
    Fill every element of a command template.

    Raises:
        KeyError: If the template references a placeholder absent from context.
    """
    return [part.format_map(context) for part in template]


def render_command(
    command: NodeCommand,
    spec: NodeSpec,
    dependencies: Mapping[str, NodeSpec],
    context: Mapping[str, Any],
) -> list[str]:
    """
    Render the full argv of a node.

    Peer arguments are added when the node has bootstrap peers, dependency
    arguments for every role the node depends on, in dependency order.
    """
    argv = render(command.command, context)

    if spec.peers and command.peer_args:
        argv += render(command.peer_args, context)

    seen: set[NodeRole] = set()
    for dep_id in spec.dependencies:
        role = dependencies[dep_id].role
        if role in seen:
            continue
        seen.add(role)
        argv += render(command.dependency_args.get(role, []), context)

    return argv
