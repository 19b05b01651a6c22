"""
Network topology of a local test network.

A topology fixes, for one run, which nodes exist, which ports they listen on and
which other nodes each of them waits for before launching.
"""

from .planner import NodeCounts, distribute_validators, plan
from .ports import PortAllocator, busy_ports
from .spec import NodePorts, NodeSpec, Topology

__all__ = [
    "NodeCounts",
    "NodePorts",
    "NodeSpec",
    "PortAllocator",
    "Topology",
    "busy_ports",
    "distribute_validators",
    "plan",
]
