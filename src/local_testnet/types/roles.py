"""Node roles and network modes."""

from __future__ import annotations

from enum import Enum


class NodeRole(Enum):
    """
    Kind of process a node in the test network runs.

    Values double as the prefix of node identifiers and log file names.
    """

    EXECUTION = "execution"
    """Execution-layer client (e.g. geth). Serves JSON-RPC and the engine API."""

    CONSENSUS = "consensus"
    """Consensus-layer beacon node. Drives its paired execution node."""

    BUILDER_RELAY = "builder_relay"
    """Block builder/relay sidecar. Only present in blinded-block mode."""


class NetworkMode(Enum):
    """Shape of the network to boot."""

    STANDARD = "standard"
    """Execution and consensus node pairs only."""

    BLINDED = "blinded"
    """
    Blinded block production.

    Adds builder relays; every consensus node proposes through a relay.
    """
