"""Reusable type definitions for the local testnet orchestrator."""

from .base import CamelModel, FrozenModel
from .roles import NetworkMode, NodeRole

__all__ = [
    "CamelModel",
    "FrozenModel",
    "NetworkMode",
    "NodeRole",
]
