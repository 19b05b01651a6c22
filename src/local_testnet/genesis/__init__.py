"""
Genesis generation for local test networks.

Genesis is the shared starting point of the chain. Every execution and consensus
node of a run loads the same artifacts before slot 0.
"""

from .builder import GenesisBuilder
from .config import ConsensusGenesisConfig, GenesisParams, GenesisSpec
from .keys import ValidatorKey, derive_jwt_secret, derive_validator_key

__all__ = [
    "ConsensusGenesisConfig",
    "GenesisBuilder",
    "GenesisParams",
    "GenesisSpec",
    "ValidatorKey",
    "derive_jwt_secret",
    "derive_validator_key",
]
