"""Mock builder relay used as the default builder in blinded-block mode."""

from .server import RelayConfig, RelayServer, SignedValidatorRegistration

__all__ = [
    "RelayConfig",
    "RelayServer",
    "SignedValidatorRegistration",
]
