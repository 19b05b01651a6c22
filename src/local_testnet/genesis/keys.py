"""
Interop validator key material.

Keys are derived, never sampled: the same network id and validator index always
yield the same key. This makes a regenerated genesis bit-identical apart from its
timestamp, which is what test networks want and what production must never do.

Derivation follows the HKDF-mod-r idea of EIP-2333: expand 48 bytes of HKDF-SHA256
output and reduce them onto the curve order, which keeps the modulo bias negligible.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Final

from Crypto.Hash import keccak
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

SECP256K1_ORDER: Final = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
"""Order of the secp256k1 group."""

KEY_SALT: Final = b"local-testnet-interop-keys"
"""HKDF salt shared by every derived secret."""

_OKM_LENGTH: Final = 48


@dataclass(frozen=True, slots=True)
class ValidatorKey:
    """Key material of one genesis validator."""

    index: int
    """Validator index."""

    secret: bytes
    """32-byte big-endian secret scalar."""

    pubkey: bytes
    """33-byte compressed public key."""

    address: bytes
    """20-byte execution-layer address controlled by this key."""

    def to_json(self) -> dict[str, Any]:
        """Serialize as the JSON document written into the keys directory."""
        return {
            "index": self.index,
            "pubkey": "0x" + self.pubkey.hex(),
            "address": "0x" + self.address.hex(),
            "secret": "0x" + self.secret.hex(),
        }


def _derive(network_id: int, label: bytes, length: int) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=KEY_SALT,
        info=label,
    )
    return hkdf.derive(f"network:{network_id}".encode())


def derive_validator_key(network_id: int, index: int) -> ValidatorKey:
    """
    Derive the key of a validator.

    Args:
        network_id: Network the key belongs to. Different networks never share keys.
        index: Validator index.

    Returns:
        The validator's secret, compressed public key and execution address.
    """
    okm = _derive(network_id, f"validator:{index}".encode(), _OKM_LENGTH)

    # Map into [1, n-1]; zero is not a valid secret.
    scalar = int.from_bytes(okm, "big") % (SECP256K1_ORDER - 1) + 1
    private_key = ec.derive_private_key(scalar, ec.SECP256K1())
    public_key = private_key.public_key()

    compressed = public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.CompressedPoint,
    )
    uncompressed = public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint,
    )

    return ValidatorKey(
        index=index,
        secret=scalar.to_bytes(32, "big"),
        pubkey=compressed,
        address=execution_address(uncompressed),
    )


def execution_address(uncompressed_pubkey: bytes) -> bytes:
    """
    Compute the execution-layer address of a public key.

    The address is the last 20 bytes of Keccak-256 over the 64-byte point,
    without the 0x04 SEC1 prefix.
    """
    k = keccak.new(digest_bits=256)
    k.update(uncompressed_pubkey[1:])
    return k.digest()[-20:]


def derive_jwt_secret(network_id: int) -> bytes:
    """Derive the 32-byte engine API secret shared by execution and consensus nodes."""
    return _derive(network_id, b"engine-jwt", 32)
