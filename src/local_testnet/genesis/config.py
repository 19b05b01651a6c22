"""Genesis parameters, the produced genesis artifacts and the consensus config file.

The consensus config uses the cross-client YAML convention:

    GENESIS_TIME: 1704085200
    GENESIS_DELAY: 180
    SECONDS_PER_SLOT: 3
    NUM_VALIDATORS: 2
    GENESIS_VALIDATORS:
    - '0x02a03c16122c7e0f940e2301aa460c54a2e1e8343968bb2782f26636f051e65e1c'
    - '0x030767e65924063f79ae92ee1953685f06718b1756cc665a299bd61b4b82055e37'
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, field_validator, model_validator

from local_testnet.config import MIN_GENESIS_DELAY, TestnetSettings
from local_testnet.types import FrozenModel

PUBKEY_HEX_LENGTH = 66
"""Hex digits of a compressed secp256k1 public key."""


class GenesisParams(FrozenModel):
    """Inputs of genesis generation."""

    network_id: int = Field(gt=0)
    """Chain id written into both genesis artifacts."""

    validator_count: int = Field(gt=0)
    """Number of validators to derive keys for."""

    genesis_delay: int = Field(ge=MIN_GENESIS_DELAY)
    """
    Seconds between generation and chain start.

    Every node has to load genesis before slot 0, so anything shorter than
    MIN_GENESIS_DELAY is rejected.
    """

    seconds_per_slot: int = Field(default=3, gt=0)
    """Slot duration."""

    deposit_amount_gwei: int = Field(default=32_000_000_000, gt=0)
    """Genesis deposit per validator."""

    initial_balance_wei: int = Field(default=0, ge=0)
    """Execution-layer prefund of every validator address. Zero disables prefunding."""

    @classmethod
    def from_settings(cls, settings: TestnetSettings) -> GenesisParams:
        """Take the genesis-related fields of the run settings."""
        return cls(
            network_id=settings.network_id,
            validator_count=settings.validator_count,
            genesis_delay=settings.genesis_delay,
            seconds_per_slot=settings.seconds_per_slot,
            deposit_amount_gwei=settings.deposit_amount_gwei,
            initial_balance_wei=settings.initial_balance_wei,
        )


class GenesisSpec(FrozenModel):
    """
    Genesis of one run, as consumed by every node at startup.

    Produced once by the builder, never modified afterwards.
    """

    network_id: int
    """Chain id."""

    genesis_time: int
    """Unix timestamp at which slot 0 begins."""

    anchor_time: float
    """Wall-clock time genesis_time was computed from."""

    genesis_delay: int
    """Seconds between anchor_time and genesis_time (lower bound)."""

    validator_count: int
    """Number of genesis validators."""

    seconds_per_slot: int
    """Slot duration."""

    deposit_amount_gwei: int
    """Genesis deposit per validator."""

    initial_balance_wei: int
    """Execution-layer prefund of every validator address."""

    genesis_dir: Path
    """Directory holding every artifact below. Passed to consensus nodes as testnet dir."""

    execution_genesis: Path
    """Execution genesis JSON."""

    consensus_config: Path
    """Consensus config YAML."""

    keys_dir: Path
    """Directory of per-validator key files."""

    jwt_secret: Path
    """Engine API secret (hex)."""


class ConsensusGenesisConfig(FrozenModel):
    """
    Consensus-layer genesis configuration.

    Field names use UPPERCASE aliases to match the cross-client YAML convention.
    """

    genesis_time: int = Field(alias="GENESIS_TIME")
    """Unix timestamp when slot 0 begins."""

    genesis_delay: int = Field(alias="GENESIS_DELAY")
    """Delay that was applied when genesis was generated."""

    seconds_per_slot: int = Field(alias="SECONDS_PER_SLOT")
    """Slot duration."""

    deposit_chain_id: int = Field(alias="DEPOSIT_CHAIN_ID")
    """Execution chain id of the deposit contract."""

    deposit_network_id: int = Field(alias="DEPOSIT_NETWORK_ID")
    """Execution network id of the deposit contract."""

    deposit_amount_gwei: int = Field(alias="DEPOSIT_AMOUNT_GWEI")
    """Genesis deposit per validator."""

    num_validators: int | None = Field(default=None, alias="NUM_VALIDATORS")
    """Informational validator count, checked against GENESIS_VALIDATORS when present."""

    genesis_validators: list[str] = Field(alias="GENESIS_VALIDATORS")
    """Compressed public keys of the genesis validators, 0x-prefixed hex."""

    @field_validator("genesis_validators", mode="before")
    @classmethod
    def parse_hex_pubkeys(cls, v: Any) -> list[str]:
        """
        Normalize public keys to 0x-prefixed lowercase hex.

        YAML parsers may interpret unquoted 0x-prefixed values as integers.
        """
        if not isinstance(v, list):
            raise ValueError(f"genesis_validators must be a list, got {type(v).__name__}")

        result = []
        for pk in v:
            if isinstance(pk, int):
                pk = f"0x{pk:0{PUBKEY_HEX_LENGTH}x}"
            if not isinstance(pk, str) or not pk.startswith("0x"):
                raise ValueError(f"invalid public key: {pk!r}")
            if len(pk) != PUBKEY_HEX_LENGTH + 2:
                raise ValueError(f"public key must be {PUBKEY_HEX_LENGTH} hex digits: {pk}")
            result.append(pk.lower())
        return result

    @model_validator(mode="after")
    def validate_num_validators_consistency(self) -> ConsensusGenesisConfig:
        """Verify num_validators matches actual count when provided."""
        if self.num_validators is not None:
            actual_count = len(self.genesis_validators)
            if self.num_validators != actual_count:
                raise ValueError(
                    f"NUM_VALIDATORS ({self.num_validators}) does not match "
                    f"actual validator count ({actual_count})"
                )
        return self

    def to_yaml(self) -> str:
        """Render as the YAML file handed to consensus nodes."""
        return yaml.safe_dump(
            self.model_dump(mode="json", by_alias=True, exclude_none=True),
            sort_keys=False,
        )

    @classmethod
    def from_yaml_file(cls, path: Path | str) -> ConsensusGenesisConfig:
        """
        Load configuration from a YAML file.

        Raises:
            FileNotFoundError: If the file does not exist.
            yaml.YAMLError: If the file is not valid YAML.
            pydantic.ValidationError: If the data fails validation.
        """
        path = Path(path)
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return cls.model_validate(data)

    @classmethod
    def from_yaml(cls, content: str) -> ConsensusGenesisConfig:
        """Load configuration from a YAML string."""
        return cls.model_validate(yaml.safe_load(content))
