"""
Genesis generation.

Turns a handful of parameters into everything the nodes need to agree on a chain:

- the execution genesis (chain id, timestamp, prefunded validator accounts)
- the consensus config (genesis time, slot time, validator public keys)
- per-validator key files
- the engine API secret shared by paired execution and consensus nodes
"""

from __future__ import annotations

import json
import logging
import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from cryptography.exceptions import UnsupportedAlgorithm
from pydantic import ValidationError

from local_testnet.exceptions import GenerationFailed, InvalidParams

from .config import ConsensusGenesisConfig, GenesisParams, GenesisSpec
from .keys import ValidatorKey, derive_jwt_secret, derive_validator_key

logger = logging.getLogger(__name__)

GENESIS_DIR_NAME = "genesis"
"""Name of the genesis directory inside the run directory."""


@dataclass(slots=True)
class GenesisBuilder:
    """
    Builds the genesis of a run.

    Output is deterministic for given parameters and template, except for the
    wall-clock anchor the genesis time is computed from.
    """

    time_fn: Callable[[], float] = field(default=time.time)
    """Time source (injectable for deterministic testing)."""

    def build(
        self,
        params: GenesisParams | Mapping[str, Any],
        template_path: Path | str,
        output_dir: Path | str,
    ) -> GenesisSpec:
        """
        Generate genesis artifacts and key material.

        Args:
            params: Genesis parameters, validated if given as a mapping.
            template_path: Execution genesis JSON to start from.
            output_dir: Run directory. Artifacts go into its ``genesis`` subdirectory.

        Returns:
            A GenesisSpec with the paths of every written artifact.

        Raises:
            InvalidParams: If the parameters are out of range.
            GenerationFailed: If the template is unusable or writing fails.
        """
        if not isinstance(params, GenesisParams):
            try:
                params = GenesisParams.model_validate(params)
            except ValidationError as e:
                raise InvalidParams(f"invalid genesis parameters: {e}") from e

        # Round the anchor up so genesis_time >= anchor + delay holds exactly.
        anchor = self.time_fn()
        genesis_time = math.ceil(anchor) + params.genesis_delay

        genesis_dir = Path(output_dir) / GENESIS_DIR_NAME
        keys_dir = genesis_dir / "keys"

        try:
            template = _load_template(Path(template_path))
            keys = [
                derive_validator_key(params.network_id, i) for i in range(params.validator_count)
            ]

            keys_dir.mkdir(parents=True, exist_ok=True)
            for key in keys:
                (keys_dir / f"validator_{key.index}.json").write_text(
                    json.dumps(key.to_json(), indent=2), encoding="utf-8"
                )

            execution_genesis = genesis_dir / "genesis.json"
            execution_genesis.write_text(
                json.dumps(_execution_genesis(template, params, genesis_time, keys), indent=2),
                encoding="utf-8",
            )

            consensus_config = genesis_dir / "config.yaml"
            consensus_config.write_text(
                ConsensusGenesisConfig(
                    genesis_time=genesis_time,
                    genesis_delay=params.genesis_delay,
                    seconds_per_slot=params.seconds_per_slot,
                    deposit_chain_id=params.network_id,
                    deposit_network_id=params.network_id,
                    deposit_amount_gwei=params.deposit_amount_gwei,
                    num_validators=params.validator_count,
                    genesis_validators=["0x" + key.pubkey.hex() for key in keys],
                ).to_yaml(),
                encoding="utf-8",
            )

            jwt_secret = genesis_dir / "jwtsecret"
            jwt_secret.write_text(derive_jwt_secret(params.network_id).hex(), encoding="utf-8")

        except (OSError, ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise GenerationFailed(f"could not generate genesis in {genesis_dir}: {e}") from e

        logger.info(
            "Genesis generated: network=%d validators=%d genesis_time=%d (in %ds)",
            params.network_id,
            params.validator_count,
            genesis_time,
            params.genesis_delay,
        )

        return GenesisSpec(
            network_id=params.network_id,
            genesis_time=genesis_time,
            anchor_time=anchor,
            genesis_delay=params.genesis_delay,
            validator_count=params.validator_count,
            seconds_per_slot=params.seconds_per_slot,
            deposit_amount_gwei=params.deposit_amount_gwei,
            initial_balance_wei=params.initial_balance_wei,
            genesis_dir=genesis_dir,
            execution_genesis=execution_genesis,
            consensus_config=consensus_config,
            keys_dir=keys_dir,
            jwt_secret=jwt_secret,
        )


def _load_template(path: Path) -> dict[str, Any]:
    """Read the execution genesis template and check its overall shape."""
    with path.open(encoding="utf-8") as f:
        template = json.load(f)

    if not isinstance(template, dict):
        raise ValueError(f"genesis template {path} must be a JSON object")
    if not isinstance(template.get("config", {}), dict):
        raise ValueError(f"genesis template {path} has a non-object 'config'")
    if not isinstance(template.get("alloc", {}), dict):
        raise ValueError(f"genesis template {path} has a non-object 'alloc'")
    return template


def _execution_genesis(
    template: dict[str, Any],
    params: GenesisParams,
    genesis_time: int,
    keys: list[ValidatorKey],
) -> dict[str, Any]:
    """
    Fill the template with this run's chain id, timestamp and prefunds.

    Template accounts are kept; a validator address already present keeps its entry.
    """
    genesis = dict(template)
    genesis["config"] = {**template.get("config", {}), "chainId": params.network_id}
    genesis["timestamp"] = hex(genesis_time)

    alloc = dict(template.get("alloc", {}))
    if params.initial_balance_wei > 0:
        for key in keys:
            alloc.setdefault("0x" + key.address.hex(), {"balance": hex(params.initial_balance_wei)})
    genesis["alloc"] = alloc

    return genesis
