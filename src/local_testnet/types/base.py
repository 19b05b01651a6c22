"""Reusable, immutable pydantic base models for the orchestrator."""

from typing import Any, Self

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """
    A base model that converts field names to camel case when serializing.

    For example, the field name `genesis_time` in a Python model will be
    represented as `genesisTime` when it is serialized to JSON.

    This keeps the persisted run record readable by non-Python tooling.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_default=True,
        arbitrary_types_allowed=True,
    )

    def copy(self: Self, **kwargs: Any) -> Self:
        """Create a copy of the model with the updated fields that are validated."""
        return self.__class__(**(self.model_dump(exclude_unset=True) | kwargs))


class FrozenModel(CamelModel):
    """An immutable pydantic base model that rejects unknown fields."""

    model_config = CamelModel.model_config | {
        "extra": "forbid",
        "frozen": True,
    }
