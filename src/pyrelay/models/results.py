"""Typed results returned by integration calls."""

from __future__ import annotations

from typing import Any

from pydantic import Field, model_validator

from pyrelay.models._base import RelayBaseModel


class RollResult(RelayBaseModel):
    """A dice roll as reported by the dice responder."""

    expression: str | None = None
    total: int | float | None = None
    rolls: list[Any] = Field(default_factory=list)
    raw: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _stash_raw(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        if "raw" in values:
            return values
        return {**values, "raw": dict(values)}


class ConditionAck(RelayBaseModel):
    """Acknowledgement for a condition marker change."""

    token_id: str
    condition: str
    raw: dict[str, Any] = Field(default_factory=dict)
