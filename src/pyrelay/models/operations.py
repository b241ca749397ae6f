"""Request operations carried over the broadcast channel.

Each logical operation is one member of the :data:`RequestOperation`
discriminated union, tagged by an internal ``operation`` field that is
never put on the wire. The operation knows its domain (and thus its
request/response topics), which fields it sends, and how to turn a
successful response ``data`` into a typed result.
"""

from __future__ import annotations

from typing import Annotated, Any, ClassVar, Literal

from pydantic import Field, TypeAdapter, field_validator

from pyrelay.models._base import RelayBaseModel
from pyrelay.models.results import ConditionAck, RollResult

# Envelope keys owned by the correlation layer.
RESERVED_KEYS: frozenset[str] = frozenset({"callId", "requesterId"})


def _non_empty(value: str, name: str) -> str:
    stripped = value.strip()
    if not stripped:
        raise ValueError(f"{name} must be non-empty")
    return stripped


class ApiOperation(RelayBaseModel):
    """Base for request operations."""

    DOMAIN: ClassVar[str] = ""

    operation: str = Field(exclude=True)

    @property
    def domain(self) -> str:
        return self.DOMAIN

    def wire_fields(self) -> dict[str, Any]:
        """Operation-specific request fields, camelCase."""
        return self.model_dump(by_alias=True, exclude_none=True)

    def describe(self) -> str:
        """Short human-readable form used in error messages and logs."""
        return self.operation

    def parse_result(self, data: Any) -> Any:
        return data


class DiceRollRequest(ApiOperation):
    """Roll a dice expression (e.g. ``"1d20+5"``) through the dice extension."""

    DOMAIN: ClassVar[str] = "justdices"

    operation: Literal["justdices.roll"] = Field(default="justdices.roll", exclude=True)
    expression: str
    show_in_logs: bool = True

    @field_validator("expression")
    @classmethod
    def _expression_non_empty(cls, value: str) -> str:
        return _non_empty(value, "expression")

    def describe(self) -> str:
        return f"roll {self.expression}"

    def parse_result(self, data: Any) -> RollResult:
        return RollResult.model_validate(data if isinstance(data, dict) else {})


class _ConditionRequest(ApiOperation):
    DOMAIN: ClassVar[str] = "conditionmarkers"

    token_id: str
    condition: str

    @field_validator("token_id")
    @classmethod
    def _token_non_empty(cls, value: str) -> str:
        return _non_empty(value, "token_id")

    @field_validator("condition")
    @classmethod
    def _condition_non_empty(cls, value: str) -> str:
        return _non_empty(value, "condition")

    def parse_result(self, data: Any) -> ConditionAck:
        raw = data if isinstance(data, dict) else {}
        return ConditionAck(token_id=self.token_id, condition=self.condition, raw=raw)


class AddConditionRequest(_ConditionRequest):
    """Attach a condition marker to a token."""

    operation: Literal["conditionmarkers.add"] = Field(default="conditionmarkers.add", exclude=True)
    action: Literal["add"] = "add"
    value: Any = None

    def describe(self) -> str:
        return f"add condition {self.condition!r} to {self.token_id}"


class RemoveConditionRequest(_ConditionRequest):
    """Detach a condition marker from a token."""

    operation: Literal["conditionmarkers.remove"] = Field(default="conditionmarkers.remove", exclude=True)
    action: Literal["remove"] = "remove"

    def describe(self) -> str:
        return f"remove condition {self.condition!r} from {self.token_id}"


class RawOperation(ApiOperation):
    """Untyped call for domains without a dedicated operation model.

    ``payload`` is sent verbatim; the result is the response ``data``.
    """

    operation: Literal["raw"] = Field(default="raw", exclude=True)
    target_domain: str = Field(exclude=True)
    payload: dict[str, Any] = Field(default_factory=dict, exclude=True)

    @field_validator("target_domain")
    @classmethod
    def _domain_non_empty(cls, value: str) -> str:
        return _non_empty(value, "target_domain")

    @field_validator("payload")
    @classmethod
    def _no_reserved_keys(cls, value: dict[str, Any]) -> dict[str, Any]:
        clashing = sorted(RESERVED_KEYS.intersection(value))
        if clashing:
            raise ValueError(f"payload must not set reserved keys {clashing}")
        return value

    @property
    def domain(self) -> str:
        return self.target_domain

    def wire_fields(self) -> dict[str, Any]:
        return dict(self.payload)

    def describe(self) -> str:
        action = self.payload.get("action")
        return f"{self.target_domain}.{action}" if isinstance(action, str) else self.target_domain


RequestOperation = Annotated[
    DiceRollRequest | AddConditionRequest | RemoveConditionRequest | RawOperation,
    Field(discriminator="operation"),
]

_OPERATION_ADAPTER: TypeAdapter[RequestOperation] = TypeAdapter(RequestOperation)


def parse_operation(data: dict[str, Any]) -> ApiOperation:
    """Validate a tagged dict (``{"operation": ..., ...}``) into its operation model."""
    return _OPERATION_ADAPTER.validate_python(data)
