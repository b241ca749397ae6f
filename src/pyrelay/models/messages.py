"""Request/response envelopes exchanged on ``<domain>.api.*`` topics."""

from __future__ import annotations

from typing import Any

from pydantic import ConfigDict, field_validator

from pyrelay.models._base import RelayBaseModel
from pyrelay.models.operations import ApiOperation


class RequestMessage(RelayBaseModel):
    """``{callId, requesterId, ...operation fields}``."""

    model_config = ConfigDict(extra="allow")

    call_id: str
    requester_id: str

    @classmethod
    def for_operation(cls, operation: ApiOperation, *, call_id: str, requester_id: str) -> RequestMessage:
        return cls.model_validate(
            {
                **operation.wire_fields(),
                "callId": call_id,
                "requesterId": requester_id,
            }
        )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class ResponseMessage(RelayBaseModel):
    """``{callId, requesterId, ok, data?, error?}``."""

    call_id: str
    requester_id: str
    ok: bool
    data: Any = None
    error: str | None = None

    @field_validator("error", mode="before")
    @classmethod
    def _coerce_error(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
