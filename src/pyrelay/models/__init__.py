"""Wire and result models."""

from pyrelay.models.messages import RequestMessage, ResponseMessage
from pyrelay.models.operations import (
    AddConditionRequest,
    ApiOperation,
    DiceRollRequest,
    RawOperation,
    RemoveConditionRequest,
    RequestOperation,
    parse_operation,
)
from pyrelay.models.results import ConditionAck, RollResult

__all__ = [
    "AddConditionRequest",
    "ApiOperation",
    "ConditionAck",
    "DiceRollRequest",
    "RawOperation",
    "RemoveConditionRequest",
    "RequestMessage",
    "RequestOperation",
    "ResponseMessage",
    "RollResult",
    "parse_operation",
]
