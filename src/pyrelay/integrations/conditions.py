"""Condition markers (poisoned, stunned, ...) on scene tokens."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from pyrelay.correlation import CorrelationClient
from pyrelay.exceptions import CallError, RelayValidationError
from pyrelay.models.operations import AddConditionRequest, RemoveConditionRequest
from pyrelay.models.results import ConditionAck

_logger = logging.getLogger(__name__)


class ConditionMarkers:
    """Add/remove markers through the ``conditionmarkers`` API."""

    def __init__(self, client: CorrelationClient, *, timeout: float | None = None) -> None:
        self._client = client
        self._timeout = timeout

    async def _send(self, request: AddConditionRequest | RemoveConditionRequest, timeout: float | None) -> ConditionAck:
        try:
            ack: ConditionAck = await self._client.call(
                request,
                timeout=timeout if timeout is not None else self._timeout,
            )
        except CallError as exc:
            _logger.warning("Failed to %s: %s", request.describe(), exc)
            raise
        _logger.debug("Condition API response for %s: %s", request.describe(), ack.raw)
        return ack

    async def add_condition(
        self,
        token_id: str,
        condition: str,
        *,
        value: Any = None,
        timeout: float | None = None,
    ) -> ConditionAck:
        try:
            request = AddConditionRequest(token_id=token_id, condition=condition, value=value)
        except ValidationError as exc:
            raise RelayValidationError(f"Invalid condition request: {exc}") from exc
        return await self._send(request, timeout)

    async def remove_condition(
        self,
        token_id: str,
        condition: str,
        *,
        timeout: float | None = None,
    ) -> ConditionAck:
        try:
            request = RemoveConditionRequest(token_id=token_id, condition=condition)
        except ValidationError as exc:
            raise RelayValidationError(f"Invalid condition request: {exc}") from exc
        return await self._send(request, timeout)
