"""Dice rolling through the ``justdices`` request/response API."""

from __future__ import annotations

import logging

from pydantic import ValidationError

from pyrelay.correlation import CorrelationClient
from pyrelay.exceptions import CallError, RelayValidationError
from pyrelay.models.operations import DiceRollRequest
from pyrelay.models.results import RollResult

_logger = logging.getLogger(__name__)


def hidden_expression(expression: str, hidden: bool) -> str:
    """Hidden rolls are requested by prefixing the formula with ``/``."""
    if hidden and not expression.startswith("/"):
        return f"/{expression}"
    return expression


class DiceRoller:
    def __init__(self, client: CorrelationClient, *, timeout: float | None = None) -> None:
        self._client = client
        self._timeout = timeout

    async def roll_object(
        self,
        expression: str,
        *,
        hidden: bool = False,
        show_in_logs: bool = True,
        timeout: float | None = None,
    ) -> RollResult:
        """Roll ``expression`` (e.g. ``"3d6+2"``) and return the full result."""
        if not isinstance(expression, str):
            raise RelayValidationError(f"expression must be a string, got {type(expression).__name__}")
        try:
            request = DiceRollRequest(
                expression=hidden_expression(expression.strip(), hidden),
                show_in_logs=show_in_logs,
            )
        except ValidationError as exc:
            raise RelayValidationError(f"Invalid dice roll {expression!r}: {exc}") from exc

        try:
            result: RollResult = await self._client.call(
                request,
                timeout=timeout if timeout is not None else self._timeout,
            )
        except CallError as exc:
            _logger.warning("Dice roll failed: %s", exc)
            raise
        return result

    async def roll(
        self,
        expression: str,
        *,
        hidden: bool = False,
        show_in_logs: bool = True,
        timeout: float | None = None,
    ) -> int | float | None:
        """Roll ``expression`` and return only the total."""
        result = await self.roll_object(expression, hidden=hidden, show_in_logs=show_in_logs, timeout=timeout)
        return result.total

    async def roll_silent(self, expression: str, *, hidden: bool = False) -> int | float | None:
        return await self.roll(expression, hidden=hidden, show_in_logs=False)

    async def roll_object_silent(self, expression: str, *, hidden: bool = False) -> RollResult:
        return await self.roll_object(expression, hidden=hidden, show_in_logs=False)
