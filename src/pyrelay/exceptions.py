"""Custom exception hierarchy for pyrelay."""

from __future__ import annotations


class RelayError(Exception):
    """Base exception for all pyrelay errors."""


class RelayConfigError(RelayError):
    """Invalid or missing configuration."""


class RelayValidationError(RelayError):
    """Malformed call input, raised before any message is published."""


class CallError(RelayError):
    """A correlated call settled unsuccessfully."""

    def __init__(
        self,
        message: str,
        *,
        operation: str = "",
        call_id: str = "",
    ) -> None:
        self.operation = operation
        self.call_id = call_id
        super().__init__(message)


class NoResponderError(CallError):
    """No matching response arrived within the timeout window.

    Distinct from :class:`RemoteError` so callers can tell "nobody
    answered" apart from "the peer refused".
    """

    def __init__(
        self,
        message: str,
        *,
        timeout: float,
        operation: str = "",
        call_id: str = "",
    ) -> None:
        self.timeout = timeout
        super().__init__(message, operation=operation, call_id=call_id)


class RemoteError(CallError):
    """The peer replied with ``ok: false``; carries the peer's message."""


class ChannelError(CallError):
    """Publishing the request on the broadcast channel failed."""


class StoreWriteError(RelayError):
    """Durable write failed (quota, I/O, serialization).

    Absorbed by :class:`pyrelay.cache.StateCache`; callers of ``set()``
    never see it.
    """

    def __init__(self, message: str, *, key: str = "") -> None:
        self.key = key
        super().__init__(message)


class StoreQuotaExceededError(StoreWriteError):
    """The store refused a write because it would exceed its quota."""
