"""Correlated request/response calls over a broadcast channel.

Owns:
- the pending-call table of one client instance
- one shared response subscription per response topic, leased by the
  pending calls that need it
- per-call timeouts

Every pending call settles exactly once. Whichever terminal transition
happens first (response, timeout, publish failure, cancellation) wins;
later events for the same call are ignored.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import math
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from pyrelay._constants import (
    CALL_ID_PREFIX,
    CALL_ID_SUFFIX_BYTES,
    DEFAULT_CALL_TIMEOUT,
    request_topic,
    response_topic,
)
from pyrelay.channel import BroadcastChannel, BroadcastMessage, Destination, Subscription
from pyrelay.exceptions import (
    ChannelError,
    NoResponderError,
    RelayError,
    RelayValidationError,
    RemoteError,
)
from pyrelay.models.messages import RequestMessage, ResponseMessage
from pyrelay.models.operations import ApiOperation

_logger = logging.getLogger(__name__)

_MAX_ID_ATTEMPTS = 8


class CallState(enum.StrEnum):
    INIT = "init"
    SENT = "sent"
    RESOLVED = "resolved"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_STATES: frozenset[CallState] = frozenset(
    {CallState.RESOLVED, CallState.REJECTED, CallState.TIMED_OUT, CallState.CANCELLED}
)


def generate_call_id() -> str:
    """``call_<epoch ms>_<random hex>``.

    Collision-resistant in practice, not guaranteed unique.
    """
    return f"{CALL_ID_PREFIX}{int(time.time() * 1000)}_{secrets.token_hex(CALL_ID_SUFFIX_BYTES)}"


@dataclass(slots=True, eq=False)
class PendingCall:
    """A call waiting for its matching response."""

    call_id: str
    requester_id: str
    operation: ApiOperation
    future: asyncio.Future[Any]
    created_at: float = field(default_factory=time.monotonic)
    state: CallState = CallState.INIT
    timeout_handle: asyncio.TimerHandle | None = None
    lease: Subscription | None = None

    @property
    def settled(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.created_at


@dataclass(slots=True, eq=False)
class _TopicListener:
    subscription: Subscription
    refs: int = 0


class CorrelationClient:
    """Turns a one-way broadcast channel into call/response.

    Usage::

        client = CorrelationClient(channel, requester_id="player-1")
        result = await client.call(DiceRollRequest(expression="1d20"))
    """

    def __init__(
        self,
        channel: BroadcastChannel,
        *,
        requester_id: str,
        default_timeout: float = DEFAULT_CALL_TIMEOUT,
        destination: Destination = Destination.LOCAL,
        id_factory: Callable[[], str] = generate_call_id,
    ) -> None:
        if not requester_id.strip():
            raise RelayValidationError("requester_id must be non-empty")
        self._channel = channel
        self._requester_id = requester_id
        self._default_timeout = default_timeout
        self._destination = destination
        self._id_factory = id_factory
        self._pending: dict[str, PendingCall] = {}
        self._listeners: dict[str, _TopicListener] = {}
        self._closed = False

    @property
    def requester_id(self) -> str:
        return self._requester_id

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def listener_count(self) -> int:
        """Number of response topics currently subscribed."""
        return len(self._listeners)

    # ------------------------------------------------------------------
    # Shared response subscriptions
    # ------------------------------------------------------------------

    def _acquire_listener(self, topic: str) -> Subscription:
        listener = self._listeners.get(topic)
        if listener is None:
            subscription = self._channel.subscribe(topic, self._on_response)
            listener = _TopicListener(subscription=subscription)
            self._listeners[topic] = listener
            _logger.debug("Subscribed response topic=%s", topic)
        listener.refs += 1
        return Subscription(topic, lambda: self._release_listener(topic, listener))

    def _release_listener(self, topic: str, listener: _TopicListener) -> None:
        listener.refs -= 1
        if listener.refs > 0:
            return
        if self._listeners.get(topic) is listener:
            self._listeners.pop(topic, None)
        listener.subscription.unsubscribe()
        _logger.debug("Unsubscribed response topic=%s", topic)

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def _next_call_id(self) -> str:
        for _ in range(_MAX_ID_ATTEMPTS):
            call_id = self._id_factory()
            if call_id not in self._pending:
                return call_id
            _logger.warning("Generated call id %s collides with a pending call; regenerating", call_id)
        raise RelayError(f"Could not generate a unique call id after {_MAX_ID_ATTEMPTS} attempts")

    def _validate_timeout(self, timeout: float | None) -> float:
        effective = self._default_timeout if timeout is None else timeout
        if isinstance(effective, bool) or not isinstance(effective, (int, float)):
            raise RelayValidationError(f"timeout must be a number of seconds, got {effective!r}")
        if not math.isfinite(effective) or effective <= 0:
            raise RelayValidationError(f"timeout must be positive and finite, got {effective!r}")
        return float(effective)

    async def call(self, operation: ApiOperation, *, timeout: float | None = None) -> Any:
        """Publish ``operation`` and wait for the matching response.

        Returns
        -------
        Any
            ``operation.parse_result(data)`` of the peer's response.

        Raises
        ------
        RelayValidationError
            Invalid operation or timeout; nothing was published.
        NoResponderError
            No matching response within ``timeout`` seconds.
        RemoteError
            The peer replied ``ok: false``.
        ChannelError
            The channel refused the publish.
        """
        if self._closed:
            raise RelayError("CorrelationClient is closed")
        if not isinstance(operation, ApiOperation):
            raise RelayValidationError(f"operation must be an ApiOperation, got {type(operation).__name__}")
        effective_timeout = self._validate_timeout(timeout)

        loop = asyncio.get_running_loop()
        call_id = self._next_call_id()
        request = RequestMessage.for_operation(operation, call_id=call_id, requester_id=self._requester_id)
        pending = PendingCall(
            call_id=call_id,
            requester_id=self._requester_id,
            operation=operation,
            future=loop.create_future(),
        )

        # Register before publishing: a fast responder may reply before
        # publish() returns.
        try:
            pending.lease = self._acquire_listener(response_topic(operation.domain))
        except Exception as exc:
            raise ChannelError(
                f"Failed to subscribe for {operation.describe()} responses: {exc}",
                operation=operation.describe(),
                call_id=call_id,
            ) from exc
        self._pending[call_id] = pending
        pending.timeout_handle = loop.call_later(effective_timeout, self._on_timeout, pending, effective_timeout)

        topic = request_topic(operation.domain)
        _logger.debug("Call %s -> topic=%s operation=%s", call_id, topic, operation.describe())
        try:
            try:
                await self._channel.publish(topic, request.to_wire(), self._destination)
            except Exception as exc:
                _logger.debug("Publish failed call_id=%s", call_id, exc_info=True)
                self._settle(
                    pending,
                    CallState.REJECTED,
                    error=ChannelError(
                        f"Failed to publish {operation.describe()} on {topic}: {exc}",
                        operation=operation.describe(),
                        call_id=call_id,
                    ),
                )
            else:
                if pending.state is CallState.INIT:
                    pending.state = CallState.SENT
            return await pending.future
        finally:
            # Also covers cancellation while publish() is suspended.
            if not pending.settled:
                self._settle(pending, CallState.CANCELLED)

    def _settle(
        self,
        pending: PendingCall,
        state: CallState,
        *,
        result: Any = None,
        error: BaseException | None = None,
    ) -> bool:
        if pending.settled:
            return False
        pending.state = state

        handle = pending.timeout_handle
        pending.timeout_handle = None
        if handle is not None:
            handle.cancel()

        if self._pending.get(pending.call_id) is pending:
            del self._pending[pending.call_id]

        lease = pending.lease
        pending.lease = None
        if lease is not None:
            lease.unsubscribe()

        future = pending.future
        if not future.done():
            if state is CallState.CANCELLED:
                future.cancel()
            elif error is not None:
                future.set_exception(error)
            else:
                future.set_result(result)

        _logger.debug(
            "Call %s settled state=%s elapsed=%.3fs",
            pending.call_id,
            state,
            pending.elapsed,
        )
        return True

    def _on_timeout(self, pending: PendingCall, timeout: float) -> None:
        operation = pending.operation
        self._settle(
            pending,
            CallState.TIMED_OUT,
            error=NoResponderError(
                f"{operation.domain} API timeout ({round(timeout * 1000)}ms) for {operation.describe()}",
                timeout=timeout,
                operation=operation.describe(),
                call_id=pending.call_id,
            ),
        )

    def _on_response(self, message: BroadcastMessage) -> None:
        try:
            response = ResponseMessage.model_validate(message.data)
        except ValidationError:
            _logger.debug("Ignoring malformed response on topic=%s", message.topic)
            return

        pending = self._pending.get(response.call_id)
        if pending is None or pending.requester_id != response.requester_id:
            # Unknown, already settled, or addressed to another requester.
            return
        if message.topic != response_topic(pending.operation.domain):
            return

        operation = pending.operation
        if not response.ok:
            self._settle(
                pending,
                CallState.REJECTED,
                error=RemoteError(
                    response.error or f"Unknown {operation.domain} error",
                    operation=operation.describe(),
                    call_id=pending.call_id,
                ),
            )
            return

        try:
            result = operation.parse_result(response.data)
        except ValidationError as exc:
            self._settle(
                pending,
                CallState.REJECTED,
                error=RemoteError(
                    f"Malformed {operation.domain} response data: {exc.error_count()} validation error(s)",
                    operation=operation.describe(),
                    call_id=pending.call_id,
                ),
            )
            return
        self._settle(pending, CallState.RESOLVED, result=result)

    def close(self) -> None:
        """Cancel every pending call and drop all response subscriptions."""
        self._closed = True
        for pending in list(self._pending.values()):
            self._settle(pending, CallState.CANCELLED)
        for listener in list(self._listeners.values()):
            listener.subscription.unsubscribe()
        self._listeners.clear()
