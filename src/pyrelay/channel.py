"""Broadcast channel interface and the in-process implementation.

A broadcast channel is a one-to-many, fire-and-forget publish/subscribe
primitive. It has no notion of correlation and only delivers best-effort
to currently-connected peers; :mod:`pyrelay.correlation` layers
request/response semantics on top of it.
"""

from __future__ import annotations

import asyncio
import copy
import enum
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

_logger = logging.getLogger(__name__)


class Destination(enum.StrEnum):
    """Delivery scope of a published message."""

    LOCAL = "LOCAL"
    REMOTE = "REMOTE"
    ALL = "ALL"

    @property
    def includes_local(self) -> bool:
        return self in (Destination.LOCAL, Destination.ALL)

    @property
    def includes_remote(self) -> bool:
        return self in (Destination.REMOTE, Destination.ALL)


@dataclass(frozen=True)
class BroadcastMessage:
    """A message as seen by subscribers."""

    topic: str
    data: dict[str, Any]
    destination: Destination = Destination.LOCAL


MessageHandler = Callable[[BroadcastMessage], None]


class Subscription:
    """Cancellable handle returned by :meth:`BroadcastChannel.subscribe`.

    ``unsubscribe()`` is idempotent; only the first call reaches the
    channel.
    """

    __slots__ = ("topic", "_cancel")

    def __init__(self, topic: str, cancel: Callable[[], None]) -> None:
        self.topic = topic
        self._cancel: Callable[[], None] | None = cancel

    @property
    def active(self) -> bool:
        return self._cancel is not None

    def unsubscribe(self) -> None:
        cancel = self._cancel
        self._cancel = None
        if cancel is not None:
            cancel()


class BroadcastChannel(Protocol):
    """Structural interface for broadcast transports.

    Implementations must tolerate unrelated traffic on every topic and
    make no ordering or delivery promises.
    """

    async def publish(
        self,
        topic: str,
        payload: dict[str, Any],
        destination: Destination = Destination.LOCAL,
    ) -> None: ...

    def subscribe(self, topic: str, handler: MessageHandler) -> Subscription: ...


@dataclass(eq=False)
class _Subscriber:
    handler: MessageHandler
    subscription: Subscription | None = field(default=None)


class LocalDispatcher:
    """Topic -> subscriber registry delivering on an asyncio loop.

    Delivery is always deferred with ``call_soon`` so a publisher never
    runs subscriber code inline, and a failing handler never affects the
    publisher or other subscribers.
    """

    def __init__(self, *, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop
        self._subscribers: dict[str, list[_Subscriber]] = {}

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, []))

    def subscribe(self, topic: str, handler: MessageHandler) -> Subscription:
        subscriber = _Subscriber(handler=handler)
        self._subscribers.setdefault(topic, []).append(subscriber)

        def _cancel() -> None:
            current = self._subscribers.get(topic)
            if current is None:
                return
            remaining = [cand for cand in current if cand is not subscriber]
            if remaining:
                self._subscribers[topic] = remaining
            else:
                self._subscribers.pop(topic, None)

        subscription = Subscription(topic, _cancel)
        subscriber.subscription = subscription
        return subscription

    def dispatch(self, message: BroadcastMessage) -> None:
        """Schedule delivery of ``message`` to the current subscribers."""
        subscribers = list(self._subscribers.get(message.topic, []))
        if not subscribers:
            _logger.debug("No local subscribers topic=%s", message.topic)
            return
        loop = self._get_loop()
        for subscriber in subscribers:
            loop.call_soon(self._deliver, subscriber, message)

    def dispatch_threadsafe(self, message: BroadcastMessage) -> None:
        """Like :meth:`dispatch`, callable from a foreign thread."""
        loop = self._loop
        if loop is None:
            _logger.debug("Dropping message with no bound loop topic=%s", message.topic)
            return
        loop.call_soon_threadsafe(self.dispatch, message)

    @staticmethod
    def _deliver(subscriber: _Subscriber, message: BroadcastMessage) -> None:
        subscription = subscriber.subscription
        if subscription is not None and not subscription.active:
            return
        try:
            subscriber.handler(message)
        except Exception:
            _logger.warning("Subscriber for topic=%s raised", message.topic, exc_info=True)


class InMemoryBroadcastChannel:
    """In-process channel; every instance is one isolated bus.

    ``LOCAL`` and ``ALL`` publishes reach every subscriber of the bus.
    There are no remote peers, so ``REMOTE`` publishes are only recorded.
    Payloads are deep-copied so subscribers never share state with the
    publisher. The last ``history`` messages are kept in ``published``.
    """

    def __init__(self, *, loop: asyncio.AbstractEventLoop | None = None, history: int = 100) -> None:
        self._dispatcher = LocalDispatcher(loop=loop)
        self.published: deque[BroadcastMessage] = deque(maxlen=history)

    def subscriber_count(self, topic: str) -> int:
        return self._dispatcher.subscriber_count(topic)

    async def publish(
        self,
        topic: str,
        payload: dict[str, Any],
        destination: Destination = Destination.LOCAL,
    ) -> None:
        message = BroadcastMessage(topic=topic, data=copy.deepcopy(payload), destination=destination)
        self.published.append(message)
        _logger.debug("Publish topic=%s destination=%s", topic, destination)
        if destination.includes_local:
            self._dispatcher.dispatch(message)

    def subscribe(self, topic: str, handler: MessageHandler) -> Subscription:
        return self._dispatcher.subscribe(topic, handler)
