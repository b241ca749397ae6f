from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Callable
from typing import Any

import pytest

from pyrelay.channel import BroadcastMessage, Destination, InMemoryBroadcastChannel, Subscription
from pyrelay.correlation import CorrelationClient
from pyrelay.exceptions import (
    ChannelError,
    NoResponderError,
    RelayError,
    RelayValidationError,
    RemoteError,
)
from pyrelay.models.operations import DiceRollRequest, RawOperation

Reply = Callable[[dict[str, Any]], dict[str, Any] | None]


class _Responder:
    """Answers ``<domain>.api.request`` messages the way a peer extension would."""

    def __init__(self, channel: InMemoryBroadcastChannel, domain: str, reply: Reply, *, delay: Callable[[], float] | None = None) -> None:
        self.requests: list[dict[str, Any]] = []
        self._channel = channel
        self._domain = domain
        self._reply = reply
        self._delay = delay
        self._subscription = channel.subscribe(f"{domain}.api.request", self._on_request)

    def _on_request(self, message: BroadcastMessage) -> None:
        self.requests.append(message.data)
        reply = self._reply(message.data)
        if reply is None:
            return
        payload = {"callId": message.data["callId"], "requesterId": message.data["requesterId"], **reply}
        loop = asyncio.get_running_loop()
        publish = lambda: loop.create_task(self._channel.publish(f"{self._domain}.api.response", payload))  # noqa: E731
        if self._delay is None:
            publish()
        else:
            loop.call_later(self._delay(), publish)


def _echo(request: dict[str, Any]) -> dict[str, Any]:
    return {"ok": True, "data": {"n": request.get("n")}}


def _raw(n: int) -> RawOperation:
    return RawOperation(target_domain="echo", payload={"n": n})


@pytest.mark.asyncio
async def test_call_resolves_with_peer_data_and_cleans_up() -> None:
    channel = InMemoryBroadcastChannel()
    _Responder(channel, "echo", _echo)
    client = CorrelationClient(channel, requester_id="player-1")

    assert client.pending_count == 0
    result = await client.call(_raw(7), timeout=1.0)

    assert result == {"n": 7}
    assert client.pending_count == 0
    assert client.listener_count == 0
    assert channel.subscriber_count("echo.api.response") == 0


@pytest.mark.asyncio
async def test_request_carries_call_and_requester_ids() -> None:
    channel = InMemoryBroadcastChannel()
    responder = _Responder(channel, "echo", _echo)
    client = CorrelationClient(channel, requester_id="player-1")

    await client.call(_raw(1), timeout=1.0)

    (request,) = responder.requests
    assert request["requesterId"] == "player-1"
    assert request["callId"].startswith("call_")
    assert request["n"] == 1
    assert channel.published[0].destination == Destination.LOCAL


@pytest.mark.asyncio
async def test_call_without_responder_times_out() -> None:
    channel = InMemoryBroadcastChannel()
    client = CorrelationClient(channel, requester_id="player-1")

    started = time.monotonic()
    with pytest.raises(NoResponderError) as exc_info:
        await client.call(DiceRollRequest(expression="1d20"), timeout=0.05)
    elapsed = time.monotonic() - started

    assert 0.04 <= elapsed < 1.0
    exc = exc_info.value
    assert exc.timeout == 0.05
    assert "(50ms)" in str(exc)
    assert "roll 1d20" in str(exc)
    assert exc.call_id.startswith("call_")
    assert client.pending_count == 0
    assert client.listener_count == 0


@pytest.mark.asyncio
async def test_remote_rejection_is_distinct_from_timeout() -> None:
    channel = InMemoryBroadcastChannel()
    _Responder(channel, "echo", lambda _req: {"ok": False, "error": "token not found"})
    client = CorrelationClient(channel, requester_id="player-1")

    with pytest.raises(RemoteError) as exc_info:
        await client.call(_raw(1), timeout=1.0)

    assert not isinstance(exc_info.value, NoResponderError)
    assert str(exc_info.value) == "token not found"
    assert client.pending_count == 0


@pytest.mark.asyncio
async def test_remote_rejection_without_message_gets_default() -> None:
    channel = InMemoryBroadcastChannel()
    _Responder(channel, "echo", lambda _req: {"ok": False})
    client = CorrelationClient(channel, requester_id="player-1")

    with pytest.raises(RemoteError, match="Unknown echo error"):
        await client.call(_raw(1), timeout=1.0)


@pytest.mark.asyncio
async def test_many_concurrent_calls_never_cross_resolve() -> None:
    channel = InMemoryBroadcastChannel()
    rng = random.Random(1234)
    _Responder(channel, "echo", _echo, delay=lambda: rng.random() * 0.02)
    client = CorrelationClient(channel, requester_id="player-1")

    results = await asyncio.gather(*(client.call(_raw(i), timeout=5.0) for i in range(1000)))

    assert [r["n"] for r in results] == list(range(1000))
    assert client.pending_count == 0
    assert client.listener_count == 0


@pytest.mark.asyncio
async def test_response_for_other_requester_is_ignored() -> None:
    channel = InMemoryBroadcastChannel()
    _Responder(channel, "echo", lambda _req: {"ok": True, "data": "mine"})
    other = CorrelationClient(channel, requester_id="player-2")

    def _misaddressed(message: BroadcastMessage) -> None:
        data = dict(message.data)
        data["requesterId"] = "player-2"
        asyncio.get_running_loop().create_task(
            channel.publish("echo.api.response", {**data, "ok": True, "data": "stolen"})
        )

    channel.subscribe("echo.api.request", _misaddressed)
    client = CorrelationClient(channel, requester_id="player-1")

    assert await client.call(_raw(1), timeout=1.0) == "mine"
    assert other.pending_count == 0


@pytest.mark.asyncio
async def test_unknown_or_settled_call_ids_are_noops() -> None:
    channel = InMemoryBroadcastChannel()
    client = CorrelationClient(channel, requester_id="player-1")
    seen: list[dict[str, Any]] = []
    channel.subscribe("echo.api.request", lambda message: seen.append(message.data))

    task = asyncio.create_task(client.call(_raw(1), timeout=1.0))
    await asyncio.sleep(0.01)
    (request,) = seen

    # Unknown id: must not affect the pending call.
    await channel.publish(
        "echo.api.response",
        {"callId": "call_0_nope", "requesterId": "player-1", "ok": True, "data": "wrong"},
    )
    await asyncio.sleep(0.01)
    assert not task.done()
    assert client.pending_count == 1

    response = {"callId": request["callId"], "requesterId": "player-1", "ok": True, "data": "right"}
    await channel.publish("echo.api.response", response)
    assert await task == "right"

    # Duplicate delivery after settle is dropped silently.
    client._on_response(BroadcastMessage(topic="echo.api.response", data=response))  # noqa: SLF001
    assert client.pending_count == 0


@pytest.mark.asyncio
async def test_late_response_after_timeout_is_dropped() -> None:
    channel = InMemoryBroadcastChannel()
    client = CorrelationClient(channel, requester_id="player-1")
    seen: list[dict[str, Any]] = []
    channel.subscribe("echo.api.request", lambda message: seen.append(message.data))

    with pytest.raises(NoResponderError):
        await client.call(_raw(1), timeout=0.02)

    late = {"callId": seen[0]["callId"], "requesterId": "player-1", "ok": True, "data": "late"}
    client._on_response(BroadcastMessage(topic="echo.api.response", data=late))  # noqa: SLF001
    assert client.pending_count == 0


@pytest.mark.asyncio
async def test_malformed_response_is_ignored() -> None:
    channel = InMemoryBroadcastChannel()
    client = CorrelationClient(channel, requester_id="player-1")

    task = asyncio.create_task(client.call(_raw(1), timeout=0.05))
    await asyncio.sleep(0)
    await channel.publish("echo.api.response", {"hello": "world"})

    with pytest.raises(NoResponderError):
        await task


@pytest.mark.asyncio
async def test_response_on_another_domain_topic_is_ignored() -> None:
    channel = InMemoryBroadcastChannel()
    client = CorrelationClient(channel, requester_id="player-1")
    seen: list[dict[str, Any]] = []
    channel.subscribe("echo.api.request", lambda message: seen.append(message.data))

    task = asyncio.create_task(client.call(_raw(1), timeout=0.05))
    await asyncio.sleep(0.01)
    client._on_response(  # noqa: SLF001
        BroadcastMessage(
            topic="justdices.api.response",
            data={"callId": seen[0]["callId"], "requesterId": "player-1", "ok": True},
        )
    )

    with pytest.raises(NoResponderError):
        await task


class _EagerChannel(InMemoryBroadcastChannel):
    """Delivers the reply synchronously, before publish() returns."""

    def __init__(self) -> None:
        super().__init__()
        self._handlers: dict[str, Callable[[BroadcastMessage], None]] = {}

    def subscribe(self, topic: str, handler: Callable[[BroadcastMessage], None]) -> Subscription:
        self._handlers[topic] = handler
        return Subscription(topic, lambda: self._handlers.pop(topic, None))

    async def publish(self, topic: str, payload: dict[str, Any], destination: Destination = Destination.LOCAL) -> None:
        handler = self._handlers.get("echo.api.response")
        if handler is not None:
            reply = {"callId": payload["callId"], "requesterId": payload["requesterId"], "ok": True, "data": "fast"}
            handler(BroadcastMessage(topic="echo.api.response", data=reply))


@pytest.mark.asyncio
async def test_reply_before_publish_returns_is_not_lost() -> None:
    client = CorrelationClient(_EagerChannel(), requester_id="player-1")

    assert await client.call(_raw(1), timeout=0.5) == "fast"
    assert client.pending_count == 0


class _BrokenChannel(InMemoryBroadcastChannel):
    async def publish(self, topic: str, payload: dict[str, Any], destination: Destination = Destination.LOCAL) -> None:
        raise ConnectionError("broker down")


@pytest.mark.asyncio
async def test_publish_failure_rejects_and_cleans_up() -> None:
    channel = _BrokenChannel()
    client = CorrelationClient(channel, requester_id="player-1")

    with pytest.raises(ChannelError, match="broker down"):
        await client.call(_raw(1), timeout=1.0)

    assert client.pending_count == 0
    assert channel.subscriber_count("echo.api.response") == 0


class _NoSubscribeChannel(InMemoryBroadcastChannel):
    def subscribe(self, topic: str, handler: Callable[[BroadcastMessage], None]) -> Subscription:
        raise RuntimeError("subscriptions unavailable")


@pytest.mark.asyncio
async def test_subscribe_failure_raises_channel_error_without_publishing() -> None:
    channel = _NoSubscribeChannel()
    client = CorrelationClient(channel, requester_id="player-1")

    with pytest.raises(ChannelError, match="subscriptions unavailable"):
        await client.call(_raw(1), timeout=1.0)

    assert client.pending_count == 0
    assert len(channel.published) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("timeout", [0, -1, float("nan"), float("inf")])
async def test_invalid_timeout_raises_before_publishing(timeout: float) -> None:
    channel = InMemoryBroadcastChannel()
    client = CorrelationClient(channel, requester_id="player-1")

    with pytest.raises(RelayValidationError):
        await client.call(_raw(1), timeout=timeout)

    assert len(channel.published) == 0
    assert client.pending_count == 0


@pytest.mark.asyncio
async def test_non_operation_payload_is_rejected() -> None:
    channel = InMemoryBroadcastChannel()
    client = CorrelationClient(channel, requester_id="player-1")

    with pytest.raises(RelayValidationError):
        await client.call({"expression": "1d6"})  # type: ignore[arg-type]
    assert len(channel.published) == 0


@pytest.mark.asyncio
async def test_caller_cancellation_removes_pending_call() -> None:
    channel = InMemoryBroadcastChannel()
    client = CorrelationClient(channel, requester_id="player-1")

    task = asyncio.create_task(client.call(_raw(1), timeout=5.0))
    await asyncio.sleep(0.01)
    assert client.pending_count == 1

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert client.pending_count == 0
    assert client.listener_count == 0


class _SlowChannel(InMemoryBroadcastChannel):
    async def publish(self, topic: str, payload: dict[str, Any], destination: Destination = Destination.LOCAL) -> None:
        await asyncio.sleep(0.05)
        await super().publish(topic, payload, destination)


@pytest.mark.asyncio
async def test_cancellation_while_publishing_removes_pending_call() -> None:
    channel = _SlowChannel()
    client = CorrelationClient(channel, requester_id="player-1")

    task = asyncio.create_task(client.call(_raw(1), timeout=0.1))
    await asyncio.sleep(0.01)
    assert client.pending_count == 1

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert client.pending_count == 0
    assert client.listener_count == 0
    assert len(channel.published) == 0
    # The timer was cancelled with the call.
    await asyncio.sleep(0.15)
    assert client.pending_count == 0


@pytest.mark.asyncio
async def test_close_cancels_pending_calls_and_refuses_new_ones() -> None:
    channel = InMemoryBroadcastChannel()
    client = CorrelationClient(channel, requester_id="player-1")

    task = asyncio.create_task(client.call(_raw(1), timeout=5.0))
    await asyncio.sleep(0.01)
    client.close()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert client.pending_count == 0
    assert channel.subscriber_count("echo.api.response") == 0

    with pytest.raises(RelayError):
        await client.call(_raw(2))


@pytest.mark.asyncio
async def test_colliding_call_id_is_regenerated() -> None:
    channel = InMemoryBroadcastChannel()
    ids = iter(["call_1_a", "call_1_a", "call_1_b"])
    client = CorrelationClient(channel, requester_id="player-1", id_factory=lambda: next(ids))
    seen: list[str] = []
    channel.subscribe("echo.api.request", lambda message: seen.append(message.data["callId"]))

    first = asyncio.create_task(client.call(_raw(1), timeout=0.05))
    second = asyncio.create_task(client.call(_raw(2), timeout=0.05))
    await asyncio.sleep(0.01)

    assert seen == ["call_1_a", "call_1_b"]
    for task in (first, second):
        with pytest.raises(NoResponderError):
            await task


@pytest.mark.asyncio
async def test_shared_listener_survives_until_last_call_settles() -> None:
    channel = InMemoryBroadcastChannel()
    client = CorrelationClient(channel, requester_id="player-1")

    short = asyncio.create_task(client.call(_raw(1), timeout=0.02))
    long = asyncio.create_task(client.call(_raw(2), timeout=5.0))
    await asyncio.sleep(0)
    assert client.listener_count == 1
    assert channel.subscriber_count("echo.api.response") == 1

    with pytest.raises(NoResponderError):
        await short
    assert client.listener_count == 1

    long.cancel()
    with pytest.raises(asyncio.CancelledError):
        await long
    assert client.listener_count == 0
    assert channel.subscriber_count("echo.api.response") == 0


def test_empty_requester_id_rejected() -> None:
    with pytest.raises(RelayValidationError):
        CorrelationClient(InMemoryBroadcastChannel(), requester_id="  ")
