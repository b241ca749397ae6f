from __future__ import annotations

import asyncio

import pytest

from pyrelay.channel import BroadcastMessage, Destination, InMemoryBroadcastChannel


@pytest.mark.asyncio
async def test_local_publish_reaches_subscribers_after_publish_returns() -> None:
    channel = InMemoryBroadcastChannel()
    received: list[BroadcastMessage] = []
    channel.subscribe("dice.api.request", received.append)

    await channel.publish("dice.api.request", {"n": 1})
    assert received == []

    await asyncio.sleep(0)
    assert [m.data for m in received] == [{"n": 1}]
    assert received[0].destination == Destination.LOCAL


@pytest.mark.asyncio
async def test_remote_only_publish_is_not_delivered_in_process() -> None:
    channel = InMemoryBroadcastChannel()
    received: list[BroadcastMessage] = []
    channel.subscribe("t", received.append)

    await channel.publish("t", {"n": 1}, Destination.REMOTE)
    await channel.publish("t", {"n": 2}, Destination.ALL)
    await asyncio.sleep(0)

    assert [m.data["n"] for m in received] == [2]
    assert [m.destination for m in channel.published] == [Destination.REMOTE, Destination.ALL]


@pytest.mark.asyncio
async def test_subscribers_get_independent_copies() -> None:
    channel = InMemoryBroadcastChannel()
    payload = {"nested": {"hp": 1}}
    received: list[BroadcastMessage] = []
    channel.subscribe("t", received.append)

    await channel.publish("t", payload)
    payload["nested"]["hp"] = 99
    await asyncio.sleep(0)

    assert received[0].data == {"nested": {"hp": 1}}


@pytest.mark.asyncio
async def test_unsubscribe_is_idempotent_and_stops_pending_delivery() -> None:
    channel = InMemoryBroadcastChannel()
    received: list[BroadcastMessage] = []
    subscription = channel.subscribe("t", received.append)

    await channel.publish("t", {"n": 1})
    subscription.unsubscribe()
    subscription.unsubscribe()
    await asyncio.sleep(0)

    assert received == []
    assert subscription.active is False
    assert channel.subscriber_count("t") == 0


@pytest.mark.asyncio
async def test_failing_handler_does_not_affect_others() -> None:
    channel = InMemoryBroadcastChannel()
    received: list[BroadcastMessage] = []

    def _boom(_message: BroadcastMessage) -> None:
        raise RuntimeError("handler bug")

    channel.subscribe("t", _boom)
    channel.subscribe("t", received.append)

    await channel.publish("t", {"n": 1})
    await asyncio.sleep(0)

    assert len(received) == 1


def test_destination_scopes() -> None:
    assert Destination.LOCAL.includes_local and not Destination.LOCAL.includes_remote
    assert Destination.REMOTE.includes_remote and not Destination.REMOTE.includes_local
    assert Destination.ALL.includes_local and Destination.ALL.includes_remote
