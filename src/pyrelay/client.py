"""High-level async façade wiring channel, store and integrations."""

from __future__ import annotations

import logging
from typing import Any

from pyrelay._logging import configure_debug_logging
from pyrelay._mqtt import MqttBroadcastChannel
from pyrelay.cache import StateCache
from pyrelay.channel import BroadcastChannel, InMemoryBroadcastChannel
from pyrelay.config import RelayConfig
from pyrelay.correlation import CorrelationClient
from pyrelay.integrations import ConditionMarkers, DiceRoller, LocalValues
from pyrelay.models.operations import ApiOperation
from pyrelay.store import MemoryStore, PersistentStore

_logger = logging.getLogger(__name__)


class RelayClient:
    """Async façade over one channel and one store.

    Usage::

        async with RelayClient(config, channel=channel, store=store) as relay:
            total = await relay.dice.roll("1d20+5")
            relay.state.set(0, "hp", total)

    Leaving the context force-flushes buffered state and cancels calls
    still waiting for a response.
    """

    def __init__(
        self,
        config: RelayConfig | None = None,
        *,
        channel: BroadcastChannel | None = None,
        store: PersistentStore | None = None,
    ) -> None:
        self._config = config or RelayConfig()
        self._mqtt: MqttBroadcastChannel | None = None
        self._channel: BroadcastChannel = channel if channel is not None else InMemoryBroadcastChannel()
        self._store: PersistentStore = store if store is not None else MemoryStore()
        self._correlation = CorrelationClient(
            self._channel,
            requester_id=self._config.requester_id,
            default_timeout=self._config.call_timeout,
            destination=self._config.destination,
        )
        self._state = StateCache(
            self._store,
            scope_id=self._config.scope_id,
            prefix=self._config.storage_prefix,
            debounce=self._config.debounce,
        )
        self.dice = DiceRoller(self._correlation)
        self.conditions = ConditionMarkers(self._correlation)
        self.local = LocalValues(self._state)
        if self._config.debug_categories:
            configure_debug_logging(self._config.debug_categories)

    @classmethod
    def with_mqtt(cls, config: RelayConfig, *, store: PersistentStore | None = None) -> RelayClient:
        """Build a client that owns an MQTT channel for ``config.mqtt``.

        The channel connects on ``__aenter__`` and disconnects on exit.
        """
        channel = MqttBroadcastChannel(config.mqtt)
        client = cls(config, channel=channel, store=store)
        client._mqtt = channel
        return client

    @property
    def config(self) -> RelayConfig:
        return self._config

    @property
    def correlation(self) -> CorrelationClient:
        return self._correlation

    @property
    def state(self) -> StateCache:
        return self._state

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> RelayClient:
        if self._mqtt is not None:
            await self._mqtt.start()
        self._state.load()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        self._correlation.close()
        await self._state.aclose()
        if self._mqtt is not None:
            await self._mqtt.stop()
        _logger.debug("Relay client closed requester_id=%s", self._config.requester_id)

    async def call(self, operation: ApiOperation, *, timeout: float | None = None) -> Any:
        """Issue any operation, typed or :class:`~pyrelay.models.RawOperation`."""
        return await self._correlation.call(operation, timeout=timeout)
