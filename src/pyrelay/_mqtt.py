"""paho-mqtt backed broadcast channel.

The paho network loop runs on its own thread; inbound messages are
decoded there and handed to the asyncio loop with
``call_soon_threadsafe``. ``LOCAL`` delivery never touches the broker.
Remote subscriptions use the MQTT v5 *no-local* option so a client does
not receive its own remote publishes a second time.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
import threading
from typing import Any, cast

import paho.mqtt.client as mqtt
from paho.mqtt.subscribeoptions import SubscribeOptions

from pyrelay.channel import BroadcastMessage, Destination, LocalDispatcher, MessageHandler, Subscription
from pyrelay.config import MqttSettings

_logger = logging.getLogger(__name__)


def encode_payload(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def decode_payload(payload: bytes) -> dict[str, Any]:
    """Parse an MQTT payload into a JSON object."""
    parsed = json.loads(payload.decode("utf-8"))
    if not isinstance(parsed, dict):
        raise ValueError("MQTT payload is not a JSON object")
    return parsed


def _build_client_id(settings: MqttSettings) -> str:
    client_id = settings.client_id.strip()
    if client_id:
        return client_id
    return f"pyrelay_{secrets.token_hex(6)}"


class MqttBroadcastChannel:
    """Broadcast channel that reaches remote peers through an MQTT broker.

    Topics are mapped onto the broker as ``<topic_prefix>/<topic>``.
    """

    def __init__(
        self,
        settings: MqttSettings,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._settings = settings
        self._loop = loop
        self._logger = logger or _logger
        self._local = LocalDispatcher(loop=loop)
        self._remote = LocalDispatcher(loop=loop)
        self._client: mqtt.Client | None = None
        self._running = False
        self._remote_topics: dict[str, int] = {}
        # on_connect reads the topic counts from the paho network thread.
        self._topics_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        """Whether the MQTT network loop is active."""
        return self._running

    def _broker_topic(self, topic: str) -> str:
        prefix = self._settings.topic_prefix.strip("/")
        return f"{prefix}/{topic}" if prefix else topic

    def _channel_topic(self, broker_topic: str) -> str:
        prefix = self._settings.topic_prefix.strip("/")
        if prefix and broker_topic.startswith(f"{prefix}/"):
            return broker_topic[len(prefix) + 1 :]
        return broker_topic

    def _subscribe_remote(self, client: mqtt.Client, topic: str) -> None:
        options = SubscribeOptions(qos=0, noLocal=True)
        client.subscribe(self._broker_topic(topic), options=options)
        self._logger.debug("MQTT subscribing topic=%s", topic)

    def _resubscribe(self, client: mqtt.Client) -> None:
        """Re-subscribe every remote topic after a (re)connect."""
        with self._topics_lock:
            topics = list(self._remote_topics)
        for topic in topics:
            self._subscribe_remote(client, topic)

    async def start(self) -> None:
        """Connect to the broker and start the network loop."""
        loop = self._loop or asyncio.get_running_loop()
        self._loop = loop
        self._local.bind(loop)
        self._remote.bind(loop)
        await loop.run_in_executor(None, self._start_blocking)

    def _start_blocking(self) -> None:
        self._stop_blocking()
        settings = self._settings
        client_id = _build_client_id(settings)
        self._logger.debug(
            "MQTT channel start requested host=%s port=%s client_id=%s",
            settings.host,
            settings.port,
            client_id,
        )

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=client_id,
            protocol=mqtt.MQTTv5,
        )
        client.enable_logger(self._logger)
        if settings.username is not None:
            client.username_pw_set(settings.username, settings.password)
        if settings.tls:
            client.tls_set()

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                return
            self._logger.debug("MQTT connected reason=%s", reason_code)
            self._resubscribe(c)

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            try:
                data = decode_payload(msg.payload)
            except (UnicodeDecodeError, ValueError):
                self._logger.debug("MQTT payload parse failure topic=%s", msg.topic, exc_info=True)
                return
            message = BroadcastMessage(
                topic=self._channel_topic(msg.topic),
                data=data,
                destination=Destination.REMOTE,
            )
            self._remote.dispatch_threadsafe(message)

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if self._running:
                self._logger.debug("MQTT disconnected: %s", reason_code)

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        client.connect(settings.host, settings.port, keepalive=settings.keepalive)
        client.loop_start()

        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

    async def stop(self) -> None:
        """Disconnect and stop the network loop."""
        loop = self._loop or asyncio.get_running_loop()
        await loop.run_in_executor(None, self._stop_blocking)

    def _stop_blocking(self) -> None:
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")

    async def publish(
        self,
        topic: str,
        payload: dict[str, Any],
        destination: Destination = Destination.LOCAL,
    ) -> None:
        # A failed remote publish must not reach local subscribers either.
        if destination.includes_remote:
            client = self._client
            if client is None or not self._running:
                raise ConnectionError("MQTT channel is not running")
            info = client.publish(self._broker_topic(topic), encode_payload(payload), qos=0)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                raise ConnectionError(f"MQTT publish failed rc={info.rc} topic={topic}")
            self._logger.debug("MQTT published topic=%s", topic)
        if destination.includes_local:
            self._local.dispatch(BroadcastMessage(topic=topic, data=dict(payload), destination=destination))

    def subscribe(self, topic: str, handler: MessageHandler) -> Subscription:
        local = self._local.subscribe(topic, handler)
        remote = self._remote.subscribe(topic, handler)

        with self._topics_lock:
            count = self._remote_topics.get(topic, 0)
            self._remote_topics[topic] = count + 1
        client = self._client
        if count == 0 and client is not None and self._running:
            self._subscribe_remote(client, topic)

        def _cancel() -> None:
            local.unsubscribe()
            remote.unsubscribe()
            with self._topics_lock:
                remaining = self._remote_topics.get(topic, 1) - 1
                if remaining > 0:
                    self._remote_topics[topic] = remaining
                    return
                self._remote_topics.pop(topic, None)
            current = self._client
            if current is not None and self._running:
                current.unsubscribe(self._broker_topic(topic))

        return Subscription(topic, _cancel)
