"""Client configuration for pyrelay."""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from typing import Any

from pyrelay._constants import DEFAULT_CALL_TIMEOUT, DEFAULT_DEBOUNCE, DEFAULT_STORAGE_PREFIX
from pyrelay.channel import Destination
from pyrelay.exceptions import RelayConfigError


def _env_float(env: Mapping[str, str], key: str) -> float | None:
    value = env.get(key)
    if value is None:
        return None
    try:
        return float(value)
    except ValueError as exc:
        raise RelayConfigError(f"{key} must be a number, got {value!r}") from exc


def _env_int(env: Mapping[str, str], key: str) -> int | None:
    value = env.get(key)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError as exc:
        raise RelayConfigError(f"{key} must be an integer, got {value!r}") from exc


def _split_categories(value: str) -> frozenset[str]:
    return frozenset(part.strip() for part in value.split(",") if part.strip())


@dataclasses.dataclass(frozen=True)
class MqttSettings:
    """Broker connection fields for :class:`pyrelay._mqtt.MqttBroadcastChannel`."""

    host: str = "localhost"
    port: int = 1883
    keepalive: int = 60
    topic_prefix: str = "pyrelay"
    client_id: str = ""
    username: str | None = None
    password: str | None = None
    tls: bool = False


@dataclasses.dataclass(frozen=True)
class RelayConfig:
    """Client configuration.

    Parameters
    ----------
    requester_id : str
        Stable identity of the local caller. Responses addressed to any
        other requester on the same topic are ignored.
    scope_id : str or None
        Session/room identifier used to qualify the durable state key.
        ``None`` falls back to ``"unknown"``.
    call_timeout : float
        Default seconds to wait for a correlated response.
    debounce : float
        Quiet period (seconds) before buffered state writes are flushed.
    storage_prefix : str
        Prefix of the scope-qualified durable key.
    destination : Destination
        Delivery scope for outbound requests.
    debug_categories : frozenset[str]
        Logger categories (``"correlation"``, ``"cache"``, ``"channel"``,
        ``"mqtt"``, ``"integrations"``) switched to DEBUG by
        :func:`pyrelay._logging.configure_debug_logging`.
    mqtt : MqttSettings
        Broker settings, used only by the MQTT channel.
    """

    requester_id: str = "local"
    scope_id: str | None = None
    call_timeout: float = DEFAULT_CALL_TIMEOUT
    debounce: float = DEFAULT_DEBOUNCE
    storage_prefix: str = DEFAULT_STORAGE_PREFIX
    destination: Destination = Destination.LOCAL
    debug_categories: frozenset[str] = frozenset()
    mqtt: MqttSettings = dataclasses.field(default_factory=MqttSettings)

    def __post_init__(self) -> None:
        if self.call_timeout <= 0:
            raise RelayConfigError(f"call_timeout must be positive, got {self.call_timeout}")
        if self.debounce < 0:
            raise RelayConfigError(f"debounce must not be negative, got {self.debounce}")
        if not self.requester_id.strip():
            raise RelayConfigError("requester_id must be non-empty")
        if not self.storage_prefix.strip():
            raise RelayConfigError("storage_prefix must be non-empty")

    @classmethod
    def from_env(cls, **overrides: Any) -> RelayConfig:
        """Create configuration from ``PYRELAY_*`` environment variables.

        Explicit keyword arguments override environment values.
        """
        env = os.environ

        mqtt_kwargs: dict[str, Any] = {}
        _ENV_MQTT_MAP = {
            "PYRELAY_MQTT_HOST": "host",
            "PYRELAY_MQTT_TOPIC_PREFIX": "topic_prefix",
            "PYRELAY_MQTT_CLIENT_ID": "client_id",
            "PYRELAY_MQTT_USERNAME": "username",
            "PYRELAY_MQTT_PASSWORD": "password",
        }
        for env_key, field_name in _ENV_MQTT_MAP.items():
            val = env.get(env_key)
            if val is not None:
                mqtt_kwargs[field_name] = val
        port = _env_int(env, "PYRELAY_MQTT_PORT")
        if port is not None:
            mqtt_kwargs["port"] = port
        keepalive = _env_int(env, "PYRELAY_MQTT_KEEPALIVE")
        if keepalive is not None:
            mqtt_kwargs["keepalive"] = keepalive
        tls = env.get("PYRELAY_MQTT_TLS")
        if tls is not None:
            mqtt_kwargs["tls"] = tls.strip().lower() in {"1", "true", "yes", "y", "on"}

        mqtt_overrides = overrides.pop("mqtt", None)
        if isinstance(mqtt_overrides, dict):
            mqtt_kwargs.update(mqtt_overrides)
        elif isinstance(mqtt_overrides, MqttSettings):
            mqtt_kwargs = dataclasses.asdict(mqtt_overrides)

        config_kwargs: dict[str, Any] = {"mqtt": MqttSettings(**mqtt_kwargs)}

        _ENV_CONFIG_MAP = {
            "PYRELAY_REQUESTER_ID": "requester_id",
            "PYRELAY_SCOPE_ID": "scope_id",
            "PYRELAY_STORAGE_PREFIX": "storage_prefix",
        }
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        timeout = _env_float(env, "PYRELAY_CALL_TIMEOUT")
        if timeout is not None:
            config_kwargs["call_timeout"] = timeout

        debounce = _env_float(env, "PYRELAY_DEBOUNCE")
        if debounce is not None:
            config_kwargs["debounce"] = debounce

        destination = env.get("PYRELAY_DESTINATION")
        if destination is not None:
            try:
                config_kwargs["destination"] = Destination(destination.strip().upper())
            except ValueError as exc:
                raise RelayConfigError(f"PYRELAY_DESTINATION must be LOCAL, REMOTE or ALL, got {destination!r}") from exc

        debug = env.get("PYRELAY_DEBUG")
        if debug is not None:
            config_kwargs["debug_categories"] = _split_categories(debug)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
