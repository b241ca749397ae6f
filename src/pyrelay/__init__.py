"""pyrelay - correlated calls and debounced state over broadcast channels."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pyrelay")
except PackageNotFoundError:
    __version__ = "0+local"
from pyrelay._logging import configure_debug_logging
from pyrelay._mqtt import MqttBroadcastChannel
from pyrelay.cache import CacheStats, StateCache
from pyrelay.channel import (
    BroadcastChannel,
    BroadcastMessage,
    Destination,
    InMemoryBroadcastChannel,
    Subscription,
)
from pyrelay.client import RelayClient
from pyrelay.config import MqttSettings, RelayConfig
from pyrelay.correlation import CallState, CorrelationClient, PendingCall
from pyrelay.exceptions import (
    CallError,
    ChannelError,
    NoResponderError,
    RelayConfigError,
    RelayError,
    RelayValidationError,
    RemoteError,
    StoreQuotaExceededError,
    StoreWriteError,
)
from pyrelay.integrations import ConditionMarkers, DiceRoller, LocalValues
from pyrelay.models import (
    AddConditionRequest,
    ApiOperation,
    ConditionAck,
    DiceRollRequest,
    RawOperation,
    RemoveConditionRequest,
    RequestMessage,
    ResponseMessage,
    RollResult,
    parse_operation,
)
from pyrelay.store import JsonFileStore, MemoryStore, PersistentStore

__all__ = [
    "__version__",
    "AddConditionRequest",
    "ApiOperation",
    "BroadcastChannel",
    "BroadcastMessage",
    "CacheStats",
    "CallError",
    "CallState",
    "ChannelError",
    "ConditionAck",
    "ConditionMarkers",
    "CorrelationClient",
    "Destination",
    "DiceRollRequest",
    "DiceRoller",
    "InMemoryBroadcastChannel",
    "JsonFileStore",
    "LocalValues",
    "MemoryStore",
    "MqttBroadcastChannel",
    "MqttSettings",
    "NoResponderError",
    "PendingCall",
    "PersistentStore",
    "RawOperation",
    "RelayClient",
    "RelayConfig",
    "RelayConfigError",
    "RelayError",
    "RelayValidationError",
    "RemoveConditionRequest",
    "RemoteError",
    "RequestMessage",
    "ResponseMessage",
    "RollResult",
    "StateCache",
    "StoreQuotaExceededError",
    "StoreWriteError",
    "Subscription",
    "configure_debug_logging",
    "parse_operation",
]
