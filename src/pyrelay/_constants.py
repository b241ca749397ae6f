"""Internal constants shared across the library."""

DEFAULT_CALL_TIMEOUT: float = 5.0
DEFAULT_DEBOUNCE: float = 0.15
DEFAULT_STORAGE_PREFIX = "pyrelay_state"
UNKNOWN_SCOPE = "unknown"

REQUEST_TOPIC_SUFFIX = ".api.request"
RESPONSE_TOPIC_SUFFIX = ".api.response"

CALL_ID_PREFIX = "call_"
CALL_ID_SUFFIX_BYTES = 5


def request_topic(domain: str) -> str:
    """Topic on which ``domain`` responders listen for requests."""
    return f"{domain}{REQUEST_TOPIC_SUFFIX}"


def response_topic(domain: str) -> str:
    """Topic on which ``domain`` responders publish replies."""
    return f"{domain}{RESPONSE_TOPIC_SUFFIX}"


def storage_key(prefix: str, scope_id: str | None) -> str:
    """Scope-qualified durable key, e.g. ``pyrelay_state_room-42``."""
    scope = (scope_id or "").strip() or UNKNOWN_SCOPE
    return f"{prefix}_{scope}"
