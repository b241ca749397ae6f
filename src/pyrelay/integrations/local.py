"""Free-form local values kept in one state cache namespace."""

from __future__ import annotations

from typing import Any

from pyrelay.cache import StateCache

LOCAL_NAMESPACE = "local"


class LocalValues:
    def __init__(self, cache: StateCache, *, namespace: str = LOCAL_NAMESPACE) -> None:
        self._cache = cache
        self._namespace = namespace

    def value(self, key: str, default: Any = None) -> Any:
        result = self._cache.get(self._namespace, key)
        return default if result is None else result

    def set(self, key: str, value: Any) -> Any:
        self._cache.set(self._namespace, key, value)
        return value

    def keys(self) -> list[str]:
        return list(self._cache.get_namespace(self._namespace))

    def clear(self) -> None:
        for key in self.keys():
            self._cache.delete(self._namespace, key)
