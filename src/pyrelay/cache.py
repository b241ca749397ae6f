"""Write-coalescing state cache over a durable store.

Reads and writes are served from memory. Writes mark their key dirty and
re-arm a single trailing-edge debounce timer; when the burst goes quiet
the whole cache is serialized once and written under one
scope-qualified key.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from collections.abc import Hashable
from typing import Any

from pydantic import BaseModel, ConfigDict

from pyrelay._constants import DEFAULT_DEBOUNCE, DEFAULT_STORAGE_PREFIX, storage_key
from pyrelay.exceptions import RelayValidationError, StoreWriteError
from pyrelay.store import PersistentStore

_logger = logging.getLogger(__name__)


class CacheStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_keys: int
    namespace_count: int
    pending_changes: int
    flush_scheduled: bool
    flush_in_flight: bool


def _namespace(namespace: Hashable) -> str:
    # JSON object keys are strings; page index 0 and "0" are the same namespace.
    return str(namespace)


def _parse_snapshot(raw: str) -> dict[str, dict[str, Any]]:
    decoded = json.loads(raw)
    if not isinstance(decoded, dict):
        raise ValueError("persisted state is not a JSON object")
    cache: dict[str, dict[str, Any]] = {}
    for namespace, values in decoded.items():
        if not isinstance(values, dict):
            _logger.warning("Dropping persisted namespace %r: not an object", namespace)
            continue
        cache[str(namespace)] = values
    return cache


class StateCache:
    """In-memory authoritative state with a debounced, coalesced writer.

    Parameters
    ----------
    store
        Durable store; only ``storage_key`` is ever touched.
    scope_id
        Session/room identifier qualifying the durable key.
    prefix
        Durable key prefix.
    debounce
        Quiet period in seconds before a burst of ``set()`` calls is
        flushed.
    loop
        Loop for the debounce timer; defaults to the running loop at
        ``set()`` time.
    """

    def __init__(
        self,
        store: PersistentStore,
        *,
        scope_id: str | None = None,
        prefix: str = DEFAULT_STORAGE_PREFIX,
        debounce: float = DEFAULT_DEBOUNCE,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        if debounce < 0:
            raise RelayValidationError(f"debounce must not be negative, got {debounce}")
        self._store = store
        self._key = storage_key(prefix, scope_id)
        self._debounce = debounce
        self._loop = loop
        self._cache: dict[str, dict[str, Any]] = {}
        self._dirty: dict[str, set[str]] = {}
        self._loaded = False
        self._timer: asyncio.TimerHandle | None = None
        self._flush_lock = asyncio.Lock()
        self._flushing = False
        self._generation = 0
        self._tasks: set[asyncio.Task[bool]] = set()

    @property
    def storage_key(self) -> str:
        return self._key

    @property
    def dirty(self) -> dict[str, frozenset[str]]:
        return {namespace: frozenset(keys) for namespace, keys in self._dirty.items()}

    # ------------------------------------------------------------------
    # Priming
    # ------------------------------------------------------------------

    def load(self) -> dict[str, dict[str, Any]]:
        """Prime the cache with one synchronous read; fails open to empty."""
        try:
            raw = self._store.get(self._key)
            self._cache = _parse_snapshot(raw) if raw else {}
        except Exception:
            _logger.warning("Could not load persisted state from %s; starting empty", self._key, exc_info=True)
            self._cache = {}
        self._dirty = {}
        self._loaded = True
        _logger.debug("Loaded %d namespaces from %s", len(self._cache), self._key)
        return copy.deepcopy(self._cache)

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    # ------------------------------------------------------------------
    # Reads / writes
    # ------------------------------------------------------------------

    def get(self, namespace: Hashable, key: str, default: Any = None) -> Any:
        self._ensure_loaded()
        values = self._cache.get(_namespace(namespace))
        if values is None or key not in values:
            return default
        return copy.deepcopy(values[key])

    def get_namespace(self, namespace: Hashable) -> dict[str, Any]:
        self._ensure_loaded()
        return copy.deepcopy(self._cache.get(_namespace(namespace), {}))

    def namespaces(self) -> list[str]:
        self._ensure_loaded()
        return list(self._cache)

    def set(self, namespace: Hashable, key: str, value: Any) -> None:
        """Update memory now; persist after the debounce window."""
        if not isinstance(key, str) or not key:
            raise RelayValidationError(f"key must be a non-empty string, got {key!r}")
        self._ensure_loaded()
        ns = _namespace(namespace)
        self._cache.setdefault(ns, {})[key] = copy.deepcopy(value)
        self._dirty.setdefault(ns, set()).add(key)
        self._schedule_flush()
        _logger.debug("Queued %s.%s", ns, key)

    def delete(self, namespace: Hashable, key: str) -> bool:
        """Remove one key; the removal is persisted like a ``set()``."""
        self._ensure_loaded()
        ns = _namespace(namespace)
        values = self._cache.get(ns)
        if values is None or key not in values:
            return False
        del values[key]
        if not values:
            del self._cache[ns]
        self._dirty.setdefault(ns, set()).add(key)
        self._schedule_flush()
        return True

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------

    def _cancel_timer(self) -> None:
        timer = self._timer
        self._timer = None
        if timer is not None:
            timer.cancel()

    def _schedule_flush(self) -> None:
        self._cancel_timer()
        try:
            loop = self._loop or asyncio.get_running_loop()
        except RuntimeError:
            _logger.debug("No running loop; %s stays dirty until the next flush", self._key)
            return
        self._timer = loop.call_later(self._debounce, self._on_debounce)

    def _on_debounce(self) -> None:
        self._timer = None
        loop = self._loop or asyncio.get_running_loop()
        task = loop.create_task(self.flush())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _restore_dirty(self, dirty: dict[str, set[str]], generation: int) -> None:
        if generation != self._generation:
            # clear_all ran while the write was in flight.
            return
        for namespace, keys in dirty.items():
            self._dirty.setdefault(namespace, set()).update(keys)

    async def flush(self) -> bool:
        """Write the whole cache once; returns ``False`` if the write failed.

        Failures are logged and never raised. Dirty markers survive a
        failed write so the next flush retries them.
        """
        async with self._flush_lock:
            return await self._flush_locked()

    async def _flush_locked(self) -> bool:
        if not self._dirty:
            return True

        # Changes made while the write is in flight land in a fresh dirty
        # set and belong to the next flush.
        flushing, self._dirty = self._dirty, {}
        generation = self._generation
        self._flushing = True
        try:
            try:
                payload = json.dumps(self._cache, separators=(",", ":"))
            except (TypeError, ValueError) as exc:
                raise StoreWriteError(f"State for {self._key} is not JSON-serializable: {exc}", key=self._key) from exc
            loop = asyncio.get_running_loop()
            try:
                await loop.run_in_executor(None, self._store.set, self._key, payload)
            except StoreWriteError:
                raise
            except Exception as exc:
                raise StoreWriteError(f"Writing {self._key} failed: {exc}", key=self._key) from exc
        except StoreWriteError:
            self._restore_dirty(flushing, generation)
            _logger.warning("State flush to %s failed; keeping changes dirty", self._key, exc_info=True)
            return False
        except asyncio.CancelledError:
            self._restore_dirty(flushing, generation)
            raise
        finally:
            self._flushing = False

        _logger.debug(
            "Flushed %d namespaces (%.2fKB) to %s",
            len(self._cache),
            len(payload.encode("utf-8")) / 1024,
            self._key,
        )
        return True

    async def force_flush(self) -> bool:
        """Skip the debounce and flush now (shutdown / explicit save points)."""
        self._cancel_timer()
        return await self.flush()

    async def clear_all(self) -> None:
        """Drop every namespace and delete the persisted entry."""
        self._cancel_timer()
        self._generation += 1
        self._cache = {}
        self._dirty = {}
        self._loaded = True
        async with self._flush_lock:
            loop = asyncio.get_running_loop()
            try:
                await loop.run_in_executor(None, self._store.remove, self._key)
            except Exception:
                _logger.warning("Could not remove persisted state %s", self._key, exc_info=True)
                return
        _logger.debug("Cleared all state for %s", self._key)

    async def aclose(self) -> None:
        """Flush buffered writes and wait for scheduled flushes to finish."""
        await self.force_flush()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def stats(self) -> CacheStats:
        return CacheStats(
            total_keys=sum(len(values) for values in self._cache.values()),
            namespace_count=len(self._cache),
            pending_changes=sum(len(keys) for keys in self._dirty.values()),
            flush_scheduled=self._timer is not None,
            flush_in_flight=self._flushing,
        )
