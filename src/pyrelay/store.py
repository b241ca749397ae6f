"""Synchronous durable key -> string stores.

:class:`pyrelay.cache.StateCache` only ever reads and writes one
scope-qualified key per instance, so implementations may assume keys are
not written concurrently by unrelated code.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Protocol

from pyrelay.exceptions import StoreQuotaExceededError

_logger = logging.getLogger(__name__)

_SAFE_KEY = re.compile(r"[^A-Za-z0-9._-]")


class PersistentStore(Protocol):
    """Structural interface of a durable string store."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryStore:
    """Dict-backed store with an optional byte quota.

    ``quota_bytes`` bounds the UTF-8 size of all stored values together;
    a write that would exceed it raises
    :class:`~pyrelay.exceptions.StoreQuotaExceededError` and leaves the
    previous value in place.
    """

    def __init__(self, initial: dict[str, str] | None = None, *, quota_bytes: int | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})
        self._quota_bytes = quota_bytes
        self._lock = threading.Lock()
        self.write_count = 0

    def _size_without(self, key: str) -> int:
        return sum(len(v.encode("utf-8")) for k, v in self._data.items() if k != key)

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            if self._quota_bytes is not None:
                projected = self._size_without(key) + len(value.encode("utf-8"))
                if projected > self._quota_bytes:
                    raise StoreQuotaExceededError(
                        f"Writing {key!r} would use {projected} bytes (quota {self._quota_bytes})",
                        key=key,
                    )
            self._data[key] = value
            self.write_count += 1

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._data


class JsonFileStore:
    """One file per key inside ``directory``.

    Writes go to a temporary file that replaces the target atomically, so
    a crash mid-write never leaves a truncated value behind.
    """

    def __init__(self, directory: str | os.PathLike[str]) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, key: str) -> Path:
        safe = _SAFE_KEY.sub("_", key)
        if safe != key:
            # Keep distinct keys distinct after sanitising.
            safe = f"{safe}-{hashlib.sha1(key.encode('utf-8')).hexdigest()[:8]}"
        return self._directory / f"{safe}.json"

    def get(self, key: str) -> str | None:
        path = self.path_for(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def set(self, key: str, value: str) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        target = self.path_for(key)
        fd, tmp_name = tempfile.mkstemp(dir=self._directory, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(value)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        _logger.debug("Wrote %d chars to %s", len(value), target)

    def remove(self, key: str) -> None:
        self.path_for(key).unlink(missing_ok=True)
