"""Key-value storage contract for profiles, devices, consent and audit data.

Lifecycle:
    - create-on-first-access via ``get_or_create``
    - update-in-place via ``update``, atomic per key
    - audit entries are appended; access entries past retention are pruned

The in-memory implementations below back the service in development and
tests.  A persistent backend only needs to implement the same two ABCs;
pipeline logic never touches storage details.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from typing import Callable, Generic, Iterable, TypeVar

from src.biometrics.base import AuditEntry

logger = logging.getLogger("wellpulse.biometrics.store")

V = TypeVar("V")


class KeyValueStore(ABC, Generic[V]):
    """Async key-value store keyed by user (or device) id."""

    @abstractmethod
    async def get(self, key: str) -> V | None: ...

    @abstractmethod
    async def put(self, key: str, value: V) -> None: ...

    @abstractmethod
    async def update(self, key: str, fn: Callable[[V | None], V]) -> V:
        """Atomically replace the value at ``key`` with ``fn(current)``.

        Concurrent readers see either the old or the new value, never a
        partially applied update.
        """

    @abstractmethod
    async def delete(self, key: str) -> bool: ...

    @abstractmethod
    async def keys(self) -> list[str]: ...

    async def get_or_create(self, key: str, factory: Callable[[], V]) -> V:
        """Return the value at ``key``, storing ``factory()`` first if absent."""
        return await self.update(key, lambda current: current if current is not None else factory())


class InMemoryKeyValueStore(KeyValueStore[V]):
    """Dict-backed store with one asyncio.Lock per key."""

    def __init__(self, name: str = "store") -> None:
        self._name = name
        self._data: dict[str, V] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get(self, key: str) -> V | None:
        return self._data.get(key)

    async def put(self, key: str, value: V) -> None:
        async with self._locks[key]:
            self._data[key] = value

    async def update(self, key: str, fn: Callable[[V | None], V]) -> V:
        async with self._locks[key]:
            new_value = fn(self._data.get(key))
            self._data[key] = new_value
            return new_value

    async def delete(self, key: str) -> bool:
        async with self._locks[key]:
            existed = self._data.pop(key, None) is not None
        if existed:
            logger.debug("%s: deleted %s", self._name, key)
        return existed

    async def keys(self) -> list[str]:
        return list(self._data)

    def __len__(self) -> int:
        return len(self._data)


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


class AuditLog(ABC):
    """Record of consent and privacy decisions.

    Entries are only ever removed through ``prune``.
    """

    @abstractmethod
    async def append(self, entry: AuditEntry) -> None: ...

    @abstractmethod
    async def query(
        self,
        user_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[AuditEntry]: ...

    @abstractmethod
    async def prune(self, user_id: str, before: datetime, actions: Iterable[str]) -> int:
        """Drop the user's entries with one of ``actions`` older than ``before``."""


class InMemoryAuditLog(AuditLog):
    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditEntry) -> None:
        async with self._lock:
            self._entries.append(entry)

    async def query(
        self,
        user_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[AuditEntry]:
        """Return entries matching every given filter, oldest first."""
        return [
            e
            for e in self._entries
            if (user_id is None or e.user_id == user_id)
            and (start is None or e.timestamp >= start)
            and (end is None or e.timestamp <= end)
        ]

    async def prune(self, user_id: str, before: datetime, actions: Iterable[str]) -> int:
        actions = set(actions)
        async with self._lock:
            kept = [
                e
                for e in self._entries
                if not (e.user_id == user_id and e.action in actions and e.timestamp < before)
            ]
            removed = len(self._entries) - len(kept)
            self._entries = kept
        return removed

    def __len__(self) -> int:
        return len(self._entries)
