"""Key/value state stores with TTL-based expiry.

Upload sessions and interaction states are short-lived and keyed by an
external id.  Both live behind ``KeyValueStore`` so the backing store can be
swapped (in-process map today, an external cache later) without touching the
code that owns the entries.

``InMemoryTTLStore`` keeps entries for the process lifetime only.  A
background task sweeps expired entries; reads of an expired entry behave as
not-found even before the sweep runs.
"""
from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Abstract TTL-aware key/value store."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the value for *key*, or None if absent or expired."""

    @abstractmethod
    async def put(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        """Store or replace *key*.  ``ttl_seconds=None`` keeps the existing deadline."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove *key* (no-op if absent)."""

    @abstractmethod
    async def sweep(self) -> int:
        """Evict expired entries; return how many were evicted."""

    @abstractmethod
    async def values(self) -> List[Any]:
        """Return all unexpired values."""


@dataclass
class _Entry:
    value:      Any
    expires_at: float   # absolute deadline on the store's clock


class InMemoryTTLStore(KeyValueStore):
    """Asyncio-safe in-memory store with per-entry TTL."""

    def __init__(
        self,
        default_ttl_seconds: float = 3600,
        sweep_interval_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        name: str = "state",
    ) -> None:
        self._store: Dict[str, _Entry] = {}
        self._lock  = asyncio.Lock()
        self._default_ttl = default_ttl_seconds
        self._sweep_interval = sweep_interval_seconds or max(60, default_ttl_seconds // 4)
        self._clock = clock
        self._name = name
        self._sweep_task: Optional[asyncio.Task] = None  # type: ignore[type-arg]

    def __len__(self) -> int:
        return len(self._store)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start background sweep task."""
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info(
                "%s store sweep task started (TTL=%ss, interval=%ss)",
                self._name, self._default_ttl, self._sweep_interval,
            )

    async def stop(self) -> None:
        """Cancel the sweep task and drop all entries."""
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        async with self._lock:
            self._store.clear()
        logger.info("%s store stopped; all entries dropped.", self._name)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                del self._store[key]
                logger.debug("%s entry %s expired on read", self._name, key)
                return None
            return entry.value

    async def put(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        async with self._lock:
            existing = self._store.get(key)
            if ttl_seconds is None and existing is not None:
                expires_at = existing.expires_at
            else:
                ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
                expires_at = self._clock() + ttl
            self._store[key] = _Entry(value=value, expires_at=expires_at)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._store.pop(key, None)

    async def values(self) -> List[Any]:
        now = self._clock()
        async with self._lock:
            return [e.value for e in self._store.values() if now < e.expires_at]

    # ------------------------------------------------------------------
    # Background sweep
    # ------------------------------------------------------------------

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            await self.sweep()

    async def sweep(self) -> int:
        """Evict all expired entries."""
        now = self._clock()
        async with self._lock:
            expired = [k for k, v in self._store.items() if now >= v.expires_at]
            for k in expired:
                del self._store[k]
        if expired:
            logger.info("%s store sweep: evicted %d expired entries", self._name, len(expired))
        return len(expired)
