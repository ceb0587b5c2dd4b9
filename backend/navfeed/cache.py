from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from pydantic import TypeAdapter, ValidationError
from pydantic_core import to_jsonable_python

from .errors import CacheWriteFailed
from .kv_store import JsonFileStore, KeyValueStore, MemoryStore
from .logging_utils import log_event, log_warning
from .models import CACHE_CATEGORIES, CacheCategory, CacheEntry, CacheResult
from .settings import Settings, settings

_ENTRY_ADAPTER = TypeAdapter(CacheEntry)


def epoch_ms() -> int:
    return int(time.time() * 1000)


@lru_cache(maxsize=64)
def _adapter_for(value_type: Any) -> TypeAdapter[Any]:
    return TypeAdapter(value_type)


@dataclass
class _CacheStats:
    fresh_hits: int = 0
    stale_hits: int = 0
    misses: int = 0
    expired: int = 0
    writes: int = 0
    write_failures: int = 0
    purged: int = 0


class ProviderCache:
    """Time-boxed provider data keyed by category, with an explicit stale-read mode."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        ttls_ms: dict[str, int] | None = None,
        prefix: str | None = None,
        now_ms: Callable[[], int] = epoch_ms,
    ) -> None:
        self._store = store
        self._ttls_ms = dict(ttls_ms or settings.cache_ttls_ms())
        missing = [c for c in CACHE_CATEGORIES if c not in self._ttls_ms]
        if missing:
            raise ValueError(f"missing TTL for cache categories: {', '.join(missing)}")
        self._prefix = (prefix if prefix is not None else settings.cache_key_prefix).rstrip("_")
        self._now_ms = now_ms
        self._stats = _CacheStats()

    def ttl_ms(self, category: CacheCategory) -> int:
        return self._ttls_ms[category]

    def storage_key(self, category: CacheCategory, key: str) -> str:
        if category not in self._ttls_ms:
            raise ValueError(f"unknown cache category: {category}")
        return f"{self._prefix}_{category}_{key}"

    def _decode(self, storage_key: str, raw: str | None) -> CacheEntry | None:
        if raw is None:
            return None
        try:
            return _ENTRY_ADAPTER.validate_json(raw)
        except ValidationError:
            log_warning("cache_entry_corrupt", key=storage_key)
            return None

    async def get(
        self,
        category: CacheCategory,
        key: str,
        *,
        allow_stale: bool = False,
        value_type: Any = None,
    ) -> CacheResult | None:
        storage_key = self.storage_key(category, key)
        entry = self._decode(storage_key, await asyncio.to_thread(self._store.read, storage_key))
        if entry is None:
            self._stats.misses += 1
            return None

        age_ms = max(0, self._now_ms() - entry.stored_at_epoch_ms)
        is_fresh = age_ms <= self._ttls_ms[category]
        if not is_fresh and not allow_stale:
            self._stats.expired += 1
            log_event("cache_expired", key=storage_key, age_s=age_ms // 1000)
            return None

        data = entry.data
        if value_type is not None:
            try:
                data = _adapter_for(value_type).validate_python(data)
            except ValidationError:
                log_warning("cache_entry_shape_mismatch", key=storage_key)
                self._stats.misses += 1
                return None

        if is_fresh:
            self._stats.fresh_hits += 1
        else:
            self._stats.stale_hits += 1
        log_event(
            "cache_hit" if is_fresh else "cache_stale_hit",
            key=storage_key,
            source_name=entry.source_name,
            age_s=age_ms // 1000,
        )
        return CacheResult(data=data, is_fresh=is_fresh, age_ms=age_ms, source_name=entry.source_name)

    async def set(self, category: CacheCategory, key: str, value: Any, source_name: str) -> None:
        storage_key = self.storage_key(category, key)
        entry = CacheEntry(
            data=to_jsonable_python(value),
            stored_at_epoch_ms=self._now_ms(),
            source_name=source_name,
        )
        try:
            payload = json.dumps(entry.model_dump(mode="json"))
            await asyncio.to_thread(self._store.write, storage_key, payload)
        except CacheWriteFailed:
            self._stats.write_failures += 1
            raise
        except (TypeError, ValueError) as exc:
            self._stats.write_failures += 1
            raise CacheWriteFailed(storage_key, f"{type(exc).__name__}: {exc}") from exc
        self._stats.writes += 1
        log_event("cache_set", key=storage_key, source_name=source_name)

    async def delete(self, category: CacheCategory, key: str) -> bool:
        storage_key = self.storage_key(category, key)
        removed = await asyncio.to_thread(self._store.remove, storage_key)
        log_event("cache_delete", key=storage_key, removed=removed)
        return removed

    async def purge_older_than(self, max_age_ms: int) -> int:
        now = self._now_ms()
        purged = await asyncio.to_thread(self._store.prune_corrupt)
        for storage_key in await asyncio.to_thread(self._store.keys, f"{self._prefix}_"):
            entry = self._decode(storage_key, await asyncio.to_thread(self._store.read, storage_key))
            if entry is not None and now - entry.stored_at_epoch_ms <= max_age_ms:
                continue
            # Unreadable entries are dropped along with the old ones.
            if await asyncio.to_thread(self._store.remove, storage_key):
                purged += 1
        self._stats.purged += purged
        if purged:
            log_event("cache_purged", purged=purged, max_age_s=max_age_ms // 1000)
        return purged

    async def clear_all(self) -> int:
        keys = await asyncio.to_thread(self._store.keys, f"{self._prefix}_")
        cleared = 0
        for storage_key in keys:
            if await asyncio.to_thread(self._store.remove, storage_key):
                cleared += 1
        log_event("cache_cleared", cleared=cleared)
        return cleared

    def snapshot(self) -> dict[str, Any]:
        stats = self._stats
        return {
            "fresh_hits": stats.fresh_hits,
            "stale_hits": stats.stale_hits,
            "misses": stats.misses,
            "expired": stats.expired,
            "writes": stats.writes,
            "write_failures": stats.write_failures,
            "purged": stats.purged,
            "ttl_ms": dict(self._ttls_ms),
        }


def build_store(config: Settings = settings) -> KeyValueStore:
    if config.cache_backend == "memory":
        return MemoryStore(quota_bytes=config.cache_quota_bytes)
    return JsonFileStore(config.resolved_cache_dir(), quota_bytes=config.cache_quota_bytes)


async def purge_periodically(
    cache: ProviderCache,
    *,
    interval_s: float,
    max_age_ms: int,
) -> None:
    """Background janitor bounding storage growth; runs until cancelled."""
    while True:
        try:
            await cache.purge_older_than(max_age_ms)
        except Exception as exc:
            log_warning("cache_purge_failed", error=f"{type(exc).__name__}: {exc}")
        await asyncio.sleep(interval_s)
