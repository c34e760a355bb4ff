"""Size-bounded LRU cache of fetched contract documents.

Every read touches ``last_accessed_at``; every write first evicts the least
recently accessed entries until the new blob fits inside ``max_bytes``. All
mutations run under one asyncio lock so concurrent acquisitions never see a
half-applied evict-then-insert. Backend failures are logged and reported as a
miss (reads) or a skipped write; they never propagate to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from typing import Callable, Dict, List, Optional

from .blob_store import BlobStore, BlobStoreError, CachedBlob, MemoryBlobStore, SqliteBlobStore
from .fetch_config import CACHE_MAX_BYTES, DEFAULT_SETTINGS, PipelineSettings
from .fetch_utils import format_size, hash_url

logger = logging.getLogger(__name__)

_CACHE_ERRORS = (BlobStoreError, sqlite3.Error, OSError, MemoryError)
_URL_HASH_LEN = len(hash_url(""))


def format_cache_size(size_bytes: int) -> str:
    return format_size(size_bytes)


def _key_belongs_to_row(key: str, sheet_name: str, row_index: int) -> bool:
    prefix = f"{sheet_name}_{row_index}_"
    if not key.startswith(prefix):
        return False
    rest = key[len(prefix):]
    return len(rest) == _URL_HASH_LEN and "_" not in rest


class ContractCache:
    def __init__(
        self,
        store: Optional[BlobStore] = None,
        *,
        max_bytes: int = CACHE_MAX_BYTES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store if store is not None else MemoryBlobStore()
        self.max_bytes = max(0, int(max_bytes))
        self._clock = clock
        self._lock = asyncio.Lock()

    async def get_cached(self, key: str) -> Optional[CachedBlob]:
        """Return the blob for ``key`` and mark it as just used."""

        async with self._lock:
            try:
                blob = self.store.get(key)
                if blob is None:
                    return None
                now = self._clock()
                self.store.touch(key, now)
            except _CACHE_ERRORS as exc:
                logger.warning("Contract cache read failed for %s: %s", key, exc)
                return None
        logger.debug("Contract cache hit %s (%s)", key, format_size(blob.size_bytes))
        return CachedBlob(
            key=blob.key,
            data=blob.data,
            source_url=blob.source_url,
            size_bytes=blob.size_bytes,
            content_type=blob.content_type,
            fetched_at=blob.fetched_at,
            last_accessed_at=now,
        )

    async def cache_contract(
        self,
        key: str,
        data: bytes,
        source_url: str,
        content_type: Optional[str] = None,
    ) -> bool:
        """Store ``data`` under ``key``, evicting LRU entries to make room.

        Returns False when the write was skipped: the blob alone exceeds the
        budget, or the backend failed.
        """

        size = len(data)
        if size > self.max_bytes:
            logger.info(
                "Not caching %s: %s exceeds cache budget %s",
                key,
                format_size(size),
                format_size(self.max_bytes),
            )
            return False
        async with self._lock:
            try:
                # Replacing a key frees its old bytes before the budget check.
                self.store.delete(key)
                evicted = self.store.evict_lru(size, self.max_bytes)
                now = self._clock()
                self.store.put(
                    CachedBlob(
                        key=key,
                        data=bytes(data),
                        source_url=source_url,
                        size_bytes=size,
                        content_type=content_type,
                        fetched_at=now,
                        last_accessed_at=now,
                    )
                )
            except _CACHE_ERRORS as exc:
                logger.warning("Contract cache write failed for %s: %s", key, exc)
                return False
        if evicted:
            logger.info("Evicted %d cached contract(s) to fit %s", len(evicted), key)
        return True

    async def clear(self, key: str) -> bool:
        async with self._lock:
            try:
                return self.store.delete(key)
            except _CACHE_ERRORS as exc:
                logger.warning("Contract cache delete failed for %s: %s", key, exc)
                return False

    async def clear_for_row(self, sheet_name: str, row_index: int) -> int:
        """Drop every cached contract belonging to one sheet row."""

        async with self._lock:
            try:
                keys = [k for k in self.store.keys() if _key_belongs_to_row(k, sheet_name, row_index)]
                removed = sum(1 for k in keys if self.store.delete(k))
            except _CACHE_ERRORS as exc:
                logger.warning("Contract cache row clear failed for %s/%s: %s", sheet_name, row_index, exc)
                return 0
        return removed

    async def clear_all(self) -> int:
        async with self._lock:
            try:
                removed = self.store.clear()
            except _CACHE_ERRORS as exc:
                logger.warning("Contract cache clear failed: %s", exc)
                return 0
        logger.info("Cleared %d cached contract(s)", removed)
        return removed

    async def stats(self) -> Dict[str, int]:
        async with self._lock:
            try:
                count, total = self.store.stats()
            except _CACHE_ERRORS as exc:
                logger.warning("Contract cache stats failed: %s", exc)
                count, total = 0, 0
        return {"count": count, "total_bytes": total, "max_bytes": self.max_bytes}

    async def cached_keys(self) -> List[str]:
        async with self._lock:
            try:
                return self.store.keys()
            except _CACHE_ERRORS as exc:
                logger.warning("Contract cache key listing failed: %s", exc)
                return []

    def close(self) -> None:
        try:
            self.store.close()
        except _CACHE_ERRORS as exc:
            logger.debug("Contract cache close failed: %s", exc)


def open_contract_cache(settings: PipelineSettings = DEFAULT_SETTINGS) -> Optional[ContractCache]:
    """Build the cache described by ``settings``; None when caching is off or unavailable."""

    if settings.cache_disabled:
        return None
    if settings.cache_path is None:
        return ContractCache(MemoryBlobStore(), max_bytes=settings.cache_max_bytes)
    try:
        store = SqliteBlobStore(settings.cache_path)
    except BlobStoreError as exc:
        logger.warning("Contract cache unavailable, continuing uncached: %s", exc)
        return None
    return ContractCache(store, max_bytes=settings.cache_max_bytes)


__all__ = [
    "ContractCache",
    "format_cache_size",
    "open_contract_cache",
]
