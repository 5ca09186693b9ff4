from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedImage:
    payload: bytes
    content_type: str
    source_name: str
    width: int
    height: int
    inserted_at: float = 0.0
    ttl_seconds: int = 0
    placeholder: bool = False
    reason: str | None = None

    def expires_at(self) -> float:
        return self.inserted_at + self.ttl_seconds


@dataclass(frozen=True)
class CacheStats:
    entry_count: int
    hit_count: int
    miss_count: int
    total_bytes: int
    max_entries: int

    def as_dict(self) -> Dict[str, int]:
        return {
            "entries": self.entry_count,
            "hits": self.hit_count,
            "misses": self.miss_count,
            "bytes": self.total_bytes,
            "maxEntries": self.max_entries,
        }


class ImageCache:
    """In-memory imagery cache keyed by quantized location and pixel size.

    Entries expire lazily when read after their TTL. Insertion order is kept so
    the oldest entries are evicted first once ``max_entries`` or ``max_bytes``
    is exceeded. Every operation takes the instance lock, so the cache can be
    shared by concurrent requests.
    """

    def __init__(
        self,
        *,
        max_entries: int = 500,
        max_bytes: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self._clock = clock
        self._entries: "OrderedDict[str, CachedImage]" = OrderedDict()
        self._total_bytes = 0
        self._hits = 0
        self._misses = 0
        self._lock = threading.Lock()

    def get(self, key: str) -> CachedImage | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self._clock() >= entry.expires_at():
                self._remove(key)
                self._misses += 1
                return None
            self._hits += 1
            return entry

    def set(self, key: str, image: CachedImage, ttl_seconds: int) -> CachedImage:
        """Store ``image`` under ``key``, replacing any previous entry."""

        if not image.content_type.lower().startswith("image/"):
            raise ValueError(f"Refusing to cache non-image content type {image.content_type!r}")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")

        entry = replace(image, inserted_at=self._clock(), ttl_seconds=int(ttl_seconds))
        with self._lock:
            if key in self._entries:
                self._remove(key)
            self._entries[key] = entry
            self._total_bytes += len(entry.payload)
            self._purge_expired()
            self._evict_overflow()
        return entry

    def clear(self) -> int:
        with self._lock:
            cleared = len(self._entries)
            self._entries.clear()
            self._total_bytes = 0
        logger.info("Cleared %s cached image(s)", cleared)
        return cleared

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_expired()

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                entry_count=len(self._entries),
                hit_count=self._hits,
                miss_count=self._misses,
                total_bytes=self._total_bytes,
                max_entries=self.max_entries,
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key)
        self._total_bytes -= len(entry.payload)

    def _purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now >= entry.expires_at()]
        for key in expired:
            self._remove(key)
        return len(expired)

    def _evict_overflow(self) -> None:
        evicted = 0
        # The newest entry is always kept, even if it alone exceeds max_bytes.
        while len(self._entries) > 1 and (
            len(self._entries) > self.max_entries
            or (self.max_bytes is not None and self._total_bytes > self.max_bytes)
        ):
            oldest = next(iter(self._entries))
            self._remove(oldest)
            evicted += 1
        if evicted:
            logger.debug("Evicted %s cached image(s) to stay within limits", evicted)
