"""
In-memory TTL cache for Deep Classifier results.

Keyed by a hash of the rendered prompt, so identical mail (a forwarded copy,
the same notice delivered to two accounts) is classified once, and editing
the prompt template never serves a stale answer. Only successful results
are stored.
"""

import hashlib
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .models import ClassificationResult

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    result: ClassificationResult
    stored_at: float


class ResultCache:
    """
    Usage:
        cache = ResultCache(config["deep_classifier"])
        result = cache.get(prompt)
        if result is None:
            result = ...
            cache.put(prompt, result)
    """

    def __init__(self, config: Optional[Dict] = None, clock: Callable[[], float] = time.monotonic):
        """
        Args:
            config: Configuration with:
                - cache_ttl_seconds: Entry lifetime, 0 disables the cache (default: 86400)
                - cache_max_entries: Oldest entries are evicted past this (default: 1000)
        """
        config = config or {}
        self.ttl = float(config.get("cache_ttl_seconds", 86400))
        self.max_entries = max(1, int(config.get("cache_max_entries", 1000)))
        self.clock = clock

        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._stats = {"hits": 0, "misses": 0, "stores": 0, "evictions": 0}

    @property
    def enabled(self) -> bool:
        return self.ttl > 0

    @staticmethod
    def key(prompt: str) -> str:
        return hashlib.sha256(prompt.encode("utf-8")).hexdigest()

    def get(self, prompt: str) -> Optional[ClassificationResult]:
        if not self.enabled:
            return None
        key = self.key(prompt)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self.clock() - entry.stored_at >= self.ttl:
                del self._entries[key]
                entry = None
            if entry is None:
                self._stats["misses"] += 1
                return None
            self._entries.move_to_end(key)
            self._stats["hits"] += 1
        logger.debug(f"Result cache hit {key[:12]}")
        return entry.result

    def put(self, prompt: str, result: ClassificationResult) -> None:
        if not self.enabled:
            return
        key = self.key(prompt)
        with self._lock:
            self._entries[key] = CacheEntry(result=result, stored_at=self.clock())
            self._entries.move_to_end(key)
            self._stats["stores"] += 1
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
                self._stats["evictions"] += 1

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._stats, size=len(self._entries))
