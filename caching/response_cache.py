"""
Response cache for routed chat requests.

Content-addressed, capacity-bounded LRU store with a TTL, value-based
optimization and a cancellable background maintenance task.
"""

import asyncio
import hashlib
import json
import logging
import math
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Any, Optional, Tuple, Callable, Iterable

from core.config import CacheConfig
from core.data_models import ChatRequest, ChatResponse

logger = logging.getLogger(__name__)

COMMON_PATTERNS = (
    "explain", "summarize", "translate", "analyze", "review",
    "what is", "how to", "why does", "can you",
)

OPTIMIZE_UTILIZATION_THRESHOLD = 0.8
OPTIMIZE_EVICTION_FRACTION = 0.2
RECENCY_WINDOW_SECONDS = 24 * 60 * 60


@dataclass
class CacheEntry:
    """One cached response"""
    key: str
    response: ChatResponse
    timestamp: float
    cost: float
    size: int
    sequence: int
    hits: int = 0

    @property
    def model(self) -> str:
        return self.response.model

    @property
    def provider(self) -> str:
        return self.response.provider


class ResponseCache:
    """
    LRU response cache with TTL expiry.

    All mutations happen under one asyncio lock and never span an await on
    anything but the lock itself.
    """

    def __init__(self, config: Optional[CacheConfig] = None, clock: Callable[[], float] = time.time):
        self.config = config or CacheConfig()
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = asyncio.Lock()
        self._sequence = 0
        self._maintenance_task: Optional[asyncio.Task] = None
        self._stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> Dict[str, Any]:
        return {
            "hits": 0,
            "misses": 0,
            "sets": 0,
            "evictions": 0,
            "expirations": 0,
            "total_size": 0,
            "cost_saved": 0.0,
        }

    # ------------------------------------------------------------------
    # Keys and cache-worthiness
    # ------------------------------------------------------------------

    def generate_key(self, request: ChatRequest) -> str:
        """
        Derive the cache key of a request.

        The key covers model, messages (role and content), temperature,
        max tokens and top-p, encoded as canonical JSON and hashed with sha256.
        """
        key_data = {
            "model": request.model,
            "messages": [{"role": m.role, "content": m.content} for m in request.messages],
            "temperature": request.temperature or 0,
            "max_tokens": request.max_tokens,
            "top_p": request.top_p,
        }
        key_string = json.dumps(key_data, sort_keys=True, separators=(",", ":"))
        if self.config.key_strategy == "request_fingerprint":
            tool_names = ",".join(sorted(t.name for t in request.tools))
            key_string = f"request_fingerprint|{key_string}|{tool_names}"
        return hashlib.sha256(key_string.encode("utf-8")).hexdigest()

    def is_worth_caching(self, request: ChatRequest) -> bool:
        """Decide whether a request is likely to repeat and safe to cache"""
        if request.stream:
            return False
        if request.temperature is not None and request.temperature > self.config.max_temperature:
            return False
        if request.tools:
            return False

        if request.has_system_message:
            return True

        total_length = sum(len(m.content) for m in request.messages)
        if total_length < self.config.short_request_length:
            return True

        return any(
            pattern in m.content.lower()
            for m in request.messages
            for pattern in COMMON_PATTERNS
        )

    def _is_valid(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.timestamp <= self.config.ttl_seconds

    @staticmethod
    def _estimate_size(response: ChatResponse) -> int:
        return len(json.dumps(response.to_dict(), default=str))

    # ------------------------------------------------------------------
    # Get / set
    # ------------------------------------------------------------------

    async def get(self, request: ChatRequest) -> Optional[ChatResponse]:
        """
        Return the cached response for a request, if fresh.

        Expired entries are dropped on access and never returned.
        """
        if not self.config.enabled:
            return None

        key = self.generate_key(request)
        async with self._lock:
            entry = self._entries.get(key)
            now = self._clock()
            if entry is not None and not self._is_valid(entry, now):
                self._remove_locked(key)
                self._stats["expirations"] += 1
                entry = None

            if entry is None:
                self._stats["misses"] += 1
                return None

            self._entries.move_to_end(key)
            entry.hits += 1
            self._stats["hits"] += 1
            self._stats["cost_saved"] += entry.cost
            age = now - entry.timestamp
            response = entry.response

        logger.debug(f"Cache hit key={key[:8]} hits={entry.hits} age={age:.1f}s")
        return response.with_metadata(from_cache=True, cache_key=key, cache_age_seconds=age)

    async def set(self, request: ChatRequest, response: ChatResponse) -> Optional[str]:
        """
        Store a response for a request.

        Returns:
            The cache key, or None when caching is disabled
        """
        if not self.config.enabled:
            return None

        key = self.generate_key(request)
        stored = response.with_metadata()
        stored.metadata.pop("from_cache", None)
        size = self._estimate_size(stored)

        async with self._lock:
            if key in self._entries:
                self._remove_locked(key)
            while len(self._entries) >= self.config.max_size:
                lru_key = next(iter(self._entries))
                self._remove_locked(lru_key)
                self._stats["evictions"] += 1

            self._sequence += 1
            self._entries[key] = CacheEntry(
                key=key,
                response=stored,
                timestamp=self._clock(),
                cost=max(0.0, response.usage.cost),
                size=size,
                sequence=self._sequence,
            )
            self._stats["sets"] += 1
            self._stats["total_size"] += size

        logger.debug(f"Cache set key={key[:8]} size={size} entries={len(self._entries)}")
        return key

    def _remove_locked(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._stats["total_size"] -= entry.size
        return entry

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    async def warm_cache(self, pairs: Iterable[Tuple[ChatRequest, ChatResponse]]) -> int:
        """Pre-populate the cache with known request/response pairs"""
        pairs = list(pairs)
        logger.info(f"Warming cache with {len(pairs)} entries")
        stored = 0
        for request, response in pairs:
            if self.is_worth_caching(request):
                await self.set(request, response)
                stored += 1
        return stored

    async def invalidate_pattern(self, model: Optional[str] = None, provider: Optional[str] = None) -> int:
        """Remove every entry produced by the given model or provider"""
        if model is None and provider is None:
            return 0
        async with self._lock:
            keys = [
                key for key, entry in self._entries.items()
                if (model is not None and entry.model == model)
                or (provider is not None and entry.provider == provider)
            ]
            for key in keys:
                self._remove_locked(key)
        logger.info(f"Invalidated {len(keys)} cache entries")
        return len(keys)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()
            self._stats = self._empty_stats()
        logger.info("Cache cleared")

    async def cleanup_expired(self) -> int:
        """Remove every entry older than the TTL"""
        async with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if not self._is_valid(entry, now)]
            for key in expired:
                self._remove_locked(key)
            self._stats["expirations"] += len(expired)
        if expired:
            logger.debug(f"Cleaned up {len(expired)} expired cache entries")
        return len(expired)

    def score_entry(self, entry: CacheEntry, now: float) -> float:
        """Value of an entry: 0.4 hits, 0.3 recency, 0.3 cost saved"""
        age = now - entry.timestamp
        recency_score = max(0.0, 1 - age / RECENCY_WINDOW_SECONDS)
        hit_score = min(1.0, entry.hits / 10)
        cost_score = min(1.0, entry.cost / 0.01)
        return hit_score * 0.4 + recency_score * 0.3 + cost_score * 0.3

    async def optimize(self) -> Dict[str, Any]:
        """
        Evict the lowest-value entries when the cache is nearly full.

        Only entries present when the call began are considered. When
        utilization exceeds 80%, exactly floor(0.2 * n) of them are removed,
        lowest score first.

        Returns:
            Dict with entries_removed, space_freed and cost_saved
        """
        sequence_at_start = self._sequence
        async with self._lock:
            now = self._clock()
            snapshot = [e for e in self._entries.values() if e.sequence <= sequence_at_start]
            utilization = len(self._entries) / self.config.max_size

            if utilization <= OPTIMIZE_UTILIZATION_THRESHOLD or not snapshot:
                return {"entries_removed": 0, "space_freed": 0, "cost_saved": 0.0}

            scored = sorted(snapshot, key=lambda e: (self.score_entry(e, now), e.sequence))
            to_remove = scored[:math.floor(len(snapshot) * OPTIMIZE_EVICTION_FRACTION)]

            space_freed = 0
            cost_saved = 0.0
            for entry in to_remove:
                self._remove_locked(entry.key)
                space_freed += entry.size
                cost_saved += entry.cost * entry.hits
            self._stats["evictions"] += len(to_remove)

        logger.info(
            f"Cache optimization completed: removed={len(to_remove)} "
            f"space_freed={space_freed} cost_saved={cost_saved:.6f}"
        )
        return {"entries_removed": len(to_remove), "space_freed": space_freed, "cost_saved": cost_saved}

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def utilization(self) -> float:
        return len(self._entries) / self.config.max_size

    def get_stats(self) -> Dict[str, Any]:
        """
        Get cache statistics.

        Returns:
            Dict[str, Any]: counters, hit rate, memory usage and the ten most
            hit entries
        """
        entries = list(self._entries.values())
        stats = dict(self._stats)
        lookups = stats["hits"] + stats["misses"]
        now = self._clock()

        stats["hit_rate"] = stats["hits"] / lookups if lookups > 0 else 0.0
        stats["total_entries"] = len(entries)
        stats["memory_usage"] = {
            "used": len(entries),
            "capacity": self.config.max_size,
            "utilization": len(entries) / self.config.max_size,
        }
        stats["top_entries"] = [
            {
                "key": entry.key[:8] + "...",
                "hits": entry.hits,
                "size": entry.size,
                "age": now - entry.timestamp,
                "model": entry.model,
            }
            for entry in sorted(entries, key=lambda e: e.hits, reverse=True)[:10]
        ]
        return stats

    # ------------------------------------------------------------------
    # Background maintenance
    # ------------------------------------------------------------------

    async def run_maintenance(self) -> Dict[str, Any]:
        """One maintenance pass: sweep expired entries, then optimize"""
        expired = await self.cleanup_expired()
        result = await self.optimize()
        result["expired_removed"] = expired
        return result

    async def _maintenance_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.run_maintenance()
            except Exception as e:
                logger.error(f"Cache maintenance failed: {e}")

    def start_maintenance(self, interval: Optional[float] = None) -> asyncio.Task:
        """Start the periodic sweep/optimize task"""
        if self._maintenance_task is None or self._maintenance_task.done():
            period = interval if interval is not None else self.config.cleanup_interval_seconds
            self._maintenance_task = asyncio.create_task(self._maintenance_loop(period))
        return self._maintenance_task

    async def stop_maintenance(self) -> None:
        task, self._maintenance_task = self._maintenance_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
