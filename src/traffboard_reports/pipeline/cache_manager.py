"""TTL cache for data pipeline results.

Keys are a best-effort 32-bit fingerprint of ``(pipeline_id, filters)``;
collisions are possible and accepted.
"""
from __future__ import annotations
import json
import logging
import re
import threading
import time
from typing import Any, Callable, Dict, List, Optional
from prometheus_client import Counter, Gauge
from traffboard_reports.types import AppliedFilter, CacheConfig, CacheEntry, ReportData

logger = logging.getLogger(__name__)

CACHE_LOOKUPS = Counter('report_cache_lookups_total', 'Pipeline cache lookups', ['result'])
CACHE_ENTRIES = Gauge('report_cache_entries', 'Entries held by the pipeline cache')
CACHE_EVICTIONS = Counter('report_cache_evictions_total', 'Entries evicted from the pipeline cache', ['reason'])


def to_json(value: Any) -> str:
    """Serialize like JavaScript's JSON.stringify (compact separators)."""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


def _utf16_code_points(text: str) -> List[int]:
    # Walk UTF-16 code units, reading a full code point at each index the way
    # String.prototype.codePointAt does (a low surrogate yields itself).
    units = text.encode("utf-16-le")
    codes = [int.from_bytes(units[i:i + 2], "little") for i in range(0, len(units), 2)]
    points = []
    for i, unit in enumerate(codes):
        if 0xD800 <= unit <= 0xDBFF and i + 1 < len(codes) and 0xDC00 <= codes[i + 1] <= 0xDFFF:
            points.append(0x10000 + ((unit - 0xD800) << 10) + (codes[i + 1] - 0xDC00))
        else:
            points.append(unit)
    return points


def string_hash32(text: str) -> int:
    """Java-style rolling hash ``h = h*31 + code`` wrapped to a signed 32-bit int."""
    h = 0
    for code in _utf16_code_points(text):
        h = (h * 31 + code) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return h


class CacheManager:
    """In-memory TTL cache owned by a single pipeline manager."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._cache: Dict[str, CacheEntry] = {}
        self._clock = clock
        self._lock = threading.RLock()

    def generate_cache_key(self, pipeline_id: str, filters: Optional[List[AppliedFilter]] = None) -> str:
        # case-insensitive order, ties broken by code point so the key never
        # depends on the order filters arrive in
        pairs = [f"{f.id}:{to_json(f.value)}" for f in (filters or [])]
        filter_string = "|".join(sorted(pairs, key=lambda p: (p.casefold(), p)))
        hash_input = f"{pipeline_id}:{filter_string}"
        return f"pipeline_{abs(string_hash32(hash_input))}"

    def get_cached_data(self, key: str, config: CacheConfig) -> Optional[ReportData]:
        if not config.enabled:
            return None

        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                CACHE_LOOKUPS.labels(result='miss').inc()
                return None

            if entry.expires <= self._clock():
                del self._cache[key]
                CACHE_EVICTIONS.labels(reason='expired').inc()
                CACHE_ENTRIES.set(len(self._cache))
                CACHE_LOOKUPS.labels(result='expired').inc()
                return None

            CACHE_LOOKUPS.labels(result='hit').inc()
            return entry.data

    def set_cached_data(self, key: str, data: ReportData, config: CacheConfig) -> None:
        if not config.enabled:
            return

        with self._lock:
            self._cache[key] = CacheEntry(data=data, expires=self._clock() + config.ttl)
            CACHE_ENTRIES.set(len(self._cache))

    def clear_cache(self, pattern: Optional[str] = None) -> int:
        """Remove all entries, or only those whose key matches ``pattern``.

        An invalid regular expression is logged and leaves the cache untouched.
        Returns the number of removed entries.
        """
        with self._lock:
            if not pattern:
                removed = len(self._cache)
                self._cache.clear()
                CACHE_EVICTIONS.labels(reason='cleared').inc(removed)
                CACHE_ENTRIES.set(0)
                return removed

            try:
                regex = re.compile(pattern)
            except re.error as e:
                logger.warning(f"Invalid regex pattern for cache clearing: {pattern} ({e})")
                return 0

            matched = [key for key in self._cache if regex.search(key)]
            for key in matched:
                del self._cache[key]
            CACHE_EVICTIONS.labels(reason='cleared').inc(len(matched))
            CACHE_ENTRIES.set(len(self._cache))
            return len(matched)

    def get_cache_stats(self) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            total = len(self._cache)
            valid = sum(1 for entry in self._cache.values() if entry.expires > now)
        return {
            "total_entries": total,
            "valid_entries": valid,
            "expired_entries": total - valid,
            # occupancy ratio, not a historical hit rate
            "hit_ratio": valid / max(total, 1),
        }

    def cleanup_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._cache.items() if entry.expires <= now]
            for key in expired:
                del self._cache[key]
            if expired:
                CACHE_EVICTIONS.labels(reason='expired').inc(len(expired))
                logger.debug(f"Swept {len(expired)} expired cache entries")
            CACHE_ENTRIES.set(len(self._cache))
            return len(expired)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._cache.keys())
