"""
API Statistics Tracker

Per-request counters for catalog and cache usage plus call timings.
Its summary is attached to the debug block of every stage response.
"""

import time
from collections import defaultdict
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)


class OperationType(str, Enum):
    TOP_TRACKS = "top_tracks"
    TRACK_DETAILS = "track_details"
    RELATED_ARTISTS = "related_artists"
    ARTIST_PROFILES = "artist_profiles"
    ARTIST_SEARCHES = "artist_searches"


class CacheTier(str, Enum):
    MEMORY = "memory"
    DATABASE = "database"


class ApiStatisticsTracker:
    """
    Counts requests, cache hits and catalog fetches per operation.

    One tracker is created per stage request and passed to the
    repository and pipeline explicitly.
    """

    def __init__(self):
        self._requested: Dict[OperationType, int] = defaultdict(int)
        self._cached: Dict[OperationType, int] = defaultdict(int)
        self._cache_tiers: Dict[CacheTier, int] = defaultdict(int)
        self._from_catalog: Dict[OperationType, int] = defaultdict(int)
        self._api_calls: Dict[OperationType, int] = defaultdict(int)
        self._timings: List[Dict[str, Any]] = []

    def record_request(self, kind: OperationType, count: int = 1) -> None:
        self._requested[kind] += count

    def record_cache_hit(self, kind: OperationType, tier: CacheTier = CacheTier.MEMORY, count: int = 1) -> None:
        self._cached[kind] += count
        self._cache_tiers[tier] += count

    def record_from_catalog(self, kind: OperationType, count: int = 1) -> None:
        self._from_catalog[kind] += count

    @asynccontextmanager
    async def time_call(self, kind: OperationType, label: Optional[str] = None) -> AsyncIterator[None]:
        """
        Time one catalog call and count it.

        Args:
            kind: Operation being performed
            label: Optional extra label stored with the timing
        """
        start = time.perf_counter()
        try:
            yield
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            self._api_calls[kind] += 1
            timing = {"operation": kind.value, "duration_ms": round(duration_ms, 1)}
            if label:
                timing["label"] = label
            self._timings.append(timing)

    def get_statistics(self) -> Dict[str, Any]:
        total_requested = sum(self._requested.values())
        total_cached = sum(self._cached.values())
        per_operation = {
            kind.value: {
                "requested": self._requested[kind],
                "cached": self._cached[kind],
                "from_catalog": self._from_catalog[kind],
                "api_calls": self._api_calls[kind],
            }
            for kind in OperationType
        }
        return {
            "operations": per_operation,
            "cache_tiers": {tier.value: self._cache_tiers[tier] for tier in CacheTier},
            "total_api_calls": sum(self._api_calls.values()),
            "total_cache_hits": total_cached,
            "cache_hit_rate": min(1.0, total_cached / total_requested) if total_requested else 0.0,
        }

    def get_performance_diagnostics(self) -> Dict[str, Any]:
        slowest = max(self._timings, key=lambda t: t["duration_ms"], default=None)
        return {
            "api_calls": list(self._timings),
            "total_api_time_ms": round(sum(t["duration_ms"] for t in self._timings), 1),
            "slowest_api_call": slowest,
        }

