"""
Artist Profile Cache

diskcache-backed cache for artist profiles, related-artist lists and
top tracks. Cache failures are logged and behave like misses.
"""

from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
from diskcache import Cache

from ..models.game_models import ArtistProfile, ArtistRef, TrackDetails

logger = structlog.get_logger(__name__)

PROFILES = "artist_profiles"
RELATED = "related_artists"
TOP_TRACKS = "top_tracks"


class ArtistProfileCache:
    """
    File-based cache with TTL for catalog lookups.

    Constructed once per process and injected into the services that
    need it.
    """

    def __init__(self, cache_dir: str = "data/cache", ttl_hours: int = 24 * 7):
        """
        Initialize the cache.

        Args:
            cache_dir: Directory for cache storage
            ttl_hours: Default time to live for every namespace
        """
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)

        self.caches = {
            PROFILES: Cache(str(self.cache_dir / PROFILES)),
            RELATED: Cache(str(self.cache_dir / RELATED)),
            TOP_TRACKS: Cache(str(self.cache_dir / TOP_TRACKS)),
        }
        self.default_ttl = {
            PROFILES: ttl_hours * 3600,
            RELATED: ttl_hours * 3600,
            TOP_TRACKS: max(ttl_hours // 2, 1) * 3600,
        }
        self.logger = logger.bind(component="ArtistProfileCache")
        self.logger.info(
            "Artist profile cache initialized",
            cache_dir=str(self.cache_dir),
            namespaces=list(self.caches.keys())
        )

    def _get(self, namespace: str, key: str) -> Any:
        try:
            value = self.caches[namespace].get(key)
            self.logger.debug(
                "Cache hit" if value is not None else "Cache miss",
                namespace=namespace,
                key=key
            )
            return value
        except Exception as e:
            self.logger.error("Cache get failed", namespace=namespace, key=key, error=str(e))
            return None

    def _set(self, namespace: str, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        try:
            self.caches[namespace].set(key, value, expire=ttl or self.default_ttl[namespace])
            return True
        except Exception as e:
            self.logger.error("Cache set failed", namespace=namespace, key=key, error=str(e))
            return False

    def get_profile(self, artist_id: str) -> Optional[ArtistProfile]:
        data = self._get(PROFILES, artist_id)
        if not data:
            return None
        try:
            return ArtistProfile(**data)
        except TypeError as e:
            self.logger.warning("Discarding malformed cached profile", artist_id=artist_id, error=str(e))
            return None

    def set_profile(self, profile: ArtistProfile) -> bool:
        if not profile.id:
            return False
        return self._set(PROFILES, profile.id, asdict(profile))

    def get_related(self, artist_id: str) -> Optional[List[ArtistRef]]:
        data = self._get(RELATED, artist_id)
        if data is None:
            return None
        return [ArtistRef(**item) for item in data]

    def set_related(self, artist_id: str, related: List[ArtistRef]) -> bool:
        return self._set(RELATED, artist_id, [asdict(artist) for artist in related])

    def get_top_tracks(self, artist_id: str) -> Optional[List[TrackDetails]]:
        data = self._get(TOP_TRACKS, artist_id)
        if data is None:
            return None
        tracks = []
        for item in data:
            artists = [ArtistRef(**a) for a in item.pop("artists", [])]
            tracks.append(TrackDetails(artists=artists, **item))
        return tracks

    def set_top_tracks(self, artist_id: str, tracks: List[TrackDetails]) -> bool:
        return self._set(TOP_TRACKS, artist_id, [asdict(track) for track in tracks])

    def delete(self, namespace: str, key: str) -> bool:
        if namespace not in self.caches:
            return False
        try:
            return bool(self.caches[namespace].delete(key))
        except Exception as e:
            self.logger.error("Cache delete failed", namespace=namespace, key=key, error=str(e))
            return False

    def clear(self, namespace: Optional[str] = None) -> bool:
        """
        Clear one namespace, or all of them.

        Args:
            namespace: Namespace to clear (all if None)

        Returns:
            True if successful
        """
        try:
            if namespace:
                if namespace not in self.caches:
                    self.logger.warning("Invalid cache namespace", namespace=namespace)
                    return False
                self.caches[namespace].clear()
            else:
                for cache in self.caches.values():
                    cache.clear()
            self.logger.info("Cache cleared", namespace=namespace or "all")
            return True
        except Exception as e:
            self.logger.error("Cache clear failed", error=str(e))
            return False

    def get_stats(self) -> Dict[str, Dict[str, Any]]:
        stats = {}
        for name, cache in self.caches.items():
            try:
                stats[name] = {
                    "size": len(cache),
                    "volume": cache.volume(),
                    "directory": str(cache.directory),
                }
            except Exception as e:
                self.logger.error("Failed to get cache stats", namespace=name, error=str(e))
                stats[name] = {"error": str(e)}
        return stats

    def close(self) -> None:
        for cache in self.caches.values():
            cache.close()
