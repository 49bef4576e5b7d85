"""
Persistence Interface

Small query interface over the local music catalog store, plus an
in-memory implementation used by default and in tests.
"""

import asyncio
import random
from abc import ABC, abstractmethod
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional, Set

import structlog

from ..models.game_models import ArtistProfile, ArtistRef, TrackDetails

logger = structlog.get_logger(__name__)


class MusicStore(ABC):
    """Query interface the engine needs from persistent storage."""

    @abstractmethod
    async def get_artist_profile(self, artist_id: str) -> Optional[ArtistProfile]:
        ...

    async def get_artist_profiles(self, artist_ids: Iterable[str]) -> Dict[str, ArtistProfile]:
        profiles: Dict[str, ArtistProfile] = {}
        for artist_id in artist_ids:
            profile = await self.get_artist_profile(artist_id)
            if profile is not None:
                profiles[artist_id] = profile
        return profiles

    @abstractmethod
    async def upsert_artist_profile(self, profile: ArtistProfile) -> None:
        ...

    @abstractmethod
    async def fetch_random_artists(self, limit: int, exclude_ids: Optional[Set[str]] = None) -> List[ArtistRef]:
        ...

    @abstractmethod
    async def get_top_tracks(self, artist_id: str) -> Optional[List[TrackDetails]]:
        ...

    @abstractmethod
    async def upsert_top_tracks(self, artist_id: str, tracks: List[TrackDetails]) -> None:
        ...

    @abstractmethod
    async def upsert_track_details(self, tracks: List[TrackDetails]) -> None:
        ...

    @abstractmethod
    async def mark_track_unplayable(self, track_id: str) -> None:
        ...

    @abstractmethod
    async def get_genre_statistics(self) -> Dict[str, Any]:
        ...


class InMemoryMusicStore(MusicStore):
    """
    Dict-backed store.

    All writes are upserts, so replaying the same update is harmless.
    """

    def __init__(self, seed: Optional[int] = None):
        self._artists: Dict[str, ArtistProfile] = {}
        self._top_tracks: Dict[str, List[str]] = {}
        self._tracks: Dict[str, TrackDetails] = {}
        self._lock = asyncio.Lock()
        self._random = random.Random(seed)
        self.logger = logger.bind(component="InMemoryMusicStore")

    async def get_artist_profile(self, artist_id: str) -> Optional[ArtistProfile]:
        return self._artists.get(artist_id)

    async def get_artist_profiles(self, artist_ids: Iterable[str]) -> Dict[str, ArtistProfile]:
        return {aid: self._artists[aid] for aid in artist_ids if aid in self._artists}

    async def upsert_artist_profile(self, profile: ArtistProfile) -> None:
        if not profile.id:
            return
        async with self._lock:
            existing = self._artists.get(profile.id)
            if existing is not None:
                # Keep known values when the update is sparser
                profile = ArtistProfile(
                    id=profile.id,
                    name=profile.name or existing.name,
                    genres=profile.genres or existing.genres,
                    popularity=profile.popularity if profile.popularity is not None else existing.popularity,
                    followers=profile.followers if profile.followers is not None else existing.followers,
                )
            self._artists[profile.id] = profile

    async def fetch_random_artists(self, limit: int, exclude_ids: Optional[Set[str]] = None) -> List[ArtistRef]:
        if limit <= 0:
            return []
        excluded = exclude_ids or set()
        pool = [
            ArtistRef(id=profile.id, name=profile.name)
            for profile in self._artists.values()
            if profile.id not in excluded
        ]
        if len(pool) <= limit:
            return pool
        return self._random.sample(pool, limit)

    async def get_top_tracks(self, artist_id: str) -> Optional[List[TrackDetails]]:
        track_ids = self._top_tracks.get(artist_id)
        if track_ids is None:
            return None
        return [self._tracks[tid] for tid in track_ids if tid in self._tracks]

    async def upsert_top_tracks(self, artist_id: str, tracks: List[TrackDetails]) -> None:
        async with self._lock:
            for track in tracks:
                if track.id:
                    self._tracks[track.id] = track
            self._top_tracks[artist_id] = [t.id for t in tracks if t.id]

    async def upsert_track_details(self, tracks: List[TrackDetails]) -> None:
        async with self._lock:
            for track in tracks:
                if track.id:
                    self._tracks[track.id] = track

    async def mark_track_unplayable(self, track_id: str) -> None:
        async with self._lock:
            track = self._tracks.get(track_id)
            if track is not None:
                track.is_playable = False

    async def get_genre_statistics(self) -> Dict[str, Any]:
        genre_counts: Counter = Counter()
        with_genres = 0
        for profile in self._artists.values():
            if profile.genres:
                with_genres += 1
                genre_counts.update(profile.genres)
        total = len(self._artists)
        return {
            "total_artists": total,
            "artists_with_genres": with_genres,
            "artists_without_genres": total - with_genres,
            "top_genres": [
                {"genre": genre, "count": count}
                for genre, count in genre_counts.most_common(10)
            ],
        }

    def get_track(self, track_id: str) -> Optional[TrackDetails]:
        return self._tracks.get(track_id)
