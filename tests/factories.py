"""
Test data builders and an in-memory MusicCatalog.
"""

from collections import Counter
from typing import Dict, List, Optional, Set

from dual_gravity.api.catalog_client import MusicCatalog
from dual_gravity.exceptions import CatalogError
from dual_gravity.models.game_models import (
    ArtistProfile,
    ArtistRef,
    TargetArtist,
    TargetProfile,
    TrackDetails,
    normalize_name,
)


def artist_id(n: int) -> str:
    """22-character catalog id for test artist ``n``."""
    return f"artist{n:016d}"


def track_id(n: int) -> str:
    return f"track{n:017d}"


def make_track(n: int, artist: ArtistRef, popularity: int = 50, release_date: str = "2015-01-01",
               is_playable: bool = True) -> TrackDetails:
    return TrackDetails(
        id=track_id(n),
        name=f"Track {n}",
        artists=[artist],
        popularity=popularity,
        duration_ms=200000,
        release_date=release_date,
        is_playable=is_playable,
    )


def make_target(profile: ArtistProfile) -> TargetProfile:
    return TargetProfile.from_artist_profile(TargetArtist(name=profile.name, id=profile.id), profile)


class FakeCatalog(MusicCatalog):
    """In-memory catalog with optional failure injection."""

    def __init__(self):
        self.artists: Dict[str, ArtistProfile] = {}
        self.related: Dict[str, List[ArtistRef]] = {}
        self.top_tracks: Dict[str, List[TrackDetails]] = {}
        self.tracks: Dict[str, TrackDetails] = {}
        self.failing_related: Set[str] = set()
        self.failing_top_tracks: Set[str] = set()
        self.calls: Counter = Counter()
        self.entered = 0

    async def __aenter__(self):
        self.entered += 1
        return self

    def add_artist(self, profile: ArtistProfile, top_tracks: Optional[List[TrackDetails]] = None):
        self.artists[profile.id] = profile
        if top_tracks is not None:
            self.top_tracks[profile.id] = top_tracks
            for track in top_tracks:
                self.tracks[track.id] = track

    async def get_track(self, track_id: str) -> Optional[TrackDetails]:
        self.calls["get_track"] += 1
        return self.tracks.get(track_id)

    async def get_artist(self, artist_id: str) -> Optional[ArtistProfile]:
        self.calls["get_artist"] += 1
        return self.artists.get(artist_id)

    async def get_artists(self, artist_ids: List[str]) -> List[ArtistProfile]:
        self.calls["get_artists"] += 1
        return [self.artists[a] for a in artist_ids if a in self.artists]

    async def get_related_artists(self, artist_id: str) -> List[ArtistRef]:
        self.calls["get_related_artists"] += 1
        if artist_id in self.failing_related:
            raise CatalogError("related artists unavailable", 503)
        return list(self.related.get(artist_id, []))

    async def get_artist_top_tracks(self, artist_id: str) -> List[TrackDetails]:
        self.calls["get_artist_top_tracks"] += 1
        if artist_id in self.failing_top_tracks:
            raise CatalogError("top tracks unavailable", 503)
        return list(self.top_tracks.get(artist_id, []))

    async def search_artist(self, name: str) -> Optional[ArtistProfile]:
        self.calls["search_artist"] += 1
        for profile in self.artists.values():
            if normalize_name(profile.name) == normalize_name(name):
                return profile
        return None
