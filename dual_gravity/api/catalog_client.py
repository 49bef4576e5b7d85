"""
Music Catalog Client

Catalog interface used by the engine and its Spotify Web API
implementation. Requests are made with the player's own bearer token,
so one client is created per request.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Set

import structlog

from ..exceptions import CatalogError
from ..models.game_models import ArtistProfile, ArtistRef, TrackDetails, normalize_name
from ..services.similarity import is_valid_catalog_id
from .base_client import BaseAPIClient
from .rate_limiter import UnifiedRateLimiter

logger = structlog.get_logger(__name__)

ARTIST_BATCH_SIZE = 50


class MusicCatalog(ABC):
    """
    Operations the engine needs from the music catalog.

    Lookups of unknown entities return None or an empty list. Upstream
    failures raise CatalogError so callers can degrade and schedule healing.
    """

    top_track_concurrency: int = 5

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    @abstractmethod
    async def get_track(self, track_id: str) -> Optional[TrackDetails]:
        ...

    @abstractmethod
    async def get_artist(self, artist_id: str) -> Optional[ArtistProfile]:
        ...

    @abstractmethod
    async def get_artists(self, artist_ids: List[str]) -> List[ArtistProfile]:
        ...

    @abstractmethod
    async def get_related_artists(self, artist_id: str) -> List[ArtistRef]:
        ...

    @abstractmethod
    async def get_artist_top_tracks(self, artist_id: str) -> List[TrackDetails]:
        ...

    @abstractmethod
    async def search_artist(self, name: str) -> Optional[ArtistProfile]:
        ...

    async def get_top_tracks_for_artists(
        self,
        artist_ids: Iterable[str],
        exclude_ids: Optional[Set[str]] = None
    ) -> Dict[str, List[TrackDetails]]:
        """
        Fetch top tracks for many artists with bounded concurrency.

        Args:
            artist_ids: Artists to fetch
            exclude_ids: Track ids to leave out (played or current tracks)

        Returns:
            Artist id -> remaining tracks; failed artists are omitted
        """
        excluded = exclude_ids or set()
        semaphore = asyncio.Semaphore(self.top_track_concurrency)
        unique_ids = list(dict.fromkeys(a for a in artist_ids if a))

        async def fetch(artist_id: str):
            async with semaphore:
                try:
                    tracks = await self.get_artist_top_tracks(artist_id)
                except CatalogError as e:
                    logger.warning("Top tracks fetch failed", artist_id=artist_id, error=str(e))
                    return artist_id, None
                return artist_id, [t for t in tracks if t.id and t.id not in excluded]

        results = await asyncio.gather(*(fetch(artist_id) for artist_id in unique_ids))
        return {artist_id: tracks for artist_id, tracks in results if tracks is not None}


class SpotifyCatalogClient(BaseAPIClient, MusicCatalog):
    """Spotify Web API catalog authenticated with a user access token."""

    BASE_URL = "https://api.spotify.com/v1"

    def __init__(
        self,
        access_token: str,
        rate_limiter: Optional[UnifiedRateLimiter] = None,
        base_url: Optional[str] = None,
        timeout: int = 10,
        market: str = "from_token",
        top_track_concurrency: int = 5
    ):
        """
        Initialize the catalog client.

        Args:
            access_token: Player's bearer token
            rate_limiter: Shared limiter (a catalog preset is created if omitted)
            base_url: Override of the API base URL
            timeout: Request timeout in seconds
            market: Market used for top-track lookups
            top_track_concurrency: Concurrent top-track requests per batch
        """
        super().__init__(
            base_url=base_url or self.BASE_URL,
            rate_limiter=rate_limiter or UnifiedRateLimiter.for_catalog(),
            timeout=timeout,
            service_name="Catalog"
        )
        self.access_token = access_token
        self.market = market
        self.top_track_concurrency = top_track_concurrency

    def _default_headers(self) -> Dict[str, str]:
        headers = super()._default_headers()
        headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    def _extract_api_error(self, data: Dict[str, Any]) -> Optional[str]:
        if isinstance(data, dict) and "error" in data:
            error_info = data["error"]
            if isinstance(error_info, dict):
                return error_info.get("message", f"Error {error_info.get('status', 'unknown')}")
            return str(error_info)
        return None

    async def _get_or_none(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        try:
            return await self._make_request(endpoint, params=params)
        except CatalogError as e:
            if e.upstream_status in (400, 404):
                return None
            raise

    def _reject_invalid(self, entity: str, entity_id: str) -> bool:
        if is_valid_catalog_id(entity_id):
            return False
        self.logger.warning("Invalid catalog id, skipping request", entity=entity, entity_id=entity_id)
        return True

    async def get_track(self, track_id: str) -> Optional[TrackDetails]:
        if self._reject_invalid("track", track_id):
            return None
        data = await self._get_or_none(f"tracks/{track_id}")
        return TrackDetails.from_catalog(data) if data else None

    async def get_artist(self, artist_id: str) -> Optional[ArtistProfile]:
        if self._reject_invalid("artist", artist_id):
            return None
        data = await self._get_or_none(f"artists/{artist_id}")
        return ArtistProfile.from_catalog(data) if data else None

    async def get_artists(self, artist_ids: List[str]) -> List[ArtistProfile]:
        """
        Batch artist lookup.

        Args:
            artist_ids: Artist ids; invalid ids are dropped

        Returns:
            Profiles of the artists the catalog knows
        """
        valid_ids = [a for a in dict.fromkeys(artist_ids) if is_valid_catalog_id(a)]
        profiles: List[ArtistProfile] = []
        for start in range(0, len(valid_ids), ARTIST_BATCH_SIZE):
            batch = valid_ids[start:start + ARTIST_BATCH_SIZE]
            data = await self._make_request("artists", params={"ids": ",".join(batch)})
            profiles.extend(
                ArtistProfile.from_catalog(item)
                for item in data.get("artists") or []
                if item
            )
        return profiles

    async def get_related_artists(self, artist_id: str) -> List[ArtistRef]:
        if self._reject_invalid("artist", artist_id):
            return []
        data = await self._make_request(f"artists/{artist_id}/related-artists")
        return [
            ArtistRef(id=item.get("id") or "", name=item.get("name") or "")
            for item in data.get("artists") or []
            if item and item.get("id")
        ]

    async def get_artist_top_tracks(self, artist_id: str) -> List[TrackDetails]:
        if self._reject_invalid("artist", artist_id):
            return []
        data = await self._make_request(
            f"artists/{artist_id}/top-tracks",
            params={"market": self.market}
        )
        return [TrackDetails.from_catalog(item) for item in data.get("tracks") or [] if item]

    async def search_artist(self, name: str) -> Optional[ArtistProfile]:
        """
        Find an artist by name.

        An exact (case-insensitive) name match is preferred over the
        first search result.
        """
        if not name or not name.strip():
            return None
        data = await self._make_request(
            "search",
            params={"q": f'artist:"{name.strip()}"', "type": "artist", "limit": 5}
        )
        items = [item for item in (data.get("artists") or {}).get("items") or [] if item]
        if not items:
            return None
        wanted = normalize_name(name)
        exact = next((item for item in items if normalize_name(item.get("name")) == wanted), None)
        return ArtistProfile.from_catalog(exact or items[0])

