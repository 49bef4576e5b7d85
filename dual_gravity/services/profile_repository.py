"""
Profile Repository

Three-tier lookup for artist data: disk cache, then the persistence
store, then the catalog. Anything fetched from the catalog is written
back to the lower tiers; gaps are handed to the lazy update queue.
"""

import asyncio
from dataclasses import asdict
from typing import Dict, Iterable, List, Mapping, Optional, Set

import structlog

from ..api.catalog_client import MusicCatalog
from ..exceptions import CatalogError
from ..models.config_models import EngineConfig
from ..models.game_models import (
    ArtistProfile,
    ArtistRef,
    CandidateSeed,
    PlayerId,
    TargetArtist,
    TargetProfile,
    TrackDetails,
)
from .lazy_update_queue import LazyUpdate, LazyUpdateQueue, LazyUpdateType
from .persistence import MusicStore
from .profile_cache import ArtistProfileCache
from .similarity import is_valid_catalog_id
from .statistics_tracker import ApiStatisticsTracker, CacheTier, OperationType

logger = structlog.get_logger(__name__)


class ProfileRepository:
    """
    Artist profile, related-artist and top-track access for one request.

    Args:
        catalog: Catalog client bound to the request's credential
        store: Persistence store
        lazy_queue: Outbox for deferred writes
        cache: Optional disk cache
        config: Engine configuration
        stats: Statistics tracker of the request
    """

    def __init__(
        self,
        catalog: MusicCatalog,
        store: MusicStore,
        lazy_queue: LazyUpdateQueue,
        cache: Optional[ArtistProfileCache] = None,
        config: Optional[EngineConfig] = None,
        stats: Optional[ApiStatisticsTracker] = None
    ):
        self.catalog = catalog
        self.store = store
        self.lazy_queue = lazy_queue
        self.cache = cache
        self.config = config or EngineConfig()
        self.stats = stats or ApiStatisticsTracker()
        self.logger = logger.bind(component="ProfileRepository")

    async def _remember(self, profile: ArtistProfile) -> None:
        """Write a catalog profile back to the store and cache."""
        await self.store.upsert_artist_profile(profile)
        if self.cache is not None:
            self.cache.set_profile(profile)
        if profile.needs_genre_backfill:
            self.lazy_queue.enqueue(LazyUpdate(
                type=LazyUpdateType.ARTIST_PROFILE,
                spotify_id=profile.id,
                payload={"name": profile.name, "reason": "missing_genres"},
            ))

    async def get_profile(self, artist_id: str) -> Optional[ArtistProfile]:
        profiles = await self.get_profiles([artist_id])
        return profiles.get(artist_id)

    async def get_profiles(self, artist_ids: Iterable[str]) -> Dict[str, ArtistProfile]:
        """
        Batch profile lookup across all three tiers.

        Stored profiles without genres are refreshed from the catalog,
        falling back to the stored copy when the refresh fails.

        Args:
            artist_ids: Catalog artist ids (invalid ids are skipped)

        Returns:
            Artist id -> profile for every artist that could be resolved
        """
        wanted = [a for a in dict.fromkeys(artist_ids) if is_valid_catalog_id(a)]
        result: Dict[str, ArtistProfile] = {}
        if not wanted:
            return result

        self.stats.record_request(OperationType.ARTIST_PROFILES, len(wanted))

        missing: List[str] = []
        for artist_id in wanted:
            cached = self.cache.get_profile(artist_id) if self.cache is not None else None
            if cached is not None and not cached.needs_genre_backfill:
                result[artist_id] = cached
                self.stats.record_cache_hit(OperationType.ARTIST_PROFILES, CacheTier.MEMORY)
            else:
                missing.append(artist_id)

        stale: Dict[str, ArtistProfile] = {}
        if missing:
            stored = await self.store.get_artist_profiles(missing)
            for artist_id, profile in stored.items():
                if profile.needs_genre_backfill:
                    stale[artist_id] = profile
                    continue
                result[artist_id] = profile
                self.stats.record_cache_hit(OperationType.ARTIST_PROFILES, CacheTier.DATABASE)
                if self.cache is not None:
                    self.cache.set_profile(profile)
            missing = [a for a in missing if a not in result]

        if missing:
            try:
                async with self.stats.time_call(OperationType.ARTIST_PROFILES):
                    fetched = await self.catalog.get_artists(missing)
                self.stats.record_from_catalog(OperationType.ARTIST_PROFILES, len(fetched))
                for profile in fetched:
                    if not profile.id:
                        continue
                    result[profile.id] = profile
                    await self._remember(profile)
            except CatalogError as e:
                self.logger.warning(
                    "Catalog profile batch failed",
                    requested=len(missing),
                    error=str(e)
                )

        for artist_id, profile in stale.items():
            result.setdefault(artist_id, profile)

        self.logger.debug(
            "Profiles resolved",
            requested=len(wanted),
            resolved=len(result),
            from_catalog=len([a for a in missing if a in result])
        )
        return result

    async def resolve_target_profiles(
        self,
        targets: Mapping[PlayerId, Optional[TargetArtist]]
    ) -> Dict[PlayerId, Optional[TargetProfile]]:
        """
        Resolve every player's target concurrently.

        Args:
            targets: Target artist per player (None when unset)

        Returns:
            Target profile per player, None where resolution failed
        """
        players = list(PlayerId)
        profiles = await asyncio.gather(
            *(self._lookup_target(targets.get(player)) for player in players)
        )
        resolved = dict(zip(players, profiles))
        self.logger.info(
            "Target resolution complete",
            resolved=sum(1 for p in resolved.values() if p is not None),
            requested=sum(1 for t in targets.values() if t and t.name)
        )
        return resolved

    async def _lookup_target(self, target: Optional[TargetArtist]) -> Optional[TargetProfile]:
        if target is None or not target.name:
            return None

        artist_id = target.id
        if artist_id and "-" in artist_id:
            self.logger.warning(
                "Target id looks like a database id, searching by name",
                name=target.name,
                artist_id=artist_id
            )
            artist_id = None

        profile = None
        if artist_id and is_valid_catalog_id(artist_id):
            profile = await self.get_profile(artist_id)

        if profile is None:
            profile = await self.search_artist(target.name)

        if profile is None:
            self.logger.warning("Failed to resolve target", name=target.name)
            return None
        return TargetProfile.from_artist_profile(target, profile)

    async def search_artist(self, name: str) -> Optional[ArtistProfile]:
        self.stats.record_request(OperationType.ARTIST_SEARCHES)
        try:
            async with self.stats.time_call(OperationType.ARTIST_SEARCHES):
                profile = await self.catalog.search_artist(name)
        except CatalogError as e:
            self.logger.warning("Artist search failed", name=name, error=str(e))
            return None
        if profile is not None and profile.id:
            self.stats.record_from_catalog(OperationType.ARTIST_SEARCHES)
            await self._remember(profile)
            return profile
        return None

    async def enrich_candidates(
        self,
        seeds: List[CandidateSeed],
        profiles: Dict[str, ArtistProfile]
    ) -> Dict[str, ArtistProfile]:
        """
        Make sure every candidate artist has a profile.

        Artists with a valid id are batch-fetched. Artists known only by
        name are searched (bounded) and their id is rewritten in place on
        the seed so later stages find the profile.

        Args:
            seeds: Candidate seeds of this turn
            profiles: Profiles already known

        Returns:
            New mapping with the fetched profiles added
        """
        enriched = dict(profiles)
        missing_ids: Set[str] = set()
        unresolved: List[ArtistRef] = []

        for seed in seeds:
            for artist in seed.track.artists:
                if is_valid_catalog_id(artist.id):
                    if artist.id not in enriched:
                        missing_ids.add(artist.id)
                elif artist.name:
                    unresolved.append(artist)

        if missing_ids:
            enriched.update(await self.get_profiles(missing_ids))

        resolved_by_name = 0
        searched: Dict[str, Optional[ArtistProfile]] = {}
        for artist in unresolved[:self.config.name_search_limit]:
            key = artist.name.strip().lower()
            if key not in searched:
                searched[key] = await self.search_artist(artist.name)
            match = searched[key]
            if match is None:
                continue
            self.logger.debug("Resolved artist id by name", name=artist.name, old_id=artist.id, new_id=match.id)
            artist.id = match.id
            enriched[match.id] = match
            resolved_by_name += 1

        self.logger.info(
            "Candidate enrichment complete",
            missing_by_id=len(missing_ids),
            without_id=len(unresolved),
            resolved_by_name=resolved_by_name,
            total_profiles=len(enriched)
        )
        return enriched

    async def get_track(self, track_id: str) -> Optional[TrackDetails]:
        """
        Fresh track details from the catalog, queued for persistence.

        Raises:
            CatalogError: When the catalog lookup fails
        """
        self.stats.record_request(OperationType.TRACK_DETAILS)
        async with self.stats.time_call(OperationType.TRACK_DETAILS):
            track = await self.catalog.get_track(track_id)
        if track is None:
            return None
        self.stats.record_from_catalog(OperationType.TRACK_DETAILS)
        self.lazy_queue.enqueue(LazyUpdate(
            type=LazyUpdateType.TRACK_DETAILS,
            spotify_id=track.id,
            payload={"tracks": [asdict(track)]},
        ))
        return track

    async def get_related_artists(self, artist_id: str) -> List[ArtistRef]:
        """
        Related artists of one artist, cached.

        Raises:
            CatalogError: When the catalog lookup fails
        """
        self.stats.record_request(OperationType.RELATED_ARTISTS)
        if self.cache is not None:
            cached = self.cache.get_related(artist_id)
            if cached:
                self.stats.record_cache_hit(OperationType.RELATED_ARTISTS)
                return cached

        async with self.stats.time_call(OperationType.RELATED_ARTISTS):
            related = await self.catalog.get_related_artists(artist_id)
        self.stats.record_from_catalog(OperationType.RELATED_ARTISTS, len(related))
        if related and self.cache is not None:
            self.cache.set_related(artist_id, related)
        return related

    async def get_top_tracks(self, artist_id: str) -> List[TrackDetails]:
        tracks = await self.get_top_tracks_for_artists([artist_id])
        return tracks.get(artist_id, [])

    async def get_top_tracks_for_artists(
        self,
        artist_ids: Iterable[str],
        exclude_ids: Optional[Set[str]] = None
    ) -> Dict[str, List[TrackDetails]]:
        """
        Top tracks for many artists with cache and store fallback.

        Args:
            artist_ids: Artists to look up
            exclude_ids: Track ids to leave out

        Returns:
            Artist id -> tracks; artists that failed are missing
        """
        excluded = exclude_ids or set()
        wanted = [a for a in dict.fromkeys(artist_ids) if is_valid_catalog_id(a)]
        self.stats.record_request(OperationType.TOP_TRACKS, len(wanted))

        found: Dict[str, List[TrackDetails]] = {}
        missing: List[str] = []
        for artist_id in wanted:
            tracks = self.cache.get_top_tracks(artist_id) if self.cache is not None else None
            if tracks:
                self.stats.record_cache_hit(OperationType.TOP_TRACKS, CacheTier.MEMORY)
                found[artist_id] = tracks
                continue
            tracks = await self.store.get_top_tracks(artist_id)
            if tracks:
                self.stats.record_cache_hit(OperationType.TOP_TRACKS, CacheTier.DATABASE)
                found[artist_id] = tracks
                continue
            missing.append(artist_id)

        if missing:
            async with self.stats.time_call(OperationType.TOP_TRACKS, label=f"{len(missing)} artists"):
                fetched = await self.catalog.get_top_tracks_for_artists(missing)
            for artist_id, tracks in fetched.items():
                self.stats.record_from_catalog(OperationType.TOP_TRACKS, len(tracks))
                found[artist_id] = tracks
                if not tracks:
                    continue
                if self.cache is not None:
                    self.cache.set_top_tracks(artist_id, tracks)
                self.lazy_queue.enqueue(LazyUpdate(
                    type=LazyUpdateType.ARTIST_TOP_TRACKS,
                    spotify_id=artist_id,
                    payload={"tracks": [asdict(t) for t in tracks]},
                ))

        return {
            artist_id: [t for t in tracks if t.id not in excluded]
            for artist_id, tracks in found.items()
        }
