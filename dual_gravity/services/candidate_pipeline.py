"""
Candidate Pipeline

Stage 1 gathers about a hundred candidate artists for the turn, the
artist scoring stage narrows them down to nine balanced picks plus
backups, and stage 2 turns those picks into playable tracks.
"""

import asyncio
import time
from typing import Dict, List, Mapping, Optional, Set, Tuple

import structlog

from ..exceptions import CatalogError, PersistenceError, StageInputError
from ..models.config_models import EngineConfig
from ..models.game_models import (
    ArtistRef,
    CandidateSource,
    CandidateTrackMetrics,
    GravityZone,
    OptionTrack,
    PlayerId,
    SelectedArtist,
    SelectionCategory,
    TargetProfile,
    TrackDetails,
)
from ..models.pipeline_models import (
    Stage1Request,
    Stage1Response,
    Stage2FetchTracksRequest,
    Stage2FetchTracksResponse,
    Stage2ScoreArtistsRequest,
    Stage2ScoreArtistsResponse,
    TargetBranch,
)
from .diversity import DiversitySelector
from .gravity import gravity_zone, normalize_gravities, should_inject_target
from .lazy_update_queue import HealingAction, HealingQueue, HealingType
from .persistence import MusicStore
from .profile_repository import ProfileRepository
from .scoring import target_owner
from .similarity import (
    compute_attraction,
    compute_strict_artist_similarity,
    get_popularity_band,
    is_valid_catalog_id,
)

logger = structlog.get_logger(__name__)


class TurnBudget:
    """Wall-clock budget of one interactive stage."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        self.started = time.monotonic()

    def elapsed(self) -> float:
        return time.monotonic() - self.started

    def remaining(self) -> float:
        return max(0.0, self.seconds - self.elapsed())

    def elapsed_ms(self) -> int:
        return int(self.elapsed() * 1000)


class CandidatePipeline:
    """
    Candidate acquisition for one request.

    Args:
        repository: ProfileRepository bound to the request's catalog
        store: Persistence store (random backfill)
        healing: Healing queue for failed lookups
        config: Engine configuration
    """

    def __init__(
        self,
        repository: ProfileRepository,
        store: MusicStore,
        healing: HealingQueue,
        config: Optional[EngineConfig] = None
    ):
        self.repository = repository
        self.store = store
        self.healing = healing
        self.config = config or EngineConfig()
        self.selector = DiversitySelector(self.config)
        self.logger = logger.bind(component="CandidatePipeline")

    # ------------------------------------------------------------------
    # Stage 1
    # ------------------------------------------------------------------

    async def resolve_current_track(self, request: Stage1Request) -> TrackDetails:
        """
        Currently playing track, refreshed from the catalog when possible.

        Raises:
            StageInputError: No current track or no primary artist
        """
        item = request.playback_state.item if request.playback_state else None
        if item is None:
            raise StageInputError("No track is currently playing", "missing_current_track")

        track = item
        if is_valid_catalog_id(item.id):
            try:
                track = await self.repository.get_track(item.id) or item
            except CatalogError as e:
                self.logger.warning("Current track lookup failed, using playback item", track_id=item.id, error=str(e))

        if track.primary_artist is None:
            raise StageInputError("Current track has no primary artist", "missing_primary_artist")
        return track

    async def _related_to_current(self, seed_artist_id: str) -> List[ArtistRef]:
        try:
            related = await self.repository.get_related_artists(seed_artist_id)
        except CatalogError as e:
            self.logger.warning("Related-to-current fetch failed", artist_id=seed_artist_id, error=str(e))
            self.healing.enqueue_healing(HealingAction(
                type=HealingType.RELATED_ARTISTS,
                entity_id=seed_artist_id,
                error=str(e),
            ))
            return []
        return related[:self.config.max_related_to_current]

    async def _related_to_target(
        self,
        player: PlayerId,
        target: Optional[TargetProfile],
        gravity: float,
        round_number: int
    ) -> TargetBranch:
        zone = gravity_zone(gravity, self.config)
        branch = TargetBranch(player_id=player, zone=zone)
        if target is None or not target.artist_id:
            branch.skipped_reason = "no_target"
            return branch

        if zone is GravityZone.DEAD_ZONE:
            branch.skipped_reason = "dead_zone"
            return branch

        try:
            related = await self.repository.get_related_artists(target.artist_id)
            branch.artists = related[:self.config.max_related_to_target]
        except CatalogError as e:
            self.logger.warning(
                "Related-to-target fetch failed",
                player=player.value,
                target=target.artist.name,
                error=str(e)
            )
            self.healing.enqueue_healing(HealingAction(
                type=HealingType.RELATED_ARTISTS,
                entity_id=target.artist_id,
                error=str(e),
                entity_name=target.artist.name,
            ))

        if should_inject_target(gravity, round_number, self.config):
            if target.artist_id not in branch.artist_ids:
                branch.artists.append(ArtistRef(id=target.artist_id, name=target.artist.name))
            branch.target_injected = True
            self.logger.info(
                "Target artist injected",
                player=player.value,
                gravity=round(gravity, 3),
                round_number=round_number
            )
        return branch

    async def _with_budget(self, coro, budget: TurnBudget, fallback, label: str):
        try:
            return await asyncio.wait_for(coro, timeout=budget.remaining() or 0.001)
        except asyncio.TimeoutError:
            self.logger.warning("Branch timed out, continuing without it", branch=label)
            return fallback

    async def fetch_artists(
        self,
        request: Stage1Request,
        gravities: Mapping[PlayerId, float],
        budget: Optional[TurnBudget] = None
    ) -> Stage1Response:
        """
        Build the candidate artist pool for the turn.

        Args:
            request: Validated stage 1 request
            gravities: Gravities after applying the last selection
            budget: Latency budget (a fresh one when omitted)

        Returns:
            Stage1Response with at least ``min_unique_artists`` artists
            whenever the store holds enough artists

        Raises:
            StageInputError: Missing track, missing primary artist or
                invalid seed artist id
        """
        budget = budget or TurnBudget(self.config.turn_budget_seconds)
        gravities = normalize_gravities(gravities, self.config)

        current_track = await self.resolve_current_track(request)
        seed_artist = current_track.primary_artist
        if not is_valid_catalog_id(seed_artist.id):
            raise StageInputError(
                f"Invalid artist id for seed artist '{seed_artist.name}'",
                "invalid_artist_id"
            )

        target_profiles = await self.repository.resolve_target_profiles(request.player_targets)

        branch_results = await asyncio.gather(
            self._with_budget(self._related_to_current(seed_artist.id), budget, [], "related_to_current"),
            *(
                self._with_budget(
                    self._related_to_target(player, target_profiles.get(player), gravities[player], request.round_number),
                    budget,
                    TargetBranch(player_id=player, zone=gravity_zone(gravities[player], self.config), skipped_reason="timeout"),
                    f"related_to_target:{player.value}",
                )
                for player in PlayerId
            )
        )
        related_to_current: List[ArtistRef] = branch_results[0]
        target_branches: Dict[PlayerId, TargetBranch] = {
            branch.player_id: branch for branch in branch_results[1:]
        }

        combined: Dict[str, ArtistRef] = {}
        for artist in related_to_current:
            combined[artist.id] = artist
        for branch in target_branches.values():
            for artist in branch.artists:
                combined[artist.id] = artist

        unique_before_backfill = len(combined)
        needed = max(0, self.config.min_unique_artists - unique_before_backfill)
        random_artists: List[ArtistRef] = []
        if needed:
            try:
                random_artists = await self.store.fetch_random_artists(needed, exclude_ids=set(combined))
            except PersistenceError as e:
                self.logger.warning(
                    "Random backfill failed, continuing with current pool",
                    needed=needed,
                    error=str(e)
                )
        for artist in random_artists:
            combined[artist.id] = artist

        phase = self.config.get_exploration_phase(request.round_number)
        hard_convergence = request.round_number >= self.config.max_round_turns

        if len(combined) < self.config.min_unique_artists:
            self.logger.warning(
                "Candidate pool below minimum",
                unique_artists=len(combined),
                minimum=self.config.min_unique_artists
            )

        self.logger.info(
            "Stage 1 complete",
            seed_artist=seed_artist.name,
            related_to_current=len(related_to_current),
            related_to_target={p.value: len(b.artists) for p, b in target_branches.items()},
            random_backfill=len(random_artists),
            unique_artists=len(combined),
            duration_ms=budget.elapsed_ms()
        )

        return Stage1Response(
            artist_ids=list(combined),
            related_to_current=related_to_current,
            related_to_target=target_branches,
            random_artists=random_artists,
            target_profiles=target_profiles,
            current_track=current_track,
            seed_artist_id=seed_artist.id,
            seed_artist_name=seed_artist.name,
            updated_gravities=gravities,
            exploration_phase=phase.level,
            og_drift=phase.og_drift,
            hard_convergence_active=hard_convergence,
            debug={
                "candidate_pool": {
                    "related_to_current": len(related_to_current),
                    "related_to_target": {p.value: len(b.artists) for p, b in target_branches.items()},
                    "unique_before_backfill": unique_before_backfill,
                    "random_needed": needed,
                    "random_backfill": len(random_artists),
                    "total": len(combined),
                },
                "zones": {p.value: b.zone.value for p, b in target_branches.items()},
                "caching": self.repository.stats.get_statistics(),
                "performance": self.repository.stats.get_performance_diagnostics(),
                "duration_ms": budget.elapsed_ms(),
            },
        )

    # ------------------------------------------------------------------
    # Artist scoring
    # ------------------------------------------------------------------

    def _source_map(self, request: Stage2ScoreArtistsRequest) -> Dict[str, CandidateSource]:
        sources: Dict[str, CandidateSource] = {}
        for artist in request.random_artists:
            sources[artist.id] = CandidateSource.EMBEDDING
        for artist in request.related_to_target:
            sources[artist.id] = CandidateSource.TARGET_INSERTION
        for artist in request.related_to_current:
            sources[artist.id] = CandidateSource.RELATED_TOP_TRACKS
        return sources

    def _names(self, request: Stage2ScoreArtistsRequest) -> Dict[str, str]:
        names: Dict[str, str] = {}
        for group in (request.random_artists, request.related_to_target, request.related_to_current):
            for artist in group:
                if artist.name:
                    names[artist.id] = artist.name
        return names

    def _keep_target_candidate(
        self,
        request: Stage2ScoreArtistsRequest,
        acting_gravity: float,
        current_similarity: float
    ) -> bool:
        return (
            request.hard_convergence_active
            or request.round_number >= self.config.target_injection_round
            or acting_gravity > self.config.target_injection_threshold
            or current_similarity > self.config.early_target_similarity_threshold
        )

    async def score_artists(self, request: Stage2ScoreArtistsRequest) -> Stage2ScoreArtistsResponse:
        """
        Score candidate artists and pick a balanced set of nine.

        Args:
            request: Validated artist scoring request

        Returns:
            Selected artists, ordered backups and debug info
        """
        start = time.monotonic()
        gravities = normalize_gravities(request.player_gravities, self.config)
        acting = request.current_player_id
        acting_target = request.target_profiles.get(acting)

        current_artist = request.current_track.primary_artist if request.current_track else None
        current_id = current_artist.id if current_artist else None

        lookup = list(request.artist_ids)
        if current_id:
            lookup.append(current_id)
        profiles = await self.repository.get_profiles(lookup)

        missing = [a for a in request.artist_ids if is_valid_catalog_id(a) and a not in profiles]
        for artist_id in missing:
            self.healing.enqueue_healing(HealingAction(
                type=HealingType.ARTIST_PROFILE,
                entity_id=artist_id,
                error="missing_profile",
            ))

        relationships = {current_id: set(request.related_artist_ids)} if current_id else {}
        current_profile = profiles.get(current_id) if current_id else None
        baseline = compute_attraction(current_profile, acting_target, relationships).score

        sources = self._source_map(request)
        names = self._names(request)

        metrics: List[CandidateTrackMetrics] = []
        filtered_targets: List[str] = []
        zero_reasons: Dict[str, int] = {}
        for artist_id in dict.fromkeys(request.artist_ids):
            if not artist_id or artist_id == current_id:
                continue
            profile = profiles.get(artist_id)
            name = (profile.name if profile else "") or names.get(artist_id, "")

            attraction = {
                player: compute_attraction(profile, request.target_profiles.get(player), relationships)
                for player in PlayerId
            }
            acting_attraction = attraction[acting]
            if acting_attraction.score == 0:
                reason = (
                    "missing_artist_profile" if profile is None
                    else "null_target_profile" if acting_target is None
                    else "zero_similarity"
                )
                zero_reasons[reason] = zero_reasons.get(reason, 0) + 1

            current_similarity = 0.0
            if profile is not None and current_profile is not None:
                current_similarity = compute_strict_artist_similarity(
                    current_profile, profile, relationships
                ).score

            owner = target_owner(artist_id, name, request.target_profiles)
            if owner is not None and not self._keep_target_candidate(request, gravities[acting], current_similarity):
                filtered_targets.append(name or artist_id)
                continue

            metrics.append(CandidateTrackMetrics(
                track=TrackDetails(id=f"artist:{artist_id}", name=name, artists=[ArtistRef(id=artist_id, name=name)]),
                source=sources.get(artist_id, CandidateSource.RELATED_TOP_TRACKS),
                artist_id=artist_id,
                artist_name=name,
                artist_genres=list(profile.genres) if profile else [],
                sim_score=current_similarity,
                a_attraction=attraction[PlayerId.PLAYER1].score,
                b_attraction=attraction[PlayerId.PLAYER2].score,
                current_song_attraction=baseline,
                final_score=acting_attraction.score,
                is_target_artist=owner is not None,
                score_components=acting_attraction.components,
            ))

        result = self.selector.apply_diversity_constraints(
            metrics,
            round_number=request.round_number,
            target_profiles=request.target_profiles,
            player_gravities=gravities,
            current_player_id=acting,
            hard_convergence_active=True,
        )

        def to_selected(metric: CandidateTrackMetrics) -> SelectedArtist:
            return SelectedArtist(
                artist_id=metric.artist_id or "",
                artist_name=metric.artist_name or "",
                category=metric.selection_category or SelectionCategory.NEUTRAL,
                attraction_score=metric.attraction_for(acting),
                delta=metric.delta,
                is_target_artist=metric.is_target_artist,
                score_components=metric.score_components,
            )

        selected = [to_selected(m) for m in result.selected]
        backups = [to_selected(m) for m in result.remaining]
        duration_ms = int((time.monotonic() - start) * 1000)

        self.logger.info(
            "Artist scoring complete",
            candidates=len(request.artist_ids),
            scored=len(metrics),
            selected=len(selected),
            backups=len(backups),
            filtered_targets=len(filtered_targets),
            duration_ms=duration_ms
        )
        return Stage2ScoreArtistsResponse(
            selected_artists=selected,
            backup_artists=backups,
            debug={
                "scoring": {
                    "baseline_attraction": baseline,
                    "profiles_found": len(profiles),
                    "profiles_missing": len(missing),
                    "zero_attraction_reasons": zero_reasons,
                },
                "category_counts": result.category_counts(),
                "filtered_target_artists": filtered_targets,
                "candidates": [
                    {
                        "artist_id": m.artist_id,
                        "artist_name": m.artist_name,
                        "attraction": m.attraction_for(acting),
                        "delta": m.delta,
                        "category": m.selection_category.value if m.selection_category else None,
                    }
                    for m in result.selected
                ],
                "caching": self.repository.stats.get_statistics(),
                "duration_ms": duration_ms,
            },
        )

    # ------------------------------------------------------------------
    # Stage 2
    # ------------------------------------------------------------------

    def _option_for(
        self,
        artist: SelectedArtist,
        track: TrackDetails,
        acting: PlayerId
    ) -> OptionTrack:
        attraction = artist.attraction_score
        return OptionTrack(
            track=track,
            artist=track.primary_artist or ArtistRef(id=artist.artist_id, name=artist.artist_name),
            selection_category=artist.category,
            final_score=attraction,
            a_attraction=attraction if acting == PlayerId.PLAYER1 else 0.0,
            b_attraction=attraction if acting == PlayerId.PLAYER2 else 0.0,
            delta=artist.delta,
            is_target_artist=artist.is_target_artist,
            popularity_band=get_popularity_band(track.popularity),
            source=CandidateSource.RELATED_TOP_TRACKS,
            score_components=artist.score_components,
        )

    async def _tracks_for_artists(
        self,
        artists: List[SelectedArtist],
        excluded: Set[str],
        acting: PlayerId
    ) -> Tuple[List[OptionTrack], List[str]]:
        found = await self.repository.get_top_tracks_for_artists(
            [a.artist_id for a in artists], exclude_ids=excluded
        )
        options: List[OptionTrack] = []
        empty: List[str] = []
        for artist in artists:
            track = None
            for candidate in found.get(artist.artist_id, []):
                if candidate.id in excluded:
                    continue
                if not candidate.is_playable:
                    self.healing.enqueue_healing(HealingAction(
                        type=HealingType.TRACK_DETAILS,
                        entity_id=candidate.id,
                        error="not_playable",
                        entity_name=candidate.name,
                    ))
                    continue
                track = candidate
                break
            if track is None:
                empty.append(artist.artist_id)
                continue
            excluded.add(track.id)
            options.append(self._option_for(artist, track, acting))
        return options, empty

    async def fetch_tracks(self, request: Stage2FetchTracksRequest) -> Stage2FetchTracksResponse:
        """
        Fetch one playable track per selected artist, refilling from backups.

        Args:
            request: Validated track fetch request

        Returns:
            Up to ``display_option_count`` options; fewer is accepted
            after the retry policy is exhausted
        """
        start = time.monotonic()
        policy = self.config.retry_policy
        target = self.config.display_option_count
        per_category = self.config.tracks_per_category
        acting = request.current_player_id

        excluded: Set[str] = set(request.played_track_ids)
        if request.current_track is not None and request.current_track.id:
            excluded.add(request.current_track.id)

        used_artists: Set[str] = {a.artist_id for a in request.selected_artists}
        options, empty = await self._tracks_for_artists(list(request.selected_artists), excluded, acting)
        options = options[:target]

        attempts = 0
        backups_used: List[str] = []
        while len(options) < target and attempts < policy.max_attempts:
            counts: Dict[SelectionCategory, int] = {}
            for option in options:
                if option.selection_category is not None:
                    counts[option.selection_category] = counts.get(option.selection_category, 0) + 1
            picks = policy.select_backups(
                request.backup_artists,
                counts,
                needed=target - len(options),
                per_category_target=per_category,
                used_artist_ids=used_artists,
            )
            if not picks:
                break

            delay = policy.backoff_for(attempts)
            if delay > 0:
                await asyncio.sleep(delay)
            attempts += 1

            used_artists.update(p.artist_id for p in picks)
            backups_used.extend(p.artist_id for p in picks)
            more, more_empty = await self._tracks_for_artists(picks, excluded, acting)
            options.extend(more[:target - len(options)])
            empty.extend(more_empty)
            self.logger.info(
                "Backup refill round",
                attempt=attempts,
                tried=len(picks),
                added=len(more),
                total=len(options)
            )

        if len(options) < target:
            self.logger.warning(
                "Partial option set returned",
                options=len(options),
                target=target,
                attempts=attempts
            )

        duration_ms = int((time.monotonic() - start) * 1000)
        category_counts = {c.value: 0 for c in SelectionCategory}
        for option in options:
            if option.selection_category is not None:
                category_counts[option.selection_category.value] += 1

        self.logger.info(
            "Stage 2 complete",
            options=len(options),
            retry_attempts=attempts,
            duration_ms=duration_ms
        )
        return Stage2FetchTracksResponse(
            options=options,
            debug={
                "retry_attempts": attempts,
                "backups_used": backups_used,
                "artists_without_tracks": empty,
                "category_counts": category_counts,
                "excluded_track_count": len(excluded),
                "caching": self.repository.stats.get_statistics(),
                "duration_ms": duration_ms,
            },
        )
