"""
Dual Gravity Service

Process-wide entry point of the engine. Holds the long-lived state
(store, cache, queues, gravity ledger) and builds the per-request
repository and pipeline around the catalog client of each request.
"""

import time
from typing import Any, Dict, List, Optional

import structlog

from ..api.catalog_client import MusicCatalog
from ..models.config_models import EngineConfig
from ..models.game_models import CandidateSeed, OptionTrack, source_priority
from ..models.pipeline_models import (
    Stage1Request,
    Stage1Response,
    Stage2FetchTracksRequest,
    Stage2FetchTracksResponse,
    Stage2ScoreArtistsRequest,
    Stage2ScoreArtistsResponse,
    Stage3ScoreRequest,
    Stage3ScoreResponse,
)
from .candidate_pipeline import CandidatePipeline, TurnBudget
from .diversity import DiversitySelector, TargetDiversityInjector
from .gravity import GravityLedger, apply_gravity_updates
from .lazy_update_queue import HealingQueue, LazyUpdateProcessor, LazyUpdateQueue
from .persistence import InMemoryMusicStore, MusicStore
from .profile_cache import ArtistProfileCache
from .profile_repository import ProfileRepository
from .scoring import CandidateScorer
from .similarity import is_valid_catalog_id
from .statistics_tracker import ApiStatisticsTracker

logger = structlog.get_logger(__name__)


class DualGravityService:
    """
    Orchestrates the three pipeline stages and background maintenance.

    Args:
        config: Engine configuration
        store: Persistence store (in-memory by default)
        cache: Optional artist profile disk cache
        lazy_queue: Outbox for deferred writes
        healing: Healing queue
        ledger: Server-side gravity state
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        store: Optional[MusicStore] = None,
        cache: Optional[ArtistProfileCache] = None,
        lazy_queue: Optional[LazyUpdateQueue] = None,
        healing: Optional[HealingQueue] = None,
        ledger: Optional[GravityLedger] = None
    ):
        self.config = config or EngineConfig()
        self.store = store or InMemoryMusicStore()
        self.cache = cache
        self.lazy_queue = lazy_queue or LazyUpdateQueue()
        self.healing = healing or HealingQueue(self.store, self.lazy_queue, cache)
        self.ledger = ledger or GravityLedger(self.config)
        self.processor = LazyUpdateProcessor(self.lazy_queue, self.healing, self.store, self.config)
        self.scorer = CandidateScorer(self.config)
        self.selector = DiversitySelector(self.config)
        self.logger = logger.bind(component="DualGravityService")

    def _repository(self, catalog: MusicCatalog) -> ProfileRepository:
        return ProfileRepository(
            catalog=catalog,
            store=self.store,
            lazy_queue=self.lazy_queue,
            cache=self.cache,
            config=self.config,
            stats=ApiStatisticsTracker(),
        )

    def _pipeline(self, catalog: MusicCatalog) -> CandidatePipeline:
        return CandidatePipeline(self._repository(catalog), self.store, self.healing, self.config)

    def healing_window_open(self, elapsed_ms: int) -> bool:
        """Whether enough of the turn budget is left for opportunistic healing."""
        remaining = self.config.turn_budget_seconds - elapsed_ms / 1000
        return remaining > self.config.healing_reserve_seconds and len(self.healing) > 0

    async def run_stage1(self, request: Stage1Request, catalog: MusicCatalog) -> Stage1Response:
        """
        Apply the last selection to the gravities and build the artist pool.

        With a ``game_id`` the gravities live in the ledger; the first
        turn of a round (round 1 without a selection) resets them.
        """
        budget = TurnBudget(self.config.turn_budget_seconds)
        if request.game_id:
            if request.round_number == 1 and request.last_selection is None:
                gravities = await self.ledger.reset(request.game_id)
            else:
                gravities = await self.ledger.apply(
                    request.game_id, request.last_selection, fallback=request.player_gravities
                )
        else:
            gravities = apply_gravity_updates(request.player_gravities, request.last_selection, self.config)

        response = await self._pipeline(catalog).fetch_artists(request, gravities, budget)
        response.debug["healing_queue_size"] = len(self.healing)
        response.debug["lazy_queue_size"] = len(self.lazy_queue)
        return response

    async def score_artists(
        self,
        request: Stage2ScoreArtistsRequest,
        catalog: MusicCatalog
    ) -> Stage2ScoreArtistsResponse:
        return await self._pipeline(catalog).score_artists(request)

    async def fetch_tracks(
        self,
        request: Stage2FetchTracksRequest,
        catalog: MusicCatalog
    ) -> Stage2FetchTracksResponse:
        return await self._pipeline(catalog).fetch_tracks(request)

    @staticmethod
    def dedupe_seeds(seeds: List[CandidateSeed], excluded: set) -> List[CandidateSeed]:
        """
        Drop excluded tracks and keep one seed per track id.

        When two seeds share a track, the higher-priority source wins;
        otherwise the first occurrence is kept.
        """
        best: Dict[str, CandidateSeed] = {}
        for seed in seeds:
            track_id = seed.track.id
            if not track_id or track_id in excluded:
                continue
            existing = best.get(track_id)
            if existing is None or source_priority(seed.source) < source_priority(existing.source):
                best[track_id] = seed
        return list(best.values())

    async def score_tracks(self, request: Stage3ScoreRequest, catalog: MusicCatalog) -> Stage3ScoreResponse:
        """
        Score candidate tracks and select the balanced option set.

        Args:
            request: Validated stage 3 request
            catalog: Catalog client of the request

        Returns:
            Option tracks (possibly empty) and debug info
        """
        start = time.monotonic()
        repository = self._repository(catalog)
        injector = TargetDiversityInjector(repository, self.store, self.config)

        excluded = set(request.played_track_ids)
        current_track = request.current_track
        if current_track is not None and current_track.id:
            excluded.add(current_track.id)

        seeds = self.dedupe_seeds(request.seeds, excluded)
        current_artist = current_track.primary_artist if current_track else None
        current_id = current_artist.id if current_artist else None
        relationships = {current_id: set(request.related_artist_ids)} if current_id else {}

        profiles = {p.id: p for p in request.profiles if p.id}
        current_profile = profiles.get(current_id) if current_id else None
        if current_profile is None and is_valid_catalog_id(current_id):
            current_profile = await repository.get_profile(current_id)
            if current_profile is not None:
                profiles[current_id] = current_profile

        injected = await injector.ensure_target_diversity(
            seeds,
            profiles,
            request.target_profiles,
            request.current_player_id,
            current_track,
            current_profile,
            excluded,
            relationships,
        )
        seeds = self.dedupe_seeds(seeds + injected, excluded)
        if seeds:
            profiles = await repository.enrich_candidates(seeds, profiles)

        phase = self.config.get_exploration_phase(request.round_number)
        og_drift = request.og_drift if request.og_drift is not None else phase.og_drift
        hard_convergence = (
            request.hard_convergence_active
            if request.hard_convergence_active is not None
            else request.round_number >= self.config.max_round_turns
        )

        metrics, scoring_debug = self.scorer.score_candidates(
            seeds,
            profiles,
            request.target_profiles,
            request.player_gravities,
            current_track,
            current_profile,
            relationships,
            request.round_number,
            request.current_player_id,
            og_drift,
        )
        result = self.selector.apply_diversity_constraints(
            metrics,
            round_number=request.round_number,
            target_profiles=request.target_profiles,
            player_gravities=request.player_gravities,
            current_player_id=request.current_player_id,
            hard_convergence_active=hard_convergence,
        )
        option_tracks = [OptionTrack.from_metrics(m) for m in result.selected]

        duration_ms = int((time.monotonic() - start) * 1000)
        self.logger.info(
            "Stage 3 complete",
            seeds=len(seeds),
            injected=len(injected),
            options=len(option_tracks),
            duration_ms=duration_ms
        )
        return Stage3ScoreResponse(
            option_tracks=option_tracks,
            debug={
                "scoring": scoring_debug,
                "category_counts": result.category_counts(),
                "filtered_artist_names": result.filtered_artist_names,
                "injected_seeds": len(injected),
                "hard_convergence_active": hard_convergence,
                "genre_statistics": await self.store.get_genre_statistics(),
                "caching": repository.stats.get_statistics(),
                "duration_ms": duration_ms,
            },
        )

    async def lazy_update_tick(self, catalog: Optional[MusicCatalog] = None) -> Dict[str, Any]:
        return await self.processor.tick(catalog)

    async def opportunistic_heal(self, catalog: MusicCatalog) -> Dict[str, Any]:
        """
        Heal a small batch with leftover turn time.

        Runs as a background task, so failures are logged, not raised.
        """
        try:
            async with catalog:
                return await self.healing.process_healing_queue(catalog, self.config.healing_batch_size)
        except Exception as e:
            self.logger.error("Opportunistic healing failed", error=str(e))
            return {"processed": 0, "succeeded": 0, "failed": 0, "results": []}

    def get_status(self) -> Dict[str, Any]:
        return {
            "lazy_queue": self.lazy_queue.get_status(),
            "healing_queue": self.healing.get_status(),
            "cache": self.cache.get_stats() if self.cache is not None else {"enabled": False},
        }
