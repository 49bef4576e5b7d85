"""
Diversity Selection

Picks the options shown to the acting player, aiming for an even
closer / neutral / further split, and tops up a candidate pool that is
too homogeneous to produce that split.
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Set

import structlog

from ..exceptions import CatalogError
from ..models.config_models import EngineConfig
from ..models.game_models import (
    ArtistProfile,
    ArtistRef,
    CandidateSeed,
    CandidateSource,
    CandidateTrackMetrics,
    PlayerId,
    SelectionCategory,
    TargetProfile,
    TrackDetails,
    normalize_name,
)
from .gravity import normalize_gravities
from .persistence import MusicStore
from .scoring import classify_delta, target_owner
from .similarity import Relationships, compute_attraction

logger = structlog.get_logger(__name__)

CATEGORY_ORDER = (SelectionCategory.CLOSER, SelectionCategory.NEUTRAL, SelectionCategory.FURTHER)


@dataclass
class DiversityResult:
    """Outcome of a diversity pass."""
    selected: List[CandidateTrackMetrics] = field(default_factory=list)
    remaining: List[CandidateTrackMetrics] = field(default_factory=list)
    filtered_artist_names: List[str] = field(default_factory=list)

    def category_counts(self) -> Dict[str, int]:
        counts = Counter(m.selection_category.value for m in self.selected if m.selection_category)
        return {category.value: counts.get(category.value, 0) for category in CATEGORY_ORDER}


def _artist_keys(metric: CandidateTrackMetrics) -> Set[str]:
    keys = set()
    for artist in metric.track.artists:
        if artist.id:
            keys.add(f"id:{artist.id}")
        if artist.name:
            keys.add(f"name:{normalize_name(artist.name)}")
    if metric.artist_id:
        keys.add(f"id:{metric.artist_id}")
    if metric.artist_name:
        keys.add(f"name:{normalize_name(metric.artist_name)}")
    return keys


class DiversitySelector:
    """Balanced option selection over scored candidates."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()
        self.logger = logger.bind(component="DiversitySelector")

    def _keep_target_artist(
        self,
        metric: CandidateTrackMetrics,
        owner: PlayerId,
        round_number: int,
        gravities: Mapping[PlayerId, float]
    ) -> bool:
        return (
            round_number >= self.config.target_override_round
            or gravities[owner] >= self.config.gravity_max
            or metric.sim_score > self.config.early_target_similarity_threshold
        )

    def apply_diversity_constraints(
        self,
        metrics: List[CandidateTrackMetrics],
        round_number: int,
        target_profiles: Mapping[PlayerId, Optional[TargetProfile]],
        player_gravities: Mapping[PlayerId, Optional[float]],
        current_player_id: PlayerId,
        hard_convergence_active: bool = False,
        target_count: Optional[int] = None
    ) -> DiversityResult:
        """
        Select up to ``target_count`` options, ideally 3 per category.

        Args:
            metrics: Scored candidates
            round_number: Current round
            target_profiles: Target profile per player
            player_gravities: Gravity per player
            current_player_id: Acting player
            hard_convergence_active: Keep target artists unconditionally
            target_count: Options wanted (display count by default)

        Returns:
            DiversityResult with selected, remaining and filtered names
        """
        target_count = self.config.display_option_count if target_count is None else target_count
        per_category = self.config.tracks_per_category
        gravities = normalize_gravities(player_gravities, self.config)
        result = DiversityResult()

        pool: List[CandidateTrackMetrics] = []
        for metric in metrics:
            owner = target_owner(metric.artist_id, metric.artist_name, target_profiles)
            if owner is not None:
                metric.is_target_artist = True
                if not hard_convergence_active and not self._keep_target_artist(
                    metric, owner, round_number, gravities
                ):
                    result.filtered_artist_names.append(metric.artist_name or metric.artist_id or "")
                    continue
            pool.append(metric)

        pool.sort(key=lambda m: m.final_score, reverse=True)
        for metric in pool:
            metric.delta = metric.attraction_for(current_player_id) - metric.current_song_attraction
            metric.selection_category = classify_delta(metric.delta, self.config.delta_threshold)

        buckets: Dict[SelectionCategory, List[CandidateTrackMetrics]] = {
            category: [m for m in pool if m.selection_category == category]
            for category in CATEGORY_ORDER
        }
        self._expand_short_buckets(buckets, pool, per_category)

        used_tracks: Set[str] = set()
        used_artists: Set[str] = set()
        picked_per_bucket: Counter = Counter()

        def take(metric: CandidateTrackMetrics, bucket: SelectionCategory) -> bool:
            keys = _artist_keys(metric)
            if metric.track.id in used_tracks or keys & used_artists:
                return False
            used_tracks.add(metric.track.id)
            used_artists.update(keys)
            picked_per_bucket[bucket] += 1
            metric.selection_category = bucket
            result.selected.append(metric)
            return True

        # Phase 1: best of each category
        for category in CATEGORY_ORDER:
            for metric in buckets[category]:
                if picked_per_bucket[category] >= per_category or len(result.selected) >= target_count:
                    break
                take(metric, category)

        # Phase 2: fill short categories, then anything left
        while len(result.selected) < target_count:
            short = [c for c in CATEGORY_ORDER if picked_per_bucket[c] < per_category]
            choice = self._best_unused(buckets, short, used_tracks, used_artists)
            if choice is None:
                choice = self._best_unused(buckets, list(CATEGORY_ORDER), used_tracks, used_artists)
            if choice is None:
                break
            take(*choice)

        result.remaining = [m for m in pool if m.track.id not in used_tracks]

        self.logger.info(
            "Diversity constraints applied",
            pool=len(pool),
            selected=len(result.selected),
            filtered_targets=len(result.filtered_artist_names),
            **result.category_counts()
        )
        if len(result.selected) < target_count:
            self.logger.warning(
                "Fewer options than requested",
                selected=len(result.selected),
                requested=target_count
            )
        return result

    def _expand_short_buckets(
        self,
        buckets: Dict[SelectionCategory, List[CandidateTrackMetrics]],
        pool: List[CandidateTrackMetrics],
        per_category: int
    ) -> None:
        """
        Widen thin buckets in place.

        Closer and further borrow the strongest diffs of the pool; neutral
        borrows the diffs nearest the baseline among metrics the directional
        buckets will not pick first.
        """
        third = max(per_category, len(pool) // 3)
        by_delta = sorted(pool, key=lambda m: m.delta, reverse=True)
        expansions = {
            SelectionCategory.CLOSER: by_delta[:third],
            SelectionCategory.FURTHER: list(reversed(by_delta))[:third],
        }
        for category, ranked in expansions.items():
            bucket = buckets[category]
            if len(bucket) >= per_category:
                continue
            present = {id(m) for m in bucket}
            for metric in ranked:
                if len(bucket) >= 2 * per_category:
                    break
                if id(metric) not in present:
                    bucket.append(metric)
                    present.add(id(metric))
            bucket.sort(key=lambda m: m.final_score, reverse=True)

        neutral = buckets[SelectionCategory.NEUTRAL]
        if len(neutral) >= per_category:
            return
        reserved = {id(m) for m in neutral}
        for category in (SelectionCategory.CLOSER, SelectionCategory.FURTHER):
            reserved.update(id(m) for m in buckets[category][:per_category])
        nearest = sorted((m for m in pool if id(m) not in reserved), key=lambda m: abs(m.delta))
        neutral.extend(nearest[:max(0, third - len(neutral))])
        neutral.sort(key=lambda m: m.final_score, reverse=True)

    def _best_unused(
        self,
        buckets: Dict[SelectionCategory, List[CandidateTrackMetrics]],
        categories: Iterable[SelectionCategory],
        used_tracks: Set[str],
        used_artists: Set[str]
    ):
        best = None
        for category in categories:
            for metric in buckets[category]:
                if metric.track.id in used_tracks or _artist_keys(metric) & used_artists:
                    continue
                if best is None or metric.final_score > best[0].final_score:
                    best = (metric, category)
                break
        return best


class TargetDiversityInjector:
    """
    Adds candidates for categories the acquired pool cannot fill.

    Args:
        repository: ProfileRepository of the current request
        store: Persistence store (random artists for ``further``)
        config: Engine configuration
    """

    def __init__(self, repository, store: MusicStore, config: Optional[EngineConfig] = None):
        self.repository = repository
        self.store = store
        self.config = config or EngineConfig()
        self.logger = logger.bind(component="TargetDiversityInjector")

    def category_counts(
        self,
        seeds: List[CandidateSeed],
        profiles: Mapping[str, ArtistProfile],
        acting_target: TargetProfile,
        current_song_attraction: float,
        relationships: Optional[Relationships] = None
    ) -> Dict[SelectionCategory, int]:
        counts = {category: 0 for category in CATEGORY_ORDER}
        for seed in seeds:
            primary = seed.track.primary_artist
            profile = profiles.get(primary.id) if primary and primary.id else None
            attraction = compute_attraction(profile, acting_target, relationships).score
            counts[classify_delta(attraction - current_song_attraction, self.config.delta_threshold)] += 1
        return counts

    async def ensure_target_diversity(
        self,
        seeds: List[CandidateSeed],
        profiles: Mapping[str, ArtistProfile],
        target_profiles: Mapping[PlayerId, Optional[TargetProfile]],
        current_player_id: PlayerId,
        current_track: Optional[TrackDetails],
        current_profile: Optional[ArtistProfile],
        excluded_track_ids: Set[str],
        relationships: Optional[Relationships] = None
    ) -> List[CandidateSeed]:
        """
        Inject seeds for every category short of its per-category target.

        Args:
            seeds: Current candidate pool
            profiles: Known artist profiles
            target_profiles: Target profile per player
            current_player_id: Acting player
            current_track: Currently playing track
            current_profile: Profile of the playing artist
            excluded_track_ids: Played and current track ids
            relationships: Artist id -> related artist ids

        Returns:
            Newly injected seeds (the input list is not modified)
        """
        acting_target = target_profiles.get(current_player_id)
        if acting_target is None:
            self.logger.debug("No acting target, diversity injection skipped")
            return []

        current_song_attraction = compute_attraction(current_profile, acting_target, relationships).score
        counts = self.category_counts(seeds, profiles, acting_target, current_song_attraction, relationships)

        seen_tracks = set(excluded_track_ids) | {s.track.id for s in seeds}
        seen_artists = {a.id for s in seeds for a in s.track.artists if a.id}
        current_artist = current_track.primary_artist if current_track else None

        injected: List[CandidateSeed] = []
        for category in CATEGORY_ORDER:
            if counts[category] >= self.config.tracks_per_category:
                continue
            if category == SelectionCategory.CLOSER:
                new_seeds = await self._closer_seeds(acting_target, seen_tracks, seen_artists)
            elif category == SelectionCategory.NEUTRAL:
                new_seeds = await self._neutral_seeds(current_artist, seen_tracks, seen_artists)
            else:
                new_seeds = await self._further_seeds(seen_tracks, seen_artists)
            for seed in new_seeds:
                seen_tracks.add(seed.track.id)
            injected.extend(new_seeds)

        self.logger.info(
            "Target diversity ensured",
            pool=len(seeds),
            injected=len(injected),
            counts={c.value: n for c, n in counts.items()}
        )
        return injected

    async def _related(self, artist_id: Optional[str]) -> List[ArtistRef]:
        if not artist_id:
            return []
        try:
            return await self.repository.get_related_artists(artist_id)
        except CatalogError as e:
            self.logger.warning("Related lookup failed during injection", artist_id=artist_id, error=str(e))
            return []

    async def _tracks_for(
        self,
        artist_ids: List[str],
        source: CandidateSource,
        seen_tracks: Set[str],
        per_artist: int = 2
    ) -> List[CandidateSeed]:
        if not artist_ids:
            return []
        limit = self.config.diversity_injection_per_category
        found = await self.repository.get_top_tracks_for_artists(artist_ids, exclude_ids=seen_tracks)
        seeds: List[CandidateSeed] = []
        for artist_id in artist_ids:
            playable = [t for t in found.get(artist_id, []) if t.is_playable and t.id not in seen_tracks]
            for track in playable[:per_artist]:
                if len(seeds) >= limit:
                    return seeds
                seeds.append(CandidateSeed(track=track, source=source, seed_artist_id=artist_id))
        return seeds

    async def _closer_seeds(
        self,
        target: TargetProfile,
        seen_tracks: Set[str],
        seen_artists: Set[str]
    ) -> List[CandidateSeed]:
        related = [a.id for a in await self._related(target.artist_id) if a.id not in seen_artists][:3]
        seeds = await self._tracks_for(related, CandidateSource.RELATED_ARTIST_INSERTION, seen_tracks)
        if len(seeds) < self.config.diversity_injection_per_category and target.artist_id:
            own = await self._tracks_for([target.artist_id], CandidateSource.TARGET_BOOST, seen_tracks)
            seeds.extend(own[:self.config.diversity_injection_per_category - len(seeds)])
        return seeds

    async def _neutral_seeds(
        self,
        current_artist: Optional[ArtistRef],
        seen_tracks: Set[str],
        seen_artists: Set[str]
    ) -> List[CandidateSeed]:
        if current_artist is None or not current_artist.id:
            return []
        seeds = await self._tracks_for([current_artist.id], CandidateSource.RELATED_TOP_TRACKS, seen_tracks)
        if len(seeds) < self.config.diversity_injection_per_category:
            related = [a.id for a in await self._related(current_artist.id) if a.id not in seen_artists][:3]
            more = await self._tracks_for(related, CandidateSource.RELATED_TOP_TRACKS, seen_tracks, per_artist=1)
            seeds.extend(more[:self.config.diversity_injection_per_category - len(seeds)])
        return seeds

    async def _further_seeds(self, seen_tracks: Set[str], seen_artists: Set[str]) -> List[CandidateSeed]:
        randoms = await self.store.fetch_random_artists(3, exclude_ids=seen_artists)
        return await self._tracks_for([a.id for a in randoms], CandidateSource.EMBEDDING, seen_tracks, per_artist=1)
