"""
Candidate Scorer

Turns candidate seeds into CandidateTrackMetrics: similarity to the
playing track, attraction toward each player's target, the delta that
drives the closer/neutral/further category, and the final score that
blends similarity with the acting player's gravity.
"""

from collections import Counter
from typing import Any, Dict, List, Mapping, Optional, Tuple

import structlog

from ..models.config_models import EngineConfig
from ..models.game_models import (
    ArtistProfile,
    CandidateSeed,
    CandidateTrackMetrics,
    PlayerId,
    SelectionCategory,
    TargetProfile,
    TrackDetails,
    normalize_name,
)
from .gravity import normalize_gravities
from .similarity import (
    Relationships,
    calc_stats,
    clamp_unit,
    compute_attraction,
    compute_similarity,
    extract_track_metadata,
    get_popularity_band,
    is_valid_catalog_id,
)

logger = structlog.get_logger(__name__)


def classify_delta(delta: float, threshold: float = 0.05) -> SelectionCategory:
    """Closer above +threshold, further below -threshold, else neutral."""
    if delta > threshold:
        return SelectionCategory.CLOSER
    if delta < -threshold:
        return SelectionCategory.FURTHER
    return SelectionCategory.NEUTRAL


def is_target_artist(
    artist_id: Optional[str],
    artist_name: Optional[str],
    target: Optional[TargetProfile]
) -> bool:
    """
    Whether an artist is a player's target.

    Ids are compared when both sides carry a valid catalog id, otherwise
    the trimmed lower-case names are compared.
    """
    if target is None:
        return False
    target_id = target.artist_id
    if is_valid_catalog_id(artist_id) and is_valid_catalog_id(target_id):
        return artist_id == target_id
    name = normalize_name(artist_name)
    return bool(name) and name == normalize_name(target.artist.name)


def target_owner(
    artist_id: Optional[str],
    artist_name: Optional[str],
    targets: Mapping[PlayerId, Optional[TargetProfile]]
) -> Optional[PlayerId]:
    """Player whose target this artist is, if any."""
    for player in PlayerId:
        if is_target_artist(artist_id, artist_name, targets.get(player)):
            return player
    return None


class CandidateScorer:
    """Scores candidate tracks for one turn."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()
        self.logger = logger.bind(component="CandidateScorer")

    def final_score(
        self,
        sim_score: float,
        gravity_score: float,
        round_number: int,
        og_drift: float
    ) -> Tuple[float, float]:
        """
        Blend raw similarity with the gravity pull.

        Args:
            sim_score: Track similarity to the playing track
            gravity_score: Acting gravity times acting attraction
            round_number: Current round
            og_drift: Weight removed from raw similarity this phase

        Returns:
            (stabilized score, final score clamped to [0, 1])
        """
        stabilized = sim_score * (1 - og_drift) + self.config.og_constant
        multiplier = self.config.round_gravity_base + round_number * self.config.round_gravity_ramp
        raw = stabilized + gravity_score * multiplier
        floor = sim_score * self.config.floor_ratio(round_number)
        return stabilized, clamp_unit(max(floor, raw))

    def score_candidates(
        self,
        seeds: List[CandidateSeed],
        profiles: Mapping[str, ArtistProfile],
        target_profiles: Mapping[PlayerId, Optional[TargetProfile]],
        player_gravities: Mapping[PlayerId, Optional[float]],
        current_track: Optional[TrackDetails],
        current_profile: Optional[ArtistProfile],
        relationships: Optional[Relationships],
        round_number: int,
        current_player_id: PlayerId,
        og_drift: Optional[float] = None
    ) -> Tuple[List[CandidateTrackMetrics], Dict[str, Any]]:
        """
        Score every candidate seed.

        Missing profiles and targets degrade attraction to 0; nothing in
        here raises for absent data.

        Args:
            seeds: Candidate seeds (deduplicated by the caller)
            profiles: Artist id -> profile
            target_profiles: Target profile per player
            player_gravities: Gravity per player
            current_track: Currently playing track
            current_profile: Profile of the playing artist
            relationships: Artist id -> related artist ids
            round_number: Current round
            current_player_id: Acting player
            og_drift: Override for the phase's og drift

        Returns:
            Metrics list and debug info
        """
        gravities = normalize_gravities(player_gravities, self.config)
        acting_gravity = gravities[current_player_id]
        acting_target = target_profiles.get(current_player_id)
        if og_drift is None:
            og_drift = self.config.get_exploration_phase(round_number).og_drift

        current_song_attraction = compute_attraction(
            current_profile, acting_target, relationships
        ).score
        base_metadata = extract_track_metadata(current_track or TrackDetails(id=""), current_profile)

        metrics: List[CandidateTrackMetrics] = []
        zero_reasons: Counter = Counter()
        skipped = 0

        for seed in seeds:
            track = seed.track
            primary = track.primary_artist
            if not track.id or primary is None or not (primary.id or primary.name):
                skipped += 1
                continue

            profile = profiles.get(primary.id) if primary.id else None
            sim = compute_similarity(base_metadata, current_profile, track, profile, relationships)
            attractions = {
                player: compute_attraction(profile, target_profiles.get(player), relationships).score
                for player in PlayerId
            }
            acting_attraction = attractions[current_player_id]

            if acting_attraction == 0:
                if profile is None:
                    zero_reasons["missing_artist_profile"] += 1
                elif acting_target is None:
                    zero_reasons["null_target_profile"] += 1
                else:
                    zero_reasons["zero_similarity"] += 1

            owner = target_owner(primary.id, primary.name, target_profiles)
            gravity_score = acting_gravity * acting_attraction
            if owner == current_player_id and acting_gravity >= self.config.target_boost_threshold:
                gravity_score *= 1 + 2 * acting_gravity

            stabilized, final = self.final_score(sim.score, gravity_score, round_number, og_drift)
            delta = acting_attraction - current_song_attraction

            metrics.append(CandidateTrackMetrics(
                track=track,
                source=seed.source,
                artist_id=primary.id or None,
                artist_name=primary.name or (profile.name if profile else None),
                artist_genres=list(profile.genres) if profile else [],
                sim_score=sim.score,
                a_attraction=attractions[PlayerId.PLAYER1],
                b_attraction=attractions[PlayerId.PLAYER2],
                current_song_attraction=current_song_attraction,
                gravity_score=gravity_score,
                stabilized_score=clamp_unit(stabilized),
                final_score=final,
                delta=delta,
                selection_category=classify_delta(delta, self.config.delta_threshold),
                is_target_artist=owner is not None,
                score_components=sim.components,
                popularity_band=get_popularity_band(track.popularity),
            ))

        categories = Counter(m.selection_category.value for m in metrics)
        debug = {
            "candidates_scored": len(metrics),
            "candidates_skipped": skipped,
            "current_song_attraction": current_song_attraction,
            "acting_gravity": acting_gravity,
            "og_drift": og_drift,
            "zero_attraction_reasons": dict(zero_reasons),
            "category_counts": dict(categories),
            "final_score_stats": calc_stats([m.final_score for m in metrics]),
            "similarity_stats": calc_stats([m.sim_score for m in metrics]),
        }
        self.logger.info(
            "Candidates scored",
            scored=len(metrics),
            skipped=skipped,
            closer=categories.get(SelectionCategory.CLOSER.value, 0),
            neutral=categories.get(SelectionCategory.NEUTRAL.value, 0),
            further=categories.get(SelectionCategory.FURTHER.value, 0)
        )
        return metrics, debug
