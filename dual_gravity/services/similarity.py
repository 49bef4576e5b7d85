"""
Similarity & Attraction Calculator

Pure scoring functions comparing two artists, or a candidate track with
a reference track. Every sub-score is clamped to [0, 1] and returned with
its component breakdown.
"""

import math
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Set

import structlog

from ..models.config_models import EngineConfig
from ..models.game_models import (
    ArtistProfile,
    PopularityBand,
    ScoringComponents,
    TargetProfile,
    TrackDetails,
    TrackMetadata,
)
from .genre_graph import GenreMatch, avg_max_genre_similarity

logger = structlog.get_logger(__name__)

NEUTRAL_SCORE = 0.5
RELATIONSHIP_FLOOR = 0.3
RELATIONSHIP_GENRE_WEIGHT = 0.7
ERA_WINDOW_YEARS = 30
FOLLOWER_LOG_RANGE = 3.0
DEFAULT_TRACK_POPULARITY = 50
DEFAULT_DURATION_MS = 180000

ARTIST_WEIGHTS: Dict[str, float] = {
    "genre": 0.40,
    "relationship": 0.30,
    "artist_pop": 0.15,
    "followers": 0.15,
}

TRACK_WEIGHTS: Dict[str, float] = {
    "genre": 0.25,
    "track_pop": 0.15,
    "artist_pop": 0.10,
    "era": 0.15,
    "relationship": 0.20,
    "followers": 0.15,
}

CATALOG_ID_PATTERN = re.compile(r"^[0-9A-Za-z]{22}$")

Relationships = Mapping[str, Set[str]]


@dataclass
class SimilarityResult:
    """Weighted score plus the components it was built from."""
    score: float
    components: ScoringComponents = field(default_factory=ScoringComponents)
    genre_details: List[GenreMatch] = field(default_factory=list)


def is_valid_catalog_id(value: Optional[str]) -> bool:
    """True for 22-character alphanumeric catalog ids."""
    return bool(value) and CATALOG_ID_PATTERN.match(value) is not None


def clamp_unit(value: Optional[float]) -> float:
    """Clamp to [0, 1]; None and NaN become 0."""
    if value is None or math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, float(value)))


def clamp_gravity(value: Optional[float], config: Optional[EngineConfig] = None) -> float:
    """
    Clamp a gravity value into the configured bounds.

    Args:
        value: Raw gravity, possibly None or NaN
        config: Engine configuration (defaults used when omitted)

    Returns:
        Gravity within [gravity_min, gravity_max]
    """
    config = config or EngineConfig()
    if value is None or math.isnan(value):
        return config.default_gravity
    return max(config.gravity_min, min(config.gravity_max, float(value)))


def get_popularity_band(popularity: Optional[int]) -> PopularityBand:
    value = DEFAULT_TRACK_POPULARITY if popularity is None else popularity
    if value < 34:
        return PopularityBand.LOW
    if value < 67:
        return PopularityBand.MID
    return PopularityBand.HIGH


def compute_popularity_similarity(p1: Optional[float], p2: Optional[float]) -> float:
    """1 - |p1 - p2| / 100, neutral when either side is missing."""
    if p1 is None or p2 is None:
        return NEUTRAL_SCORE
    return clamp_unit(1 - abs(p1 - p2) / 100)


def compute_follower_similarity(f1: Optional[int], f2: Optional[int]) -> float:
    """
    Log-scale follower similarity.

    A 1000x difference maps to 0; missing or zero counts are neutral.
    """
    if not f1 or not f2:
        return NEUTRAL_SCORE
    distance = abs(math.log10(max(f1, 1)) - math.log10(max(f2, 1)))
    return clamp_unit(1 - min(distance / FOLLOWER_LOG_RANGE, 1.0))


def extract_year(release_date: Optional[str]) -> Optional[int]:
    if not release_date or len(release_date) < 4:
        return None
    try:
        return int(release_date[:4])
    except ValueError:
        return None


def compute_era_similarity(date_a: Optional[str], date_b: Optional[str]) -> float:
    """max(0, 1 - yearDiff / 30), neutral when a year is unknown."""
    year_a = extract_year(date_a)
    year_b = extract_year(date_b)
    if year_a is None or year_b is None:
        return NEUTRAL_SCORE
    return clamp_unit(1 - abs(year_a - year_b) / ERA_WINDOW_YEARS)


def are_related(artist_a: str, artist_b: str, relationships: Optional[Relationships]) -> bool:
    if not relationships:
        return False
    return artist_b in relationships.get(artist_a, ()) or artist_a in relationships.get(artist_b, ())


def compute_artist_relationship_score(
    artist_a_id: Optional[str],
    artist_b_id: Optional[str],
    relationships: Optional[Relationships],
    genre_score: float,
    profiles_present: bool = True
) -> float:
    """
    Relationship score between two artists.

    Args:
        artist_a_id: First artist id
        artist_b_id: Second artist id
        relationships: Artist id -> related artist ids
        genre_score: Genre similarity used for the unrelated fallback
        profiles_present: Whether both full profiles are known

    Returns:
        1.0 for same or related artists, otherwise in [0.3, 1.0]
    """
    if not artist_a_id or not artist_b_id:
        return NEUTRAL_SCORE
    if artist_a_id == artist_b_id:
        return 1.0
    if are_related(artist_a_id, artist_b_id, relationships):
        return 1.0
    if not profiles_present:
        return NEUTRAL_SCORE
    return clamp_unit(clamp_unit(genre_score) * RELATIONSHIP_GENRE_WEIGHT + RELATIONSHIP_FLOOR)


def compute_strict_artist_similarity(
    artist_a: ArtistProfile,
    artist_b: ArtistProfile,
    relationships: Optional[Relationships] = None
) -> SimilarityResult:
    """
    Weighted artist-to-artist similarity.

    Identity short-circuits to 1.0 with every component 1.0. Otherwise
    genre 40%, relationship 30%, artist popularity 15%, followers 15%.

    Args:
        artist_a: Reference artist
        artist_b: Compared artist
        relationships: Artist id -> related artist ids

    Returns:
        Similarity result in [0, 1]
    """
    if artist_a.id and artist_a.id == artist_b.id:
        return SimilarityResult(score=1.0, components=ScoringComponents.identity())

    genre = avg_max_genre_similarity(artist_a.genres, artist_b.genres)
    genre_score = clamp_unit(genre.score)
    relationship = compute_artist_relationship_score(
        artist_a.id, artist_b.id, relationships, genre_score
    )
    artist_pop = compute_popularity_similarity(artist_a.popularity, artist_b.popularity)
    followers = compute_follower_similarity(artist_a.followers, artist_b.followers)

    components = ScoringComponents(
        genre=genre_score,
        relationship=relationship,
        track_pop=0.0,
        artist_pop=artist_pop,
        era=0.0,
        followers=followers,
    )
    score = (
        genre_score * ARTIST_WEIGHTS["genre"]
        + relationship * ARTIST_WEIGHTS["relationship"]
        + artist_pop * ARTIST_WEIGHTS["artist_pop"]
        + followers * ARTIST_WEIGHTS["followers"]
    )
    return SimilarityResult(score=clamp_unit(score), components=components, genre_details=genre.details)


def compute_attraction(
    artist_profile: Optional[ArtistProfile],
    target_profile: Optional[TargetProfile],
    relationships: Optional[Relationships] = None
) -> SimilarityResult:
    """
    Attraction of an artist toward a player's target.

    Missing data on either side means "no information": score 0 with
    all-zero components, never an error.
    """
    if artist_profile is None or target_profile is None:
        return SimilarityResult(score=0.0, components=ScoringComponents.dummy())
    return compute_strict_artist_similarity(
        artist_profile, target_profile.as_artist_profile(), relationships
    )


def extract_track_metadata(track: TrackDetails, profile: Optional[ArtistProfile] = None) -> TrackMetadata:
    primary = track.primary_artist
    return TrackMetadata(
        popularity=track.popularity if track.popularity is not None else DEFAULT_TRACK_POPULARITY,
        duration_ms=track.duration_ms if track.duration_ms is not None else DEFAULT_DURATION_MS,
        release_date=track.release_date,
        genres=list(profile.genres) if profile else [],
        artist_id=primary.id if primary else None,
    )


def compute_similarity(
    base_metadata: TrackMetadata,
    base_profile: Optional[ArtistProfile],
    candidate_track: TrackDetails,
    candidate_profile: Optional[ArtistProfile],
    relationships: Optional[Relationships] = None
) -> SimilarityResult:
    """
    Track-level similarity of a candidate to the reference track.

    Weights: genre 25%, track popularity 15%, artist popularity 10%,
    era 15%, relationship 20%, followers 15%.

    Args:
        base_metadata: Metadata of the currently playing track
        base_profile: Profile of the currently playing artist
        candidate_track: Candidate track
        candidate_profile: Profile of the candidate's artist
        relationships: Artist id -> related artist ids

    Returns:
        Similarity result in [0, 1]
    """
    candidate_metadata = extract_track_metadata(candidate_track, candidate_profile)

    genre = avg_max_genre_similarity(base_metadata.genres, candidate_metadata.genres)
    genre_score = clamp_unit(genre.score)
    track_pop = compute_popularity_similarity(base_metadata.popularity, candidate_metadata.popularity)

    if base_profile is not None and candidate_profile is not None:
        artist_pop = compute_popularity_similarity(
            base_profile.popularity if base_profile.popularity is not None else DEFAULT_TRACK_POPULARITY,
            candidate_profile.popularity if candidate_profile.popularity is not None else DEFAULT_TRACK_POPULARITY,
        )
    else:
        artist_pop = NEUTRAL_SCORE

    era = compute_era_similarity(base_metadata.release_date, candidate_metadata.release_date)
    relationship = compute_artist_relationship_score(
        base_metadata.artist_id,
        candidate_metadata.artist_id,
        relationships,
        genre_score,
        profiles_present=base_profile is not None and candidate_profile is not None,
    )
    followers = compute_follower_similarity(
        base_profile.followers if base_profile else None,
        candidate_profile.followers if candidate_profile else None,
    )

    components = ScoringComponents(
        genre=genre_score,
        relationship=relationship,
        track_pop=track_pop,
        artist_pop=artist_pop,
        era=era,
        followers=followers,
    )
    score = (
        genre_score * TRACK_WEIGHTS["genre"]
        + track_pop * TRACK_WEIGHTS["track_pop"]
        + artist_pop * TRACK_WEIGHTS["artist_pop"]
        + era * TRACK_WEIGHTS["era"]
        + relationship * TRACK_WEIGHTS["relationship"]
        + followers * TRACK_WEIGHTS["followers"]
    )
    return SimilarityResult(score=clamp_unit(score), components=components, genre_details=genre.details)


def calc_stats(scores: Sequence[float]) -> Dict[str, float]:
    """Min, max, average and median of a score list (zeros when empty)."""
    if not scores:
        return {"min": 0.0, "max": 0.0, "avg": 0.0, "median": 0.0}
    ordered = sorted(scores)
    return {
        "min": ordered[0],
        "max": ordered[-1],
        "avg": sum(ordered) / len(ordered),
        "median": ordered[len(ordered) // 2],
    }
