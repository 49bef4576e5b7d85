"""
Genre Graph

Weighted genre similarity built on a small graph of standard genre
clusters. Free-form catalog genres are mapped onto a cluster first,
then compared by exact, partial, same-cluster or related-cluster match.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

logger = structlog.get_logger(__name__)

WEIGHT_EXACT = 1.0
WEIGHT_PARTIAL = 0.9
WEIGHT_CLUSTER = 0.7

UNKNOWN_GENRE = "unknown"
UNKNOWN_BOTH_SCORE = 0.5
UNKNOWN_ONE_SCORE = 0.2

# Free-form name -> standard genre
GENRE_MAPPINGS: Dict[str, str] = {
    "rock": "Rock",
    "pop": "Pop",
    "hip hop": "Hip-Hop",
    "hip-hop": "Hip-Hop",
    "r&b": "R&B",
    "rhythm and blues": "R&B",
    "country": "Country",
    "jazz": "Jazz",
    "blues": "Blues",
    "electronic": "Electronic",
    "dance": "Dance",
    "folk": "Folk",
    "indie": "Indie",
    "alternative": "Alternative",
    "metal": "Metal",
    "punk": "Punk",
    "reggae": "Reggae",
    "soul": "Soul",
    "funk": "Funk",
    "disco": "Disco",
    "classical": "Classical",
    "latin": "Latin",
    "world": "World",
    "gospel": "Gospel",
    "christian": "Christian",
    "new age": "New Age",
    "ambient": "Ambient",
    "techno": "Techno",
    "house": "House",
    "trance": "Trance",
    "dubstep": "Dubstep",
    "trap": "Hip-Hop",
    "edm": "Electronic",
}

# Sub-genre fragment -> parent genre, checked by containment
COMPOUND_GENRE_MAPPINGS: Dict[str, str] = {
    "bedroom pop": "Pop",
    "arena rock": "Rock",
    "pop rock": "Pop",
    "pop rap": "Hip-Hop",
    "pop punk": "Punk",
    "alternative rock": "Alternative",
    "indie rock": "Indie",
    "indie pop": "Pop",
    "electronic dance": "Electronic",
    "deep house": "House",
    "tropical house": "House",
    "contemporary r&b": "R&B",
    "neo-psychedelia": "Alternative",
    "neo psychedelia": "Alternative",
    "psychedelia": "Alternative",
    "psychedelic": "Alternative",
    "post-punk": "Punk",
    "post punk": "Punk",
    "new wave": "Alternative",
    "synth-pop": "Pop",
    "synth pop": "Pop",
    "art rock": "Rock",
    "progressive rock": "Rock",
    "prog rock": "Rock",
}

CLUSTER_EDGES: List[Tuple[str, str, float]] = [
    ("Metal", "Rock", 0.8),
    ("Punk", "Rock", 0.8),
    ("Alternative", "Rock", 0.7),
    ("Indie", "Alternative", 0.8),
    ("Blues", "Rock", 0.6),
    ("Hip-Hop", "R&B", 0.7),
    ("Pop", "R&B", 0.6),
    ("Pop", "Electronic", 0.5),
    ("Electronic", "Dance", 0.8),
    ("House", "Electronic", 0.9),
    ("Techno", "Electronic", 0.9),
    ("Trance", "Electronic", 0.9),
    ("Dubstep", "Electronic", 0.7),
    ("Indie", "Folk", 0.6),
    ("Country", "Folk", 0.7),
    ("Soul", "R&B", 0.8),
    ("Funk", "Soul", 0.8),
    ("Jazz", "Blues", 0.5),
    ("Reggae", "Hip-Hop", 0.4),
]


def _build_cluster_relationships() -> Dict[str, Dict[str, float]]:
    relationships: Dict[str, Dict[str, float]] = {}
    for a, b, weight in CLUSTER_EDGES:
        relationships.setdefault(a, {})[b] = weight
        relationships.setdefault(b, {})[a] = weight
    return relationships


CLUSTER_RELATIONSHIPS = _build_cluster_relationships()
STANDARD_GENRES: List[str] = sorted(set(GENRE_MAPPINGS.values()))


@dataclass
class GenreMatch:
    """Best match found for one genre."""
    score: float
    match_type: str
    genre: str = ""
    best_match_genre: str = ""
    cluster_a: Optional[str] = None
    cluster_b: Optional[str] = None


@dataclass
class GenreScore:
    """Set-level genre similarity with per-genre details."""
    score: float
    details: List[GenreMatch] = field(default_factory=list)


def normalize_genre(genre: str) -> str:
    return (genre or "").strip().lower()


def get_genre_cluster(genre: str) -> Optional[str]:
    """
    Map a free-form genre onto a standard cluster.

    Args:
        genre: Genre as reported by the catalog

    Returns:
        Standard genre name, or None when nothing matches
    """
    normalized = normalize_genre(genre)
    if not normalized:
        return None

    if normalized in GENRE_MAPPINGS:
        return GENRE_MAPPINGS[normalized]

    for fragment, parent in COMPOUND_GENRE_MAPPINGS.items():
        if fragment in normalized:
            return parent

    for standard in STANDARD_GENRES:
        if standard.lower() == normalized:
            return standard

    for standard in STANDARD_GENRES:
        if standard.lower() in normalized:
            return standard

    return None


def genre_pair_similarity(genre_a: str, genre_b: str) -> GenreMatch:
    """
    Similarity between two single genres.

    Args:
        genre_a: First genre
        genre_b: Second genre

    Returns:
        Match with score in [0, 1] and its match type
    """
    norm_a = normalize_genre(genre_a)
    norm_b = normalize_genre(genre_b)
    if not norm_a or not norm_b:
        return GenreMatch(score=0.0, match_type="unrelated", genre=genre_b, best_match_genre=genre_a)

    if norm_a == norm_b:
        return GenreMatch(WEIGHT_EXACT, "exact", genre_b, genre_a)

    if norm_a in norm_b or norm_b in norm_a:
        return GenreMatch(WEIGHT_PARTIAL, "partial", genre_b, genre_a)

    cluster_a = get_genre_cluster(norm_a)
    cluster_b = get_genre_cluster(norm_b)
    if not cluster_a or not cluster_b:
        return GenreMatch(0.0, "unrelated", genre_b, genre_a, cluster_a, cluster_b)

    if cluster_a == cluster_b:
        return GenreMatch(WEIGHT_CLUSTER, "cluster", genre_b, genre_a, cluster_a, cluster_b)

    weight = CLUSTER_RELATIONSHIPS.get(cluster_a, {}).get(cluster_b)
    if weight is not None:
        return GenreMatch(weight, "related", genre_b, genre_a, cluster_a, cluster_b)

    return GenreMatch(0.0, "unrelated", genre_b, genre_a, cluster_a, cluster_b)


def _directional_avg_max(base: Sequence[str], candidate: Sequence[str]) -> GenreScore:
    total = 0.0
    details: List[GenreMatch] = []
    for c_genre in candidate:
        best: Optional[GenreMatch] = None
        for b_genre in base:
            match = genre_pair_similarity(b_genre, c_genre)
            if best is None or match.score > best.score:
                best = match
            if best.score >= WEIGHT_EXACT:
                break
        if best is not None:
            details.append(best)
            total += best.score
    return GenreScore(score=total / len(candidate), details=details)


def avg_max_genre_similarity(base_genres: Sequence[str], candidate_genres: Sequence[str]) -> GenreScore:
    """
    Symmetric average-max similarity between two genre lists.

    For each genre on one side the best graph-weighted match on the other
    side is found and averaged; both directions are averaged so the
    result does not depend on argument order.

    Args:
        base_genres: Genres of the reference artist
        candidate_genres: Genres of the candidate artist

    Returns:
        Score in [0, 1] with match details sorted best-first
    """
    base = [g for g in base_genres or [] if g]
    candidate = [g for g in candidate_genres or [] if g]

    base_unknown = UNKNOWN_GENRE in (normalize_genre(g) for g in base)
    candidate_unknown = UNKNOWN_GENRE in (normalize_genre(g) for g in candidate)
    if base_unknown and candidate_unknown:
        return GenreScore(
            score=UNKNOWN_BOTH_SCORE,
            details=[GenreMatch(UNKNOWN_BOTH_SCORE, "cluster", UNKNOWN_GENRE, UNKNOWN_GENRE)]
        )
    if base_unknown or candidate_unknown:
        return GenreScore(
            score=UNKNOWN_ONE_SCORE,
            details=[GenreMatch(
                UNKNOWN_ONE_SCORE,
                "unrelated",
                UNKNOWN_GENRE if candidate_unknown else (candidate[0] if candidate else ""),
                UNKNOWN_GENRE if base_unknown else (base[0] if base else ""),
            )]
        )

    if not base or not candidate:
        return GenreScore(score=0.0)

    forward = _directional_avg_max(base, candidate)
    backward = _directional_avg_max(candidate, base)
    score = min(1.0, max(0.0, (forward.score + backward.score) / 2))
    details = sorted(forward.details, key=lambda d: d.score, reverse=True)
    return GenreScore(score=score, details=details)
