"""
Game Models

Domain data structures for the Dual Gravity engine: catalog entities,
target profiles, candidate seeds and per-candidate scoring output.

These dataclasses are validated directly by the pydantic stage models,
so every stage boundary parses into exactly these shapes.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)


class PlayerId(str, Enum):
    """The two competing players."""
    PLAYER1 = "player1"
    PLAYER2 = "player2"

    @property
    def opponent(self) -> "PlayerId":
        return PlayerId.PLAYER2 if self is PlayerId.PLAYER1 else PlayerId.PLAYER1


class SelectionCategory(str, Enum):
    """Direction of a candidate relative to the acting player's target."""
    CLOSER = "closer"
    NEUTRAL = "neutral"
    FURTHER = "further"


class CandidateSource(str, Enum):
    """Where a candidate seed came from."""
    TARGET_INSERTION = "target_insertion"
    EMBEDDING = "embedding"
    RECOMMENDATIONS = "recommendations"
    RELATED_TOP_TRACKS = "related_top_tracks"
    TARGET_BOOST = "target_boost"
    RELATED_ARTIST_INSERTION = "related_artist_insertion"


class PopularityBand(str, Enum):
    LOW = "low"
    MID = "mid"
    HIGH = "high"


class GravityZone(str, Enum):
    """Downstream interpretation of a gravity value."""
    DESPERATION = "desperation"
    DEAD_ZONE = "dead_zone"
    GOOD_INFLUENCE = "good_influence"


# Lower value sorts first when two seeds share a track id
SOURCE_PRIORITY: Dict[CandidateSource, int] = {
    CandidateSource.TARGET_INSERTION: 0,
    CandidateSource.EMBEDDING: 1,
    CandidateSource.RECOMMENDATIONS: 2,
}


def source_priority(source: CandidateSource) -> int:
    """Rank a candidate source, unknown sources last."""
    return SOURCE_PRIORITY.get(source, 3)


@dataclass
class ArtistRef:
    """Minimal artist reference (id + name)."""
    id: str
    name: str = ""


@dataclass
class TrackDetails:
    """Catalog track as used by the engine."""
    id: str
    name: str = ""
    artists: List[ArtistRef] = field(default_factory=list)
    popularity: Optional[int] = None
    duration_ms: Optional[int] = None
    release_date: Optional[str] = None
    is_playable: bool = True
    uri: Optional[str] = None

    @property
    def primary_artist(self) -> Optional[ArtistRef]:
        return self.artists[0] if self.artists else None

    @classmethod
    def from_catalog(cls, data: Dict[str, Any]) -> "TrackDetails":
        """
        Build a track from a raw catalog track object.

        Args:
            data: Track JSON as returned by the catalog API

        Returns:
            Parsed track
        """
        album = data.get("album") or {}
        return cls(
            id=data.get("id") or "",
            name=data.get("name") or "",
            artists=[
                ArtistRef(id=artist.get("id") or "", name=artist.get("name") or "")
                for artist in data.get("artists") or []
            ],
            popularity=data.get("popularity"),
            duration_ms=data.get("duration_ms"),
            release_date=album.get("release_date"),
            is_playable=data.get("is_playable", True) is not False,
            uri=data.get("uri"),
        )


@dataclass
class ArtistProfile:
    """Full artist profile used for similarity scoring."""
    id: str
    name: str = ""
    genres: List[str] = field(default_factory=list)
    popularity: Optional[int] = None
    followers: Optional[int] = None

    @property
    def needs_genre_backfill(self) -> bool:
        return not self.genres

    @classmethod
    def from_catalog(cls, data: Dict[str, Any]) -> "ArtistProfile":
        followers = data.get("followers")
        if isinstance(followers, dict):
            followers = followers.get("total")
        return cls(
            id=data.get("id") or "",
            name=data.get("name") or "",
            genres=list(data.get("genres") or []),
            popularity=data.get("popularity"),
            followers=followers,
        )


@dataclass
class TargetArtist:
    """Artist a player is trying to steer the music toward."""
    name: str
    id: Optional[str] = None


@dataclass
class TargetProfile:
    """Resolved profile of a player's target artist."""
    artist: TargetArtist
    spotify_id: Optional[str] = None
    genres: List[str] = field(default_factory=list)
    popularity: Optional[int] = None
    followers: Optional[int] = None

    @property
    def artist_id(self) -> Optional[str]:
        return self.spotify_id or self.artist.id

    def as_artist_profile(self) -> ArtistProfile:
        return ArtistProfile(
            id=self.artist_id or "",
            name=self.artist.name,
            genres=list(self.genres),
            popularity=self.popularity if self.popularity is not None else 0,
            followers=self.followers,
        )

    @classmethod
    def from_artist_profile(cls, target: TargetArtist, profile: ArtistProfile) -> "TargetProfile":
        return cls(
            artist=target,
            spotify_id=profile.id,
            genres=list(profile.genres),
            popularity=profile.popularity,
            followers=profile.followers,
        )


@dataclass
class ScoringComponents:
    """Per-factor breakdown of a similarity score, each in [0, 1]."""
    genre: float = 0.0
    relationship: float = 0.0
    track_pop: float = 0.0
    artist_pop: float = 0.0
    era: float = 0.0
    followers: float = 0.0

    @classmethod
    def dummy(cls) -> "ScoringComponents":
        return cls()

    @classmethod
    def identity(cls) -> "ScoringComponents":
        return cls(1.0, 1.0, 1.0, 1.0, 1.0, 1.0)


@dataclass
class TrackMetadata:
    """Normalized metadata of a reference track."""
    popularity: int = 50
    duration_ms: int = 180000
    release_date: Optional[str] = None
    genres: List[str] = field(default_factory=list)
    artist_id: Optional[str] = None


@dataclass
class CandidateSeed:
    """A candidate track and the branch that produced it."""
    track: TrackDetails
    source: CandidateSource = CandidateSource.RELATED_TOP_TRACKS
    seed_artist_id: Optional[str] = None


@dataclass
class CandidateTrackMetrics:
    """Scoring output for one candidate track."""
    track: TrackDetails
    source: CandidateSource
    artist_id: Optional[str] = None
    artist_name: Optional[str] = None
    artist_genres: List[str] = field(default_factory=list)
    sim_score: float = 0.0
    a_attraction: float = 0.0
    b_attraction: float = 0.0
    current_song_attraction: float = 0.0
    gravity_score: float = 0.0
    stabilized_score: float = 0.0
    final_score: float = 0.0
    delta: float = 0.0
    selection_category: Optional[SelectionCategory] = None
    is_target_artist: bool = False
    score_components: ScoringComponents = field(default_factory=ScoringComponents)
    popularity_band: PopularityBand = PopularityBand.MID

    def attraction_for(self, player_id: PlayerId) -> float:
        return self.a_attraction if player_id == PlayerId.PLAYER1 else self.b_attraction


@dataclass
class SelectedArtist:
    """An artist picked (or held in reserve) by the artist scoring stage."""
    artist_id: str
    artist_name: str
    category: SelectionCategory
    attraction_score: float = 0.0
    delta: float = 0.0
    is_target_artist: bool = False
    score_components: ScoringComponents = field(default_factory=ScoringComponents)


@dataclass
class OptionTrack:
    """Player-facing option: the track plus a compact scoring summary."""
    track: TrackDetails
    artist: ArtistRef
    selection_category: Optional[SelectionCategory] = None
    final_score: float = 0.0
    sim_score: float = 0.0
    a_attraction: float = 0.0
    b_attraction: float = 0.0
    delta: float = 0.0
    is_target_artist: bool = False
    popularity_band: PopularityBand = PopularityBand.MID
    source: CandidateSource = CandidateSource.RELATED_TOP_TRACKS
    score_components: ScoringComponents = field(default_factory=ScoringComponents)

    @classmethod
    def from_metrics(cls, metric: CandidateTrackMetrics) -> "OptionTrack":
        artist = metric.track.primary_artist or ArtistRef(
            id=metric.artist_id or "unknown",
            name=metric.artist_name or "Unknown",
        )
        return cls(
            track=metric.track,
            artist=artist,
            selection_category=metric.selection_category,
            final_score=metric.final_score,
            sim_score=metric.sim_score,
            a_attraction=metric.a_attraction,
            b_attraction=metric.b_attraction,
            delta=metric.delta,
            is_target_artist=metric.is_target_artist,
            popularity_band=metric.popularity_band,
            source=metric.source,
            score_components=metric.score_components,
        )


@dataclass
class LastSelection:
    """The most recent track queued by a player."""
    player_id: PlayerId
    track_id: str
    selection_category: Optional[SelectionCategory] = None


def normalize_name(value: Optional[str]) -> str:
    """Case-insensitive, whitespace-trimmed comparison key."""
    return (value or "").strip().lower()
