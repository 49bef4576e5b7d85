"""
Pipeline Stage Models

Validated request/response shapes of the stage boundaries. Requests are
parsed once at the edge; services only ever see these models.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .game_models import (
    ArtistProfile,
    ArtistRef,
    CandidateSeed,
    GravityZone,
    LastSelection,
    OptionTrack,
    PlayerId,
    SelectedArtist,
    TargetArtist,
    TargetProfile,
    TrackDetails,
)


def _default_gravities() -> Dict[PlayerId, float]:
    return {PlayerId.PLAYER1: 0.3, PlayerId.PLAYER2: 0.3}


def _empty_targets() -> Dict[PlayerId, Optional[TargetArtist]]:
    return {PlayerId.PLAYER1: None, PlayerId.PLAYER2: None}


@dataclass
class TargetBranch:
    """Result of the related-to-target branch for one player."""
    player_id: PlayerId
    zone: GravityZone
    artists: List[ArtistRef] = field(default_factory=list)
    target_injected: bool = False
    skipped_reason: Optional[str] = None

    @property
    def artist_ids(self) -> List[str]:
        return [artist.id for artist in self.artists]


class PlaybackState(BaseModel):
    """Currently playing item as reported by the player."""

    item: Optional[TrackDetails] = Field(None, description="Currently playing track")
    is_playing: bool = Field(False, description="Whether playback is active")
    progress_ms: Optional[int] = Field(None, description="Playback position")


class Stage1Request(BaseModel):
    """Input of the candidate artist stage."""

    round_number: int = Field(1, ge=1, description="Turn number within the round")
    player_targets: Dict[PlayerId, Optional[TargetArtist]] = Field(
        default_factory=_empty_targets,
        description="Target artist per player"
    )
    playback_state: Optional[PlaybackState] = Field(None, description="Current playback")
    current_player_id: PlayerId = Field(PlayerId.PLAYER1, description="Player acting this turn")
    player_gravities: Dict[PlayerId, float] = Field(
        default_factory=_default_gravities,
        description="Gravity per player before this turn"
    )
    last_selection: Optional[LastSelection] = Field(None, description="Selection that ended the previous turn")
    game_id: Optional[str] = Field(None, description="Use server-side gravity state for this game")


class Stage1Response(BaseModel):
    """Output of the candidate artist stage."""

    artist_ids: List[str]
    related_to_current: List[ArtistRef]
    related_to_target: Dict[PlayerId, TargetBranch]
    random_artists: List[ArtistRef]
    target_profiles: Dict[PlayerId, Optional[TargetProfile]]
    current_track: Optional[TrackDetails] = None
    seed_artist_id: str
    seed_artist_name: str
    updated_gravities: Dict[PlayerId, float]
    exploration_phase: str
    og_drift: float
    hard_convergence_active: bool
    debug: Dict[str, Any] = Field(default_factory=dict)


class Stage2ScoreArtistsRequest(BaseModel):
    """Input of the artist scoring stage."""

    artist_ids: List[str]
    target_profiles: Dict[PlayerId, Optional[TargetProfile]] = Field(default_factory=dict)
    player_gravities: Dict[PlayerId, float] = Field(default_factory=_default_gravities)
    current_track: Optional[TrackDetails] = None
    related_artist_ids: List[str] = Field(default_factory=list)
    round_number: int = Field(1, ge=1)
    current_player_id: PlayerId = PlayerId.PLAYER1
    hard_convergence_active: bool = False
    related_to_current: List[ArtistRef] = Field(default_factory=list)
    related_to_target: List[ArtistRef] = Field(default_factory=list)
    random_artists: List[ArtistRef] = Field(default_factory=list)


class Stage2ScoreArtistsResponse(BaseModel):
    """Selected artists (target 9) and ordered backups."""

    selected_artists: List[SelectedArtist]
    backup_artists: List[SelectedArtist]
    debug: Dict[str, Any] = Field(default_factory=dict)


class Stage2FetchTracksRequest(BaseModel):
    """Input of the track fetch stage."""

    selected_artists: List[SelectedArtist]
    backup_artists: List[SelectedArtist] = Field(default_factory=list)
    current_track: Optional[TrackDetails] = None
    played_track_ids: List[str] = Field(default_factory=list)
    target_profiles: Dict[PlayerId, Optional[TargetProfile]] = Field(default_factory=dict)
    player_gravities: Dict[PlayerId, float] = Field(default_factory=_default_gravities)
    current_player_id: PlayerId = PlayerId.PLAYER1
    round_number: int = Field(1, ge=1)


class Stage2FetchTracksResponse(BaseModel):
    """Final options built from the selected artists."""

    options: List[OptionTrack]
    debug: Dict[str, Any] = Field(default_factory=dict)


class Stage3ScoreRequest(BaseModel):
    """Input of the full track scoring stage."""

    seeds: List[CandidateSeed] = Field(default_factory=list)
    profiles: List[ArtistProfile] = Field(default_factory=list)
    target_profiles: Dict[PlayerId, Optional[TargetProfile]] = Field(default_factory=dict)
    player_gravities: Dict[PlayerId, float] = Field(default_factory=_default_gravities)
    current_track: Optional[TrackDetails] = None
    related_artist_ids: List[str] = Field(default_factory=list)
    round_number: int = Field(1, ge=1)
    current_player_id: PlayerId = PlayerId.PLAYER1
    og_drift: Optional[float] = Field(None, ge=0.0, le=1.0)
    hard_convergence_active: Optional[bool] = None
    played_track_ids: List[str] = Field(default_factory=list)


class Stage3ScoreResponse(BaseModel):
    """Scored and diversity-balanced options."""

    option_tracks: List[OptionTrack]
    debug: Dict[str, Any] = Field(default_factory=dict)


class LazyUpdateTickResponse(BaseModel):
    """Summary of one background maintenance tick."""

    processed: int
    failed: int
    remaining: int
    duration_ms: int
    healing: Dict[str, int] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Sanitized error body."""

    error: str
    code: str


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    timestamp: float
    version: str
    components: Dict[str, str]
