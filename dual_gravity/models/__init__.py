"""
Models Module

Domain dataclasses, stage request/response models and configuration.
"""

from .game_models import (
    ArtistProfile,
    ArtistRef,
    CandidateSeed,
    CandidateSource,
    CandidateTrackMetrics,
    GravityZone,
    LastSelection,
    OptionTrack,
    PlayerId,
    PopularityBand,
    ScoringComponents,
    SelectedArtist,
    SelectionCategory,
    TargetArtist,
    TargetProfile,
    TrackDetails,
    TrackMetadata,
)
from .config_models import EngineConfig, ExplorationPhase, RetryPolicy, SystemConfig

__all__ = [
    "ArtistProfile",
    "ArtistRef",
    "CandidateSeed",
    "CandidateSource",
    "CandidateTrackMetrics",
    "GravityZone",
    "LastSelection",
    "OptionTrack",
    "PlayerId",
    "PopularityBand",
    "ScoringComponents",
    "SelectedArtist",
    "SelectionCategory",
    "TargetArtist",
    "TargetProfile",
    "TrackDetails",
    "TrackMetadata",
    "EngineConfig",
    "ExplorationPhase",
    "RetryPolicy",
    "SystemConfig",
]
