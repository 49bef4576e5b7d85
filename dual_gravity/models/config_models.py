"""
Configuration Models

Pydantic models holding every tunable constant of the engine plus the
process-level settings read from the environment.
"""

import os
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from .game_models import SelectedArtist, SelectionCategory


class ExplorationPhase(BaseModel):
    """Round range sharing one og-drift value."""

    level: str = Field(..., description="Phase name (high, medium, low)")
    og_drift: float = Field(..., ge=0.0, le=1.0, description="Weight removed from raw similarity")
    min_round: int = Field(..., ge=1, description="First round of the phase")
    max_round: int = Field(..., ge=1, description="Last round of the phase")


def _default_phases() -> List[ExplorationPhase]:
    return [
        ExplorationPhase(level="high", og_drift=0.2, min_round=1, max_round=2),
        ExplorationPhase(level="medium", og_drift=0.5, min_round=3, max_round=5),
        ExplorationPhase(level="low", og_drift=0.8, min_round=6, max_round=10),
    ]


class RetryPolicy(BaseModel):
    """
    Bounded retry policy for the track fetch stage.

    Decides how long to wait between refill rounds and which backup
    artists to try next so that short categories are refilled first.
    """

    max_attempts: int = Field(default=3, ge=0, description="Maximum backup refill rounds")
    initial_backoff_seconds: float = Field(default=0.0, ge=0.0, description="Delay before the second round")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Delay growth per round")
    max_backoff_seconds: float = Field(default=2.0, ge=0.0, description="Upper bound for a single delay")
    category_priority: bool = Field(default=True, description="Refill under-filled categories first")

    def backoff_for(self, attempt: int) -> float:
        """
        Delay before a refill round.

        Args:
            attempt: Zero-based refill round

        Returns:
            Seconds to wait (0 for the first round)
        """
        if attempt <= 0 or self.initial_backoff_seconds <= 0:
            return 0.0
        delay = self.initial_backoff_seconds * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_backoff_seconds)

    def select_backups(
        self,
        backups: List[SelectedArtist],
        category_counts: Dict[SelectionCategory, int],
        needed: int,
        per_category_target: int,
        used_artist_ids: Optional[set] = None
    ) -> List[SelectedArtist]:
        """
        Choose which backup artists to try in the next refill round.

        Args:
            backups: Remaining backup artists
            category_counts: Options already produced per category
            needed: Number of options still missing
            per_category_target: Desired options per category
            used_artist_ids: Artists already tried this turn

        Returns:
            Up to ``needed`` backups, most under-filled category first
        """
        used = used_artist_ids or set()
        available = [b for b in backups if b.artist_id not in used]
        if needed <= 0 or not available:
            return []

        if not self.category_priority:
            return available[:needed]

        ordered = list(available)
        picked: List[SelectedArtist] = []
        projected = dict(category_counts)
        # Deficits are recomputed after every pick
        while ordered and len(picked) < needed:
            best = max(
                ordered,
                key=lambda b: (
                    per_category_target - projected.get(b.category, 0),
                    b.attraction_score,
                )
            )
            ordered.remove(best)
            picked.append(best)
            projected[best.category] = projected.get(best.category, 0) + 1
        return picked


class EngineConfig(BaseModel):
    """Tunable constants of the scoring and selection engine."""

    # Gravity
    gravity_min: float = Field(default=0.0, description="Lower gravity bound")
    gravity_max: float = Field(default=0.8, description="Upper gravity bound")
    default_gravity: float = Field(default=0.3, description="Gravity at round start and NaN fallback")
    gravity_step: float = Field(default=0.05, description="Gravity change for closer/further selections")
    neutral_nudge: float = Field(default=0.01, description="Pull toward default on neutral selections")
    underdog_boost: float = Field(default=0.05, description="Opponent boost when the actor runs away")
    underdog_leader_threshold: float = Field(default=0.5, description="Actor gravity that triggers underdog boost")
    underdog_trailer_threshold: float = Field(default=0.25, description="Opponent gravity below which it gets boosted")
    desperation_threshold: float = Field(default=0.2, description="Gravity below this is the desperation zone")
    good_influence_threshold: float = Field(default=0.5, description="Gravity at or above this is good influence")
    target_injection_threshold: float = Field(default=0.59, description="Gravity above this injects the target artist")
    target_injection_round: int = Field(default=10, description="Round from which the target is always injected")

    # Scoring
    delta_threshold: float = Field(default=0.05, description="Minimum |delta| for a directional category")
    og_constant: float = Field(default=0.12, description="Constant added to the stabilized score")
    exploration_phases: List[ExplorationPhase] = Field(default_factory=_default_phases)
    round_gravity_base: float = Field(default=0.5, description="Gravity multiplier at round 0")
    round_gravity_ramp: float = Field(default=0.7, description="Gravity multiplier increase per round")
    target_boost_threshold: float = Field(default=0.35, description="Gravity enabling the target artist boost")
    early_target_similarity_threshold: float = Field(default=0.4, description="Similarity letting a target artist through early")
    target_override_round: int = Field(default=8, description="Round from which target artists are never filtered")
    max_round_turns: int = Field(default=10, description="Round at which hard convergence activates")
    floor_ratio_steps: List[Tuple[int, float]] = Field(
        default_factory=lambda: [(2, 0.4), (5, 0.15)],
        description="(last round, ratio) pairs of the similarity floor, in round order"
    )
    late_floor_ratio: float = Field(default=0.05, description="Similarity floor ratio after the last step")

    # Pool and selection
    min_unique_artists: int = Field(default=100, description="Minimum candidate artists after backfill")
    max_related_to_current: int = Field(default=50, description="Cap for related-to-current branch")
    max_related_to_target: int = Field(default=20, description="Cap for related-to-target branch")
    display_option_count: int = Field(default=9, description="Options shown per turn")
    tracks_per_category: int = Field(default=3, description="Target options per category")
    diversity_injection_per_category: int = Field(default=5, description="Max injected seeds per short category")
    name_search_limit: int = Field(default=20, description="Max name searches per enrichment")
    top_track_fetch_concurrency: int = Field(default=5, description="Concurrent top-track fetches")

    # Latency
    turn_budget_seconds: float = Field(default=10.0, description="Latency budget of an interactive stage")
    healing_reserve_seconds: float = Field(default=1.0, description="Budget left required for opportunistic healing")
    healing_batch_size: int = Field(default=2, description="Healing actions per opportunistic run")
    lazy_update_batch_size: int = Field(default=3, description="Lazy updates per tick")
    lazy_update_deadline_seconds: float = Field(default=4.5, description="Deadline of a lazy update tick")

    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)

    def get_exploration_phase(self, round_number: int) -> ExplorationPhase:
        """Phase covering ``round_number``, the last phase past the end."""
        for phase in self.exploration_phases:
            if phase.min_round <= round_number <= phase.max_round:
                return phase
        return self.exploration_phases[-1]

    def floor_ratio(self, round_number: int) -> float:
        """Fraction of raw similarity a final score may not drop below."""
        for last_round, ratio in self.floor_ratio_steps:
            if round_number <= last_round:
                return ratio
        return self.late_floor_ratio


class SystemConfig(BaseModel):
    """Process-level settings."""

    catalog_base_url: str = Field(default="https://api.spotify.com/v1", description="Catalog API base URL")
    catalog_calls_per_second: float = Field(default=10.0, description="Catalog requests per second")
    catalog_timeout: int = Field(default=10, description="Catalog request timeout in seconds")
    cache_enabled: bool = Field(default=True, description="Enable the artist profile disk cache")
    cache_directory: str = Field(default="data/cache", description="Cache directory path")
    cache_ttl_hours: int = Field(default=24 * 7, description="Artist profile cache TTL in hours")
    log_level: str = Field(default="INFO", description="Root log level")
    log_dir: str = Field(default="logs", description="Log directory")
    host: str = Field(default="127.0.0.1", description="Bind host")
    port: int = Field(default=8000, description="Bind port")
    engine: EngineConfig = Field(default_factory=EngineConfig)

    @classmethod
    def from_env(cls) -> "SystemConfig":
        """Build settings from environment variables, defaults otherwise."""
        return cls(
            catalog_base_url=os.getenv("CATALOG_BASE_URL", "https://api.spotify.com/v1"),
            catalog_calls_per_second=float(os.getenv("CATALOG_CALLS_PER_SECOND", "10")),
            catalog_timeout=int(os.getenv("CATALOG_TIMEOUT", "10")),
            cache_enabled=os.getenv("CACHE_ENABLED", "true").lower() == "true",
            cache_directory=os.getenv("CACHE_DIRECTORY", "data/cache"),
            cache_ttl_hours=int(os.getenv("CACHE_TTL_HOURS", str(24 * 7))),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_dir=os.getenv("LOG_DIR", "logs"),
            host=os.getenv("HOST", "127.0.0.1"),
            port=int(os.getenv("PORT", "8000")),
        )
