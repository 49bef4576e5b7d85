"""
Gravity State Updater

Per-player influence toward their target artist. A closer selection
raises the acting player's gravity, a further one lowers it and a
neutral one drifts it back toward the default. Values are always clamped.
"""

import asyncio
from typing import Dict, Mapping, Optional

import structlog

from ..models.config_models import EngineConfig
from ..models.game_models import GravityZone, LastSelection, PlayerId, SelectionCategory
from .similarity import clamp_gravity

logger = structlog.get_logger(__name__)

PlayerGravityMap = Dict[PlayerId, float]


def default_gravities(config: Optional[EngineConfig] = None) -> PlayerGravityMap:
    config = config or EngineConfig()
    return {player: config.default_gravity for player in PlayerId}


def normalize_gravities(
    gravities: Optional[Mapping[PlayerId, Optional[float]]],
    config: Optional[EngineConfig] = None
) -> PlayerGravityMap:
    """Fill in missing players and clamp every value."""
    config = config or EngineConfig()
    gravities = gravities or {}
    return {
        player: clamp_gravity(gravities.get(player), config)
        for player in PlayerId
    }


def gravity_zone(gravity: float, config: Optional[EngineConfig] = None) -> GravityZone:
    """
    Classify a gravity value.

    Below 0.2 is desperation, [0.2, 0.5) is the dead zone and 0.5 or
    more is good influence (with the default configuration).
    """
    config = config or EngineConfig()
    if gravity < config.desperation_threshold:
        return GravityZone.DESPERATION
    if gravity < config.good_influence_threshold:
        return GravityZone.DEAD_ZONE
    return GravityZone.GOOD_INFLUENCE


def should_fetch_target_related(gravity: float, config: Optional[EngineConfig] = None) -> bool:
    return gravity_zone(gravity, config) is not GravityZone.DEAD_ZONE


def should_inject_target(gravity: float, round_number: int, config: Optional[EngineConfig] = None) -> bool:
    """Hard-convergence rule: high influence or a late round."""
    config = config or EngineConfig()
    return gravity > config.target_injection_threshold or round_number >= config.target_injection_round


def update_gravity(
    previous: Optional[float],
    category: Optional[SelectionCategory],
    config: Optional[EngineConfig] = None
) -> float:
    """
    Apply one selection to one player's gravity.

    Args:
        previous: Gravity before the selection (NaN/None become default)
        category: Category of the selected track, neutral when unknown
        config: Engine configuration

    Returns:
        New clamped gravity
    """
    config = config or EngineConfig()
    current = clamp_gravity(previous, config)
    category = category or SelectionCategory.NEUTRAL

    if category == SelectionCategory.CLOSER:
        updated = current + config.gravity_step
    elif category == SelectionCategory.FURTHER:
        updated = current - config.gravity_step
    else:
        gap = config.default_gravity - current
        updated = current + max(-config.neutral_nudge, min(config.neutral_nudge, gap))

    return clamp_gravity(updated, config)


def apply_gravity_updates(
    gravities: Optional[Mapping[PlayerId, Optional[float]]],
    last_selection: Optional[LastSelection],
    config: Optional[EngineConfig] = None
) -> PlayerGravityMap:
    """
    Compute the gravity map for the next turn.

    Args:
        gravities: Gravity per player before the update
        last_selection: Selection that ended the previous turn, if any
        config: Engine configuration

    Returns:
        New gravity map with both players clamped
    """
    config = config or EngineConfig()
    updated = normalize_gravities(gravities, config)

    if last_selection is None or not last_selection.track_id:
        return updated

    actor = last_selection.player_id
    before = updated[actor]
    updated[actor] = update_gravity(before, last_selection.selection_category, config)

    opponent = actor.opponent
    if (
        updated[actor] > config.underdog_leader_threshold
        and updated[opponent] < config.underdog_trailer_threshold
    ):
        updated[opponent] = clamp_gravity(updated[opponent] + config.underdog_boost, config)
        logger.info(
            "Underdog boost applied",
            player=opponent.value,
            gravity=round(updated[opponent], 3)
        )

    logger.info(
        "Gravity updated",
        player=actor.value,
        category=(last_selection.selection_category or SelectionCategory.NEUTRAL).value,
        before=round(before, 3),
        after=round(updated[actor], 3)
    )
    return updated


class GravityLedger:
    """
    Server-side gravity state keyed by game.

    Each update is a read-modify-write under one lock, so concurrent
    turns of the same game cannot interleave.
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()
        self._gravities: Dict[str, PlayerGravityMap] = {}
        self._lock = asyncio.Lock()
        self.logger = logger.bind(component="GravityLedger")

    async def get(self, game_id: str) -> PlayerGravityMap:
        async with self._lock:
            return dict(self._gravities.get(game_id) or default_gravities(self.config))

    async def reset(self, game_id: str) -> PlayerGravityMap:
        async with self._lock:
            self._gravities[game_id] = default_gravities(self.config)
            self.logger.info("Gravity reset", game_id=game_id)
            return dict(self._gravities[game_id])

    async def apply(
        self,
        game_id: str,
        last_selection: Optional[LastSelection],
        fallback: Optional[Mapping[PlayerId, Optional[float]]] = None
    ) -> PlayerGravityMap:
        """
        Apply a selection to the stored gravities of a game.

        Args:
            game_id: Game identifier
            last_selection: Selection to apply
            fallback: Gravities to start from when the game is unknown

        Returns:
            Updated gravity map
        """
        async with self._lock:
            current = self._gravities.get(game_id) or normalize_gravities(fallback, self.config)
            updated = apply_gravity_updates(current, last_selection, self.config)
            self._gravities[game_id] = updated
            return dict(updated)
