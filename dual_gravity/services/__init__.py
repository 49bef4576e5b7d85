"""
Services Module

Scoring engine, candidate pipeline and supporting services. Only the
pure scoring helpers are re-exported here; import the stateful services
from their own modules.
"""

from .genre_graph import avg_max_genre_similarity, get_genre_cluster
from .gravity import GravityLedger, apply_gravity_updates, gravity_zone, update_gravity
from .similarity import (
    compute_attraction,
    compute_similarity,
    compute_strict_artist_similarity,
    is_valid_catalog_id,
)

__all__ = [
    "avg_max_genre_similarity",
    "get_genre_cluster",
    "GravityLedger",
    "apply_gravity_updates",
    "gravity_zone",
    "update_gravity",
    "compute_attraction",
    "compute_similarity",
    "compute_strict_artist_similarity",
    "is_valid_catalog_id",
]
