"""
API Module

Catalog HTTP clients and the FastAPI backend (imported separately as
``dual_gravity.api.backend``).
"""

from .base_client import BaseAPIClient
from .catalog_client import MusicCatalog, SpotifyCatalogClient
from .rate_limiter import UnifiedRateLimiter

__all__ = [
    "BaseAPIClient",
    "MusicCatalog",
    "SpotifyCatalogClient",
    "UnifiedRateLimiter",
]
