"""
Engine Exceptions

Error taxonomy shared by the pipeline stages and the HTTP layer.
"""

from typing import Optional


class DualGravityError(Exception):
    """Base class for all engine errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class StageInputError(DualGravityError):
    """Invalid stage input: the turn fails immediately."""

    status_code = 400
    code = "invalid_request"


class AuthorizationError(DualGravityError):
    """Missing or malformed bearer credential."""

    status_code = 401
    code = "missing_authorization"


class CatalogError(DualGravityError):
    """Upstream catalog failure. Non-fatal inside the pipeline."""

    status_code = 502
    code = "catalog_unavailable"

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.upstream_status = status


class PersistenceError(DualGravityError):
    """Persistence layer failure."""

    status_code = 503
    code = "persistence_unavailable"
