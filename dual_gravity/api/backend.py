"""
FastAPI Backend for the Dual Gravity Engine

Exposes the three pipeline stages, the artist scoring stage and the
lazy update tick over HTTP. Every pipeline endpoint requires the
player's catalog bearer token, which is used for that request only.
"""

import time
from contextlib import asynccontextmanager
from typing import Callable, Optional

import structlog
from fastapi import BackgroundTasks, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..exceptions import AuthorizationError, CatalogError, DualGravityError, PersistenceError
from ..models.config_models import SystemConfig
from ..models.pipeline_models import (
    HealthResponse,
    LazyUpdateTickResponse,
    Stage1Request,
    Stage1Response,
    Stage2FetchTracksRequest,
    Stage2FetchTracksResponse,
    Stage2ScoreArtistsRequest,
    Stage2ScoreArtistsResponse,
    Stage3ScoreRequest,
    Stage3ScoreResponse,
)
from ..services.dual_gravity_service import DualGravityService
from ..services.gravity import GravityLedger
from ..services.lazy_update_queue import HealingQueue, LazyUpdateQueue
from ..services.persistence import InMemoryMusicStore
from ..services.profile_cache import ArtistProfileCache
from ..utils.logging_config import log_error
from .catalog_client import MusicCatalog, SpotifyCatalogClient
from .logging_middleware import LoggingMiddleware
from .rate_limiter import UnifiedRateLimiter

logger = structlog.get_logger(__name__)

GENERIC_ERROR_MESSAGE = "Internal error, still warming up. Please retry."

CatalogFactory = Callable[[str], MusicCatalog]

# Process-wide instances, created in lifespan
dual_gravity_service: Optional[DualGravityService] = None
catalog_factory: Optional[CatalogFactory] = None
profile_cache: Optional[ArtistProfileCache] = None


def build_catalog_factory(config: SystemConfig) -> CatalogFactory:
    """Catalog clients share one rate limiter but carry their own token."""
    rate_limiter = UnifiedRateLimiter.for_catalog(config.catalog_calls_per_second)

    def factory(token: str) -> MusicCatalog:
        return SpotifyCatalogClient(
            access_token=token,
            rate_limiter=rate_limiter,
            base_url=config.catalog_base_url,
            timeout=config.catalog_timeout,
            top_track_concurrency=config.engine.top_track_fetch_concurrency,
        )

    return factory


def build_service(config: SystemConfig) -> DualGravityService:
    """Wire the long-lived engine state."""
    global profile_cache
    engine = config.engine
    store = InMemoryMusicStore()
    profile_cache = (
        ArtistProfileCache(config.cache_directory, config.cache_ttl_hours)
        if config.cache_enabled else None
    )
    lazy_queue = LazyUpdateQueue()
    return DualGravityService(
        config=engine,
        store=store,
        cache=profile_cache,
        lazy_queue=lazy_queue,
        healing=HealingQueue(store, lazy_queue, profile_cache),
        ledger=GravityLedger(engine),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown."""
    global dual_gravity_service, catalog_factory, profile_cache

    config = SystemConfig.from_env()
    logger.info("Initializing Dual Gravity service", cache_enabled=config.cache_enabled)
    dual_gravity_service = build_service(config)
    catalog_factory = build_catalog_factory(config)
    logger.info("Dual Gravity service initialized")

    yield

    logger.info("Shutting down Dual Gravity service")
    if profile_cache is not None:
        profile_cache.close()
    dual_gravity_service = None
    catalog_factory = None
    profile_cache = None


app = FastAPI(
    title="Dual Gravity API",
    description="Two-player music discovery scoring engine",
    version=__version__,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(LoggingMiddleware, exclude_paths=["/health", "/docs", "/openapi.json"])


# Dependencies
def get_service() -> DualGravityService:
    if dual_gravity_service is None:
        raise DualGravityError("Service not initialized", "service_unavailable")
    return dual_gravity_service


def get_catalog_factory() -> CatalogFactory:
    if catalog_factory is None:
        raise DualGravityError("Catalog not configured", "service_unavailable")
    return catalog_factory


def _parse_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def require_bearer_token(authorization: Optional[str] = Header(None)) -> str:
    token = _parse_bearer(authorization)
    if token is None:
        raise AuthorizationError("Missing or invalid Authorization header")
    return token


def optional_bearer_token(authorization: Optional[str] = Header(None)) -> Optional[str]:
    return _parse_bearer(authorization)


# Error handling
@app.exception_handler(DualGravityError)
async def dual_gravity_error_handler(request: Request, exc: DualGravityError):
    if isinstance(exc, (CatalogError, PersistenceError)) or exc.status_code >= 500:
        logger.error("Stage failed", path=request.url.path, code=exc.code, error=str(exc))
        message = GENERIC_ERROR_MESSAGE
    else:
        logger.warning("Stage rejected request", path=request.url.path, code=exc.code, error=exc.message)
        message = exc.message
    return JSONResponse(status_code=exc.status_code, content={"error": message, "code": exc.code})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    logger.warning("Invalid request body", path=request.url.path, errors=len(exc.errors()))
    return JSONResponse(
        status_code=400,
        content={"error": "Request body failed validation", "code": "invalid_request"}
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    log_error(exc, {"path": request.url.path, "method": request.method})
    logger.error(
        "Unhandled error",
        path=request.url.path,
        error_type=type(exc).__name__,
        error=str(exc)
    )
    return JSONResponse(
        status_code=500,
        content={"error": GENERIC_ERROR_MESSAGE, "code": "internal_error"}
    )


# API Endpoints
@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=time.time(),
        version=__version__,
        components={
            "dual_gravity_service": "active" if dual_gravity_service else "inactive",
            "catalog_client": "configured" if catalog_factory else "unconfigured",
            "profile_cache": "enabled" if profile_cache is not None else "disabled",
        }
    )


@app.post("/pipeline/stage1-artists", response_model=Stage1Response)
async def stage1_artists(
    request: Stage1Request,
    background_tasks: BackgroundTasks,
    token: str = Depends(require_bearer_token),
    service: DualGravityService = Depends(get_service),
    factory: CatalogFactory = Depends(get_catalog_factory)
):
    """
    Build the candidate artist pool for the turn.

    Leftover time in the turn budget is spent on opportunistic healing
    in the background, after the response has been sent.
    """
    async with factory(token) as catalog:
        response = await service.run_stage1(request, catalog)

    if service.healing_window_open(response.debug.get("duration_ms", 0)):
        background_tasks.add_task(service.opportunistic_heal, factory(token))
        response.debug["healing_scheduled"] = True
    return response


@app.post("/pipeline/stage2-score-artists", response_model=Stage2ScoreArtistsResponse)
async def stage2_score_artists(
    request: Stage2ScoreArtistsRequest,
    token: str = Depends(require_bearer_token),
    service: DualGravityService = Depends(get_service),
    factory: CatalogFactory = Depends(get_catalog_factory)
):
    async with factory(token) as catalog:
        return await service.score_artists(request, catalog)


@app.post("/pipeline/stage2-fetch-tracks", response_model=Stage2FetchTracksResponse)
async def stage2_fetch_tracks(
    request: Stage2FetchTracksRequest,
    token: str = Depends(require_bearer_token),
    service: DualGravityService = Depends(get_service),
    factory: CatalogFactory = Depends(get_catalog_factory)
):
    async with factory(token) as catalog:
        return await service.fetch_tracks(request, catalog)


@app.post("/pipeline/stage3-score", response_model=Stage3ScoreResponse)
async def stage3_score(
    request: Stage3ScoreRequest,
    token: str = Depends(require_bearer_token),
    service: DualGravityService = Depends(get_service),
    factory: CatalogFactory = Depends(get_catalog_factory)
):
    async with factory(token) as catalog:
        return await service.score_tracks(request, catalog)


@app.post("/lazy-update-tick", response_model=LazyUpdateTickResponse)
async def lazy_update_tick(
    token: Optional[str] = Depends(optional_bearer_token),
    service: DualGravityService = Depends(get_service),
    factory: CatalogFactory = Depends(get_catalog_factory)
):
    """Apply pending lazy updates; healing only runs with a token."""
    if token is None:
        result = await service.lazy_update_tick(None)
    else:
        async with factory(token) as catalog:
            result = await service.lazy_update_tick(catalog)
    return LazyUpdateTickResponse(**result)
