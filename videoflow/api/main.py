from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from videoflow.api.routers import health_router, jobs_router
from videoflow.core.cache import Cache
from videoflow.core.config import get_settings, settings
from videoflow.core.errors import JobError
from videoflow.models import Base, create_db_engine, create_session_factory
from videoflow.services import FFmpegEngine, JobOrchestrator, JobQueryService, JobStore, StorageService

logger = structlog.get_logger()

ERROR_STATUS_CODES = {
    "not_configured": 503,
    "not_found": 404,
    "conflict": 409,
    "validation_error": 400,
    "upstream_failure": 502,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    config = get_settings()

    engine = create_db_engine(config.database_url)
    if config.database_url.startswith("sqlite"):
        # Local runs and tests; PostgreSQL is migrated with alembic
        Base.metadata.create_all(engine)
    store = JobStore(create_session_factory(engine))

    cache = Cache.from_url(config.redis_url, config.cache_socket_timeout_seconds)
    storage = StorageService(config, cache=cache)
    transcoder = FFmpegEngine(
        storage,
        ffmpeg_binary=config.ffmpeg_binary,
        ffprobe_binary=config.ffprobe_binary,
        probe_timeout=config.probe_timeout_seconds,
    )
    orchestrator = JobOrchestrator(store, storage, cache, transcoder, stall_timeout=config.stall_timeout)
    queries = JobQueryService(
        store,
        storage,
        cache,
        list_ttl=config.job_list_cache_ttl_seconds,
        item_ttl=config.job_item_cache_ttl_seconds,
    )

    app.state.store = store
    app.state.storage = storage
    app.state.cache = cache
    app.state.transcoder = transcoder
    app.state.orchestrator = orchestrator
    app.state.queries = queries

    await storage.ensure_bucket_exists()
    try:
        await orchestrator.recover_interrupted()
    except SQLAlchemyError as e:
        logger.warning("recovery_skipped", error=str(e))

    logger.info(
        "service_started",
        object_store=storage.is_configured,
        cache=cache.enabled,
        transcoder=transcoder.is_available,
    )
    yield

    await orchestrator.shutdown()
    await cache.close()
    engine.dispose()


app = FastAPI(
    title="videoflow - Video Transcoding API",
    description="""
## Video transcoding jobs

Upload a video straight to object storage, have it transcoded to a target resolution
and poll until the result is ready to download.

### Flow

1. Request an upload slot at `POST /jobs/upload-url`
2. `PUT` the file to the returned `upload_url`
3. Confirm at `POST /jobs/{id}/upload-complete`
4. Poll `GET /jobs/{id}` until the status is `completed` or `failed`
5. Sign a download link at `POST /jobs/{id}/download-url`

Every call carries the caller's id in the `X-Owner-Id` header, set by the gateway.

### Supported formats

`.mp4`, `.avi`, `.mov`, `.mkv`, `.webm`
    """,
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=[
        {"name": "Health", "description": "Health check endpoints"},
        {"name": "Jobs", "description": "Upload handshake, status and download of transcoding jobs"},
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    return response


@app.exception_handler(JobError)
async def job_error_handler(request: Request, exc: JobError) -> JSONResponse:
    status_code = ERROR_STATUS_CODES.get(exc.kind, 500)
    logger.info("request_rejected", path=request.url.path, kind=exc.kind, detail=exc.message)
    return JSONResponse(status_code=status_code, content={"error": exc.kind, "detail": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "validation_error", "detail": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


app.include_router(health_router)
app.include_router(jobs_router, prefix=settings.api_prefix)


@app.get("/")
async def root():
    return {"service": "videoflow", "version": "1.0.0", "docs": "/docs"}
