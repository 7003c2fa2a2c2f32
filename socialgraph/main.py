"""
Social Graph API — entry point.

Startup sequence:
  1. Configure OTel tracing (→ Jaeger via OTLP)
  2. Create the DB engine + session factory, create tables if not present
  3. Connect to Redis
  4. Build the components (relationship store, VIP marker, like engine,
     outbox relay for operator requeues) and attach them to app.state
  5. Expose Prometheus /metrics endpoint

Shutdown closes Redis and disposes the engine. The outbox relay loop and the
count reconciler run in the worker process (socialgraph.worker), not here.
"""
import logging

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from socialgraph.clients.kafka_producer import log_sender
from socialgraph.clients.redis_client import LikeCache, create_redis
from socialgraph.config import Settings, settings
from socialgraph.database import create_engine, create_session_factory, init_db
from socialgraph.errors import InvalidArgumentError, NotFoundError, StorageError
from socialgraph.likes import LikeCacheEngine, PostLikeStore
from socialgraph.locks import DistributedLock
from socialgraph.outbox import OutboxRelay
from socialgraph.promoter import StatusPromoter
from socialgraph.relationships import RelationshipStore
from socialgraph.routers import admin, follows, posts, users
from socialgraph.telemetry import instrument_app, setup_tracing

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)

# Set up tracing before the app is created so all imports are instrumented
setup_tracing()


def attach_components(
    app: FastAPI,
    session_factory: async_sessionmaker[AsyncSession],
    redis: aioredis.Redis,
    cfg: Settings = settings,
) -> None:
    """Wire every component from the shared clients onto app.state."""
    promoter = StatusPromoter(session_factory, cfg.vip_follower_threshold)
    app.state.session_factory = session_factory
    app.state.relationships = RelationshipStore(
        session_factory,
        promoter=promoter,
        default_limit=cfg.follow_list_default_limit,
        max_limit=cfg.follow_list_max_limit,
    )
    app.state.likes = LikeCacheEngine(
        PostLikeStore(session_factory),
        LikeCache(redis, cfg.like_set_ttl_seconds, cfg.like_count_ttl_seconds),
        DistributedLock(redis, ttl_ms=cfg.like_lock_ttl_ms),
        backoff=cfg.like_lock_backoff_seconds,
        second_delete_delay=cfg.like_count_second_delete_seconds,
        max_set_members=cfg.like_set_max_members,
    )
    app.state.outbox_relay = OutboxRelay(
        session_factory,
        log_sender,
        batch_size=cfg.outbox_batch_size,
        interval=cfg.outbox_interval_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown of all external connections."""
    logger.info("Starting Social Graph API (env=%s)", settings.environment)

    engine = create_engine(settings.database_url)
    await init_db(engine)
    redis = await create_redis(settings)
    attach_components(app, create_session_factory(engine), redis)

    logger.info("All services connected. API ready.")
    yield

    logger.info("Shutting down...")
    await redis.aclose()
    await engine.dispose()


app = FastAPI(
    title="Social Graph API",
    description=(
        "Follow relationships with a transactional outbox, self-healing "
        "follower counters, and cache-aside post like counters."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── Routers ────────────────────────────────────────────────────────────────
app.include_router(users.router, prefix="/users", tags=["Users"])
app.include_router(follows.router, prefix="/follows", tags=["Follows"])
app.include_router(posts.router, prefix="/posts", tags=["Posts"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


# ── Domain errors → HTTP ───────────────────────────────────────────────────
@app.exception_handler(InvalidArgumentError)
async def invalid_argument_handler(request: Request, exc: InvalidArgumentError):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.error("Storage error on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "storage temporarily unavailable, retry"},
    )


# ── Prometheus metrics endpoint ────────────────────────────────────────────
# Mounted at /metrics — scraped by Prometheus
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# ── OTel FastAPI instrumentation ──────────────────────────────────────────
instrument_app(app)


@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok", "service": settings.service_name}
