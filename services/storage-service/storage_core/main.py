# services/storage-service/storage_core/main.py
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .database import init_models, init_redis, close_redis, engine
from .dependencies import migration_scheduler, init_chunk_manager, get_chunk_manager
from .logging_config import setup_logging
from .monitoring.metrics import metrics_collector
from .services.pricing import validate_tiers
from .services.storage import storage_service, legacy_storage

# Routers (these already have their own prefixes inside each module)
from .routers import migration, upload

logger = logging.getLogger(__name__)


async def purge_abandoned_sessions(interval: int = 3600):
    """Reclaim chunk sessions that were never completed"""
    while True:
        await asyncio.sleep(interval)
        try:
            await get_chunk_manager().purge_expired()
        except Exception as e:
            logger.error(f"Chunk session purge failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    setup_logging()
    logger.info("Starting storage core service...")

    validate_tiers()

    # Shared chunk sessions
    if settings.CHUNK_SESSION_BACKEND == "redis":
        try:
            await init_redis()
            await init_chunk_manager()
            logger.info("Redis connection established, chunk sessions shared")
        except Exception as e:
            logger.warning(f"Redis connection failed, chunk sessions stay in memory: {e}")

    # Record store
    try:
        await init_models()
        logger.info("Database connection successful")
    except Exception as e:
        logger.warning(f"Database connection failed: {e}")

    if not await storage_service.verify_connection():
        logger.warning("Object store not reachable; uploads will fail until it is")
    if migration_scheduler.config.enabled and not await legacy_storage.verify_connection():
        logger.warning("Legacy object store not reachable; migration reads may fail")

    migration_scheduler.start()
    purge_task = asyncio.create_task(purge_abandoned_sessions())
    logger.info("Application startup complete")
    yield

    # Shutdown
    logger.info("Shutting down storage core service...")
    purge_task.cancel()
    await migration_scheduler.stop()
    await close_redis()
    await engine.dispose()
    logger.info("Cleanup complete")


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    description="Cost-aware object storage with chunked uploads and backend migration",
    lifespan=lifespan,
)

# Instrument Prometheus metrics (also exposes /metrics)
metrics_collector.instrument_app(app, settings.VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(upload.router)
app.include_router(migration.router)


@app.get("/health", tags=["Health"])
async def health():
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
        "version": settings.VERSION,
        "backend_configured": storage_service.config.configured,
    }
