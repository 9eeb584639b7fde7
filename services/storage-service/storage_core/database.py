# services/storage-service/storage_core/database.py
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
import redis.asyncio as redis
from .config import settings
from .models.database import Base

# Record store: files, subscriptions, migration_runs
engine = create_async_engine(settings.DATABASE_URL, echo=False, pool_pre_ping=True)
AsyncSessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

# Redis backs shared chunk sessions when CHUNK_SESSION_BACKEND=redis
redis_client = None


async def init_models():
    """Create missing tables. Existing tables are left untouched."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_redis():
    """Connect and ping, so an unreachable server fails at startup"""
    global redis_client
    client = redis.from_url(settings.REDIS_URL)
    await client.ping()
    redis_client = client
    return redis_client


async def close_redis():
    global redis_client
    if redis_client:
        await redis_client.close()
        redis_client = None


async def get_redis():
    return redis_client
