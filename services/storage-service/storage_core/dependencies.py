# services/storage-service/storage_core/dependencies.py
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from .config import settings
from .database import AsyncSessionLocal, get_redis
from .services.chunks import ChunkSessionManager, MemorySessionStore, RedisSessionStore
from .services.migration import MigrationJob
from .services.notifications import notification_service
from .services.repository import FileRepository
from .services.scheduler import MigrationScheduler
from .services.storage import storage_service

# Security
security = HTTPBearer()

# Service wiring (process-wide singletons)
file_repository = FileRepository(AsyncSessionLocal)
migration_job = MigrationJob(file_repository, storage_service, notification_service)
migration_scheduler = MigrationScheduler(migration_job, notification_service)
chunk_manager = ChunkSessionManager(storage_service, MemorySessionStore())


async def init_chunk_manager() -> ChunkSessionManager:
    """Switch chunk sessions to Redis when configured (called at startup)"""
    global chunk_manager
    if settings.CHUNK_SESSION_BACKEND == "redis":
        redis_client = await get_redis()
        if redis_client is not None:
            chunk_manager = ChunkSessionManager(storage_service, RedisSessionStore(redis_client))
    return chunk_manager


def _decode(credentials: HTTPAuthorizationCredentials) -> dict:
    try:
        return jwt.decode(credentials.credentials, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")


async def get_current_owner(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> int:
    """Owner id (the token subject) for upload endpoints"""
    payload = _decode(credentials)
    try:
        return int(payload.get("sub"))
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token")


async def require_admin(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> dict:
    payload = _decode(credentials)
    if payload.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return payload


def get_chunk_manager() -> ChunkSessionManager:
    return chunk_manager


def get_file_repository() -> FileRepository:
    return file_repository


def get_migration_job() -> MigrationJob:
    return migration_job


def get_scheduler() -> MigrationScheduler:
    return migration_scheduler
