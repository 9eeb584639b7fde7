# services/storage-service/storage_core/services/chunks.py
"""Chunked upload sessions: split, track, reassemble"""

import json
import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Optional
from ..config import settings
from ..exceptions import (
    StorageError, FetchFailed, InvalidSession,
    SessionNotFound, IncompleteUpload, ChunkNotFound,
)
from ..monitoring.metrics import active_chunk_sessions, chunks_combined
from .fetch import fetch_bytes
from .storage import ObjectStore, DEFAULT_CONTENT_TYPE, normalize_key

logger = logging.getLogger(__name__)


@dataclass
class ChunkSession:
    session_id: str
    file_name: str
    declared_size: int
    mime_type: str
    chunk_size: int
    total_chunks: int
    created_at: float
    owner_id: Optional[int] = None
    uploaded_chunks: Dict[int, str] = field(default_factory=dict)  # index -> chunk URL
    chunk_keys: Dict[int, str] = field(default_factory=dict)  # chunks we stored ourselves

    @property
    def is_complete(self) -> bool:
        return len(self.uploaded_chunks) == self.total_chunks

    def missing_chunks(self):
        return [i for i in range(self.total_chunks) if i not in self.uploaded_chunks]

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "file_name": self.file_name,
            "declared_size": self.declared_size,
            "mime_type": self.mime_type,
            "chunk_size": self.chunk_size,
            "total_chunks": self.total_chunks,
            "created_at": self.created_at,
            "owner_id": self.owner_id,
            "uploaded_chunks": {str(i): url for i, url in self.uploaded_chunks.items()},
            "chunk_keys": {str(i): key for i, key in self.chunk_keys.items()},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChunkSession":
        return cls(
            session_id=data["session_id"],
            file_name=data["file_name"],
            declared_size=data["declared_size"],
            mime_type=data["mime_type"],
            chunk_size=data["chunk_size"],
            total_chunks=data["total_chunks"],
            created_at=data["created_at"],
            owner_id=data.get("owner_id"),
            uploaded_chunks={int(i): url for i, url in data.get("uploaded_chunks", {}).items()},
            chunk_keys={int(i): key for i, key in data.get("chunk_keys", {}).items()},
        )


class MemorySessionStore:
    """Process-local sessions. Lost on restart; expired sessions are reclaimed lazily."""

    def __init__(self, ttl: Optional[int] = None, clock: Callable[[], float] = time.time):
        self.ttl = settings.CHUNK_SESSION_TTL if ttl is None else ttl
        self.clock = clock
        self._sessions: Dict[str, ChunkSession] = {}

    def _expired(self, session: ChunkSession) -> bool:
        return bool(self.ttl) and self.clock() - session.created_at > self.ttl

    async def get(self, session_id: str) -> Optional[ChunkSession]:
        session = self._sessions.get(session_id)
        if session and self._expired(session):
            await self.delete(session_id)
            return None
        return session

    async def save(self, session: ChunkSession) -> None:
        if session.session_id not in self._sessions:
            active_chunk_sessions.inc()
        self._sessions[session.session_id] = session

    async def record_chunk(
        self, session_id: str, index: int, url: str, key: Optional[str] = None
    ) -> Optional[ChunkSession]:
        session = await self.get(session_id)
        if session is None:
            return None
        session.uploaded_chunks[index] = url
        if key:
            session.chunk_keys[index] = key
        return session

    async def delete(self, session_id: str) -> None:
        if self._sessions.pop(session_id, None) is not None:
            active_chunk_sessions.dec()

    async def purge_expired(self) -> int:
        expired = [sid for sid, s in self._sessions.items() if self._expired(s)]
        for sid in expired:
            await self.delete(sid)
        if expired:
            logger.info(f"[Chunks] Purged {len(expired)} abandoned sessions")
        return len(expired)

    def __len__(self):
        return len(self._sessions)


def _text(value) -> str:
    return value.decode() if isinstance(value, bytes) else value


class RedisSessionStore:
    """
    Sessions shared across instances; Redis key expiry reclaims abandoned ones.

    Session metadata is one JSON value. Chunk locations live in two hashes
    (index -> URL, index -> stored key) so each chunk is a single HSET and
    concurrent chunk writes from different instances never overwrite each other.
    """

    prefix = "chunk:session:"

    def __init__(self, redis_client, ttl: Optional[int] = None):
        self.redis = redis_client
        self.ttl = settings.CHUNK_SESSION_TTL if ttl is None else ttl

    def _keys(self, session_id: str):
        base = f"{self.prefix}{session_id}"
        return base, f"{base}:chunks", f"{base}:keys"

    def _remaining(self, created_at: float) -> int:
        # Original expiry horizon, not sliding on every chunk
        return max(1, int(created_at + self.ttl - time.time()))

    async def get(self, session_id: str) -> Optional[ChunkSession]:
        meta_key, chunks_key, keys_key = self._keys(session_id)
        raw = await self.redis.get(meta_key)
        if not raw:
            return None
        session = ChunkSession.from_dict(json.loads(raw))
        for index, url in (await self.redis.hgetall(chunks_key) or {}).items():
            session.uploaded_chunks[int(index)] = _text(url)
        for index, key in (await self.redis.hgetall(keys_key) or {}).items():
            session.chunk_keys[int(index)] = _text(key)
        return session

    async def save(self, session: ChunkSession) -> None:
        meta_key, _, _ = self._keys(session.session_id)
        payload = session.to_dict()
        payload["uploaded_chunks"], payload["chunk_keys"] = {}, {}
        await self.redis.setex(meta_key, self._remaining(session.created_at), json.dumps(payload))

    async def record_chunk(
        self, session_id: str, index: int, url: str, key: Optional[str] = None
    ) -> Optional[ChunkSession]:
        session = await self.get(session_id)
        if session is None:
            return None
        _, chunks_key, keys_key = self._keys(session_id)
        remaining = self._remaining(session.created_at)

        await self.redis.hset(chunks_key, str(index), url)
        await self.redis.expire(chunks_key, remaining)
        if key:
            await self.redis.hset(keys_key, str(index), key)
            await self.redis.expire(keys_key, remaining)
        return await self.get(session_id)

    async def delete(self, session_id: str) -> None:
        await self.redis.delete(*self._keys(session_id))

    async def purge_expired(self) -> int:
        return 0


class ChunkSessionManager:
    """Large uploads as fixed-size chunks, reassembled in index order"""

    def __init__(
        self,
        store: ObjectStore,
        session_store=None,
        chunk_size: Optional[int] = None,
        fetch=fetch_bytes,
        allowed_url_prefixes: Optional[Iterable[str]] = None,
    ):
        self.store = store
        self.sessions = session_store if session_store is not None else MemorySessionStore()
        self.chunk_size = chunk_size or settings.CHUNK_SIZE
        self.fetch = fetch
        self.allowed_url_prefixes = tuple(
            settings.CHUNK_URL_ALLOWED_PREFIXES if allowed_url_prefixes is None else allowed_url_prefixes
        )

    async def _require(self, session_id: str, owner_id: Optional[int] = None) -> ChunkSession:
        """The session, unless it is unknown, expired or belongs to another owner"""
        session = await self.sessions.get(session_id)
        if session is None or (owner_id is not None and session.owner_id != owner_id):
            raise SessionNotFound(session_id)
        return session

    @staticmethod
    def _check_index(session: ChunkSession, chunk_index: int):
        if not 0 <= chunk_index < session.total_chunks:
            raise InvalidSession(
                f"chunk index {chunk_index} out of range for {session.total_chunks} chunks"
            )

    def accepts_url(self, url: str) -> bool:
        """Only our own bucket and configured prefixes may be fetched at combine time"""
        return self.store.owns_url(url) or any(
            url.startswith(prefix) for prefix in self.allowed_url_prefixes
        )

    async def create_session(
        self,
        file_name: str,
        file_size: int,
        mime_type: Optional[str] = None,
        owner_id: Optional[int] = None,
    ) -> dict:
        if not file_name:
            raise InvalidSession("file_name is required")
        if file_size is None or file_size < 0:
            raise InvalidSession(f"file_size must be non-negative, got {file_size}")

        session = ChunkSession(
            session_id=f"chunk-{uuid.uuid4().hex}",
            file_name=file_name,
            declared_size=file_size,
            mime_type=mime_type or DEFAULT_CONTENT_TYPE,
            chunk_size=self.chunk_size,
            total_chunks=math.ceil(file_size / self.chunk_size),
            created_at=time.time(),
            owner_id=owner_id,
        )
        await self.sessions.save(session)

        logger.info(
            f"[Chunks] Session {session.session_id} created for {file_name} "
            f"({file_size / 1024 / 1024:.1f}MB, {session.total_chunks} chunks)"
        )
        return {
            "session_id": session.session_id,
            "total_chunks": session.total_chunks,
            "chunk_size": session.chunk_size,
        }

    async def get_session(self, session_id: str, owner_id: Optional[int] = None) -> Optional[ChunkSession]:
        try:
            return await self._require(session_id, owner_id)
        except SessionNotFound:
            return None

    async def register_chunk(
        self, session_id: str, chunk_index: int, chunk_url: str, owner_id: Optional[int] = None
    ) -> None:
        """Record where a chunk lives. Re-registering an index replaces its URL."""
        session = await self._require(session_id, owner_id)
        self._check_index(session, chunk_index)
        if not self.accepts_url(chunk_url):
            logger.warning(f"[Chunks] Session {session_id} rejected chunk URL {chunk_url}")
            raise InvalidSession(f"chunk URL not allowed: {chunk_url}")

        if await self.sessions.record_chunk(session_id, chunk_index, chunk_url) is None:
            raise SessionNotFound(session_id)

    async def upload_chunk(
        self, session_id: str, chunk_index: int, data: bytes, owner_id: Optional[int] = None
    ) -> dict:
        """Store chunk bytes through the adapter and register the resulting URL"""
        session = await self._require(session_id, owner_id)
        self._check_index(session, chunk_index)

        key = f"chunks/{session.session_id}/part{chunk_index}"
        result = await self.store.put(key, data, DEFAULT_CONTENT_TYPE)
        session = await self.sessions.record_chunk(session_id, chunk_index, result["url"], result["key"])
        if session is None:
            raise SessionNotFound(session_id)

        return {
            "chunk_index": chunk_index,
            "url": result["url"],
            "received": len(session.uploaded_chunks),
            "total_chunks": session.total_chunks,
        }

    async def combine_chunks(self, session_id: str, final_key: str, owner_id: Optional[int] = None) -> dict:
        """Concatenate chunks 0..N-1 byte-exact, upload as one object, drop the session"""
        session = await self._require(session_id, owner_id)

        if not session.is_complete:
            chunks_combined.labels(status="incomplete").inc()
            raise IncompleteUpload(session_id, len(session.uploaded_chunks), session.total_chunks)

        parts = []
        for index in range(session.total_chunks):
            chunk_url = session.uploaded_chunks.get(index)
            if not chunk_url:
                raise ChunkNotFound(session_id, index)
            try:
                body, _ = await self.fetch(chunk_url)
            except FetchFailed as e:
                if e.status == 404:
                    raise ChunkNotFound(session_id, index) from e
                raise
            parts.append(body)

        combined = b"".join(parts)
        if len(combined) != session.declared_size:
            logger.warning(
                f"[Chunks] Session {session_id} combined to {len(combined)} bytes, "
                f"declared {session.declared_size}"
            )

        result = await self.store.put(normalize_key(final_key), combined, session.mime_type)
        await self.sessions.delete(session_id)
        chunks_combined.labels(status="success").inc()

        for key in session.chunk_keys.values():
            try:
                await self.store.delete(key)
            except StorageError as e:
                logger.warning(f"[Chunks] Could not remove chunk object {key}: {e}")

        logger.info(f"[Chunks] Session {session_id} combined into {result['key']}")
        return {"key": result["key"], "url": result["url"], "cost": result["cost"], "size": len(combined)}

    async def purge_expired(self) -> int:
        return await self.sessions.purge_expired()
