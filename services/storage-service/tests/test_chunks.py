"""Tests for chunked upload sessions."""

import asyncio
import itertools
import time

import pytest
from prometheus_client import REGISTRY

from storage_core.exceptions import (
    ChunkNotFound,
    FetchFailed,
    IncompleteUpload,
    InvalidSession,
    SessionNotFound,
)
from storage_core.services.chunks import (
    ChunkSession,
    ChunkSessionManager,
    MemorySessionStore,
    RedisSessionStore,
)
from storage_core.services.storage import ObjectStore

MIB = 1024 * 1024
PAYLOAD = b"0123456789"  # three chunks of 4, 4 and 2 bytes


@pytest.fixture
def manager(store: ObjectStore, fake_backend) -> ChunkSessionManager:
    return ChunkSessionManager(store, MemorySessionStore(), chunk_size=4, fetch=fake_backend.fetch)


def split(data: bytes, size: int) -> list[bytes]:
    return [data[i:i + size] for i in range(0, len(data), size)]


class TestCreateSession:
    async def test_chunk_count_rounds_up(self, store: ObjectStore) -> None:
        manager = ChunkSessionManager(store, chunk_size=50 * MIB)
        session = await manager.create_session("video.mp4", 120 * MIB, "video/mp4")

        assert session["total_chunks"] == 3
        assert session["chunk_size"] == 50 * MIB
        assert session["session_id"].startswith("chunk-")

    async def test_exact_multiple(self, manager: ChunkSessionManager) -> None:
        session = await manager.create_session("a.bin", 8)
        assert session["total_chunks"] == 2

    async def test_session_ids_are_unique(self, manager: ChunkSessionManager) -> None:
        first = await manager.create_session("a.bin", 8)
        second = await manager.create_session("a.bin", 8)
        assert first["session_id"] != second["session_id"]

    async def test_invalid_arguments(self, manager: ChunkSessionManager) -> None:
        with pytest.raises(InvalidSession):
            await manager.create_session("", 10)
        with pytest.raises(InvalidSession):
            await manager.create_session("a.bin", -1)

    async def test_defaults_mime_type(self, manager: ChunkSessionManager) -> None:
        session = await manager.create_session("a.bin", 3)
        stored = await manager.get_session(session["session_id"])
        assert stored.mime_type == "application/octet-stream"


class TestReassembly:
    async def test_any_arrival_order_is_byte_exact(self, manager: ChunkSessionManager, fake_backend) -> None:
        chunks = split(PAYLOAD, 4)
        for order in itertools.permutations(range(len(chunks))):
            session = await manager.create_session("digits.txt", len(PAYLOAD), "text/plain")
            session_id = session["session_id"]
            for index in order:
                await manager.upload_chunk(session_id, index, chunks[index])

            final_key = f"final/{''.join(map(str, order))}.txt"
            result = await manager.combine_chunks(session_id, final_key)

            assert result["size"] == len(PAYLOAD)
            assert fake_backend.objects[final_key]["body"] == PAYLOAD
            assert fake_backend.objects[final_key]["content_type"] == "text/plain"

    async def test_combine_cleans_up(self, manager: ChunkSessionManager, fake_backend) -> None:
        session = await manager.create_session("digits.txt", len(PAYLOAD))
        session_id = session["session_id"]
        for index, chunk in enumerate(split(PAYLOAD, 4)):
            await manager.upload_chunk(session_id, index, chunk)

        result = await manager.combine_chunks(session_id, "/final/digits.txt")

        assert result["key"] == "final/digits.txt"
        assert result["url"] == "https://test-bucket.r2.dev/final/digits.txt"
        assert await manager.get_session(session_id) is None
        assert not [key for key in fake_backend.objects if key.startswith("chunks/")]

    async def test_upload_chunk_reports_progress(self, manager: ChunkSessionManager, fake_backend) -> None:
        session = await manager.create_session("digits.txt", len(PAYLOAD))
        result = await manager.upload_chunk(session["session_id"], 1, b"4567")

        assert result["chunk_index"] == 1
        assert result["received"] == 1
        assert result["total_chunks"] == 3
        assert f"chunks/{session['session_id']}/part1" in fake_backend.objects

    async def test_registered_chunks_last_write_wins(self, store: ObjectStore, fake_backend) -> None:
        remote = {
            "https://cdn.example/a-old": b"XXXX",
            "https://cdn.example/a-new": b"0123",
            "https://cdn.example/b": b"45",
        }

        async def fetch(url: str):
            return remote[url], "application/octet-stream"

        manager = ChunkSessionManager(
            store, chunk_size=4, fetch=fetch, allowed_url_prefixes=("https://cdn.example/",)
        )
        session = await manager.create_session("six.bin", 6)
        session_id = session["session_id"]

        await manager.register_chunk(session_id, 0, "https://cdn.example/a-old")
        await manager.register_chunk(session_id, 1, "https://cdn.example/b")
        await manager.register_chunk(session_id, 0, "https://cdn.example/a-new")
        await manager.combine_chunks(session_id, "six.bin")

        assert fake_backend.objects["six.bin"]["body"] == b"012345"

    async def test_empty_file(self, manager: ChunkSessionManager, fake_backend) -> None:
        session = await manager.create_session("empty.txt", 0)
        assert session["total_chunks"] == 0

        result = await manager.combine_chunks(session["session_id"], "empty.txt")
        assert result["size"] == 0
        assert fake_backend.objects["empty.txt"]["body"] == b""


class TestContractViolations:
    async def test_incomplete_session_never_combines(self, manager: ChunkSessionManager, fake_backend) -> None:
        session = await manager.create_session("digits.txt", len(PAYLOAD))
        session_id = session["session_id"]
        await manager.upload_chunk(session_id, 0, b"0123")
        await manager.upload_chunk(session_id, 2, b"89")

        with pytest.raises(IncompleteUpload) as exc_info:
            await manager.combine_chunks(session_id, "final.txt")

        assert exc_info.value.received == 2
        assert exc_info.value.expected == 3
        assert "final.txt" not in fake_backend.objects
        # Session survives so the client can send the missing chunk
        assert (await manager.get_session(session_id)).missing_chunks() == [1]

    async def test_unknown_session(self, manager: ChunkSessionManager) -> None:
        with pytest.raises(SessionNotFound):
            await manager.register_chunk("chunk-missing", 0, "https://cdn.example/x")
        with pytest.raises(SessionNotFound):
            await manager.upload_chunk("chunk-missing", 0, b"x")
        with pytest.raises(SessionNotFound):
            await manager.combine_chunks("chunk-missing", "final.txt")

    @pytest.mark.parametrize("index", [-1, 3, 99])
    async def test_index_out_of_range(self, manager: ChunkSessionManager, index: int) -> None:
        session = await manager.create_session("digits.txt", len(PAYLOAD))
        with pytest.raises(InvalidSession):
            await manager.register_chunk(session["session_id"], index, "https://cdn.example/x")
        with pytest.raises(InvalidSession):
            await manager.upload_chunk(session["session_id"], index, b"x")

    async def test_vanished_chunk(self, manager: ChunkSessionManager, fake_backend) -> None:
        session = await manager.create_session("digits.txt", len(PAYLOAD))
        session_id = session["session_id"]
        for index, chunk in enumerate(split(PAYLOAD, 4)):
            await manager.upload_chunk(session_id, index, chunk)
        del fake_backend.objects[f"chunks/{session_id}/part1"]

        with pytest.raises(ChunkNotFound) as exc_info:
            await manager.combine_chunks(session_id, "final.txt")
        assert exc_info.value.index == 1

    async def test_other_fetch_errors_propagate(self, store: ObjectStore) -> None:
        async def fetch(url: str):
            raise FetchFailed(url, 500, "Internal Server Error")

        manager = ChunkSessionManager(
            store, chunk_size=4, fetch=fetch, allowed_url_prefixes=("https://cdn.example/",)
        )
        session = await manager.create_session("a.bin", 2)
        await manager.register_chunk(session["session_id"], 0, "https://cdn.example/a")

        with pytest.raises(FetchFailed):
            await manager.combine_chunks(session["session_id"], "a.bin")


class TestOwnership:
    async def test_other_owner_sees_no_session(self, manager: ChunkSessionManager) -> None:
        session = await manager.create_session("digits.txt", len(PAYLOAD), owner_id=1)
        session_id = session["session_id"]

        assert (await manager.get_session(session_id, owner_id=1)).owner_id == 1
        assert await manager.get_session(session_id, owner_id=2) is None
        with pytest.raises(SessionNotFound):
            await manager.upload_chunk(session_id, 0, b"0123", owner_id=2)
        with pytest.raises(SessionNotFound):
            await manager.register_chunk(
                session_id, 0, f"https://test-bucket.r2.dev/chunks/{session_id}/part0", owner_id=2
            )
        with pytest.raises(SessionNotFound):
            await manager.combine_chunks(session_id, "final.txt", owner_id=2)

        assert (await manager.get_session(session_id)).uploaded_chunks == {}

    async def test_owner_completes_own_session(self, manager: ChunkSessionManager, fake_backend) -> None:
        session = await manager.create_session("digits.txt", len(PAYLOAD), owner_id=1)
        session_id = session["session_id"]
        for index, chunk in enumerate(split(PAYLOAD, 4)):
            await manager.upload_chunk(session_id, index, chunk, owner_id=1)

        await manager.combine_chunks(session_id, "final.txt", owner_id=1)
        assert fake_backend.objects["final.txt"]["body"] == PAYLOAD


class TestRegisteredUrls:
    @pytest.mark.parametrize("url", [
        "http://127.0.0.1:8080/latest/meta-data/secret",
        "http://169.254.169.254/latest/meta-data/",
        "https://test-bucket.r2.dev.attacker.example/part0",
        "https://other-bucket.r2.dev/part0",
        "file:///etc/passwd",
    ])
    async def test_foreign_url_is_rejected(self, manager: ChunkSessionManager, url: str) -> None:
        session = await manager.create_session("a.bin", 2)

        with pytest.raises(InvalidSession):
            await manager.register_chunk(session["session_id"], 0, url)
        assert (await manager.get_session(session["session_id"])).uploaded_chunks == {}

    async def test_bucket_url_is_accepted(self, manager: ChunkSessionManager, fake_backend) -> None:
        session = await manager.create_session("a.bin", 2)
        session_id = session["session_id"]
        fake_backend.objects["staged/a.bin"] = {"body": b"ab", "content_type": "application/octet-stream"}

        await manager.register_chunk(session_id, 0, "https://test-bucket.r2.dev/staged/a.bin")
        result = await manager.combine_chunks(session_id, "a.bin")

        assert result["size"] == 2
        # Registered objects belong to the client and stay in place
        assert "staged/a.bin" in fake_backend.objects

    async def test_configured_prefix_is_accepted(self, store: ObjectStore) -> None:
        manager = ChunkSessionManager(store, chunk_size=4, allowed_url_prefixes=["https://cdn.example/"])
        session = await manager.create_session("a.bin", 2)

        await manager.register_chunk(session["session_id"], 0, "https://cdn.example/a")
        with pytest.raises(InvalidSession):
            await manager.register_chunk(session["session_id"], 0, "https://cdn.example.net/a")


def active_sessions() -> float:
    return REGISTRY.get_sample_value("storage_active_chunk_sessions") or 0.0


class TestMemorySessionStore:
    def make_session(self, created_at: float, session_id: str = "chunk-abc") -> ChunkSession:
        return ChunkSession(
            session_id=session_id,
            file_name="a.bin",
            declared_size=8,
            mime_type="application/octet-stream",
            chunk_size=4,
            total_chunks=2,
            created_at=created_at,
        )

    async def test_expired_session_is_dropped(self) -> None:
        now = [1000.0]
        sessions = MemorySessionStore(ttl=60, clock=lambda: now[0])
        await sessions.save(self.make_session(created_at=1000.0))

        assert await sessions.get("chunk-abc") is not None
        now[0] = 1061.0
        assert await sessions.get("chunk-abc") is None
        assert len(sessions) == 0

    async def test_purge_expired(self) -> None:
        now = [1000.0]
        sessions = MemorySessionStore(ttl=60, clock=lambda: now[0])
        await sessions.save(self.make_session(created_at=900.0))
        await sessions.save(self.make_session(created_at=1000.0, session_id="chunk-fresh"))

        assert await sessions.purge_expired() == 1
        assert await sessions.get("chunk-fresh") is not None

    async def test_gauge_follows_lazy_expiry(self) -> None:
        now = [1000.0]
        sessions = MemorySessionStore(ttl=60, clock=lambda: now[0])
        before = active_sessions()

        await sessions.save(self.make_session(created_at=1000.0))
        await sessions.save(self.make_session(created_at=1000.0))
        assert active_sessions() == before + 1

        now[0] = 1061.0
        assert await sessions.get("chunk-abc") is None
        assert active_sessions() == before

    async def test_gauge_follows_purge_and_delete(self) -> None:
        now = [1000.0]
        sessions = MemorySessionStore(ttl=60, clock=lambda: now[0])
        before = active_sessions()

        await sessions.save(self.make_session(created_at=900.0, session_id="chunk-old"))
        await sessions.save(self.make_session(created_at=1000.0, session_id="chunk-new"))
        assert active_sessions() == before + 2

        await sessions.purge_expired()
        await sessions.delete("chunk-new")
        await sessions.delete("chunk-new")
        assert active_sessions() == before

    async def test_gauge_after_combine(self, manager: ChunkSessionManager) -> None:
        before = active_sessions()
        session = await manager.create_session("empty.txt", 0)
        assert active_sessions() == before + 1

        await manager.combine_chunks(session["session_id"], "empty.txt")
        assert active_sessions() == before


class FakeRedis:
    """The slice of redis.asyncio the session store uses. Every call yields to the loop."""

    def __init__(self) -> None:
        self.values: dict[str, bytes] = {}
        self.hashes: dict[str, dict[bytes, bytes]] = {}
        self.ttls: dict[str, int] = {}

    async def get(self, key: str):
        await asyncio.sleep(0)
        return self.values.get(key)

    async def setex(self, key: str, ttl: int, value: str) -> None:
        await asyncio.sleep(0)
        self.values[key] = value.encode()
        self.ttls[key] = ttl

    async def hset(self, key: str, field: str, value: str) -> int:
        await asyncio.sleep(0)
        self.hashes.setdefault(key, {})[field.encode()] = value.encode()
        return 1

    async def hgetall(self, key: str) -> dict:
        await asyncio.sleep(0)
        return dict(self.hashes.get(key, {}))

    async def expire(self, key: str, ttl: int) -> bool:
        await asyncio.sleep(0)
        self.ttls[key] = ttl
        return True

    async def delete(self, *keys: str) -> int:
        await asyncio.sleep(0)
        removed = 0
        for key in keys:
            removed += self.values.pop(key, None) is not None
            removed += self.hashes.pop(key, None) is not None
            self.ttls.pop(key, None)
        return removed


class TestRedisSessionStore:
    async def test_save_keeps_creation_horizon(self) -> None:
        redis = FakeRedis()
        sessions = RedisSessionStore(redis, ttl=3600)
        session = TestMemorySessionStore().make_session(created_at=time.time() - 600)

        await sessions.save(session)

        assert 0 < redis.ttls["chunk:session:chunk-abc"] <= 3000
        loaded = await sessions.get("chunk-abc")
        assert loaded.file_name == "a.bin"
        assert loaded.missing_chunks() == [0, 1]

    async def test_recorded_chunks_keep_integer_indexes(self) -> None:
        redis = FakeRedis()
        sessions = RedisSessionStore(redis, ttl=3600)
        await sessions.save(TestMemorySessionStore().make_session(created_at=time.time()))

        session = await sessions.record_chunk("chunk-abc", 1, "https://cdn.example/b", "chunks/chunk-abc/part1")

        assert session.uploaded_chunks == {1: "https://cdn.example/b"}
        assert session.chunk_keys == {1: "chunks/chunk-abc/part1"}
        assert session.missing_chunks() == [0]
        assert 0 < redis.ttls["chunk:session:chunk-abc:chunks"] <= 3600

    async def test_record_on_missing_session(self) -> None:
        redis = FakeRedis()
        assert await RedisSessionStore(redis).record_chunk("chunk-none", 0, "https://c/0") is None
        assert redis.hashes == {}

    async def test_missing_key(self) -> None:
        assert await RedisSessionStore(FakeRedis()).get("chunk-none") is None

    async def test_delete_removes_chunk_hashes(self) -> None:
        redis = FakeRedis()
        sessions = RedisSessionStore(redis, ttl=3600)
        await sessions.save(TestMemorySessionStore().make_session(created_at=time.time()))
        await sessions.record_chunk("chunk-abc", 0, "https://c/0", "chunks/chunk-abc/part0")

        await sessions.delete("chunk-abc")

        assert redis.values == {}
        assert redis.hashes == {}

    async def test_concurrent_registrations_are_all_kept(self, store: ObjectStore) -> None:
        manager = ChunkSessionManager(
            store, RedisSessionStore(FakeRedis(), ttl=3600), chunk_size=4,
            allowed_url_prefixes=("https://c/",),
        )
        session = await manager.create_session("twelve.bin", 12)
        session_id = session["session_id"]

        await asyncio.gather(*(
            manager.register_chunk(session_id, index, f"https://c/{index}") for index in range(3)
        ))

        stored = await manager.get_session(session_id)
        assert stored.uploaded_chunks == {0: "https://c/0", 1: "https://c/1", 2: "https://c/2"}
        assert stored.is_complete

    async def test_concurrent_uploads_combine_byte_exact(self, store: ObjectStore, fake_backend) -> None:
        redis = FakeRedis()
        manager = ChunkSessionManager(
            store, RedisSessionStore(redis, ttl=3600), chunk_size=4, fetch=fake_backend.fetch
        )
        session = await manager.create_session("digits.txt", len(PAYLOAD))
        session_id = session["session_id"]

        await asyncio.gather(*(
            manager.upload_chunk(session_id, index, chunk)
            for index, chunk in enumerate(split(PAYLOAD, 4))
        ))
        await manager.combine_chunks(session_id, "digits.txt")

        assert fake_backend.objects["digits.txt"]["body"] == PAYLOAD
        assert not [key for key in fake_backend.objects if key.startswith("chunks/")]
        assert redis.values == {} and redis.hashes == {}
