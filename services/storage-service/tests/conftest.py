"""Shared pytest fixtures for storage core tests."""

from collections.abc import AsyncGenerator
from typing import Any

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from storage_core.exceptions import FetchFailed
from storage_core.models import Base
from storage_core.services.repository import FileRepository
from storage_core.services.storage import BackendConfig, ObjectStore

BUCKET = "test-bucket"
PUBLIC_DOMAIN = "r2.dev"
ACCESS_KEY = "test-access"
SECRET_KEY = "test-secret"


class FakeObjectBackend:
    """In-process S3-compatible bucket speaking the adapter's HTTP contract.

    Objects live in ``self.objects`` keyed by object key. ``fail`` maps an
    HTTP method to a status code the backend should answer with instead.
    """

    def __init__(self) -> None:
        self.objects: dict[str, dict[str, Any]] = {}
        self.fail: dict[str, int] = {}
        self.put_count = 0
        self.app = web.Application()
        self.app.router.add_route("PUT", "/{bucket}/{key:.+}", self.put_object)
        self.app.router.add_route("HEAD", "/{bucket}/{key:.+}", self.head_object)
        self.app.router.add_route("DELETE", "/{bucket}/{key:.+}", self.delete_object)

    def _check(self, request: web.Request) -> web.Response | None:
        if request.headers.get("Authorization") != f"Bearer {ACCESS_KEY}:{SECRET_KEY}":
            return web.Response(status=403)
        if request.match_info["bucket"] != BUCKET:
            return web.Response(status=404)
        if request.method in self.fail:
            return web.Response(status=self.fail[request.method])
        return None

    async def put_object(self, request: web.Request) -> web.Response:
        rejected = self._check(request)
        if rejected is not None:
            return rejected
        self.put_count += 1
        self.objects[request.match_info["key"]] = {
            "body": await request.read(),
            "content_type": request.headers.get("Content-Type"),
            "cost": request.headers.get("X-Amz-Meta-Upload-Cost"),
            "upload_date": request.headers.get("X-Amz-Meta-Upload-Date"),
        }
        return web.Response(status=200)

    async def head_object(self, request: web.Request) -> web.Response:
        rejected = self._check(request)
        if rejected is not None:
            return rejected
        stored = self.objects.get(request.match_info["key"])
        if stored is None:
            return web.Response(status=404)
        return web.Response(
            body=stored["body"],
            headers={
                "Content-Type": stored["content_type"],
                "X-Amz-Meta-Upload-Cost": stored["cost"],
                "X-Amz-Meta-Upload-Date": stored["upload_date"],
            },
        )

    async def delete_object(self, request: web.Request) -> web.Response:
        rejected = self._check(request)
        if rejected is not None:
            return rejected
        if self.objects.pop(request.match_info["key"], None) is None:
            return web.Response(status=404)
        return web.Response(status=204)

    async def fetch(self, url: str) -> tuple[bytes, str]:
        """Stand-in for a public GET of an object URL."""
        prefix = f"https://{BUCKET}.{PUBLIC_DOMAIN}/"
        stored = self.objects.get(url[len(prefix):]) if url.startswith(prefix) else None
        if stored is None:
            raise FetchFailed(url, 404, "Not Found")
        return stored["body"], stored["content_type"]


class RecordingNotifier:
    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []

    @property
    def titles(self) -> list[str]:
        return [title for title, _ in self.messages]

    async def notify(self, title: str, content: str) -> bool:
        self.messages.append((title, content))
        return True


@pytest.fixture
async def backend() -> AsyncGenerator[tuple[FakeObjectBackend, TestServer], None]:
    fake = FakeObjectBackend()
    server = TestServer(fake.app)
    await server.start_server()
    yield fake, server
    await server.close()


@pytest.fixture
def backend_config(backend: tuple[FakeObjectBackend, TestServer]) -> BackendConfig:
    _, server = backend
    return BackendConfig(
        name="r2",
        endpoint=str(server.make_url("/")).rstrip("/"),
        bucket=BUCKET,
        public_domain=PUBLIC_DOMAIN,
        access_key_id=ACCESS_KEY,
        secret_access_key=SECRET_KEY,
    )


@pytest.fixture
def fake_backend(backend: tuple[FakeObjectBackend, TestServer]) -> FakeObjectBackend:
    return backend[0]


@pytest.fixture
def store(backend_config: BackendConfig) -> ObjectStore:
    return ObjectStore(backend_config, timeout=5)


@pytest.fixture
async def session_factory(tmp_path) -> AsyncGenerator[Any, None]:
    """File-backed sqlite database with every table created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'storage.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def repository(session_factory: Any) -> FileRepository:
    return FileRepository(session_factory)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()
