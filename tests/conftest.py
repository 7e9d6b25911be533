import os
import tempfile
from contextlib import asynccontextmanager

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

_TEST_DB_DIR = tempfile.mkdtemp(prefix="docs-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_DIR}/docs.db")
os.environ.setdefault("CORS_ORIGINS", "http://localhost")
os.environ.setdefault("DOCS_AUTOSAVE_DEBOUNCE_SECONDS", "0.05")
os.environ.setdefault("DOCS_CHILDREN_BATCH_SIZE", "2")

from main import app
from server.src.modules.docs_api import autosave_saver
from server.src.modules.docs_auth import issue_session, upsert_user
from server.src.modules.docs_autosave import EditSessionRegistry
from server.src.modules.docs_db import AsyncSessionLocal, Base, engine


@pytest_asyncio.fixture
async def reset_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    registry = EditSessionRegistry(autosave_saver)
    app.state.edit_sessions = registry
    yield
    await registry.close()


@pytest_asyncio.fixture
async def db_session(reset_db):
    async with AsyncSessionLocal() as session:
        yield session


async def make_user(username: str, role: str = "admin", created_by: str | None = None) -> str:
    async with AsyncSessionLocal() as session:
        user = await upsert_user(session, username=username, role=role, created_by=created_by)
        return user.id


@asynccontextmanager
async def docs_client(
    username: str | None = "tester",
    role: str = "admin",
    created_by: str | None = None,
):
    """Client authenticated as ``username``; ``username=None`` gives an anonymous client."""
    headers: dict[str, str] = {}
    user_id = None
    if username:
        user_id = await make_user(username, role=role, created_by=created_by)
        async with AsyncSessionLocal() as session:
            token = await issue_session(session, user_id)
        headers["Authorization"] = f"Bearer {token}"
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers=headers) as client:
        client.user_id = user_id
        yield client
