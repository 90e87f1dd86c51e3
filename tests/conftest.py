from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

import pytest
from httpx import ASGITransport

from opsboard.client import OpsBoardClient
from opsboard.config import Settings
from opsboard.devserver import DevBackend, create_app
from opsboard.devserver.store import DevTask


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def backend() -> DevBackend:
    return DevBackend()


@pytest.fixture
def transport(backend: DevBackend) -> ASGITransport:
    return ASGITransport(app=create_app(backend))


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(base_url="http://test", state_dir=tmp_path)


@pytest.fixture
async def make_client(settings: Settings, transport: ASGITransport):
    """Build clients against the in-process backend, optionally signed in."""
    clients: list[OpsBoardClient] = []

    async def factory(username: Optional[str] = None, **overrides: Any) -> OpsBoardClient:
        client = OpsBoardClient(settings.with_overrides(**overrides), transport=transport, persist_credentials=False)
        clients.append(client)
        if username:
            await client.auth.login(username, username)
        return client

    yield factory
    for client in clients:
        await client.aclose()


def seed_task(
    backend: DevBackend,
    title: str,
    *,
    bounty: int = 10,
    priority: str = "medium",
    deadline_in: Optional[timedelta] = None,
    publish: bool = True,
) -> DevTask:
    admin = backend.user_by_name("admin")
    assert admin is not None
    deadline = datetime.now(timezone.utc) + deadline_in if deadline_in is not None else None
    return backend.create_task(
        admin,
        title=title,
        description_html=f"<p>{title} details</p>",
        bounty=bounty,
        priority=priority,
        deadline=deadline,
        publish=publish,
    )
