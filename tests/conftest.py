"""Shared test fixtures for hashvault."""

from __future__ import annotations

import hashlib
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import pytest
from httpx import ASGITransport, AsyncClient

from backend.config import Settings
from backend.database import create_engine, init_schema
from backend.main import create_app, initialize_state
from backend.services.metadata_service import MetadataStore
from backend.storage.content_store import ContentStore

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

TEST_API_TOKEN = "test-api-token-with-enough-length"


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def manifest_for(files: dict[str, bytes]) -> list[dict[str, object]]:
    return [
        {"relpath": rel, "size": len(data), "mtime": 1700000000.0, "sha": sha256_hex(data)}
        for rel, data in files.items()
    ]


async def run_backup(
    client: AsyncClient,
    files: dict[str, bytes],
    date: str = "2026-02-02",
    client_id: str = "laptop",
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Drive init, upload of every missing hash, and commit; returns both responses."""
    manifest = manifest_for(files)
    resp = await client.post(
        "/init-backup", json={"date": date, "clientId": client_id, "manifest": manifest}
    )
    assert resp.status_code == 200, resp.text
    init = resp.json()

    by_sha = {sha256_hex(data): (rel, data) for rel, data in files.items()}
    for sha in init["missingHashes"]:
        rel, data = by_sha[sha]
        resp = await client.post(
            "/upload-file",
            params={"sha": sha, "relpath": rel, "versionId": init["versionId"]},
            headers={"x-start-byte": "0", "x-filesize": str(len(data))},
            content=data,
        )
        assert resp.status_code == 200, resp.text

    resp = await client.post(
        "/commit-version",
        json={"sessionKey": init["sessionKey"], "manifest": manifest, "extra": {}},
    )
    assert resp.status_code == 200, resp.text
    return init, resp.json()


@asynccontextmanager
async def create_test_client(settings: Settings) -> AsyncGenerator[AsyncClient]:
    """Create an HTTP test client with a fully initialized app.

    Runs the startup work of the application lifespan by hand because
    ASGITransport does not trigger it.
    """
    app = create_app(settings)
    settings.validate_runtime_security()
    await initialize_state(app)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    await app.state.engine.dispose()


@pytest.fixture
def tmp_data_dir(tmp_path: Path) -> Path:
    """Empty data directory; the app creates its own scaffold."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
def test_settings(tmp_data_dir: Path) -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        debug=True,
        data_dir=tmp_data_dir,
    )


@pytest.fixture
def content_store(tmp_data_dir: Path) -> ContentStore:
    return ContentStore(tmp_data_dir / "storage.toml", tmp_data_dir / "store")


@pytest.fixture
async def metadata_store(test_settings: Settings) -> AsyncGenerator[MetadataStore]:
    engine, session_factory = create_engine(test_settings)
    await init_schema(engine)
    yield MetadataStore(session_factory, test_settings.data_dir)
    await engine.dispose()
