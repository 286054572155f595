"""Shared-token authentication and error-handler behavior."""

from __future__ import annotations

from typing import TYPE_CHECKING
from unittest.mock import patch

import pytest

from backend.config import Settings
from tests.conftest import TEST_API_TOKEN, create_test_client, run_backup

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from httpx import AsyncClient

AUTH = {"Authorization": f"Bearer {TEST_API_TOKEN}"}


@pytest.fixture
def secured_settings(tmp_data_dir: Path) -> Settings:
    return Settings(_env_file=None, data_dir=tmp_data_dir, api_token=TEST_API_TOKEN)


@pytest.fixture
async def client(secured_settings: Settings) -> AsyncGenerator[AsyncClient]:
    async with create_test_client(secured_settings) as ac:
        yield ac


class TestSharedToken:
    @pytest.mark.parametrize(
        ("method", "path"),
        [
            ("GET", "/file-offset?sha=" + "a" * 64),
            ("POST", "/init-backup"),
            ("POST", "/upload-file"),
            ("POST", "/commit-version"),
            ("GET", "/status/has-hashes"),
            ("GET", "/browse"),
            ("GET", "/search?q=x"),
            ("GET", "/api/stats"),
            ("GET", "/api/backups"),
            ("DELETE", "/api/sessions/stale"),
        ],
    )
    async def test_requires_token(self, client: AsyncClient, method: str, path: str) -> None:
        resp = await client.request(method, path)
        assert resp.status_code == 401
        assert resp.headers["www-authenticate"] == "Bearer"

    async def test_wrong_token_rejected(self, client: AsyncClient) -> None:
        resp = await client.get("/browse", headers={"Authorization": "Bearer wrong-token-value"})
        assert resp.status_code == 401

    async def test_valid_token_accepted(self, client: AsyncClient) -> None:
        client.headers.update(AUTH)
        init, commit = await run_backup(client, {"a.txt": b"a"})
        assert commit["versionId"] == init["versionId"]

    async def test_health_is_public(self, client: AsyncClient) -> None:
        resp = await client.get("/api/health")
        assert resp.status_code == 200


class TestStartupHardening:
    async def test_public_host_without_token_refused(self, tmp_data_dir: Path) -> None:
        settings = Settings(_env_file=None, data_dir=tmp_data_dir, host="0.0.0.0")
        with pytest.raises(ValueError, match="API_TOKEN"):
            async with create_test_client(settings):
                pass

    async def test_data_dir_scaffold_created(self, tmp_path: Path) -> None:
        data_dir = tmp_path / "fresh"
        settings = Settings(_env_file=None, debug=True, data_dir=data_dir)
        async with create_test_client(settings) as ac:
            resp = await ac.get("/api/health")
        assert resp.status_code == 200
        assert (data_dir / "backups").is_dir()
        assert (data_dir / "store").is_dir()
        assert (data_dir / "storage.toml").is_file()
        assert (data_dir / "metadata.db").is_file()


class TestErrorHandlers:
    async def test_os_error_returns_generic_500(self, test_settings: Settings) -> None:
        async with create_test_client(test_settings) as ac:
            with patch(
                "backend.storage.content_store.ContentStore.stats",
                side_effect=OSError("disk on fire"),
            ):
                resp = await ac.get("/api/stats")
        assert resp.status_code == 500
        assert resp.json() == {"detail": "Storage operation failed"}

    async def test_corrupt_manifest_returns_500_without_details(
        self, test_settings: Settings
    ) -> None:
        async with create_test_client(test_settings) as ac:
            _, commit = await run_backup(ac, {"a.txt": b"a"})
            manifest = test_settings.data_dir / commit["versionPath"] / "manifest.json"
            manifest.write_text("{broken")

            resp = await ac.get("/version-manifest", params={"versionPath": commit["versionPath"]})

        assert resp.status_code == 500
        assert resp.json() == {"detail": "Internal server error"}
