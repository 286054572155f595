"""Integration tests for the backup protocol endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from backend.config import Settings
from tests.conftest import create_test_client, manifest_for, run_backup, sha256_hex

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from httpx import AsyncClient

FILES = {"a.txt": b"hello\n", "b.txt": b"world, with a few more bytes\n"}


@pytest.fixture
async def client(test_settings: Settings) -> AsyncGenerator[AsyncClient]:
    async with create_test_client(test_settings) as ac:
        yield ac


async def _init(client: AsyncClient, files: dict[str, bytes]) -> dict[str, object]:
    resp = await client.post(
        "/init-backup",
        json={"date": "2026-02-02", "clientId": "laptop", "manifest": manifest_for(files)},
    )
    assert resp.status_code == 200, resp.text
    data: dict[str, object] = resp.json()
    return data


class TestFullProtocol:
    async def test_first_and_second_run(self, client: AsyncClient, tmp_data_dir: Path) -> None:
        first_init, first_commit = await run_backup(client, FILES)

        assert sorted(first_init["missingHashes"]) == sorted(sha256_hex(d) for d in FILES.values())
        assert first_init["dayIndex"] == 1
        assert first_commit["status"] == "committed"
        assert first_commit["danglingHashes"] == []

        second_init, second_commit = await run_backup(client, FILES)

        assert second_init["missingHashes"] == []
        assert second_init["dayIndex"] == 2

        maps = []
        for commit in (first_commit, second_commit):
            resp = await client.get(
                "/version-manifest", params={"versionPath": commit["versionPath"]}
            )
            assert resp.status_code == 200
            files = resp.json()["manifest"]["files"]
            maps.append({rel: info["sha"] for rel, info in files.items()})
        assert maps[0] == maps[1] == {rel: sha256_hex(d) for rel, d in FILES.items()}

        # One blob per hash, no matter how many versions reference it
        blobs = sorted(p.name for p in (tmp_data_dir / "store").iterdir())
        assert blobs == sorted(sha256_hex(d) for d in FILES.values())

    async def test_version_layout_on_disk(self, client: AsyncClient, tmp_data_dir: Path) -> None:
        init, commit = await run_backup(client, FILES)

        assert commit["versionPath"] == init["versionPath"]
        assert init["versionPath"].startswith("backups/date-[2026-02-02] (day 1)/version-")
        assert (tmp_data_dir / init["versionPath"] / "manifest.json").is_file()

    async def test_has_hashes(self, client: AsyncClient) -> None:
        await run_backup(client, {"a.txt": FILES["a.txt"]})
        sha_a = sha256_hex(FILES["a.txt"])
        sha_b = sha256_hex(FILES["b.txt"])

        resp = await client.get("/status/has-hashes", params=[("sha", sha_a), ("sha", sha_b)])

        assert resp.status_code == 200
        assert resp.json() == {sha_a: True, sha_b: False}


class TestResumableUpload:
    async def test_partial_upload_then_resume(self, client: AsyncClient) -> None:
        data = bytes(range(256)) * 8
        sha = sha256_hex(data)
        init = await _init(client, {"big.bin": data})
        params = {"sha": sha, "relpath": "big.bin", "versionId": init["versionId"]}

        resp = await client.post(
            "/upload-file",
            params=params,
            headers={"x-start-byte": "0", "x-filesize": str(len(data))},
            content=data[:700],
        )
        assert resp.json() == {"status": "partial", "sha": sha, "bytes": 700}

        resp = await client.get("/file-offset", params={"sha": sha})
        assert resp.json() == {"exists": True, "bytes": 700}

        resp = await client.post(
            "/upload-file",
            params=params,
            headers={"x-start-byte": "700", "x-filesize": str(len(data))},
            content=data[700:],
        )
        assert resp.json() == {"status": "ok", "sha": sha, "bytes": len(data)}

        resp = await client.get("/file-offset", params={"sha": sha})
        assert resp.json() == {"exists": True, "bytes": len(data)}

    async def test_reupload_answers_exists(self, client: AsyncClient) -> None:
        await run_backup(client, FILES)
        init = await _init(client, FILES)
        data = FILES["a.txt"]

        resp = await client.post(
            "/upload-file",
            params={"sha": sha256_hex(data), "relpath": "a.txt", "versionId": init["versionId"]},
            headers={"x-start-byte": "0", "x-filesize": str(len(data))},
            content=data,
        )

        assert resp.status_code == 200
        assert resp.json()["status"] == "exists"

    async def test_offset_past_stored_size_conflicts(self, client: AsyncClient) -> None:
        data = b"0123456789" * 5
        sha = sha256_hex(data)
        init = await _init(client, {"n.txt": data})

        resp = await client.post(
            "/upload-file",
            params={"sha": sha, "relpath": "n.txt", "versionId": init["versionId"]},
            headers={"x-start-byte": "20", "x-filesize": str(len(data))},
            content=data[20:],
        )

        assert resp.status_code == 409
        assert resp.json()["bytes"] == 0

    async def test_file_offset_unknown_hash(self, client: AsyncClient) -> None:
        resp = await client.get("/file-offset", params={"sha": "c" * 64})
        assert resp.json() == {"exists": False, "bytes": 0}


class TestIntegrity:
    async def test_hash_mismatch_discards_blob(self, client: AsyncClient) -> None:
        data = FILES["a.txt"]
        sha = sha256_hex(data)
        init = await _init(client, {"a.txt": data})
        corrupt = b"HELLO\n"

        resp = await client.post(
            "/upload-file",
            params={"sha": sha, "relpath": "a.txt", "versionId": init["versionId"]},
            headers={"x-start-byte": "0", "x-filesize": str(len(data))},
            content=corrupt,
        )

        assert resp.status_code == 400
        assert resp.json() == {"detail": "hash mismatch", "computed": sha256_hex(corrupt)}
        resp = await client.get("/file-offset", params={"sha": sha})
        assert resp.json() == {"exists": False, "bytes": 0}


class TestProtocolErrors:
    async def test_unknown_version_id(self, client: AsyncClient) -> None:
        data = FILES["a.txt"]
        resp = await client.post(
            "/upload-file",
            params={"sha": sha256_hex(data), "relpath": "a.txt", "versionId": "version-nope"},
            content=data,
        )
        assert resp.status_code == 400
        assert "unknown versionId" in resp.json()["detail"]

    async def test_unknown_session_key(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/commit-version",
            json={"sessionKey": "nope", "manifest": manifest_for(FILES)},
        )
        assert resp.status_code == 400
        assert resp.json()["detail"] == "invalid sessionKey"

    async def test_commit_twice_rejected(self, client: AsyncClient) -> None:
        init, _ = await run_backup(client, FILES)
        resp = await client.post(
            "/commit-version",
            json={"sessionKey": init["sessionKey"], "manifest": manifest_for(FILES)},
        )
        assert resp.status_code == 400

    async def test_malformed_hash_in_manifest(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/init-backup",
            json={
                "date": "2026-02-02",
                "clientId": "laptop",
                "manifest": [{"relpath": "a.txt", "size": 1, "sha": "NOT-A-HASH"}],
            },
        )
        assert resp.status_code == 422

    async def test_malformed_hash_in_query(self, client: AsyncClient) -> None:
        resp = await client.get("/file-offset", params={"sha": "../../etc/passwd"})
        assert resp.status_code == 400

    async def test_missing_client_id(self, client: AsyncClient) -> None:
        resp = await client.post("/init-backup", json={"date": "2026-02-02", "manifest": []})
        assert resp.status_code == 422

    async def test_invalid_date(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/init-backup",
            json={"date": "not-a-date", "clientId": "laptop", "manifest": []},
        )
        assert resp.status_code == 422

    async def test_traversal_relpath_rejected(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/init-backup",
            json={
                "date": "2026-02-02",
                "clientId": "laptop",
                "manifest": [{"relpath": "../evil", "size": 1, "sha": "a" * 64}],
            },
        )
        assert resp.status_code == 400


class TestDanglingCommit:
    async def test_best_effort_commit_reports_dangling(self, client: AsyncClient) -> None:
        init = await _init(client, FILES)
        resp = await client.post(
            "/commit-version",
            json={"sessionKey": init["sessionKey"], "manifest": manifest_for(FILES)},
        )

        assert resp.status_code == 200
        assert sorted(resp.json()["danglingHashes"]) == sorted(
            sha256_hex(d) for d in FILES.values()
        )

    async def test_strict_commit_rejects(self, tmp_data_dir: Path) -> None:
        settings = Settings(_env_file=None, debug=True, data_dir=tmp_data_dir, strict_commit=True)
        async with create_test_client(settings) as client:
            init = await _init(client, FILES)
            resp = await client.post(
                "/commit-version",
                json={"sessionKey": init["sessionKey"], "manifest": manifest_for(FILES)},
            )

            assert resp.status_code == 409
            assert sorted(resp.json()["missingHashes"]) == sorted(
                sha256_hex(d) for d in FILES.values()
            )
