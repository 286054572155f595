"""Tests for sessions, day buckets, versions and manifests."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest

from backend.exceptions import InternalServerError, ProtocolError
from backend.services.metadata_service import (
    ManifestFile,
    MetadataStore,
    resolve_version_dir,
)

if TYPE_CHECKING:
    from pathlib import Path

SHA_A = "a" * 64
SHA_B = "b" * 64
NOW = datetime(2026, 2, 2, 22, 21, 29, 975000, tzinfo=UTC)


def _files() -> list[ManifestFile]:
    return [
        ManifestFile(relpath="a.txt", sha=SHA_A, size=10, mtime=1700000000.5),
        ManifestFile(relpath="dir/b.txt", sha=SHA_B, size=20, mtime=None),
    ]


class TestResolveVersionDir:
    def test_inside_backups(self, tmp_path: Path) -> None:
        resolved = resolve_version_dir(tmp_path, "backups/day/v1")
        assert resolved == (tmp_path / "backups" / "day" / "v1").resolve()

    @pytest.mark.parametrize("path", ["backups", "backups/../secret", "../x", "/etc/passwd"])
    def test_outside_rejected(self, tmp_path: Path, path: str) -> None:
        with pytest.raises(ValueError, match="Invalid version path"):
            resolve_version_dir(tmp_path, path)


class TestSessions:
    async def test_create_session_allocates_paths(self, metadata_store: MetadataStore) -> None:
        session = await metadata_store.create_session("2026-02-02", "laptop", now=NOW)

        assert session.day_index == 1
        assert session.version_id == "version-2026-02-02T22-21-29.975Z"
        assert session.version_path == (
            "backups/date-[2026-02-02] (day 1)/version-2026-02-02T22-21-29.975Z"
        )
        assert session.session_key == f"laptop_{int(NOW.timestamp() * 1000)}"
        assert (metadata_store.data_dir / session.version_path).is_dir()

    async def test_day_index_increments_per_date(self, metadata_store: MetadataStore) -> None:
        first = await metadata_store.create_session("2026-02-02", "c", now=NOW)
        second = await metadata_store.create_session("2026-02-02", "c", now=NOW)
        other = await metadata_store.create_session("2026-02-03", "c", now=NOW)

        assert (first.day_index, second.day_index, other.day_index) == (1, 2, 1)

    async def test_same_instant_gets_unique_ids(self, metadata_store: MetadataStore) -> None:
        first = await metadata_store.create_session("2026-02-02", "c", now=NOW)
        second = await metadata_store.create_session("2026-02-02", "c", now=NOW)

        assert first.session_key != second.session_key
        assert first.version_id != second.version_id
        assert second.version_id.startswith(first.version_id)

    async def test_concurrent_creates_are_serialized(self, metadata_store: MetadataStore) -> None:
        sessions = await asyncio.gather(
            *(metadata_store.create_session("2026-02-02", f"c{i}") for i in range(5))
        )
        assert sorted(s.day_index for s in sessions) == [1, 2, 3, 4, 5]

    async def test_record_upload_updates_manifest(self, metadata_store: MetadataStore) -> None:
        session = await metadata_store.create_session("2026-02-02", "c", now=NOW)

        await metadata_store.record_upload(session.version_id, "a.txt", SHA_A)

        stored = await metadata_store.get_session(session.session_key)
        assert stored is not None
        assert stored.provisional_files == {"a.txt": SHA_A}
        manifest = metadata_store.read_manifest(session.version_path)
        assert manifest is not None
        assert manifest["files"]["a.txt"]["sha"] == SHA_A
        assert "uploadedAt" in manifest["files"]["a.txt"]

    async def test_record_upload_unknown_version(self, metadata_store: MetadataStore) -> None:
        with pytest.raises(ProtocolError, match="unknown versionId"):
            await metadata_store.record_upload("version-nope", "a.txt", SHA_A)

    async def test_prune_sessions(self, metadata_store: MetadataStore) -> None:
        old = await metadata_store.create_session(
            "2026-02-02", "c", now=datetime.now(UTC) - timedelta(hours=48)
        )
        fresh = await metadata_store.create_session("2026-02-02", "c")

        pruned = await metadata_store.prune_sessions(timedelta(hours=24))

        assert [s.session_key for s in pruned] == [old.session_key]
        assert await metadata_store.get_session(old.session_key) is None
        assert await metadata_store.get_session(fresh.session_key) is not None
        assert not (metadata_store.data_dir / old.version_path).exists()


class TestCommit:
    async def test_commit_writes_manifest_and_version(
        self, metadata_store: MetadataStore
    ) -> None:
        session = await metadata_store.create_session("2026-02-02", "laptop", now=NOW)

        version = await metadata_store.commit_session(
            session.session_key, _files(), {"host": "laptop"}, missing=[SHA_B]
        )

        assert version.version_id == session.version_id
        assert version.file_count == 2
        assert version.total_bytes == 30
        assert await metadata_store.get_session(session.session_key) is None

        manifest = metadata_store.read_manifest(version.path)
        assert manifest is not None
        assert manifest["metadata"]["date"] == "2026-02-02"
        assert manifest["metadata"]["dayIndex"] == 1
        assert manifest["metadata"]["clientId"] == "laptop"
        assert manifest["metadata"]["extra"] == {"host": "laptop"}
        assert manifest["metadata"]["missing"] == [SHA_B]
        assert manifest["files"]["a.txt"] == {"sha": SHA_A, "size": 10, "mtime": 1700000000.5}
        assert metadata_store.file_map(version.path) == {"a.txt": SHA_A, "dir/b.txt": SHA_B}

        days = await metadata_store.list_days()
        assert [d.folder for d in days] == ["date-[2026-02-02] (day 1)"]
        assert [v.version_id for v in days[0].versions] == [version.version_id]

    async def test_commit_unknown_session(self, metadata_store: MetadataStore) -> None:
        with pytest.raises(ProtocolError, match="invalid sessionKey"):
            await metadata_store.commit_session("nope", _files(), {}, missing=[])

    async def test_commit_twice_rejected(self, metadata_store: MetadataStore) -> None:
        session = await metadata_store.create_session("2026-02-02", "c")
        await metadata_store.commit_session(session.session_key, _files(), {}, missing=[])

        with pytest.raises(ProtocolError):
            await metadata_store.commit_session(session.session_key, _files(), {}, missing=[])
        assert await metadata_store.count_versions() == 1

    async def test_corrupt_manifest_raises_internal_error(
        self, metadata_store: MetadataStore
    ) -> None:
        session = await metadata_store.create_session("2026-02-02", "c")
        version = await metadata_store.commit_session(session.session_key, _files(), {}, [])
        (metadata_store.data_dir / version.path / "manifest.json").write_text("{not json")

        with pytest.raises(InternalServerError, match="Corrupt manifest"):
            metadata_store.read_manifest(version.path)


class TestQueriesAndDeletion:
    async def _commit(self, store: MetadataStore, date: str) -> str:
        session = await store.create_session(date, "c")
        version = await store.commit_session(session.session_key, _files(), {}, [])
        return version.version_id

    async def test_get_and_find_version(self, metadata_store: MetadataStore) -> None:
        version_id = await self._commit(metadata_store, "2026-02-02")
        folder = "date-[2026-02-02] (day 1)"

        version = await metadata_store.get_version(folder, 0)
        assert version is not None
        assert version.version_id == version_id
        assert await metadata_store.get_version(folder, 1) is None
        found = await metadata_store.find_version(version_id)
        assert found is not None
        assert found.path == version.path

    async def test_delete_version_removes_empty_day(self, metadata_store: MetadataStore) -> None:
        await self._commit(metadata_store, "2026-02-02")
        folder = "date-[2026-02-02] (day 1)"
        version = await metadata_store.get_version(folder, 0)
        assert version is not None

        deleted = await metadata_store.delete_version(folder, 0)

        assert deleted is not None
        assert await metadata_store.list_days() == []
        assert not (metadata_store.data_dir / version.path).exists()
        assert not (metadata_store.backups_dir / folder).exists()

    async def test_delete_unknown(self, metadata_store: MetadataStore) -> None:
        assert await metadata_store.delete_version("date-[2026-01-01] (day 1)", 0) is None
        assert await metadata_store.delete_day("date-[2026-01-01] (day 1)") is None

    async def test_delete_day(self, metadata_store: MetadataStore) -> None:
        await self._commit(metadata_store, "2026-02-02")
        await self._commit(metadata_store, "2026-02-03")

        removed = await metadata_store.delete_day("date-[2026-02-02] (day 1)")

        assert removed is not None
        assert len(removed) == 1
        assert [d.folder for d in await metadata_store.list_days()] == [
            "date-[2026-02-03] (day 1)"
        ]
        assert await metadata_store.count_versions() == 1

    async def test_manifest_is_valid_json_on_disk(self, metadata_store: MetadataStore) -> None:
        await self._commit(metadata_store, "2026-02-02")
        version = await metadata_store.get_version("date-[2026-02-02] (day 1)", 0)
        assert version is not None
        raw = (metadata_store.data_dir / version.path / "manifest.json").read_text()
        assert set(json.loads(raw)) == {"metadata", "files"}
