"""Metadata store: sessions, day buckets, versions and per-version manifests.

All mutations go through one ``asyncio.Lock`` and run as a single transaction,
so concurrent requests never interleave a read-modify-write of the same
records.  Version manifests live on disk next to the version directory and are
written atomically under the same lock.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
import shutil
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import selectinload

from backend.exceptions import InternalServerError, ProtocolError
from backend.models.metadata import BackupDay, BackupVersion, DayCounter, UploadSession
from backend.services.datetime_service import (
    day_folder_name,
    format_iso,
    now_utc,
    version_id_for,
)
from backend.storage.storage_config import atomic_write_bytes

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"


@dataclass
class ManifestFile:
    """One path entry of a committed version manifest."""

    relpath: str
    sha: str
    size: int
    mtime: float | int | str | None


def resolve_version_dir(data_dir: Path, version_path: str) -> Path:
    """Resolve a data-dir-relative version path, refusing anything outside backups/."""
    backups_dir = (data_dir / "backups").resolve()
    candidate = Path(version_path)
    full = (candidate if candidate.is_absolute() else data_dir / candidate).resolve()
    if full == backups_dir or not full.is_relative_to(backups_dir):
        raise ValueError(f"Invalid version path: {version_path}")
    return full


class MetadataStore:
    """Single-writer owner of session, day and version records."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        data_dir: Path,
    ) -> None:
        self._session_factory = session_factory
        self.data_dir = data_dir
        self.backups_dir = data_dir / "backups"
        self._lock = asyncio.Lock()

    # ── Sessions ─────────────────────────────────────────

    async def create_session(
        self,
        backup_date: str,
        client_id: str,
        now: datetime | None = None,
    ) -> UploadSession:
        """Allocate a day index and version path and persist a new upload session."""
        now = now or now_utc()
        async with self._lock, self._session_factory() as db:
            counter = await db.get(DayCounter, backup_date)
            if counter is None:
                counter = DayCounter(date=backup_date, next_day_index=1)
                db.add(counter)
            day_index = counter.next_day_index
            counter.next_day_index = day_index + 1

            version_id = await self._unique_version_id(db, version_id_for(now))
            session_key = await self._unique_session_key(
                db, f"{client_id}_{int(now.timestamp() * 1000)}"
            )
            version_path = (
                Path("backups") / day_folder_name(backup_date, day_index) / version_id
            ).as_posix()

            upload_session = UploadSession(
                session_key=session_key,
                version_id=version_id,
                client_id=client_id,
                date=backup_date,
                day_index=day_index,
                version_path=version_path,
                provisional_files={},
                created_at=format_iso(now),
            )
            db.add(upload_session)
            await db.commit()

        (self.data_dir / version_path).mkdir(parents=True, exist_ok=True)
        logger.info(
            "Opened session %s for %s day %d (%s)",
            session_key,
            backup_date,
            day_index,
            version_id,
        )
        return upload_session

    async def _unique_version_id(self, db: AsyncSession, base: str) -> str:
        candidate = base
        suffix = 1
        while await self._version_id_taken(db, candidate):
            suffix += 1
            candidate = f"{base}-{suffix}"
        return candidate

    async def _version_id_taken(self, db: AsyncSession, version_id: str) -> bool:
        in_sessions = await db.scalar(
            select(func.count()).select_from(UploadSession).where(
                UploadSession.version_id == version_id
            )
        )
        in_versions = await db.scalar(
            select(func.count()).select_from(BackupVersion).where(
                BackupVersion.version_id == version_id
            )
        )
        return bool(in_sessions) or bool(in_versions)

    async def _unique_session_key(self, db: AsyncSession, base: str) -> str:
        candidate = base
        while await db.get(UploadSession, candidate) is not None:
            candidate = f"{base}_{secrets.token_hex(3)}"
        return candidate

    async def get_session(self, session_key: str) -> UploadSession | None:
        async with self._session_factory() as db:
            return await db.get(UploadSession, session_key)

    async def get_session_by_version(self, version_id: str) -> UploadSession | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(UploadSession).where(UploadSession.version_id == version_id)
            )
            return result.scalar_one_or_none()

    async def list_sessions(self) -> list[UploadSession]:
        async with self._session_factory() as db:
            result = await db.execute(select(UploadSession).order_by(UploadSession.created_at))
            return list(result.scalars())

    async def record_upload(self, version_id: str, relpath: str, sha: str) -> None:
        """Add ``relpath -> sha`` to the session's provisional map and on-disk manifest."""
        uploaded_at = format_iso(now_utc())
        async with self._lock, self._session_factory() as db:
            result = await db.execute(
                select(UploadSession).where(UploadSession.version_id == version_id)
            )
            upload_session = result.scalar_one_or_none()
            if upload_session is None:
                raise ProtocolError(f"unknown versionId: {version_id}")
            files = dict(upload_session.provisional_files or {})
            files[relpath] = sha
            upload_session.provisional_files = files

            manifest_path = self.data_dir / upload_session.version_path / MANIFEST_NAME
            manifest = self._read_json(manifest_path) or {"files": {}}
            manifest.setdefault("files", {})[relpath] = {"sha": sha, "uploadedAt": uploaded_at}
            self._write_json(manifest_path, manifest)
            await db.commit()

    async def prune_sessions(self, older_than: timedelta) -> list[UploadSession]:
        """Delete sessions created before ``now - older_than``; returns the removed ones.

        Version directories of pruned sessions are removed; blobs stay in the store.
        """
        cutoff = format_iso(now_utc() - older_than)
        async with self._lock, self._session_factory() as db:
            result = await db.execute(
                select(UploadSession).where(UploadSession.created_at < cutoff)
            )
            stale = list(result.scalars())
            if stale:
                await db.execute(
                    delete(UploadSession).where(
                        UploadSession.session_key.in_([s.session_key for s in stale])
                    )
                )
            await db.commit()
        for upload_session in stale:
            self._remove_version_dir(upload_session.version_path)
            logger.info("Pruned stale session %s", upload_session.session_key)
        return stale

    # ── Commit ───────────────────────────────────────────

    async def commit_session(
        self,
        session_key: str,
        files: list[ManifestFile],
        extra: dict[str, Any],
        missing: list[str],
        now: datetime | None = None,
    ) -> BackupVersion:
        """Write the final manifest, register the version under its day, close the session."""
        now = now or now_utc()
        created_at = format_iso(now)
        async with self._lock, self._session_factory() as db:
            upload_session = await db.get(UploadSession, session_key)
            if upload_session is None:
                raise ProtocolError("invalid sessionKey")

            folder = day_folder_name(upload_session.date, upload_session.day_index)
            manifest: dict[str, Any] = {
                "metadata": {
                    "date": upload_session.date,
                    "dayIndex": upload_session.day_index,
                    "versionId": upload_session.version_id,
                    "clientId": upload_session.client_id,
                    "createdAt": created_at,
                    "extra": extra,
                    "missing": missing,
                },
                "files": {
                    f.relpath: {"sha": f.sha, "size": f.size, "mtime": f.mtime} for f in files
                },
            }
            self._write_json(
                self.data_dir / upload_session.version_path / MANIFEST_NAME, manifest
            )

            day = await db.get(BackupDay, folder)
            if day is None:
                day = BackupDay(
                    folder=folder,
                    date=upload_session.date,
                    day_index=upload_session.day_index,
                    created_at=created_at,
                )
                db.add(day)
            version = BackupVersion(
                version_id=upload_session.version_id,
                day_folder=folder,
                path=upload_session.version_path,
                created_at=created_at,
                file_count=len(files),
                total_bytes=sum(f.size for f in files),
                client_id=upload_session.client_id,
            )
            db.add(version)
            await db.delete(upload_session)
            await db.commit()

        logger.info("Committed %s with %d file(s) into %s", version.version_id, len(files), folder)
        return version

    # ── Queries ──────────────────────────────────────────

    async def list_days(self) -> list[BackupDay]:
        """All day buckets with their versions, oldest first."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(BackupDay)
                .options(selectinload(BackupDay.versions))
                .order_by(BackupDay.date, BackupDay.day_index)
            )
            return list(result.scalars())

    async def list_versions(self, folder: str) -> list[BackupVersion]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(BackupVersion)
                .where(BackupVersion.day_folder == folder)
                .order_by(BackupVersion.id)
            )
            return list(result.scalars())

    async def get_version(self, folder: str, index: int) -> BackupVersion | None:
        versions = await self.list_versions(folder)
        if not 0 <= index < len(versions):
            return None
        return versions[index]

    async def find_version(self, version_id: str) -> BackupVersion | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(BackupVersion).where(BackupVersion.version_id == version_id)
            )
            return result.scalar_one_or_none()

    async def count_versions(self) -> int:
        async with self._session_factory() as db:
            count = await db.scalar(select(func.count()).select_from(BackupVersion))
            return int(count or 0)

    def read_manifest(self, version_path: str) -> dict[str, Any] | None:
        """Load a version's manifest.json, or None if it does not exist."""
        manifest_path = resolve_version_dir(self.data_dir, version_path) / MANIFEST_NAME
        return self._read_json(manifest_path)

    def file_map(self, version_path: str) -> dict[str, str]:
        """``relpath -> sha`` map of a version."""
        manifest = self.read_manifest(version_path) or {}
        return {rel: info["sha"] for rel, info in manifest.get("files", {}).items()}

    # ── Deletion ─────────────────────────────────────────

    async def delete_version(self, folder: str, index: int) -> BackupVersion | None:
        """Delete one version; the day bucket goes with its last version."""
        async with self._lock, self._session_factory() as db:
            result = await db.execute(
                select(BackupDay)
                .options(selectinload(BackupDay.versions))
                .where(BackupDay.folder == folder)
            )
            day = result.scalar_one_or_none()
            if day is None or not 0 <= index < len(day.versions):
                return None
            version = day.versions[index]
            day.versions.remove(version)
            if not day.versions:
                await db.delete(day)
            await db.commit()
        self._remove_version_dir(version.path)
        logger.info("Deleted version %s from %s", version.version_id, folder)
        return version

    async def delete_day(self, folder: str) -> list[BackupVersion] | None:
        """Delete a day bucket and all of its versions."""
        async with self._lock, self._session_factory() as db:
            result = await db.execute(
                select(BackupDay)
                .options(selectinload(BackupDay.versions))
                .where(BackupDay.folder == folder)
            )
            day = result.scalar_one_or_none()
            if day is None:
                return None
            removed = list(day.versions)
            await db.delete(day)
            await db.commit()
        for version in removed:
            self._remove_version_dir(version.path)
        day_dir = self.backups_dir / folder
        if day_dir.is_dir() and not any(day_dir.iterdir()):
            day_dir.rmdir()
        logger.info("Deleted day %s (%d version(s))", folder, len(removed))
        return removed

    # ── Helpers ──────────────────────────────────────────

    def _remove_version_dir(self, version_path: str) -> None:
        try:
            version_dir = resolve_version_dir(self.data_dir, version_path)
        except ValueError:
            logger.warning("Refusing to remove version path outside backups: %s", version_path)
            return
        if version_dir.is_dir():
            shutil.rmtree(version_dir)
        day_dir = version_dir.parent
        if day_dir != self.backups_dir.resolve() and day_dir.is_dir() and not any(
            day_dir.iterdir()
        ):
            day_dir.rmdir()

    @staticmethod
    def _read_json(path: Path) -> dict[str, Any] | None:
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise InternalServerError(f"Corrupt manifest at {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise InternalServerError(f"Manifest at {path} is not an object")
        return data

    @staticmethod
    def _write_json(path: Path, data: dict[str, Any]) -> None:
        atomic_write_bytes(path, json.dumps(data, indent=2).encode("utf-8"))
