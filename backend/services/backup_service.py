"""Upload session protocol: init, resumable upload, commit, existence checks."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from backend.exceptions import IncompleteCommitError, ProtocolError
from backend.services.datetime_service import parse_backup_date
from backend.services.metadata_service import ManifestFile
from backend.storage.content_store import validate_hash

if TYPE_CHECKING:
    from backend.services.metadata_service import MetadataStore
    from backend.storage.content_store import ContentStore

logger = logging.getLogger(__name__)


@dataclass
class InitResult:
    day_index: int
    version_id: str
    version_path: str
    missing_hashes: list[str]
    session_key: str


@dataclass
class UploadResult:
    status: str  # "ok", "exists" or "partial"
    sha: str
    bytes: int


@dataclass
class CommitResult:
    version_id: str
    version_path: str
    dangling_hashes: list[str] = field(default_factory=list)


class KeyedLock:
    """asyncio locks created on demand per key and dropped once unused."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]


def normalize_relpath(relpath: str) -> str:
    """Validate a root-relative forward-slash path from a manifest or upload."""
    if not relpath or not relpath.strip():
        raise ProtocolError("relpath must not be empty")
    normalized = relpath.replace("\\", "/").lstrip("/")
    if any(part == ".." for part in normalized.split("/")):
        raise ProtocolError(f"Invalid relpath: {relpath}")
    return normalized


class BackupService:
    """Server side of the backup protocol.

    Blob bytes live in the ContentStore; sessions, versions and manifests in
    the MetadataStore.  Uploads of the same hash are serialized so two runs
    can never append to one blob at the same time.
    """

    def __init__(
        self,
        content_store: ContentStore,
        metadata: MetadataStore,
        *,
        strict_commit: bool = False,
        max_upload_bytes: int = 64 * 1024 * 1024 * 1024,
    ) -> None:
        self.content_store = content_store
        self.metadata = metadata
        self.strict_commit = strict_commit
        self.max_upload_bytes = max_upload_bytes
        self._upload_locks = KeyedLock()

    def _is_stored(self, sha: str, size: int | None) -> bool:
        """True if a copy exists and, when ``size`` is known, is not a shorter partial."""
        if not self.content_store.has(sha):
            return False
        if size is None:
            return True
        return self.content_store.largest_copy(sha) >= size

    async def init_backup(
        self,
        backup_date: str,
        client_id: str,
        manifest: list[dict[str, Any]],
    ) -> InitResult:
        """Open a session and report which manifest hashes the store still needs."""
        normalized_date = parse_backup_date(backup_date)
        if not client_id.strip():
            raise ProtocolError("clientId must not be empty")

        missing: list[str] = []
        seen: set[str] = set()
        for entry in manifest:
            sha = validate_hash(entry["sha"])
            normalize_relpath(entry["relpath"])
            if sha in seen:
                continue
            seen.add(sha)
            if not self._is_stored(sha, entry.get("size")):
                missing.append(sha)

        upload_session = await self.metadata.create_session(normalized_date, client_id)
        logger.info(
            "init-backup from %s: %d file(s), %d missing hash(es)",
            client_id,
            len(manifest),
            len(missing),
        )
        return InitResult(
            day_index=upload_session.day_index,
            version_id=upload_session.version_id,
            version_path=upload_session.version_path,
            missing_hashes=missing,
            session_key=upload_session.session_key,
        )

    def file_offset(self, sha: str) -> tuple[bool, int]:
        """Return (exists, bytes) for the copy an upload of ``sha`` would resume."""
        validate_hash(sha)
        size = self.content_store.size(sha)
        return size is not None, size or 0

    async def upload(
        self,
        sha: str,
        relpath: str,
        version_id: str,
        start_byte: int,
        file_size: int | None,
        chunks: AsyncIterator[bytes],
    ) -> UploadResult:
        """Append an upload body to the blob for ``sha`` and verify it once complete."""
        validate_hash(sha)
        relpath = normalize_relpath(relpath)
        if start_byte < 0:
            raise ProtocolError("x-start-byte must not be negative")
        if file_size is not None and file_size < 0:
            raise ProtocolError("x-filesize must not be negative")
        upload_session = await self.metadata.get_session_by_version(version_id)
        if upload_session is None:
            raise ProtocolError(f"unknown versionId: {version_id}")

        async with self._upload_locks.hold(sha):
            stored = self.content_store.largest_copy(sha)
            if self.content_store.has(sha) and (
                stored >= file_size if file_size is not None else stored > start_byte
            ):
                logger.debug("Blob %s already stored (%d bytes)", sha, stored)
                return UploadResult(status="exists", sha=sha, bytes=stored)
            if stored and await asyncio.to_thread(self.content_store.is_verified, sha):
                logger.debug("Blob %s already verified; ignoring upload body", sha)
                return UploadResult(status="exists", sha=sha, bytes=stored)

            new_size = await self.content_store.append_stream(
                sha, start_byte, chunks, max_bytes=self.max_upload_bytes
            )
            if file_size is not None and new_size < file_size:
                logger.info("Partial upload of %s: %d/%d bytes", sha, new_size, file_size)
                return UploadResult(status="partial", sha=sha, bytes=new_size)

            verified_size = await asyncio.to_thread(self.content_store.finalize, sha)

        await self.metadata.record_upload(version_id, relpath, sha)
        logger.info("Stored %s (%d bytes) for %s", sha, verified_size, relpath)
        return UploadResult(status="ok", sha=sha, bytes=verified_size)

    async def commit(
        self,
        session_key: str,
        manifest: list[dict[str, Any]],
        extra: dict[str, Any] | None = None,
    ) -> CommitResult:
        """Write the authoritative version manifest and close the session.

        Hashes the store does not hold are reported as dangling and recorded
        in the manifest metadata; in strict mode they reject the commit.
        """
        upload_session = await self.metadata.get_session(session_key)
        if upload_session is None:
            raise ProtocolError("invalid sessionKey")

        files: list[ManifestFile] = []
        seen_paths: set[str] = set()
        for entry in manifest:
            relpath = normalize_relpath(entry["relpath"])
            if relpath in seen_paths:
                raise ProtocolError(f"Duplicate relpath in manifest: {relpath}")
            seen_paths.add(relpath)
            files.append(
                ManifestFile(
                    relpath=relpath,
                    sha=validate_hash(entry["sha"]),
                    size=int(entry.get("size") or 0),
                    mtime=entry.get("mtime"),
                )
            )

        dangling = sorted({f.sha for f in files if not self._is_stored(f.sha, f.size)})
        if dangling:
            if self.strict_commit:
                raise IncompleteCommitError(dangling)
            logger.warning(
                "Committing %s with %d dangling hash(es)", upload_session.version_id, len(dangling)
            )

        version = await self.metadata.commit_session(
            session_key, files, extra or {}, missing=dangling
        )
        return CommitResult(
            version_id=version.version_id,
            version_path=version.path,
            dangling_hashes=dangling,
        )

    def has_hashes(self, shas: list[str]) -> dict[str, bool]:
        """Stateless existence check for a batch of hashes."""
        return {sha: self.content_store.has(validate_hash(sha)) for sha in shas}
