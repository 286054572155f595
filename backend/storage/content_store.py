"""Content-addressed blob store spread over one or more storage locations.

Each location is a flat directory of blobs named by their SHA-256 hex digest.
Only the *active* location receives writes; the others are read-only fallbacks
consulted by existence, offset and download lookups.

A blob shorter than the file it represents is a partial upload that can be
resumed by appending.  A blob becomes final only after :meth:`ContentStore.finalize`
has re-hashed the bytes on disk and found them equal to the key.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

from backend.exceptions import HashMismatchError, OffsetConflictError, ProtocolError
from backend.storage.storage_config import (
    StorageConfig,
    parse_storage_config,
    write_storage_config,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)

_SHA256_HEX = re.compile(r"^[0-9a-f]{64}$")
_READ_CHUNK = 1024 * 1024


def validate_hash(sha: str) -> str:
    """Return ``sha`` if it is a lowercase SHA-256 hex digest, else raise ProtocolError."""
    if not isinstance(sha, str) or not _SHA256_HEX.match(sha):
        raise ProtocolError(f"Invalid content hash: {sha!r}")
    return sha


def hash_file(path: Path) -> str:
    """Compute SHA-256 hash of a file."""
    sha = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_READ_CHUNK), b""):
            sha.update(chunk)
    return sha.hexdigest()


@dataclass(frozen=True)
class StorageLocation:
    """One blob directory."""

    root: Path

    def blob_path(self, sha: str) -> Path:
        return self.root / validate_hash(sha)

    def has(self, sha: str) -> bool:
        return self.blob_path(sha).is_file()

    def size(self, sha: str) -> int | None:
        path = self.blob_path(sha)
        try:
            return path.stat().st_size
        except FileNotFoundError:
            return None

    def open_for_append(self, sha: str) -> BinaryIO:
        self.root.mkdir(parents=True, exist_ok=True)
        return open(self.blob_path(sha), "ab")

    def delete(self, sha: str) -> None:
        self.blob_path(sha).unlink(missing_ok=True)


class ContentStore:
    """Deduplicated blob store with a runtime-selectable write location."""

    def __init__(self, config_path: Path, default_location: Path) -> None:
        self._config_path = config_path
        self._default_location = default_location
        self._config = parse_storage_config(config_path, default_location)
        self._verified: set[str] = set()
        if not config_path.exists():
            write_storage_config(config_path, self._config)
        self.active.root.mkdir(parents=True, exist_ok=True)

    # ── Location management ──────────────────────────────

    @property
    def locations(self) -> list[StorageLocation]:
        return [StorageLocation(root=p) for p in self._config.locations]

    @property
    def active_index(self) -> int:
        return self._config.active_index

    @property
    def active(self) -> StorageLocation:
        return StorageLocation(root=self._config.active_location)

    def add_location(self, root: Path) -> bool:
        """Register a new storage directory. Returns False if it is already listed."""
        if root in self._config.locations:
            return False
        root.mkdir(parents=True, exist_ok=True)
        updated = StorageConfig(
            locations=[*self._config.locations, root],
            active_index=self._config.active_index,
        )
        write_storage_config(self._config_path, updated)
        self._config = updated
        logger.info("Added storage location %s", root)
        return True

    def set_active(self, index: int) -> None:
        """Make the location at ``index`` the write target."""
        if not 0 <= index < len(self._config.locations):
            raise ValueError(f"Invalid storage index: {index}")
        updated = StorageConfig(locations=list(self._config.locations), active_index=index)
        updated.active_location.mkdir(parents=True, exist_ok=True)
        write_storage_config(self._config_path, updated)
        self._config = updated
        logger.info("Active storage location is now %s", updated.active_location)

    def remove_location(self, index: int) -> None:
        """Forget a non-active location. Blobs on disk are left untouched."""
        if len(self._config.locations) <= 1:
            raise ValueError("Cannot remove last storage location")
        if index == self._config.active_index:
            raise ValueError("Cannot remove active storage location")
        if not 0 <= index < len(self._config.locations):
            raise ValueError(f"Invalid storage index: {index}")
        locations = [p for i, p in enumerate(self._config.locations) if i != index]
        active_index = self._config.active_index
        if active_index > index:
            active_index -= 1
        updated = StorageConfig(locations=locations, active_index=active_index)
        write_storage_config(self._config_path, updated)
        self._config = updated
        self._verified.clear()

    # ── Lookups ──────────────────────────────────────────

    def _search_order(self) -> list[StorageLocation]:
        active = self.active
        return [active, *(loc for loc in self.locations if loc != active)]

    def has(self, sha: str) -> bool:
        """True if any location holds a blob for ``sha`` (complete or partial)."""
        validate_hash(sha)
        return any(loc.has(sha) for loc in self._search_order())

    def locate(self, sha: str) -> Path | None:
        """Path of the first copy of ``sha``, active location first."""
        validate_hash(sha)
        for loc in self._search_order():
            if loc.has(sha):
                return loc.blob_path(sha)
        return None

    def size(self, sha: str) -> int | None:
        """Byte length of the copy that uploads would resume, or None if absent.

        The active copy wins; otherwise the largest read-only copy is reported.
        """
        active_size = self.active.size(sha)
        if active_size is not None:
            return active_size
        sizes = [s for s in (loc.size(sha) for loc in self.locations) if s is not None]
        return max(sizes) if sizes else None

    def largest_copy(self, sha: str) -> int:
        """Largest byte length of any copy of ``sha``; 0 when absent."""
        sizes = [s for s in (loc.size(sha) for loc in self.locations) if s is not None]
        return max(sizes, default=0)

    def is_verified(self, sha: str) -> bool:
        """True if some copy of ``sha`` hashes to its key.

        Verified blobs are immutable; uploads must not append to them.  Copies
        found on disk after a restart are re-hashed once and then remembered.
        """
        if sha in self._verified and self.has(sha):
            return True
        for loc in self._search_order():
            if loc.has(sha) and hash_file(loc.blob_path(sha)) == sha:
                self._verified.add(sha)
                return True
        return False

    # ── Writes ───────────────────────────────────────────

    def open_for_append(self, sha: str) -> BinaryIO:
        """Open (creating if absent) the active copy of ``sha`` for appending."""
        return self.active.open_for_append(sha)

    async def append_stream(
        self,
        sha: str,
        start_byte: int,
        chunks: AsyncIterator[bytes],
        *,
        max_bytes: int,
    ) -> int:
        """Append an upload body to the active copy of ``sha``.

        The on-disk size is the authoritative offset.  Body bytes that overlap
        what is already stored are discarded; a body starting beyond the stored
        size raises OffsetConflictError.  Returns the new on-disk size.
        """
        stored = self.active.size(sha) or 0
        if start_byte > stored:
            raise OffsetConflictError(sha, stored, start_byte)

        skip = stored - start_byte
        total = stored
        with self.open_for_append(sha) as sink:
            async for chunk in chunks:
                if skip:
                    if len(chunk) <= skip:
                        skip -= len(chunk)
                        continue
                    chunk = chunk[skip:]
                    skip = 0
                if total + len(chunk) > max_bytes:
                    raise ValueError(f"Upload exceeds maximum blob size ({max_bytes} bytes)")
                sink.write(chunk)
                total += len(chunk)
        return total

    def finalize(self, sha: str) -> int:
        """Verify the active copy against its key and return its size.

        A copy that does not hash to ``sha`` is deleted so that a retry starts
        from byte 0 instead of appending to corrupt data.
        """
        path = self.active.blob_path(sha)
        computed = hash_file(path)
        if computed != sha:
            logger.error("Hash mismatch for blob %s (computed %s); discarding", sha, computed)
            self.active.delete(sha)
            raise HashMismatchError(sha, computed)
        self._verified.add(sha)
        return path.stat().st_size

    def discard(self, sha: str) -> None:
        """Delete the active copy of ``sha``."""
        self._verified.discard(sha)
        self.active.delete(sha)

    # ── Statistics ───────────────────────────────────────

    def stats(self) -> tuple[int, int]:
        """Return (blob_count, total_bytes) across all locations."""
        count = 0
        total = 0
        for loc in self.locations:
            if not loc.root.is_dir():
                continue
            for entry in loc.root.iterdir():
                if not entry.is_file() or not _SHA256_HEX.match(entry.name):
                    continue
                try:
                    total += entry.stat().st_size
                except OSError:
                    logger.warning("Could not stat blob %s", entry)
                    continue
                count += 1
        return count, total
