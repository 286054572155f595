"""Read-side queries over committed versions: browse, manifests, search, byte ranges."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from backend.exceptions import InternalServerError

if TYPE_CHECKING:
    from pathlib import Path

    from backend.services.metadata_service import MetadataStore
    from backend.storage.content_store import ContentStore

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 500

_RANGE_PATTERN = re.compile(r"^bytes=(\d*)-(\d*)$")


class RangeNotSatisfiableError(ValueError):
    """The Range header cannot be served for a blob of the given size."""

    def __init__(self, header: str, total: int) -> None:
        super().__init__(f"Range {header!r} not satisfiable for {total} bytes")
        self.total = total


def parse_range_header(header: str, total: int) -> tuple[int, int]:
    """Parse a single ``bytes=start-end`` range into inclusive offsets.

    ``bytes=a-`` runs to the end, ``bytes=-n`` selects the last ``n`` bytes,
    and an end past the blob is clamped to the last byte.
    """
    match = _RANGE_PATTERN.match(header.strip())
    if match is None:
        raise RangeNotSatisfiableError(header, total)
    raw_start, raw_end = match.groups()
    if not raw_start and not raw_end:
        raise RangeNotSatisfiableError(header, total)

    if not raw_start:
        suffix = int(raw_end)
        if suffix == 0 or total == 0:
            raise RangeNotSatisfiableError(header, total)
        return max(total - suffix, 0), total - 1

    start = int(raw_start)
    end = int(raw_end) if raw_end else total - 1
    if start >= total or start > end:
        raise RangeNotSatisfiableError(header, total)
    return start, min(end, total - 1)


@dataclass
class SearchMatch:
    date_folder: str
    version_id: str
    version_path: str
    relpath: str
    sha: str
    size: int | None


@dataclass
class ExplorerService:
    """Browse committed backups and resolve their files to blobs."""

    metadata: MetadataStore
    content_store: ContentStore

    async def browse(self) -> list[dict[str, Any]]:
        days = await self.metadata.list_days()
        return [
            {
                "dateFolder": day.folder,
                "versions": [
                    {"versionId": v.version_id, "path": v.path, "createdAt": v.created_at}
                    for v in day.versions
                ],
            }
            for day in days
        ]

    def version_manifest(self, version_path: str) -> dict[str, Any] | None:
        return self.metadata.read_manifest(version_path)

    def locate_file(self, version_path: str, relpath: str) -> tuple[str, Path | None] | None:
        """Return (sha, blob path) of ``relpath`` in a version.

        None means the manifest or entry does not exist; a None blob path means
        the version references content the store does not hold.
        """
        manifest = self.metadata.read_manifest(version_path)
        if manifest is None:
            return None
        entry = manifest.get("files", {}).get(relpath)
        if entry is None:
            return None
        sha = entry["sha"]
        return sha, self.content_store.locate(sha)

    async def search(self, query: str, limit: int = SEARCH_LIMIT) -> list[SearchMatch]:
        """Case-insensitive substring search over file paths of every version."""
        needle = query.lower()
        matches: list[SearchMatch] = []
        for day in await self.metadata.list_days():
            for version in day.versions:
                try:
                    manifest = self.metadata.read_manifest(version.path)
                except (InternalServerError, ValueError, OSError) as exc:
                    logger.warning("Search skipped %s: %s", version.path, exc)
                    continue
                if manifest is None:
                    continue
                for rel, info in manifest.get("files", {}).items():
                    if needle not in rel.lower():
                        continue
                    matches.append(
                        SearchMatch(
                            date_folder=day.folder,
                            version_id=version.version_id,
                            version_path=version.path,
                            relpath=rel,
                            sha=info["sha"],
                            size=info.get("size"),
                        )
                    )
                    if len(matches) >= limit:
                        return matches
        return matches
