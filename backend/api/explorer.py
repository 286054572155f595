"""Explorer endpoints: browse versions, read manifests, download files, search."""

from __future__ import annotations

import mimetypes
import posixpath
from typing import TYPE_CHECKING, Annotated
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import FileResponse, Response, StreamingResponse

from backend.api.deps import get_explorer_service, require_token
from backend.schemas.explorer import (
    BrowseResponse,
    DayListing,
    SearchMatchResponse,
    SearchResponse,
    VersionManifestResponse,
    VersionRef,
)
from backend.services.explorer_service import (
    ExplorerService,
    RangeNotSatisfiableError,
    parse_range_header,
)
from backend.storage.content_store import validate_hash

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

router = APIRouter(tags=["explorer"], dependencies=[Depends(require_token)])

_STREAM_CHUNK = 256 * 1024


def _content_disposition(filename: str) -> str:
    quoted = quote(filename)
    if quoted == filename:
        return f'attachment; filename="{filename}"'
    return f"attachment; filename*=utf-8''{quoted}"


def _iter_range(path: Path, start: int, end: int) -> Iterator[bytes]:
    remaining = end - start + 1
    with open(path, "rb") as f:
        f.seek(start)
        while remaining > 0:
            chunk = f.read(min(_STREAM_CHUNK, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk


def _blob_response(
    request: Request,
    blob_path: Path,
    media_type: str,
    filename: str | None = None,
) -> Response:
    """Serve a blob, honoring a single-range ``Range`` header with 206/416."""
    total = blob_path.stat().st_size
    headers = {"Accept-Ranges": "bytes"}
    if filename is not None:
        headers["Content-Disposition"] = _content_disposition(filename)

    range_header = request.headers.get("range")
    if not range_header:
        return FileResponse(path=blob_path, media_type=media_type, headers=headers)

    try:
        start, end = parse_range_header(range_header, total)
    except RangeNotSatisfiableError:
        return Response(
            status_code=status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE,
            headers={"Content-Range": f"bytes */{total}"},
        )
    headers["Content-Range"] = f"bytes {start}-{end}/{total}"
    headers["Content-Length"] = str(end - start + 1)
    return StreamingResponse(
        _iter_range(blob_path, start, end),
        status_code=status.HTTP_206_PARTIAL_CONTENT,
        media_type=media_type,
        headers=headers,
    )


@router.get("/browse", response_model=BrowseResponse)
async def browse(
    explorer: Annotated[ExplorerService, Depends(get_explorer_service)],
) -> BrowseResponse:
    """List day buckets and their versions."""
    days = await explorer.browse()
    return BrowseResponse(
        days=[
            DayListing(
                date_folder=day["dateFolder"],
                versions=[
                    VersionRef(version_id=v["versionId"], path=v["path"], created_at=v["createdAt"])
                    for v in day["versions"]
                ],
            )
            for day in days
        ]
    )


@router.get("/list", response_model=DayListing)
async def list_versions(
    explorer: Annotated[ExplorerService, Depends(get_explorer_service)],
    date_folder: Annotated[str, Query(alias="dateFolder", min_length=1)],
) -> DayListing:
    """List the versions of one day bucket (empty when the bucket is unknown)."""
    versions = await explorer.metadata.list_versions(date_folder)
    return DayListing(
        date_folder=date_folder,
        versions=[
            VersionRef(version_id=v.version_id, path=v.path, created_at=v.created_at)
            for v in versions
        ],
    )


@router.get("/version-manifest", response_model=VersionManifestResponse)
async def version_manifest(
    explorer: Annotated[ExplorerService, Depends(get_explorer_service)],
    version_path: Annotated[str, Query(alias="versionPath", min_length=1)],
) -> VersionManifestResponse:
    """Return a version's manifest.json."""
    try:
        manifest = explorer.version_manifest(version_path)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if manifest is None:
        raise HTTPException(status_code=404, detail="manifest not found")
    return VersionManifestResponse(manifest=manifest, version_path=version_path)


@router.get("/file")
async def download_file(
    request: Request,
    explorer: Annotated[ExplorerService, Depends(get_explorer_service)],
    version_path: Annotated[str, Query(alias="versionPath", min_length=1)],
    relpath: Annotated[str, Query(min_length=1)],
) -> Response:
    """Download one file of a version from the blob store."""
    try:
        located = explorer.locate_file(version_path, relpath)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if located is None:
        raise HTTPException(status_code=404, detail="file not found in manifest")
    _sha, blob_path = located
    if blob_path is None:
        raise HTTPException(status_code=404, detail="content not found in store")
    media_type = mimetypes.guess_type(relpath)[0] or "application/octet-stream"
    return _blob_response(request, blob_path, media_type, filename=posixpath.basename(relpath))


@router.get("/file-by-sha")
async def download_blob(
    request: Request,
    explorer: Annotated[ExplorerService, Depends(get_explorer_service)],
    sha: Annotated[str, Query(min_length=1)],
) -> Response:
    """Download a blob directly by its content hash."""
    blob_path = explorer.content_store.locate(validate_hash(sha))
    if blob_path is None:
        raise HTTPException(status_code=404, detail="not found")
    return _blob_response(request, blob_path, "application/octet-stream")


@router.get("/search", response_model=SearchResponse)
async def search(
    explorer: Annotated[ExplorerService, Depends(get_explorer_service)],
    q: Annotated[str, Query(min_length=1, max_length=500)],
) -> SearchResponse:
    """Find files whose path contains ``q`` across all committed versions."""
    matches = await explorer.search(q)
    return SearchResponse(
        q=q,
        count=len(matches),
        matches=[
            SearchMatchResponse(
                date_folder=m.date_folder,
                version_id=m.version_id,
                version_path=m.version_path,
                relpath=m.relpath,
                sha=m.sha,
                size=m.size,
            )
            for m in matches
        ],
    )
