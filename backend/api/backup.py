"""Backup protocol endpoints: offset query, init, upload, commit, existence check."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from starlette.requests import ClientDisconnect

from backend.api.deps import get_backup_service, require_token
from backend.schemas.backup import (
    CommitVersionRequest,
    CommitVersionResponse,
    FileOffsetResponse,
    InitBackupRequest,
    InitBackupResponse,
    UploadFileResponse,
)
from backend.services.backup_service import BackupService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["backup"], dependencies=[Depends(require_token)])


@router.get("/file-offset", response_model=FileOffsetResponse)
async def file_offset(
    service: Annotated[BackupService, Depends(get_backup_service)],
    sha: Annotated[str, Query(min_length=1)],
) -> FileOffsetResponse:
    """Report how many bytes of a blob are already stored (resume point)."""
    exists, size = service.file_offset(sha)
    return FileOffsetResponse(exists=exists, bytes=size)


@router.post("/init-backup", response_model=InitBackupResponse)
async def init_backup(
    body: InitBackupRequest,
    service: Annotated[BackupService, Depends(get_backup_service)],
) -> InitBackupResponse:
    """Open a backup session and return the hashes the store is missing."""
    result = await service.init_backup(
        body.date,
        body.client_id,
        [entry.model_dump() for entry in body.manifest],
    )
    return InitBackupResponse(
        day_index=result.day_index,
        version_id=result.version_id,
        version_path=result.version_path,
        missing_hashes=result.missing_hashes,
        session_key=result.session_key,
    )


@router.post("/upload-file", response_model=UploadFileResponse)
async def upload_file(
    request: Request,
    service: Annotated[BackupService, Depends(get_backup_service)],
    sha: Annotated[str, Query(min_length=1)],
    relpath: Annotated[str, Query(min_length=1)],
    version_id: Annotated[str, Query(alias="versionId", min_length=1)],
    start_byte: Annotated[int, Header(alias="x-start-byte", ge=0)] = 0,
    file_size: Annotated[int | None, Header(alias="x-filesize", ge=0)] = None,
) -> UploadFileResponse:
    """Append raw body bytes to the blob for ``sha``, starting at ``x-start-byte``."""
    try:
        result = await service.upload(
            sha,
            relpath,
            version_id,
            start_byte,
            file_size,
            request.stream(),
        )
    except ClientDisconnect as exc:
        logger.warning("Client aborted upload of %s (%s); partial bytes kept", sha, relpath)
        raise HTTPException(status_code=400, detail="client aborted") from exc
    return UploadFileResponse(status=result.status, sha=result.sha, bytes=result.bytes)


@router.post("/commit-version", response_model=CommitVersionResponse)
async def commit_version(
    body: CommitVersionRequest,
    service: Annotated[BackupService, Depends(get_backup_service)],
) -> CommitVersionResponse:
    """Record the final manifest as a new version and close the session."""
    result = await service.commit(
        body.session_key,
        [entry.model_dump() for entry in body.manifest],
        body.extra,
    )
    return CommitVersionResponse(
        status="committed",
        version_id=result.version_id,
        version_path=result.version_path,
        dangling_hashes=result.dangling_hashes,
    )


@router.get("/status/has-hashes")
async def has_hashes(
    service: Annotated[BackupService, Depends(get_backup_service)],
    sha: Annotated[list[str] | None, Query()] = None,
) -> dict[str, bool]:
    """Report which of the given hashes are present in any storage location."""
    return service.has_hashes(sha or [])
