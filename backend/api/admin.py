"""Admin API endpoints: stats, storage locations, backup management, session pruning."""

from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query

from backend.api.deps import get_content_store, get_metadata_store, get_settings, require_token
from backend.config import Settings
from backend.exceptions import InternalServerError
from backend.models.metadata import BackupVersion
from backend.schemas.admin import (
    ActiveStorageUpdate,
    BackupDetail,
    BackupSummary,
    PrunedSessionsResponse,
    StatsResponse,
    StorageConfigResponse,
    StorageLocationCreate,
)
from backend.services.metadata_service import MetadataStore
from backend.storage.content_store import ContentStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["admin"], dependencies=[Depends(require_token)])


def _summary(day: str, index: int, version: BackupVersion) -> BackupSummary:
    return BackupSummary(
        day=day,
        version=index,
        version_id=version.version_id,
        path=version.path,
        created_at=version.created_at,
        file_count=version.file_count,
        total_size=version.total_bytes,
        client_id=version.client_id,
    )


def _storage_config(content_store: ContentStore) -> StorageConfigResponse:
    return StorageConfigResponse(
        storage_locations=[str(loc.root) for loc in content_store.locations],
        active_storage_index=content_store.active_index,
    )


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    metadata: Annotated[MetadataStore, Depends(get_metadata_store)],
    content_store: Annotated[ContentStore, Depends(get_content_store)],
) -> StatsResponse:
    """Totals across the metadata store and every storage location."""
    blob_count, blob_bytes = content_store.stats()
    return StatsResponse(
        total_backups=await metadata.count_versions(),
        total_storage=blob_bytes,
        total_files=blob_count,
        open_sessions=len(await metadata.list_sessions()),
    )


@router.get("/config", response_model=StorageConfigResponse)
async def get_storage_config(
    content_store: Annotated[ContentStore, Depends(get_content_store)],
) -> StorageConfigResponse:
    """List storage locations and the active write target."""
    return _storage_config(content_store)


@router.post("/config/storage", response_model=StorageConfigResponse, status_code=201)
async def add_storage_location(
    body: StorageLocationCreate,
    content_store: Annotated[ContentStore, Depends(get_content_store)],
) -> StorageConfigResponse:
    """Register an additional storage directory."""
    try:
        added = content_store.add_location(Path(body.path))
    except OSError as exc:
        logger.error("Failed to add storage location %s: %s", body.path, exc)
        raise HTTPException(status_code=400, detail="Invalid path or permission denied") from exc
    if not added:
        raise HTTPException(status_code=409, detail="Storage location already exists")
    return _storage_config(content_store)


@router.post("/config/storage/active", response_model=StorageConfigResponse)
async def set_active_storage(
    body: ActiveStorageUpdate,
    content_store: Annotated[ContentStore, Depends(get_content_store)],
) -> StorageConfigResponse:
    """Switch the location that receives new blobs."""
    try:
        content_store.set_active(body.index)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _storage_config(content_store)


@router.delete("/config/storage/{index}", response_model=StorageConfigResponse)
async def remove_storage_location(
    index: int,
    content_store: Annotated[ContentStore, Depends(get_content_store)],
) -> StorageConfigResponse:
    """Forget a non-active storage location."""
    try:
        content_store.remove_location(index)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _storage_config(content_store)


@router.get("/backups", response_model=list[BackupSummary])
async def list_backups(
    metadata: Annotated[MetadataStore, Depends(get_metadata_store)],
) -> list[BackupSummary]:
    """All committed versions, newest first."""
    summaries = [
        _summary(day.folder, index, version)
        for day in await metadata.list_days()
        for index, version in enumerate(day.versions)
    ]
    summaries.sort(key=lambda s: s.created_at, reverse=True)
    return summaries


@router.get("/backups/{day}/{index}", response_model=BackupDetail)
async def get_backup(
    day: str,
    index: int,
    metadata: Annotated[MetadataStore, Depends(get_metadata_store)],
) -> BackupDetail:
    """One version with its file map."""
    version = await metadata.get_version(day, index)
    if version is None:
        raise HTTPException(status_code=404, detail="Backup not found")
    manifest = metadata.read_manifest(version.path)
    if manifest is None:
        raise InternalServerError(f"Manifest missing for committed version {version.path}")
    summary = _summary(day, index, version)
    return BackupDetail(
        **summary.model_dump(),
        files=manifest.get("files", {}),
        metadata=manifest.get("metadata", {}),
    )


@router.delete("/backups/{day}/{index}", response_model=BackupSummary)
async def delete_backup(
    day: str,
    index: int,
    metadata: Annotated[MetadataStore, Depends(get_metadata_store)],
) -> BackupSummary:
    """Delete one version; the day bucket disappears with its last version."""
    version = await metadata.delete_version(day, index)
    if version is None:
        raise HTTPException(status_code=404, detail="Backup not found")
    return _summary(day, index, version)


@router.delete("/backups/{day}", response_model=list[BackupSummary])
async def delete_day(
    day: str,
    metadata: Annotated[MetadataStore, Depends(get_metadata_store)],
) -> list[BackupSummary]:
    """Delete a day bucket with all of its versions."""
    removed = await metadata.delete_day(day)
    if removed is None:
        raise HTTPException(status_code=404, detail="Day not found")
    return [_summary(day, index, version) for index, version in enumerate(removed)]


@router.delete("/sessions/stale", response_model=PrunedSessionsResponse)
async def prune_sessions(
    metadata: Annotated[MetadataStore, Depends(get_metadata_store)],
    settings: Annotated[Settings, Depends(get_settings)],
    older_than_hours: Annotated[int | None, Query(ge=0)] = None,
) -> PrunedSessionsResponse:
    """Drop abandoned upload sessions older than the given age."""
    hours = settings.session_stale_hours if older_than_hours is None else older_than_hours
    pruned = await metadata.prune_sessions(timedelta(hours=hours))
    return PrunedSessionsResponse(pruned=[s.session_key for s in pruned])
