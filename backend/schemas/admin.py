"""Admin request/response schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field

from backend.schemas.base import WireModel


class StatsResponse(WireModel):
    total_backups: int = Field(alias="totalBackups")
    total_storage: int = Field(alias="totalStorage")
    total_files: int = Field(alias="totalFiles")
    open_sessions: int = Field(alias="openSessions")


class StorageConfigResponse(WireModel):
    storage_locations: list[str] = Field(alias="storageLocations")
    active_storage_index: int = Field(alias="activeStorageIndex")


class StorageLocationCreate(BaseModel):
    path: str = Field(min_length=1, max_length=4096)


class ActiveStorageUpdate(BaseModel):
    index: int = Field(ge=0)


class BackupSummary(WireModel):
    day: str
    version: int
    version_id: str = Field(alias="versionId")
    path: str
    created_at: str = Field(alias="createdAt")
    file_count: int = Field(alias="fileCount")
    total_size: int = Field(alias="totalSize")
    client_id: str = Field(alias="clientId")


class BackupDetail(BackupSummary):
    files: dict[str, dict[str, object]] = Field(default_factory=dict)
    metadata: dict[str, object] = Field(default_factory=dict)


class PrunedSessionsResponse(BaseModel):
    pruned: list[str]
