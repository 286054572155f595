"""Backup protocol request/response schemas (camelCase on the wire)."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from backend.schemas.base import WireModel

_SHA256 = r"^[0-9a-f]{64}$"


class ManifestEntry(BaseModel):
    """Single file entry of a client manifest."""

    relpath: str = Field(min_length=1, max_length=4096)
    size: int = Field(ge=0)
    mtime: float | None = None
    sha: str = Field(pattern=_SHA256)


class FileOffsetResponse(BaseModel):
    exists: bool
    bytes: int


class InitBackupRequest(WireModel):
    """Request to open a backup session."""

    date: str = Field(min_length=1, max_length=64)
    client_id: str = Field(alias="clientId", min_length=1, max_length=255)
    manifest: list[ManifestEntry]


class InitBackupResponse(WireModel):
    """Session handle plus the hashes the server still needs."""

    day_index: int = Field(alias="dayIndex")
    version_id: str = Field(alias="versionId")
    version_path: str = Field(alias="versionPath")
    missing_hashes: list[str] = Field(alias="missingHashes")
    session_key: str = Field(alias="sessionKey")


class UploadFileResponse(BaseModel):
    status: str
    sha: str
    bytes: int


class CommitVersionRequest(WireModel):
    """Final manifest for a session."""

    session_key: str = Field(alias="sessionKey", min_length=1)
    manifest: list[ManifestEntry]
    extra: dict[str, Any] = Field(default_factory=dict)


class CommitVersionResponse(WireModel):
    status: str
    version_id: str = Field(alias="versionId")
    version_path: str = Field(alias="versionPath")
    dangling_hashes: list[str] = Field(alias="danglingHashes", default_factory=list)
