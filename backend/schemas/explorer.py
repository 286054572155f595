"""Explorer response schemas."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from backend.schemas.base import WireModel


class VersionRef(WireModel):
    version_id: str = Field(alias="versionId")
    path: str
    created_at: str = Field(alias="createdAt")


class DayListing(WireModel):
    date_folder: str = Field(alias="dateFolder")
    versions: list[VersionRef]


class BrowseResponse(BaseModel):
    days: list[DayListing]


class VersionManifestResponse(WireModel):
    manifest: dict[str, Any]
    version_path: str = Field(alias="versionPath")


class SearchMatchResponse(WireModel):
    date_folder: str = Field(alias="dateFolder")
    version_id: str = Field(alias="versionId")
    version_path: str = Field(alias="versionPath")
    relpath: str
    sha: str
    size: int | None = None


class SearchResponse(BaseModel):
    q: str
    count: int
    matches: list[SearchMatchResponse]
