"""Shared API dependencies: settings, services, shared-token auth."""

from __future__ import annotations

import secrets
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from backend.config import Settings
from backend.services.backup_service import BackupService
from backend.services.explorer_service import ExplorerService
from backend.services.metadata_service import MetadataStore
from backend.storage.content_store import ContentStore

security = HTTPBearer(auto_error=False)


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


def get_content_store(request: Request) -> ContentStore:
    """Get the blob store from app state."""
    store: ContentStore = request.app.state.content_store
    return store


def get_metadata_store(request: Request) -> MetadataStore:
    """Get the metadata store from app state."""
    metadata: MetadataStore = request.app.state.metadata_store
    return metadata


def get_backup_service(request: Request) -> BackupService:
    """Get the backup protocol service from app state."""
    service: BackupService = request.app.state.backup_service
    return service


def get_explorer_service(
    metadata: Annotated[MetadataStore, Depends(get_metadata_store)],
    content_store: Annotated[ContentStore, Depends(get_content_store)],
) -> ExplorerService:
    """Build an explorer over the shared stores."""
    return ExplorerService(metadata=metadata, content_store=content_store)


async def require_token(
    settings: Annotated[Settings, Depends(get_settings)],
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)] = None,
) -> None:
    """Require the shared API token when one is configured. Raises 401 otherwise."""
    if not settings.api_token:
        return
    if credentials is None or not secrets.compare_digest(
        credentials.credentials.encode("utf-8"), settings.api_token.encode("utf-8")
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
