"""Health check endpoint."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from backend.api.deps import get_content_store, get_metadata_store
from backend.services.metadata_service import MetadataStore
from backend.storage.content_store import ContentStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    storage: str


@router.get("/api/health", response_model=HealthResponse)
async def health_check(
    metadata: Annotated[MetadataStore, Depends(get_metadata_store)],
    content_store: Annotated[ContentStore, Depends(get_content_store)],
) -> HealthResponse:
    """Health check endpoint for monitoring."""
    db_status = "ok"
    try:
        await metadata.count_versions()
    except Exception:
        logger.warning("Health check database query failed", exc_info=True)
        db_status = "error"

    storage_status = "ok" if content_store.active.root.is_dir() else "error"

    healthy = db_status == "ok" and storage_status == "ok"
    return HealthResponse(
        status="ok" if healthy else "degraded",
        version="0.1.0",
        database=db_status,
        storage=storage_status,
    )
