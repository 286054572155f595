"""Shared schema base for camelCase wire payloads."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class WireModel(BaseModel):
    """Model whose fields are serialized under their camelCase aliases."""

    model_config = ConfigDict(populate_by_name=True)
