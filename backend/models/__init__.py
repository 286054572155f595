"""SQLAlchemy ORM models for the hashvault metadata store."""

from backend.models.base import Base
from backend.models.metadata import BackupDay, BackupVersion, DayCounter, UploadSession

__all__ = [
    "BackupDay",
    "BackupVersion",
    "Base",
    "DayCounter",
    "UploadSession",
]
