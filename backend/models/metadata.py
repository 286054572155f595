"""Session, day and version metadata models."""

from __future__ import annotations

from typing import Any

from sqlalchemy import JSON, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.models.base import Base


class DayCounter(Base):
    """Next day_index to hand out for a calendar date."""

    __tablename__ = "day_counters"

    date: Mapped[str] = mapped_column(String, primary_key=True)
    next_day_index: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


class UploadSession(Base):
    """In-flight backup run between init and commit.

    ``version_id`` is a second unique key: uploads name the version, not the session.
    """

    __tablename__ = "upload_sessions"

    session_key: Mapped[str] = mapped_column(String, primary_key=True)
    version_id: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
    client_id: Mapped[str] = mapped_column(String, nullable=False)
    date: Mapped[str] = mapped_column(String, nullable=False)
    day_index: Mapped[int] = mapped_column(Integer, nullable=False)
    version_path: Mapped[str] = mapped_column(Text, nullable=False)
    provisional_files: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)


class BackupDay(Base):
    """Day bucket, keyed by its folder label ``date-[YYYY-MM-DD] (day N)``."""

    __tablename__ = "backup_days"

    folder: Mapped[str] = mapped_column(String, primary_key=True)
    date: Mapped[str] = mapped_column(String, nullable=False, index=True)
    day_index: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)

    versions: Mapped[list[BackupVersion]] = relationship(
        back_populates="day",
        cascade="all, delete-orphan",
        order_by="BackupVersion.id",
    )


class BackupVersion(Base):
    """A committed, immutable snapshot."""

    __tablename__ = "backup_versions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    version_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    day_folder: Mapped[str] = mapped_column(
        String, ForeignKey("backup_days.folder", ondelete="CASCADE"), nullable=False
    )
    path: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)
    file_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    client_id: Mapped[str] = mapped_column(String, nullable=False, default="")

    day: Mapped[BackupDay] = relationship(back_populates="versions")
