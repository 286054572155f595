"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOCAL_HOSTS = {"127.0.0.1", "localhost", "::1"}


class Settings(BaseSettings):
    """Hashvault receiver settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    debug: bool = False
    expose_docs: bool = False

    # Paths
    data_dir: Path = Path("./data")
    database_url: str = ""
    # Seed for storage.toml on first start; afterwards the admin API owns the list.
    storage_locations: list[Path] = Field(default_factory=list)

    # Server
    host: str = "127.0.0.1"
    port: int = Field(default=8080, ge=1, le=65535)
    cors_origins: list[str] = Field(default_factory=list)

    # Shared credential; empty disables auth
    api_token: str = ""

    # Protocol
    strict_commit: bool = False
    max_upload_bytes: int = Field(default=64 * 1024 * 1024 * 1024, ge=1)
    session_stale_hours: int = Field(default=24, ge=1)

    @property
    def backups_dir(self) -> Path:
        """Directory holding the day/version hierarchy."""
        return self.data_dir / "backups"

    @property
    def default_store_dir(self) -> Path:
        """Blob directory used when no storage location is configured."""
        return self.data_dir / "store"

    @property
    def storage_config_path(self) -> Path:
        """Path of the persisted storage location list."""
        return self.data_dir / "storage.toml"

    @property
    def resolved_database_url(self) -> str:
        """Database URL, defaulting to a SQLite file inside the data directory."""
        if self.database_url:
            return self.database_url
        return f"sqlite+aiosqlite:///{self.data_dir / 'metadata.db'}"

    def validate_runtime_security(self) -> None:
        """Validate security-critical production settings."""
        if self.debug:
            return

        violations: list[str] = []
        if self.host not in _LOCAL_HOSTS and not self.api_token:
            violations.append("API_TOKEN must be set when listening on a non-local interface")
        if self.api_token and len(self.api_token) < 16:
            violations.append("API_TOKEN must be at least 16 characters")

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Insecure production configuration: {joined}")
