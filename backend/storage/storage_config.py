"""TOML reader/writer for storage.toml (storage location list and active index)."""

from __future__ import annotations

import contextlib
import os
import tempfile
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomli_w


@dataclass
class StorageConfig:
    """Ordered blob directories; ``active_index`` selects the write target."""

    locations: list[Path] = field(default_factory=list)
    active_index: int = 0

    @property
    def active_location(self) -> Path:
        return self.locations[self.active_index]


def parse_storage_config(config_path: Path, default_location: Path) -> StorageConfig:
    """Parse storage.toml, falling back to a single default location."""
    if not config_path.exists():
        return StorageConfig(locations=[default_location], active_index=0)

    data = tomllib.loads(config_path.read_text(encoding="utf-8"))
    storage_data: dict[str, Any] = data.get("storage", {})

    raw_locations = storage_data.get("locations", [])
    if not isinstance(raw_locations, list) or not all(isinstance(p, str) for p in raw_locations):
        msg = f"storage.locations must be a list of paths in {config_path}"
        raise ValueError(msg)
    locations = [Path(p) for p in raw_locations] or [default_location]

    active_index = storage_data.get("active_index", 0)
    if not isinstance(active_index, int) or not 0 <= active_index < len(locations):
        msg = f"storage.active_index out of range in {config_path}: {active_index}"
        raise ValueError(msg)

    return StorageConfig(locations=locations, active_index=active_index)


def write_storage_config(config_path: Path, config: StorageConfig) -> None:
    """Atomically write the storage configuration."""
    payload = {
        "storage": {
            "locations": [str(p) for p in config.locations],
            "active_index": config.active_index,
        }
    }
    atomic_write_bytes(config_path, tomli_w.dumps(payload).encode("utf-8"))


def atomic_write_bytes(target: Path, data: bytes) -> None:
    """Write ``data`` to ``target`` via a unique temp file and rename."""
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        tmp_path.replace(target)
    except BaseException:
        with contextlib.suppress(OSError):
            tmp_path.unlink()
        raise
