"""Tests for storage.toml parsing and atomic writes."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

from backend.storage.storage_config import (
    StorageConfig,
    atomic_write_bytes,
    parse_storage_config,
    write_storage_config,
)


class TestParseStorageConfig:
    def test_missing_file_uses_default(self, tmp_path: Path) -> None:
        config = parse_storage_config(tmp_path / "storage.toml", tmp_path / "store")
        assert config.locations == [tmp_path / "store"]
        assert config.active_index == 0

    def test_round_trip(self, tmp_path: Path) -> None:
        path = tmp_path / "storage.toml"
        write_storage_config(path, StorageConfig([Path("/mnt/a"), Path("/mnt/b")], 1))

        config = parse_storage_config(path, tmp_path / "store")

        assert config.locations == [Path("/mnt/a"), Path("/mnt/b")]
        assert config.active_location == Path("/mnt/b")

    def test_empty_location_list_falls_back(self, tmp_path: Path) -> None:
        path = tmp_path / "storage.toml"
        path.write_text("[storage]\nlocations = []\n")
        assert parse_storage_config(path, tmp_path / "store").locations == [tmp_path / "store"]

    def test_active_index_out_of_range(self, tmp_path: Path) -> None:
        path = tmp_path / "storage.toml"
        path.write_text('[storage]\nlocations = ["/a"]\nactive_index = 3\n')
        with pytest.raises(ValueError, match="active_index"):
            parse_storage_config(path, tmp_path / "store")

    def test_locations_must_be_strings(self, tmp_path: Path) -> None:
        path = tmp_path / "storage.toml"
        path.write_text("[storage]\nlocations = [1, 2]\n")
        with pytest.raises(ValueError, match="list of paths"):
            parse_storage_config(path, tmp_path / "store")


class TestAtomicWrite:
    def test_creates_parent_and_replaces(self, tmp_path: Path) -> None:
        target = tmp_path / "nested" / "file.json"
        atomic_write_bytes(target, b"one")
        atomic_write_bytes(target, b"two")

        assert target.read_bytes() == b"two"
        assert [p.name for p in target.parent.iterdir()] == ["file.json"]

    def test_failed_rename_leaves_no_temp_file(self, tmp_path: Path) -> None:
        target = tmp_path / "file.json"
        target.write_bytes(b"original")

        with (
            patch.object(Path, "replace", side_effect=OSError("disk full")),
            pytest.raises(OSError, match="disk full"),
        ):
            atomic_write_bytes(target, b"new")

        assert target.read_bytes() == b"original"
        assert [p.name for p in tmp_path.iterdir()] == ["file.json"]
