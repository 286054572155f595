"""CLI backup client for hashvault: scan, hash, negotiate, upload with resume, commit."""

from __future__ import annotations

import argparse
import hashlib
import json
import logging
import os
import socket
import sys
import threading
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

import httpx

from cli.exclusions import DEFAULT_EXCLUSIONS, ExclusionMatcher
from cli.retry import constant_delay, linear_delay, retry_call
from cli.scheduler import BackupScheduler

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

CONFIG_FILE = ".hashvault-backup.json"
_LOCALHOST_HOSTS = {"localhost", "127.0.0.1", "::1"}
_READ_CHUNK = 1024 * 1024

EVENT_STARTED = "started"
EVENT_PROGRESS = "progress"
EVENT_FILE_UPLOADED = "file_uploaded"
EVENT_COMPLETED = "completed"
EVENT_FAILED = "failed"
EVENTS = (EVENT_STARTED, EVENT_PROGRESS, EVENT_FILE_UPLOADED, EVENT_COMPLETED, EVENT_FAILED)


# ── Configuration ────────────────────────────────────────


@dataclass
class ClientConfig:
    server_url: str = "http://localhost:8080"
    timeout: float = 60.0
    retry_attempts: int = 3
    retry_delay: float = 5.0
    token: str = ""
    client_id: str = field(default_factory=socket.gethostname)
    sources: list[str] = field(default_factory=list)
    exclusions: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUSIONS))
    parallel_uploads: int = 3
    schedule_times: list[str] = field(default_factory=lambda: ["02:00", "14:00", "22:00"])

    def __post_init__(self) -> None:
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        if self.parallel_uploads < 1:
            raise ValueError("parallel_uploads must be at least 1")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")


def load_config(config_path: Path) -> ClientConfig:
    """Load client config from file; defaults when the file does not exist."""
    if not config_path.exists():
        return ClientConfig()
    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in {config_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"Config file {config_path} must contain a JSON object")
    known = {f.name for f in fields(ClientConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        logger.warning("Ignoring unknown config keys in %s: %s", config_path, ", ".join(unknown))
    return ClientConfig(**{k: v for k, v in data.items() if k in known})


def save_config(config_path: Path, config: ClientConfig) -> None:
    """Save client config to file."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(asdict(config), indent=2), encoding="utf-8")


def validate_server_url(server_url: str, allow_insecure_http: bool = False) -> str:
    """Validate server URL and enforce HTTPS for non-localhost hosts by default."""
    normalized = server_url.strip().rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("Server URL must include scheme and host (e.g. https://example.com)")

    hostname = parsed.hostname
    if parsed.scheme == "http" and not allow_insecure_http and hostname not in _LOCALHOST_HOSTS:
        raise ValueError(
            "HTTPS is required for non-localhost servers. "
            "Use --allow-insecure-http only on trusted networks."
        )

    return normalized


# ── Scanning and hashing ─────────────────────────────────


@dataclass
class FileEntry:
    relpath: str
    path: Path
    size: int
    mtime: float
    sha: str = ""

    def manifest_entry(self) -> dict[str, Any]:
        return {"relpath": self.relpath, "size": self.size, "mtime": self.mtime, "sha": self.sha}


@dataclass
class FileError:
    path: str
    error: str


def hash_file(path: Path) -> str:
    """Compute SHA-256 hash of a file."""
    sha = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_READ_CHUNK), b""):
            sha.update(chunk)
    return sha.hexdigest()


def scan_tree(root: Path, matcher: ExclusionMatcher) -> tuple[list[FileEntry], list[FileError]]:
    """Walk ``root`` and collect readable, non-excluded regular files."""
    entries: list[FileEntry] = []
    errors: list[FileError] = []

    def _on_walk_error(exc: OSError) -> None:
        where = Path(exc.filename).relative_to(root).as_posix() if exc.filename else "."
        logger.warning("Cannot read directory %s: %s", where, exc.strerror)
        errors.append(FileError(path=where, error=exc.strerror or str(exc)))

    for dirpath, dirnames, filenames in os.walk(root, onerror=_on_walk_error):
        current = Path(dirpath)
        dirnames[:] = sorted(
            d
            for d in dirnames
            if not matcher.excludes_dir((current / d).relative_to(root).as_posix())
        )
        for filename in sorted(filenames):
            full = current / filename
            rel = full.relative_to(root).as_posix()
            if matcher.excludes(rel):
                continue
            if not full.is_file():
                continue
            if not os.access(full, os.R_OK):
                logger.warning("Cannot access file: %s", rel)
                errors.append(FileError(path=rel, error="Access denied"))
                continue
            try:
                stat = full.stat()
            except OSError as exc:
                errors.append(FileError(path=rel, error=exc.strerror or str(exc)))
                continue
            entries.append(
                FileEntry(relpath=rel, path=full, size=stat.st_size, mtime=stat.st_mtime)
            )
    return entries, errors


# ── Engine ───────────────────────────────────────────────


class UploadError(Exception):
    """An upload attempt ended without the server holding the complete blob."""


def _response_data(resp: httpx.Response, endpoint: str) -> dict[str, Any]:
    """Decode a JSON object body; anything else is a failed attempt."""
    try:
        data = resp.json()
    except ValueError as exc:
        raise UploadError(f"Malformed response from {endpoint}: {exc}") from exc
    if not isinstance(data, dict):
        raise UploadError(f"Malformed response from {endpoint}: expected an object")
    return data


def _byte_count(data: dict[str, Any], endpoint: str) -> int:
    value = data.get("bytes", 0)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise UploadError(f"Invalid byte count from {endpoint}: {value!r}")
    return value


@dataclass
class RunResult:
    success: bool
    message: str = ""
    source: str = ""
    date: str = ""
    day_index: int | None = None
    version_id: str | None = None
    files_scanned: int = 0
    bytes_scanned: int = 0
    files_uploaded: int = 0
    bytes_uploaded: int = 0
    upload_errors: int = 0
    dangling_hashes: list[str] = field(default_factory=list)
    errors: list[FileError] = field(default_factory=list)
    duration: float = 0.0


class BackupEngine:
    """Runs backups of local directories against one hashvault server.

    Listeners registered with :meth:`on` receive lifecycle events
    (``started``, ``progress``, ``file_uploaded``, ``completed``, ``failed``)
    as plain dict payloads.  Listener exceptions are logged and ignored.
    """

    def __init__(
        self,
        config: ClientConfig,
        http_client: httpx.Client | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        headers = {"Authorization": f"Bearer {config.token}"} if config.token else {}
        self.client = http_client or httpx.Client(
            base_url=config.server_url.rstrip("/"),
            headers=headers,
            timeout=config.timeout,
        )
        self._sleep = sleep
        self._in_flight = threading.Lock()
        self._stats_lock = threading.Lock()
        self._listeners: dict[str, list[Callable[[dict[str, Any]], None]]] = defaultdict(list)

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self) -> BackupEngine:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # Events

    def on(self, event: str, callback: Callable[[dict[str, Any]], None]) -> None:
        if event not in EVENTS:
            raise ValueError(f"Unknown event: {event}")
        self._listeners[event].append(callback)

    def _emit(self, event: str, payload: dict[str, Any]) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(payload)
            except Exception:
                logger.exception("Listener for %s raised", event)

    # Steps

    def _hash_entries(
        self, entries: list[FileEntry], errors: list[FileError]
    ) -> list[FileEntry]:
        hashed: list[FileEntry] = []
        total = len(entries)
        for position, entry in enumerate(entries, start=1):
            try:
                entry.sha = retry_call(
                    lambda e=entry: hash_file(e.path),
                    self.config.retry_attempts,
                    linear_delay(1.0),
                    retry_on=(OSError,),
                    label=f"hash {entry.relpath}",
                    sleep=self._sleep,
                )
            except OSError as exc:
                logger.error("Failed to hash %s: %s", entry.relpath, exc)
                errors.append(FileError(path=entry.relpath, error=f"Hash failed: {exc}"))
                continue
            hashed.append(entry)
            self._emit(
                EVENT_PROGRESS,
                {"current": position, "total": total, "file": entry.relpath, "size": entry.size},
            )
        return hashed

    def _remote_offset(self, sha: str) -> int:
        resp = self.client.get("/file-offset", params={"sha": sha})
        resp.raise_for_status()
        data = _response_data(resp, "/file-offset")
        if not data.get("exists"):
            return 0
        return _byte_count(data, "/file-offset")

    def _upload_once(self, entry: FileEntry, version_id: str) -> str:
        """One upload attempt: resume from the server offset, restart once on conflict."""
        offset = min(self._remote_offset(entry.sha), entry.size)
        for _ in range(2):
            with open(entry.path, "rb") as f:
                f.seek(offset)
                resp = self.client.post(
                    "/upload-file",
                    params={"sha": entry.sha, "relpath": entry.relpath, "versionId": version_id},
                    headers={
                        "x-start-byte": str(offset),
                        "x-filesize": str(entry.size),
                        "Content-Type": "application/octet-stream",
                    },
                    content=iter(lambda: f.read(_READ_CHUNK), b""),
                )
            if resp.status_code == 409:
                stored = _byte_count(_response_data(resp, "/upload-file"), "/upload-file")
                offset = min(stored, entry.size)
                logger.info("Offset conflict for %s; resuming at %d", entry.relpath, offset)
                continue
            resp.raise_for_status()
            status = _response_data(resp, "/upload-file").get("status")
            if status == "partial":
                raise UploadError(f"Server holds only part of {entry.relpath}")
            if status not in ("ok", "exists"):
                raise UploadError(f"Unexpected upload status for {entry.relpath}: {status!r}")
            return status
        raise UploadError(f"Offset conflict persisted for {entry.relpath}")

    def upload_file(self, entry: FileEntry, version_id: str) -> str:
        """Upload one file with the configured retry budget; returns the server status."""
        return retry_call(
            lambda: self._upload_once(entry, version_id),
            self.config.retry_attempts,
            constant_delay(self.config.retry_delay),
            retry_on=(httpx.HTTPError, OSError, UploadError),
            label=f"upload {entry.relpath}",
            sleep=self._sleep,
        )

    def _upload_missing(
        self,
        missing: list[str],
        by_sha: dict[str, FileEntry],
        version_id: str,
        result: RunResult,
    ) -> None:
        def _worker(sha: str) -> None:
            entry = by_sha.get(sha)
            if entry is None:
                logger.warning("Server requested unknown hash: %s", sha)
                return
            try:
                self.upload_file(entry, version_id)
            except (httpx.HTTPError, OSError, UploadError) as exc:
                logger.error(
                    "Upload failed after %d attempts: %s (%s)",
                    self.config.retry_attempts,
                    entry.relpath,
                    exc,
                )
                with self._stats_lock:
                    result.upload_errors += 1
                    result.errors.append(
                        FileError(path=entry.relpath, error=f"Upload failed: {exc}")
                    )
                return
            with self._stats_lock:
                result.files_uploaded += 1
                result.bytes_uploaded += entry.size
            self._emit(EVENT_FILE_UPLOADED, {"file": entry.relpath, "size": entry.size})

        workers = max(1, min(self.config.parallel_uploads, len(missing)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="upload") as pool:
            list(pool.map(_worker, missing))

    def run_backup(self, source: str | Path) -> RunResult:
        """Back up one directory. Never raises; failures come back as ``success=False``."""
        if not self._in_flight.acquire(blocking=False):
            logger.warning("Backup already running; request for %s rejected", source)
            return RunResult(
                success=False, message="A backup is already running", source=str(source)
            )

        started = time.monotonic()
        result = RunResult(success=False, source=str(source))
        result.date = datetime.now(UTC).date().isoformat()
        try:
            root = Path(source).expanduser().resolve()
            if not root.is_dir():
                raise ValueError(f"Source is not a directory: {root}")
            logger.info("Starting backup: %s -> %s", root, self.client.base_url)
            self._emit(EVENT_STARTED, {"root": str(root), "receiver": str(self.client.base_url)})

            scanned, errors = scan_tree(root, ExclusionMatcher(self.config.exclusions))
            result.errors.extend(errors)
            entries = self._hash_entries(scanned, result.errors)
            result.files_scanned = len(entries)
            result.bytes_scanned = sum(e.size for e in entries)
            if not entries:
                result.message = "No files found"
                logger.warning("No files to back up in %s", root)
                return result

            manifest = [e.manifest_entry() for e in entries]
            resp = self.client.post(
                "/init-backup",
                json={"date": result.date, "clientId": self.config.client_id, "manifest": manifest},
            )
            resp.raise_for_status()
            init = resp.json()
            result.day_index = init["dayIndex"]
            result.version_id = init["versionId"]
            missing: list[str] = init["missingHashes"]
            logger.info("Server ready: version=%s, missing=%d", result.version_id, len(missing))

            if missing:
                by_sha = {e.sha: e for e in entries}
                self._upload_missing(missing, by_sha, init["versionId"], result)

            resp = self.client.post(
                "/commit-version",
                json={
                    "sessionKey": init["sessionKey"],
                    "manifest": manifest,
                    "extra": {"host": socket.gethostname(), "root": str(root)},
                },
            )
            resp.raise_for_status()
            result.dangling_hashes = resp.json().get("danglingHashes", [])
            if result.dangling_hashes:
                logger.warning(
                    "Version %s references %d hash(es) the server does not hold",
                    result.version_id,
                    len(result.dangling_hashes),
                )

            result.success = True
            result.message = "Backup completed"
            result.duration = time.monotonic() - started
            logger.info("Backup completed in %.1fs", result.duration)
            self._emit(EVENT_COMPLETED, asdict(result))
            return result
        except Exception as exc:
            result.success = False
            result.message = str(exc) or type(exc).__name__
            result.duration = time.monotonic() - started
            logger.error("Backup failed: %s", result.message, exc_info=True)
            self._emit(EVENT_FAILED, {"error": result.message, "duration": result.duration})
            return result
        finally:
            self._in_flight.release()

    def server_status(self) -> dict[str, Any]:
        """Health and storage totals of the server."""
        health = self.client.get("/api/health")
        health.raise_for_status()
        stats = self.client.get("/api/stats")
        stats.raise_for_status()
        return {"health": health.json(), "stats": stats.json()}


# ── CLI ──────────────────────────────────────────────────


def format_size(num: float) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if abs(num) < 1024:
            return f"{num:.1f} {unit}" if unit != "B" else f"{int(num)} B"
        num /= 1024
    return f"{num:.1f} TB"


def _print_result(result: RunResult) -> None:
    if not result.success:
        print(f"Backup of {result.source} failed: {result.message}")
        return
    print(f"Backup of {result.source} complete: {result.version_id} (day {result.day_index})")
    print(f"  Files:     {result.files_scanned} ({format_size(result.bytes_scanned)})")
    print(f"  Uploaded:  {result.files_uploaded} ({format_size(result.bytes_uploaded)})")
    print(f"  Errors:    {len(result.errors)}")
    for error in result.errors:
        print(f"    ! {error.path}: {error.error}")
    for sha in result.dangling_hashes:
        print(f"    ? missing on server: {sha}")
    print(f"  Duration:  {result.duration:.1f}s")


def _run_sources(engine: BackupEngine, sources: list[str]) -> bool:
    ok = True
    for source in sources:
        result = engine.run_backup(source)
        _print_result(result)
        ok = ok and result.success
    return ok


def _coerce_setting(config: ClientConfig, key: str, raw: str) -> Any:
    current = getattr(config, key)
    if isinstance(current, bool):
        return raw.lower() in {"1", "true", "yes", "on"}
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, list):
        return [item.strip() for item in raw.split(",") if item.strip()]
    return raw


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="hashvault-backup",
        description="Back up local directories to a hashvault server",
    )
    parser.add_argument(
        "--config",
        "-c",
        default=str(Path.home() / CONFIG_FILE),
        help=f"Config file (default: ~/{CONFIG_FILE})",
    )
    parser.add_argument(
        "--allow-insecure-http",
        action="store_true",
        help="Allow http:// server URLs for non-localhost hosts",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Log diagnostics")

    subparsers = parser.add_subparsers(dest="command")
    init_parser = subparsers.add_parser("init", help="Create the client configuration")
    init_parser.add_argument("--server", "-s", required=True, help="Server URL")
    init_parser.add_argument("--token", help="Shared API token")
    init_parser.add_argument("--source", action="append", default=[], help="Directory to back up")
    backup_parser = subparsers.add_parser("backup", help="Run a backup now")
    backup_parser.add_argument("path", nargs="?", help="Directory (default: configured sources)")
    subparsers.add_parser("daemon", help="Run backups at the scheduled times")
    subparsers.add_parser("status", help="Show server health and storage totals")
    config_parser = subparsers.add_parser("config", help="Show or change configuration")
    config_parser.add_argument("key", nargs="?", help="Setting to change")
    config_parser.add_argument("value", nargs="?", help="New value (lists are comma-separated)")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    config_path = Path(args.config).expanduser()

    if args.command == "init":
        try:
            server_url = validate_server_url(args.server, args.allow_insecure_http)
        except ValueError as exc:
            print(f"Error: {exc}")
            sys.exit(1)
        config = ClientConfig(
            server_url=server_url,
            token=args.token or "",
            sources=[str(Path(s).expanduser().resolve()) for s in args.source],
        )
        save_config(config_path, config)
        print(f"Initialized backup config in {config_path}")
        return

    try:
        config = load_config(config_path)
    except (ValueError, TypeError) as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if args.command == "config":
        if args.key is None:
            print(json.dumps(asdict(config), indent=2))
            return
        if args.key not in {f.name for f in fields(ClientConfig)} or args.value is None:
            keys = ", ".join(f.name for f in fields(ClientConfig))
            print(f"Error: usage: config <key> <value> (keys: {keys})")
            sys.exit(1)
        try:
            updated = ClientConfig(
                **{**asdict(config), args.key: _coerce_setting(config, args.key, args.value)}
            )
        except ValueError as exc:
            print(f"Error: {exc}")
            sys.exit(1)
        save_config(config_path, updated)
        print(f"Set {args.key} in {config_path}")
        return

    try:
        config.server_url = validate_server_url(config.server_url, args.allow_insecure_http)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    with BackupEngine(config) as engine:
        if args.command == "backup":
            sources = [args.path] if args.path else config.sources
            if not sources:
                print(
                    "Error: No sources configured. "
                    "Pass a path or run 'hashvault-backup init --source <dir>'."
                )
                sys.exit(1)
            engine.on(
                EVENT_FILE_UPLOADED,
                lambda event: print(f"  Upload: {event['file']} ({format_size(event['size'])})"),
            )
            if not _run_sources(engine, sources):
                sys.exit(1)

        elif args.command == "daemon":
            if not config.sources:
                print("Error: No sources configured.")
                sys.exit(1)
            scheduler = BackupScheduler(
                config.schedule_times, lambda: _run_sources(engine, config.sources)
            )
            print(f"Scheduled daily at {', '.join(config.schedule_times)}. Ctrl-C to stop.")
            try:
                scheduler.run_forever()
            except KeyboardInterrupt:
                scheduler.stop()

        elif args.command == "status":
            try:
                status = engine.server_status()
            except httpx.HTTPError as exc:
                print(f"Error: server unreachable or refused: {exc}")
                sys.exit(1)
            health = status["health"]
            stats = status["stats"]
            print("Server Status:")
            print(
                f"  Health:        {health['status']} "
                f"(db {health['database']}, storage {health['storage']})"
            )
            print(f"  Versions:      {stats['totalBackups']}")
            print(f"  Blobs:         {stats['totalFiles']} ({format_size(stats['totalStorage'])})")
            print(f"  Open sessions: {stats['openSessions']}")
        else:
            parser.print_help()


if __name__ == "__main__":
    main()
