from __future__ import annotations

import json
import os
import uuid
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from urllib.parse import urlparse


CONFIG_FILENAME = ".ctxsync.json"
SESSION_FILENAME = "session.json"
STATE_DIR_ENV = "CTXSYNC_STATE_DIR"
API_URL_ENV = "CTXSYNC_API_URL"
DEFAULT_STATE_DIR = Path.home() / ".ctxsync"

# Fixed namespace so the same workspace root always maps to the same state file.
WORKSPACE_NAMESPACE = uuid.UUID("6ba7b810-9dad-11d1-80b4-00c04fd430c8")


@dataclass(slots=True)
class SyncConfig:
    workspace_root: str
    api_url: str = ""
    state_dir: str = ""
    include_patterns: list[str] = field(default_factory=list)
    ignore_patterns: list[str] = field(default_factory=list)
    hash_workers: int = 8
    upload_workers: int = 6
    max_attempts: int = 4
    base_delay_seconds: float = 1.0
    upload_timeout_seconds: float = 120.0
    refresh_timeout_seconds: float = 30.0
    cache_capacity_bytes: int = 256 * 1024 * 1024
    max_file_bytes: int | None = 1024 * 1024
    follow_symlinks: bool = False
    skip_binary: bool = True

    def __post_init__(self) -> None:
        if self.hash_workers < 1 or self.upload_workers < 1:
            raise ValueError("hash_workers and upload_workers must be at least 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.cache_capacity_bytes < 0:
            raise ValueError("cache_capacity_bytes must not be negative")
        if self.api_url:
            self.api_url = normalize_api_url(self.api_url)

    @property
    def workspace_root_path(self) -> Path:
        return Path(self.workspace_root).resolve()

    @property
    def state_dir_path(self) -> Path:
        if self.state_dir:
            return Path(self.state_dir).expanduser().resolve()
        env_dir = os.getenv(STATE_DIR_ENV, "").strip()
        if env_dir:
            return Path(env_dir).expanduser().resolve()
        return DEFAULT_STATE_DIR

    @property
    def workspace_id(self) -> str:
        return workspace_id_for(self.workspace_root_path)

    @property
    def cache_db_path(self) -> Path:
        return self.state_dir_path / "workspaces" / f"{self.workspace_id}.db"

    @property
    def session_path(self) -> Path:
        return self.state_dir_path / SESSION_FILENAME


def workspace_id_for(root: Path) -> str:
    normalized = str(root).replace("\\", "/")
    return str(uuid.uuid5(WORKSPACE_NAMESPACE, normalized))


def config_path(base_dir: Path | None = None) -> Path:
    return (base_dir or Path.cwd()).resolve() / CONFIG_FILENAME


def find_workspace_root(start: Path | None = None) -> Path:
    """Nearest ancestor holding a config file or a .git directory, else ``start``."""
    current = (start or Path.cwd()).resolve()
    for candidate in [current, *current.parents]:
        if (candidate / CONFIG_FILENAME).exists() or (candidate / ".git").exists():
            return candidate
    return current


def load_config(base_dir: Path | None = None) -> SyncConfig:
    path = config_path(base_dir)
    if not path.exists():
        raise FileNotFoundError(
            f"Config file not found: {path}. Run `ctxsync init` first."
        )

    with path.open("r", encoding="utf-8") as fh:
        data = json.load(fh)

    known = {item.name for item in fields(SyncConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown config key(s) in {path}: {', '.join(unknown)}")
    if "workspace_root" not in data:
        data["workspace_root"] = str(path.parent)

    config = SyncConfig(**data)
    env_url = os.getenv(API_URL_ENV, "").strip()
    if env_url:
        config.api_url = normalize_api_url(env_url)
    return config


def save_config(config: SyncConfig, base_dir: Path | None = None) -> Path:
    path = config_path(base_dir or config.workspace_root_path)
    payload = asdict(config)
    with path.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2)
        fh.write("\n")
    return path


def normalize_api_url(url: str) -> str:
    value = (url or "").strip()
    if not value:
        return value
    if "://" not in value:
        value = f"https://{value}"

    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.hostname:
        raise ValueError(f"Invalid API URL: {url}")
    # Endpoints are joined relative to the tenant URL.
    if not value.endswith("/"):
        value += "/"
    return value
