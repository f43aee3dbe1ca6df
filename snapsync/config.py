from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from urllib.parse import urlparse


CONFIG_FILENAME = ".snapsync.json"
STATE_DB_FILENAME = ".snapsync_state.db"
DEFAULT_BRANCH = "main"
DEFAULT_API_URL = "https://api.github.com"
GITHUB_HOSTS = {"github.com", "www.github.com"}


@dataclass(slots=True)
class EngineOptions:
    max_concurrency: int = 6
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    rate_limit_buffer: int = 10
    max_rate_limit_wait: float = 900.0
    min_request_interval: float = 0.0
    max_conflict_retries: int = 3
    propagation_delay: float = 2.0
    api_url: str = DEFAULT_API_URL

    @classmethod
    def from_dict(cls, data: dict | None) -> "EngineOptions":
        if not data:
            return cls()
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{key: value for key, value in data.items() if key in known})


@dataclass(slots=True)
class SnapSyncConfig:
    repo_id: str
    token: str
    local_root: str
    branch: str = DEFAULT_BRANCH
    compare_with_remote: bool = True
    engine: EngineOptions = field(default_factory=EngineOptions)

    @property
    def owner(self) -> str:
        return split_repo_id(self.repo_id)[0]

    @property
    def repo(self) -> str:
        return split_repo_id(self.repo_id)[1]

    @property
    def local_root_path(self) -> Path:
        return Path(self.local_root).resolve()

    @property
    def state_db_path(self) -> Path:
        return self.local_root_path / STATE_DB_FILENAME


def config_path(base_dir: Path | None = None) -> Path:
    return (base_dir or Path.cwd()).resolve() / CONFIG_FILENAME


def load_config(base_dir: Path | None = None) -> SnapSyncConfig:
    path = config_path(base_dir)
    if not path.exists():
        raise FileNotFoundError(
            f"Config file not found: {path}. Run `snapsync init <owner/repo>` first."
        )

    with path.open("r", encoding="utf-8") as fh:
        data = json.load(fh)

    return SnapSyncConfig(
        repo_id=normalize_repo_id(data["repo_id"]),
        token=data.get("token", ""),
        local_root=data["local_root"],
        branch=data.get("branch") or DEFAULT_BRANCH,
        compare_with_remote=bool(data.get("compare_with_remote", True)),
        engine=EngineOptions.from_dict(data.get("engine")),
    )


def save_config(config: SnapSyncConfig, base_dir: Path | None = None) -> Path:
    path = config_path(base_dir)
    payload = asdict(config)
    payload["repo_id"] = normalize_repo_id(str(payload["repo_id"]))
    with path.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2)
        fh.write("\n")
    return path


def default_token() -> str:
    return os.getenv("GITHUB_TOKEN", "") or os.getenv("GH_TOKEN", "")


def split_repo_id(repo_id: str) -> tuple[str, str]:
    parts = [part for part in normalize_repo_id(repo_id).split("/") if part]
    if len(parts) != 2:
        raise ValueError(f"Expected a repository id of the form owner/name, got {repo_id!r}")
    return parts[0], parts[1]


def normalize_repo_id(repo_id: str) -> str:
    value = (repo_id or "").strip()
    if not value:
        return value

    # scp-like SSH form (`git@github.com:owner/repo.git`)
    if value.startswith("git@github.com:"):
        value = value.split(":", 1)[1].strip()
        return _normalize_github_path(value)

    if value.startswith("ssh://"):
        parsed = urlparse(value)
        if parsed.hostname in GITHUB_HOSTS:
            return _normalize_github_path(parsed.path)
        return value

    if "://" not in value:
        if value.startswith("github.com/"):
            return _normalize_github_path(value[len("github.com/"):])
        return value.strip("/")

    parsed = urlparse(value)
    if parsed.hostname not in GITHUB_HOSTS:
        return value
    return _normalize_github_path(parsed.path)


def _normalize_github_path(path: str) -> str:
    parts = [part for part in path.strip("/").split("/") if part]
    if not parts:
        return path

    # Web URLs can point below the repository (`/owner/repo/tree/main/src`).
    if len(parts) >= 2:
        name = parts[1]
        if name.endswith(".git"):
            name = name[:-4]
        return f"{parts[0]}/{name}"
    return parts[0]
