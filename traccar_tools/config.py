from __future__ import annotations

import logging
import os
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("/etc/traccar-tools/config.yaml")
CONFIG_PATH_ENV = "TRACCAR_TOOLS_CONFIG"

DEFAULT_CONFIG: dict[str, Any] = {
    "service": {
        "name": "traccar.service",
        "unit_dir": "/etc/systemd/system",
        "command_timeout_s": 60,
    },
    "paths": {
        "install_dir": "/opt/traccar",
        "backup_dir": "/root/backup",
        "work_dir": "/tmp/traccar-tools",
        "lock_file": "/run/traccar-tools.lock",
        "config_glob": "*.xml",
        "data_glob": "*.db",
    },
    "release": {
        "repo": "traccar/traccar",
        "asset_prefix": "traccar-linux-64-",
        "asset_suffix": ".zip",
        "archive_name": "traccar.zip",
        "installer_name": "traccar.run",
        "readme_name": "README.txt",
        "api_timeout_s": 30,
        "github_token": "",
    },
    "database": {
        "user": "root",
        "password": "root",
        "name": "traccar",
        "dump_dir": "/root/mysql_backup",
        "retention_days": 3,
        "compress": True,
        "mysql_service": "mysql",
    },
    "log": {
        "file": "/opt/traccar/logs/tracker-server.log",
        "tail_lines": 50,
    },
}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


@dataclass(slots=True, frozen=True)
class ServiceConfig:
    name: str
    unit_dir: Path
    command_timeout_s: float

    @property
    def unit_path(self) -> Path:
        return self.unit_dir / self.name


@dataclass(slots=True, frozen=True)
class PathsConfig:
    install_dir: Path
    backup_dir: Path
    work_dir: Path
    lock_file: Path
    config_glob: str
    data_glob: str


@dataclass(slots=True, frozen=True)
class ReleaseConfig:
    repo: str
    asset_prefix: str
    asset_suffix: str
    archive_name: str
    installer_name: str
    readme_name: str
    api_timeout_s: float
    github_token: str

    @property
    def latest_url(self) -> str:
        return f"https://api.github.com/repos/{self.repo}/releases/latest"


@dataclass(slots=True, frozen=True)
class DatabaseConfig:
    user: str
    password: str
    name: str
    dump_dir: Path
    retention_days: int
    compress: bool
    mysql_service: str

    def __post_init__(self) -> None:
        if not isinstance(self.retention_days, int) or self.retention_days < 0:
            raise ConfigError(
                f"database.retention_days must be a non-negative integer, "
                f"got {self.retention_days!r}"
            )


@dataclass(slots=True, frozen=True)
class LogConfig:
    file: Path
    tail_lines: int


@dataclass(slots=True, frozen=True)
class ToolsConfig:
    service: ServiceConfig
    paths: PathsConfig
    release: ReleaseConfig
    database: DatabaseConfig
    log: LogConfig
    config_path: Path | None = None


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"{path} is not valid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a YAML object at the top level.")
    return data


def default_config() -> ToolsConfig:
    """Build a configuration from built-in defaults only."""
    return build_config(deepcopy(DEFAULT_CONFIG))


def build_config(merged: dict[str, Any], config_path: Path | None = None) -> ToolsConfig:
    try:
        service = merged["service"]
        paths = merged["paths"]
        release = merged["release"]
        database = merged["database"]
        log = merged["log"]
        return ToolsConfig(
            service=ServiceConfig(
                name=str(service["name"]),
                unit_dir=Path(service["unit_dir"]),
                command_timeout_s=float(service["command_timeout_s"]),
            ),
            paths=PathsConfig(
                install_dir=Path(paths["install_dir"]),
                backup_dir=Path(paths["backup_dir"]),
                work_dir=Path(paths["work_dir"]),
                lock_file=Path(paths["lock_file"]),
                config_glob=str(paths["config_glob"]),
                data_glob=str(paths["data_glob"]),
            ),
            release=ReleaseConfig(
                repo=str(release["repo"]),
                asset_prefix=str(release["asset_prefix"]),
                asset_suffix=str(release["asset_suffix"]),
                archive_name=str(release["archive_name"]),
                installer_name=str(release["installer_name"]),
                readme_name=str(release["readme_name"]),
                api_timeout_s=float(release["api_timeout_s"]),
                github_token=str(release["github_token"] or os.environ.get("GITHUB_TOKEN", "")),
            ),
            database=DatabaseConfig(
                user=str(database["user"]),
                password=str(database["password"]),
                name=str(database["name"]),
                dump_dir=Path(database["dump_dir"]),
                retention_days=database["retention_days"],
                compress=bool(database["compress"]),
                mysql_service=str(database["mysql_service"]),
            ),
            log=LogConfig(
                file=Path(log["file"]),
                tail_lines=max(1, int(log["tail_lines"])),
            ),
            config_path=config_path,
        )
    except (KeyError, TypeError, ValueError) as exc:
        if isinstance(exc, ConfigError):
            raise
        raise ConfigError(f"Invalid configuration: {exc}") from exc


def load_config(config_path: Path | None = None) -> ToolsConfig:
    path = config_path or Path(os.environ.get(CONFIG_PATH_ENV, str(DEFAULT_CONFIG_PATH)))
    override = _read_config_file(path)
    merged = _deep_merge(DEFAULT_CONFIG, override)
    config = build_config(merged, config_path=path)
    LOGGER.debug(
        "Loaded config=%s install_dir=%s backup_dir=%s",
        path,
        config.paths.install_dir,
        config.paths.backup_dir,
    )
    return config
