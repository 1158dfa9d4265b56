"""On-disk footprint of the managed Traccar installation."""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from .config import ToolsConfig

LOGGER = logging.getLogger(__name__)

VERSION_FILE = "version.txt"


@dataclass(slots=True, frozen=True)
class InstallationLayout:
    install_dir: Path
    unit_path: Path
    config_glob: str = "*.xml"
    data_glob: str = "*.db"

    @classmethod
    def from_config(cls, config: ToolsConfig) -> InstallationLayout:
        return cls(
            install_dir=config.paths.install_dir,
            unit_path=config.service.unit_path,
            config_glob=config.paths.config_glob,
            data_glob=config.paths.data_glob,
        )

    @property
    def conf_dir(self) -> Path:
        return self.install_dir / "conf"

    @property
    def data_dir(self) -> Path:
        return self.install_dir / "data"

    @property
    def version_file(self) -> Path:
        return self.install_dir / VERSION_FILE

    def config_files(self) -> list[Path]:
        if not self.conf_dir.is_dir():
            return []
        return sorted(p for p in self.conf_dir.glob(self.config_glob) if p.is_file())

    def data_files(self) -> list[Path]:
        if not self.data_dir.is_dir():
            return []
        return sorted(p for p in self.data_dir.glob(self.data_glob) if p.is_file())


@dataclass(slots=True, frozen=True)
class InstallationState:
    """Snapshot of what is currently on disk; derived, never stored."""

    service_definition_present: bool
    config_files: frozenset[Path]
    data_files: frozenset[Path]
    installed_version: str | None

    @property
    def installed(self) -> bool:
        return self.installed_version is not None or self.service_definition_present


def read_installed_version(layout: InstallationLayout) -> str | None:
    try:
        text = layout.version_file.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except OSError as exc:
        LOGGER.warning("Cannot read version record %s: %s", layout.version_file, exc)
        return None
    return text or None


def write_installed_version(layout: InstallationLayout, version: str) -> None:
    """Overwrite the version record atomically (temp-file + ``os.replace``)."""
    target = layout.version_file
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(target.parent), prefix=".version_", suffix=".tmp")
    try:
        try:
            os.write(fd, f"{version}\n".encode())
            os.fsync(fd)
        finally:
            os.close(fd)
        os.replace(tmp, target)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
    LOGGER.info("Wrote version to %s", target)


def read_state(layout: InstallationLayout) -> InstallationState:
    return InstallationState(
        service_definition_present=layout.unit_path.is_file(),
        config_files=frozenset(layout.config_files()),
        data_files=frozenset(layout.data_files()),
        installed_version=read_installed_version(layout),
    )
