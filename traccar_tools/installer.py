"""Archive extraction and vendor installer execution."""

from __future__ import annotations

import logging
import stat
import zipfile
from pathlib import Path

from .config import ReleaseConfig
from .errors import InstallerError
from .runner import CommandRunner, sudo_prefix

LOGGER = logging.getLogger(__name__)


def _safe_extractall(zf: zipfile.ZipFile, dest: Path) -> None:
    """Extract *zf* into *dest*, rejecting entries that escape the target directory."""
    dest_resolved = dest.resolve()
    for member in zf.infolist():
        target = (dest / member.filename).resolve()
        if not target.is_relative_to(dest_resolved):
            raise InstallerError(
                f"Archive entry '{member.filename}' would extract outside {dest}"
            )
    zf.extractall(dest)


class VendorInstaller:
    """Unpack a release archive and run the bundled installer."""

    def __init__(
        self,
        config: ReleaseConfig,
        runner: CommandRunner,
        *,
        timeout_s: float | None = None,
    ) -> None:
        self._config = config
        self._runner = runner
        self._timeout_s = timeout_s

    def installer_path(self, work_dir: Path) -> Path:
        return work_dir / self._config.installer_name

    def extract(self, archive: Path, work_dir: Path) -> Path:
        """Extract *archive* into *work_dir* and return the installer path."""
        work_dir.mkdir(parents=True, exist_ok=True)
        try:
            with zipfile.ZipFile(archive) as zf:
                _safe_extractall(zf, work_dir)
        except (zipfile.BadZipFile, OSError) as exc:
            raise InstallerError(f"Cannot extract {archive}: {exc}") from exc
        installer = self.installer_path(work_dir)
        if not installer.is_file():
            raise InstallerError(
                f"Archive {archive.name} does not contain {self._config.installer_name}"
            )
        installer.chmod(installer.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        LOGGER.info("Extracted %s", archive.name)
        return installer

    def run(self, installer: Path) -> None:
        """Run the installer with elevated privilege; exit code 0 is success."""
        argv = [*sudo_prefix(), str(installer)]
        LOGGER.info("Running installer %s", installer.name)
        result = self._runner.run(argv, timeout_s=self._timeout_s)
        if not result.ok:
            raise InstallerError(
                f"Installer {installer.name} exited with {result.returncode}: {result.detail()}"
            )
        LOGGER.info("Installer %s completed", installer.name)

    def install(self, archive: Path, work_dir: Path) -> None:
        self.run(self.extract(archive, work_dir))

    def cleanup(self, work_dir: Path) -> list[Path]:
        """Remove transient download artifacts; returns the removed paths."""
        removed: list[Path] = []
        for name in (
            self._config.archive_name,
            self._config.installer_name,
            self._config.readme_name,
        ):
            path = work_dir / name
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            removed.append(path)
        if removed:
            LOGGER.info("Removed %s", ", ".join(p.name for p in removed))
        return removed
