"""Install, upgrade and uninstall orchestration for the Traccar service.

Upgrade sequence::

    1. stop service            (best effort, failure logged as a risk)
    2. snapshot unit/conf/data (fully flushed before anything is deleted)
    3. disable + remove unit   <- point of no return
    4. remove install dir
    5. extract + run installer
    6. restore snapshot
    7. reload, start, record version, clean up

Failures before step 3 leave the previous installation untouched (the
service is started again). Failures at or after step 3 are NOT rolled back
automatically: the installation is left as the last completed step produced
it, and the operator recovers manually from the snapshot directory, whose
location is logged with the error. The snapshot stays marked pending
(``upgrade.pending``) until an upgrade completes, and further upgrades are
refused while the mark exists, so a retry cannot overwrite the only copy of
the old configuration and data.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from .config import ToolsConfig
from .confirm import ConfirmFn, require_confirmation
from .errors import BackupIncomplete, InstallerError, TraccarToolsError, UserDeclined
from .installation import (
    InstallationLayout,
    InstallationState,
    read_installed_version,
    read_state,
    write_installed_version,
)
from .installer import VendorInstaller
from .lock import OperationLock
from .oplog import tail_log
from .release import LocalArchive, ReleaseFetcher, ReleaseInfo, is_newer
from .runner import CommandResult, CommandRunner, SubprocessRunner
from .service import ServiceManager
from .snapshot import (
    PENDING_FILE,
    BackupSnapshot,
    clear_pending,
    create_snapshot,
    load_snapshot,
    mark_pending,
    pending_upgrade,
    restore_snapshot,
)

LOGGER = logging.getLogger(__name__)

UPGRADE_STEPS = 7
POINT_OF_NO_RETURN_STEP = 3


@dataclass(slots=True, frozen=True)
class UpdateCheck:
    installed_version: str | None
    latest: ReleaseInfo

    @property
    def update_available(self) -> bool:
        if self.installed_version is None:
            return True
        return is_newer(self.latest.version, self.installed_version)


class UpgradeCoordinator:
    """Safe version transitions for one local Traccar installation."""

    def __init__(
        self,
        config: ToolsConfig,
        *,
        confirm: ConfirmFn,
        runner: CommandRunner | None = None,
        fetcher: ReleaseFetcher | None = None,
        service: ServiceManager | None = None,
        installer: VendorInstaller | None = None,
        lock: OperationLock | None = None,
    ) -> None:
        self._config = config
        self._confirm = confirm
        self._runner = runner or SubprocessRunner()
        self._fetcher = fetcher or ReleaseFetcher(config.release)
        self._service = service or ServiceManager(config.service, self._runner)
        self._installer = installer or VendorInstaller(config.release, self._runner)
        self._lock = lock or OperationLock(config.paths.lock_file)
        self._layout = InstallationLayout.from_config(config)
        self._current_step = 0

    @property
    def layout(self) -> InstallationLayout:
        return self._layout

    @property
    def service(self) -> ServiceManager:
        return self._service

    @property
    def lock(self) -> OperationLock:
        return self._lock

    @property
    def backup_dir(self) -> Path:
        return self._config.paths.backup_dir

    @property
    def work_dir(self) -> Path:
        return self._config.paths.work_dir

    def installation_state(self) -> InstallationState:
        return read_state(self._layout)

    def last_snapshot(self) -> BackupSnapshot | None:
        if not self.backup_dir.is_dir():
            return None
        return load_snapshot(
            self.backup_dir,
            unit_name=self._config.service.name,
            config_glob=self._layout.config_glob,
            data_glob=self._layout.data_glob,
        )

    # -- release -------------------------------------------------------------

    def fetch_latest_release(self) -> ReleaseInfo:
        return self._fetcher.fetch_latest_release()

    def check_latest(self) -> UpdateCheck:
        check = UpdateCheck(
            installed_version=read_installed_version(self._layout),
            latest=self.fetch_latest_release(),
        )
        LOGGER.info(
            "Installed=%s latest=%s update_available=%s",
            check.installed_version or "none",
            check.latest.version,
            "yes" if check.update_available else "no",
        )
        return check

    def confirm_and_download(self, release: ReleaseInfo) -> LocalArchive:
        """Ask before downloading; no I/O happens if the operator declines."""
        try:
            require_confirmation(self._confirm, f"Download version {release.version}?")
        except UserDeclined:
            LOGGER.info("Download skipped")
            raise
        with self._lock:
            dest = self.work_dir / self._config.release.archive_name
            archive = self._fetcher.download_archive(release, dest)
        LOGGER.info("Downloaded %s", dest.name)
        return archive

    # -- install / upgrade ---------------------------------------------------

    def install_fresh(self, archive: LocalArchive) -> str:
        """First-time install: run the installer, start, record the version."""
        with self._lock:
            state = self.installation_state()
            if state.installed:
                raise InstallerError(
                    f"Traccar is already installed in {self._layout.install_dir} "
                    f"(version {state.installed_version or 'unknown'})",
                    remediation="Use upgrade instead of install.",
                )
            self._installer.install(archive.path, self.work_dir)
            ServiceManager.require(self._service.start(), f"Starting {self._service.name}")
            LOGGER.info("Installed Traccar %s", archive.version)
            write_installed_version(self._layout, archive.version)
            self._installer.cleanup(self.work_dir)
        return archive.version

    def _step(self, number: int, description: str) -> None:
        self._current_step = number
        LOGGER.info("Upgrade step %d/%d: %s", number, UPGRADE_STEPS, description)

    def upgrade(self, archive: LocalArchive) -> str:
        """Replace the installation with *archive*, keeping config and data."""
        with self._lock:
            self._refuse_if_upgrade_pending()
            snapshot = self._prepare_upgrade(archive.version)
            try:
                self._replace_installation(archive, snapshot)
            except (TraccarToolsError, OSError) as exc:
                LOGGER.error(
                    "Upgrade to %s stopped at step %d/%d after the point of no return: %s. "
                    "No automatic rollback is performed; restore the unit file, conf/ and "
                    "data/ manually from %s",
                    archive.version,
                    self._current_step,
                    UPGRADE_STEPS,
                    exc,
                    snapshot.root,
                )
                if isinstance(exc, TraccarToolsError):
                    raise
                raise InstallerError(f"Filesystem error during upgrade: {exc}") from exc
            clear_pending(snapshot.root)
        LOGGER.info("Upgraded Traccar to %s", archive.version)
        return archive.version

    def _refuse_if_upgrade_pending(self) -> None:
        """An unfinished upgrade's snapshot is the only copy of the old state."""
        target = pending_upgrade(self.backup_dir)
        if target is None:
            return
        raise BackupIncomplete(
            f"A previous upgrade to {target} did not complete; {self.backup_dir} holds "
            "the only copy of the old unit file, configuration and data",
            remediation=(
                f"Restore the unit file, conf/ and data/ from {self.backup_dir}, then "
                f"delete {self.backup_dir / PENDING_FILE} before upgrading again."
            ),
        )

    def _prepare_upgrade(self, target_version: str) -> BackupSnapshot:
        """Steps 1-2; on failure the previous installation is untouched."""
        self._step(1, f"stopping {self._service.name}")
        stop = self._service.stop()
        if not stop.ok:
            LOGGER.warning(
                "RISK: could not stop %s (%s); in-flight datastore writes may be lost",
                self._service.name,
                stop.detail(),
            )

        self._step(2, f"snapshotting configuration and data to {self.backup_dir}")
        try:
            snapshot = create_snapshot(self._layout, self.backup_dir)
            mark_pending(snapshot.root, target_version)
            return snapshot
        except (OSError, TraccarToolsError) as exc:
            LOGGER.error("Snapshot failed, upgrade aborted before any deletion: %s", exc)
            restart = self._service.start()
            if not restart.ok:
                LOGGER.warning("Could not restart %s: %s", self._service.name, restart.detail())
            raise BackupIncomplete(
                f"Could not snapshot the installation: {exc}",
                remediation="Free disk space or fix permissions on the backup directory.",
            ) from exc

    def _replace_installation(self, archive: LocalArchive, snapshot: BackupSnapshot) -> None:
        """Steps 3-7; exceptions propagate without rollback."""
        self._step(POINT_OF_NO_RETURN_STEP, f"disabling and removing {self._service.name}")
        disable = self._service.disable()
        if not disable.ok:
            LOGGER.warning("Disabling %s failed: %s", self._service.name, disable.detail())
        self._service.remove_unit_file()
        ServiceManager.require(self._service.daemon_reload(), "systemctl daemon-reload")

        self._step(4, f"removing {self._layout.install_dir}")
        if self._layout.install_dir.exists():
            shutil.rmtree(self._layout.install_dir)

        self._step(5, f"installing Traccar {archive.version}")
        self._installer.install(archive.path, self.work_dir)

        self._step(6, f"restoring snapshot from {snapshot.root}")
        restore_snapshot(snapshot, self._layout)

        self._step(7, f"starting {self._service.name}")
        ServiceManager.require(self._service.daemon_reload(), "systemctl daemon-reload")
        ServiceManager.require(self._service.start(), f"Starting {self._service.name}")
        write_installed_version(self._layout, archive.version)
        self._installer.cleanup(self.work_dir)

    def install_latest(self) -> str:
        with self._lock:
            return self.install_fresh(self.confirm_and_download(self.fetch_latest_release()))

    def upgrade_latest(self) -> str:
        with self._lock:
            self._refuse_if_upgrade_pending()
            return self.upgrade(self.confirm_and_download(self.fetch_latest_release()))

    # -- other service operations -------------------------------------------

    def uninstall(self) -> None:
        """Remove the service and the whole installation directory."""
        try:
            require_confirmation(
                self._confirm, "Are you sure you want to uninstall Traccar and delete all data?"
            )
        except UserDeclined:
            LOGGER.info("Uninstallation of Traccar cancelled by user")
            raise
        with self._lock:
            LOGGER.info("Uninstalling Traccar ...")
            stop = self._service.stop()
            if not stop.ok:
                LOGGER.warning("Stopping %s failed: %s", self._service.name, stop.detail())
            disable = self._service.disable()
            if not disable.ok:
                LOGGER.warning("Disabling %s failed: %s", self._service.name, disable.detail())
            self._service.remove_unit_file()
            ServiceManager.require(self._service.daemon_reload(), "systemctl daemon-reload")
            if self._layout.install_dir.exists():
                shutil.rmtree(self._layout.install_dir)
            LOGGER.info("Traccar uninstalled")

    def restart(self) -> None:
        with self._lock:
            ServiceManager.require(self._service.restart(), f"Restarting {self._service.name}")
        LOGGER.info("Restarted %s", self._service.name)

    def status(self) -> CommandResult:
        # systemctl status exits non-zero for inactive units; the output is still useful.
        return self._service.status()

    def show_log(self) -> list[str]:
        return tail_log(self._config.log.file, self._config.log.tail_lines)
