"""Backup snapshot of mutable installation state taken before a reinstall.

Snapshot directory structure::

    <backup_dir>/
        traccar.service     # unit file, if one was installed
        conf/*.xml          # configuration files
        data/*.db           # local datastore files
        snapshot.json       # manifest {created_at, version, files, sha256}
        upgrade.pending     # present while an upgrade using this snapshot is unfinished

A snapshot is built in a staging directory beside ``<backup_dir>``, every
file is fsynced, and only then is the staging directory renamed into place.
At most one snapshot is authoritative; a new one replaces the previous.
A snapshot marked pending belongs to an upgrade that never completed and
must not be replaced until the operator has recovered from it.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .errors import BackupIncomplete
from .installation import InstallationLayout, read_installed_version

LOGGER = logging.getLogger(__name__)

MANIFEST_FILE = "snapshot.json"
PENDING_FILE = "upgrade.pending"
CONF_SUBDIR = "conf"
DATA_SUBDIR = "data"


@dataclass(slots=True, frozen=True)
class BackupSnapshot:
    root: Path
    service_definition_copy: Path | None = None
    config_copies: tuple[Path, ...] = ()
    data_copies: tuple[Path, ...] = ()
    source_version: str | None = None
    created_at: str = ""
    checksums: dict[str, str] = field(default_factory=dict)

    def all_files(self) -> list[Path]:
        files = [*self.config_copies, *self.data_copies]
        if self.service_definition_copy is not None:
            files.insert(0, self.service_definition_copy)
        return files

    def to_dict(self) -> dict[str, Any]:
        return {
            "created_at": self.created_at,
            "version": self.source_version,
            "service_definition": (
                self.service_definition_copy.name if self.service_definition_copy else None
            ),
            "config_files": [p.name for p in self.config_copies],
            "data_files": [p.name for p in self.data_copies],
            "sha256": dict(self.checksums),
        }


def _file_sha256(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        while True:
            chunk = f.read(65536)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _fsync_dir(directory: Path) -> None:
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _copy_durable(src: Path, dest: Path) -> str:
    """Copy *src* to *dest*, flush it to disk and verify the content hash."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(src, dest)
    with open(dest, "rb+") as f:
        os.fsync(f.fileno())
    expected = _file_sha256(src)
    actual = _file_sha256(dest)
    if expected != actual:
        raise OSError(f"Copy of {src} to {dest} does not match source")
    return actual


def _checksum_key(root: Path, path: Path) -> str:
    return path.relative_to(root).as_posix()


def create_snapshot(layout: InstallationLayout, backup_dir: Path) -> BackupSnapshot:
    """Copy the unit file, config files and data files into *backup_dir*.

    Absent categories are not an error. Returns the activated snapshot;
    raises ``OSError`` (leaving any previous snapshot in place) on failure.
    """
    backup_dir.parent.mkdir(parents=True, exist_ok=True)
    staging = Path(
        tempfile.mkdtemp(prefix=f".{backup_dir.name}-staging-", dir=str(backup_dir.parent))
    )
    old: Path | None = None
    try:
        checksums: dict[str, str] = {}
        unit_copy: Path | None = None
        if layout.unit_path.is_file():
            unit_copy = staging / layout.unit_path.name
            checksums[unit_copy.name] = _copy_durable(layout.unit_path, unit_copy)

        conf_copies: list[Path] = []
        for src in layout.config_files():
            dest = staging / CONF_SUBDIR / src.name
            checksums[_checksum_key(staging, dest)] = _copy_durable(src, dest)
            conf_copies.append(dest)

        data_copies: list[Path] = []
        for src in layout.data_files():
            dest = staging / DATA_SUBDIR / src.name
            checksums[_checksum_key(staging, dest)] = _copy_durable(src, dest)
            data_copies.append(dest)

        staged = BackupSnapshot(
            root=staging,
            service_definition_copy=unit_copy,
            config_copies=tuple(conf_copies),
            data_copies=tuple(data_copies),
            source_version=read_installed_version(layout),
            created_at=datetime.now(UTC).isoformat(),
            checksums=checksums,
        )
        manifest = staging / MANIFEST_FILE
        with open(manifest, "w", encoding="utf-8") as f:
            f.write(json.dumps(staged.to_dict(), indent=2) + "\n")
            f.flush()
            os.fsync(f.fileno())
        for sub in (CONF_SUBDIR, DATA_SUBDIR):
            if (staging / sub).is_dir():
                _fsync_dir(staging / sub)
        _fsync_dir(staging)

        # Activation: previous snapshot moves aside, staging becomes current.
        if backup_dir.exists():
            old = backup_dir.with_name(f"{backup_dir.name}.old")
            if old.exists():
                shutil.rmtree(old)
            backup_dir.rename(old)
        staging.rename(backup_dir)
        _fsync_dir(backup_dir.parent)
        if old is not None and old.exists():
            shutil.rmtree(old)
    except BaseException:
        if old is not None and old.exists() and not backup_dir.exists():
            old.rename(backup_dir)
            LOGGER.info("Restored previous snapshot after activation failure")
        if staging.exists():
            shutil.rmtree(staging, ignore_errors=True)
        raise

    snapshot = load_snapshot(backup_dir)
    LOGGER.info(
        "Snapshot created in %s: unit=%s config=%d data=%d",
        backup_dir,
        "yes" if snapshot.service_definition_copy else "no",
        len(snapshot.config_copies),
        len(snapshot.data_copies),
    )
    return snapshot


def load_snapshot(
    backup_dir: Path,
    unit_name: str | None = None,
    *,
    config_glob: str = "*.xml",
    data_glob: str = "*.db",
) -> BackupSnapshot:
    """Load the snapshot in *backup_dir* from its manifest.

    Without a manifest the directory contents are scanned instead, using
    *unit_name* to recognise the unit file and the globs to pick files.
    """
    manifest_path = backup_dir / MANIFEST_FILE
    if manifest_path.is_file():
        try:
            data = json.loads(manifest_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            raise BackupIncomplete(f"Snapshot manifest is corrupt in {backup_dir}: {exc}") from exc
        unit = data.get("service_definition")
        return BackupSnapshot(
            root=backup_dir,
            service_definition_copy=backup_dir / unit if unit else None,
            config_copies=tuple(backup_dir / CONF_SUBDIR / n for n in data.get("config_files", [])),
            data_copies=tuple(backup_dir / DATA_SUBDIR / n for n in data.get("data_files", [])),
            source_version=data.get("version"),
            created_at=str(data.get("created_at", "")),
            checksums=dict(data.get("sha256") or {}),
        )

    unit_copy = backup_dir / unit_name if unit_name else None
    return BackupSnapshot(
        root=backup_dir,
        service_definition_copy=unit_copy if unit_copy and unit_copy.is_file() else None,
        config_copies=tuple(sorted((backup_dir / CONF_SUBDIR).glob(config_glob))),
        data_copies=tuple(sorted((backup_dir / DATA_SUBDIR).glob(data_glob))),
    )


def verify_snapshot(snapshot: BackupSnapshot) -> None:
    """Raise :class:`BackupIncomplete` if any recorded file is missing or altered."""
    missing = [str(p) for p in snapshot.all_files() if not p.is_file()]
    if missing:
        raise BackupIncomplete(
            f"Snapshot in {snapshot.root} is missing {len(missing)} file(s): {', '.join(missing)}",
            remediation="Recover the files manually before starting the service.",
        )
    for path in snapshot.all_files():
        expected = snapshot.checksums.get(_checksum_key(snapshot.root, path))
        if expected and _file_sha256(path) != expected:
            raise BackupIncomplete(f"Snapshot file {path} does not match its recorded checksum")


def restore_snapshot(snapshot: BackupSnapshot, layout: InstallationLayout) -> list[Path]:
    """Copy snapshot files back into the installation; returns restored paths.

    The whole snapshot is verified before anything is copied.
    """
    verify_snapshot(snapshot)
    restored: list[Path] = []
    if snapshot.service_definition_copy is not None:
        layout.unit_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(snapshot.service_definition_copy, layout.unit_path)
        restored.append(layout.unit_path)

    layout.conf_dir.mkdir(parents=True, exist_ok=True)
    for src in snapshot.config_copies:
        dest = layout.conf_dir / src.name
        shutil.copy2(src, dest)
        restored.append(dest)

    layout.data_dir.mkdir(parents=True, exist_ok=True)
    for src in snapshot.data_copies:
        dest = layout.data_dir / src.name
        shutil.copy2(src, dest)
        restored.append(dest)

    LOGGER.info("Restored %d file(s) from snapshot %s", len(restored), snapshot.root)
    return restored


def mark_pending(backup_dir: Path, target_version: str) -> None:
    """Record that an upgrade to *target_version* depends on this snapshot."""
    marker = backup_dir / PENDING_FILE
    with open(marker, "w", encoding="utf-8") as f:
        f.write(f"{target_version}\n")
        f.flush()
        os.fsync(f.fileno())
    _fsync_dir(backup_dir)


def clear_pending(backup_dir: Path) -> None:
    (backup_dir / PENDING_FILE).unlink(missing_ok=True)


def pending_upgrade(backup_dir: Path) -> str | None:
    """Target version of an unfinished upgrade, or None."""
    try:
        return (backup_dir / PENDING_FILE).read_text(encoding="utf-8").strip() or "unknown"
    except FileNotFoundError:
        return None
