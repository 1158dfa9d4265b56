"""Tests for the installation layout, version record and vendor installer."""

from __future__ import annotations

import os
import stat
import zipfile
from pathlib import Path

import pytest
from conftest import FakeRunner, make_archive, seed_installation

from traccar_tools.config import ToolsConfig
from traccar_tools.errors import InstallerError
from traccar_tools.installation import (
    InstallationLayout,
    read_installed_version,
    read_state,
    write_installed_version,
)
from traccar_tools.installer import VendorInstaller


class TestVersionRecord:
    def test_missing(self, layout: InstallationLayout) -> None:
        assert read_installed_version(layout) is None

    def test_write_then_read(self, layout: InstallationLayout) -> None:
        write_installed_version(layout, "6.7.1")
        assert layout.version_file.read_text() == "6.7.1\n"
        assert read_installed_version(layout) == "6.7.1"

    def test_overwrite_leaves_no_temp_files(self, layout: InstallationLayout) -> None:
        write_installed_version(layout, "6.6")
        write_installed_version(layout, "6.7.1")
        assert [p.name for p in layout.install_dir.iterdir()] == ["version.txt"]

    def test_blank_record_is_none(self, layout: InstallationLayout) -> None:
        layout.install_dir.mkdir(parents=True)
        layout.version_file.write_text("\n")
        assert read_installed_version(layout) is None


class TestReadState:
    def test_empty_host(self, layout: InstallationLayout) -> None:
        state = read_state(layout)
        assert not state.installed
        assert state.config_files == frozenset()

    def test_existing_installation(self, layout: InstallationLayout) -> None:
        seed_installation(layout)
        state = read_state(layout)
        assert state.installed
        assert state.service_definition_present
        assert state.installed_version == "6.6"
        assert {p.name for p in state.config_files} == {"traccar.xml", "default.xml"}
        assert {p.name for p in state.data_files} == {"database.mv.db"}


class TestVendorInstaller:
    def test_extract_marks_installer_executable(
        self, config: ToolsConfig, runner: FakeRunner, tmp_path: Path
    ) -> None:
        archive = make_archive(tmp_path / "work")
        installer = VendorInstaller(config.release, runner)
        path = installer.extract(archive.path, tmp_path / "work")
        assert path.name == "traccar.run"
        assert path.stat().st_mode & stat.S_IXUSR

    def test_install_runs_installer(
        self, config: ToolsConfig, runner: FakeRunner, tmp_path: Path
    ) -> None:
        archive = make_archive(tmp_path / "work")
        VendorInstaller(config.release, runner).install(archive.path, tmp_path / "work")
        argv = runner.calls[-1][0]
        assert argv[-1] == str(tmp_path / "work" / "traccar.run")
        assert argv[0] == ("sudo" if os.geteuid() != 0 else argv[-1])

    def test_nonzero_exit(self, config: ToolsConfig, runner: FakeRunner, tmp_path: Path) -> None:
        archive = make_archive(tmp_path / "work")
        runner.set_response("traccar.run", 1, stderr="Java not found")
        with pytest.raises(InstallerError, match="Java not found"):
            VendorInstaller(config.release, runner).install(archive.path, tmp_path / "work")

    def test_archive_without_installer(
        self, config: ToolsConfig, runner: FakeRunner, tmp_path: Path
    ) -> None:
        archive = make_archive(tmp_path / "work", with_installer=False)
        with pytest.raises(InstallerError, match="does not contain"):
            VendorInstaller(config.release, runner).install(archive.path, tmp_path / "work")
        assert runner.calls == []

    def test_corrupt_archive(self, config: ToolsConfig, runner: FakeRunner, tmp_path: Path) -> None:
        bad = tmp_path / "traccar.zip"
        bad.write_bytes(b"not a zip")
        with pytest.raises(InstallerError, match="Cannot extract"):
            VendorInstaller(config.release, runner).extract(bad, tmp_path / "work")

    def test_path_traversal_rejected(
        self, config: ToolsConfig, runner: FakeRunner, tmp_path: Path
    ) -> None:
        evil = tmp_path / "evil.zip"
        with zipfile.ZipFile(evil, "w") as zf:
            zf.writestr("../escape.sh", "#!/bin/sh\n")
        with pytest.raises(InstallerError, match="outside"):
            VendorInstaller(config.release, runner).extract(evil, tmp_path / "work")
        assert not (tmp_path / "escape.sh").exists()

    def test_cleanup(self, config: ToolsConfig, runner: FakeRunner, tmp_path: Path) -> None:
        work = tmp_path / "work"
        archive = make_archive(work)
        installer = VendorInstaller(config.release, runner)
        installer.extract(archive.path, work)
        (work / "keep.log").write_text("x")
        removed = installer.cleanup(work)
        assert sorted(p.name for p in removed) == ["README.txt", "traccar.run", "traccar.zip"]
        assert [p.name for p in work.iterdir()] == ["keep.log"]
