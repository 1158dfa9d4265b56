"""Shared fixtures and test doubles for the traccar_tools test suite."""

from __future__ import annotations

import logging
import zipfile
from collections.abc import Callable, Iterator
from copy import deepcopy
from pathlib import Path
from typing import Any

import pytest

from traccar_tools.config import DEFAULT_CONFIG, ToolsConfig, _deep_merge, build_config
from traccar_tools.installation import InstallationLayout
from traccar_tools.release import LocalArchive
from traccar_tools.runner import CommandResult, CommandRunner

Hook = Callable[[list[str], dict[str, Any]], None]

# ---------------------------------------------------------------------------
# Fake command runner
# ---------------------------------------------------------------------------


class FakeRunner(CommandRunner):
    """Test double that records argv and returns pre-configured responses.

    Matching is by substring of the space-joined command line; the first
    configured match wins, otherwise ``default_response`` is returned.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[list[str], dict[str, Any]]] = []
        self.responses: list[tuple[str, tuple[int, str, str]]] = []
        self.hooks: list[tuple[str, Hook]] = []
        self.outputs: list[tuple[str, bytes]] = []
        self.default_response: tuple[int, str, str] = (0, "", "")

    def set_response(self, match_substr: str, rc: int, stdout: str = "", stderr: str = "") -> None:
        self.responses.append((match_substr, (rc, stdout, stderr)))

    def on(self, match_substr: str, hook: Hook) -> None:
        """Call *hook(argv, kwargs)* whenever a matching command runs."""
        self.hooks.append((match_substr, hook))

    def set_output(self, match_substr: str, data: bytes) -> None:
        """Bytes written to ``stdout_path`` for matching commands."""
        self.outputs.append((match_substr, data))

    def run(
        self,
        argv: list[str],
        *,
        timeout_s: float | None = None,
        env: dict[str, str] | None = None,
        stdin_path: Path | None = None,
        stdout_path: Path | None = None,
    ) -> CommandResult:
        kwargs: dict[str, Any] = {
            "timeout_s": timeout_s,
            "env": env,
            "stdin_path": stdin_path,
            "stdout_path": stdout_path,
            "stdin_data": stdin_path.read_bytes() if stdin_path is not None else None,
        }
        self.calls.append((list(argv), kwargs))
        joined = " ".join(argv)
        for match_substr, hook in self.hooks:
            if match_substr in joined:
                hook(list(argv), kwargs)
        if stdout_path is not None:
            for match_substr, data in self.outputs:
                if match_substr in joined:
                    stdout_path.write_bytes(data)
                    break
        for match_substr, response in self.responses:
            if match_substr in joined:
                return CommandResult(*response)
        return CommandResult(*self.default_response)

    @property
    def commands(self) -> list[str]:
        return [" ".join(argv) for argv, _ in self.calls]

    def index_of(self, match_substr: str) -> int:
        """Position of the first command containing *match_substr*."""
        for index, command in enumerate(self.commands):
            if match_substr in command:
                return index
        raise AssertionError(f"no command matching {match_substr!r} in {self.commands}")


# ---------------------------------------------------------------------------
# Configuration and installation fixtures
# ---------------------------------------------------------------------------


def make_config(root: Path, overrides: dict[str, Any] | None = None) -> ToolsConfig:
    paths = {
        "service": {"unit_dir": str(root / "systemd")},
        "paths": {
            "install_dir": str(root / "opt" / "traccar"),
            "backup_dir": str(root / "backup"),
            "work_dir": str(root / "work"),
            "lock_file": str(root / "run" / "traccar-tools.lock"),
        },
        "database": {"dump_dir": str(root / "mysql_backup"), "password": "s3cr3t-pw"},
        "log": {"file": str(root / "logs" / "tracker-server.log")},
    }
    merged = _deep_merge(deepcopy(DEFAULT_CONFIG), paths)
    if overrides:
        merged = _deep_merge(merged, overrides)
    return build_config(merged)


@pytest.fixture
def config(tmp_path: Path) -> ToolsConfig:
    return make_config(tmp_path)


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def layout(config: ToolsConfig) -> InstallationLayout:
    return InstallationLayout.from_config(config)


def seed_installation(
    layout: InstallationLayout,
    *,
    unit: bool = True,
    conf: dict[str, bytes] | None = None,
    data: dict[str, bytes] | None = None,
    version: str | None = "6.6",
) -> None:
    """Lay out an existing Traccar installation on disk."""
    layout.install_dir.mkdir(parents=True, exist_ok=True)
    (layout.install_dir / "tracker-server.jar").write_bytes(b"old-jar")
    if unit:
        layout.unit_path.parent.mkdir(parents=True, exist_ok=True)
        layout.unit_path.write_text("[Unit]\nDescription=Traccar (old)\n")
    if conf is None:
        conf = {
            "traccar.xml": b"<properties><entry key='database.url'>jdbc:mysql</entry></properties>",
            "default.xml": b"<properties><!-- operator tuned --></properties>",
        }
    if data is None:
        data = {"database.mv.db": bytes(range(256)) * 16}
    if conf:
        layout.conf_dir.mkdir(parents=True, exist_ok=True)
        for name, content in conf.items():
            (layout.conf_dir / name).write_bytes(content)
    if data:
        layout.data_dir.mkdir(parents=True, exist_ok=True)
        for name, content in data.items():
            (layout.data_dir / name).write_bytes(content)
    if version is not None:
        layout.version_file.write_text(f"{version}\n")


def make_archive(
    work_dir: Path, version: str = "6.7.1", *, with_installer: bool = True
) -> LocalArchive:
    work_dir.mkdir(parents=True, exist_ok=True)
    path = work_dir / "traccar.zip"
    with zipfile.ZipFile(path, "w") as zf:
        if with_installer:
            zf.writestr("traccar.run", "#!/bin/sh\nexit 0\n")
        zf.writestr("README.txt", "Traccar installer\n")
    return LocalArchive(path=path, version=version, sha256="0" * 64, size=path.stat().st_size)


def fake_vendor_install(layout: InstallationLayout) -> Hook:
    """Emulate the vendor installer laying down a fresh installation."""

    def _hook(argv: list[str], kwargs: dict[str, Any]) -> None:
        layout.conf_dir.mkdir(parents=True, exist_ok=True)
        (layout.conf_dir / "default.xml").write_bytes(b"<properties><!-- vendor --></properties>")
        (layout.conf_dir / "traccar.xml").write_bytes(b"<properties><!-- h2 --></properties>")
        (layout.install_dir / "tracker-server.jar").write_bytes(b"new-jar")
        layout.unit_path.parent.mkdir(parents=True, exist_ok=True)
        layout.unit_path.write_text("[Unit]\nDescription=Traccar (vendor)\n")

    return _hook


def tree_digest(root: Path) -> dict[str, bytes]:
    """Relative path -> content for every file below *root*."""
    if not root.exists():
        return {}
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


@pytest.fixture(autouse=True)
def _restore_package_logger() -> Iterator[None]:
    """Undo handler changes made by ``configure_logging`` inside a test."""
    logger = logging.getLogger("traccar_tools")
    handlers = list(logger.handlers)
    level, propagate = logger.level, logger.propagate
    yield
    for handler in list(logger.handlers):
        if handler not in handlers:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(level)
    logger.propagate = propagate
