"""systemd operations for the managed service.

Every method returns the raw :class:`CommandResult`; callers decide whether
a failure is fatal (``require``) or a logged risk.
"""

from __future__ import annotations

import logging
from pathlib import Path

from .config import ServiceConfig
from .errors import ServiceError
from .runner import CommandResult, CommandRunner

LOGGER = logging.getLogger(__name__)


class ServiceManager:
    """Thin wrapper around ``systemctl`` addressed by a fixed unit name."""

    def __init__(self, config: ServiceConfig, runner: CommandRunner) -> None:
        self._config = config
        self._runner = runner

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def unit_path(self) -> Path:
        return self._config.unit_path

    def _systemctl(self, *args: str, timeout_s: float | None = None) -> CommandResult:
        argv = ["systemctl", *args]
        LOGGER.debug("$ %s", " ".join(argv))
        result = self._runner.run(
            argv, timeout_s=timeout_s if timeout_s is not None else self._config.command_timeout_s
        )
        if not result.ok:
            LOGGER.debug("systemctl %s exit=%s: %s", args[0], result.returncode, result.detail())
        return result

    def start(self) -> CommandResult:
        return self._systemctl("start", self.name)

    def stop(self) -> CommandResult:
        return self._systemctl("stop", self.name)

    def restart(self) -> CommandResult:
        return self._systemctl("restart", self.name)

    def enable(self) -> CommandResult:
        return self._systemctl("enable", self.name)

    def disable(self) -> CommandResult:
        return self._systemctl("disable", self.name)

    def status(self) -> CommandResult:
        return self._systemctl("status", self.name, "--no-pager")

    def is_active(self) -> bool:
        return self._systemctl("is-active", "--quiet", self.name).ok

    def daemon_reload(self) -> CommandResult:
        return self._systemctl("daemon-reload")

    def stop_unit(self, unit: str) -> CommandResult:
        """Stop an auxiliary unit (e.g. the database server)."""
        return self._systemctl("stop", unit)

    def remove_unit_file(self) -> bool:
        """Delete the unit file; returns True if one was removed."""
        try:
            self.unit_path.unlink()
        except FileNotFoundError:
            return False
        LOGGER.info("Removed unit file %s", self.unit_path)
        return True

    @staticmethod
    def require(result: CommandResult, action: str) -> CommandResult:
        """Raise :class:`ServiceError` unless *result* succeeded."""
        if not result.ok:
            raise ServiceError(
                f"{action} failed (exit {result.returncode}): {result.detail()}",
                remediation="Inspect 'systemctl status' and 'journalctl -u' output.",
            )
        return result
