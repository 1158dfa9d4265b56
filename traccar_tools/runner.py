"""Command runner abstraction and log-redaction helpers."""

from __future__ import annotations

import logging
import os
import re
import subprocess
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path

LOGGER = logging.getLogger(__name__)

_SECRET_PATTERN = re.compile(r"(?i)(password|passwd|secret|token)\s*[=:]\s*\S+")

# ---------------------------------------------------------------------------
# Log sanitisation
# ---------------------------------------------------------------------------


def sanitize_log_line(line: str, secrets: tuple[str, ...] = ()) -> str:
    """Remove potential credential leaks from log lines."""
    for secret in secrets:
        if secret:
            line = line.replace(secret, "***")
    line = _SECRET_PATTERN.sub(r"\1=***", line)
    return line[:500]


def sudo_prefix() -> list[str]:
    """Return the sudo prefix for privileged commands."""
    if os.geteuid() == 0:
        return []
    return ["sudo"]


# ---------------------------------------------------------------------------
# Command runner
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def detail(self) -> str:
        """Best single-line explanation of a failure."""
        text = (self.stderr or self.stdout).strip()
        return text.splitlines()[-1] if text else f"exit code {self.returncode}"


class CommandRunner:
    """Execute external commands.  Override for testing."""

    def run(
        self,
        argv: list[str],
        *,
        timeout_s: float | None = None,
        env: dict[str, str] | None = None,
        stdin_path: Path | None = None,
        stdout_path: Path | None = None,
    ) -> CommandResult:
        """Run *argv* and return its result without raising on failure.

        ``stdin_path`` feeds a file to the process; ``stdout_path`` streams
        standard output into a file instead of capturing it.
        """
        raise NotImplementedError


class SubprocessRunner(CommandRunner):
    def run(
        self,
        argv: list[str],
        *,
        timeout_s: float | None = None,
        env: dict[str, str] | None = None,
        stdin_path: Path | None = None,
        stdout_path: Path | None = None,
    ) -> CommandResult:
        merged_env = {**os.environ, **(env or {})}
        with ExitStack() as stack:
            try:
                stdin = (
                    stack.enter_context(stdin_path.open("rb"))
                    if stdin_path is not None
                    else subprocess.DEVNULL
                )
                stdout = (
                    stack.enter_context(stdout_path.open("wb"))
                    if stdout_path is not None
                    else subprocess.PIPE
                )
            except OSError as exc:
                return CommandResult(returncode=1, stdout="", stderr=f"cannot open redirect: {exc}")
            try:
                completed = subprocess.run(
                    argv,
                    check=False,
                    stdin=stdin,
                    stdout=stdout,
                    stderr=subprocess.PIPE,
                    timeout=timeout_s,
                    env=merged_env,
                )
            except FileNotFoundError:
                return CommandResult(
                    returncode=127, stdout="", stderr=f"missing command: {argv[0]}"
                )
            except subprocess.TimeoutExpired:
                LOGGER.warning("Command timed out after %.0fs: %s", timeout_s, argv[0])
                return CommandResult(returncode=124, stdout="", stderr=f"timeout: {argv[0]}")
            except OSError as exc:
                return CommandResult(returncode=1, stdout="", stderr=str(exc))
        captured = completed.stdout if stdout_path is None else b""
        return CommandResult(
            returncode=completed.returncode,
            stdout=(captured or b"").decode(errors="replace").strip(),
            stderr=(completed.stderr or b"").decode(errors="replace").strip(),
        )
