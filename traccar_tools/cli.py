from __future__ import annotations

import argparse
import logging
import os
import sys
from dataclasses import replace
from pathlib import Path

from .config import ToolsConfig, load_config
from .confirm import ConfirmFn, always_yes
from .console import OperatorConsole, prompt_confirm
from .coordinator import UpgradeCoordinator
from .database import DatabaseManager
from .errors import ConfigError
from .oplog import configure_logging
from .runner import CommandRunner, SubprocessRunner

LOGGER = logging.getLogger("traccar_tools.cli")

ACTIONS: dict[str, str] = {
    "uninstall": "1",
    "install": "2",
    "upgrade": "3",
    "restart": "4",
    "log": "5",
    "status": "6",
    "check-latest": "7",
    "backup-db": "8",
    "import-db": "9",
    "install-db": "10",
    "reset-db": "11",
}


def build_console(
    config: ToolsConfig,
    *,
    confirm: ConfirmFn,
    runner: CommandRunner | None = None,
    input_fn=input,
    output_fn=print,
) -> OperatorConsole:
    runner = runner or SubprocessRunner()
    coordinator = UpgradeCoordinator(config, confirm=confirm, runner=runner)
    database = DatabaseManager(
        config.database,
        runner,
        coordinator.service,
        conf_dir=coordinator.layout.conf_dir,
        metadata_timeout_s=config.service.command_timeout_s,
    )
    return OperatorConsole(
        coordinator, database, confirm=confirm, input_fn=input_fn, output_fn=output_fn
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="traccar-tools",
        description="Install, upgrade and back up a local Traccar server",
    )
    parser.add_argument(
        "action",
        nargs="?",
        choices=sorted(ACTIONS),
        help="Run a single action instead of the interactive menu",
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to config YAML")
    parser.add_argument("--log-file", type=Path, default=None, help="Override the log file")
    parser.add_argument(
        "--yes",
        action="store_true",
        help="Answer yes to confirmation prompts (single-action mode only)",
    )
    parser.add_argument("--debug", action="store_true", help="Log command lines")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2

    if args.log_file is not None:
        config = replace(config, log=replace(config.log, file=args.log_file))
    log_file = config.log.file
    try:
        configure_logging(log_file, level=logging.DEBUG if args.debug else logging.INFO)
    except OSError as exc:
        print(f"ERROR: cannot open log file {log_file}: {exc}", file=sys.stderr)
        return 2

    if os.geteuid() != 0:
        LOGGER.warning("Not running as root; service and package commands will likely fail")

    confirm: ConfirmFn = always_yes if (args.yes and args.action) else prompt_confirm
    console = build_console(config, confirm=confirm)
    if args.action is None:
        return console.run()

    item = next(i for i in console.items if i.key == ACTIONS[args.action])
    return 0 if console.run_action(item.label, item.action) else 1


if __name__ == "__main__":
    raise SystemExit(main())
