"""Interactive numbered menu on top of the coordinator and database manager."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .confirm import ConfirmFn
from .coordinator import UpgradeCoordinator
from .database import DatabaseManager
from .errors import TraccarToolsError, UserDeclined

LOGGER = logging.getLogger(__name__)

RED = "\033[0;31m"
YELLOW = "\033[0;33m"
BLUE = "\033[0;36m"
NORMAL = "\033[0m"

EXIT_OPTION = "x"


def prompt_confirm(
    question: str,
    *,
    input_fn: Callable[[str], str] = input,
    output_fn: Callable[[str], None] = print,
) -> bool:
    """Ask until the operator answers y or n; end of input counts as no."""
    while True:
        try:
            answer = input_fn(f"{question} [y/n]: ").strip()
        except EOFError:
            LOGGER.info("User declined (no input): %s", question)
            return False
        if answer[:1] in ("y", "Y"):
            LOGGER.info("User confirmed: %s", question)
            return True
        if answer[:1] in ("n", "N"):
            LOGGER.info("User declined: %s", question)
            return False
        LOGGER.info("Invalid confirm input: %s", answer)
        output_fn("Please answer y or n.")


@dataclass(slots=True, frozen=True)
class MenuItem:
    key: str
    label: str
    action: Callable[[], None]
    danger: bool = False


class OperatorConsole:
    def __init__(
        self,
        coordinator: UpgradeCoordinator,
        database: DatabaseManager,
        *,
        confirm: ConfirmFn | None = None,
        input_fn: Callable[[str], str] = input,
        output_fn: Callable[[str], None] = print,
    ) -> None:
        self._coordinator = coordinator
        self._database = database
        self._input = input_fn
        self._output = output_fn
        self._confirm = confirm
        self._items = [
            MenuItem("1", "Uninstall Traccar", self.uninstall),
            MenuItem("2", "Install Traccar", self.install),
            MenuItem("3", "Upgrade Traccar", self.upgrade),
            MenuItem("4", "Restart Traccar", self.restart),
            MenuItem("5", "Show log", self.show_log),
            MenuItem("6", "Show status", self.show_status),
            MenuItem("7", "Check latest", self.check_latest),
            MenuItem("8", "Backup MySQL", self.backup_database),
            MenuItem("9", "Import MySQL", self.import_database),
            MenuItem("10", "Install MySQL server", self.install_database_server),
            MenuItem(
                "11", "Reset MySQL server (DANGER!)", self.reset_database_server, danger=True
            ),
        ]

    @property
    def items(self) -> list[MenuItem]:
        return list(self._items)

    # -- prompts -------------------------------------------------------------

    def prompt_confirm(self, question: str) -> bool:
        if self._confirm is not None:
            return self._confirm(question)
        return prompt_confirm(question, input_fn=self._input, output_fn=self._output)

    def print_menu(self) -> None:
        self._output(f"{BLUE}--- Traccar Tools Menu ---{NORMAL}")
        for item in self._items:
            label = f"{RED}{item.label}{NORMAL}" if item.danger else item.label
            self._output(f"{item.key}) {label}")
        self._output(f"{EXIT_OPTION}) Exit")

    # -- loop ----------------------------------------------------------------

    def dispatch(self, option: str) -> bool:
        """Run the action for *option*; returns False when the operator exits."""
        if option == EXIT_OPTION:
            LOGGER.info("Exiting script")
            self._output("Goodbye!")
            return False
        item = next((i for i in self._items if i.key == option), None)
        if item is None:
            LOGGER.info("Invalid option: %s", option)
            self._output(f"{RED}Invalid option{NORMAL}")
            return True
        self.run_action(item.label, item.action)
        return True

    def run_action(self, label: str, action: Callable[[], None]) -> bool:
        """Run *action*, reporting errors instead of leaving the menu."""
        try:
            action()
        except UserDeclined as exc:
            LOGGER.info("%s cancelled: %s", label, exc)
            return False
        except TraccarToolsError as exc:
            LOGGER.error("%s failed: %s", label, exc)
            self._output(f"{RED}{label} failed:{NORMAL} {exc}")
            if exc.remediation:
                self._output(f"{YELLOW}Hint:{NORMAL} {exc.remediation}")
            return False
        except OSError as exc:
            LOGGER.error("%s failed: %s", label, exc)
            self._output(f"{RED}{label} failed:{NORMAL} {exc}")
            return False
        return True

    def run(self) -> int:
        LOGGER.info("Starting traccar_tools script")
        while True:
            self.print_menu()
            try:
                option = self._input("Choose option: ").strip()
            except EOFError:
                LOGGER.info("Exiting script")
                return 0
            if not self.dispatch(option):
                return 0

    # -- actions -------------------------------------------------------------

    def uninstall(self) -> None:
        self._coordinator.uninstall()
        self._output("Traccar uninstalled.")

    def install(self) -> None:
        version = self._coordinator.install_latest()
        self._output(f"Installed Traccar {version}.")

    def upgrade(self) -> None:
        version = self._coordinator.upgrade_latest()
        self._output(f"Upgraded Traccar to {version}.")

    def restart(self) -> None:
        self._coordinator.restart()

    def show_log(self) -> None:
        for line in self._coordinator.show_log():
            self._output(line)

    def show_status(self) -> None:
        result = self._coordinator.status()
        self._output(result.stdout or result.stderr or f"exit code {result.returncode}")

    def check_latest(self) -> None:
        check = self._coordinator.check_latest()
        self._output(f"Installed version: {check.installed_version or 'none'}")
        self._output(f"Latest version:    {check.latest.version}")
        if check.update_available:
            self._output(f"{YELLOW}Update available.{NORMAL}")

    def backup_database(self) -> None:
        with self._coordinator.lock:
            report = self._database.backup_all()
        for path in report.dumped:
            self._output(f"Dumped {path}")

    def select_dump(self, dumps: list[Path]) -> Path | None:
        for index, path in enumerate(dumps, start=1):
            self._output(f"{index:3d}) {path}")
        try:
            choice = self._input("Select backup: ").strip()
        except EOFError:
            return None
        if not choice.isdigit() or not 1 <= int(choice) <= len(dumps):
            LOGGER.info("Invalid backup selection: %s", choice)
            self._output("Invalid")
            return None
        return dumps[int(choice) - 1]

    def import_database(self) -> None:
        if not self.prompt_confirm("Import a Traccar MySQL backup?"):
            raise UserDeclined("Import declined")
        dumps = self._database.list_dumps()
        if not dumps:
            LOGGER.info("No backups found")
            self._output(f"No backup files found in {self._database.dump_dir}")
            return
        selected = self.select_dump(dumps)
        if selected is None:
            return
        with self._coordinator.lock:
            self._database.import_dump(selected)

    def install_database_server(self) -> None:
        if not self.prompt_confirm("Install MySQL server and configure for Traccar?"):
            raise UserDeclined("MySQL install declined")
        with self._coordinator.lock:
            self._database.install_server()

    def reset_database_server(self) -> None:
        if not self.prompt_confirm(
            "Reset MySQL server (remove and reinstall)? All databases will be lost."
        ):
            raise UserDeclined("MySQL reset declined")
        with self._coordinator.lock:
            self._database.reset_server()
