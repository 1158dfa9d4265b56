"""MySQL management for the Traccar datastore.

Dumps land in ``<dump_dir>/<YYYY-MM-DD>-<database>.gz`` (or ``.sql`` when
compression is off) and are pruned by modification age. The MySQL password
is passed through ``MYSQL_PWD`` so it never appears on a command line.
"""

from __future__ import annotations

import gzip
import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from xml.sax.saxutils import escape

from .config import DatabaseConfig
from .errors import DatabaseError
from .runner import CommandResult, CommandRunner, sanitize_log_line
from .service import ServiceManager

LOGGER = logging.getLogger(__name__)

SYSTEM_SCHEMAS = frozenset({"information_schema", "performance_schema", "mysql", "sys"})
SECONDS_PER_DAY = 86400
MYSQL_PACKAGES = (
    "mysql-server",
    "mysql-client",
    "mysql-common",
    "mysql-server-core-*",
    "mysql-client-core-*",
)
_APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}

TRACCAR_XML_TEMPLATE = """\
<?xml version='1.0' encoding='UTF-8'?>
<!DOCTYPE properties SYSTEM 'http://java.sun.com/dtd/properties.dtd'>
<properties>
    <entry key='config.default'>./conf/default.xml</entry>
    <!-- Database connection -->
    <entry key='database.driver'>com.mysql.cj.jdbc.Driver</entry>
    <entry key='database.url'>{url}</entry>
    <entry key='database.user'>{user}</entry>
    <entry key='database.password'>{password}</entry>
</properties>
"""


def render_traccar_xml(config: DatabaseConfig) -> str:
    url = (
        f"jdbc:mysql://127.0.0.1:3306/{config.name}"
        "?useSSL=false&allowPublicKeyRetrieval=true&characterEncoding=UTF-8"
    )
    return TRACCAR_XML_TEMPLATE.format(
        url=escape(url),
        user=escape(config.user),
        password=escape(config.password),
    )


def dump_file_name(database: str, day: date, compress: bool) -> str:
    return f"{day.isoformat()}-{database}.{'gz' if compress else 'sql'}"


def prune_dumps(dump_dir: Path, retention_days: int, *, now: float | None = None) -> list[Path]:
    """Delete dump files older than the retention window.

    A file is deleted only when its modification age is strictly greater
    than ``retention_days`` days; a file exactly at the boundary is kept.
    """
    if not dump_dir.is_dir():
        return []
    now = time.time() if now is None else now
    window_s = retention_days * SECONDS_PER_DAY
    deleted: list[Path] = []
    for path in sorted(dump_dir.iterdir()):
        if not path.is_file():
            continue
        age_s = now - path.stat().st_mtime
        if age_s > window_s:
            path.unlink()
            deleted.append(path)
            LOGGER.info("Pruned old dump %s", path.name)
    return deleted


@dataclass(slots=True)
class BackupReport:
    dumped: list[Path] = field(default_factory=list)
    pruned: list[Path] = field(default_factory=list)


class DatabaseManager:
    def __init__(
        self,
        config: DatabaseConfig,
        runner: CommandRunner,
        service: ServiceManager,
        *,
        conf_dir: Path,
        metadata_timeout_s: float = 60,
    ) -> None:
        self._config = config
        self._runner = runner
        self._service = service
        self._conf_dir = conf_dir
        self._metadata_timeout_s = metadata_timeout_s

    @property
    def dump_dir(self) -> Path:
        return self._config.dump_dir

    # -- command helpers -----------------------------------------------------

    def _run(
        self,
        argv: list[str],
        *,
        timeout_s: float | None = None,
        env: dict[str, str] | None = None,
        stdin_path: Path | None = None,
        stdout_path: Path | None = None,
    ) -> CommandResult:
        LOGGER.debug("$ %s", sanitize_log_line(" ".join(argv), (self._config.password,)))
        return self._runner.run(
            argv, timeout_s=timeout_s, env=env, stdin_path=stdin_path, stdout_path=stdout_path
        )

    def _client_env(self) -> dict[str, str]:
        return {"MYSQL_PWD": self._config.password}

    def _require(self, result: CommandResult, action: str) -> CommandResult:
        if not result.ok:
            detail = sanitize_log_line(result.detail(), (self._config.password,))
            raise DatabaseError(f"{action} failed (exit {result.returncode}): {detail}")
        return result

    def _stop_service(self) -> None:
        result = self._service.stop()
        if not result.ok:
            LOGGER.warning(
                "Could not stop %s before database work (%s); continuing",
                self._service.name,
                result.detail(),
            )

    def _start_service(self) -> None:
        ServiceManager.require(self._service.start(), f"Starting {self._service.name}")

    def _start_service_after_failure(self) -> None:
        """Start the service while another error propagates; only log a failure."""
        result = self._service.start()
        if not result.ok:
            LOGGER.error(
                "Could not start %s after a failed operation: %s",
                self._service.name,
                result.detail(),
            )

    # -- dumps ---------------------------------------------------------------

    def list_databases(self) -> list[str]:
        result = self._require(
            self._run(
                ["mysql", "-u", self._config.user, "-N", "-B", "-e", "SHOW DATABASES;"],
                timeout_s=self._metadata_timeout_s,
                env=self._client_env(),
            ),
            "Listing databases",
        )
        names = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        return [name for name in names if name not in SYSTEM_SCHEMAS]

    def dump_database(self, database: str, day: date) -> Path:
        self.dump_dir.mkdir(parents=True, exist_ok=True)
        dest = self.dump_dir / dump_file_name(database, day, self._config.compress)
        fd, raw_name = tempfile.mkstemp(
            dir=str(self.dump_dir), prefix=f".{database}-", suffix=".sql"
        )
        os.close(fd)
        raw = Path(raw_name)
        try:
            self._require(
                self._run(
                    ["mysqldump", "-u", self._config.user, database],
                    env=self._client_env(),
                    stdout_path=raw,
                ),
                f"Dumping {database}",
            )
            if self._config.compress:
                with raw.open("rb") as src, gzip.open(dest, "wb") as out:
                    shutil.copyfileobj(src, out)
            else:
                os.replace(raw, dest)
        finally:
            raw.unlink(missing_ok=True)
        LOGGER.info("Backed up %s", database)
        return dest

    def backup_all(self, *, day: date | None = None, now: float | None = None) -> BackupReport:
        """Dump every non-system database, then prune old dumps.

        The service is stopped for a consistent dump and started again even
        if a dump fails; pruning only happens after all dumps succeed.
        """
        LOGGER.info("Starting MySQL backup to %s", self.dump_dir)
        self.dump_dir.mkdir(parents=True, exist_ok=True)
        report = BackupReport()
        self._stop_service()
        try:
            for database in self.list_databases():
                report.dumped.append(self.dump_database(database, day or date.today()))
            report.pruned = prune_dumps(self.dump_dir, self._config.retention_days, now=now)
        except BaseException:
            self._start_service_after_failure()
            raise
        self._start_service()
        LOGGER.info("MySQL backup completed (%d dump(s))", len(report.dumped))
        return report

    def list_dumps(self) -> list[Path]:
        """Dumps of the Traccar database, newest first."""
        if not self.dump_dir.is_dir():
            return []
        dumps = [p for p in self.dump_dir.glob(f"*{self._config.name}.*") if p.is_file()]
        return sorted(dumps, key=lambda p: p.stat().st_mtime, reverse=True)

    def import_dump(self, dump: Path) -> None:
        """Load *dump* into the Traccar database with the service stopped."""
        if not dump.is_file():
            raise DatabaseError(f"Backup file not found: {dump}")
        LOGGER.info("Importing %s", dump)
        self._stop_service()
        plain: Path | None = None
        try:
            source = dump
            if dump.suffix == ".gz":
                fd, plain_name = tempfile.mkstemp(prefix="traccar-import-", suffix=".sql")
                os.close(fd)
                plain = Path(plain_name)
                with gzip.open(dump, "rb") as src, plain.open("wb") as out:
                    shutil.copyfileobj(src, out)
                source = plain
            self._require(
                self._run(
                    ["mysql", "-u", self._config.user, self._config.name],
                    env=self._client_env(),
                    stdin_path=source,
                ),
                f"Importing {dump.name}",
            )
        except BaseException:
            self._start_service_after_failure()
            raise
        finally:
            if plain is not None:
                plain.unlink(missing_ok=True)
        self._start_service()
        LOGGER.info("Import completed")

    # -- server lifecycle ----------------------------------------------------

    def write_traccar_config(self) -> Path:
        target = self._conf_dir / "traccar.xml"
        LOGGER.info("Updating Traccar config at %s", target)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(render_traccar_xml(self._config), encoding="utf-8")
        LOGGER.info("Traccar config updated")
        return target

    def _apt(self, *args: str) -> None:
        self._require(self._run(["apt-get", "-y", *args], env=_APT_ENV), f"apt-get {args[0]}")

    def _configure_root_account(self) -> None:
        password = self._config.password.replace("\\", "\\\\").replace("'", "\\'")
        statements = (
            f"ALTER USER '{self._config.user}'@'localhost' "
            f"IDENTIFIED WITH mysql_native_password BY '{password}'; "
            f"GRANT ALL ON *.* TO '{self._config.user}'@'localhost' WITH GRANT OPTION; "
            "FLUSH PRIVILEGES; "
            f"CREATE DATABASE IF NOT EXISTS `{self._config.name}`;"
        )
        # Fresh installs authenticate root over the socket, without a password.
        self._require(
            self._run(
                ["mysql", "-u", "root", f"--execute={statements}"],
                timeout_s=self._metadata_timeout_s,
            ),
            "Configuring MySQL account",
        )

    def _install_and_configure(self) -> None:
        self._apt("update")
        self._apt("install", "mysql-server")
        self._configure_root_account()
        self.write_traccar_config()

    def install_server(self) -> None:
        LOGGER.info("Installing MySQL server")
        self._stop_service()
        try:
            self._install_and_configure()
        except BaseException:
            self._start_service_after_failure()
            raise
        self._start_service()
        LOGGER.info("MySQL installed and configured")

    def reset_server(self) -> None:
        """Purge and reinstall MySQL. All databases are lost."""
        LOGGER.info("Resetting MySQL server")
        self._stop_service()
        result = self._service.stop_unit(self._config.mysql_service)
        if not result.ok:
            LOGGER.info("MySQL was not running (%s)", result.detail())
        try:
            self._apt("purge", *MYSQL_PACKAGES)
            self._apt("autoremove")
            self._apt("autoclean")
            self._install_and_configure()
        except BaseException:
            self._start_service_after_failure()
            raise
        self._start_service()
        LOGGER.info("MySQL reset and configured")
