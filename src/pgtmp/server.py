"""PostgreSQL server lifecycle: initdb, pg_ctl start/stop, readiness, databases."""

from __future__ import annotations

import logging
import math
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import quote

import psutil
import psycopg
from psycopg import sql

from pgtmp.config import PgtmpConfig, load_config
from pgtmp.datadir import DataDirectory, DirState
from pgtmp.errors import (
    CommandError,
    DatabaseCreateError,
    InvalidStateError,
    PgtmpError,
    ServerStartError,
    StartupTimeoutError,
)
from pgtmp.ports import allocate_port
from pgtmp.render import random_string, read_credentials, render_config, write_credentials
from pgtmp.tools import ToolLocator, get_locator, run_command

logger = logging.getLogger(__name__)

DEFAULT_DATABASE = "postgres"

# Upper bound for a single readiness connection attempt, in seconds.
_CONNECT_TIMEOUT = 2

# How long stop() waits for the postmaster after pg_ctl stop before killing it.
_STOP_TIMEOUT = 30.0


@dataclass
class LogicalDatabase:
    """A database created inside a running server's cluster."""

    name: str
    dsn: str


class Server:
    """A running PostgreSQL server bound to one data directory.

    Created by :meth:`ServerManager.launch` (or ``resume``/``start``). The
    caller owns it and must call :meth:`cleanup` (or :meth:`stop`), otherwise
    the postmaster and the directory outlive the test run.

    All administrative statements go through a single connection to the
    default database, guarded by ``_conn_lock``.
    """

    def __init__(
        self,
        directory: DataDirectory,
        port: int,
        password: str,
        locator: ToolLocator,
        superuser: str = "postgres",
        host: str = "localhost",
    ) -> None:
        self.directory = directory
        self.port = port
        self.password = password
        self.superuser = superuser
        self.host = host
        userinfo = f"{quote(superuser, safe='')}:{quote(password, safe='')}"
        self.base_url = f"postgres://{userinfo}@{host}:{port}/"
        self.pid: int | None = None

        # Set exactly once, by the watcher thread, when the server has exited.
        self.exited = threading.Event()
        self.exit_error: BaseException | None = None

        self._locator = locator
        self._conn: psycopg.Connection | None = None
        self._conn_lock = threading.Lock()
        self._stop_requested = threading.Event()
        self._watcher: threading.Thread | None = None

    def __repr__(self) -> str:
        return f"Server(dir={str(self.directory.path)!r}, port={self.port}, pid={self.pid})"

    def __enter__(self) -> Server:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.cleanup()

    # ------------------------------------------------------------------
    # Addresses
    # ------------------------------------------------------------------

    def dsn(self, db_name: str) -> str:
        """Return the connection URI for database *db_name* on this server."""
        return f"{self.base_url}{quote(db_name, safe='')}?sslmode=disable"

    def default_database(self) -> str:
        """Return the connection URI of the default ``postgres`` database."""
        return self.dsn(DEFAULT_DATABASE)

    # ------------------------------------------------------------------
    # Exit watcher
    # ------------------------------------------------------------------

    def _start_watcher(self, proc: subprocess.Popen[str]) -> None:
        self._watcher = threading.Thread(
            target=self._watch,
            args=(proc,),
            daemon=True,
            name=f"PostmasterWatcher-{self.port}",
        )
        self._watcher.start()

    def _watch(self, proc: subprocess.Popen[str]) -> None:
        """Wait for ``pg_ctl start`` and then for the postmaster it spawned.

        ``pg_ctl start --no-wait`` returns as soon as the postmaster has been
        forked, so the postmaster PID is read from ``postmaster.pid`` and
        waited on with psutil (it is not our child process).
        """
        try:
            output, _ = proc.communicate()
            if proc.returncode != 0:
                self.exit_error = CommandError("pg_ctl", output or "", proc.returncode)
                return

            pid = None
            while pid is None:
                pid = read_postmaster_pid(self.directory.data_path)
                if pid is None and self._stop_requested.wait(0.05):
                    return
            try:
                psutil.Process(pid).wait()
            except psutil.NoSuchProcess:
                pass
        except Exception as e:
            logger.exception("Postmaster watcher failed")
            self.exit_error = e
        finally:
            self.exited.set()

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def _wait_ready(
        self,
        timeout: float | None,
        poll_interval: float,
        cancel: threading.Event | None = None,
    ) -> None:
        """Poll the default database until it answers ``SELECT 1``.

        Raises:
            StartupTimeoutError: If *timeout* elapses or *cancel* is set first.
            ServerStartError: If the server exits before becoming ready.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if cancel is not None and cancel.is_set():
                raise StartupTimeoutError("start postgres: cancelled")
            if deadline is not None and time.monotonic() >= deadline:
                raise StartupTimeoutError(
                    f"start postgres: server not ready after {timeout:.1f}s"
                )
            if self.exited.is_set():
                reason = self.exit_error or "server exited during startup"
                raise ServerStartError(f"start postgres: {reason}")

            connect_timeout = _CONNECT_TIMEOUT
            if deadline is not None:
                remaining = math.ceil(deadline - time.monotonic())
                connect_timeout = min(_CONNECT_TIMEOUT, max(1, remaining))
            try:
                conn = psycopg.connect(
                    self.default_database(), autocommit=True, connect_timeout=connect_timeout
                )
            except psycopg.OperationalError:
                time.sleep(poll_interval)
                continue

            try:
                conn.execute("SELECT 1")
            except psycopg.Error:
                conn.close()
                time.sleep(poll_interval)
                continue

            with self._conn_lock:
                self._conn = conn
            self.pid = read_postmaster_pid(self.directory.data_path)
            return

    def ping(self) -> None:
        """Run ``SELECT 1`` on the administrative connection.

        Raises:
            psycopg.Error: If the server does not answer.
        """
        with self._conn_lock:
            if self._conn is None:
                raise psycopg.OperationalError("server connection is closed")
            self._conn.execute("SELECT 1")

    # ------------------------------------------------------------------
    # Databases
    # ------------------------------------------------------------------

    def create_database(self) -> LogicalDatabase:
        """Create a new, randomly named database and return its address.

        Raises:
            DatabaseCreateError: If the server rejects the statement.
        """
        name = random_string(16)
        stmt = sql.SQL("CREATE DATABASE {}").format(sql.Identifier(name))
        with self._conn_lock:
            if self._conn is None:
                raise DatabaseCreateError("new database: server connection is closed")
            try:
                self._conn.execute(stmt)
            except psycopg.errors.DuplicateDatabase as exc:
                raise DatabaseCreateError(
                    "new database: " + str(exc).replace(name, "<redacted>")
                ) from None
            except psycopg.Error as exc:
                raise DatabaseCreateError(f"new database: {exc}") from exc
        logger.debug("Created database %s on port %d", name, self.port)
        return LogicalDatabase(name=name, dsn=self.dsn(name))

    def new_database(self, **kwargs: Any) -> psycopg.Connection:
        """Create a new database and return an open connection to it.

        Keyword arguments are passed through to :func:`psycopg.connect`.
        """
        db = self.create_database()
        return psycopg.connect(db.dsn, **kwargs)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def stop(self) -> None:
        """Shut the server down (immediate mode) and wait for it to exit.

        Failures of ``pg_ctl stop`` are logged; if the postmaster is still
        alive after that it is killed.
        """
        try:
            run_command(
                self._locator,
                "pg_ctl",
                "stop",
                f"--pgdata={self.directory.data_path}",
                "--mode=immediate",
                "--wait",
            )
        except PgtmpError as e:
            logger.warning(f"pg_ctl stop failed for {self.directory.path}: {e}")

        self._stop_requested.set()
        if self._watcher is not None and not self.exited.wait(timeout=_STOP_TIMEOUT):
            logger.warning("Postmaster for %s did not exit, killing it", self.directory.path)
            self._kill()
            self.exited.wait()

        if self.directory.state is DirState.RUNNING:
            self.directory.transition(DirState.STOPPED)

    def _kill(self) -> None:
        pid = self.pid or read_postmaster_pid(self.directory.data_path)
        if pid is None:
            return
        try:
            psutil.Process(pid).kill()
        except psutil.NoSuchProcess:
            pass

    def cleanup(self) -> None:
        """Close the admin connection, stop the server, delete the directory.

        Meant to be called once, typically from test teardown; errors are
        logged rather than raised so they cannot mask the test result.
        """
        with self._conn_lock:
            if self._conn is not None:
                try:
                    self._conn.close()
                except psycopg.Error as e:
                    logger.warning(f"Failed to close server connection: {e}")
                self._conn = None
        self.stop()
        try:
            self.directory.remove()
        except InvalidStateError as e:
            logger.warning(str(e))


def read_postmaster_pid(data_dir: Path) -> int | None:
    """Return the postmaster PID recorded in ``postmaster.pid``, if any."""
    try:
        first_line = (data_dir / "postmaster.pid").read_text().split("\n", 1)[0]
        return int(first_line.strip())
    except (OSError, ValueError):
        return None


class ServerManager:
    """Initializes data directories and launches servers on them."""

    def __init__(
        self,
        config: PgtmpConfig | None = None,
        locator: ToolLocator | None = None,
    ) -> None:
        """
        Initialize server manager.

        Args:
            config: Configuration; loaded from the usual config files when omitted.
            locator: PostgreSQL program locator; the process-wide one by default.
        """
        self.config = config or load_config(Path.cwd())
        self.locator = locator or get_locator(self.config.tools)

    def initialize(self, directory: DataDirectory) -> None:
        """Run ``initdb`` on *directory* with a fresh random superuser password.

        Leaves the directory in the ``INITIALIZING`` state; the caller either
        publishes it (:meth:`DataDirectory.mark_ready`) or keeps it
        (``transition(DirState.CLAIMED)``).

        Raises:
            ToolNotFoundError: If ``initdb`` cannot be located.
            CommandError: If ``initdb`` fails.
        """
        directory.transition(DirState.INITIALIZING)
        password = random_string(16)
        pwfile = write_credentials(directory.path, password)
        run_command(
            self.locator,
            "initdb",
            "--no-sync",
            f"--username={self.config.server.superuser}",
            f"--pwfile={pwfile}",
            "-D",
            str(directory.data_path),
        )
        logger.info("Initialized cluster in %s", directory.path)

    def launch(
        self,
        directory: DataDirectory,
        port: int,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> Server:
        """Start the server for an initialized, owned directory.

        The config file must already name *port* (see :meth:`resume`).

        Args:
            directory: A directory in the ``CLAIMED`` or ``STOPPED`` state.
            port: Port the rendered config listens on.
            timeout: Seconds to wait for readiness; ``server.startup_timeout``
                from the config when omitted.
            cancel: Optional event that aborts the readiness wait when set.

        Raises:
            StartupTimeoutError: On timeout/cancellation; the message carries the
                server log when there is one.
            ServerStartError: If the server exits before accepting connections.
        """
        if directory.state not in (DirState.CLAIMED, DirState.STOPPED):
            raise InvalidStateError(
                f"{directory.path}: cannot launch a {directory.state.value} directory"
            )
        server_config = self.config.server
        server = Server(
            directory,
            port=port,
            password=read_credentials(directory.path),
            locator=self.locator,
            superuser=server_config.superuser,
            host=server_config.host,
        )

        # pg_ctl start forks the postmaster and returns (foreground on Windows).
        proc = subprocess.Popen(
            [
                self.locator.find("pg_ctl"),
                "start",
                "--no-wait",
                f"--pgdata={directory.data_path}",
                f"--log={directory.log_path}",
            ],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
        directory.transition(DirState.RUNNING)
        server._start_watcher(proc)

        if timeout is None:
            timeout = server_config.startup_timeout
        try:
            server._wait_ready(timeout, server_config.poll_interval, cancel)
        except ServerStartError as exc:
            server.stop()
            log_output = _read_log(directory.log_path)
            if log_output:
                raise type(exc)(f"{exc}\n{log_output}") from exc
            raise
        except BaseException:
            server.stop()
            raise

        logger.info("PostgreSQL ready on port %d (pid %s)", port, server.pid)
        return server

    def resume(
        self,
        directory: DataDirectory,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> Server:
        """Launch a server on an initialized directory that has never run.

        A fresh port is allocated and the config rendered right before launch.
        """
        port = allocate_port()
        render_config(directory.data_path, port, self.config.server.host)
        return self.launch(directory, port, timeout=timeout, cancel=cancel)

    def start(
        self,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> Server:
        """Initialize a brand-new directory and launch a server on it.

        The directory is removed again if anything fails.
        """
        pool = self.config.pool
        directory = DataDirectory.create(Path(pool.root), pool.prefix, pool.marker)
        try:
            self.initialize(directory)
            directory.transition(DirState.CLAIMED)
            return self.resume(directory, timeout=timeout, cancel=cancel)
        except BaseException:
            directory.remove()
            raise


def _read_log(path: Path) -> str:
    try:
        return path.read_text(errors="replace").strip()
    except OSError:
        return ""
