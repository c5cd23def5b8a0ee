"""Locating and running the PostgreSQL command-line programs.

``initdb`` and ``pg_ctl`` are looked up on ``PATH`` first. Distribution
packages often keep them out of ``PATH`` (Debian installs them under
``/usr/lib/postgresql/<major>/bin``), so when the ``PATH`` lookup fails the
configured search roots are scanned once per process and the highest
numbered version directory wins.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
import threading
from pathlib import Path

from pgtmp.config import ToolsConfig
from pgtmp.errors import CommandError, ToolNotFoundError

logger = logging.getLogger(__name__)


class ToolLocator:
    """Resolves PostgreSQL program paths.

    The installation directory scan runs at most once per instance; use
    :func:`get_locator` for the process-wide instance.
    """

    def __init__(self, config: ToolsConfig | None = None) -> None:
        self.config = config or ToolsConfig()
        self._lock = threading.Lock()
        self._resolved = False
        self._bin_dir: Path | None = None

    @property
    def bin_dir(self) -> Path | None:
        """Installation ``bin`` directory, resolved on first access."""
        with self._lock:
            if not self._resolved:
                self._bin_dir = self._find_bin_dir()
                self._resolved = True
                if self._bin_dir is not None:
                    logger.debug("Using PostgreSQL binaries from %s", self._bin_dir)
            return self._bin_dir

    def find(self, name: str) -> str:
        """Return the path of program *name*.

        Raises:
            ToolNotFoundError: If the program is neither on PATH nor in the
                discovered installation directory.
        """
        if sys.platform == "win32":
            name += ".exe"
        found = shutil.which(name)
        if found is not None:
            return found

        bin_dir = self.bin_dir
        if bin_dir is not None:
            candidate = bin_dir / name
            if candidate.is_file():
                return str(candidate)

        raise ToolNotFoundError(
            f"{name}: executable file not found in PATH or in {self.config.search_roots}; "
            "add the PostgreSQL bin directory to PATH or set tools.bin_dir"
        )

    def _find_bin_dir(self) -> Path | None:
        if self.config.bin_dir:
            return Path(self.config.bin_dir)

        best: tuple[int, Path] | None = None
        for root in self.config.search_roots:
            try:
                entries = os.listdir(root)
            except OSError:
                continue
            for entry in entries:
                try:
                    version = int(entry)
                except ValueError:
                    continue
                if version <= 0:
                    continue
                if best is None or version > best[0]:
                    best = (version, Path(root) / entry / "bin")
        return best[1] if best else None


_locators: dict[tuple[str | None, tuple[str, ...]], ToolLocator] = {}
_locator_lock = threading.Lock()


def get_locator(config: ToolsConfig | None = None) -> ToolLocator:
    """Get or create the process-wide locator for *config*.

    Locators are shared between equal tool settings, so the installation scan
    runs once per process and setting.
    """
    config = config or ToolsConfig()
    key = (config.bin_dir, tuple(config.search_roots))
    with _locator_lock:
        locator = _locators.get(key)
        if locator is None:
            locator = _locators[key] = ToolLocator(config)
        return locator


def run_command(locator: ToolLocator, name: str, *args: str) -> str:
    """Run a PostgreSQL program to completion and return its combined output.

    Raises:
        ToolNotFoundError: If the program cannot be located.
        CommandError: If the program exits with a non-zero status.
    """
    path = locator.find(name)
    logger.debug("Running %s %s", name, " ".join(args))
    try:
        proc = subprocess.run(
            [path, *args],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
    except OSError as exc:
        raise CommandError(name, str(exc)) from exc
    if proc.returncode != 0:
        raise CommandError(name, proc.stdout, proc.returncode)
    return proc.stdout
