"""Prewarmed pool of initialized PostgreSQL data directories.

Running ``initdb`` dominates the cost of an ephemeral server, so every
acquisition leaves a spare, initialized (but not running) directory behind for
the next caller.

Pool structure (``pool.root`` defaults to the OS temp directory):
    /tmp/
        pgtmp3f9b2c1d4e5f6071/     # ready: marker present, up for grabs
            NEW
            password
            data/
        pgtmp8a7e6d5c4b3a2910/     # claimed or running: no marker
            ...

There is no coordinator. A consumer claims a directory by unlinking its
marker; the unlink succeeds for exactly one process, and everyone else gets
``FileNotFoundError`` and moves on to the next candidate (or falls back to
running ``initdb`` itself).
"""

from __future__ import annotations

import glob
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from pgtmp.config import PgtmpConfig, load_config
from pgtmp.datadir import DATA_SUBDIR, DataDirectory, DirState
from pgtmp.errors import ClaimError
from pgtmp.relay import relay_prepare
from pgtmp.server import Server, ServerManager

logger = logging.getLogger(__name__)


@dataclass
class PoolEntry:
    """A ready, unclaimed directory in the pool."""

    path: str
    prepared_at: str  # ISO 8601 timestamp of the marker
    size_bytes: int


class PrewarmCache:
    """Hands out running servers, preferring prewarmed data directories."""

    def __init__(
        self,
        config: PgtmpConfig | None = None,
        manager: ServerManager | None = None,
        replenish: Callable[[Path, PgtmpConfig], None] | None = None,
    ) -> None:
        """
        Initialize prewarm cache.

        Args:
            config: Configuration; loaded from the usual config files when omitted.
            manager: Server manager used for initdb and launch.
            replenish: Called with the path of the next pooled directory to
                prepare and the config to prepare it with. Defaults to the
                detached subprocess relay.
        """
        self.config = config or load_config(Path.cwd())
        self.manager = manager or ServerManager(self.config)
        self.replenish = replenish or relay_prepare
        self.pool_root = Path(self.config.pool.root)

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------

    def find_candidates(self) -> list[Path]:
        """Return marker paths of ready directories, in filesystem order."""
        pool = self.config.pool
        pattern = str(self.pool_root / f"{glob.escape(pool.prefix)}*" / pool.marker)
        return [Path(match) for match in glob.glob(pattern)]

    def claim_prepared(self) -> DataDirectory | None:
        """Claim one ready directory.

        Returns:
            The claimed directory (state ``CLAIMED``), or ``None`` if every
            candidate was taken by another process or the pool is empty.

        Raises:
            ClaimError: If a marker exists but cannot be removed.
        """
        for marker in self.find_candidates():
            directory = DataDirectory(
                marker.parent, state=DirState.READY, marker=self.config.pool.marker
            )
            try:
                claimed = directory.claim()
            except OSError as e:
                raise ClaimError(f"could not grab prepared database {directory.path}: {e}") from e
            if claimed:
                logger.info("Claimed prepared data directory %s", directory.path)
                return directory
            logger.debug("Lost race for %s", directory.path)
        return None

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------

    def start_server(
        self,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> Server:
        """Return a running server, claiming a prepared directory if possible.

        Always triggers replenishment of the pool before returning.
        """
        directory = self.claim_prepared()
        if directory is None:
            logger.info("No prepared data directory available, running initdb")
            pool = self.config.pool
            directory = DataDirectory.create(self.pool_root, pool.prefix, pool.marker)
            try:
                self.manager.initialize(directory)
                directory.transition(DirState.CLAIMED)
            except BaseException:
                directory.remove()
                raise

        try:
            server = self.manager.resume(directory, timeout=timeout, cancel=cancel)
        except BaseException:
            directory.remove()
            raise

        try:
            self._replenish()
        except BaseException:
            server.cleanup()
            raise
        return server

    def acquire(
        self,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> tuple[str, Callable[[], None]]:
        """Return ``(dsn, cleanup)`` for a fresh database on a running server.

        *cleanup* stops the server and deletes its directory; call it once.
        """
        server = self.start_server(timeout=timeout, cancel=cancel)
        try:
            db = server.create_database()
        except BaseException:
            server.cleanup()
            raise
        return db.dsn, server.cleanup

    def _replenish(self) -> None:
        if not self.config.pool.replenish:
            return
        target = DataDirectory.new_path(self.pool_root, self.config.pool.prefix)
        self.replenish(target, self.config)

    # ------------------------------------------------------------------
    # Pool maintenance
    # ------------------------------------------------------------------

    def prepare(self, path: Path) -> DataDirectory:
        """Initialize a new directory at *path* and publish it to the pool.

        The marker is written only after initdb has finished. On failure the
        half-built directory is removed and the error propagates.
        """
        path.mkdir(parents=True, mode=0o700)
        directory = DataDirectory(path, marker=self.config.pool.marker)
        try:
            self.manager.initialize(directory)
            directory.mark_ready()
        except BaseException:
            directory.remove()
            raise
        logger.info("Prepared pooled data directory %s", path)
        return directory

    def warm(self, count: int = 1) -> list[DataDirectory]:
        """Synchronously prepare *count* pooled directories."""
        return [
            self.prepare(DataDirectory.new_path(self.pool_root, self.config.pool.prefix))
            for _ in range(count)
        ]

    def status(self) -> dict[str, Any]:
        """Describe the ready directories currently in the pool."""
        entries = []
        for marker in self.find_candidates():
            try:
                prepared_at = datetime.fromtimestamp(marker.stat().st_mtime).isoformat()
            except FileNotFoundError:
                continue  # claimed while we were looking
            entries.append(
                PoolEntry(
                    path=str(marker.parent),
                    prepared_at=prepared_at,
                    size_bytes=self._calculate_dir_size(marker.parent),
                )
            )
        entries.sort(key=lambda e: e.prepared_at, reverse=True)
        total_size = sum(e.size_bytes for e in entries)

        return {
            "pool_root": str(self.pool_root),
            "ready_count": len(entries),
            "total_size_bytes": total_size,
            "total_size_human": self._human_readable_size(total_size),
            "entries": [
                {
                    "path": e.path,
                    "prepared_at": e.prepared_at,
                    "size_bytes": e.size_bytes,
                    "size_human": self._human_readable_size(e.size_bytes),
                }
                for e in entries
            ],
        }

    def purge(self) -> list[str]:
        """Claim and delete every ready directory.

        Directories without a marker (in use or still being prepared) are
        left alone.

        Returns:
            Paths of the deleted directories.
        """
        purged = []
        while True:
            directory = self.claim_prepared()
            if directory is None:
                break
            directory.remove()
            purged.append(str(directory.path))
        return purged

    def find_stale(self, max_age: float | None = None) -> list[Path]:
        """Return abandoned pool directories.

        A directory is abandoned when it carries no marker, has no running
        postmaster (no ``postmaster.pid``) and nothing in it has changed for
        *max_age* seconds (``pool.stale_after`` by default). Workers killed
        during initdb leave such directories behind.
        """
        if max_age is None:
            max_age = self.config.pool.stale_after
        pool = self.config.pool
        now = time.time()
        stale = []
        for match in glob.glob(str(self.pool_root / f"{glob.escape(pool.prefix)}*")):
            path = Path(match)
            if not path.is_dir() or (path / pool.marker).exists():
                continue
            if (path / DATA_SUBDIR / "postmaster.pid").exists():
                continue
            if now - self._last_activity(path) >= max_age:
                stale.append(path)
        return stale

    def purge_stale(self, max_age: float | None = None) -> list[str]:
        """Delete abandoned pool directories (see :meth:`find_stale`).

        Returns:
            Paths of the deleted directories.
        """
        purged = []
        for path in self.find_stale(max_age):
            DataDirectory(path, marker=self.config.pool.marker).remove()
            logger.info("Removed abandoned data directory %s", path)
            purged.append(str(path))
        return purged

    @staticmethod
    def _last_activity(path: Path) -> float:
        """Newest mtime of the directory and its top-level entries."""
        try:
            items = [path, *path.iterdir()]
        except FileNotFoundError:
            return time.time()  # removed meanwhile, so not ours to judge
        latest = 0.0
        for item in items:
            try:
                latest = max(latest, item.stat().st_mtime)
            except FileNotFoundError:
                continue
        return latest

    @staticmethod
    def _calculate_dir_size(path: Path) -> int:
        """Calculate total size of a directory in bytes."""
        total = 0
        try:
            for item in path.rglob("*"):
                if item.is_file():
                    total += item.stat().st_size
        except OSError:
            pass
        return total

    @staticmethod
    def _human_readable_size(size_bytes: int) -> str:
        """Convert bytes to human-readable size (e.g., "1.5 GB")."""
        size = float(size_bytes)
        for unit in ["B", "KB", "MB", "GB", "TB"]:
            if size < 1024:
                return f"{size:.1f} {unit}"
            size /= 1024
        return f"{size:.1f} PB"


def acquire(
    timeout: float | None = None,
    config: PgtmpConfig | None = None,
) -> tuple[str, Callable[[], None]]:
    """Return ``(dsn, cleanup)`` for a fresh database on an ephemeral server.

    Shorthand for ``PrewarmCache(config).acquire(timeout)``.
    """
    return PrewarmCache(config).acquire(timeout=timeout)
