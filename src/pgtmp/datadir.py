"""Data directory layout and lifecycle state.

A data directory lives under the pool root and looks like::

    /tmp/pgtmpa3f9b2c1d4e5f607/
        password     # superuser password (0600)
        data/        # cluster files written by initdb
        log.txt      # server log (pg_ctl --log)
        NEW          # marker, present only while pooled and unclaimed

The marker is the only thing competing processes synchronize on: creating it
publishes a fully initialized directory, and whoever manages to unlink it owns
the directory from then on (including the right to delete it).
"""

from __future__ import annotations

import enum
import logging
import os
import secrets
import shutil
from pathlib import Path

from pgtmp.errors import InvalidStateError

logger = logging.getLogger(__name__)

DATA_SUBDIR = "data"
LOG_FILE = "log.txt"
DEFAULT_MARKER = "NEW"


class DirState(enum.Enum):
    """Lifecycle of a data directory as seen by the current process."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"  # initialized, marker present
    CLAIMED = "claimed"  # initialized, marker removed by us
    RUNNING = "running"
    STOPPED = "stopped"
    REMOVED = "removed"


_TRANSITIONS: dict[DirState, set[DirState]] = {
    DirState.UNINITIALIZED: {DirState.INITIALIZING, DirState.REMOVED},
    DirState.INITIALIZING: {DirState.READY, DirState.CLAIMED, DirState.REMOVED},
    DirState.READY: {DirState.CLAIMED},
    DirState.CLAIMED: {DirState.RUNNING, DirState.REMOVED},
    DirState.RUNNING: {DirState.STOPPED},
    DirState.STOPPED: {DirState.RUNNING, DirState.REMOVED},
    DirState.REMOVED: set(),
}


class DataDirectory:
    """One on-disk PostgreSQL cluster directory plus its bookkeeping files."""

    def __init__(
        self,
        path: Path,
        state: DirState = DirState.UNINITIALIZED,
        marker: str = DEFAULT_MARKER,
    ) -> None:
        self.path = Path(path)
        self.marker_name = marker
        self._state = state

    def __repr__(self) -> str:
        return f"DataDirectory({str(self.path)!r}, state={self._state.value})"

    @classmethod
    def create(cls, root: Path, prefix: str, marker: str = DEFAULT_MARKER) -> DataDirectory:
        """Create a new, empty, uniquely named directory under *root*."""
        root.mkdir(parents=True, exist_ok=True)
        while True:
            path = root / f"{prefix}{secrets.token_hex(8)}"
            try:
                path.mkdir(mode=0o700)
            except FileExistsError:
                continue
            return cls(path, marker=marker)

    @classmethod
    def new_path(cls, root: Path, prefix: str) -> Path:
        """Return a fresh directory name under *root* without creating it."""
        return root / f"{prefix}{secrets.token_hex(8)}"

    @property
    def state(self) -> DirState:
        return self._state

    @property
    def data_path(self) -> Path:
        return self.path / DATA_SUBDIR

    @property
    def log_path(self) -> Path:
        return self.path / LOG_FILE

    @property
    def marker_path(self) -> Path:
        return self.path / self.marker_name

    def transition(self, new_state: DirState) -> None:
        """Move to *new_state*.

        Raises:
            InvalidStateError: If the transition is not allowed.
        """
        if new_state not in _TRANSITIONS[self._state]:
            raise InvalidStateError(
                f"{self.path}: cannot go from {self._state.value} to {new_state.value}"
            )
        self._state = new_state

    def mark_ready(self) -> None:
        """Publish this (initialized) directory for a future consumer."""
        if self._state is not DirState.INITIALIZING:
            raise InvalidStateError(
                f"{self.path}: only an initializing directory can be marked ready"
            )
        fd = os.open(self.marker_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        os.close(fd)
        self.transition(DirState.READY)

    def claim(self) -> bool:
        """Try to take ownership by removing the marker.

        Returns:
            True if this call removed the marker, False if it was already gone
            (another process claimed the directory first).

        Raises:
            OSError: For any other failure to remove the marker.
        """
        try:
            os.unlink(self.marker_path)
        except FileNotFoundError:
            return False
        self.transition(DirState.CLAIMED)
        return True

    def remove(self) -> None:
        """Recursively delete the directory. Errors are logged, not raised.

        Raises:
            InvalidStateError: If the directory is still published for others.
        """
        if self._state is DirState.READY:
            raise InvalidStateError(f"{self.path}: refusing to remove an unclaimed directory")
        try:
            shutil.rmtree(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove data directory {self.path}: {e}")
        self._state = DirState.REMOVED
