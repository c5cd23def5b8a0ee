"""Exception types raised by pgtmp."""


class PgtmpError(Exception):
    """Base exception for pgtmp errors."""


class ToolNotFoundError(PgtmpError):
    """Raised when a PostgreSQL program cannot be located."""


class CommandError(PgtmpError):
    """Raised when a PostgreSQL program exits with a non-zero status."""

    def __init__(self, name: str, output: str, returncode: int | None = None) -> None:
        self.name = name
        self.output = output
        self.returncode = returncode
        super().__init__(f"{name}: {output.strip() or f'exit status {returncode}'}")


class ServerStartError(PgtmpError):
    """Raised when a launched server never became ready."""


class StartupTimeoutError(ServerStartError):
    """Raised when the server does not accept connections before the deadline
    (or the caller cancelled the wait)."""


class DatabaseCreateError(PgtmpError):
    """Raised when CREATE DATABASE fails."""


class ClaimError(PgtmpError):
    """Raised when a prepared directory's marker cannot be removed for a reason
    other than another process having claimed it first."""


class InvalidStateError(PgtmpError):
    """Raised on an illegal data directory state transition."""
