"""Local TCP port allocation."""

from __future__ import annotations

import socket


def allocate_port(host: str = "127.0.0.1") -> int:
    """Return a TCP port that was free on *host* at the moment of the call.

    The port is not reserved: the listener is closed before returning, so the
    caller should bind it (or hand it to the server) promptly.

    Raises:
        OSError: If binding fails.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind((host, 0))
            return sock.getsockname()[1]
    except OSError as exc:
        raise OSError(f"find unused tcp port: {exc}") from exc
