"""Rendering of the superuser credential file and the minimal server config.

Layout inside a data directory::

    <dir>/
        password             # superuser password, mode 0600
        data/postgresql.conf # overwritten by render_config()
"""

from __future__ import annotations

import os
import secrets
from pathlib import Path

from pgtmp.datadir import DATA_SUBDIR

PASSWORD_FILE = "password"
CONFIG_FILE = "postgresql.conf"

# Durability is turned off: the clusters hold disposable test data only.
_CONFIG_TEMPLATE = (
    "listen_addresses = '{host}'\n"
    "port = {port}\n"
    "unix_socket_directories = ''\n"
    "fsync = off\n"
    "synchronous_commit = off\n"
    "full_page_writes = off\n"
)


def random_string(n: int = 16) -> str:
    """Return *n* URL-safe base64 characters drawn from a CSPRNG."""
    # 3 random bytes encode to 4 characters without padding.
    nbytes = (n * 3 + 3) // 4
    return secrets.token_urlsafe(nbytes)[:n]


def write_credentials(directory: Path, password: str) -> Path:
    """Write *password* to the credential file, readable by the owner only."""
    path = directory / PASSWORD_FILE
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(password)
    return path


def read_credentials(directory: Path) -> str:
    """Read the superuser password previously written by write_credentials()."""
    return (directory / PASSWORD_FILE).read_text().strip()


def render_config(data_dir: Path, port: int, host: str = "localhost") -> Path:
    """Overwrite ``postgresql.conf`` in *data_dir* for a loopback-only server."""
    path = data_dir / CONFIG_FILE
    path.write_text(_CONFIG_TEMPLATE.format(host=host, port=port))
    return path


def render(directory: Path, port: int, password: str, host: str = "localhost") -> None:
    """Write both the credential file and the server config for *directory*."""
    write_credentials(directory, password)
    render_config(directory / DATA_SUBDIR, port, host)
