"""Ephemeral PostgreSQL servers for test suites.

Typical use::

    from pgtmp import acquire

    dsn, cleanup = acquire()
    try:
        ...  # connect to dsn
    finally:
        cleanup()
"""

from pgtmp.cache import PrewarmCache, acquire
from pgtmp.server import LogicalDatabase, Server, ServerManager

__version__ = "0.3.0"

__all__ = [
    "LogicalDatabase",
    "PrewarmCache",
    "Server",
    "ServerManager",
    "__version__",
    "acquire",
]
