"""Entry point for the `pgtmp` CLI."""

from __future__ import annotations

import argparse
import logging
import os
import subprocess
import sys
from typing import TYPE_CHECKING

from pgtmp.relay import handle_directive

if TYPE_CHECKING:
    from pgtmp.cache import PrewarmCache

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> None:
    """Handle the internal relay directive, else parse CLI arguments."""
    if argv is None:
        argv = sys.argv[1:]

    # Internal: python -m pgtmp --prepare=N DIR never returns.
    handle_directive(argv)

    parser = argparse.ArgumentParser(
        prog="pgtmp",
        description="Ephemeral PostgreSQL servers for test suites.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {_get_version()}",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # run -- CMD ARGS...
    run_parser = subparsers.add_parser(
        "run", help="Run a command with a fresh database URL in its environment"
    )
    run_parser.add_argument(
        "--env-var",
        default="PGURL",
        metavar="NAME",
        help="Environment variable that receives the database URL (default: PGURL).",
    )
    run_parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Seconds to wait for the server to accept connections.",
    )
    run_parser.add_argument("cmd", nargs=argparse.REMAINDER, metavar="CMD", help="Command to run.")

    # Pool management subcommands
    pool_parser = subparsers.add_parser("pool", help="Prewarmed pool management commands")
    pool_subparsers = pool_parser.add_subparsers(dest="pool_command", help="Pool operations")

    pool_subparsers.add_parser("status", help="Show ready data directories in the pool")

    warm_parser = pool_subparsers.add_parser("warm", help="Prepare pooled data directories now")
    warm_parser.add_argument(
        "-n",
        "--count",
        type=int,
        default=1,
        help="Number of directories to prepare (default: 1).",
    )

    purge_parser = pool_subparsers.add_parser("purge", help="Delete every ready data directory")
    purge_parser.add_argument(
        "--stale",
        action="store_true",
        help="Delete abandoned directories (no marker, no running server) instead.",
    )
    purge_parser.add_argument(
        "--older-than",
        type=float,
        default=None,
        metavar="SECONDS",
        help="With --stale: minimum idle time (default: pool.stale_after).",
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    if args.command is None:
        parser.print_help()
        sys.exit(2)

    from pgtmp.cache import PrewarmCache

    cache = PrewarmCache()

    if args.command == "run":
        sys.exit(_run(cache, args.cmd, args.env_var, args.timeout))

    if args.pool_command is None:
        pool_parser.print_help()
        sys.exit(0)
    _handle_pool_command(cache, args)


def _run(cache: PrewarmCache, cmd: list[str], env_var: str, timeout: float | None) -> int:
    """Acquire a database, run *cmd* against it, clean up.

    Returns:
        The command's exit status.
    """
    if cmd and cmd[0] == "--":
        cmd = cmd[1:]
    if not cmd:
        print("pgtmp run: missing command", file=sys.stderr)
        return 2

    try:
        dsn, cleanup = cache.acquire(timeout=timeout)
    except Exception as e:
        logger.error(f"Failed to acquire database: {e}")
        return 1

    try:
        env = dict(os.environ)
        env[env_var] = dsn
        try:
            return subprocess.run(cmd, env=env).returncode
        except OSError as e:
            logger.error(f"{cmd}: {e}")
            return 127
    finally:
        cleanup()


def _handle_pool_command(cache: PrewarmCache, args: argparse.Namespace) -> None:
    """Handle pool subcommands.

    Args:
        cache: PrewarmCache instance
        args: Parsed command-line arguments
    """
    if args.pool_command == "status":
        _pool_status(cache)
    elif args.pool_command == "warm":
        _pool_warm(cache, args.count)
    elif args.pool_command == "purge":
        _pool_purge(cache, stale=args.stale, max_age=args.older_than)


def _pool_status(cache: PrewarmCache) -> None:
    status = cache.status()

    print("Pool Status:")
    print(f"  Root: {status['pool_root']}")
    print(f"  Ready directories: {status['ready_count']}")
    print(f"  Total size: {status['total_size_human']}")
    print()

    if not status["entries"]:
        print("No prepared data directories.")
        return

    print("Prepared data directories (most recent first):")
    for entry in status["entries"]:
        print(f"  • {entry['path']}")
        print(f"    Size: {entry['size_human']}")
        print(f"    Prepared: {entry['prepared_at']}")
        print()


def _pool_warm(cache: PrewarmCache, count: int) -> None:
    prepared = cache.warm(count)
    print(f"Prepared {len(prepared)} data director{'y' if len(prepared) == 1 else 'ies'}:")
    for directory in prepared:
        print(f"  • {directory.path}")


def _pool_purge(cache: PrewarmCache, stale: bool = False, max_age: float | None = None) -> None:
    if stale:
        purged = cache.purge_stale(max_age)
        if not purged:
            print("No abandoned data directories to purge.")
            return
    else:
        purged = cache.purge()
        if not purged:
            print("No prepared data directories to purge.")
            return

    print(f"Purged {len(purged)} data director{'y' if len(purged) == 1 else 'ies'}:")
    for path in purged:
        print(f"  • {path}")


def _get_version() -> str:
    from pgtmp import __version__

    return __version__


if __name__ == "__main__":
    main()
