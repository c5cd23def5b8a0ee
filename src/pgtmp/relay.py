"""Background replenishment of the prewarmed pool via a detached process.

A thread or an asyncio task would die with the process that asked for
replenishment (often a short-lived test binary), so the work is handed to a
separate process tree instead::

    parent  --prepare=0 DIR  ->  relay child  (spawns grandchild, exits at once)
                                  |
                                  +--> --prepare=1 DIR  grandchild (new session):
                                       initdb into DIR, write marker, exit

The consumer's resolved configuration travels along as ``--config=<json>`` so
that the worker initializes the directory with the same superuser, marker and
tools the consumer will use when it claims it.

The parent waits only for the relay child, which returns immediately. None of
the standard streams are inherited, so build tools that wait for the parent's
file descriptors to close (make, CI runners) are not held up by the
grandchild.
"""

from __future__ import annotations

import logging
import subprocess
import sys
from pathlib import Path
from typing import NamedTuple

from pgtmp.config import PgtmpConfig, config_from_json, config_to_json, load_config

logger = logging.getLogger(__name__)

PREPARE_FLAG = "--prepare"
CONFIG_FLAG = "--config"

# Directive levels.
RELAY = 0
PREPARE = 1

_USAGE = f"syntax: {PREPARE_FLAG}=n [{CONFIG_FLAG}=<json>] <dir>"


class Directive(NamedTuple):
    level: int
    target: str | None
    config_json: str | None


def _command(level: int, target: Path | str, config_json: str | None = None) -> list[str]:
    cmd = [sys.executable, "-m", "pgtmp", f"{PREPARE_FLAG}={level}"]
    if config_json is not None:
        cmd.append(f"{CONFIG_FLAG}={config_json}")
    cmd.append(str(target))
    return cmd


def relay_prepare(target: Path, config: PgtmpConfig | None = None) -> None:
    """Ask a detached process to prepare a pooled directory at *target*.

    *config* is passed to the worker; without it the worker loads the config
    files itself. Returns once the relay child has spawned the worker; does
    not wait for the preparation itself.

    Raises:
        subprocess.CalledProcessError: If the relay child fails to start the worker.
    """
    logger.debug("Relaying pool preparation of %s", target)
    config_json = config_to_json(config) if config is not None else None
    subprocess.run(
        _command(RELAY, target, config_json),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        check=True,
    )


def parse_directive(argv: list[str]) -> Directive | None:
    """Extract the internal prepare directive from *argv*.

    Returns:
        ``None`` if *argv* carries no directive. Otherwise the directive;
        its *target* is ``None`` if the positional argument is missing.

    Raises:
        ValueError: If the level is not an integer.
    """
    if not argv or not argv[0].startswith(f"{PREPARE_FLAG}="):
        return None
    level = int(argv[0].split("=", 1)[1])
    rest = argv[1:]
    config_json = None
    if rest and rest[0].startswith(f"{CONFIG_FLAG}="):
        config_json = rest[0].split("=", 1)[1]
        rest = rest[1:]
    target = rest[0] if rest else None
    return Directive(level, target, config_json)


def handle_directive(argv: list[str]) -> None:
    """Run the internal directive in *argv*, if any, and exit the process.

    Returns normally only when *argv* carries no directive.
    """
    try:
        directive = parse_directive(argv)
    except ValueError:
        print(_USAGE, file=sys.stderr)
        sys.exit(2)
    if directive is None:
        return

    if directive.target is None:
        print(_USAGE, file=sys.stderr)
        sys.exit(2)

    if directive.level == RELAY:
        subprocess.Popen(
            _command(PREPARE, directive.target, directive.config_json),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        sys.exit(0)

    from pgtmp.cache import PrewarmCache

    try:
        if directive.config_json is not None:
            config = config_from_json(directive.config_json)
        else:
            config = load_config(Path.cwd())
        PrewarmCache(config).prepare(Path(directive.target))
    except Exception:
        logger.exception("Failed to prepare pooled directory %s", directive.target)
        sys.exit(1)
    sys.exit(0)
