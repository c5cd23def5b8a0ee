"""Configuration loading and resolution for pgtmp."""

from __future__ import annotations

import json
import sys
import tempfile
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


@dataclass
class ToolsConfig:
    """Where to look for ``initdb`` and ``pg_ctl``."""

    bin_dir: str | None = None
    search_roots: list[str] = field(
        default_factory=lambda: [
            "/usr/lib/postgresql",
            "/usr/local/lib/postgresql",
            "C:\\Program Files\\PostgreSQL",
        ]
    )


@dataclass
class ServerConfig:
    """Server startup configuration."""

    superuser: str = "postgres"
    host: str = "localhost"
    startup_timeout: float = 30.0  # seconds
    poll_interval: float = 0.05  # seconds between readiness pings


@dataclass
class PoolConfig:
    """Prewarmed data directory pool configuration."""

    root: str = field(default_factory=tempfile.gettempdir)
    prefix: str = "pgtmp"
    marker: str = "NEW"
    replenish: bool = True
    stale_after: float = 3600.0  # seconds before an unmarked, idle directory counts as abandoned


@dataclass
class PgtmpConfig:
    """Complete pgtmp configuration."""

    tools: ToolsConfig = field(default_factory=ToolsConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)


def load_config(
    project_path: Path | None = None, cli_overrides: dict[str, Any] | None = None
) -> PgtmpConfig:
    """
    Load configuration with priority order (highest to lowest):
    1. CLI args (via cli_overrides)
    2. .pgtmp.toml in project root
    3. ~/.config/pgtmp/config.toml (user-global)
    4. Built-in defaults

    Args:
        project_path: Path to the project root (for finding .pgtmp.toml)
        cli_overrides: Dictionary of CLI overrides (e.g., {"pool": {"replenish": False}})

    Returns:
        Fully resolved PgtmpConfig
    """
    config = PgtmpConfig()

    user_config_path = Path.home() / ".config" / "pgtmp" / "config.toml"
    if user_config_path.exists():
        _merge_config_from_file(config, user_config_path)

    if project_path:
        project_config_path = project_path / ".pgtmp.toml"
        if project_config_path.exists():
            _merge_config_from_file(config, project_config_path)

    if cli_overrides:
        _merge_config_from_dict(config, cli_overrides)

    return config


def _merge_config_from_file(config: PgtmpConfig, path: Path) -> None:
    """Load TOML file and merge into existing config."""
    with path.open("rb") as f:
        data = tomllib.load(f)
    _merge_config_from_dict(config, data)


def _merge_config_from_dict(config: PgtmpConfig, data: dict[str, Any]) -> None:
    """Merge dictionary data into config object."""
    if "tools" in data:
        tools_data = data["tools"]
        if "bin_dir" in tools_data:
            config.tools.bin_dir = tools_data["bin_dir"]
        if "search_roots" in tools_data:
            config.tools.search_roots = tools_data["search_roots"]

    if "server" in data:
        server_data = data["server"]
        if "superuser" in server_data:
            config.server.superuser = server_data["superuser"]
        if "host" in server_data:
            config.server.host = server_data["host"]
        if "startup_timeout" in server_data:
            config.server.startup_timeout = float(server_data["startup_timeout"])
        if "poll_interval" in server_data:
            config.server.poll_interval = float(server_data["poll_interval"])

    if "pool" in data:
        pool_data = data["pool"]
        if "root" in pool_data:
            config.pool.root = pool_data["root"]
        if "prefix" in pool_data:
            config.pool.prefix = pool_data["prefix"]
        if "marker" in pool_data:
            config.pool.marker = pool_data["marker"]
        if "replenish" in pool_data:
            config.pool.replenish = pool_data["replenish"]
        if "stale_after" in pool_data:
            config.pool.stale_after = float(pool_data["stale_after"])


def config_to_json(config: PgtmpConfig) -> str:
    """Serialize a resolved config, e.g. to hand it to another process."""
    return json.dumps(asdict(config), separators=(",", ":"))


def config_from_json(text: str) -> PgtmpConfig:
    """Rebuild a config serialized by config_to_json().

    Unknown keys are ignored; missing ones keep their defaults.
    """
    config = PgtmpConfig()
    _merge_config_from_dict(config, json.loads(text))
    return config
