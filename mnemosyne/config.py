"""
Configuration management for the archive.

The configuration is stored as a TOML file in the store directory. It
names the remote repository and tunes the local cache. The GitHub token
is read from the environment and never written to disk.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import tomli_w

from .cache import CACHE_FILENAME, CACHE_TTL
from .github import DEFAULT_API_URL
from .storage import REPO_NAME


CONFIG_FILENAME = "mnemosyne.toml"
CONFIG_VERSION = 1

TOKEN_ENV_VARS = ("MNEMOSYNE_GITHUB_TOKEN", "GITHUB_TOKEN")


@dataclass
class RemoteConfig:
    """Where the archive lives remotely."""
    repo: str = REPO_NAME
    api_url: str = DEFAULT_API_URL
    owner: Optional[str] = None


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    cache_ttl: float = CACHE_TTL

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def cache_path(self) -> Path:
        """Path to the local cache snapshot."""
        return self.path / CACHE_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def get_default_store_path() -> Path:
    """Store directory: MNEMOSYNE_STORE_PATH, else ~/.mnemosyne"""
    env_path = os.environ.get("MNEMOSYNE_STORE_PATH")
    if env_path:
        return Path(env_path).expanduser()
    return Path.home() / ".mnemosyne"


def get_token() -> Optional[str]:
    """GitHub token from the environment (first non-empty variable wins)."""
    for name in TOKEN_ENV_VARS:
        value = os.environ.get(name)
        if value:
            return value
    return None


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    store = data.get("store", {})
    version = store.get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    remote = data.get("remote", {})
    ttl = data.get("cache", {}).get("ttl", CACHE_TTL)
    if not isinstance(ttl, (int, float)) or ttl < 0:
        raise ValueError(f"Invalid cache ttl: {ttl!r}")

    return StoreConfig(
        path=store_path,
        version=version,
        created=store.get("created", ""),
        remote=RemoteConfig(
            repo=remote.get("repo", REPO_NAME),
            api_url=remote.get("api_url", DEFAULT_API_URL),
            owner=remote.get("owner") or None,
        ),
        cache_ttl=float(ttl),
    )


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    remote = {"repo": config.remote.repo, "api_url": config.remote.api_url}
    if config.remote.owner:
        remote["owner"] = config.remote.owner

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "remote": remote,
        "cache": {"ttl": config.cache_ttl},
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    config = StoreConfig(path=store_path)
    save_config(config)
    return config
