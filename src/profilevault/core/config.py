"""Configuration loader for profilevault."""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml

from profilevault.core.fileutil import safe_profile_name

log = logging.getLogger(__name__)

DEFAULTS: dict = {
    "home": "~/profilevault",
    "profiles_dir": "profiles",
    "backups_dir": "profile-backups",
    "lock": {
        "timeout_ms": 30_000,
        # A lock whose holder has not refreshed it for this long is presumed dead
        "stale_after_ms": 600_000,
        "poll_ms": 50,
        "max_poll_ms": 1_000,
    },
    "snapshot": {
        "max_depth": 32,
        "chunk_size": 1024 * 1024,
    },
    "backup": {
        "defaults": {
            "enabled": True,
            "interval_ms": 30 * 60 * 1000,
            "max_count": 25,
            "max_age_ms": 30 * 24 * 60 * 60 * 1000,
        },
        "only_if_changed": True,
        "min_interval_ms": 60_000,
    },
    "daemon": {
        "log_level": "info",
        # How often a running daemon re-reads settings changed by other processes
        "settings_poll_ms": 30_000,
    },
}


def resolve_home() -> Path:
    """Resolve PVAULT_HOME: env var > default ~/profilevault."""
    env_home = os.environ.get("PVAULT_HOME")
    if env_home:
        return Path(env_home).expanduser().resolve()
    return Path(DEFAULTS["home"]).expanduser().resolve()


def config_path(home: Path | None = None) -> Path:
    """Return the path to config.yaml."""
    if home is None:
        home = resolve_home()
    return home / ".pvault" / "config.yaml"


def load_config(path: Path | None = None) -> dict:
    """Load config.yaml and merge with defaults.

    Args:
        path: Explicit path to config.yaml. If None, uses default location.

    Returns:
        Merged configuration dict.
    """
    if path is None:
        path = config_path()

    user_config: dict = {}
    if path.exists():
        try:
            raw = path.read_text(encoding="utf-8")
            user_config = yaml.safe_load(raw) or {}
            if not isinstance(user_config, dict):
                raise ValueError("config root must be a mapping")
        except (OSError, yaml.YAMLError, ValueError):
            log.warning("Failed to read config at %s, using defaults", path, exc_info=True)
            user_config = {}

    merged = _deep_merge(DEFAULTS, user_config)

    home_str = os.environ.get("PVAULT_HOME") or merged.get("home", DEFAULTS["home"])
    merged["home"] = str(Path(home_str).expanduser().resolve())

    return merged


def profile_paths(home: Path, profile_name: str, config: dict | None = None) -> tuple[Path, Path]:
    """Return (live profile dir, backup root) for a profile."""
    config = config or DEFAULTS
    safe = safe_profile_name(profile_name)
    profiles = home / config.get("profiles_dir", DEFAULTS["profiles_dir"])
    backups = home / config.get("backups_dir", DEFAULTS["backups_dir"])
    return profiles / safe, backups / safe


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base, returning a new dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result
