"""
Verity — Environment Config Loader

Three-tier configuration loading:
  1. Base file (config/verity.yaml, or the path in VERITY_CONFIG)
  2. Per-environment overlay files (config/{VERITY_ENV}.yaml merged over base)
  3. Environment variable overrides (VERITY_ prefixed)

Usage:
    from engine.config import load_config, get_config_value

    cfg = load_config(env="prod")
    email_wait = get_config_value("waits.email_verification", cfg, default=86400)

Environment variables:
    VERITY_ENV          — active profile (dev, staging, prod)
    VERITY_CONFIG       — base config file path
    VERITY_CONFIG_DIR   — directory for overlay files (default: config/)
    VERITY_*            — overrides; double underscore nests
                          (VERITY_RUNTIME__TIMER_SCALE=0.001)
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("verity.config")

_PROJECT_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_PATH = _PROJECT_ROOT / "config" / "verity.yaml"

_META_VARS = {"VERITY_ENV", "VERITY_CONFIG", "VERITY_CONFIG_DIR"}


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep-merge overlay into base. Overlay values win.
    Lists are replaced (not appended). Dicts are recursed.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _set_nested(d: dict, keys: list[str], value: Any):
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    d[keys[-1]] = value


def _parse_scalar(value: str) -> Any:
    try:
        return yaml.safe_load(value)
    except yaml.YAMLError:
        return value


# ═══════════════════════════════════════════════════════════════════
# Tier 2: Overlay Files
# ═══════════════════════════════════════════════════════════════════

def _load_overlay_file(base_path: Path, env: str = "", config_dir: str = "") -> dict[str, Any]:
    """
    Load per-environment overlay file.
    Looks for {config_dir}/{env}.yaml, then next to the base file.
    """
    env = env or os.environ.get("VERITY_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("VERITY_CONFIG_DIR", "config")
    candidates = [
        Path(config_dir) / f"{env}.yaml",
        Path(config_dir) / f"{env}.yml",
        base_path.parent / f"{env}.yaml",
    ]

    for path in candidates:
        if path.exists():
            with open(path) as f:
                overlay = yaml.safe_load(f) or {}
            logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
            return overlay

    logger.debug("No config overlay found for env=%s", env)
    return {}


# ═══════════════════════════════════════════════════════════════════
# Tier 3: Environment Variable Overrides
# ═══════════════════════════════════════════════════════════════════

def _load_env_overrides(prefix: str = "VERITY_") -> dict[str, Any]:
    """
    Load VERITY_ prefixed environment variables as config overrides.

      VERITY_LOGGING__LEVEL=DEBUG          → {"logging": {"level": "DEBUG"}}
      VERITY_RETRY__CRITICAL__MAXIMUM_ATTEMPTS=7
          → {"retry": {"critical": {"maximum_attempts": 7}}}

    Values are parsed as YAML scalars (numbers, booleans, lists).
    """
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(prefix) or key in _META_VARS:
            continue
        path = [part for part in key[len(prefix):].lower().split("__") if part]
        if not path:
            continue
        _set_nested(overrides, path, _parse_scalar(value))

    if overrides:
        logger.debug("Loaded %d env var overrides", len(overrides))
    return overrides


# ═══════════════════════════════════════════════════════════════════
# Main Loader
# ═══════════════════════════════════════════════════════════════════

def load_config(
    base_path: str | Path | None = None,
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load configuration with three-tier merging.

    Priority (highest wins):
      1. Environment variable overrides (VERITY_*)
      2. Per-environment overlay file (config/{env}.yaml)
      3. Base config file (config/verity.yaml)
    """
    path = Path(base_path or os.environ.get("VERITY_CONFIG", "") or DEFAULT_CONFIG_PATH)

    config: dict[str, Any] = {}
    if path.exists():
        with open(path) as f:
            config = yaml.safe_load(f) or {}
        logger.debug("Loaded base config: %s", path)

    overlay = _load_overlay_file(path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides()
        if env_overrides:
            config = deep_merge(config, env_overrides)

    config["_active_env"] = env or os.environ.get("VERITY_ENV", "default")
    config["_config_source"] = str(path)
    return config


_cached: dict[str, Any] | None = None


def get_config() -> dict[str, Any]:
    """Process configuration, loaded once. Call reset_config() to reload."""
    global _cached
    if _cached is None:
        _cached = load_config()
    return _cached


def reset_config() -> None:
    global _cached
    _cached = None


def get_config_value(
    path: str,
    config: dict[str, Any] | None = None,
    default: Any = None,
) -> Any:
    """
    Get a nested config value by dotted path.

    Example:
        get_config_value("waits.agreements_signing", cfg, 604800)
    """
    if config is None:
        config = get_config()

    current: Any = config
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return default
    return current
