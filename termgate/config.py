"""
Configuration for the terminal gateway.

Settings come from three layers, lowest priority first:
  1. Built-in defaults
  2. The first config file found in the working directory
     (config.local.*, then config.<ENV>.*, then config.*; YAML or JSON)
  3. Environment variables (deep-merged over the file)
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_BASENAMES = ("config.local", "config.{env}", "config")
CONFIG_SUFFIXES = (".yaml", ".yml", ".json")

DEFAULT_SESSION_TIMEOUT_MS = 30 * 60 * 1000  # 30 minutes
DEFAULT_CLEANUP_INTERVAL_MS = 5 * 60 * 1000  # 5 minutes
DEFAULT_MAX_SESSIONS = 10


@dataclass
class TerminalConfig:
    shell: str = field(default_factory=lambda: os.environ.get("SHELL") or "/bin/bash")
    allowed_path: str = field(default_factory=lambda: os.environ.get("HOME") or "~")
    session_timeout: int = DEFAULT_SESSION_TIMEOUT_MS  # milliseconds
    cleanup_interval: int = DEFAULT_CLEANUP_INTERVAL_MS  # milliseconds
    max_sessions: int = DEFAULT_MAX_SESSIONS
    folder_shortcuts: list[str] = field(default_factory=list)
    favorite_commands: list[str] = field(default_factory=list)

    @property
    def session_timeout_seconds(self) -> float:
        return self.session_timeout / 1000

    @property
    def cleanup_interval_seconds(self) -> float:
        return self.cleanup_interval / 1000


@dataclass
class AuthConfig:
    enabled: bool = False
    allowed_identities: list[str] = field(default_factory=list)
    static_secret: Optional[str] = None
    session_timeout_hours: float = 24
    users: dict[str, dict] = field(default_factory=dict)


@dataclass
class Settings:
    host: str = "127.0.0.1"
    port: int = 3000
    env: str = "development"
    terminal: TerminalConfig = field(default_factory=TerminalConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    config_path: Optional[Path] = None  # File the settings were loaded from, if any


# =============================================================================
# PARSING HELPERS
# =============================================================================


def parse_list(value: Any) -> list[str]:
    """Parse a comma-separated string (or a list) into trimmed, non-empty items."""
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = [str(v) for v in value]
    return [item.strip() for item in items if item and item.strip()]


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def deep_merge(target: dict, source: dict) -> dict:
    """Merge two mappings recursively; values from ``source`` win.

    Nested dicts are merged, everything else (lists included) is replaced.
    """
    result = dict(target)
    for key, source_value in source.items():
        target_value = result.get(key)
        if isinstance(target_value, dict) and isinstance(source_value, dict):
            result[key] = deep_merge(target_value, source_value)
        else:
            result[key] = source_value
    return result


# =============================================================================
# FILE + ENVIRONMENT SOURCES
# =============================================================================


def find_config_file(folder: Path, env: str) -> Optional[Path]:
    """Return the highest-priority config file present in ``folder``."""
    for basename in CONFIG_BASENAMES:
        for suffix in CONFIG_SUFFIXES:
            candidate = folder / (basename.format(env=env) + suffix)
            if candidate.is_file():
                return candidate
    return None


def load_config_file(path: Path) -> dict:
    """Load a YAML or JSON config file into a dict."""
    with open(path) as f:
        if path.suffix == ".json":
            config = json.load(f)
        else:
            config = yaml.safe_load(f)
    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ValueError(f"{path.name} must contain a mapping, got {type(config).__name__}")
    return config


def config_from_env(environ: dict[str, str]) -> dict:
    """Build a nested config dict from the environment variables that are set."""
    config: dict[str, Any] = {"terminal": {}, "auth": {}}
    terminal = config["terminal"]
    auth = config["auth"]

    if "HOST" in environ:
        config["host"] = environ["HOST"]
    if "PORT" in environ:
        config["port"] = int(environ["PORT"])

    if "TERMINAL_SHELL" in environ:
        terminal["shell"] = environ["TERMINAL_SHELL"]
    if "TERMINAL_ALLOWED_PATH" in environ:
        terminal["allowed_path"] = environ["TERMINAL_ALLOWED_PATH"]
    if "TERMINAL_SESSION_TIMEOUT" in environ:
        terminal["session_timeout"] = int(environ["TERMINAL_SESSION_TIMEOUT"])
    if "TERMINAL_CLEANUP_INTERVAL" in environ:
        terminal["cleanup_interval"] = int(environ["TERMINAL_CLEANUP_INTERVAL"])
    if "TERMINAL_MAX_SESSIONS" in environ:
        terminal["max_sessions"] = int(environ["TERMINAL_MAX_SESSIONS"])
    if "FOLDERS_SHORTCUTS" in environ:
        terminal["folder_shortcuts"] = parse_list(environ["FOLDERS_SHORTCUTS"])
    if "FAV_CMDS" in environ:
        terminal["favorite_commands"] = parse_list(environ["FAV_CMDS"])

    if "AUTH_ENABLE" in environ:
        auth["enabled"] = parse_bool(environ["AUTH_ENABLE"])
    if "AUTH_ALLOWED_EMAILS" in environ:
        auth["allowed_identities"] = parse_list(environ["AUTH_ALLOWED_EMAILS"])
    if "AUTH_STATIC_SECRET" in environ:
        auth["static_secret"] = environ["AUTH_STATIC_SECRET"]
    if "AUTH_SESSION_TIMEOUT_HOURS" in environ:
        auth["session_timeout_hours"] = float(environ["AUTH_SESSION_TIMEOUT_HOURS"])

    return config


def settings_from_dict(config: dict, config_path: Optional[Path] = None) -> Settings:
    """Convert a merged config mapping into typed Settings."""
    terminal_cfg = config.get("terminal") or {}
    auth_cfg = config.get("auth") or {}

    terminal = TerminalConfig()
    if terminal_cfg.get("shell"):
        terminal.shell = str(terminal_cfg["shell"])
    if terminal_cfg.get("allowed_path"):
        terminal.allowed_path = str(terminal_cfg["allowed_path"])
    if terminal_cfg.get("session_timeout") is not None:
        terminal.session_timeout = int(terminal_cfg["session_timeout"])
    if terminal_cfg.get("cleanup_interval") is not None:
        terminal.cleanup_interval = int(terminal_cfg["cleanup_interval"])
    if terminal_cfg.get("max_sessions") is not None:
        terminal.max_sessions = int(terminal_cfg["max_sessions"])
    terminal.folder_shortcuts = parse_list(terminal_cfg.get("folder_shortcuts"))
    terminal.favorite_commands = parse_list(terminal_cfg.get("favorite_commands"))

    auth = AuthConfig(
        enabled=parse_bool(auth_cfg.get("enabled", False)),
        allowed_identities=parse_list(auth_cfg.get("allowed_identities")),
        static_secret=auth_cfg.get("static_secret") or None,
        session_timeout_hours=float(auth_cfg.get("session_timeout_hours", 24)),
        users=auth_cfg.get("users") or {},
    )

    return Settings(
        host=str(config.get("host", "127.0.0.1")),
        port=int(config.get("port", 3000)),
        env=str(config.get("env", "development")),
        terminal=terminal,
        auth=auth,
        config_path=config_path,
    )


def load_settings(
    folder: Optional[Path] = None,
    environ: Optional[dict[str, str]] = None,
) -> Settings:
    """Load settings from the config file in ``folder`` and the environment."""
    environ = dict(os.environ) if environ is None else environ
    folder = Path.cwd() if folder is None else folder
    env = environ.get("TERMGATE_ENV") or "development"

    file_config: dict = {}
    config_path = find_config_file(folder, env)
    if config_path is not None:
        try:
            file_config = load_config_file(config_path)
            logger.info("Loaded configuration from %s", config_path.name)
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.error("Error loading configuration from %s: %s", config_path.name, e)
            config_path = None
    else:
        logger.info("No configuration file found, using environment variables")

    merged = deep_merge(file_config, config_from_env(environ))
    merged.setdefault("env", env)
    return settings_from_dict(merged, config_path=config_path)
