"""Layered process-wide settings.

Settings are a flat string-keyed mapping. Layers, highest precedence first:

1. FLOWTREE_<KEY> environment variables
2. User settings YAML (FLOWTREE_SETTINGS, else ~/.flowtree/settings.yaml)
3. Packaged defaults (flowtree/config/settings.yaml)

Usage:
    from flowtree.config.settings import load_settings, RunDefaults

    settings = load_settings()
    defaults = RunDefaults.from_settings(settings)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional

import yaml

from flowtree.runtime.prompts import default_validate_prompt

logger = logging.getLogger(__name__)

_PACKAGED_SETTINGS = Path(__file__).parent / "settings.yaml"
_USER_SETTINGS = Path.home() / ".flowtree" / "settings.yaml"

ENV_PREFIX = "FLOWTREE_"
SETTINGS_PATH_ENV = "FLOWTREE_SETTINGS"

SETTINGS_KEYS = (
    "DEFAULT_CLI",
    "DEFAULT_VALIDATE_CLI",
    "DEFAULT_RETRY_CLI",
    "DEFAULT_RETRY_COUNT",
    "DEFAULT_TIMEOUT",
    "DEFAULT_VALIDATE_PROMPT",
    "LOG_DIR",
    "WRITE_LOG_SHORT",
    "WRITE_LOG_LONG",
)

# Conventional retry budget when nothing else sets one.
DEFAULT_RETRY_COUNT = 3
DEFAULT_LOG_DIR = "./_flowtree_logs/"


def _read_yaml_settings(path: Path) -> Dict[str, str]:
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    section = data.get("defaults", data) if isinstance(data, dict) else {}
    if not isinstance(section, dict):
        logger.warning("Settings file %s has no mapping of defaults; ignoring", path)
        return {}
    return {
        str(k): "" if v is None else str(v)
        for k, v in section.items()
        if k != "version"
    }


def user_settings_path(environ: Optional[Mapping[str, str]] = None) -> Path:
    environ = os.environ if environ is None else environ
    override = environ.get(SETTINGS_PATH_ENV, "").strip()
    return Path(override).expanduser() if override else _USER_SETTINGS


def load_settings(
    path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    extra_keys: Iterable[str] = (),
    packaged: Path = _PACKAGED_SETTINGS,
) -> Dict[str, str]:
    """Resolve the effective flat settings mapping.

    Args:
        path: User settings file; defaults to user_settings_path().
        environ: Environment mapping (defaults to os.environ).
        extra_keys: Additional accepted keys, e.g. agent API-key names.
        packaged: Packaged defaults file.

    Returns:
        Mapping of known keys to string values. Absent keys mean "no default".
    """
    environ = os.environ if environ is None else environ
    allowed = set(SETTINGS_KEYS) | set(extra_keys)
    settings: Dict[str, str] = {}

    layers = [packaged, path if path is not None else user_settings_path(environ)]
    for layer in layers:
        if not layer.exists():
            logger.debug("Settings file %s not found; skipping", layer)
            continue
        for key, value in _read_yaml_settings(layer).items():
            if key not in allowed:
                logger.warning("Ignoring unknown setting %r in %s", key, layer)
                continue
            settings[key] = value

    for key in sorted(allowed):
        env_value = environ.get(ENV_PREFIX + key)
        if env_value is not None:
            settings[key] = env_value

    return settings


def _parse_non_negative(settings: Mapping[str, str], key: str) -> Optional[int]:
    raw = settings.get(key, "").strip()
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Setting %s=%r is not an integer; ignoring", key, raw)
        return None
    if value < 0:
        logger.warning("Setting %s=%d is negative; ignoring", key, value)
        return None
    return value


def _parse_bool(settings: Mapping[str, str], key: str, default: bool) -> bool:
    raw = settings.get(key, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class RunDefaults:
    """Immutable process-wide defaults threaded into node resolution.

    Empty strings and zeros mean "no default" for that field.
    """

    cli: str = ""
    validate_cli: str = ""
    retry_cli: str = ""
    retries: int = 0
    timeout: int = 0
    validate_prompt: str = ""

    @classmethod
    def from_settings(cls, settings: Mapping[str, str]) -> "RunDefaults":
        validate_prompt = settings.get("DEFAULT_VALIDATE_PROMPT", "").strip()
        return cls(
            cli=settings.get("DEFAULT_CLI", "").strip().upper(),
            validate_cli=settings.get("DEFAULT_VALIDATE_CLI", "").strip().upper(),
            retry_cli=settings.get("DEFAULT_RETRY_CLI", "").strip().upper(),
            retries=_parse_non_negative(settings, "DEFAULT_RETRY_COUNT") or 0,
            timeout=_parse_non_negative(settings, "DEFAULT_TIMEOUT") or 0,
            validate_prompt=validate_prompt or default_validate_prompt(),
        )

    def with_agent(self, codename: str) -> "RunDefaults":
        """Same defaults with all three agent roles set to codename."""
        codename = codename.strip().upper()
        return RunDefaults(
            cli=codename,
            validate_cli=codename,
            retry_cli=codename,
            retries=self.retries,
            timeout=self.timeout,
            validate_prompt=self.validate_prompt,
        )


@dataclass(frozen=True)
class LogSettings:
    """Where and which run logs get written."""

    log_dir: str = DEFAULT_LOG_DIR
    write_short: bool = True
    write_long: bool = True

    @classmethod
    def from_settings(cls, settings: Mapping[str, str]) -> "LogSettings":
        return cls(
            log_dir=settings.get("LOG_DIR", "").strip() or DEFAULT_LOG_DIR,
            write_short=_parse_bool(settings, "WRITE_LOG_SHORT", True),
            write_long=_parse_bool(settings, "WRITE_LOG_LONG", True),
        )


def agent_environment(
    settings: Mapping[str, str], env_keys: Iterable[str]
) -> Dict[str, str]:
    """Agent API-key entries present (and non-empty) in settings."""
    return {
        key: settings[key]
        for key in env_keys
        if settings.get(key, "").strip()
    }
