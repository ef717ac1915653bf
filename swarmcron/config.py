"""Process settings.

Settings come from an optional YAML file and are then overridden by environment
variables, so the daemon can run in a container with nothing but ``TZ`` set.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from .errors import SettingsError
from .labels import parse_bool

DEFAULT_TIMEZONE = "UTC"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_SHUTDOWN_GRACE_SECONDS = 10.0
DEFAULT_POLL_INTERVAL_SECONDS = 1.0
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "WARN", "ERROR", "CRITICAL", "FATAL"}
SETTINGS_KEYS = {
    "timezone",
    "log_level",
    "log_json",
    "log_file",
    "shutdown_grace_seconds",
    "poll_interval_seconds",
}
ENV_OVERRIDES = {
    "TZ": "timezone",
    "LOG_LEVEL": "log_level",
    "LOG_JSON": "log_json",
    "LOG_FILE": "log_file",
    "SWARMCRON_SHUTDOWN_GRACE": "shutdown_grace_seconds",
    "SWARMCRON_POLL_INTERVAL": "poll_interval_seconds",
}


@dataclass(frozen=True)
class Settings:
    timezone: ZoneInfo
    timezone_name: str
    log_level: str
    log_json: bool
    log_file: Optional[Path]
    shutdown_grace_seconds: float
    poll_interval_seconds: float

    @property
    def logging_level(self) -> int:
        return getattr(logging, self.log_level)


def _load_settings_payload(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise SettingsError(f"Error: Config file not found: {config_path}")

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise SettingsError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise SettingsError("Error: Top-level config must be a mapping.")
    unknown = set(payload.keys()) - SETTINGS_KEYS
    if unknown:
        raise SettingsError(f"Error: Unknown top-level keys: {sorted(unknown)}.")
    return payload


def parse_timezone(name: Any, field_path: str) -> ZoneInfo:
    if not isinstance(name, str) or not name.strip():
        raise SettingsError(f"Error: {field_path} must be a non-empty string.")
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise SettingsError(f'Error: Invalid timezone "{name}" at {field_path}.') from exc


def parse_log_level(value: Any, field_path: str) -> str:
    if not isinstance(value, str):
        raise SettingsError(f"Error: {field_path} must be a string.")
    level = value.strip().upper()
    if level not in VALID_LOG_LEVELS:
        raise SettingsError(
            f'Error: {field_path} must be one of {sorted(VALID_LOG_LEVELS)}, got "{value}".'
        )
    if level == "WARN":
        return "WARNING"
    if level == "FATAL":
        return "CRITICAL"
    return level


def ensure_seconds(value: Any, field_path: str) -> float:
    if isinstance(value, bool):
        raise SettingsError(f"Error: {field_path} must be a number of seconds.")
    try:
        seconds = float(value)
    except (TypeError, ValueError) as exc:
        raise SettingsError(f"Error: {field_path} must be a number of seconds.") from exc
    if seconds <= 0:
        raise SettingsError(f"Error: {field_path} must be > 0.")
    return seconds


def ensure_flag(value: Any, field_path: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        parsed = parse_bool(value)
        if parsed is not None:
            return parsed
    raise SettingsError(f"Error: {field_path} must be true or false.")


def load_settings(
    config_path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> Settings:
    env = os.environ if env is None else env
    raw: Dict[str, Any] = {}
    sources: Dict[str, str] = {}
    if config_path is not None:
        raw.update(_load_settings_payload(config_path))
        sources.update({key: key for key in raw})

    for env_name, key in ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is not None and value.strip():
            raw[key] = value.strip()
            sources[key] = env_name

    timezone_name = raw.get("timezone", DEFAULT_TIMEZONE)
    tz = parse_timezone(timezone_name, sources.get("timezone", "timezone"))

    log_file_raw = raw.get("log_file")
    log_file: Optional[Path] = None
    if log_file_raw is not None:
        if not isinstance(log_file_raw, str) or not log_file_raw.strip():
            raise SettingsError(f"Error: {sources['log_file']} must be a non-empty path string.")
        log_file = Path(log_file_raw.strip())
        if not log_file.is_absolute() and config_path is not None and sources["log_file"] == "log_file":
            log_file = (config_path.parent / log_file).resolve()

    return Settings(
        timezone=tz,
        timezone_name=str(timezone_name).strip(),
        log_level=parse_log_level(raw.get("log_level", DEFAULT_LOG_LEVEL), sources.get("log_level", "log_level")),
        log_json=ensure_flag(raw.get("log_json", False), sources.get("log_json", "log_json")),
        log_file=log_file,
        shutdown_grace_seconds=ensure_seconds(
            raw.get("shutdown_grace_seconds", DEFAULT_SHUTDOWN_GRACE_SECONDS),
            sources.get("shutdown_grace_seconds", "shutdown_grace_seconds"),
        ),
        poll_interval_seconds=ensure_seconds(
            raw.get("poll_interval_seconds", DEFAULT_POLL_INTERVAL_SECONDS),
            sources.get("poll_interval_seconds", "poll_interval_seconds"),
        ),
    )
