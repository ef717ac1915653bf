"""Service label model.

Turns the loosely-typed ``swarm.cronjob.*`` labels of one service into a single
validated :class:`ServiceScheduleConfig`. No I/O happens here.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping, Optional

from .cron import normalize_cron, parse_interval
from .errors import InvalidLabelError, InvalidScheduleError, MissingScheduleError

LABEL_PREFIX = "swarm.cronjob."
LABEL_ENABLE = LABEL_PREFIX + "enable"
LABEL_SCHEDULE = LABEL_PREFIX + "schedule"
LABEL_SKIP_RUNNING = LABEL_PREFIX + "skip-running"
LABEL_MONITORING_TIMEOUT = LABEL_PREFIX + "monitoring-timeout"
LABEL_REPLICAS = LABEL_PREFIX + "replicas"

DEFAULT_REPLICAS = 1
TRUE_VALUES = {"1", "t", "true", "y", "yes", "on"}
FALSE_VALUES = {"0", "f", "false", "n", "no", "off"}


@dataclass(frozen=True)
class ServiceScheduleConfig:
    enabled: bool
    schedule: str = ""
    skip_running: bool = False
    monitoring_timeout: Optional[timedelta] = None
    replicas: int = DEFAULT_REPLICAS

    @staticmethod
    def disabled() -> "ServiceScheduleConfig":
        return ServiceScheduleConfig(enabled=False)


def parse_bool(value: str) -> Optional[bool]:
    """Return the boolean for a label value, or None if it is not one."""
    raw = value.strip().lower()
    if raw in TRUE_VALUES:
        return True
    if raw in FALSE_VALUES:
        return False
    return None


def parse_duration(value: str, label: str = LABEL_MONITORING_TIMEOUT) -> timedelta:
    try:
        return parse_interval(value)
    except ValueError as exc:
        raise InvalidLabelError(f"Error: {label} must be a duration > 0 like 30s, 5m or 1h30m: {exc}.") from exc


def validate_cron(expr: str, label: str = LABEL_SCHEDULE) -> str:
    if not isinstance(expr, str) or not expr.strip():
        raise MissingScheduleError(f"Error: {label} is empty.")
    try:
        return normalize_cron(expr)
    except ValueError as exc:
        raise InvalidScheduleError(f"Error: {exc} at {label}.") from exc


def is_scheduled(labels: Mapping[str, str]) -> bool:
    return LABEL_ENABLE in labels


def parse_labels(labels: Optional[Mapping[str, str]]) -> ServiceScheduleConfig:
    labels = labels or {}

    enable_raw = labels.get(LABEL_ENABLE)
    if enable_raw is None:
        return ServiceScheduleConfig.disabled()
    enabled = parse_bool(enable_raw)
    if enabled is None:
        raise InvalidLabelError(f'Error: {LABEL_ENABLE} must be true or false, got "{enable_raw}".')
    if not enabled:
        return ServiceScheduleConfig.disabled()

    schedule_raw = labels.get(LABEL_SCHEDULE)
    if schedule_raw is None or not schedule_raw.strip():
        raise MissingScheduleError(f"Error: {LABEL_SCHEDULE} is required when {LABEL_ENABLE}=true.")
    schedule = validate_cron(schedule_raw)

    skip_running = False
    skip_raw = labels.get(LABEL_SKIP_RUNNING)
    if skip_raw is not None and skip_raw.strip():
        parsed = parse_bool(skip_raw)
        if parsed is None:
            raise InvalidLabelError(f'Error: {LABEL_SKIP_RUNNING} must be true or false, got "{skip_raw}".')
        skip_running = parsed

    monitoring_timeout: Optional[timedelta] = None
    timeout_raw = labels.get(LABEL_MONITORING_TIMEOUT)
    if timeout_raw is not None and timeout_raw.strip():
        monitoring_timeout = parse_duration(timeout_raw)

    replicas = DEFAULT_REPLICAS
    replicas_raw = labels.get(LABEL_REPLICAS)
    if replicas_raw is not None and replicas_raw.strip():
        raw = replicas_raw.strip()
        if not (raw.isascii() and raw.isdecimal()) or int(raw) < 1:
            raise InvalidLabelError(f'Error: {LABEL_REPLICAS} must be an integer >= 1, got "{replicas_raw}".')
        replicas = int(raw)

    return ServiceScheduleConfig(
        enabled=True,
        schedule=schedule,
        skip_running=skip_running,
        monitoring_timeout=monitoring_timeout,
        replicas=replicas,
    )
