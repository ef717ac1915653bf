"""Cron expression helpers on top of croniter."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo

from croniter import CroniterError, croniter

UTC = timezone.utc
EVERY_PREFIX = "@every "
CRON_DESCRIPTORS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}
DURATION_RE = re.compile(r"^(?:\d+(?:\.\d+)?(?:ms|s|m|h))+$", re.ASCII)
DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)", re.ASCII)
DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
VALIDATION_START = datetime(2000, 1, 1, tzinfo=UTC)


def parse_interval(value: str) -> timedelta:
    """Parse ``90``, ``30s``, ``5m`` or ``1h30m``; raise ValueError otherwise."""
    raw = value.strip().lower()
    if raw.isascii() and raw.isdecimal():
        seconds = float(raw)
    elif DURATION_RE.match(raw):
        seconds = sum(float(amount) * DURATION_UNITS[unit] for amount, unit in DURATION_PART_RE.findall(raw))
    else:
        raise ValueError(f'invalid duration "{value}"')
    if seconds <= 0:
        raise ValueError(f'duration must be > 0, got "{value}"')
    return timedelta(seconds=seconds)


def every_interval(expr: str) -> Optional[timedelta]:
    """Interval of an ``@every <duration>`` expression, or None for cron text.

    Sub-second parts are dropped and the interval is at least one second.
    """
    text = " ".join(expr.split()).lower()
    if not text.startswith(EVERY_PREFIX):
        return None
    interval = parse_interval(text[len(EVERY_PREFIX):])
    return max(timedelta(seconds=1), timedelta(seconds=int(interval.total_seconds())))


def normalize_cron(expr: str) -> str:
    """Collapse whitespace and check the expression; raise ValueError if invalid.

    Accepts 5 fields, 6 fields with seconds first, an @descriptor or
    ``@every <duration>``. An expression that can never fire is invalid.
    """
    if not isinstance(expr, str) or not expr.strip():
        raise ValueError("empty cron expression")
    text = " ".join(expr.split())
    if text.lower().startswith(EVERY_PREFIX):
        every_interval(text)
        return text.lower()
    if text.startswith("@"):
        if text.lower() not in CRON_DESCRIPTORS:
            raise ValueError(f'unknown cron descriptor "{text}"')
        return text.lower()
    if len(text.split(" ")) not in (5, 6):
        raise ValueError(f'cron expression must have 5 or 6 fields, got "{text}"')
    if not croniter.is_valid(to_croniter_expr(text)):
        raise ValueError(f'invalid cron expression "{text}"')
    try:
        croniter(to_croniter_expr(text), VALIDATION_START).get_next(datetime)
    except CroniterError as exc:
        raise ValueError(f'cron expression "{text}" never fires') from exc
    return text


def to_croniter_expr(expr: str) -> str:
    """Map an expression to croniter's field order (seconds last)."""
    text = " ".join(expr.split())
    descriptor = CRON_DESCRIPTORS.get(text.lower())
    if descriptor is not None:
        return descriptor
    fields = text.split(" ")
    if len(fields) == 6:
        return " ".join(fields[1:] + fields[:1])
    return text


def next_fire_after(expr: str, after: datetime, tz: ZoneInfo) -> datetime:
    """First fire strictly after ``after``, evaluated in ``tz``.

    Raises ValueError when the expression has no next fire.
    """
    if after.tzinfo is None:
        after = after.replace(tzinfo=UTC)
    interval = every_interval(expr)
    if interval is not None:
        return (after.replace(microsecond=0) + interval).astimezone(tz)
    local_after = after.astimezone(tz)
    try:
        nxt = croniter(to_croniter_expr(expr), local_after).get_next(datetime)
    except CroniterError as exc:
        raise ValueError(f'cron expression "{expr}" has no fire after {after.isoformat()}') from exc
    if nxt.tzinfo is None:
        return nxt.replace(tzinfo=tz)
    return nxt.astimezone(tz)


def next_fire_times(expr: str, count: int, tz: ZoneInfo, after: Optional[datetime] = None) -> List[datetime]:
    cursor = after or datetime.now(tz=UTC)
    runs: List[datetime] = []
    while len(runs) < count:
        nxt = next_fire_after(expr, cursor, tz)
        runs.append(nxt)
        cursor = nxt
    return runs
