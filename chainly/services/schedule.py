"""Schedule trigger evaluation.

Decides, once per minute, which schedule trigger nodes are due. Three
modes are supported through the node's ``data``:

- ``cron``: ``cronExpression`` (5 fields, UTC) matches the current minute
- ``interval``: ``intervalValue`` ``intervalUnit`` (minutes/hours/days)
  have elapsed since ``lastExecution``
- ``datetime``: one-shot at ``datetime``, within the minute it falls in
"""

from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from croniter import croniter

logger = structlog.get_logger()

INTERVAL_UNITS = {
    "minutes": timedelta(minutes=1),
    "hours": timedelta(hours=1),
    "days": timedelta(days=1),
}

# Modes whose trigger time is tracked in ``lastExecution``
STATEFUL_MODES = frozenset({"interval", "datetime"})


def _parse_timestamp(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def matches_cron(expression: str, now: datetime) -> bool:
    """Check whether a 5-field cron expression matches ``now``'s minute."""
    if len(expression.split()) != 5 or not croniter.is_valid(expression):
        return False
    return croniter.match(expression, now.replace(second=0, microsecond=0))


def interval_due(data: dict[str, Any], now: datetime) -> bool:
    value = data.get("intervalValue")
    unit = INTERVAL_UNITS.get(data.get("intervalUnit") or "")
    if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0 or unit is None:
        return False

    last_execution = _parse_timestamp(data.get("lastExecution"))
    if last_execution is None:
        return True
    return now >= last_execution + unit * value


def datetime_due(data: dict[str, Any], now: datetime) -> bool:
    scheduled = _parse_timestamp(data.get("datetime"))
    if scheduled is None:
        return False
    last_execution = _parse_timestamp(data.get("lastExecution"))
    return (
        scheduled <= now < scheduled + timedelta(minutes=1)
        and (last_execution is None or last_execution < scheduled)
    )


def should_trigger(data: dict[str, Any], now: datetime) -> bool:
    """Check whether a schedule trigger node is due at ``now``."""
    mode = data.get("scheduleMode")
    if mode == "cron":
        expression = data.get("cronExpression")
        return bool(expression) and matches_cron(expression, now)
    if mode == "interval":
        return interval_due(data, now)
    if mode == "datetime":
        return datetime_due(data, now)
    return False
