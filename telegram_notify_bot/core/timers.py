"""Recurring timezone-local schedules on top of APScheduler.

Schedules are written as five-field crontab lines, optionally prefixed with
``TZ=<name>`` (``CRON_TZ=<name>`` is accepted as well). Day-of-week numbers
follow crontab, where 0 and 7 are Sunday; APScheduler counts from Monday,
so numeric day-of-week fields are rewritten to weekday names before the
trigger is built.
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Optional

from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.cron import CronTrigger

from .storage import resolve_timezone

logger = logging.getLogger("notify-bot")

_WEEKDAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")
_TZ_PREFIXES = ("TZ=", "CRON_TZ=")


def _weekday_number(token: str) -> int:
    value = int(token)
    if not 0 <= value <= 7:
        raise ValueError(f"day of week out of range: {token}")
    return value % 7


def translate_day_of_week(field: str) -> str:
    """Rewrite a crontab day-of-week field into APScheduler weekday names.

    >>> translate_day_of_week("0-2,4-6")
    'sun,mon,tue,thu,fri,sat'
    """

    if field in ("*", "?"):
        return "*"
    days: list[int] = []
    for part in field.split(","):
        base, _, step_text = part.partition("/")
        step = int(step_text) if step_text else 1
        if step <= 0:
            raise ValueError(f"invalid step in day of week: {part}")
        if base.isalpha():
            if step_text:
                raise ValueError(f"step on weekday name is not supported: {part}")
            days.append(_WEEKDAYS.index(base.lower()[:3]))
            continue
        if base == "*":
            first, last = 0, 6
        elif "-" in base:
            start, _, end = base.partition("-")
            first, last = int(start), int(end)
            if not (0 <= first <= 7 and 0 <= last <= 7) or last < first:
                raise ValueError(f"invalid day of week range: {part}")
        else:
            first = int(base)
            last = 7 if step_text else first
        days.extend(_weekday_number(str(value)) for value in range(first, last + 1, step))
    unique = sorted(set(days))
    return ",".join(_WEEKDAYS[day] for day in unique)


def parse_schedule(expression: str, default_tz: Optional[str] = None) -> tuple[Optional[str], list[str]]:
    """Split ``[TZ=<name>] m h dom mon dow`` into the zone name and fields."""

    tokens = expression.split()
    tz_name = default_tz
    if tokens and tokens[0].startswith(_TZ_PREFIXES):
        tz_name = tokens[0].split("=", 1)[1]
        tokens = tokens[1:]
    if len(tokens) != 5:
        raise ValueError(f"expected 5 cron fields, got {len(tokens)}: {expression!r}")
    return tz_name, tokens


def build_trigger(expression: str, timezone: Optional[str] = None) -> CronTrigger:
    tz_name, (minute, hour, day, month, day_of_week) = parse_schedule(expression, timezone)
    tz = resolve_timezone(tz_name) if tz_name else None
    return CronTrigger(
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=translate_day_of_week(day_of_week),
        timezone=tz,
    )


async def _fire(callback: Callable[[], Any], handle: str) -> None:
    # Runs on the scheduler's event loop; the callback only enqueues work.
    try:
        callback()
    except Exception:
        logger.exception("Timer %s callback failed", handle)


class TimerEngine:
    """Register ``(timezone, cron, callback)`` triples and cancel them by handle."""

    def __init__(self, scheduler: BaseScheduler) -> None:
        self.scheduler = scheduler

    def schedule(self, timezone: str, cron_expression: str, callback: Callable[[], Any]) -> str:
        """Run ``callback`` on ``cron_expression`` evaluated in ``timezone``.

        The expression may carry its own ``TZ=`` prefix only if it names the
        same zone; a conflicting zone raises :class:`ValueError`.
        """

        tz_name, fields = parse_schedule(cron_expression, timezone)
        if resolve_timezone(tz_name).zone != resolve_timezone(timezone).zone:
            raise ValueError(
                f"schedule {cron_expression!r} is pinned to {tz_name}, cannot run it in {timezone}"
            )
        trigger = build_trigger(" ".join(fields), timezone)
        handle = f"tz-{uuid.uuid4().hex}"
        self.scheduler.add_job(
            _fire,
            trigger=trigger,
            id=handle,
            args=[callback, handle],
            replace_existing=True,
            coalesce=True,
            misfire_grace_time=60,
        )
        logger.debug("Scheduled %s at '%s' in %s", handle, cron_expression, timezone)
        return handle

    def cancel(self, handle: str) -> None:
        try:
            self.scheduler.remove_job(handle)
        except LookupError:
            # JobLookupError
            logger.debug("Timer %s already gone", handle)


__all__ = [
    "TimerEngine",
    "build_trigger",
    "parse_schedule",
    "translate_day_of_week",
]
