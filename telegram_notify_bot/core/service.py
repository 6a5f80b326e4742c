"""Wiring of the timer engine, the registry and the command worker."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Sequence

from apscheduler.schedulers.base import BaseScheduler

from . import storage
from .constants import (
    GROUP_SCHEDULES,
    KIND_REGULAR,
    KIND_WEDNESDAY,
    REGULAR_MESSAGES_PATH,
    RESET_CRON,
    RESET_TZ_NAME,
    WEDNESDAY_MESSAGES_PATH,
)
from .messages import LinePool
from .registry import ChatRegistry
from .serializer import CommandSerializer, Messenger, ResetReminders
from .timers import TimerEngine, parse_schedule

logger = logging.getLogger("notify-bot")


def default_pools() -> dict[str, LinePool]:
    return {
        KIND_REGULAR: LinePool(REGULAR_MESSAGES_PATH),
        KIND_WEDNESDAY: LinePool(WEDNESDAY_MESSAGES_PATH),
    }


class NotifyService:
    """Own the per-timezone schedules and the worker that serves them.

    Each timezone group gets one schedule per entry of ``GROUP_SCHEDULES``;
    the callbacks carry only ``(timezone, kind)`` and enqueue a
    :class:`~telegram_notify_bot.core.serializer.NotifyGroup`. One extra
    schedule re-arms every chat's reminder at ``RESET_CRON`` in
    ``RESET_TZ_NAME``.
    """

    def __init__(
        self,
        messenger: Messenger,
        scheduler: BaseScheduler,
        *,
        pools: Optional[Mapping[str, LinePool]] = None,
        default_tz: Optional[str] = None,
        store: Any = storage,
        group_schedules: Sequence[tuple[str, str]] = GROUP_SCHEDULES,
    ) -> None:
        self.engine = TimerEngine(scheduler)
        self.store = store
        self.group_schedules = tuple(group_schedules)
        self.registry = ChatRegistry(self._install_group_timers, self._cancel_group_timers)
        self.serializer = CommandSerializer(
            self.registry,
            messenger,
            pools=default_pools() if pools is None else pools,
            default_tz=default_tz or storage.get_default_tz_name(),
            store=store,
        )
        self._reset_handle: Optional[str] = None

    def _install_group_timers(self, tz_name: str) -> list[str]:
        return [
            self.engine.schedule(tz_name, cron, self.serializer.notifier(tz_name, kind))
            for kind, cron in self.group_schedules
        ]

    def _cancel_group_timers(self, handles: Sequence[str]) -> None:
        for handle in handles:
            self.engine.cancel(handle)

    def _submit_reset(self) -> None:
        self.serializer.submit(ResetReminders())

    def start(self, rows: Optional[Iterable[Any]] = None, now: Optional[datetime] = None) -> int:
        """Restore stored chats, install the reset schedule and start the worker.

        Needs a running event loop. Returns the number of restored chats.
        """

        if rows is None:
            rows = self.store.load_all_chats()
        restored = self.serializer.restore(rows, now)
        if self._reset_handle is None:
            # a TZ= prefix in RESET_CRON wins over RESET_TZ
            reset_tz, _ = parse_schedule(RESET_CRON, RESET_TZ_NAME)
            self._reset_handle = self.engine.schedule(reset_tz, RESET_CRON, self._submit_reset)
        self.serializer.start()
        return restored

    async def stop(self) -> None:
        if self._reset_handle is not None:
            self.engine.cancel(self._reset_handle)
            self._reset_handle = None
        await self.serializer.stop()


__all__ = ["NotifyService", "default_pools"]
