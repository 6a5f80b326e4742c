"""Single-consumer work queue that linearizes every registry mutation.

Inbound commands and timer fires both end up here as small immutable
command objects. One worker task takes them off an unbounded
:class:`asyncio.Queue` strictly in arrival order and applies each one to the
:class:`~telegram_notify_bot.core.registry.ChatRegistry`, performing any
message sends before it moves on to the next item. Because only that task
ever touches the registry, no locking is needed.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol, Union

from ..ui import texts as ui_txt
from . import storage
from .audit import audit_log
from .constants import ACK_STICKER_ID, KIND_REMIND
from .errors import PersistenceFailure, TransportFailure, UnknownChat, UnknownTimezone
from .messages import LinePool
from .registry import ChatRegistry

logger = logging.getLogger("notify-bot")


@dataclass(frozen=True)
class BotMessage:
    """Outgoing payload; ``text`` is a sticker file id when ``is_sticker``.

    ``parse_mode=None`` sends the text as-is, whatever the bot default is.
    """

    chat_id: int
    text: str
    is_sticker: bool = False
    parse_mode: Optional[str] = None


HTML = "HTML"


class Messenger(Protocol):
    async def send(self, message: BotMessage) -> None:
        ...


# --- commands ------------------------------------------------------------


@dataclass(frozen=True)
class Subscribe:
    chat_id: int
    announce: bool = False


@dataclass(frozen=True)
class ChangeTimezone:
    chat_id: int
    timezone: str


@dataclass(frozen=True)
class Acknowledge:
    chat_id: int


@dataclass(frozen=True)
class ShowStatus:
    chat_id: int


@dataclass(frozen=True)
class NotifyGroup:
    timezone: str
    kind: str


@dataclass(frozen=True)
class ResetReminders:
    pass


Command = Union[Subscribe, ChangeTimezone, Acknowledge, ShowStatus, NotifyGroup, ResetReminders]


class CommandSerializer:
    def __init__(
        self,
        registry: ChatRegistry,
        messenger: Messenger,
        *,
        pools: Mapping[str, LinePool],
        default_tz: str,
        store: Any = storage,
    ) -> None:
        self.registry = registry
        self.messenger = messenger
        self.pools = dict(pools)
        self.default_tz = default_tz
        self.store = store
        self._queue: asyncio.Queue[Optional[Command]] = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task[None]] = None

    # --- queue -----------------------------------------------------------

    def submit(self, command: Command) -> None:
        """Enqueue ``command``; never blocks and may be called from any thread."""

        loop = self._loop
        if loop is not None and not loop.is_closed():
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is not loop:
                loop.call_soon_threadsafe(self._queue.put_nowait, command)
                return
        self._queue.put_nowait(command)

    def notifier(self, timezone: str, kind: str) -> Callable[[], None]:
        """Timer callback for one group schedule; it only enqueues."""

        command = NotifyGroup(timezone, kind)

        def _enqueue() -> None:
            self.submit(command)

        return _enqueue

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._task = asyncio.create_task(self.run(), name="command-serializer")
        logger.info("Command worker started")

    async def stop(self) -> None:
        """Process everything already queued, then stop the worker."""

        if self._task is None:
            return
        self._queue.put_nowait(None)
        await self._task
        self._task = None
        logger.info("Command worker stopped")

    async def join(self) -> None:
        await self._queue.join()

    async def run(self) -> None:
        while True:
            command = await self._queue.get()
            try:
                if command is None:
                    return
                logger.debug("Got a job: %r", command)
                await self.apply(command)
            except Exception:
                logger.exception("Command %r failed", command)
            finally:
                self._queue.task_done()

    # --- dispatch --------------------------------------------------------

    async def apply(self, command: Command) -> None:
        if isinstance(command, Subscribe):
            await self._subscribe(command)
        elif isinstance(command, ChangeTimezone):
            await self._change_timezone(command)
        elif isinstance(command, Acknowledge):
            await self._acknowledge(command)
        elif isinstance(command, ShowStatus):
            await self._show_status(command)
        elif isinstance(command, NotifyGroup):
            await self._notify_group(command)
        elif isinstance(command, ResetReminders):
            self._reset_reminders()
        else:
            logger.error("Unknown command %r", command)

    async def _subscribe(self, command: Subscribe) -> None:
        chat_id = command.chat_id
        created = self.registry.register(chat_id, self.default_tz, True)
        entry = self.registry.get(chat_id)
        assert entry is not None
        if created:
            audit_log("CHAT_SUBSCRIBED", chat_id=chat_id, tz=entry.timezone, armed=True)
            await self._persist("upsert_chat", chat_id, entry.timezone)
        if command.announce:
            text = ui_txt.subscribed_text(entry.timezone, created=created)
            await self._send(BotMessage(chat_id, text, parse_mode=HTML))

    async def _change_timezone(self, command: ChangeTimezone) -> None:
        chat_id = command.chat_id
        before = self.registry.get(chat_id)
        try:
            tz_name = self.registry.change_timezone(chat_id, command.timezone)
        except UnknownTimezone as exc:
            logger.info("Rejected timezone %r for %s", exc.value, chat_id)
            audit_log("TZ_REJECTED", chat_id=chat_id, reason=exc.value)
            await self._send(BotMessage(chat_id, ui_txt.unknown_timezone_text(exc.value), parse_mode=HTML))
            return
        except UnknownChat:
            logger.warning("Timezone change for unregistered chat %s ignored", chat_id)
            return
        old_tz = before.timezone if before is not None else None
        audit_log("TZ_CHANGED", chat_id=chat_id, tz=tz_name, old_tz=old_tz)
        await self._persist("upsert_chat", chat_id, tz_name)
        await self._send(BotMessage(chat_id, ui_txt.timezone_changed_text(tz_name), parse_mode=HTML))

    async def _acknowledge(self, command: Acknowledge) -> None:
        chat_id = command.chat_id
        try:
            fired = self.registry.acknowledge_reminder(chat_id)
        except UnknownChat:
            logger.warning("Check-in from unregistered chat %s ignored", chat_id)
            return
        if not fired:
            logger.info("Already checked in today: %s", chat_id)
            audit_log("REMINDER_DUPLICATE", chat_id=chat_id, armed=False)
            return
        audit_log("REMINDER_ACKED", chat_id=chat_id, armed=False)
        await self._send(BotMessage(chat_id, ACK_STICKER_ID, is_sticker=True))

    async def _show_status(self, command: ShowStatus) -> None:
        entry = self.registry.get(command.chat_id)
        if entry is None:
            logger.warning("Status for unregistered chat %s ignored", command.chat_id)
            return
        text = ui_txt.status_text(entry.timezone, entry.reminder_armed)
        await self._send(BotMessage(command.chat_id, text, parse_mode=HTML))

    async def _notify_group(self, command: NotifyGroup) -> None:
        tz_name, kind = command.timezone, command.kind
        if not self.registry.has_group(tz_name):
            # the group's timers were cancelled after this fire was queued
            logger.warning("Timer %s fired for missing group %s, skipping", kind, tz_name)
            return
        if kind == KIND_REMIND:
            await self._remind_group(tz_name)
            return
        pool = self.pools.get(kind)
        if pool is None:
            logger.error("No message pool for %s, skipping %s", kind, tz_name)
            return
        members = sorted(self.registry.members(tz_name))
        delivered = 0
        for chat_id in members:
            if await self._send(BotMessage(chat_id, pool.next_line())):
                delivered += 1
        audit_log("BROADCAST_SENT", tz=tz_name, kind=kind, recipients=len(members), delivered=delivered)

    async def _remind_group(self, tz_name: str) -> None:
        members = self.registry.members(tz_name)
        armed = self.registry.armed_members(tz_name)
        for chat_id in armed:
            logger.info("Reminding %s", chat_id)
            await self._send(BotMessage(chat_id, ui_txt.REMINDER_TEXT))
        audit_log("REMINDER_SENT", tz=tz_name, kind=KIND_REMIND, recipients=armed, skipped=len(members) - len(armed))
        await self._persist("touch_chats", sorted(members))

    def _reset_reminders(self) -> None:
        count = self.registry.reset_all_reminders()
        logger.info("Re-armed reminders for %d chats", count)
        audit_log("REMINDERS_RESET", armed=True, chats=count)

    # --- side effects ----------------------------------------------------

    async def _send(self, message: BotMessage) -> bool:
        try:
            await self.messenger.send(message)
        except TransportFailure as exc:
            logger.warning("Delivery to %s failed: %s", message.chat_id, exc.cause)
            return False
        except Exception:
            logger.exception("Unexpected error while sending to %s", message.chat_id)
            return False
        return True

    async def _persist(self, operation: str, *args: Any) -> None:
        # store calls are blocking sqlite I/O
        try:
            await asyncio.to_thread(getattr(self.store, operation), *args)
        except PersistenceFailure as exc:
            logger.error("Storage write failed, keeping in-memory state: %s", exc)

    # --- startup ---------------------------------------------------------

    def restore(self, rows: Iterable[Any], now: Optional[datetime] = None) -> int:
        """Rebuild the registry from stored ``(chat_id, tz, last_activity)`` rows.

        Must run before :meth:`start`; returns the number of restored chats.
        """

        restored = 0
        for chat_id, tz_name, last_activity in rows:
            armed = storage.should_arm_reminder(last_activity, now)
            try:
                created = self.registry.register(int(chat_id), tz_name, armed)
            except UnknownTimezone:
                logger.warning("Skipping chat %s with unknown stored timezone %r", chat_id, tz_name)
                continue
            if created:
                restored += 1
                audit_log("CHAT_RESTORED", chat_id=chat_id, tz=tz_name, armed=armed)
        logger.info("Restored %d chats in %d timezone groups", restored, len(self.registry.group_sizes()))
        return restored


__all__ = [
    "BotMessage",
    "HTML",
    "Messenger",
    "Subscribe",
    "ChangeTimezone",
    "Acknowledge",
    "ShowStatus",
    "NotifyGroup",
    "ResetReminders",
    "Command",
    "CommandSerializer",
]
