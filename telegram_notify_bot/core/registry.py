"""In-memory registry of subscribed chats grouped by timezone.

Every chat lives in exactly one :class:`TimezoneGroup`. A group owns the
recurring timers for its timezone: they are installed when the first member
arrives and cancelled the moment the last member leaves, so a chat can never
be scheduled under two timezones at once.

The registry is not thread-safe and does not lock. All mutations are meant
to run inside the single worker of
:class:`~telegram_notify_bot.core.serializer.CommandSerializer`.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Sequence

from .audit import audit_log
from .errors import UnknownChat
from .storage import resolve_timezone

logger = logging.getLogger("notify-bot")

InstallTimers = Callable[[str], Sequence[Any]]
CancelTimers = Callable[[Sequence[Any]], None]


@dataclass
class ChatEntry:
    chat_id: int
    timezone: str
    reminder_armed: bool = True


@dataclass
class TimezoneGroup:
    timezone: str
    members: set[int] = field(default_factory=set)
    timer_handles: List[Any] = field(default_factory=list)


class ChatRegistry:
    def __init__(self, install_timers: InstallTimers, cancel_timers: CancelTimers) -> None:
        self._install_timers = install_timers
        self._cancel_timers = cancel_timers
        self._chats: Dict[int, ChatEntry] = {}
        self._groups: Dict[str, TimezoneGroup] = {}

    def __len__(self) -> int:
        return len(self._chats)

    def __contains__(self, chat_id: object) -> bool:
        return chat_id in self._chats

    def __repr__(self) -> str:
        return f"ChatRegistry(chats={len(self._chats)}, groups={self.group_sizes()})"

    # --- mutations -------------------------------------------------------

    def register(self, chat_id: int, timezone: str, armed: bool = True) -> bool:
        """Add ``chat_id`` under ``timezone``; ``False`` if it is already known.

        Raises :class:`UnknownTimezone` for names missing from the tz database.
        """

        if chat_id in self._chats:
            logger.debug("%s is already registered, skipping", chat_id)
            return False
        tz_name = resolve_timezone(timezone).zone
        group = self._groups.get(tz_name)
        if group is None:
            group = self._create_group(tz_name)
        self._chats[chat_id] = ChatEntry(chat_id, tz_name, armed)
        group.members.add(chat_id)
        logger.info("Registered chat %s in %s (armed=%s)", chat_id, tz_name, armed)
        return True

    def change_timezone(self, chat_id: int, new_timezone: str) -> str:
        """Move ``chat_id`` to ``new_timezone`` and return the canonical name.

        The name is validated before anything is touched, so on
        :class:`UnknownTimezone` the registry is left as it was. The chat is
        removed from its old group (whose timers are cancelled if it became
        empty) before it is added to the new one.
        """

        entry = self._chats.get(chat_id)
        if entry is None:
            raise UnknownChat(chat_id)
        tz_name = resolve_timezone(new_timezone).zone
        old_tz = entry.timezone
        if tz_name == old_tz:
            return tz_name

        armed = entry.reminder_armed
        self._remove(chat_id)
        try:
            self.register(chat_id, tz_name, armed)
        except Exception:
            logger.exception("Failed to move %s to %s, restoring %s", chat_id, tz_name, old_tz)
            self.register(chat_id, old_tz, armed)
            raise
        logger.info("Moved chat %s from %s to %s", chat_id, old_tz, tz_name)
        return tz_name

    def acknowledge_reminder(self, chat_id: int) -> bool:
        """Disarm today's reminder; ``True`` only on the first call after a reset."""

        entry = self._chats.get(chat_id)
        if entry is None:
            raise UnknownChat(chat_id)
        if not entry.reminder_armed:
            return False
        entry.reminder_armed = False
        return True

    def reset_all_reminders(self) -> int:
        for entry in self._chats.values():
            entry.reminder_armed = True
        return len(self._chats)

    def _create_group(self, tz_name: str) -> TimezoneGroup:
        handles = list(self._install_timers(tz_name))
        group = TimezoneGroup(tz_name, timer_handles=handles)
        self._groups[tz_name] = group
        logger.info("Created timezone group %s with %d timers", tz_name, len(handles))
        audit_log("GROUP_CREATED", tz=tz_name, timers=len(handles))
        return group

    def _remove(self, chat_id: int) -> None:
        entry = self._chats.pop(chat_id)
        group = self._groups[entry.timezone]
        group.members.discard(chat_id)
        if group.members:
            return
        self._cancel_timers(group.timer_handles)
        del self._groups[entry.timezone]
        logger.info("Destroyed empty timezone group %s", entry.timezone)
        audit_log("GROUP_DESTROYED", tz=entry.timezone, timers=len(group.timer_handles))

    # --- reads -----------------------------------------------------------

    def get(self, chat_id: int) -> Optional[ChatEntry]:
        entry = self._chats.get(chat_id)
        return replace(entry) if entry is not None else None

    def has_group(self, timezone: str) -> bool:
        return timezone in self._groups

    def members(self, timezone: str) -> frozenset[int]:
        group = self._groups.get(timezone)
        return frozenset(group.members) if group is not None else frozenset()

    def armed_members(self, timezone: str) -> List[int]:
        return sorted(
            chat_id
            for chat_id in self.members(timezone)
            if self._chats[chat_id].reminder_armed
        )

    def timer_handles(self, timezone: str) -> List[Any]:
        group = self._groups.get(timezone)
        return list(group.timer_handles) if group is not None else []

    def group_sizes(self) -> Dict[str, int]:
        return {tz: len(group.members) for tz, group in self._groups.items()}

    def snapshot(self) -> Dict[int, ChatEntry]:
        return {chat_id: replace(entry) for chat_id, entry in self._chats.items()}


__all__ = ["ChatEntry", "TimezoneGroup", "ChatRegistry"]
