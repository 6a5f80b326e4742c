import logging
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, NamedTuple, Optional

import pytz
from tzlocal import get_localzone_name

from .constants import CHATS_DB_PATH, DEFAULT_TZ_NAME, TIMESTAMP_FORMAT
from .errors import PersistenceFailure, UnknownTimezone

logger = logging.getLogger("notify-bot")


class ChatRow(NamedTuple):
    chat_id: int
    tz: str
    last_activity: Optional[str]


_SCHEMA = """
CREATE TABLE IF NOT EXISTS chats (
    chat_id INTEGER PRIMARY KEY,
    tz TEXT NOT NULL,
    last_activity TEXT
)
"""


# Timezones ----------------------------------------------------------------

def resolve_timezone(name: Optional[str]) -> pytz.BaseTzInfo:
    """Return the tzinfo for an IANA name or raise :class:`UnknownTimezone`."""

    value = (name or "").strip()
    if not value:
        raise UnknownTimezone(name or "")
    try:
        return pytz.timezone(value)
    except pytz.UnknownTimeZoneError as exc:
        raise UnknownTimezone(value) from exc


def get_default_tz_name() -> str:
    """Timezone for new chats: environment, then the local zone, then UTC."""

    candidates = [os.environ.get("DEFAULT_TZ"), DEFAULT_TZ_NAME]
    try:
        candidates.append(get_localzone_name())
    except Exception as exc:
        logger.warning("Failed to detect local TZ (%s), falling back to UTC", exc)
    for name in candidates:
        if not name:
            continue
        try:
            return resolve_timezone(name).zone
        except UnknownTimezone:
            logger.warning("Invalid default TZ '%s', trying the next one", name)
    return "UTC"


# Database -----------------------------------------------------------------

def _connect(db_path: Optional[Path] = None) -> sqlite3.Connection:
    """Open the chats database, creating the table if needed."""

    path = Path(db_path or CHATS_DB_PATH)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute(_SCHEMA)
    except sqlite3.Error:
        conn.close()
        raise
    return conn


def load_all_chats(db_path: Optional[Path] = None) -> List[ChatRow]:
    try:
        conn = _connect(db_path)
        try:
            rows = conn.execute(
                "SELECT chat_id, tz, last_activity FROM chats ORDER BY chat_id"
            ).fetchall()
        finally:
            conn.close()
    except (sqlite3.Error, OSError) as exc:
        raise PersistenceFailure("load_all_chats", exc) from exc
    return [ChatRow(int(r["chat_id"]), r["tz"], r["last_activity"]) for r in rows]


def upsert_chat(chat_id: int, tz: str, db_path: Optional[Path] = None) -> None:
    try:
        conn = _connect(db_path)
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO chats (chat_id, tz, last_activity)
                    VALUES (?, ?, datetime('now'))
                    ON CONFLICT(chat_id) DO UPDATE SET
                        tz = excluded.tz,
                        last_activity = excluded.last_activity
                    """,
                    (chat_id, tz),
                )
        finally:
            conn.close()
    except (sqlite3.Error, OSError) as exc:
        raise PersistenceFailure("upsert_chat", exc) from exc


def touch_chats(
    chat_ids: Optional[Iterable[int]] = None, db_path: Optional[Path] = None
) -> int:
    """Refresh the activity timestamp; ``None`` means every chat.

    Returns the number of updated rows."""

    try:
        conn = _connect(db_path)
        try:
            with conn:
                if chat_ids is None:
                    cur = conn.execute("UPDATE chats SET last_activity = datetime('now')")
                else:
                    cur = conn.executemany(
                        "UPDATE chats SET last_activity = datetime('now') WHERE chat_id = ?",
                        [(int(cid),) for cid in chat_ids],
                    )
                return cur.rowcount
        finally:
            conn.close()
    except (sqlite3.Error, OSError) as exc:
        raise PersistenceFailure("touch_chats", exc) from exc


def should_arm_reminder(last_activity: Optional[str], now: Optional[datetime] = None) -> bool:
    """Whether a chat last seen at ``last_activity`` should start armed.

    SQLite writes the stamps in UTC. The chat starts checked in only when the
    stamp falls on the same calendar day as ``now``; a missing or
    unparsable stamp means armed.
    """

    if not last_activity:
        return True
    try:
        stamp = datetime.strptime(last_activity, TIMESTAMP_FORMAT)
    except (TypeError, ValueError):
        return True
    if now is None:
        now = datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc).replace(tzinfo=None)
    return stamp.date() != now.date()


__all__ = [
    "ChatRow",
    "resolve_timezone",
    "get_default_tz_name",
    "load_all_chats",
    "upsert_chat",
    "touch_chats",
    "should_arm_reminder",
]
