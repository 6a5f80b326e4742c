from __future__ import annotations

from html import escape

TZ_EXAMPLE = "Europe/Kiev"

REMINDER_TEXT = "This is a reminder to call /checkin"


def help_text() -> str:
    return (
        "I post the daily messages to this chat and remind you to /checkin.\n\n"
        "/subscribe — start receiving messages\n"
        "/settz <code>Area/City</code> — set the chat timezone, e.g. "
        f"<code>/settz {TZ_EXAMPLE}</code>\n"
        "/checkin — today's check-in\n"
        "/status — current timezone and check-in state"
    )


def subscribed_text(tz_name: str, *, created: bool) -> str:
    if created:
        return f"✅ Subscribed. Timezone: <code>{escape(tz_name)}</code>"
    return f"Already subscribed. Timezone: <code>{escape(tz_name)}</code>"


def unknown_timezone_text(value: str) -> str:
    shown = escape(value) if value else "(empty)"
    return f"don't know abt timezone '{shown}'. Try something easier, like {TZ_EXAMPLE}"


def timezone_changed_text(tz_name: str) -> str:
    return f"OK: changed timezone to {escape(tz_name)}"


def status_text(tz_name: str, armed: bool) -> str:
    state = "⏳ pending — call /checkin" if armed else "✅ done for today"
    return f"Timezone: <code>{escape(tz_name)}</code>\nCheck-in: {state}"


__all__ = [
    "TZ_EXAMPLE",
    "REMINDER_TEXT",
    "help_text",
    "subscribed_text",
    "unknown_timezone_text",
    "timezone_changed_text",
    "status_text",
]
