import os
from pathlib import Path


def _int_from_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _str_from_env(name: str, default: str) -> str:
    raw = os.environ.get(name, "").strip()
    return raw or default


VERSION = "1.0.0"

# Token comes from the environment (.env is loaded at startup)
BOT_TOKEN = os.environ.get("TG_API_KEY", "")

# Timezone for new chats
DEFAULT_TZ_NAME = _str_from_env("DEFAULT_TZ", "Europe/Kiev")

# Daily reminder reset runs on one clock for every chat
RESET_TZ_NAME = _str_from_env("RESET_TZ", "Europe/Kiev")
RESET_CRON = _str_from_env("RESET_CRON", "30 23 * * *")

# Per-timezone schedules (crontab day of week: 0 and 7 are Sunday)
REGULAR_CRON = _str_from_env("REGULAR_CRON", "20 16 * * 0-2,4-6")
WEDNESDAY_CRON = _str_from_env("WEDNESDAY_CRON", "20 16 * * 3")
REMIND_CRON = _str_from_env("REMIND_CRON", "0 23 * * *")

KIND_REGULAR = "regular"
KIND_WEDNESDAY = "wednesday"
KIND_REMIND = "remind"

GROUP_SCHEDULES = (
    (KIND_REGULAR, REGULAR_CRON),
    (KIND_WEDNESDAY, WEDNESDAY_CRON),
    (KIND_REMIND, REMIND_CRON),
)

# Logs and persistent data (relative to the project root)
BASE_DIR = Path(__file__).resolve().parents[2]
DATA_DIR = Path(_str_from_env("BOT_DATA_DIR", str(BASE_DIR / "data")))
LOGS_DIR = DATA_DIR / "logs"
LOGS_APP_DIR = LOGS_DIR / "app"
LOGS_AUDIT_DIR = LOGS_DIR / "audit"
LOGS_ERROR_DIR = LOGS_DIR / "error"

APP_LOG_RETENTION_DAYS = _int_from_env("APP_LOG_RETENTION_DAYS", 30)
AUDIT_LOG_RETENTION_DAYS = _int_from_env("AUDIT_LOG_RETENTION_DAYS", 30)
ERROR_LOG_MAX_BYTES = _int_from_env("ERROR_LOG_MAX_BYTES", 10 * 1024 * 1024)
ERROR_LOG_BACKUP_COUNT = _int_from_env("ERROR_LOG_BACKUP_COUNT", 10)

CHATS_DB_PATH = Path(_str_from_env("CHATS_DB_PATH", str(DATA_DIR / "chats.db")))

# Broadcast line pools
REGULAR_MESSAGES_PATH = Path(
    _str_from_env("REGULAR_MESSAGES_PATH", str(DATA_DIR / "420_msg.txt"))
)
WEDNESDAY_MESSAGES_PATH = Path(
    _str_from_env("WEDNESDAY_MESSAGES_PATH", str(DATA_DIR / "wednesday.txt"))
)
FALLBACK_MESSAGE = "https://www.youtube.com/watch?v=-5qmvsZr0F8"

ACK_STICKER_ID = _str_from_env(
    "ACK_STICKER_ID",
    "CAACAgIAAxkBAAIBq1_I9VKJwdOKaGlg7VrGfj2-9gHlAAIeAQAC0t1pBceuDjBghrA8HgQ",
)

# Activity stamp format, same as SQLite datetime('now')
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
