from __future__ import annotations

import hashlib
import json
import logging
import os
import traceback
import uuid
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import IO, Optional

from .constants import (
    APP_LOG_RETENTION_DAYS,
    AUDIT_LOG_RETENTION_DAYS,
    ERROR_LOG_BACKUP_COUNT,
    ERROR_LOG_MAX_BYTES,
    LOGS_APP_DIR,
    LOGS_AUDIT_DIR,
    LOGS_ERROR_DIR,
)

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
RUN_ID = uuid.uuid4().hex

APP_LOGGER = "notify-bot"
AUDIT_LOGGER = "notify.audit"
ERROR_LOGGER = "notify.error"


def _utc_iso() -> str:
    return datetime.utcnow().replace(microsecond=0).isoformat()


class _DatedFileHandler(logging.Handler):
    """Append records to ``<prefix>_<YYYY-MM-DD>.log`` inside ``directory``."""

    def __init__(self, directory: Path, prefix: str, *, encoding: str = "utf-8") -> None:
        super().__init__()
        self.directory = Path(directory)
        self.prefix = prefix
        self.encoding = encoding
        self._path: Optional[Path] = None
        self._stream: Optional[IO[str]] = None
        self._open_for_today()

    def _today_path(self) -> Path:
        return self.directory / f"{self.prefix}_{date.today().isoformat()}.log"

    def _open_for_today(self) -> None:
        desired = self._today_path()
        if self._stream is not None and self._path == desired:
            return
        self.directory.mkdir(parents=True, exist_ok=True)
        self._close_stream()
        self._path = desired
        self._stream = desired.open("a", encoding=self.encoding)
        self._cleanup()

    def _close_stream(self) -> None:
        if self._stream is None:
            return
        try:
            self._stream.close()
        except OSError:
            pass
        self._stream = None

    def _before_write(self) -> None:
        """Hook for subclasses that rotate on something other than the date."""

    def _cleanup(self) -> None:
        raise NotImplementedError

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._open_for_today()
            self._before_write()
            assert self._stream is not None
            self._stream.write(self.format(record) + "\n")
            self._stream.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        self._close_stream()
        super().close()


class DailyFileHandler(_DatedFileHandler):
    """One file per day; files older than ``retention_days`` are removed."""

    def __init__(self, directory: Path, prefix: str, *, retention_days: int, encoding: str = "utf-8") -> None:
        self.retention_days = max(0, retention_days)
        super().__init__(directory, prefix, encoding=encoding)

    def _cleanup(self) -> None:
        if self.retention_days <= 0:
            return
        cutoff = datetime.utcnow() - timedelta(days=self.retention_days)
        for log_path in self.directory.glob(f"{self.prefix}_*.log"):
            try:
                if datetime.utcfromtimestamp(log_path.stat().st_mtime) < cutoff:
                    log_path.unlink()
            except OSError:
                continue


class SizedJSONFileHandler(_DatedFileHandler):
    """Date-named file that is also rotated once it grows past ``max_bytes``."""

    def __init__(
        self,
        directory: Path,
        prefix: str,
        *,
        max_bytes: int,
        backup_count: int,
        encoding: str = "utf-8",
    ) -> None:
        self.max_bytes = max(1, max_bytes)
        self.backup_count = max(0, backup_count)
        super().__init__(directory, prefix, encoding=encoding)

    def _before_write(self) -> None:
        if self._stream is None or self._path is None:
            return
        if self._stream.tell() < self.max_bytes:
            return
        self._close_stream()
        stamp = datetime.utcnow().strftime("%Y%m%d_%H%M%S")
        rotated = self.directory / f"{self.prefix}_{stamp}_{uuid.uuid4().hex[:6]}.log"
        try:
            self._path.rename(rotated)
        except OSError:
            pass
        self._stream = self._path.open("a", encoding=self.encoding)
        self._cleanup()

    def _cleanup(self) -> None:
        if self.backup_count <= 0:
            return
        files = sorted(
            self.directory.glob(f"{self.prefix}_*.log"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        for path in files[self.backup_count :]:
            try:
                path.unlink()
            except OSError:
                continue


class AuditJSONFormatter(logging.Formatter):
    KEYS = (
        "ts",
        "event",
        "chat_id",
        "tz",
        "old_tz",
        "kind",
        "armed",
        "reason",
        "run_id",
    )

    def format(self, record: logging.LogRecord) -> str:
        payload = dict(getattr(record, "json_payload", {}) or {})
        payload.setdefault("ts", _utc_iso())
        payload.setdefault("run_id", RUN_ID)
        for key in self.KEYS:
            payload.setdefault(key, None)
        return json.dumps(payload, ensure_ascii=False)


class ErrorJSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        payload = dict(getattr(record, "json_payload", {}) or {})
        payload.setdefault("ts", _utc_iso())
        payload.setdefault("level", record.levelname)
        payload.setdefault("where", record.name)
        payload.setdefault("message", message.splitlines()[0] if message else "")
        payload.setdefault("type", getattr(record, "error_type", None) or record.levelname)
        payload.setdefault("run_id", RUN_ID)
        if record.exc_info:
            stack_text = "".join(traceback.format_exception(*record.exc_info))
            payload.setdefault("stack", stack_text)
            payload.setdefault(
                "stack_id",
                hashlib.blake2b(stack_text.encode("utf-8"), digest_size=6).hexdigest(),
            )
        return json.dumps(payload, ensure_ascii=False)


def _resolve_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    name = level or os.environ.get("LOG_LEVEL", "INFO")
    return getattr(logging, name.upper(), logging.INFO)


def _own_logger(name: str, level: int, *handlers: logging.Handler) -> logging.Logger:
    log = logging.getLogger(name)
    log.handlers.clear()
    log.setLevel(level)
    log.propagate = False
    for handler in handlers:
        log.addHandler(handler)
    return log


def setup_logging(level: str | int | None = None) -> logging.Logger:
    """Configure the application, audit and error loggers.

    The application logger writes a daily text file, the audit logger writes
    one JSON document per line, and every WARNING+ record (from any logger)
    ends up in the size-rotated JSON error log.
    """

    resolved_level = _resolve_level(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(resolved_level)
    root_logger.handlers.clear()
    logging.captureWarnings(True)

    error_handler = SizedJSONFileHandler(
        LOGS_ERROR_DIR,
        "error",
        max_bytes=ERROR_LOG_MAX_BYTES,
        backup_count=ERROR_LOG_BACKUP_COUNT,
    )
    error_handler.setLevel(logging.WARNING)
    error_handler.setFormatter(ErrorJSONFormatter())
    root_logger.addHandler(error_handler)

    console: Optional[logging.Handler] = None
    if os.environ.get("BOT_CONSOLE_LOGS", "1") != "0":
        console = logging.StreamHandler()
        console.setLevel(resolved_level)
        console.setFormatter(logging.Formatter(TEXT_FORMAT, DATE_FORMAT))
        root_logger.addHandler(console)

    app_handler = DailyFileHandler(LOGS_APP_DIR, "app", retention_days=APP_LOG_RETENTION_DAYS)
    app_handler.setLevel(resolved_level)
    app_handler.setFormatter(logging.Formatter(TEXT_FORMAT, DATE_FORMAT))
    app_handlers = [app_handler, error_handler] + ([console] if console else [])
    app_logger = _own_logger(APP_LOGGER, resolved_level, *app_handlers)

    audit_handler = DailyFileHandler(LOGS_AUDIT_DIR, "audit", retention_days=AUDIT_LOG_RETENTION_DAYS)
    audit_handler.setLevel(logging.INFO)
    audit_handler.setFormatter(AuditJSONFormatter())
    _own_logger(AUDIT_LOGGER, logging.INFO, audit_handler)

    _own_logger(ERROR_LOGGER, logging.WARNING, error_handler)

    return app_logger


__all__ = [
    "APP_LOGGER",
    "AUDIT_LOGGER",
    "ERROR_LOGGER",
    "RUN_ID",
    "setup_logging",
    "DailyFileHandler",
    "SizedJSONFileHandler",
    "AuditJSONFormatter",
    "ErrorJSONFormatter",
]
