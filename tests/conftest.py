from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from apscheduler.jobstores.base import JobLookupError

from telegram_notify_bot.core.errors import PersistenceFailure, TransportFailure
from telegram_notify_bot.core.messages import LinePool
from telegram_notify_bot.core.serializer import BotMessage


class FakeScheduler:
    """Records ``add_job``/``remove_job`` like an APScheduler scheduler."""

    def __init__(self) -> None:
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.added: List[str] = []
        self.removed: List[str] = []

    def add_job(self, func: Callable[..., Any], trigger: Any = None, *, id: str, args: Iterable[Any] = (), **kwargs: Any) -> None:
        self.jobs[id] = {"func": func, "trigger": trigger, "args": list(args), "kwargs": kwargs}
        self.added.append(id)

    def remove_job(self, job_id: str) -> None:
        if job_id not in self.jobs:
            raise JobLookupError(job_id)
        del self.jobs[job_id]
        self.removed.append(job_id)

    async def fire(self, job_id: str) -> None:
        job = self.jobs[job_id]
        await job["func"](*job["args"])


class FakeMessenger:
    def __init__(self, failing: Iterable[int] = ()) -> None:
        self.sent: List[BotMessage] = []
        self.failing = set(failing)

    async def send(self, message: BotMessage) -> None:
        if message.chat_id in self.failing:
            raise TransportFailure(message.chat_id, ConnectionError("chat unreachable"))
        self.sent.append(message)

    def texts_for(self, chat_id: int) -> List[str]:
        return [m.text for m in self.sent if m.chat_id == chat_id]


class FakeStore:
    def __init__(self, rows: Iterable[Tuple[int, str, Optional[str]]] = (), *, broken: bool = False) -> None:
        self.rows = list(rows)
        self.broken = broken
        self.upserts: List[Tuple[int, str]] = []
        self.touched: List[Optional[List[int]]] = []

    def load_all_chats(self) -> List[Tuple[int, str, Optional[str]]]:
        return list(self.rows)

    def upsert_chat(self, chat_id: int, tz: str) -> None:
        if self.broken:
            raise PersistenceFailure("upsert_chat", OSError("disk full"))
        self.upserts.append((chat_id, tz))

    def touch_chats(self, chat_ids: Optional[Iterable[int]] = None) -> int:
        if self.broken:
            raise PersistenceFailure("touch_chats", OSError("disk full"))
        self.touched.append(None if chat_ids is None else list(chat_ids))
        return 0


@pytest.fixture
def fake_scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def messenger() -> FakeMessenger:
    return FakeMessenger()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def pools(tmp_path: Path) -> Dict[str, LinePool]:
    regular = tmp_path / "regular.txt"
    regular.write_text("regular line\n", encoding="utf-8")
    wednesday = tmp_path / "wednesday.txt"
    wednesday.write_text("wednesday line\n", encoding="utf-8")
    return {
        "regular": LinePool(regular, fallback="fallback"),
        "wednesday": LinePool(wednesday, fallback="fallback"),
    }
