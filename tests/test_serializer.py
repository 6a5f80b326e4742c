from __future__ import annotations

import asyncio
import logging
import sys
import threading
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from types import SimpleNamespace

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from conftest import FakeMessenger, FakeStore

from telegram_notify_bot.core import service as service_module
from telegram_notify_bot.core import storage
from telegram_notify_bot.core.constants import ACK_STICKER_ID, RESET_TZ_NAME
from telegram_notify_bot.core.messages import LinePool
from telegram_notify_bot.core.serializer import (
    HTML,
    Acknowledge,
    BotMessage,
    ChangeTimezone,
    NotifyGroup,
    ResetReminders,
    ShowStatus,
    Subscribe,
)
from telegram_notify_bot.core.service import NotifyService
from telegram_notify_bot.ui import texts as ui_txt

KIEV = "Europe/Kiev"
NEW_YORK = "America/New_York"
REGULAR, WEDNESDAY, REMIND = 0, 1, 2


def _service(scheduler, messenger, store, pools) -> NotifyService:
    return NotifyService(messenger, scheduler, pools=pools, default_tz=KIEV, store=store)


def test_nightly_reminder_reaches_only_armed_chats(fake_scheduler, messenger, store, pools) -> None:
    async def scenario() -> None:
        service = _service(fake_scheduler, messenger, store, pools)
        registry = service.registry
        registry.register(100, KIEV, armed=True)
        registry.register(200, KIEV, armed=False)
        registry.register(300, KIEV, armed=True)
        service.start(rows=[])

        await fake_scheduler.fire(registry.timer_handles(KIEV)[REMIND])
        await service.serializer.join()
        await service.stop()

    asyncio.run(scenario())

    assert messenger.sent == [
        BotMessage(100, ui_txt.REMINDER_TEXT),
        BotMessage(300, ui_txt.REMINDER_TEXT),
    ]
    assert store.touched == [[100, 200, 300]]


def test_checkin_sends_sticker_once_and_silences_reminder(fake_scheduler, messenger, store, pools) -> None:
    async def scenario() -> None:
        service = _service(fake_scheduler, messenger, store, pools)
        service.start(rows=[])
        serializer = service.serializer
        serializer.submit(Subscribe(5))
        serializer.submit(Acknowledge(5))
        serializer.submit(Acknowledge(5))
        serializer.submit(NotifyGroup(KIEV, "remind"))
        await serializer.join()
        await service.stop()

    asyncio.run(scenario())

    assert messenger.sent == [BotMessage(5, ACK_STICKER_ID, is_sticker=True)]
    assert store.upserts == [(5, KIEV)]


def test_reset_rearms_after_checkin(fake_scheduler, messenger, store, pools) -> None:
    async def scenario() -> None:
        service = _service(fake_scheduler, messenger, store, pools)
        service.start(rows=[(5, KIEV, None)])
        serializer = service.serializer
        serializer.submit(Acknowledge(5))
        await serializer.join()
        assert service.registry.get(5).reminder_armed is False

        await fake_scheduler.fire(service._reset_handle)
        await serializer.join()
        assert service.registry.get(5).reminder_armed is True

        await fake_scheduler.fire(service.registry.timer_handles(KIEV)[REMIND])
        await serializer.join()
        await service.stop()

    asyncio.run(scenario())

    assert messenger.texts_for(5) == [ACK_STICKER_ID, ui_txt.REMINDER_TEXT]


def test_reset_schedule_uses_fixed_timezone(fake_scheduler, messenger, store, pools) -> None:
    async def scenario():
        service = _service(fake_scheduler, messenger, store, pools)
        service.start(rows=[(1, NEW_YORK, None)])
        reset_handle = service._reset_handle
        trigger = fake_scheduler.jobs[reset_handle]["trigger"]
        await service.stop()
        return service, reset_handle, trigger

    service, reset_handle, trigger = asyncio.run(scenario())

    assert str(trigger.timezone) == RESET_TZ_NAME
    assert len(fake_scheduler.added) == 3 + 1
    assert fake_scheduler.removed == [reset_handle]
    assert service._reset_handle is None


def test_timezone_change_moves_chat_to_new_schedules(fake_scheduler, messenger, store, pools) -> None:
    async def scenario() -> None:
        service = _service(fake_scheduler, messenger, store, pools)
        service.start(rows=[])
        serializer = service.serializer
        serializer.submit(Subscribe(1))
        await serializer.join()
        kiev_handles = service.registry.timer_handles(KIEV)

        serializer.submit(ChangeTimezone(1, NEW_YORK))
        await serializer.join()
        assert all(handle not in fake_scheduler.jobs for handle in kiev_handles)
        assert fake_scheduler.removed[-3:] == kiev_handles

        # a Kiev fire that was already queued before the change
        serializer.submit(NotifyGroup(KIEV, "regular"))
        await fake_scheduler.fire(service.registry.timer_handles(NEW_YORK)[REGULAR])
        await serializer.join()
        await service.stop()

    asyncio.run(scenario())

    assert messenger.texts_for(1) == [
        ui_txt.timezone_changed_text(NEW_YORK),
        "regular line",
    ]
    assert store.upserts == [(1, KIEV), (1, NEW_YORK)]


def test_unknown_timezone_is_reported_and_state_kept(fake_scheduler, messenger, store, pools) -> None:
    async def scenario() -> NotifyService:
        service = _service(fake_scheduler, messenger, store, pools)
        service.start(rows=[])
        service.serializer.submit(Subscribe(1))
        service.serializer.submit(ChangeTimezone(1, "Mars/Olympus"))
        await service.serializer.join()
        await service.stop()
        return service

    service = asyncio.run(scenario())

    assert messenger.texts_for(1) == [ui_txt.unknown_timezone_text("Mars/Olympus")]
    assert service.registry.get(1).timezone == KIEV
    assert store.upserts == [(1, KIEV)]


def test_wednesday_broadcast_uses_its_own_pool(fake_scheduler, messenger, store, pools) -> None:
    async def scenario() -> None:
        service = _service(fake_scheduler, messenger, store, pools)
        service.start(rows=[(1, KIEV, None), (2, KIEV, None)])
        await fake_scheduler.fire(service.registry.timer_handles(KIEV)[WEDNESDAY])
        await service.serializer.join()
        await service.stop()

    asyncio.run(scenario())

    assert messenger.sent == [
        BotMessage(1, "wednesday line"),
        BotMessage(2, "wednesday line"),
    ]


def test_transport_failure_does_not_stop_worker(fake_scheduler, store, pools, caplog) -> None:
    messenger = FakeMessenger(failing=[1])
    caplog.set_level(logging.WARNING, logger="notify-bot")

    async def scenario() -> None:
        service = _service(fake_scheduler, messenger, store, pools)
        service.start(rows=[(1, KIEV, None), (2, KIEV, None)])
        serializer = service.serializer
        serializer.submit(NotifyGroup(KIEV, "regular"))
        serializer.submit(Acknowledge(1))
        serializer.submit(ShowStatus(2))
        await serializer.join()
        await service.stop()
        assert service.registry.get(1).reminder_armed is False

    asyncio.run(scenario())

    assert messenger.sent == [
        BotMessage(2, "regular line"),
        BotMessage(2, ui_txt.status_text(KIEV, True), parse_mode=HTML),
    ]
    assert any("Delivery to 1 failed" in r.getMessage() for r in caplog.records)


def test_persistence_failure_keeps_in_memory_state(fake_scheduler, messenger, pools, caplog) -> None:
    store = FakeStore(broken=True)
    caplog.set_level(logging.ERROR, logger="notify-bot")

    async def scenario() -> NotifyService:
        service = _service(fake_scheduler, messenger, store, pools)
        service.start(rows=[])
        service.serializer.submit(Subscribe(1))
        service.serializer.submit(ChangeTimezone(1, NEW_YORK))
        await service.serializer.join()
        await service.stop()
        return service

    service = asyncio.run(scenario())

    assert service.registry.get(1).timezone == NEW_YORK
    assert messenger.texts_for(1) == [ui_txt.timezone_changed_text(NEW_YORK)]
    assert any("Storage write failed" in r.getMessage() for r in caplog.records)


def test_failing_command_does_not_stop_worker(fake_scheduler, messenger, store, pools) -> None:
    class ExplodingRegistryCall:
        def __init__(self, original):
            self.original = original
            self.calls = 0

        def __call__(self, *args, **kwargs):
            self.calls += 1
            if self.calls == 1:
                raise RuntimeError("boom")
            return self.original(*args, **kwargs)

    async def scenario() -> NotifyService:
        service = _service(fake_scheduler, messenger, store, pools)
        service.registry.reset_all_reminders = ExplodingRegistryCall(service.registry.reset_all_reminders)
        service.start(rows=[(1, KIEV, None)])
        service.serializer.submit(ResetReminders())
        service.serializer.submit(ShowStatus(1))
        await service.serializer.join()
        await service.stop()
        return service

    asyncio.run(scenario())

    assert messenger.texts_for(1) == [ui_txt.status_text(KIEV, True)]


def test_restore_installs_one_group_per_timezone(fake_scheduler, messenger, store, pools) -> None:
    now = datetime(2020, 12, 29, 23, 0, tzinfo=timezone.utc)
    rows = [
        (1, KIEV, "2020-12-29 10:04:44"),
        (2, KIEV, "2020-12-27 10:04:44"),
        (3, NEW_YORK, None),
        (4, "Asia/Tokyo", "2020-12-29 22:59:00"),
        (5, NEW_YORK, "garbage"),
        (6, "Atlantis/Main", None),
    ]
    service = _service(fake_scheduler, messenger, store, pools)

    restored = service.serializer.restore(rows, now)

    assert restored == 5
    assert len(service.registry) == 5
    assert service.registry.group_sizes() == {KIEV: 2, NEW_YORK: 2, "Asia/Tokyo": 1}
    assert len(fake_scheduler.added) == 3 * 3
    armed = {chat_id: entry.reminder_armed for chat_id, entry in service.registry.snapshot().items()}
    assert armed == {1: False, 2: True, 3: True, 4: False, 5: True}


def test_submit_from_another_thread(fake_scheduler, messenger, store, pools) -> None:
    async def scenario() -> NotifyService:
        service = _service(fake_scheduler, messenger, store, pools)
        service.start(rows=[])
        await asyncio.to_thread(service.serializer.submit, Subscribe(9, announce=True))
        await asyncio.sleep(0)
        await service.serializer.join()
        await service.stop()
        return service

    service = asyncio.run(scenario())

    assert 9 in service.registry
    assert messenger.texts_for(9) == [ui_txt.subscribed_text(KIEV, created=True)]


def test_stop_drains_pending_commands(fake_scheduler, messenger, store, pools) -> None:
    async def scenario() -> NotifyService:
        service = _service(fake_scheduler, messenger, store, pools)
        service.start(rows=[])
        for chat_id in range(10, 15):
            service.serializer.submit(Subscribe(chat_id))
        await service.stop()
        return service

    service = asyncio.run(scenario())

    assert len(service.registry) == 5
    assert not service.serializer.running


def test_unwritable_data_directory_still_confirms_timezone(fake_scheduler, messenger, pools, tmp_path, caplog) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    db_path = blocker / "chats.db"
    store = SimpleNamespace(
        load_all_chats=partial(storage.load_all_chats, db_path=db_path),
        upsert_chat=partial(storage.upsert_chat, db_path=db_path),
        touch_chats=partial(storage.touch_chats, db_path=db_path),
    )
    caplog.set_level(logging.ERROR, logger="notify-bot")

    async def scenario() -> NotifyService:
        service = _service(fake_scheduler, messenger, store, pools)
        service.start(rows=[(1, KIEV, None)])
        service.serializer.submit(ChangeTimezone(1, NEW_YORK))
        await service.serializer.join()
        await service.stop()
        return service

    service = asyncio.run(scenario())

    assert service.registry.get(1).timezone == NEW_YORK
    assert messenger.texts_for(1) == [ui_txt.timezone_changed_text(NEW_YORK)]
    assert any("Storage write failed" in r.getMessage() for r in caplog.records)
    assert not any("failed" in r.getMessage() and "Command" in r.getMessage() for r in caplog.records)


def test_store_writes_run_off_the_event_loop_thread(fake_scheduler, messenger, pools) -> None:
    class ThreadRecordingStore(FakeStore):
        def __init__(self) -> None:
            super().__init__()
            self.threads = []

        def upsert_chat(self, chat_id, tz):
            self.threads.append(threading.get_ident())
            super().upsert_chat(chat_id, tz)

    store = ThreadRecordingStore()

    async def scenario() -> int:
        service = _service(fake_scheduler, messenger, store, pools)
        service.start(rows=[])
        service.serializer.submit(Subscribe(1))
        service.serializer.submit(ChangeTimezone(1, NEW_YORK))
        await service.serializer.join()
        await service.stop()
        return threading.get_ident()

    loop_thread = asyncio.run(scenario())

    assert store.upserts == [(1, KIEV), (1, NEW_YORK)]
    assert len(store.threads) == 2
    assert loop_thread not in store.threads


def test_broadcast_lines_are_sent_as_plain_text(fake_scheduler, messenger, store, tmp_path) -> None:
    line = "4:20 <3 & chill"
    regular = tmp_path / "markup.txt"
    regular.write_text(line + "\n", encoding="utf-8")
    pools = {"regular": LinePool(regular, fallback="fallback")}

    async def scenario() -> None:
        service = _service(fake_scheduler, messenger, store, pools)
        service.start(rows=[(1, KIEV, None)])
        service.serializer.submit(NotifyGroup(KIEV, "regular"))
        service.serializer.submit(NotifyGroup(KIEV, "remind"))
        service.serializer.submit(ShowStatus(1))
        await service.serializer.join()
        await service.stop()

    asyncio.run(scenario())

    assert messenger.sent == [
        BotMessage(1, line, parse_mode=None),
        BotMessage(1, ui_txt.REMINDER_TEXT, parse_mode=None),
        BotMessage(1, ui_txt.status_text(KIEV, True), parse_mode=HTML),
    ]


def test_reset_schedule_honours_zone_in_reset_cron(fake_scheduler, messenger, store, pools, monkeypatch) -> None:
    monkeypatch.setattr(service_module, "RESET_CRON", "CRON_TZ=Asia/Tokyo 30 23 * * *")

    async def scenario():
        service = _service(fake_scheduler, messenger, store, pools)
        service.start(rows=[])
        trigger = fake_scheduler.jobs[service._reset_handle]["trigger"]
        await service.stop()
        return trigger

    trigger = asyncio.run(scenario())

    assert str(trigger.timezone) == "Asia/Tokyo"
