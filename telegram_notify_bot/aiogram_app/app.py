from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from datetime import timezone
from typing import Optional

from aiogram import Bot, Dispatcher, Router
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.filters import Command, CommandObject
from aiogram.types import BotCommand, Message
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from telegram_notify_bot.aiogram_app.transport import AiogramMessenger
from telegram_notify_bot.core import constants
from telegram_notify_bot.core.logging_setup import setup_logging
from telegram_notify_bot.core.serializer import (
    Acknowledge,
    ChangeTimezone,
    CommandSerializer,
    ShowStatus,
    Subscribe,
)
from telegram_notify_bot.core.service import NotifyService
from telegram_notify_bot.ui import texts as ui_txt

logger = logging.getLogger("notify-bot")

router = Router()
scheduler = AsyncIOScheduler(timezone=timezone.utc)

_SUBSCRIBE = "subscribe"


class ErrorsMiddleware:
    async def __call__(self, handler, event, data):  # type: ignore[override]
        try:
            return await handler(event, data)
        except Exception as exc:
            logger.exception("Unhandled error", exc_info=exc)
            if isinstance(event, Message):
                with suppress(Exception):
                    await event.answer("⚠️ Something went wrong.")
            return None


class AutoSubscribeMiddleware:
    """Enqueue a silent subscribe for the chat before any handled command."""

    async def __call__(self, handler, event, data):  # type: ignore[override]
        serializer: Optional[CommandSerializer] = data.get("serializer")
        command: Optional[CommandObject] = data.get("command")
        chat = getattr(event, "chat", None)
        explicit = command is not None and command.command.lower() == _SUBSCRIBE
        if serializer is not None and chat is not None and not explicit:
            serializer.submit(Subscribe(chat.id))
        return await handler(event, data)


# === Commands ===


@router.message(Command("start", "help"))
async def cmd_help(message: Message) -> None:
    logger.info("[%s] %s", message.chat.id, message.text)
    await message.answer(ui_txt.help_text())


@router.message(Command(_SUBSCRIBE))
async def cmd_subscribe(message: Message, serializer: CommandSerializer) -> None:
    serializer.submit(Subscribe(message.chat.id, announce=True))


@router.message(Command("settz"))
async def cmd_settz(message: Message, command: CommandObject, serializer: CommandSerializer) -> None:
    logger.info("[%s] settz %r", message.chat.id, command.args)
    serializer.submit(ChangeTimezone(message.chat.id, (command.args or "").strip()))


@router.message(Command("checkin"))
async def cmd_checkin(message: Message, serializer: CommandSerializer) -> None:
    logger.info("Detected /checkin at %s", message.chat.id)
    serializer.submit(Acknowledge(message.chat.id))


@router.message(Command("status"))
async def cmd_status(message: Message, serializer: CommandSerializer) -> None:
    serializer.submit(ShowStatus(message.chat.id))


# === Lifecycle ===


async def on_startup(bot: Bot, service: NotifyService) -> None:
    commands = [
        BotCommand(command="checkin", description="Today's check-in"),
        BotCommand(command="settz", description="Set chat timezone"),
        BotCommand(command="status", description="Timezone and check-in state"),
        BotCommand(command=_SUBSCRIBE, description="Start receiving messages"),
        BotCommand(command="help", description="Help"),
    ]
    with suppress(Exception):
        await bot.set_my_commands(commands)
    if not scheduler.running:
        scheduler.start()
    restored = service.start()
    logger.info("Startup complete, %d chats restored", restored)


async def on_shutdown(service: NotifyService) -> None:
    await service.stop()
    if scheduler.running:
        scheduler.shutdown(wait=False)
    logger.info("Shutdown complete")


def build_dispatcher(service: NotifyService) -> Dispatcher:
    dp = Dispatcher()
    dp["service"] = service
    dp["serializer"] = service.serializer
    dp.message.middleware(ErrorsMiddleware())
    dp.message.middleware(AutoSubscribeMiddleware())
    dp.include_router(router)
    dp.startup.register(on_startup)
    dp.shutdown.register(on_shutdown)
    return dp


async def main() -> None:
    setup_logging()
    token = constants.BOT_TOKEN
    if not token:
        raise SystemExit("TG_API_KEY is not configured")
    bot = Bot(token, default=DefaultBotProperties(parse_mode=ParseMode.HTML))
    service = NotifyService(AiogramMessenger(bot), scheduler)
    dp = build_dispatcher(service)
    await dp.start_polling(bot)


if __name__ == "__main__":
    asyncio.run(main())
