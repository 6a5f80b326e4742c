"""Telegram delivery for :class:`~telegram_notify_bot.core.serializer.BotMessage`."""
from __future__ import annotations

import asyncio
import logging

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError, TelegramBadRequest, TelegramForbiddenError
from aiohttp import ClientError

from telegram_notify_bot.core.errors import TransportFailure
from telegram_notify_bot.core.serializer import BotMessage

logger = logging.getLogger("notify-bot")

_TRANSPORT_ERRORS = (
    TelegramAPIError,
    ClientError,
    asyncio.TimeoutError,
    OSError,
)


class AiogramMessenger:
    """Send text or sticker payloads; every failure becomes :class:`TransportFailure`."""

    def __init__(self, bot: Bot) -> None:
        self.bot = bot

    async def send(self, message: BotMessage) -> None:
        logger.debug("Sending %s to %s", "sticker" if message.is_sticker else "text", message.chat_id)
        try:
            if message.is_sticker:
                await self.bot.send_sticker(chat_id=message.chat_id, sticker=message.text)
            else:
                await self.bot.send_message(
                    chat_id=message.chat_id, text=message.text, parse_mode=message.parse_mode
                )
        except TelegramForbiddenError as exc:
            logger.warning("Bot removed from chat %s", message.chat_id)
            raise TransportFailure(message.chat_id, exc) from exc
        except TelegramBadRequest as exc:
            if "kicked" in str(exc).lower():
                logger.warning("Bot removed from chat %s", message.chat_id)
            raise TransportFailure(message.chat_id, exc) from exc
        except _TRANSPORT_ERRORS as exc:
            raise TransportFailure(message.chat_id, exc) from exc


__all__ = ["AiogramMessenger"]
