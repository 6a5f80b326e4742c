"""Entry point: ``python -m telegram_notify_bot`` or ``telegram-notify-bot``."""

from __future__ import annotations

import asyncio
import logging
from importlib import import_module

from dotenv import load_dotenv


def main() -> None:
    # .env must be loaded before constants is imported
    load_dotenv()
    module = import_module("telegram_notify_bot.aiogram_app.app")
    try:
        asyncio.run(module.main())
    except KeyboardInterrupt:
        logging.getLogger("notify-bot").info("Stopped by user")


if __name__ == "__main__":  # pragma: no cover
    main()
