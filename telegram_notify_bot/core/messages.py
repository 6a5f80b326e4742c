from __future__ import annotations

import logging
import random
from pathlib import Path
from typing import Iterator, Optional

from .constants import FALLBACK_MESSAGE

logger = logging.getLogger("notify-bot")


def read_lines(path: Path | str) -> list[str]:
    """Return the non-blank lines of a file without trailing whitespace."""

    with Path(path).open("r", encoding="utf-8") as f:
        return [line.rstrip() for line in f if line.strip()]


class LinePool:
    """Endless supply of lines from a text file in shuffled order.

    Every line is handed out once per pass; the file is re-read and
    reshuffled when a pass is exhausted, so edits to the file are picked up
    without a restart. When the file is missing or empty ``next_line``
    returns ``fallback`` and tries the file again on the next call.
    """

    def __init__(
        self,
        path: Path | str,
        fallback: str = FALLBACK_MESSAGE,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.path = Path(path)
        self.fallback = fallback
        self._rng = rng or random.Random()
        self._pending: Iterator[str] = iter(())

    def _refill(self) -> bool:
        try:
            lines = read_lines(self.path)
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Failed to read line pool %s: %s", self.path, exc)
            return False
        if not lines:
            logger.warning("Line pool %s is empty", self.path)
            return False
        self._rng.shuffle(lines)
        self._pending = iter(lines)
        return True

    def next_line(self) -> str:
        line = next(self._pending, None)
        if line is not None:
            return line
        if not self._refill():
            return self.fallback
        return next(self._pending)


__all__ = ["LinePool", "read_lines"]
