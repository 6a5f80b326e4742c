"""Error taxonomy shared by the registry, the worker and the adapters."""
from __future__ import annotations


class NotifyBotError(Exception):
    """Base class for recoverable bot errors."""


class UnknownTimezone(NotifyBotError):
    def __init__(self, value: str) -> None:
        super().__init__(f"unknown timezone {value!r}")
        self.value = value


class UnknownChat(NotifyBotError):
    def __init__(self, chat_id: int) -> None:
        super().__init__(f"chat {chat_id} is not registered")
        self.chat_id = chat_id


class TransportFailure(NotifyBotError):
    def __init__(self, chat_id: int, cause: BaseException) -> None:
        super().__init__(f"failed to deliver to {chat_id}: {cause}")
        self.chat_id = chat_id
        self.cause = cause


class PersistenceFailure(NotifyBotError):
    def __init__(self, operation: str, cause: BaseException) -> None:
        super().__init__(f"{operation} failed: {cause}")
        self.operation = operation
        self.cause = cause


__all__ = [
    "NotifyBotError",
    "UnknownTimezone",
    "UnknownChat",
    "TransportFailure",
    "PersistenceFailure",
]
