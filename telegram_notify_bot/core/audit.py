"""Audit trail for subscription and reminder events."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from .logging_setup import AUDIT_LOGGER, RUN_ID


def _iso_ts() -> str:
    return datetime.utcnow().replace(microsecond=0).isoformat()


_AUDIT_LOGGER = logging.getLogger(AUDIT_LOGGER)


def audit_log(event: str, **fields: Any) -> None:
    payload = {
        "ts": _iso_ts(),
        "event": event,
        "run_id": RUN_ID,
        "chat_id": fields.pop("chat_id", None),
        "tz": fields.pop("tz", None),
        "old_tz": fields.pop("old_tz", None),
        "kind": fields.pop("kind", None),
        "armed": fields.pop("armed", None),
        "reason": fields.pop("reason", None),
    }
    for key, value in fields.items():
        if value is None:
            continue
        if isinstance(value, datetime):
            payload[key] = value.isoformat()
        elif isinstance(value, (set, frozenset)):
            payload[key] = sorted(value)
        else:
            payload[key] = value
    _AUDIT_LOGGER.info(event, extra={"json_payload": payload})


__all__ = ["audit_log"]
