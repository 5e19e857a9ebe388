"""Audit trail for subscription transitions.

Every attempted lifecycle operation leaves one JSON line: applied transitions
carry the status pair and the new row version, rejected ones carry the error
code. Lines go to the ``audit`` logger and, when ``AUDIT_LOG_FILE`` is set, are
appended to that file as well.
"""
from __future__ import annotations

import json
import logging
import os
import time
from typing import Any

from app.core.config import settings

_logger = logging.getLogger("audit")

OUTCOMES = frozenset({"success", "failure", "denied", "conflict"})


def _append(path: str, line: str) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "a", encoding="utf-8") as fh:
        fh.write(line + "\n")


def log_audit_event(action: str, user_id: int | None = None, status: str = "success", **metadata: Any) -> None:
    """Record one audit event.

    ``action`` is a dotted key such as ``subscription.cancel``; ``status`` is one
    of ``OUTCOMES``. Extra keyword fields are serialised as-is.
    """
    if status not in OUTCOMES:
        raise ValueError(f"unknown audit outcome {status!r}")
    event = {"ts": int(time.time()), "action": action, "user_id": user_id, "status": status}
    event.update({key: value for key, value in metadata.items() if value is not None})
    line = json.dumps(event, separators=(",", ":"), default=str)

    path = settings.AUDIT_LOG_FILE
    if path:
        try:
            _append(path, line)
        except OSError as exc:
            _logger.warning("Audit file %s not writable: %s", path, exc)
    _logger.info(line)


def log_failure(action: str, user_id: int | None = None, error: str | None = None, **extra: Any) -> None:
    log_audit_event(action, user_id=user_id, status="failure", error=error, **extra)
