# mcsupervisor/services/audit_log.py
"""
Supervisor audit trail.

One JSON line per lifecycle action issued through the HTTP adapter
(start/stop/restart/command/evict), in logs/supervisor_audit.log. The file
is shifted to .1, .2, ... once it passes AUDIT_ROTATE_MAX_BYTES, keeping
AUDIT_ROTATE_RETENTION generations.
"""

from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import Any

from mcsupervisor.core.config import LOGS_DIR


AUDIT_ROTATE_MAX_BYTES = int(os.getenv("AUDIT_ROTATE_MAX_BYTES", str(1024 * 1024)))
AUDIT_ROTATE_RETENTION = int(os.getenv("AUDIT_ROTATE_RETENTION", "5"))
AUDIT_LOGGER_NAME = "supervisor_audit"
AUDIT_FILE_NAME = "supervisor_audit.log"


def get_audit_logger() -> logging.Logger:
    """File logger for lifecycle commands issued through the HTTP adapter."""
    audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
    audit_logger.setLevel(logging.INFO)
    if not audit_logger.handlers:
        LOGS_DIR.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(LOGS_DIR / AUDIT_FILE_NAME, encoding="utf-8")
        handler.setFormatter(logging.Formatter(
            '%(asctime)s | %(levelname)s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        audit_logger.addHandler(handler)
    return audit_logger


def _generation(live: Path, n: int) -> Path:
    return live.with_name(f"{live.name}.{n}")


def _shift_generations(live: Path, keep: int) -> None:
    """live -> .1 -> .2 ... -> .keep; whatever was in .keep is dropped."""
    _generation(live, keep).unlink(missing_ok=True)
    for n in range(keep - 1, 0, -1):
        older = _generation(live, n)
        if older.exists():
            older.replace(_generation(live, n + 1))
    live.replace(_generation(live, 1))


def _maybe_rotate(handler: logging.FileHandler) -> bool:
    """Rotate the handler's file if it is over the size limit. Caller holds the handler lock."""
    if AUDIT_ROTATE_MAX_BYTES <= 0:
        return False
    handler.flush()
    live = Path(handler.baseFilename)
    try:
        if live.stat().st_size < AUDIT_ROTATE_MAX_BYTES:
            return False
    except FileNotFoundError:
        return False

    _shift_generations(live, max(AUDIT_ROTATE_RETENTION, 1))
    if handler.stream:
        handler.stream.close()
    handler.stream = handler._open()
    return True


def audit_event(
    *,
    logger: logging.Logger,
    actor: str,
    action: str,
    instance_id: str = "",
    result: str = "",
    extra: dict[str, Any] | None = None,
) -> None:
    """Write one JSON line describing a supervisor action and its outcome."""
    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler):
            handler.acquire()
            try:
                _maybe_rotate(handler)
            finally:
                handler.release()

    payload: dict[str, Any] = {
        "ts": int(time.time()),
        "actor": actor,
        "action": action,
        "instance": instance_id,
        "result": result,
    }
    if extra:
        payload.update(extra)
    logger.info(json.dumps(payload, ensure_ascii=False))
