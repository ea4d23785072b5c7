from __future__ import annotations

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any

from pythonjsonlogger import jsonlogger

sync_id_ctx_var: ContextVar[str] = ContextVar("sync_id", default="-")
sync_phase_ctx_var: ContextVar[str] = ContextVar("sync_phase", default="-")


class SyncContextFilter(logging.Filter):
    """Stamps the running sync and its orchestrator phase on every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.sync_id = sync_id_ctx_var.get()
        record.sync_phase = sync_phase_ctx_var.get()
        return True


def configure_logging(level: str = "INFO") -> None:
    log_handler = logging.StreamHandler(sys.stdout)
    # positions and cursors are opaque; anything json can't encode is logged as str
    formatter = jsonlogger.JsonFormatter(
        "%(asctime)s %(name)s %(levelname)s %(sync_id)s %(sync_phase)s %(message)s",
        json_default=str,
    )
    log_handler.setFormatter(formatter)
    log_handler.addFilter(SyncContextFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.addHandler(log_handler)


def set_sync_id(value: str | None = None) -> str:
    sync_id = value or str(uuid.uuid4())
    sync_id_ctx_var.set(sync_id)
    sync_phase_ctx_var.set("-")
    return sync_id


def set_sync_phase(phase: str) -> None:
    sync_phase_ctx_var.set(phase)


def log_event(logger: logging.Logger, event: str, **fields: Any) -> None:
    """Log ``event`` as the message with ``fields`` as top-level JSON keys."""
    logger.info(event, extra={"event": event, **fields})


configure_logging()
