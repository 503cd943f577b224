"""Logging configuration helpers."""

from __future__ import annotations

import logging
from contextvars import ContextVar
from sys import stdout
from typing import Any

from loguru import logger

from campaign_broker.core.config import Settings, settings as default_settings

request_id_ctx_var: ContextVar[str] = ContextVar("request_id", default="-")
worker_ctx_var: ContextVar[str] = ContextVar("worker", default="-")


def _patch_record(record: dict[str, Any]) -> None:
    record["extra"].setdefault("request_id", request_id_ctx_var.get())
    record["extra"].setdefault("worker", worker_ctx_var.get())


def setup_logging(settings: Settings | None = None) -> None:
    """Configure the standard logging module and Loguru sinks."""

    settings = settings or default_settings
    logging.basicConfig(level=settings.LOG_LEVEL)
    logging.getLogger("aiomysql").setLevel(logging.WARNING)
    logger.remove()
    logger.configure(patcher=_patch_record)
    logger.add(
        stdout,
        level=settings.LOG_LEVEL,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        serialize=settings.LOG_SERIALIZE,
    )
