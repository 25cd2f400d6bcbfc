from __future__ import annotations

import contextlib
import contextvars
import logging
import os
import uuid
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator, Optional

LOG_FILE = Path("logs/flagmon.log")
DEFAULT_CATEGORY = "CONFIG"
NOISY_LOGGERS = ("scapy", "scapy.runtime", "scapy.loading", "asyncio")

# Propagated automatically within the current thread; worker threads must re-set explicitly.
_correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="-")


def short_uuid() -> str:
    return uuid.uuid4().hex[:8]


def get_correlation_id() -> str:
    return _correlation_id_var.get()


@contextlib.contextmanager
def correlation_context(correlation_id: Optional[str] = None) -> Iterator[None]:
    token = _correlation_id_var.set(correlation_id or short_uuid())
    try:
        yield
    finally:
        _correlation_id_var.reset(token)


class ContextEnricherFilter(logging.Filter):
    """
    Ensures every LogRecord has:
      - category
      - correlation_id
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        if not getattr(record, "category", None):
            record.category = DEFAULT_CATEGORY
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        return True


def _level_from_env(name: str, default: int) -> int:
    level_name = os.environ.get(name, "").strip().upper()
    if not level_name:
        return default
    return getattr(logging, level_name, default)


def setup_logging(log_file: Optional[Path] = None) -> None:
    """
    Central logging setup.

    Format:
      %(asctime)s | %(levelname)s | %(category)s | cid=%(correlation_id)s | %(name)s |
      %(filename)s:%(lineno)d %(funcName)s() | %(message)s
    """
    level = _level_from_env("FLAGMON_LOG_LEVEL", logging.INFO)
    external_level = _level_from_env("FLAGMON_EXTERNAL_LIB_LOG_LEVEL", logging.WARNING)

    root_logger = logging.getLogger()

    # Avoid double-installation; still allow runtime level update.
    if getattr(root_logger, "_flagmon_logging_installed", False):
        root_logger.setLevel(level)
        for h in root_logger.handlers:
            h.setLevel(level)
        for noisy in NOISY_LOGGERS:
            logging.getLogger(noisy).setLevel(external_level)
        return
    root_logger.setLevel(level)

    if log_file is None:
        env_file = os.environ.get("FLAGMON_LOG_FILE", "").strip()
        log_file = Path(env_file) if env_file else LOG_FILE
    log_file.parent.mkdir(parents=True, exist_ok=True)

    fmt = (
        "%(asctime)s | %(levelname)s | %(category)s | cid=%(correlation_id)s | %(name)s | "
        "%(filename)s:%(lineno)d %(funcName)s() | %(message)s"
    )
    # Important: do NOT pass datefmt; default includes ",%03d" milliseconds.
    formatter = logging.Formatter(fmt=fmt)
    enricher = ContextEnricherFilter()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.addFilter(enricher)

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=10 * 1024 * 1024,
        backupCount=10,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    file_handler.addFilter(enricher)

    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(external_level)
    root_logger._flagmon_logging_installed = True  # type: ignore[attr-defined]
