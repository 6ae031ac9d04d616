"""Logging setup: console, rotating file and optional Betterstack, all tagged per tenant."""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from logtail import LogtailHandler

from alarmqueue import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(tenant_id)s %(queue_id)s] %(message)s"
CONTEXT_FIELDS = ("tenant_id", "queue_id")


class ContextFilter(logging.Filter):
    """Fills tenant_id/queue_id with "-" on records logged without them."""

    def filter(self, record: logging.LogRecord) -> bool:
        for field in CONTEXT_FIELDS:
            if getattr(record, field, None) is None:
                setattr(record, field, "-")
        return True


def _attach(root_logger: logging.Logger, handler: logging.Handler, level: int, formatter: logging.Formatter):
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(ContextFilter())
    root_logger.addHandler(handler)


def setup_logging(level: Optional[str] = None, log_file: Optional[Path] = None,
                  source_token: Optional[str] = None) -> logging.Logger:
    level = getattr(logging, level or settings.LOG_LEVEL, logging.INFO)
    log_file = log_file or settings.LOGS_DIR / "alarmqueue.log"
    source_token = source_token if source_token is not None else settings.BETTERSTACK_SOURCE_TOKEN

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = []

    formatter = logging.Formatter(LOG_FORMAT)
    _attach(root_logger, logging.StreamHandler(sys.stdout), level, formatter)
    _attach(root_logger, RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5),
            logging.INFO, formatter)

    if source_token:
        try:
            handler_kwargs = {"source_token": source_token}
            if settings.BETTERSTACK_INGEST_HOST:
                handler_kwargs["host"] = settings.BETTERSTACK_INGEST_HOST
            _attach(root_logger, LogtailHandler(**handler_kwargs), logging.DEBUG, formatter)
            host_info = settings.BETTERSTACK_INGEST_HOST or "default (in.logs.betterstack.com)"
            root_logger.info(f"BetterStack logging enabled (host: {host_info})")
        except Exception as e:
            root_logger.warning(f"Failed to initialize BetterStack logging: {e}")

    logging.getLogger("urllib3").setLevel(logging.WARNING)
    return root_logger


logger = setup_logging()
