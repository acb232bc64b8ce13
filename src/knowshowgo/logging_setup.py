import logging
import os
from typing import Optional

import structlog
from pythonjsonlogger.json import JsonFormatter

SERVICE_NAME = "knowshowgo"


def _add_service(_, __, event_dict):
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def configure_logging(level: int = logging.INFO, log_path: Optional[str] = None) -> None:
    """
    Emit JSON log lines to stdout and, when KSG_LOG_FILE (or log_path) is set, to that file.

    Core modules log through structlog; events are rendered to JSON and handed
    to the stdlib root logger, so the same handlers serve both.
    """
    root = logging.getLogger()
    root.setLevel(level)
    formatter = JsonFormatter()

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    handlers = [stream_handler]

    log_path = log_path or os.environ.get("KSG_LOG_FILE")
    if log_path:
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    root.handlers = handlers

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _add_service,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str):
    return structlog.get_logger(name)
