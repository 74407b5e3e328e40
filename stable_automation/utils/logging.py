import json
import logging
import os
import sys
from datetime import date
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger

from stable_automation.utils.context import get_request_id

CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "logging_config.json"

# Standard library loggers routed into loguru
STDLIB_LOGGERS = ("celery", "celery.task", "celery.worker", "celery.beat", "sqlalchemy")


class InterceptHandler(logging.Handler):
    """Forward standard library records to loguru with the task request ID."""

    def emit(self, record: logging.LogRecord):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.bind(request_id=get_request_id()).opt(
            depth=depth, exception=record.exc_info
        ).log(level, record.getMessage())


def load_logging_config(environment: Optional[str] = None) -> Dict[str, Any]:
    environment = environment or os.getenv("ENVIRONMENT", "development")
    with open(CONFIG_PATH) as config_file:
        config = json.load(config_file)
    section = "production" if environment == "production" else "logger"
    return config.get(section, config["logger"])


def configure_logging(environment: Optional[str] = None):
    """
    Replace loguru's default sink with the configured console and file sinks
    and route Celery and SQLAlchemy logging through them.

    Called by the Celery ``setup_logging`` signal; without it loguru keeps
    its stderr default, which is what tests see.
    """
    config = load_logging_config(environment)
    level = (os.getenv("LOG_LEVEL") or config.get("level", "info")).upper()

    logger.remove()
    logger.configure(extra={"request_id": "app"})

    logger.add(
        sys.stdout,
        enqueue=True,
        backtrace=True,
        level=level,
        format=config["console_format"],
        colorize=True,
    )

    log_dir = config.get("log_dir")
    if log_dir:
        file_sink = f"{log_dir}/{date.today():%Y-%m-%d}-{config['filename']}"
        file_options: Dict[str, Any] = {
            "rotation": config.get("rotation"),
            "retention": config.get("retention"),
            "enqueue": True,
            "backtrace": True,
            "level": level,
            "colorize": False,
        }
        if config.get("use_json_logs"):
            file_options["serialize"] = True
        else:
            file_options["format"] = config["file_format"]
        logger.add(file_sink, **file_options)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in STDLIB_LOGGERS:
        logging.getLogger(name).handlers = [InterceptHandler()]

    return logger


def get_logger():
    """Logger bound to the current task's request ID."""
    return logger.bind(request_id=get_request_id())
