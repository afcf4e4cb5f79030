"""Centralized logging configuration."""

import os
import sys

from loguru import logger as loguru_logger

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_DIR = os.getenv("LOG_DIR", "")

# extra fields every record carries
REFERENCE = "reference"
STEP = "step"

log_format = " | ".join(
    (
        "<lk>{time:YYYY-MM-DD HH:mm:ss.SSS}</>",
        "<lvl>{level:<8}</>",
        f"<c>{{name}}:{{function}}:{{line}}</> <y>{{extra[{REFERENCE}]}}</>",
        "{message}",
    )
)

loguru_logger.remove()
logger = loguru_logger.bind(**{REFERENCE: "-", STEP: ""})

logger.add(sys.stdout, format=log_format, level=LOG_LEVEL)

if LOG_DIR:
    logger.add(
        f"{LOG_DIR}/boxoffice_{{time:YYYY-MM-DD}}.log",
        format=log_format,
        level=LOG_LEVEL,
        rotation="1 day",
        retention="30 days",
        compression="zip",
        enqueue=True,
    )
