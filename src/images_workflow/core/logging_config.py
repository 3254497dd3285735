"""Logging setup for the workflow's component loggers and the worker CLI."""

import os
import sys
import logging
from typing import Dict, Iterable, Optional

DEFAULT_LOGGER_NAME = "images-workflow"
ENV_PREFIX = "IMAGES_WORKFLOW_"

# Consumers, sweeps and the SQS pollers each run on their own named thread.
LOG_FORMATS: Dict[str, str] = {
    "structured": (
        "%(asctime)s | %(name)s | %(levelname)-8s | %(threadName)s | %(message)s"
    ),
    "simple": "%(levelname)s %(name)s: %(message)s",
}
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Chatty below WARNING: botocore logs every request, PIL every decoder plugin.
THIRD_PARTY_LOGGERS = ("botocore", "boto3", "s3transfer", "urllib3", "PIL")


def _env(name: str) -> Optional[str]:
    """IMAGES_WORKFLOW_<name>, falling back to the bare <name>."""
    return os.getenv(ENV_PREFIX + name) or os.getenv(name)


def _resolve_level(level: Optional[str]) -> int:
    name = (level or _env("LOG_LEVEL") or "INFO").upper()
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def _resolve_format(format_type: str) -> str:
    name = (_env("LOG_FORMAT") or format_type).lower()
    return LOG_FORMATS.get(name, LOG_FORMATS["structured"])


def setup_logger(
    name: str = DEFAULT_LOGGER_NAME,
    level: Optional[str] = None,
    format_type: str = "structured",
) -> logging.Logger:
    """
    Return a workflow logger writing to stdout, configuring it on first use.

    Args:
        name: Logger name (defaults to "images-workflow")
        level: Level name; otherwise IMAGES_WORKFLOW_LOG_LEVEL or LOG_LEVEL, then INFO
        format_type: Key of LOG_FORMATS; IMAGES_WORKFLOW_LOG_FORMAT or LOG_FORMAT wins
    """
    logger = logging.getLogger(name)
    logger.setLevel(_resolve_level(level))

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_resolve_format(format_type), DATE_FORMAT))
        logger.addHandler(handler)

    logger.propagate = False
    return logger


def get_logger(component: Optional[str] = None) -> logging.Logger:
    """Logger for a component, e.g. "worker" -> "images-workflow.worker"."""
    if component:
        return setup_logger(f"{DEFAULT_LOGGER_NAME}.{component}")
    return setup_logger()


def set_debug_logging() -> None:
    """Switch the workflow loggers and the root logger to DEBUG."""
    logging.getLogger().setLevel(logging.DEBUG)
    manager = logging.Logger.manager
    for name in list(manager.loggerDict):
        if name == DEFAULT_LOGGER_NAME or name.startswith(DEFAULT_LOGGER_NAME + "."):
            logging.getLogger(name).setLevel(logging.DEBUG)


def quiet_third_party(
    level: int = logging.WARNING, names: Iterable[str] = THIRD_PARTY_LOGGERS
) -> None:
    for name in names:
        logging.getLogger(name).setLevel(level)


def configure_logging(debug: bool = False, level: Optional[str] = None) -> logging.Logger:
    """
    Configure logging for a CLI run and return the top-level workflow logger.

    With debug, every workflow logger and the AWS and Pillow libraries log
    at DEBUG. Otherwise those libraries are held at WARNING.
    """
    logger = setup_logger(level=level)
    if debug:
        set_debug_logging()
        quiet_third_party(logging.DEBUG)
    else:
        quiet_third_party()
    return logger
