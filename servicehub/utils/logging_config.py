"""
Centralized logging setup.

Container runtimes stamp their own timestamps, so the formatter drops
asctime when running inside one.

Usage:
    from servicehub.utils.logging_config import configure_logging
    configure_logging()
"""
import logging
import os
import sys

IS_CONTAINERIZED = bool(
    os.environ.get('KUBERNETES_SERVICE_HOST') or
    os.path.exists('/.dockerenv')
)

CONTAINER_FORMAT = "[%(name)s] %(levelname)s: %(message)s"
LOCAL_FORMAT = "[%(asctime)s] [%(name)s] %(levelname)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _level_from_env(default: int) -> int:
    name = os.getenv("LOG_LEVEL", "").upper()
    return getattr(logging, name, default) if name else default


def configure_logging(level: int = logging.INFO, force: bool = False) -> None:
    """
    Configure the root logger once.

    Args:
        level: Logging level, overridden by LOG_LEVEL when set
        force: Replace handlers that are already installed
    """
    root_logger = logging.getLogger()

    if root_logger.handlers and not force:
        return

    if force:
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

    level = _level_from_env(level)
    log_format = CONTAINER_FORMAT if IS_CONTAINERIZED else LOCAL_FORMAT
    datefmt = None if IS_CONTAINERIZED else DATE_FORMAT

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(log_format, datefmt=datefmt))

    root_logger.setLevel(level)
    root_logger.addHandler(handler)

    # Quiet chatty client libraries
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)
    logging.getLogger('hpack').setLevel(logging.WARNING)
    logging.getLogger('apscheduler').setLevel(logging.WARNING)
