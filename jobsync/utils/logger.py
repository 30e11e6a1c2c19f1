import logging
import sys
import os
from logging.handlers import RotatingFileHandler

LOGGER_NAME = "jobsync"


def _log_dir() -> str:
    override = os.environ.get("JOBSYNC_LOG_DIR")
    if override:
        return override
    return os.path.join(os.path.expanduser("~"), ".jobsync", "logs")


def setup_logger(name=LOGGER_NAME, level=logging.INFO):
    """
    Configure the package logger: rotating file + stderr.

    Never stdout, the host loop in main.py owns it for the message protocol.
    Modules log through logging.getLogger(__name__), which propagates here.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Already configured (re-import, tests)
    if logger.handlers:
        return logger

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # Stderr Handler (visible from a terminal, safe for the stdout protocol)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    # File Handler (Rotating)
    # Max 5MB, keep 3 backups
    try:
        log_dir = _log_dir()
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, "jobsync.log"),
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as e:
        logger.warning(f"File logging disabled: {e}")

    return logger


def set_level(level_name: str) -> None:
    """Apply a level name from configuration (e.g. "DEBUG")."""
    level = logging.getLevelName(str(level_name).upper())
    if isinstance(level, int):
        logging.getLogger(LOGGER_NAME).setLevel(level)


logger = setup_logger()
