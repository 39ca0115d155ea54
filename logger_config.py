import logging
import os
import sys
from pathlib import Path

LOGGER_NAME = "static_serve"


def setup_logger(name: str = LOGGER_NAME):
    logger = logging.getLogger(name)
    # Already configured by an earlier import
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG)

    # Create formatters
    file_formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'
    )
    console_formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s'
    )

    # File handler (for detailed logging)
    logs_dir = os.getenv("STATIC_LOG_DIR", "logs")
    if logs_dir:
        Path(logs_dir).mkdir(exist_ok=True, parents=True)
        file_handler = logging.FileHandler(Path(logs_dir) / "static_serve.log")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(file_formatter)
        logger.addHandler(file_handler)

    # Console handler (for basic logging)
    console_handler = logging.StreamHandler(sys.stdout)
    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO").upper())
    console_handler.setLevel(level if isinstance(level, int) else logging.INFO)
    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    return logger


def setup_access_logger():
    """Access lines go through a child of the main logger."""
    setup_logger()
    return logging.getLogger(f"{LOGGER_NAME}.access_log")
