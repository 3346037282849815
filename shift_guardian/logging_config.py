import logging
import os
from logging.handlers import RotatingFileHandler

from shift_guardian.config import LOG_DIR, LOG_LEVEL

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def get_logger(name, filename):
    """
    Logger "shift_guardian.<name>" writing to LOG_DIR/<filename> and stderr.
    Handlers are attached once per name.
    """
    logger = logging.getLogger(f"shift_guardian.{name}")
    level = getattr(logging, LOG_LEVEL, None)
    logger.setLevel(level if isinstance(level, int) else logging.INFO)
    if logger.handlers:
        return logger

    formatter = logging.Formatter(LOG_FORMAT)

    os.makedirs(LOG_DIR, exist_ok=True)
    file_handler = RotatingFileHandler(os.path.join(LOG_DIR, filename), maxBytes=5_000_000, backupCount=3)
    stream_handler = logging.StreamHandler()
    for handler in (file_handler, stream_handler):
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger
