import logging
import os
from logging.handlers import TimedRotatingFileHandler
from typing import Optional

FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"

logger = logging.getLogger("replay_service")

file_handler: Optional[TimedRotatingFileHandler] = None


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    global file_handler
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    formatter = logging.Formatter(FORMAT)
    # Close previous file handler if it exists
    close_logging()
    handlers = []
    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        # Daily rotation, keep 14 days
        file_handler = TimedRotatingFileHandler(log_file, when="midnight", interval=1, backupCount=14)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)
    root_logger.handlers = handlers
    logger.info("[BOOT] logging initialised (level=%s, file=%s)", level, log_file or "-")


def close_logging() -> None:
    global file_handler
    if file_handler:
        file_handler.close()
        file_handler = None
