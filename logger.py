# logger.py - Centralized logging configuration
import os
import logging
from logging.handlers import RotatingFileHandler

LOG_DIR = os.environ.get("LOG_DIR", "logs")
LOG_FORMAT = "%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]"


def setup_logger(name, log_file=None, level=logging.INFO):
    """Set up a logger with file rotation"""
    if not os.path.exists(LOG_DIR):
        os.makedirs(LOG_DIR, exist_ok=True)

    if not log_file:
        log_file = os.path.join(LOG_DIR, f"{name}.log")

    logger = logging.getLogger(name)

    # Avoid adding handlers multiple times
    if not logger.handlers:
        logger.setLevel(level)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=1024 * 1024,
            backupCount=10
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

        if os.environ.get("FLASK_ENV") != "production":
            console_handler = logging.StreamHandler()
            console_handler.setLevel(logging.DEBUG)
            console_handler.setFormatter(logging.Formatter(
                "%(name)s - %(levelname)s - %(message)s"
            ))
            logger.addHandler(console_handler)

    return logger


def log_event(logger, category, message, user_id=None, **metadata):
    """Write one categorised line, e.g. ``[PAYOUT] user=12 Payout completed {...}``."""
    prefix = f"[{category.upper()}]"
    if user_id is not None:
        prefix = f"{prefix} user={user_id}"
    if metadata:
        logger.info(f"{prefix} {message} {metadata}")
    else:
        logger.info(f"{prefix} {message}")


# Create global loggers
app_logger = setup_logger("app")
payments_logger = setup_logger("payments")
income_logger = setup_logger("income")
