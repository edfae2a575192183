import logging
import os
import sys

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

logger = logging.getLogger("pages_deployer")


def setup_logging(log_file_path: str, level: str = "INFO") -> logging.Logger:
    """Attach the stdout and file handlers to the application logger.

    Calling it again replaces the handlers, so the app factory can be
    invoked more than once in a process.
    """
    log_dir = os.path.dirname(log_file_path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    fmt = logging.Formatter(LOG_FORMAT)
    console_handler = logging.StreamHandler(sys.stdout)
    file_handler = logging.FileHandler(log_file_path, mode="a", encoding="utf-8")
    console_handler.setFormatter(fmt)
    file_handler.setFormatter(fmt)
    for handler in logger.handlers:
        handler.close()
    logger.handlers = [console_handler, file_handler]
    logger.propagate = False
    return logger


def flush_logs():
    sys.stdout.flush()
    sys.stderr.flush()
    for h in logger.handlers:
        h.flush()
