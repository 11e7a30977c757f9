import logging
import os
from logging.handlers import RotatingFileHandler

LOGGER_NAME = "atlasscope"
LOG_FILE = "atlasscope.log"
ERROR_LOG_FILE = "atlasscope.error.log"


def _current_log_dir(logger: logging.Logger):
    for h in logger.handlers:
        if isinstance(h, RotatingFileHandler) and os.path.basename(h.baseFilename) == LOG_FILE:
            return os.path.dirname(h.baseFilename)
    return None


def setup_logger(out_dir: str, level: str = "INFO") -> logging.Logger:
    """Attach rotating run/error logs under `out_dir` plus a console handler.

    Calling again with the same directory only updates the level; a different
    directory moves the file handlers there, so consecutive runs in one process
    each log next to their own outputs.
    """
    os.makedirs(out_dir, exist_ok=True)
    logger = logging.getLogger(LOGGER_NAME)
    lvl = getattr(logging, str(level).upper(), logging.INFO)
    current = _current_log_dir(logger)
    if current is not None and os.path.abspath(current) == os.path.abspath(out_dir):
        logger.setLevel(lvl)
        return logger
    if logger.handlers:
        close_logger()
    logger.setLevel(lvl)

    log_path = os.path.join(out_dir, LOG_FILE)
    err_path = os.path.join(out_dir, ERROR_LOG_FILE)
    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s - %(message)s")

    # (path or None for console, max bytes, backups, level)
    for path, max_bytes, backups, h_lvl in (
        (log_path, 5 * 1024 * 1024, 3, lvl),
        (err_path, 2 * 1024 * 1024, 2, logging.ERROR),
        (None, 0, 0, lvl),
    ):
        h = RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backups) if path else logging.StreamHandler()
        h.setFormatter(fmt)
        h.setLevel(h_lvl)
        logger.addHandler(h)

    logger.propagate = False
    logger.info("Logger initialized. Logs at %s; errors at %s", log_path, err_path)
    return logger


def close_logger() -> None:
    """Detach and close all handlers."""
    logger = logging.getLogger(LOGGER_NAME)
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
