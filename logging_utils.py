import logging
import os
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(run_log_path: str, logger_name: str = None, level=logging.INFO):
    """
    Configure root logging to stream to stdout and write to run_log_path.
    Returns a logger (named if provided, else root) and the formatter so
    per-batch handlers can share the same layout.
    """
    log_dir = os.path.dirname(run_log_path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Reruns in the same process (tests, notebooks) must not stack handlers
    for h in list(root_logger.handlers):
        root_logger.removeHandler(h)
        h.close()

    formatter = logging.Formatter(LOG_FORMAT)

    stream_handler = logging.StreamHandler(stream=sys.stdout)
    stream_handler.setFormatter(formatter)
    file_handler = logging.FileHandler(run_log_path)
    file_handler.setFormatter(formatter)

    root_logger.addHandler(stream_handler)
    root_logger.addHandler(file_handler)

    if logger_name:
        return logging.getLogger(logger_name), formatter
    return root_logger, formatter


def attach_file_handler(logger: logging.Logger, log_path: str, fmt=None):
    """Add a file handler to logger and return it; caller removes it when done."""
    log_dir = os.path.dirname(log_path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    handler = logging.FileHandler(log_path)
    handler.setFormatter(fmt or logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    return handler


def detach_file_handler(logger: logging.Logger, handler):
    logger.removeHandler(handler)
    handler.close()
