"""Logging setup: one configured handler, plus a VERBOSE level between DEBUG and INFO."""

import logging
import sys

VERBOSE = 15
logging.addLevelName(VERBOSE, "VERBOSE")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str = "INFO", log_file: str = "") -> logging.Logger:
    """Configure the root logger once for the whole process.

    Logs go to *log_file* when given, otherwise to stderr. Returns the
    package logger.
    """
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO

    if log_file:
        handler: logging.Handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(numeric)

    logger = logging.getLogger("rtl_slurp")
    if log_file:
        print(f"sending logs to {log_file}", file=sys.stderr)
    return logger
