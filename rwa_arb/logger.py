# rwa_arb/logger.py
import logging
import os
import sys
from typing import Optional

LOG_FORMAT = '%(asctime)s | %(levelname)s | %(module)s | %(message)s'


def setup_console_logger(name: str, level: str, logfile: Optional[str] = None) -> logging.Logger:
    """
    Sets up the standard Python logger for console output.
    When `logfile` is given, the same records are also appended to that file
    (used while the rich dashboard owns the terminal).
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        formatter = logging.Formatter(LOG_FORMAT)
        if logfile:
            directory = os.path.dirname(logfile)
            if directory:
                os.makedirs(directory, exist_ok=True)
            handler = logging.FileHandler(logfile)
        else:
            handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger
