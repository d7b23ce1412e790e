"""
Central logging configuration for burst-merge.

Nothing is configured at import time; entry points call setup_logging().
"""

import logging
import sys
import os
from logging.handlers import RotatingFileHandler
from datetime import datetime
from typing import Optional


def setup_logging(
    log_level=logging.INFO,
    log_dir: Optional[str] = None,
    log_prefix: str = 'burst_merge',
    stream=None,
):
    """
    Logging setup with a console handler and an optional rotating log file

    Args:
        log_level: Logging level (default: INFO)
        log_dir: Directory for log files; no file handler when None
        log_prefix: Prefix of the log file name
        stream: Console stream (default: stderr, stdout carries JSON output)

    Returns:
        The configured root logger
    """
    logger = logging.getLogger()
    logger.setLevel(log_level)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler(stream or sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)

    # Remove old handlers
    logger.handlers.clear()
    logger.addHandler(console_handler)

    if log_dir is not None:
        os.makedirs(log_dir, exist_ok=True)

        # Unique file name with timestamp
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = os.path.join(log_dir, f"{log_prefix}_{timestamp}.log")

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10*1024*1024,  # 10 MB
            backupCount=5
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger

