"""
Error handling helpers for burst-merge entry points.
"""

import functools
import logging
import traceback
from typing import Callable

from burst_merge_backend.errors import BurstMergeError, MergeCancelledError


def log_exception(func: Callable) -> Callable:
    """
    Decorator logging unexpected exceptions before re-raising them

    Burst merge errors log themselves and cancellation is not an error, so
    both pass through untouched.

    Args:
        func: Function to wrap

    Returns:
        Wrapped function
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger = logging.getLogger(func.__module__)
        try:
            return func(*args, **kwargs)
        except (BurstMergeError, MergeCancelledError):
            raise
        except Exception as e:
            logger.error(f"Error in {func.__name__}: {e}")
            logger.error(traceback.format_exc())
            raise
    return wrapper
