"""
Fallback mechanisms for burst-merge

Runs a primary computation and substitutes a fallback result when it fails,
so a single bad tile never aborts a whole merge.
"""

import logging
from typing import Callable, Any, Optional, Tuple, Type

from burst_merge_backend.errors import MergeCancelledError


class FallbackMechanism:
    """
    Central fallback strategy
    """
    def __init__(
        self,
        logger_name: str = 'FallbackMechanism',
        passthrough: Tuple[Type[BaseException], ...] = (MergeCancelledError,),
    ):
        """
        Args:
            logger_name: Logger name
            passthrough: Exception types that are always re-raised
        """
        self.logger = logging.getLogger(logger_name)
        self.passthrough = passthrough
        self.fallback_count = 0

    def execute_with_fallback(
        self,
        primary_func: Callable[..., Any],
        fallback_func: Optional[Callable[..., Any]] = None,
        fallback_handler: Optional[Callable[[Exception], Any]] = None,
        *args,
        **kwargs
    ) -> Any:
        """
        Run a function with optional fallback strategies

        Args:
            primary_func: Primary computation
            fallback_func: Alternative computation, called with the same arguments
            fallback_handler: Called with the primary error; its result is returned
            *args: Positional arguments
            **kwargs: Keyword arguments

        Returns:
            Result of the first strategy that succeeds

        Raises:
            The primary error when every strategy fails
        """
        try:
            return primary_func(*args, **kwargs)

        except self.passthrough:
            raise

        except Exception as primary_error:
            self.logger.warning(f"Primary function failed: {primary_error}")

            if fallback_func is not None:
                try:
                    self.logger.info("Running fallback strategy")
                    result = fallback_func(*args, **kwargs)
                    self.fallback_count += 1
                    return result
                except Exception as fallback_error:
                    self.logger.error(f"Fallback failed: {fallback_error}")

            if fallback_handler is not None:
                try:
                    self.logger.info("Running error handler")
                    result = fallback_handler(primary_error)
                    self.fallback_count += 1
                    return result
                except Exception as handler_error:
                    self.logger.error(f"Error handler failed: {handler_error}")

            raise primary_error
