"""
Error taxonomy for burst merging.

Fatal errors (invalid burst shape) surface to the caller; everything that
can be recovered locally (invalid noise profile, low-confidence alignment,
degenerate weights) is logged and counted instead of raised.
"""

import logging
import traceback
from typing import Iterable, Optional, Tuple


class BurstMergeError(Exception):
    """Base class for burst merge errors"""
    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error
        self.log_error()

    def log_error(self):
        """Log error details"""
        logger = logging.getLogger('BurstMergeError')
        logger.error(f"{type(self).__name__}: {self}")
        if self.original_error:
            logger.error(f"Original Error: {self.original_error}")
            logger.debug(traceback.format_exc())


class InvalidInputError(BurstMergeError):
    """Fewer than two frames, or frames that disagree in shape/plane count"""
    pass


class InvalidNoiseProfileError(BurstMergeError):
    """Noise profile failed validation (recoverable via uniform weighting)"""
    pass


class ConfigurationError(BurstMergeError):
    """Configuration could not be loaded or failed validation"""
    pass


class MissingAlignmentError(BurstMergeError):
    """Alignment did not produce a vector for every (frame, tile) pair"""
    def __init__(self, missing: Iterable[Tuple[int, int]]):
        self.missing = sorted(missing)
        preview = ", ".join(f"(frame={f}, tile={t})" for f, t in self.missing[:10])
        more = "" if len(self.missing) <= 10 else f" ... (+{len(self.missing) - 10} more)"
        super().__init__(f"Missing motion vectors for {len(self.missing)} pairs: {preview}{more}")


class IncompleteMergeError(BurstMergeError):
    """Some output tiles were never written"""
    def __init__(self, missing_tiles: Iterable[int]):
        self.missing_tiles = sorted(missing_tiles)
        super().__init__(f"Tiles never written: {self.missing_tiles}")


class MergeInProgressError(BurstMergeError):
    """A second merge was started on an orchestrator that is already busy"""
    pass


class MergeCancelledError(Exception):
    """Raised between tile units once cancellation was requested.

    Not a BurstMergeError: cancellation is a result, not a failure.
    """
    pass
