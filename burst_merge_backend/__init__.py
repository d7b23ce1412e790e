"""
Burst merge backend: noise model, tile grid, pyramid alignment and the
frequency/spatial merge engines.
"""

from burst_merge_backend.alignment import AlignmentResult, MotionVector, PyramidAligner
from burst_merge_backend.configuration import ConfigurationManager, MergeConfig
from burst_merge_backend.errors import (
    BurstMergeError,
    ConfigurationError,
    IncompleteMergeError,
    InvalidInputError,
    InvalidNoiseProfileError,
    MergeCancelledError,
    MergeInProgressError,
    MissingAlignmentError,
)
from burst_merge_backend.frames import Frame, validate_burst
from burst_merge_backend.frequency_merge import FrequencyMergeEngine
from burst_merge_backend.noise_model import NoiseFunction, NoiseProfile, estimate_noise_profile
from burst_merge_backend.spatial_merge import SpatialMergeEngine
from burst_merge_backend.tile_grid import Tile, TileGrid

__all__ = [
    "AlignmentResult",
    "BurstMergeError",
    "ConfigurationError",
    "ConfigurationManager",
    "Frame",
    "FrequencyMergeEngine",
    "IncompleteMergeError",
    "InvalidInputError",
    "InvalidNoiseProfileError",
    "MergeCancelledError",
    "MergeConfig",
    "MergeInProgressError",
    "MissingAlignmentError",
    "MotionVector",
    "NoiseFunction",
    "NoiseProfile",
    "PyramidAligner",
    "SpatialMergeEngine",
    "Tile",
    "TileGrid",
    "estimate_noise_profile",
    "validate_burst",
]
