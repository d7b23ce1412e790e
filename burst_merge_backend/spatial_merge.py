"""
Spatial-domain tile merge.

Cheaper alternative to the frequency merge: per pixel, an alternate frame
contributes with weight c*N_b / (d^2 + c*N_b) where d is the difference of
the Gaussian-blurred aligned and reference tiles and N_b the noise variance
left after blurring. The reference contributes with weight 1.
"""

import logging
from typing import Optional, Sequence

import cv2
import numpy as np

from burst_merge_backend.alignment import MotionVector
from burst_merge_backend.frames import Frame
from burst_merge_backend.frequency_merge import TileMergeOutput, aligned_tile
from burst_merge_backend.kernels import get_kernel
from burst_merge_backend.noise_model import NoiseProfile
from burst_merge_backend.tile_grid import Tile, tile_window

logger = logging.getLogger(__name__)


def gaussian_noise_gain(sigma: float) -> float:
    """Fraction of white-noise variance that survives a Gaussian blur of `sigma`."""
    if sigma <= 0:
        return 1.0
    ksize = int(2 * np.ceil(3 * sigma) + 1)
    k = cv2.getGaussianKernel(ksize, sigma).ravel()
    return float(np.sum(k * k)) ** 2


class SpatialMergeEngine:
    name = 'spatial'

    def __init__(self, overlap: int, kernel: str = 'bicubic', robustness: float = 8.0, blur_sigma: float = 1.5):
        if robustness <= 0:
            raise ValueError(f"robustness must be > 0, got {robustness}")
        self.overlap = int(overlap)
        self.kernel = get_kernel(kernel)
        self.robustness = float(robustness)
        self.blur_sigma = float(blur_sigma)
        self._noise_gain = gaussian_noise_gain(self.blur_sigma)

    def _blur(self, tile: np.ndarray) -> np.ndarray:
        if self.blur_sigma <= 0:
            return tile
        return cv2.GaussianBlur(tile, (0, 0), self.blur_sigma, borderType=cv2.BORDER_REPLICATE)

    def merge_tile(
        self,
        frames: Sequence[Frame],
        tile: Tile,
        vectors: Sequence[Optional[MotionVector]],
        profile: NoiseProfile,
    ) -> TileMergeOutput:
        ref = frames[0]
        h, w = tile.height, tile.width
        window = tile_window(h, w, self.overlap)
        ref_tile = ref.data[tile.slices]
        alts = [aligned_tile(self.kernel, frames[i], tile, vectors[i]) for i in range(1, len(frames))]

        out = np.empty((h, w, ref.planes), dtype=np.float64)
        degenerate = 0
        for p in range(ref.planes):
            r = np.ascontiguousarray(ref_tile[:, :, p])
            num = r.copy()
            total = np.ones_like(r)
            if profile.is_uniform:
                for a in alts:
                    num += a[:, :, p]
                    total += 1.0
            else:
                # difference of two blurred frames carries twice the noise
                cn = self.robustness * 2.0 * float(profile.variance(np.mean(r), p)) * self._noise_gain
                rb = self._blur(r)
                for a in alts:
                    z = np.ascontiguousarray(a[:, :, p])
                    d = self._blur(z) - rb
                    wz = cn / (d * d + cn) if cn > 0 else (d == 0).astype(np.float64)
                    num += wz * z
                    total += wz
                    degenerate += int(np.count_nonzero(wz == 0))
            out[:, :, p] = num / total * window

        return TileMergeOutput(tile.index, out, window, degenerate=degenerate)
