"""
Frequency-domain tile merge.

For one tile position: resample every alternate frame at its motion vector,
window all tiles, transform with a real 2D FFT, blend the spectra with
noise-aware per-coefficient weights and transform back. The result is a
windowed tile ready for overlap-add; the window itself is returned so the
caller can accumulate the matching weight.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
from scipy import fft as sp_fft

from burst_merge_backend.alignment import MotionVector, extract_clamped
from burst_merge_backend.frames import Frame
from burst_merge_backend.kernels import Kernel, get_kernel, sample_displaced_tile
from burst_merge_backend.noise_model import NoiseProfile
from burst_merge_backend.tile_grid import Tile, tile_window
from burst_merge_backend.weighting import UniformWeighting, WeightingStrategy, WienerWeighting

logger = logging.getLogger(__name__)


@dataclass
class TileMergeOutput:
    tile_index: int
    samples: np.ndarray      # (h, w, planes), already windowed
    window: np.ndarray       # (h, w)
    degenerate: int = 0      # coefficients passed through from the reference
    fallback: bool = False   # reference tile used because merging failed


def aligned_tile(kernel: Kernel, frame: Frame, tile: Tile, vector: Optional[MotionVector]) -> np.ndarray:
    """(h, w, planes) samples of `frame` co-located with the reference tile."""
    x, y, w, h = tile.bbox
    dx = 0.0 if vector is None else float(vector.dx)
    dy = 0.0 if vector is None else float(vector.dy)
    out = np.empty((h, w, frame.planes), dtype=np.float64)
    for p in range(frame.planes):
        plane = frame.plane(p)
        if dx.is_integer() and dy.is_integer():
            out[:, :, p] = extract_clamped(plane, x + int(dx), y + int(dy), w, h)
        else:
            out[:, :, p] = sample_displaced_tile(kernel, plane, x, y, w, h, dx, dy)
    return out


def reference_tile_output(frame: Frame, tile: Tile, overlap: int) -> TileMergeOutput:
    """Windowed reference tile; used when a tile merge fails."""
    window = tile_window(tile.height, tile.width, overlap)
    samples = frame.data[tile.slices] * window[:, :, None]
    return TileMergeOutput(tile.index, samples, window, degenerate=0, fallback=True)


class FrequencyMergeEngine:
    """
    Merge engine blending frames per FFT coefficient.
    """
    name = 'frequency'

    def __init__(
        self,
        overlap: int,
        kernel: str = 'bicubic',
        weighting: Optional[WeightingStrategy] = None,
    ):
        self.overlap = int(overlap)
        self.kernel = get_kernel(kernel)
        self.weighting = weighting if weighting is not None else WienerWeighting()

    def _strategy_for(self, profile: NoiseProfile) -> WeightingStrategy:
        if profile.is_uniform:
            return UniformWeighting()
        return self.weighting

    def blend_spectra(
        self,
        ref_spec: np.ndarray,
        alt_specs: Sequence[np.ndarray],
        noise_var: float,
        strategy: WeightingStrategy,
    ):
        """
        Weighted average of spectra, reference at weight 1.

        Returns (merged spectrum, number of degenerate coefficients).
        """
        num = ref_spec.astype(np.complex128, copy=True)
        total = np.ones(ref_spec.shape, dtype=np.float64)
        any_weight = np.zeros(ref_spec.shape, dtype=bool)
        for z in alt_specs:
            w = strategy.weights(ref_spec, z, noise_var)
            num += w * z
            total += w
            any_weight |= w > 0

        bad = ~np.isfinite(total) | (total <= 0) | ~np.isfinite(num)
        with np.errstate(divide='ignore', invalid='ignore'):
            merged = np.where(bad, ref_spec, num / np.where(bad, 1.0, total))
        degenerate = int(np.count_nonzero(bad | ~any_weight)) if len(alt_specs) else 0
        return merged, degenerate

    def merge_tile(
        self,
        frames: Sequence[Frame],
        tile: Tile,
        vectors: Sequence[Optional[MotionVector]],
        profile: NoiseProfile,
    ) -> TileMergeOutput:
        """
        Merge one tile position across the burst.

        Args:
            frames: reference first, then alternates
            tile: tile on the shared grid
            vectors: motion vector per frame (index 0 ignored)
            profile: resolved noise profile (possibly uniform)
        """
        ref = frames[0]
        h, w = tile.height, tile.width
        window = tile_window(h, w, self.overlap)
        win_energy = float(np.sum(window * window))
        strategy = self._strategy_for(profile)

        ref_tile = ref.data[tile.slices]
        alts = [aligned_tile(self.kernel, frames[i], tile, vectors[i]) for i in range(1, len(frames))]

        out = np.empty((h, w, ref.planes), dtype=np.float64)
        degenerate = 0
        for p in range(ref.planes):
            r = ref_tile[:, :, p]
            ref_spec = sp_fft.rfft2(r * window)
            alt_specs = [sp_fft.rfft2(a[:, :, p] * window) for a in alts]
            noise_var = 0.0 if profile.is_uniform else float(profile.variance(np.mean(r), p)) * win_energy
            merged, n_deg = self.blend_spectra(ref_spec, alt_specs, noise_var, strategy)
            degenerate += n_deg
            out[:, :, p] = sp_fft.irfft2(merged, s=(h, w))

        return TileMergeOutput(tile.index, out, window, degenerate=degenerate)

