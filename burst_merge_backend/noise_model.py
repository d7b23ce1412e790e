"""
Sensor noise model.

Noise follows the usual shot + read model: the variance of a linear signal
x in [0, 1] is

    var(x) = scale * x + offset,    sigma(x) = sqrt(var(x))

with one function per colour plane (or one shared by all planes).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple

import numpy as np

from burst_merge_backend.errors import InvalidNoiseProfileError

logger = logging.getLogger(__name__)

# smallest slope accepted when fitting a profile from data
MIN_FIT_SCALE = 1e-9


@dataclass(frozen=True)
class NoiseFunction:
    scale: float
    offset: float

    def is_valid(self) -> bool:
        return (
            math.isfinite(self.scale)
            and math.isfinite(self.offset)
            and self.scale > 0.0
            and self.offset >= 0.0
        )

    def evaluate(self, x):
        """Expected noise variance at signal level x (clipped to [0, 1])."""
        xc = np.clip(x, 0.0, 1.0)
        return self.scale * xc + self.offset

    def sigma(self, x):
        return np.sqrt(self.evaluate(x))


@dataclass(frozen=True)
class NoiseProfile:
    functions: Tuple[NoiseFunction, ...]
    is_uniform: bool = field(default=False)

    @classmethod
    def from_pairs(cls, pairs: Sequence[Tuple[float, float]]) -> "NoiseProfile":
        """Build a profile from (scale, offset) calibration pairs."""
        return cls(tuple(NoiseFunction(float(s), float(o)) for s, o in pairs))

    @classmethod
    def uniform(cls) -> "NoiseProfile":
        """Fallback profile: no noise knowledge, every frame weighted equally."""
        return cls(tuple(), is_uniform=True)

    def is_valid(self, planes: Optional[int] = None) -> bool:
        if self.is_uniform:
            return True
        if len(self.functions) == 0:
            return False
        if not all(isinstance(f, NoiseFunction) and f.is_valid() for f in self.functions):
            return False
        if planes is not None and len(self.functions) not in (1, planes):
            return False
        return True

    def validate(self, planes: Optional[int] = None) -> "NoiseProfile":
        if not self.is_valid(planes):
            raise InvalidNoiseProfileError(
                f"Invalid noise profile for {planes} plane(s): {self.functions}"
            )
        return self

    def function_for(self, plane: int) -> NoiseFunction:
        if self.is_uniform:
            raise InvalidNoiseProfileError("Uniform profile carries no noise functions")
        if len(self.functions) == 1:
            return self.functions[0]
        return self.functions[plane]

    def variance(self, x, plane: int = 0):
        return self.function_for(plane).evaluate(x)


def resolve_noise_profile(
    profile: Optional[NoiseProfile],
    planes: int,
    use_uniform_weighting: bool = False,
) -> Tuple[NoiseProfile, Optional[str]]:
    """
    Return the profile to merge with, plus a warning when it had to fall back.

    Missing or invalid profiles are replaced by the uniform profile; the merge
    goes on with equal confidence for every frame.
    """
    if use_uniform_weighting:
        return NoiseProfile.uniform(), None

    if profile is None:
        warning = "No noise profile supplied, falling back to uniform weighting"
        logger.warning(warning)
        return NoiseProfile.uniform(), warning

    if profile.is_valid(planes):
        return profile, None

    warning = (
        f"Invalid noise profile for {planes} plane(s) ({profile.functions}), "
        "falling back to uniform weighting"
    )
    logger.warning(warning)
    return NoiseProfile.uniform(), warning


def _robust_sigma(x: np.ndarray) -> float:
    x = np.asarray(x, dtype=np.float64)
    if x.size <= 0:
        return 0.0
    med = float(np.median(x))
    mad = float(np.median(np.abs(x - med)))
    sig = 1.4826 * mad
    if not np.isfinite(sig) or sig < 1e-12:
        sig = float(np.std(x))
    return float(sig)


def estimate_noise_function(plane: np.ndarray, n_bins: int = 8) -> NoiseFunction:
    """
    Fit var(x) = scale * x + offset from a single linear plane.

    Horizontal neighbour differences divided by sqrt(2) carry the per-pixel
    noise variance of flat regions; binning them by local signal level and
    fitting a line gives shot (slope) and read (intercept) terms.
    """
    plane = np.asarray(plane, dtype=np.float64)
    if plane.shape[1] < 2:
        raise ValueError("Plane must be at least 2 pixels wide to estimate noise")

    diff = (plane[:, 1:] - plane[:, :-1]) / math.sqrt(2.0)
    level = 0.5 * (plane[:, 1:] + plane[:, :-1])
    diff = diff.ravel()
    level = np.clip(level.ravel(), 0.0, 1.0)

    edges = np.unique(np.quantile(level, np.linspace(0.0, 1.0, n_bins + 1)))
    xs, vs = [], []
    for lo, hi in zip(edges[:-1], edges[1:]):
        mask = (level >= lo) & (level <= hi)
        if np.count_nonzero(mask) < 16:
            continue
        xs.append(float(np.mean(level[mask])))
        vs.append(_robust_sigma(diff[mask]) ** 2)

    # a slope is only identifiable over a meaningful signal range
    if len(xs) >= 2 and np.ptp(xs) > 0.1:
        scale, offset = np.polyfit(xs, vs, 1)
    else:
        scale, offset = 0.0, _robust_sigma(diff) ** 2

    scale = max(float(scale), MIN_FIT_SCALE)
    offset = max(float(offset), 0.0)
    return NoiseFunction(scale, offset)


def estimate_noise_profile(frame) -> NoiseProfile:
    """Estimate one noise function per plane from a (reference) frame."""
    from burst_merge_backend.frames import Frame

    frame = Frame.wrap(frame)
    functions = tuple(estimate_noise_function(frame.plane(p)) for p in range(frame.planes))
    logger.info(f"Estimated noise profile: {functions}")
    return NoiseProfile(functions)
