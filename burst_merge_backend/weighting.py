"""
Per-coefficient blending weights for the frequency merge.

A strategy maps (reference spectrum, aligned spectrum, noise variance) to a
weight in [0, 1] for every coefficient of one alternate frame.
"""

from typing import Dict, Protocol

import numpy as np


class WeightingStrategy(Protocol):
    name: str

    def weights(self, ref_spec: np.ndarray, alt_spec: np.ndarray, noise_var: float) -> np.ndarray:
        ...


class WienerWeighting:
    """
    Wiener shrinkage with a robustness term.

    w = S / (S + N), S = |R|^2, attenuated by c*N / (|Z - R|^2 + c*N) so that
    coefficients disagreeing with the reference (misalignment, motion) fade out.
    """
    name = 'wiener'

    def __init__(self, robustness: float = 8.0):
        if robustness <= 0:
            raise ValueError(f"robustness must be > 0, got {robustness}")
        self.robustness = float(robustness)

    def weights(self, ref_spec: np.ndarray, alt_spec: np.ndarray, noise_var: float) -> np.ndarray:
        signal = np.abs(ref_spec) ** 2
        noise = max(float(noise_var), 0.0)
        if noise <= 0.0:
            # noiseless: only identical coefficients are worth blending
            return np.where(np.abs(alt_spec - ref_spec) == 0, 1.0, 0.0)

        with np.errstate(divide='ignore', invalid='ignore'):
            shrink = signal / (signal + noise)
            cn = self.robustness * noise
            dist = np.abs(alt_spec - ref_spec) ** 2
            robust = cn / (dist + cn)
        w = np.nan_to_num(shrink * robust, nan=0.0, posinf=0.0, neginf=0.0)
        return np.clip(w, 0.0, 1.0)


class UniformWeighting:
    """Every frame at equal confidence (noise profile unavailable)."""
    name = 'uniform'

    def weights(self, ref_spec: np.ndarray, alt_spec: np.ndarray, noise_var: float) -> np.ndarray:
        return np.ones(ref_spec.shape, dtype=np.float64)


WEIGHTINGS: Dict[str, type] = {
    'wiener': WienerWeighting,
    'uniform': UniformWeighting,
}


def get_weighting(name: str, robustness: float = 8.0) -> WeightingStrategy:
    if name == 'wiener':
        return WienerWeighting(robustness)
    if name == 'uniform':
        return UniformWeighting()
    raise ValueError(f"Unknown weighting strategy: {name} (expected one of {sorted(WEIGHTINGS)})")
