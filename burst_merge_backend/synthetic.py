import numpy as np
from typing import List, Dict, Any, Optional, Tuple

from burst_merge_backend.noise_model import NoiseProfile


class SyntheticBurstGenerator:
    """
    Generate synthetic handheld bursts with known ground truth
    """
    @staticmethod
    def render_pattern(
        height: int,
        width: int,
        shift: Tuple[float, float] = (0.0, 0.0),
        texture: bool = False,
    ) -> np.ndarray:
        """
        Render the gradient + circle test scene, displaced by `shift`.

        The scene is evaluated analytically, so a shifted copy carries no
        interpolation error: output(x, y) = scene(x - dx, y - dy).

        Args:
            height, width: frame size
            shift: (dx, dy) displacement in pixels
            texture: add a smooth sinusoidal texture (gives every tile structure)

        Returns:
            2D float64 array with values in [0.1, 0.9]
        """
        dx, dy = shift
        yy, xx = np.mgrid[0:height, 0:width].astype(np.float64)
        x = xx - dx
        y = yy - dy

        img = 0.15 + 0.4 * 0.5 * (x / width + y / height)
        r = np.hypot(x - width / 2.0, y - height / 2.0)
        radius = min(height, width) / 4.0
        # soft edge about one pixel wide
        img += 0.3 / (1.0 + np.exp((r - radius) / 1.0))
        if texture:
            img += 0.05 * np.sin(2.0 * np.pi * x / 23.0) * np.sin(2.0 * np.pi * y / 29.0)
        return np.clip(img, 0.0, 1.0)

    @classmethod
    def generate_burst(
        cls,
        height: int = 256,
        width: int = 256,
        n_alternates: int = 3,
        noise_sigma: float = 0.02,
        max_shift: float = 5.0,
        seed: Optional[int] = 0,
        texture: bool = False,
        planes: int = 1,
        shifts: Optional[List[Tuple[float, float]]] = None,
    ) -> Dict[str, Any]:
        """
        Reference plus shifted alternates, each with independent Gaussian noise.

        Returns:
            Dict with 'truth' (noise-free reference), 'frames' (reference
            first), 'shifts' (per frame, reference (0, 0)) and 'noise_sigma'
        """
        rng = np.random.default_rng(seed)
        if shifts is None:
            shifts = [
                (float(rng.uniform(-max_shift, max_shift)), float(rng.uniform(-max_shift, max_shift)))
                for _ in range(n_alternates)
            ]
        all_shifts = [(0.0, 0.0)] + [tuple(s) for s in shifts]

        gains = np.linspace(1.0, 0.8, planes) if planes > 1 else np.ones(1)

        def render(shift):
            base = cls.render_pattern(height, width, shift, texture)
            if planes == 1:
                return base
            return np.stack([base * g for g in gains], axis=2)

        truth = render((0.0, 0.0))
        frames = []
        for shift in all_shifts:
            clean = render(shift)
            frames.append(clean + rng.normal(0.0, noise_sigma, clean.shape))

        return {
            'truth': truth,
            'frames': frames,
            'shifts': all_shifts,
            'noise_sigma': float(noise_sigma),
        }

    @staticmethod
    def noise_profile_for_sigma(sigma: float, planes: int = 1) -> NoiseProfile:
        """Profile of purely additive Gaussian noise (tiny shot term keeps it valid)."""
        return NoiseProfile.from_pairs([(1e-9, float(sigma) ** 2)] * planes)
