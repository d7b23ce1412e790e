"""
Interpolation kernels used to resample alternate frames at sub-pixel
displacements.

Every kernel samples with edge replication, so displaced tiles near the
frame border never read outside the frame.
"""

from typing import Dict, Protocol

import cv2
import numpy as np


class Kernel(Protocol):
    name: str

    def resample(self, plane: np.ndarray, map_x: np.ndarray, map_y: np.ndarray) -> np.ndarray:
        """Sample `plane` at absolute coordinates (map_x, map_y)."""
        ...


class RemapKernel:
    """OpenCV remap based kernel."""

    def __init__(self, name: str, interpolation: int):
        self.name = name
        self.interpolation = interpolation

    def resample(self, plane: np.ndarray, map_x: np.ndarray, map_y: np.ndarray) -> np.ndarray:
        src = np.ascontiguousarray(plane, dtype=np.float64)
        out = cv2.remap(
            src,
            map_x.astype(np.float32, copy=False),
            map_y.astype(np.float32, copy=False),
            interpolation=self.interpolation,
            borderMode=cv2.BORDER_REPLICATE,
        )
        return out.astype(np.float64, copy=False)

    def __repr__(self) -> str:
        return f"RemapKernel({self.name!r})"


KERNELS: Dict[str, Kernel] = {
    'bilinear': RemapKernel('bilinear', cv2.INTER_LINEAR),
    'bicubic': RemapKernel('bicubic', cv2.INTER_CUBIC),
    'lanczos': RemapKernel('lanczos', cv2.INTER_LANCZOS4),
}


def get_kernel(name: str) -> Kernel:
    try:
        return KERNELS[name]
    except KeyError:
        raise ValueError(f"Unknown interpolation kernel: {name} (expected one of {sorted(KERNELS)})")


def sample_displaced_tile(
    kernel: Kernel,
    plane: np.ndarray,
    x0: int,
    y0: int,
    width: int,
    height: int,
    dx: float,
    dy: float,
) -> np.ndarray:
    """
    Read the (width x height) tile at (x0, y0) from `plane` displaced by
    (dx, dy), i.e. output[y, x] = plane[y0 + y + dy, x0 + x + dx].
    """
    xs = np.arange(x0, x0 + width, dtype=np.float64) + dx
    ys = np.arange(y0, y0 + height, dtype=np.float64) + dy
    map_x, map_y = np.meshgrid(xs, ys)
    return kernel.resample(plane, map_x, map_y)
