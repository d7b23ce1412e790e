from __future__ import annotations

from typing import List, Sequence

import numpy as np

from burst_merge_backend.errors import InvalidInputError


class Frame:
    """
    Immutable linear sample buffer of shape (height, width, planes).

    2D input is promoted to a single plane. The underlying array is a private
    float64 copy marked read-only, so it can be shared across worker threads
    without locking.
    """
    __slots__ = ("_data",)

    def __init__(self, data: np.ndarray):
        arr = np.array(data, dtype=np.float64, copy=True)
        if arr.ndim == 2:
            arr = arr[:, :, None]
        if arr.ndim != 3:
            raise InvalidInputError(f"Frame must be 2D or 3D, got shape {arr.shape}")
        if arr.shape[0] < 1 or arr.shape[1] < 1 or arr.shape[2] < 1:
            raise InvalidInputError(f"Frame must not be empty, got shape {arr.shape}")
        arr.flags.writeable = False
        self._data = arr

    @classmethod
    def wrap(cls, data) -> "Frame":
        return data if isinstance(data, Frame) else cls(data)

    @property
    def data(self) -> np.ndarray:
        return self._data

    @property
    def height(self) -> int:
        return int(self._data.shape[0])

    @property
    def width(self) -> int:
        return int(self._data.shape[1])

    @property
    def planes(self) -> int:
        return int(self._data.shape[2])

    @property
    def shape(self):
        return self._data.shape

    def plane(self, index: int) -> np.ndarray:
        return self._data[:, :, index]

    def luminance(self) -> np.ndarray:
        """Plane average used as the alignment signal."""
        if self.planes == 1:
            return self._data[:, :, 0]
        return np.mean(self._data, axis=2)

    def __repr__(self) -> str:
        return f"Frame(width={self.width}, height={self.height}, planes={self.planes})"


def validate_burst(reference, alternates: Sequence) -> List[Frame]:
    """
    Validate a burst and return it as a list of Frames, reference first.

    Raises:
        InvalidInputError: fewer than two frames, mismatched dimensions or
            plane counts, or non-finite samples.
    """
    if reference is None:
        raise InvalidInputError("Reference frame is missing")
    if alternates is None or len(alternates) == 0:
        raise InvalidInputError("At least one alternate frame is required (burst needs >= 2 frames)")

    frames = [Frame.wrap(reference)] + [Frame.wrap(a) for a in alternates]
    ref = frames[0]

    for i, frame in enumerate(frames):
        if frame.shape != ref.shape:
            raise InvalidInputError(
                f"Frame {i} has shape {frame.shape}, expected {ref.shape} (reference)"
            )
        if not np.all(np.isfinite(frame.data)):
            raise InvalidInputError(f"Frame {i} contains NaN/Inf samples")

    return frames
