"""
Overlap-add accumulation into arena-indexed partial buffers.

Every arena is written by exactly one worker and holds a full-frame sample
buffer plus a window-weight buffer. Arenas are summed in index order once
all tiles are in, so the result does not depend on thread scheduling.
"""

import logging
from typing import List, Set, Tuple

import numpy as np

from burst_merge_backend.frequency_merge import TileMergeOutput
from burst_merge_backend.tile_grid import Tile

logger = logging.getLogger(__name__)


class ArenaAccumulator:
    def __init__(self, height: int, width: int, planes: int):
        self.samples = np.zeros((height, width, planes), dtype=np.float64)
        self.weights = np.zeros((height, width), dtype=np.float64)
        self.tiles_written: Set[int] = set()

    def add(self, tile: Tile, output: TileMergeOutput) -> None:
        sl = tile.slices
        self.samples[sl] += output.samples
        self.weights[sl] += output.window
        self.tiles_written.add(tile.index)


class ArenaSet:
    """Fixed set of arenas; tile i always lands in arena i % len(arenas)."""

    def __init__(self, n_arenas: int, height: int, width: int, planes: int):
        self.arenas: List[ArenaAccumulator] = [
            ArenaAccumulator(height, width, planes) for _ in range(max(1, n_arenas))
        ]

    def __len__(self) -> int:
        return len(self.arenas)

    def arena_for(self, tile_index: int) -> ArenaAccumulator:
        return self.arenas[tile_index % len(self.arenas)]

    def written_tiles(self) -> Set[int]:
        out: Set[int] = set()
        for arena in self.arenas:
            out |= arena.tiles_written
        return out

    def reduce(self) -> Tuple[np.ndarray, np.ndarray]:
        """Sum all arenas in index order into (samples, weights)."""
        samples = self.arenas[0].samples.copy()
        weights = self.arenas[0].weights.copy()
        for arena in self.arenas[1:]:
            samples += arena.samples
            weights += arena.weights
        return samples, weights

    def discard(self) -> None:
        """Drop all partial buffers."""
        self.arenas = [ArenaAccumulator(0, 0, 1)]


def normalize(samples: np.ndarray, weights: np.ndarray) -> np.ndarray:
    """
    Divide accumulated samples by accumulated window weight and clip to [0, 1].

    Raises:
        ValueError: some pixel received no weight
    """
    if np.any(weights <= 0):
        n = int(np.count_nonzero(weights <= 0))
        raise ValueError(f"{n} pixels have no accumulated weight")
    out = samples / weights[:, :, None]
    return np.clip(out, 0.0, 1.0)
