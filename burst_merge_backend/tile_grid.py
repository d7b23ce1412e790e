import numpy as np
from dataclasses import dataclass
from typing import List, Dict, Any, Tuple


@dataclass(frozen=True)
class Tile:
    index: int
    row: int
    col: int
    x: int
    y: int
    width: int
    height: int

    @property
    def bbox(self) -> Tuple[int, int, int, int]:
        """(x0, y0, w, h)"""
        return self.x, self.y, self.width, self.height

    @property
    def slices(self) -> Tuple[slice, slice]:
        return slice(self.y, self.y + self.height), slice(self.x, self.x + self.width)

    def scaled(self, level: int, min_size: int = 4) -> "Tile":
        """
        The same tile on pyramid level `level` (downscaled by 2**level).

        Size never drops below min_size; origin is floored.
        """
        if level == 0:
            return self
        f = 2 ** level
        return Tile(
            index=self.index,
            row=self.row,
            col=self.col,
            x=self.x // f,
            y=self.y // f,
            width=max(self.width // f, min_size),
            height=max(self.height // f, min_size),
        )


def compute_step(tile_size: int, overlap: int) -> int:
    """
    Step between tile origins.

    Formula:
        S = T - O,  0 <= O <= T / 2
    """
    if tile_size < 2:
        raise ValueError(f"tile_size must be >= 2, got {tile_size}")
    if not 0 <= overlap <= tile_size // 2:
        raise ValueError(f"overlap must be in [0, {tile_size // 2}], got {overlap}")
    return tile_size - overlap


def _axis_origins(length: int, size: int, step: int) -> List[int]:
    """Tile origins along one axis; the last tile is clamped to end at the border."""
    if length <= size:
        return [0]
    origins = list(range(0, length - size + 1, step))
    if origins[-1] + size < length:
        origins.append(length - size)
    return origins


class TileGrid:
    """
    Deterministic grid of overlapping tiles covering a frame.

    Shared by alignment and merging, so tile index i means the same region
    on every stage.
    """
    def __init__(self, height: int, width: int, tile_size: int = 32, overlap: int = 8):
        self.height = int(height)
        self.width = int(width)
        self.tile_size = int(tile_size)
        self.overlap = int(overlap)
        self.step = compute_step(self.tile_size, self.overlap)

        tile_h = min(self.tile_size, self.height)
        tile_w = min(self.tile_size, self.width)
        ys = _axis_origins(self.height, tile_h, self.step)
        xs = _axis_origins(self.width, tile_w, self.step)

        self.rows = len(ys)
        self.cols = len(xs)
        self.tiles: List[Tile] = []
        for r, y in enumerate(ys):
            for c, x in enumerate(xs):
                self.tiles.append(
                    Tile(index=len(self.tiles), row=r, col=c, x=x, y=y, width=tile_w, height=tile_h)
                )

    def __len__(self) -> int:
        return len(self.tiles)

    def __iter__(self):
        return iter(self.tiles)

    def __getitem__(self, index: int) -> Tile:
        return self.tiles[index]

    def neighbours(self, index: int) -> List[int]:
        """4-connected neighbour tile indices."""
        tile = self.tiles[index]
        out = []
        for dr, dc in ((-1, 0), (1, 0), (0, -1), (0, 1)):
            r, c = tile.row + dr, tile.col + dc
            if 0 <= r < self.rows and 0 <= c < self.cols:
                out.append(r * self.cols + c)
        return out

    def coverage(self) -> np.ndarray:
        """Number of tiles touching each pixel."""
        cov = np.zeros((self.height, self.width), dtype=np.int32)
        for tile in self.tiles:
            cov[tile.slices] += 1
        return cov

    def metadata(self) -> Dict[str, Any]:
        cov = self.coverage()
        return {
            'total_tiles': len(self.tiles),
            'rows': self.rows,
            'cols': self.cols,
            'tile_size': self.tile_size,
            'overlap_px': self.overlap,
            'step': self.step,
            'coverage_percentage': float(np.count_nonzero(cov)) / cov.size * 100.0,
        }


def raised_cosine_taper(n: int, overlap: int) -> np.ndarray:
    """
    1D window: flat centre, raised-cosine ramps across `overlap` samples at
    both ends. Strictly positive, so every pixel keeps a non-zero weight.
    """
    w = np.ones(n, dtype=np.float64)
    m = min(int(overlap), n // 2)
    if m <= 0:
        return w
    i = np.arange(m, dtype=np.float64)
    ramp = 0.5 - 0.5 * np.cos(np.pi * (i + 0.5) / m)
    w[:m] = ramp
    w[n - m:] = ramp[::-1]
    return w


def tile_window(height: int, width: int, overlap: int) -> np.ndarray:
    """Separable 2D blending window for a tile."""
    return np.outer(raised_cosine_taper(height, overlap), raised_cosine_taper(width, overlap))
