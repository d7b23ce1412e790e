"""
Hierarchical tile alignment.

Coarse-to-fine block matching on an image pyramid:
- exhaustive integer search on the coarsest level
- doubled vectors refined in a small window on every finer level, seeded by
  the best of the tile's own and its neighbours' upsampled vectors
- parabolic sub-pixel fit on the finest level
- tiles without a reliable match fall back to the frame's global vector

Displacement convention: the alternate pixel at (x + dx, y + dy) shows the
same scene point as the reference pixel at (x, y).
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from burst_merge_backend.errors import MergeCancelledError
from burst_merge_backend.tile_grid import Tile, TileGrid

logger = logging.getLogger(__name__)

EPS = 1e-12
MIN_LEVEL_SIZE = 8
MIN_TILE_SIZE = 4
COST_NORMS = ('l1', 'l2')


@dataclass(frozen=True)
class MotionVector:
    frame_index: int
    tile_index: int
    dx: float
    dy: float
    global_dx: int
    global_dy: int
    score: float = 0.0
    rejected: bool = False

    @property
    def magnitude(self) -> float:
        """Chebyshev norm, matching the square search window."""
        return max(abs(self.dx), abs(self.dy))


@dataclass
class AlignmentResult:
    n_frames: int
    n_tiles: int
    reference_index: int = 0
    vectors: Dict[Tuple[int, int], MotionVector] = field(default_factory=dict)
    global_vectors: Dict[int, Tuple[float, float]] = field(default_factory=dict)
    global_scores: Dict[int, float] = field(default_factory=dict)
    failed_tiles: Dict[int, int] = field(default_factory=dict)

    def vector(self, frame_index: int, tile_index: int) -> MotionVector:
        return self.vectors[(frame_index, tile_index)]

    def missing_pairs(self) -> List[Tuple[int, int]]:
        return [
            (f, t)
            for f in range(self.n_frames)
            for t in range(self.n_tiles)
            if (f, t) not in self.vectors
        ]

    def rejected_count(self, frame_index: Optional[int] = None) -> int:
        return sum(
            1 for (f, _), v in self.vectors.items()
            if v.rejected and (frame_index is None or f == frame_index)
        )

    def confidence_report(self) -> Dict[str, object]:
        """Per-frame, per-tile alignment confidence for diagnostics."""
        frames = []
        for f in range(self.n_frames):
            if f == self.reference_index:
                continue
            scores = [
                float(self.vectors[(f, t)].score) if (f, t) in self.vectors else None
                for t in range(self.n_tiles)
            ]
            gx, gy = self.global_vectors.get(f, (0.0, 0.0))
            frames.append({
                'frame_index': f,
                'global_vector': [float(gx), float(gy)],
                'global_score': float(self.global_scores.get(f, 0.0)),
                'tile_scores': scores,
                'rejected_tiles': self.rejected_count(f),
                'failed_tiles': int(self.failed_tiles.get(f, 0)),
            })
        return {
            'n_frames': self.n_frames,
            'n_tiles': self.n_tiles,
            'rejected_total': self.rejected_count(),
            'frames': frames,
        }


def effective_levels(height: int, width: int, requested: int, min_size: int = MIN_LEVEL_SIZE) -> int:
    """Cap the pyramid depth so the coarsest level stays at least min_size pixels."""
    levels = max(1, int(requested))
    while levels > 1 and min(height, width) / (2 ** (levels - 1)) < min_size:
        levels -= 1
    return levels


def build_pyramid(image: np.ndarray, levels: int) -> List[np.ndarray]:
    """Gaussian-free 2x area-averaging pyramid, finest level first."""
    pyramid = [np.ascontiguousarray(image, dtype=np.float64)]
    for _ in range(1, levels):
        prev = pyramid[-1]
        h, w = prev.shape
        pyramid.append(
            cv2.resize(prev, (max(w // 2, 1), max(h // 2, 1)), interpolation=cv2.INTER_AREA)
        )
    return pyramid


def extract_clamped(img: np.ndarray, x0: int, y0: int, width: int, height: int) -> np.ndarray:
    """Read a region with edge replication for coordinates outside the image."""
    h, w = img.shape
    ys = np.clip(np.arange(y0, y0 + height), 0, h - 1)
    xs = np.clip(np.arange(x0, x0 + width), 0, w - 1)
    return img[np.ix_(ys, xs)]


def ssd_map(
    template: np.ndarray,
    alt: np.ndarray,
    x: int,
    y: int,
    cx: int,
    cy: int,
    radius: int,
    norm: str = 'l2',
) -> np.ndarray:
    """
    Mean squared (`l2`) or absolute (`l1`) difference between `template`
    (placed at x, y) and the alternate image displaced by (cx + u, cy + v)
    for u, v in [-radius, radius].

    Returns an array indexed [v + radius, u + radius].
    """
    h, w = template.shape
    n = 2 * radius + 1
    region = extract_clamped(alt, x + cx - radius, y + cy - radius, w + 2 * radius, h + 2 * radius)
    out = np.empty((n, n), dtype=np.float64)
    absolute = norm == 'l1'
    for v in range(n):
        for u in range(n):
            d = region[v:v + h, u:u + w] - template
            out[v, u] = np.mean(np.abs(d)) if absolute else np.mean(d * d)
    return out


def pick_best(scores: np.ndarray, cx: int, cy: int) -> Tuple[int, int]:
    """
    Index (v, u) of the lowest score.

    Ties prefer the candidate closest to the window centre (the propagated
    prior), then the smaller absolute displacement, then row-major order.
    """
    best = float(np.min(scores))
    tied = np.argwhere(np.isclose(scores, best, rtol=1e-9, atol=1e-18))
    if len(tied) == 1:
        return int(tied[0][0]), int(tied[0][1])
    r = scores.shape[0] // 2

    def key(vu):
        v, u = int(vu[0]), int(vu[1])
        ox, oy = u - r, v - r
        return (ox * ox + oy * oy, (cx + ox) ** 2 + (cy + oy) ** 2, v, u)

    v, u = min(tied, key=key)
    return int(v), int(u)


def parabolic_offset(s_minus: float, s_zero: float, s_plus: float) -> float:
    """Vertex of the parabola through three equally spaced samples, in [-0.5, 0.5]."""
    denom = s_minus - 2.0 * s_zero + s_plus
    if not np.isfinite(denom) or denom <= EPS:
        return 0.0
    return float(np.clip(0.5 * (s_minus - s_plus) / denom, -0.5, 0.5))


def subpixel_refine(scores: np.ndarray, v: int, u: int) -> Tuple[float, float]:
    """Independent per-axis parabolic fit around the best integer candidate."""
    n = scores.shape[0]
    s0 = scores[v, u]
    # an exact match cannot be improved on
    if s0 <= EPS:
        return 0.0, 0.0
    ox = parabolic_offset(scores[v, u - 1], s0, scores[v, u + 1]) if 0 < u < n - 1 else 0.0
    oy = parabolic_offset(scores[v - 1, u], s0, scores[v + 1, u]) if 0 < v < n - 1 else 0.0
    return ox, oy


def match_cost(template: np.ndarray, candidate: np.ndarray) -> float:
    """
    1 - normalised cross-correlation between two equally sized patches.

    0 for a perfect structural match, ~1 for flat or unrelated content.
    """
    a = template - np.mean(template)
    b = candidate - np.mean(candidate)
    denom = math.sqrt(float(np.sum(a * a)) * float(np.sum(b * b)))
    if denom < EPS:
        return 1.0
    return float(1.0 - np.sum(a * b) / denom)


def _level_bound(max_radius: int, level: int) -> int:
    return int(math.ceil(max_radius / (2 ** level)))


class PyramidAligner:
    """
    Per-tile motion estimation between a reference and alternate frames.
    """
    def __init__(
        self,
        grid: TileGrid,
        pyramid_levels: int = 3,
        max_search_radius: int = 16,
        refine_radius: int = 2,
        rejection_threshold: float = 0.5,
        upsampling_candidates: bool = True,
        finest_cost: str = 'l2',
        executor: Optional[Executor] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ):
        if max_search_radius < 0:
            raise ValueError(f"max_search_radius must be >= 0, got {max_search_radius}")
        if refine_radius < 1:
            raise ValueError(f"refine_radius must be >= 1, got {refine_radius}")
        if finest_cost not in COST_NORMS:
            raise ValueError(f"finest_cost must be one of {COST_NORMS}, got {finest_cost!r}")
        self.grid = grid
        self.levels = effective_levels(grid.height, grid.width, pyramid_levels)
        if self.levels != pyramid_levels:
            logger.info(f"Pyramid depth capped from {pyramid_levels} to {self.levels} levels")
        self.max_search_radius = int(max_search_radius)
        self.refine_radius = int(refine_radius)
        self.rejection_threshold = float(rejection_threshold)
        self.upsampling_candidates = bool(upsampling_candidates)
        self.finest_cost = finest_cost
        self.executor = executor
        self.should_cancel = should_cancel or (lambda: False)

    # -- helpers -----------------------------------------------------------

    def _check_cancel(self):
        if self.should_cancel():
            raise MergeCancelledError("Cancellation requested during alignment")

    def _map(self, fn, items):
        if self.executor is None:
            return [fn(i) for i in items]
        return list(self.executor.map(fn, items))

    def _clip(self, dx: float, dy: float) -> Tuple[float, float]:
        r = self.max_search_radius
        return float(np.clip(dx, -r, r)), float(np.clip(dy, -r, r))

    # -- global ------------------------------------------------------------

    def _global_box(self, level_img: np.ndarray, level: int) -> Tuple[int, int, int, int]:
        h, w = level_img.shape
        margin = _level_bound(self.max_search_radius, level) + self.refine_radius
        if w - 2 * margin < MIN_TILE_SIZE or h - 2 * margin < MIN_TILE_SIZE:
            return 0, 0, w, h
        return margin, margin, w - 2 * margin, h - 2 * margin

    def align_global(self, ref_pyr: Sequence[np.ndarray], alt_pyr: Sequence[np.ndarray]) -> Tuple[float, float, float]:
        """
        Whole-frame coarse-to-fine search.

        Returns (dx, dy, cost); a frame without usable structure returns a
        zero vector.
        """
        top = len(ref_pyr) - 1
        cx = cy = 0
        cost = 1.0
        dx = dy = 0.0
        for level in range(top, -1, -1):
            ref, alt = ref_pyr[level], alt_pyr[level]
            x, y, w, h = self._global_box(ref, level)
            template = ref[y:y + h, x:x + w]
            if level == top:
                radius = _level_bound(self.max_search_radius, level)
            else:
                cx, cy = 2 * cx, 2 * cy
                radius = self.refine_radius
            scores = ssd_map(template, alt, x, y, cx, cy, radius)
            v, u = pick_best(scores, cx, cy)
            if level == top:
                cost = match_cost(template, extract_clamped(alt, x + cx + u - radius, y + cy + v - radius, w, h))
            if level == 0:
                ox, oy = subpixel_refine(scores, v, u)
                dx, dy = cx + u - radius + ox, cy + v - radius + oy
            cx, cy = cx + u - radius, cy + v - radius
            bound = _level_bound(self.max_search_radius, level)
            cx = int(np.clip(cx, -bound, bound))
            cy = int(np.clip(cy, -bound, bound))

        if cost > self.rejection_threshold:
            logger.warning(f"Global alignment unreliable (cost={cost:.3f}), using zero vector")
            return 0.0, 0.0, cost
        dx, dy = self._clip(dx, dy)
        return dx, dy, cost

    # -- tiles -------------------------------------------------------------

    def _coarse_tile(self, ref, alt, tile: Tile, level: int, gx: int, gy: int):
        t = tile.scaled(level, MIN_TILE_SIZE)
        template = extract_clamped(ref, t.x, t.y, t.width, t.height)
        radius = _level_bound(self.max_search_radius, level)
        scores = ssd_map(template, alt, t.x, t.y, gx, gy, radius)
        v, u = pick_best(scores, gx, gy)
        ix, iy = gx + u - radius, gy + v - radius
        cost = match_cost(template, extract_clamped(alt, t.x + ix, t.y + iy, t.width, t.height))
        return ix, iy, cost

    def _seed(self, ref, alt, tile: Tile, level: int, prev: Dict[int, Tuple[int, int]]) -> Tuple[int, int]:
        """Pick the best doubled vector among the tile and its neighbours."""
        t = tile.scaled(level, MIN_TILE_SIZE)
        own = prev[tile.index]
        candidates = [(2 * own[0], 2 * own[1])]
        if self.upsampling_candidates:
            for j in self.grid.neighbours(tile.index):
                c = (2 * prev[j][0], 2 * prev[j][1])
                if c not in candidates:
                    candidates.append(c)
        if len(candidates) == 1:
            return candidates[0]
        template = extract_clamped(ref, t.x, t.y, t.width, t.height)
        best, best_score = candidates[0], None
        for c in candidates:
            s = float(ssd_map(template, alt, t.x, t.y, c[0], c[1], 0)[0, 0])
            if best_score is None or s < best_score:
                best, best_score = c, s
        return best

    def _refine_tile(self, ref, alt, tile: Tile, level: int, cx: int, cy: int):
        t = tile.scaled(level, MIN_TILE_SIZE)
        template = extract_clamped(ref, t.x, t.y, t.width, t.height)
        # the finest level may score with a different norm; coarser levels stay L2
        norm = self.finest_cost if level == 0 else 'l2'
        scores = ssd_map(template, alt, t.x, t.y, cx, cy, self.refine_radius, norm)
        v, u = pick_best(scores, cx, cy)
        r = self.refine_radius
        return cx + u - r, cy + v - r, scores, v, u

    def align_frame(
        self,
        ref_pyr: Sequence[np.ndarray],
        alt_pyr: Sequence[np.ndarray],
        frame_index: int,
        result: AlignmentResult,
    ) -> None:
        """Align every tile of one alternate frame and store the vectors in `result`."""
        self._check_cancel()
        gdx, gdy, gcost = self.align_global(ref_pyr, alt_pyr)
        gix, giy = int(round(gdx)), int(round(gdy))
        result.global_vectors[frame_index] = (gdx, gdy)
        result.global_scores[frame_index] = gcost
        logger.debug(f"Frame {frame_index}: global vector ({gdx:.2f}, {gdy:.2f}), cost {gcost:.3f}")

        tiles = list(self.grid)
        top = len(ref_pyr) - 1
        failed: Dict[int, Exception] = {}

        def run_tile(fn):
            def job(tile):
                self._check_cancel()
                if tile.index in failed:
                    return None
                try:
                    return fn(tile)
                except MergeCancelledError:
                    raise
                except Exception as e:
                    logger.warning(f"Frame {frame_index}, tile {tile.index}: alignment failed ({e}), using global vector")
                    failed[tile.index] = e
                    return None
            return job

        # coarsest level, centred on the global prior
        f = 2 ** top
        gcx, gcy = int(round(gdx / f)), int(round(gdy / f))
        coarse = self._map(
            run_tile(lambda tile: self._coarse_tile(ref_pyr[top], alt_pyr[top], tile, top, gcx, gcy)),
            tiles,
        )
        current: Dict[int, Tuple[int, int]] = {}
        costs: Dict[int, float] = {}
        for tile, res in zip(tiles, coarse):
            if res is None:
                current[tile.index] = (gcx, gcy)
                costs[tile.index] = 1.0
            else:
                current[tile.index] = (res[0], res[1])
                costs[tile.index] = res[2]

        finest: Dict[int, Tuple[float, float]] = {}
        if top == 0:
            # single level: refine around the coarse result for the sub-pixel fit
            levels = [0]
        else:
            levels = list(range(top - 1, -1, -1))

        for level in levels:
            prev = dict(current)
            bound = _level_bound(self.max_search_radius, level)

            def step(tile, level=level, prev=prev, bound=bound):
                if level == top:
                    cx, cy = prev[tile.index]
                else:
                    cx, cy = self._seed(ref_pyr[level], alt_pyr[level], tile, level, prev)
                cx = int(np.clip(cx, -bound, bound))
                cy = int(np.clip(cy, -bound, bound))
                ix, iy, scores, v, u = self._refine_tile(ref_pyr[level], alt_pyr[level], tile, level, cx, cy)
                if level == 0:
                    ox, oy = subpixel_refine(scores, v, u)
                    return ix, iy, ix + ox, iy + oy
                return ix, iy, None, None

            out = self._map(run_tile(step), tiles)
            for tile, res in zip(tiles, out):
                if res is None:
                    continue
                current[tile.index] = (res[0], res[1])
                if level == 0:
                    finest[tile.index] = (res[2], res[3])

        for tile in tiles:
            idx = tile.index
            cost = costs.get(idx, 1.0)
            if idx in failed or idx not in finest:
                dx, dy, rejected = gdx, gdy, True
            elif cost > self.rejection_threshold:
                dx, dy, rejected = gdx, gdy, True
            else:
                dx, dy = self._clip(*finest[idx])
                rejected = False
            result.vectors[(frame_index, idx)] = MotionVector(
                frame_index=frame_index,
                tile_index=idx,
                dx=dx,
                dy=dy,
                global_dx=gix,
                global_dy=giy,
                score=cost,
                rejected=rejected,
            )
        result.failed_tiles[frame_index] = len(failed)

        n_rej = result.rejected_count(frame_index)
        if n_rej:
            logger.info(f"Frame {frame_index}: {n_rej}/{len(tiles)} tiles fell back to the global vector")

    def align(self, frames: Sequence, reference_index: int = 0) -> AlignmentResult:
        """
        Align every frame of a burst against frames[reference_index].

        Args:
            frames: Frames (or 2D luminance arrays), reference included

        Returns:
            AlignmentResult with a vector for every (frame, tile) pair
        """
        lum = [f.luminance() if hasattr(f, 'luminance') else np.asarray(f, dtype=np.float64) for f in frames]
        result = AlignmentResult(n_frames=len(lum), n_tiles=len(self.grid), reference_index=reference_index)
        ref_pyr = build_pyramid(lum[reference_index], self.levels)

        for tile in self.grid:
            result.vectors[(reference_index, tile.index)] = MotionVector(
                frame_index=reference_index, tile_index=tile.index,
                dx=0.0, dy=0.0, global_dx=0, global_dy=0, score=0.0, rejected=False,
            )
        result.global_vectors[reference_index] = (0.0, 0.0)

        for i, img in enumerate(lum):
            if i == reference_index:
                continue
            alt_pyr = build_pyramid(img, self.levels)
            self.align_frame(ref_pyr, alt_pyr, i, result)

        return result
