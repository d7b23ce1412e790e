"""
Merge orchestration.

Sequences burst validation, alignment, per-tile merging, overlap-add
accumulation and normalisation, and owns the output buffer until it is
fully normalised.

States:
    IDLE -> ALIGNING -> MERGING -> NORMALIZING -> DONE
    FAILED and CANCELLED are terminal and reachable from every active state.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import numpy as np
import yaml

from burst_merge_backend.alignment import AlignmentResult, PyramidAligner
from burst_merge_backend.configuration import ConfigurationManager, MergeConfig
from burst_merge_backend.errors import (
    IncompleteMergeError,
    MergeCancelledError,
    MergeInProgressError,
    MissingAlignmentError,
)
from burst_merge_backend.frames import Frame, validate_burst
from burst_merge_backend.frequency_merge import FrequencyMergeEngine, reference_tile_output
from burst_merge_backend.noise_model import NoiseProfile, resolve_noise_profile
from burst_merge_backend.spatial_merge import SpatialMergeEngine
from burst_merge_backend.tile_grid import TileGrid
from burst_merge_backend.weighting import get_weighting

from .accumulation import ArenaSet, normalize
from .error_handling import log_exception
from .events import RunEventLog
from .fallback_mechanism import FallbackMechanism
from .parallel import partition_tiles, resolve_worker_count, worker_pool

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int, int], None]


class MergeStateMachine:
    """
    Forward-only merge state tracking
    """
    STATES = [
        'IDLE',
        'ALIGNING',
        'MERGING',
        'NORMALIZING',
        'DONE',
        'FAILED',
        'CANCELLED',
    ]
    TERMINAL = {'DONE', 'FAILED', 'CANCELLED'}

    def __init__(self):
        self.current_state = 'IDLE'
        self.history: List[str] = ['IDLE']
        self.state_data: Dict[str, Dict[str, Any]] = {}

    def advance(self, state: str, data: Optional[Dict[str, Any]] = None):
        """
        Move to the next state with optional data
        """
        if state not in self.STATES:
            raise ValueError(f"Invalid state: {state}")
        if self.current_state in self.TERMINAL:
            raise ValueError(f"Cannot leave terminal state {self.current_state}")

        if state not in ('FAILED', 'CANCELLED'):
            current_index = self.STATES.index(self.current_state)
            next_index = self.STATES.index(state)
            if next_index != current_index + 1:
                raise ValueError(f"Cannot go from {self.current_state} to {state}")

        self.current_state = state
        self.history.append(state)
        if data:
            self.state_data[state] = data

        logger.info(f"Merge state: {state}")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.current_state in self.TERMINAL


@dataclass
class MergeResult:
    status: str  # "done" | "cancelled"
    frame: Optional[np.ndarray]
    diagnostics: Dict[str, Any] = field(default_factory=dict)
    weights: Optional[np.ndarray] = None
    alignment: Optional[AlignmentResult] = None

    @property
    def cancelled(self) -> bool:
        return self.status == 'cancelled'


def _coerce_config(config: Union[MergeConfig, Dict[str, Any], None]) -> MergeConfig:
    if config is None:
        return MergeConfig()
    raw = config.to_dict() if isinstance(config, MergeConfig) else config
    ConfigurationManager.validate_config_text(yaml.safe_dump(raw, sort_keys=False))
    return MergeConfig(raw)


class MergeOrchestrator:
    """
    Runs one burst merge at a time.

    Args:
        config: MergeConfig or nested config dict (validated on construction)
        event_fp: optional file-like sink for JSON-line run events
    """
    def __init__(self, config: Union[MergeConfig, Dict[str, Any], None] = None, event_fp=None):
        self.config = _coerce_config(config)
        self.event_fp = event_fp
        self.state = MergeStateMachine()
        self._lock = threading.Lock()
        self._cancel = threading.Event()

    @property
    def state_name(self) -> str:
        return self.state.current_state

    def cancel(self) -> None:
        """Request cooperative cancellation of the running merge, or of the next one when idle."""
        self._cancel.set()

    def _build_engine(self):
        cfg = self.config
        if cfg.algorithm == 'spatial':
            return SpatialMergeEngine(cfg.tile_overlap, cfg.kernel, cfg.robustness, cfg.spatial_blur_sigma)
        if cfg.algorithm == 'frequency':
            return FrequencyMergeEngine(cfg.tile_overlap, cfg.kernel, get_weighting(cfg.weighting, cfg.robustness))
        raise ValueError(f"Unknown merge algorithm: {cfg.algorithm}")

    def _check_cancel(self):
        if self._cancel.is_set():
            raise MergeCancelledError("Cancellation requested")

    @log_exception
    def merge(
        self,
        reference,
        alternates: Sequence,
        noise_profile: Optional[NoiseProfile] = None,
        use_uniform_weighting: bool = False,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> MergeResult:
        """
        Merge a burst into one frame.

        Args:
            reference: reference frame, (H, W) or (H, W, planes)
            alternates: non-empty sequence of frames shaped like the reference
            noise_profile: sensor noise profile; missing or invalid profiles
                fall back to uniform weighting with a warning
            use_uniform_weighting: skip the noise model explicitly
            progress_callback: called as (state, done, total) between tiles

        Returns:
            MergeResult with status "done" and the merged frame, or status
            "cancelled" and no frame

        Raises:
            MergeInProgressError: another merge is running on this instance
            InvalidInputError: burst has fewer than two frames or mismatched shapes
        """
        if not self._lock.acquire(blocking=False):
            raise MergeInProgressError("A merge is already in progress on this orchestrator")
        try:
            self.state = MergeStateMachine()
            return self._run(reference, alternates, noise_profile, use_uniform_weighting, progress_callback)
        finally:
            # a request made before this run started was honoured by it
            self._cancel.clear()
            self._lock.release()

    def _run(self, reference, alternates, noise_profile, use_uniform_weighting, progress_callback) -> MergeResult:
        cfg = self.config
        state = self.state
        run_id = uuid.uuid4().hex[:12]
        timings: Dict[str, float] = {}
        diagnostics: Dict[str, Any] = {'run_id': run_id, 'warnings': []}
        arenas: Optional[ArenaSet] = None
        alignment: Optional[AlignmentResult] = None
        squeeze = not isinstance(reference, Frame) and np.ndim(reference) == 2
        log = RunEventLog(run_id, self.event_fp)

        def progress(name: str, current: int, total: int):
            log.phase_progress(name, current, total)
            if progress_callback is not None:
                progress_callback(name, current, total)

        try:
            frames = validate_burst(reference, alternates)
            ref = frames[0]
            profile, warning = resolve_noise_profile(
                noise_profile, ref.planes, use_uniform_weighting or cfg.weighting == 'uniform'
            )
            if warning:
                diagnostics['warnings'].append(warning)
            diagnostics['noise_profile_fallback'] = warning is not None
            diagnostics['uniform_weighting'] = profile.is_uniform

            grid = TileGrid(ref.height, ref.width, cfg.tile_size, cfg.tile_overlap)
            workers = resolve_worker_count(cfg.worker_count)
            diagnostics.update({
                'frames': len(frames),
                'grid': grid.metadata(),
                'workers': workers,
                'algorithm': cfg.algorithm,
            })
            log.run_start(len(frames), len(grid), workers=workers, algorithm=cfg.algorithm)

            with worker_pool(workers) as pool:
                # ALIGNING
                t0 = time.perf_counter()
                state.advance('ALIGNING', {'frames': len(frames), 'tiles': len(grid)})
                log.phase_start('ALIGNING', tiles=len(grid))
                aligner = PyramidAligner(
                    grid,
                    pyramid_levels=cfg.pyramid_levels,
                    max_search_radius=cfg.max_search_radius,
                    refine_radius=cfg.refine_radius,
                    rejection_threshold=cfg.rejection_threshold,
                    upsampling_candidates=cfg.upsampling_candidates,
                    finest_cost=cfg.finest_cost,
                    executor=pool,
                    should_cancel=self._cancel.is_set,
                )
                alignment = aligner.align(frames)
                missing = alignment.missing_pairs()
                if missing:
                    raise MissingAlignmentError(missing)
                timings['aligning_s'] = time.perf_counter() - t0
                log.phase_end('ALIGNING', rejected_tiles=alignment.rejected_count())

                # MERGING
                t0 = time.perf_counter()
                state.advance('MERGING')
                log.phase_start('MERGING', tiles=len(grid))
                engine = self._build_engine()
                arenas = ArenaSet(workers, ref.height, ref.width, ref.planes)
                partitions = partition_tiles(len(grid), len(arenas))
                fallback = FallbackMechanism('TileMergeFallback')
                degenerate = [0] * len(arenas)
                failed = [0] * len(arenas)
                done = [0]
                done_lock = threading.Lock()

                def run_arena(a: int) -> None:
                    arena = arenas.arenas[a]
                    for idx in partitions[a]:
                        self._check_cancel()
                        tile = grid[idx]
                        vectors = [alignment.vector(f, idx) for f in range(len(frames))]
                        out = fallback.execute_with_fallback(
                            engine.merge_tile,
                            None,
                            lambda e, tile=tile: reference_tile_output(ref, tile, cfg.tile_overlap),
                            frames, tile, vectors, profile,
                        )
                        arena.add(tile, out)
                        degenerate[a] += out.degenerate
                        failed[a] += int(out.fallback)
                        with done_lock:
                            done[0] += 1
                            current = done[0]
                        progress('MERGING', current, len(grid))

                if pool is None:
                    for a in range(len(partitions)):
                        run_arena(a)
                else:
                    list(pool.map(run_arena, range(len(partitions))))

            missing_tiles = set(range(len(grid))) - arenas.written_tiles()
            if missing_tiles:
                raise IncompleteMergeError(missing_tiles)
            timings['merging_s'] = time.perf_counter() - t0
            log.phase_end('MERGING')

            # NORMALIZING
            t0 = time.perf_counter()
            state.advance('NORMALIZING')
            log.phase_start('NORMALIZING')
            samples, weights = arenas.reduce()
            merged = normalize(samples, weights)
            timings['normalizing_s'] = time.perf_counter() - t0
            log.phase_end('NORMALIZING')

            diagnostics.update({
                'alignment': alignment.confidence_report(),
                'rejected_tiles': alignment.rejected_count(),
                'degenerate_coefficients': int(sum(degenerate)),
                'failed_tiles': int(sum(failed)),
                'min_weight': float(np.min(weights)),
                'timings': timings,
            })
            state.advance('DONE')
            diagnostics['state_history'] = list(state.history)
            log.run_end('done', timings=timings)
            if squeeze:
                merged = merged[:, :, 0]
            return MergeResult('done', merged, diagnostics, weights, alignment)

        except MergeCancelledError:
            if arenas is not None:
                arenas.discard()
            phase = state.current_state
            log.stop_requested(phase)
            state.advance('CANCELLED')
            diagnostics['cancelled_in'] = phase
            diagnostics['state_history'] = list(state.history)
            log.run_end('cancelled', cancelled_in=phase)
            logger.info(f"Merge {run_id} cancelled during {phase}")
            return MergeResult('cancelled', None, diagnostics, None, None)

        except Exception as e:
            if not state.is_terminal:
                state.advance('FAILED', {'error': str(e)})
            log.run_end('failed', error=str(e))
            raise


def merge_burst(
    frames: Sequence,
    noise_profile: Optional[NoiseProfile] = None,
    config: Union[MergeConfig, Dict[str, Any], None] = None,
    use_uniform_weighting: bool = False,
) -> MergeResult:
    """Merge frames[0] (reference) with frames[1:]."""
    if frames is None or len(frames) == 0:
        frames = [None]
    orchestrator = MergeOrchestrator(config)
    return orchestrator.merge(frames[0], list(frames[1:]), noise_profile, use_uniform_weighting)
