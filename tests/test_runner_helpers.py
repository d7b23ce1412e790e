"""
Test Suite: Runner Helpers

- Worker count resolution and tile partitioning
- Arena accumulation and normalisation
- Fallback mechanism
- Run events
- Logging setup
"""

import io
import json
import logging
import os

import numpy as np
import pytest

from burst_merge_backend.errors import MergeCancelledError
from burst_merge_backend.frequency_merge import TileMergeOutput
from burst_merge_backend.tile_grid import TileGrid, tile_window
from runner import logging_config
from runner.accumulation import ArenaSet, normalize
from runner.events import RunEventLog, json_dumps_canonical
from runner.fallback_mechanism import FallbackMechanism
from runner.parallel import partition_tiles, resolve_worker_count, worker_pool


class TestParallel:
    def test_default_is_cpu_count(self):
        assert resolve_worker_count(None) == (os.cpu_count() or 1)

    def test_capped_to_cpu_count(self):
        assert resolve_worker_count(10_000) == (os.cpu_count() or 1)

    def test_invalid_worker_count(self):
        with pytest.raises(ValueError):
            resolve_worker_count(0)

    def test_single_worker_runs_inline(self):
        with worker_pool(1) as pool:
            assert pool is None

    def test_partition_round_robin(self):
        assert partition_tiles(7, 3) == [[0, 3, 6], [1, 4], [2, 5]]

    def test_partition_more_arenas_than_tiles(self):
        assert partition_tiles(2, 4) == [[0], [1]]


class TestAccumulation:
    def setup_method(self):
        self.grid = TileGrid(40, 40, tile_size=16, overlap=4)
        self.image = np.random.default_rng(12).uniform(0.1, 0.9, (40, 40, 1))

    def _outputs(self):
        for tile in self.grid:
            window = tile_window(tile.height, tile.width, 4)
            samples = self.image[tile.slices] * window[:, :, None]
            yield tile, TileMergeOutput(tile.index, samples, window)

    def test_overlap_add_reconstructs_image(self):
        arenas = ArenaSet(3, 40, 40, 1)
        for tile, out in self._outputs():
            arenas.arena_for(tile.index).add(tile, out)
        assert arenas.written_tiles() == set(range(len(self.grid)))
        samples, weights = arenas.reduce()
        np.testing.assert_allclose(normalize(samples, weights), self.image, atol=1e-12)

    def test_arena_count_does_not_change_result(self):
        results = []
        for n in (1, 4):
            arenas = ArenaSet(n, 40, 40, 1)
            for tile, out in self._outputs():
                arenas.arena_for(tile.index).add(tile, out)
            results.append(normalize(*arenas.reduce()))
        np.testing.assert_allclose(results[0], results[1], atol=1e-12)

    def test_zero_weight_rejected(self):
        with pytest.raises(ValueError):
            normalize(np.zeros((2, 2, 1)), np.array([[1.0, 0.0], [1.0, 1.0]]))

    def test_normalize_clips(self):
        out = normalize(np.full((1, 2, 1), 3.0), np.array([[2.0, 10.0]]))
        np.testing.assert_allclose(out[:, :, 0], [[1.0, 0.3]])


class TestFallbackMechanism:
    def test_primary_result(self):
        fb = FallbackMechanism()
        assert fb.execute_with_fallback(lambda x: x * 2, None, None, 4) == 8
        assert fb.fallback_count == 0

    def test_handler_used_on_failure(self):
        fb = FallbackMechanism()

        def broken(x):
            raise RuntimeError("boom")

        assert fb.execute_with_fallback(broken, None, lambda e: str(e), 1) == "boom"
        assert fb.fallback_count == 1

    def test_fallback_func_receives_arguments(self):
        fb = FallbackMechanism()

        def broken(x):
            raise RuntimeError("boom")

        assert fb.execute_with_fallback(broken, lambda x: x + 1, None, 1) == 2

    def test_cancellation_passes_through(self):
        fb = FallbackMechanism()

        def cancelled():
            raise MergeCancelledError("stop")

        with pytest.raises(MergeCancelledError):
            fb.execute_with_fallback(cancelled, None, lambda e: None)
        assert fb.fallback_count == 0

    def test_primary_error_reraised_without_fallback(self):
        fb = FallbackMechanism()

        def broken():
            raise KeyError("tile")

        with pytest.raises(KeyError):
            fb.execute_with_fallback(broken)


class TestEvents:
    def test_no_sink_is_silent(self):
        log = RunEventLog("run1")
        assert log.enabled is False
        assert log.phase_start("ALIGNING") is None

    def test_phase_events_are_json_lines(self):
        sink = io.StringIO()
        log = RunEventLog("run1", sink)
        log.phase_start("ALIGNING", tiles=4)
        log.phase_progress("MERGING", 1, 4)
        log.phase_end("MERGING")
        lines = [json.loads(line) for line in sink.getvalue().splitlines()]
        assert [e["type"] for e in lines] == ["phase_start", "phase_progress", "phase_end"]
        assert [e["phase"] for e in lines] == [1, 2, 2]
        assert lines[0]["tiles"] == 4
        assert lines[1]["current"] == 1 and lines[1]["total"] == 4
        assert lines[2]["status"] == "ok"

    def test_run_events_have_no_phase(self):
        sink = io.StringIO()
        log = RunEventLog("run1", sink)
        log.run_start(3, 25, workers=2)
        log.run_end("failed", error="boom")
        start, end = [json.loads(line) for line in sink.getvalue().splitlines()]
        assert start["type"] == "run_start" and "phase" not in start
        assert (start["frames"], start["tiles"], start["workers"]) == (3, 25, 2)
        assert end["status"] == "failed" and end["error"] == "boom"

    def test_stop_requested_outside_a_phase(self):
        sink = io.StringIO()
        RunEventLog("run1", sink).stop_requested("IDLE")
        event = json.loads(sink.getvalue())
        assert event["type"] == "run_stop_requested"
        assert event["phase"] == 0

    def test_concurrent_writers_keep_lines_whole(self):
        sink = io.StringIO()
        log = RunEventLog("run1", sink)
        with worker_pool(4) as pool:
            list(pool.map(lambda i: log.phase_progress("MERGING", i, 200), range(200)))
        lines = [json.loads(line) for line in sink.getvalue().splitlines()]
        assert sorted(e["current"] for e in lines) == list(range(200))

    def test_canonical_json(self):
        assert json_dumps_canonical({"b": 1, "a": 2}) == b'{"a":2,"b":1}'


class TestLoggingSetup:
    def setup_method(self):
        root = logging.getLogger()
        self.saved = (root.level, list(root.handlers))

    def teardown_method(self):
        root = logging.getLogger()
        for handler in root.handlers:
            if handler not in self.saved[1]:
                handler.close()
        root.handlers[:] = self.saved[1]
        root.setLevel(self.saved[0])

    def test_setup_logging_is_the_only_entry_point(self):
        assert not hasattr(logging_config, "get_logger")

    def test_console_and_file_handlers(self, tmp_path):
        stream = io.StringIO()
        root = logging_config.setup_logging(logging.INFO, log_dir=str(tmp_path), stream=stream)
        logging.getLogger("burst_merge_backend.test").info("tile merged")
        for handler in root.handlers:
            handler.flush()
        assert "tile merged" in stream.getvalue()
        logs = list(tmp_path.glob("burst_merge_*.log"))
        assert len(logs) == 1
        assert "tile merged" in logs[0].read_text(encoding="utf-8")
