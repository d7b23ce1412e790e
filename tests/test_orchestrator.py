"""
Test Suite: Merge Orchestrator

End-to-end merges of synthetic bursts:
- SNR improvement on the gradient+circle scenario
- Identity and constant-frame round trips
- Output shape and normalisation weights
- State machine, cancellation and concurrent rejection
- Input validation and noise profile fallback
"""

import io
import json
import threading

import numpy as np
import pytest

from burst_merge_backend.errors import (
    ConfigurationError,
    InvalidInputError,
    MergeInProgressError,
)
from burst_merge_backend.metrics import merge_quality_report, snr
from burst_merge_backend.noise_model import NoiseProfile
from burst_merge_backend.synthetic import SyntheticBurstGenerator
from runner.orchestrator import MergeOrchestrator, MergeStateMachine, merge_burst


def _config(**runtime):
    cfg = {"runtime": {"worker_count": 1}}
    cfg["runtime"].update(runtime)
    return cfg


@pytest.fixture(scope="module")
def scenario():
    sigma = 0.02
    burst = SyntheticBurstGenerator.generate_burst(
        height=256, width=256, n_alternates=3, noise_sigma=sigma, max_shift=5.0, seed=1234
    )
    burst["profile"] = SyntheticBurstGenerator.noise_profile_for_sigma(sigma)
    return burst


@pytest.fixture(scope="module")
def scenario_result(scenario):
    orchestrator = MergeOrchestrator(_config(worker_count=2))
    frames = scenario["frames"]
    return orchestrator.merge(frames[0], frames[1:], noise_profile=scenario["profile"])


class TestMergeScenario:
    def test_snr_gain(self, scenario, scenario_result):
        assert scenario_result.status == "done"
        report = merge_quality_report(scenario["frames"][0], scenario_result.frame, scenario["truth"], margin=8)
        assert report["snr_merged"] > report["snr_reference"]
        assert report["snr_gain"] >= 1.3

    def test_output_shape_matches_reference(self, scenario, scenario_result):
        assert scenario_result.frame.shape == scenario["frames"][0].shape

    def test_every_pixel_has_weight(self, scenario_result):
        assert scenario_result.weights.shape == (256, 256)
        assert np.all(scenario_result.weights > 0)
        assert scenario_result.diagnostics["min_weight"] > 0

    def test_output_clipped_to_unit_range(self, scenario_result):
        assert scenario_result.frame.min() >= 0.0
        assert scenario_result.frame.max() <= 1.0

    def test_diagnostics(self, scenario_result):
        diag = scenario_result.diagnostics
        assert diag["state_history"] == ["IDLE", "ALIGNING", "MERGING", "NORMALIZING", "DONE"]
        assert diag["noise_profile_fallback"] is False
        assert diag["grid"]["total_tiles"] == 121
        assert len(diag["alignment"]["frames"]) == 3
        assert diag["failed_tiles"] == 0

    def test_global_vectors_track_true_shifts(self, scenario, scenario_result):
        for f, (dx, dy) in enumerate(scenario["shifts"]):
            gx, gy = scenario_result.alignment.global_vectors[f]
            assert abs(gx - dx) <= 0.75
            assert abs(gy - dy) <= 0.75

    def test_two_frame_burst_improves_snr(self, scenario):
        frames = scenario["frames"]
        result = merge_burst(frames[:2], scenario["profile"], _config())
        assert snr(result.frame, scenario["truth"], 8) > snr(frames[0], scenario["truth"], 8)

    def test_spatial_algorithm_improves_snr(self, scenario):
        frames = scenario["frames"]
        cfg = _config()
        cfg["merge"] = {"algorithm": "spatial"}
        result = merge_burst(frames, scenario["profile"], cfg)
        assert snr(result.frame, scenario["truth"], 8) > snr(frames[0], scenario["truth"], 8)


class TestMergeIdentities:
    def test_merge_with_itself_returns_reference(self):
        ref = SyntheticBurstGenerator.render_pattern(128, 128, texture=True)
        profile = SyntheticBurstGenerator.noise_profile_for_sigma(0.02)
        result = merge_burst([ref, ref.copy()], profile, _config())
        np.testing.assert_allclose(result.frame, ref, atol=1e-9)

    def test_constant_frame_round_trip(self):
        const = np.full((96, 80), 0.4)
        result = merge_burst([const, const.copy(), const.copy()], None, _config())
        np.testing.assert_allclose(result.frame, 0.4, atol=1e-12)

    def test_multi_plane_output(self):
        burst = SyntheticBurstGenerator.generate_burst(64, 64, n_alternates=2, planes=3, seed=2)
        profile = SyntheticBurstGenerator.noise_profile_for_sigma(0.02, planes=3)
        result = merge_burst(burst["frames"], profile, _config())
        assert result.frame.shape == (64, 64, 3)

    def test_results_independent_of_worker_count(self, monkeypatch):
        # keep the pool threaded on single-core hosts
        monkeypatch.setattr("os.cpu_count", lambda: 4)
        burst = SyntheticBurstGenerator.generate_burst(96, 96, n_alternates=2, seed=3)
        profile = SyntheticBurstGenerator.noise_profile_for_sigma(0.02)
        one = merge_burst(burst["frames"], profile, _config(worker_count=1))
        many = merge_burst(burst["frames"], profile, _config(worker_count=4))
        assert one.diagnostics["workers"] == 1
        assert many.diagnostics["workers"] == 4
        np.testing.assert_allclose(one.frame, many.frame, atol=1e-12)


class TestMergeErrors:
    def setup_method(self):
        self.frame = np.full((32, 32), 0.5)

    def test_single_frame_rejected(self):
        orchestrator = MergeOrchestrator(_config())
        with pytest.raises(InvalidInputError):
            orchestrator.merge(self.frame, [])
        assert orchestrator.state_name == "FAILED"

    def test_shape_mismatch_rejected(self):
        with pytest.raises(InvalidInputError):
            merge_burst([self.frame, np.full((32, 16), 0.5)], None, _config())

    def test_plane_mismatch_rejected(self):
        with pytest.raises(InvalidInputError):
            merge_burst([self.frame, np.full((32, 32, 3), 0.5)], None, _config())

    def test_non_finite_rejected(self):
        bad = self.frame.copy()
        bad[3, 3] = np.nan
        with pytest.raises(InvalidInputError):
            merge_burst([self.frame, bad], None, _config())

    def test_empty_burst_rejected(self):
        with pytest.raises(InvalidInputError):
            merge_burst([], None, _config())

    def test_invalid_config_rejected(self):
        with pytest.raises(ConfigurationError):
            MergeOrchestrator({"tile": {"size": 32, "overlap": 20}})

    def test_invalid_noise_profile_falls_back_to_uniform(self):
        burst = SyntheticBurstGenerator.generate_burst(64, 64, n_alternates=1, seed=5)
        invalid = NoiseProfile.from_pairs([(0.0, 1e-4)])
        result = merge_burst(burst["frames"], invalid, _config())
        assert result.status == "done"
        assert result.diagnostics["noise_profile_fallback"] is True
        assert result.diagnostics["uniform_weighting"] is True
        assert result.diagnostics["warnings"]


class TestCancellationAndConcurrency:
    def setup_method(self):
        burst = SyntheticBurstGenerator.generate_burst(96, 96, n_alternates=2, seed=6)
        self.frames = burst["frames"]
        self.profile = SyntheticBurstGenerator.noise_profile_for_sigma(0.02)

    def test_cancel_between_tiles(self):
        orchestrator = MergeOrchestrator(_config())
        calls = []

        def on_progress(state, current, total):
            calls.append(current)
            orchestrator.cancel()

        result = orchestrator.merge(self.frames[0], self.frames[1:], self.profile, progress_callback=on_progress)
        assert result.status == "cancelled"
        assert result.cancelled is True
        assert result.frame is None
        assert calls == [1]
        assert orchestrator.state_name == "CANCELLED"
        assert result.diagnostics["cancelled_in"] == "MERGING"

        # the flag does not leak into the next run
        again = orchestrator.merge(self.frames[0], self.frames[1:], self.profile)
        assert again.status == "done"

    def test_cancel_between_tiles_on_worker_pool(self, monkeypatch):
        monkeypatch.setattr("os.cpu_count", lambda: 4)
        orchestrator = MergeOrchestrator(_config(worker_count=4))

        def on_progress(state, current, total):
            orchestrator.cancel()

        result = orchestrator.merge(self.frames[0], self.frames[1:], self.profile, progress_callback=on_progress)
        assert result.status == "cancelled"
        assert result.frame is None
        assert result.diagnostics["workers"] == 4
        assert result.diagnostics["cancelled_in"] == "MERGING"

        again = orchestrator.merge(self.frames[0], self.frames[1:], self.profile)
        assert again.status == "done"
        assert again.diagnostics["workers"] == 4

    def test_cancel_before_merge_stops_next_run_only(self):
        orchestrator = MergeOrchestrator(_config())
        orchestrator.cancel()
        result = orchestrator.merge(self.frames[0], self.frames[1:], self.profile)
        assert result.status == "cancelled"
        assert result.diagnostics["cancelled_in"] == "ALIGNING"

        again = orchestrator.merge(self.frames[0], self.frames[1:], self.profile)
        assert again.status == "done"

    def test_concurrent_merge_rejected(self):
        orchestrator = MergeOrchestrator(_config())
        started = threading.Event()
        release = threading.Event()
        results = []

        def on_progress(state, current, total):
            if current == 1:
                started.set()
                release.wait(timeout=30)

        def run():
            results.append(
                orchestrator.merge(self.frames[0], self.frames[1:], self.profile, progress_callback=on_progress)
            )

        worker = threading.Thread(target=run)
        worker.start()
        try:
            assert started.wait(timeout=30)
            with pytest.raises(MergeInProgressError):
                orchestrator.merge(self.frames[0], self.frames[1:], self.profile)
        finally:
            release.set()
            worker.join(timeout=60)
        assert results and results[0].status == "done"

    def test_events_written_to_sink(self):
        sink = io.StringIO()
        orchestrator = MergeOrchestrator(_config(), event_fp=sink)
        orchestrator.merge(self.frames[0], self.frames[1:], self.profile)
        events = [json.loads(line) for line in sink.getvalue().splitlines() if line.strip()]
        starts = [e["phase_name"] for e in events if e["type"] == "phase_start"]
        assert starts == ["ALIGNING", "MERGING", "NORMALIZING"]
        assert any(e["type"] == "phase_progress" for e in events)
        assert events[0]["type"] == "run_start"
        assert events[0]["frames"] == 3
        assert events[-1]["type"] == "run_end"
        assert events[-1]["status"] == "done"
        assert len({e["run_id"] for e in events}) == 1

    def test_cancelled_run_events(self):
        sink = io.StringIO()
        orchestrator = MergeOrchestrator(_config(), event_fp=sink)
        orchestrator.cancel()
        orchestrator.merge(self.frames[0], self.frames[1:], self.profile)
        types = [json.loads(line)["type"] for line in sink.getvalue().splitlines()]
        assert types[-2:] == ["run_stop_requested", "run_end"]
        assert json.loads(sink.getvalue().splitlines()[-1])["status"] == "cancelled"


class TestMergeStateMachine:
    def test_forward_only(self):
        sm = MergeStateMachine()
        sm.advance("ALIGNING").advance("MERGING")
        with pytest.raises(ValueError):
            sm.advance("ALIGNING")

    def test_no_skipping(self):
        sm = MergeStateMachine()
        with pytest.raises(ValueError):
            sm.advance("MERGING")

    def test_failed_from_any_active_state(self):
        sm = MergeStateMachine()
        sm.advance("ALIGNING").advance("FAILED")
        assert sm.is_terminal
        with pytest.raises(ValueError):
            sm.advance("CANCELLED")

    def test_unknown_state(self):
        with pytest.raises(ValueError):
            MergeStateMachine().advance("SLEEPING")
