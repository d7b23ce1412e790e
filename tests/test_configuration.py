"""
Test Suite: Configuration Loading

- Defaults and MergeConfig round trip
- YAML loading with defaults filled in
- Validation errors surfaced as ConfigurationError
"""

import pytest
import yaml

from burst_merge_backend.configuration import (
    DEFAULT_CONFIG,
    ConfigurationManager,
    MergeConfig,
    load_merge_config,
)
from burst_merge_backend.errors import ConfigurationError


class TestMergeConfig:
    def test_defaults(self):
        cfg = MergeConfig()
        assert cfg.tile_size == 32
        assert cfg.tile_overlap == 8
        assert cfg.pyramid_levels == 3
        assert cfg.max_search_radius == 16
        assert cfg.algorithm == "frequency"
        assert cfg.kernel == "bicubic"
        assert cfg.weighting == "wiener"
        assert cfg.worker_count is None
        assert cfg.finest_cost == "l2"

    def test_to_dict_matches_defaults(self):
        assert MergeConfig().to_dict() == DEFAULT_CONFIG

    def test_partial_dict(self):
        cfg = MergeConfig.from_dict({
            "merge": {"algorithm": " Spatial "},
            "alignment": {"finest_cost": "L1"},
            "runtime": {"worker_count": 3},
        })
        assert cfg.algorithm == "spatial"
        assert cfg.worker_count == 3
        assert cfg.finest_cost == "l1"
        assert cfg.tile_size == 32


class TestConfigurationManager:
    def test_load_fills_defaults(self, tmp_path):
        path = tmp_path / "merge.yaml"
        path.write_text("tile:\n  size: 64\n  overlap: 16\n", encoding="utf-8")
        cfg = ConfigurationManager.load_config(path)
        assert cfg["tile"] == {"size": 64, "overlap": 16}
        assert cfg["alignment"] == DEFAULT_CONFIG["alignment"]

    def test_load_does_not_mutate_defaults(self, tmp_path):
        path = tmp_path / "merge.yaml"
        path.write_text("merge:\n  robustness: 2.0\n", encoding="utf-8")
        ConfigurationManager.load_config(path)
        assert DEFAULT_CONFIG["merge"]["robustness"] == 8.0

    def test_load_invalid_raises(self, tmp_path):
        path = tmp_path / "merge.yaml"
        path.write_text("merge:\n  kernel: nearest\n", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            ConfigurationManager.load_config(path)

    def test_load_missing_file_raises(self, tmp_path):
        with pytest.raises(ConfigurationError):
            ConfigurationManager.load_config(tmp_path / "absent.yaml")

    def test_generate_default_config_writes_yaml(self, tmp_path):
        out = tmp_path / "default.yaml"
        cfg = ConfigurationManager.generate_default_config(out, {"merge": {"algorithm": "spatial"}})
        assert cfg["merge"]["algorithm"] == "spatial"
        assert cfg["merge"]["kernel"] == "bicubic"
        written = yaml.safe_load(out.read_text(encoding="utf-8"))
        assert written == cfg
        ConfigurationManager.validate_config_text(out.read_text(encoding="utf-8"))

    def test_validate_returns_warnings(self):
        report = ConfigurationManager.validate_config_text("tile:\n  size: 48\n  overlap: 8\n")
        assert report["valid"] is True
        assert report["warnings"]

    def test_load_merge_config(self, tmp_path):
        path = tmp_path / "merge.yaml"
        path.write_text("runtime:\n  worker_count: 2\n", encoding="utf-8")
        cfg = load_merge_config(path)
        assert isinstance(cfg, MergeConfig)
        assert cfg.worker_count == 2
