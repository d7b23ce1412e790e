"""
Test Suite: Command-Line Interface

- Schema and default config output
- Config validation exit codes
- Synthetic demo merge
"""

import json

import numpy as np
import pytest
import yaml

import burst_merge_cli


def _run(capsys, *argv):
    code = burst_merge_cli.main(["--log-level", "CRITICAL", *argv])
    out = capsys.readouterr().out
    return code, json.loads(out)


class TestCli:
    def test_get_schema(self, capsys):
        code, schema = _run(capsys, "get-schema")
        assert code == 0
        assert set(schema["properties"]) == {"tile", "alignment", "merge", "runtime"}

    def test_default_config(self, capsys, tmp_path):
        out = tmp_path / "merge.yaml"
        code, result = _run(capsys, "default-config", "--out", str(out))
        assert code == 0
        assert result["path"] == str(out)
        assert yaml.safe_load(out.read_text(encoding="utf-8")) == result["config"]

    def test_validate_config_valid(self, capsys):
        code, result = _run(capsys, "validate-config", "--yaml", "tile:\n  size: 32\n", "--strict-exit-codes")
        assert code == 0
        assert result["valid"] is True

    def test_validate_config_strict_exit_code(self, capsys):
        code, result = _run(capsys, "validate-config", "--yaml", "tile:\n  overlap: 30\n", "--strict-exit-codes")
        assert code == 1
        assert result["valid"] is False

    def test_validate_config_lenient_exit_code(self, capsys):
        code, result = _run(capsys, "validate-config", "--yaml", "merge: {kernel: nearest}\n")
        assert code == 0
        assert result["valid"] is False

    def test_validate_config_from_path(self, capsys, tmp_path):
        path = tmp_path / "merge.yaml"
        path.write_text("merge:\n  algorithm: spatial\n", encoding="utf-8")
        code, result = _run(capsys, "validate-config", "--path", str(path))
        assert code == 0
        assert result["path"] == str(path)
        assert result["valid"] is True

    def test_validate_config_requires_source(self):
        with pytest.raises(SystemExit):
            burst_merge_cli.main(["validate-config"])

    def test_demo(self, capsys, tmp_path):
        output = tmp_path / "merged.npy"
        events = tmp_path / "events.jsonl"
        code, result = _run(
            capsys,
            "demo", "--size", "64", "--alternates", "2", "--workers", "1",
            "--output", str(output), "--events", str(events),
        )
        assert code == 0
        assert result["ok"] is True
        assert result["status"] == "done"
        assert len(result["shifts"]) == 3
        assert set(result["global_vectors"]) == {"0", "1", "2"}
        assert result["quality"]["snr_merged"] > 0
        assert np.load(output).shape == (64, 64)
        lines = events.read_text(encoding="utf-8").splitlines()
        assert any(json.loads(line)["type"] == "phase_end" for line in lines)

    def test_demo_invalid_config_reports_json(self, capsys, tmp_path):
        bad = tmp_path / "bad.yaml"
        bad.write_text("tile:\n  size: 32\n  overlap: 20\n", encoding="utf-8")
        code, result = _run(capsys, "demo", "--config", str(bad), "--size", "64")
        assert code == 1
        assert result["ok"] is False
        assert result["error"]

    def test_demo_missing_config_reports_json(self, capsys, tmp_path):
        code, result = _run(capsys, "demo", "--config", str(tmp_path / "absent.yaml"), "--size", "64")
        assert code == 1
        assert result["ok"] is False
