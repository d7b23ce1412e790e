"""
Burst-Merge CLI

Command-line interface for the merge engine:
- Config schema, defaults and validation
- End-to-end demo merge of a synthetic burst

All commands output JSON on stdout; logs go to stderr.

Usage:
    python burst_merge_cli.py <command> [args]
"""

import argparse
import json
import logging
import sys
from pathlib import Path

import numpy as np
import yaml

from burst_merge_backend.configuration import ConfigurationManager
from burst_merge_backend.errors import BurstMergeError
from burst_merge_backend.metrics import merge_quality_report
from burst_merge_backend.schema import load_schema_json
from burst_merge_backend.synthetic import SyntheticBurstGenerator
from burst_merge_backend.validate import validate_config_yaml_text
from runner.logging_config import setup_logging
from runner.orchestrator import MergeOrchestrator


def _print_json(obj: object) -> None:
    sys.stdout.write(json.dumps(obj, ensure_ascii=False, indent=2))
    sys.stdout.write("\n")
    sys.stdout.flush()


def cmd_get_schema(_: argparse.Namespace) -> int:
    schema = load_schema_json()
    _print_json(schema)
    return 0


def cmd_default_config(args: argparse.Namespace) -> int:
    out = Path(args.out) if args.out is not None else None
    cfg = ConfigurationManager.generate_default_config(out)
    result = {"config": cfg, "yaml": yaml.safe_dump(cfg, sort_keys=False)}
    if out is not None:
        result["path"] = str(out)
    _print_json(result)
    return 0


def cmd_validate_config(args: argparse.Namespace) -> int:
    if args.path is not None:
        yaml_text = Path(args.path).read_text(encoding="utf-8")
    elif args.stdin:
        yaml_text = sys.stdin.read()
    else:
        yaml_text = args.yaml

    if yaml_text is None:
        sys.stderr.write("validate-config requires --path, --yaml or --stdin\n")
        return 2

    result = validate_config_yaml_text(yaml_text=yaml_text, schema_path=args.schema)
    if args.path is not None:
        result["path"] = args.path
    _print_json(result)
    if args.strict_exit_codes:
        return 0 if result.get("valid") else 1
    return 0


def cmd_demo(args: argparse.Namespace) -> int:
    try:
        cfg = ConfigurationManager.load_config(Path(args.config)) if args.config else ConfigurationManager.generate_default_config()
    except BurstMergeError as e:
        _print_json({"ok": False, "error": str(e)})
        return 1
    if args.workers is not None:
        cfg["runtime"]["worker_count"] = args.workers
    if args.algorithm is not None:
        cfg["merge"]["algorithm"] = args.algorithm

    burst = SyntheticBurstGenerator.generate_burst(
        height=args.size,
        width=args.size,
        n_alternates=args.alternates,
        noise_sigma=args.sigma,
        max_shift=args.max_shift,
        seed=args.seed,
    )
    profile = SyntheticBurstGenerator.noise_profile_for_sigma(args.sigma)

    event_fp = open(args.events, "a", encoding="utf-8") if args.events else None
    try:
        orchestrator = MergeOrchestrator(cfg, event_fp=event_fp)
        result = orchestrator.merge(burst["frames"][0], burst["frames"][1:], noise_profile=profile)
    except BurstMergeError as e:
        _print_json({"ok": False, "error": str(e)})
        return 1
    finally:
        if event_fp is not None:
            event_fp.close()

    report = merge_quality_report(burst["frames"][0], result.frame, burst["truth"], margin=args.max_shift_margin)
    if args.output:
        np.save(args.output, result.frame)

    _print_json({
        "ok": True,
        "status": result.status,
        "shifts": [list(s) for s in burst["shifts"]],
        "global_vectors": {
            str(k): list(v) for k, v in sorted(result.alignment.global_vectors.items())
        },
        "quality": report,
        "rejected_tiles": result.diagnostics.get("rejected_tiles"),
        "degenerate_coefficients": result.diagnostics.get("degenerate_coefficients"),
        "failed_tiles": result.diagnostics.get("failed_tiles"),
        "timings": result.diagnostics.get("timings"),
        "output": args.output,
    })
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="burst_merge_cli")
    p.add_argument("--log-level", default="WARNING")
    p.add_argument("--log-dir", default=None)
    sub = p.add_subparsers(dest="cmd", required=True)

    p_schema = sub.add_parser("get-schema")
    p_schema.set_defaults(func=cmd_get_schema)

    p_default = sub.add_parser("default-config")
    p_default.add_argument("--out", default=None, help="Optional path to write the YAML file")
    p_default.set_defaults(func=cmd_default_config)

    p_validate = sub.add_parser("validate-config")
    src = p_validate.add_mutually_exclusive_group(required=True)
    src.add_argument("--path")
    src.add_argument("--yaml")
    src.add_argument("--stdin", action="store_true")
    p_validate.add_argument(
        "--schema",
        default=None,
        help="Optional path to a JSON schema (defaults to the bundled burst_merge.schema.json)",
    )
    p_validate.add_argument(
        "--strict-exit-codes",
        action="store_true",
        help="Return exit code 1 when validation fails. Default: always 0 and rely on JSON result.",
    )
    p_validate.set_defaults(func=cmd_validate_config)

    p_demo = sub.add_parser("demo", help="Merge a synthetic gradient+circle burst and report SNR")
    p_demo.add_argument("--config", default=None)
    p_demo.add_argument("--size", type=int, default=256)
    p_demo.add_argument("--alternates", type=int, default=3)
    p_demo.add_argument("--sigma", type=float, default=0.02)
    p_demo.add_argument("--max-shift", type=float, default=5.0)
    p_demo.add_argument("--max-shift-margin", type=int, default=8,
                        help="Border excluded from the SNR estimate")
    p_demo.add_argument("--seed", type=int, default=0)
    p_demo.add_argument("--workers", type=int, default=None)
    p_demo.add_argument("--algorithm", choices=["frequency", "spatial"], default=None)
    p_demo.add_argument("--events", default=None, help="Append JSON-line run events to this file")
    p_demo.add_argument("--output", default=None, help="Save the merged frame as .npy")
    p_demo.set_defaults(func=cmd_demo)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(getattr(logging, str(args.log_level).upper(), logging.WARNING), log_dir=args.log_dir)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
