from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import yaml
from jsonschema import Draft202012Validator

from burst_merge_backend.schema import load_schema_json


@dataclass
class ValidationIssue:
    severity: str  # "error" | "warning"
    code: str
    path: str
    message: str


def _json_path(parts: list[str | int]) -> str:
    if not parts:
        return "$"
    out = "$"
    for p in parts:
        if isinstance(p, int):
            out += f"[{p}]"
        else:
            # minimal escaping
            if p.isidentifier():
                out += f".{p}"
            else:
                out += f"['{p}']"
    return out


def _as_int(x: Any) -> int | None:
    if isinstance(x, bool):
        return None
    if isinstance(x, int):
        return x
    return None


def _report(issues: list[ValidationIssue]) -> dict:
    valid = len([i for i in issues if i.severity == "error"]) == 0
    return {
        "valid": valid,
        "errors": [i.__dict__ for i in issues if i.severity == "error"],
        "warnings": [i.__dict__ for i in issues if i.severity == "warning"],
    }


def validate_config_yaml_text(
    yaml_text: str,
    schema_path: str | None = None,
) -> dict:
    issues: list[ValidationIssue] = []

    try:
        cfg = yaml.safe_load(yaml_text)
    except yaml.YAMLError as e:
        issues.append(
            ValidationIssue(
                severity="error",
                code="yaml_parse_error",
                path="$",
                message=str(e),
            )
        )
        return _report(issues)

    # empty document means "all defaults"
    if cfg is None:
        cfg = {}

    if not isinstance(cfg, dict):
        issues.append(
            ValidationIssue(
                severity="error",
                code="config_not_object",
                path="$",
                message="configuration root must be a mapping/object",
            )
        )
        return _report(issues)

    schema = load_schema_json(schema_path)
    validator = Draft202012Validator(schema)

    for err in sorted(validator.iter_errors(cfg), key=lambda e: [str(p) for p in e.path]):
        issues.append(
            ValidationIssue(
                severity="error",
                code="schema_validation_error",
                path=_json_path(list(err.path)),
                message=err.message,
            )
        )

    def get_path(obj: dict, keys: list[str]) -> Any:
        cur: Any = obj
        for k in keys:
            if not isinstance(cur, dict) or k not in cur:
                return None
            cur = cur[k]
        return cur

    # Cross-field checks; defaults fill in missing values
    size = _as_int(get_path(cfg, ["tile", "size"]))
    overlap = _as_int(get_path(cfg, ["tile", "overlap"]))
    size_eff = size if size is not None else 32
    overlap_eff = overlap if overlap is not None else 8

    if (size is not None or overlap is not None) and overlap_eff > size_eff // 2:
        issues.append(
            ValidationIssue(
                severity="error",
                code="tile_overlap_too_large",
                path="$.tile.overlap",
                message=f"tile.overlap must be <= tile.size / 2 (got overlap={overlap_eff}, size={size_eff})",
            )
        )

    if size is not None and size > 0 and (size & (size - 1)) != 0:
        issues.append(
            ValidationIssue(
                severity="warning",
                code="tile_size_not_power_of_two",
                path="$.tile.size",
                message=f"tile.size={size} is not a power of two; FFTs will be slower",
            )
        )

    levels = _as_int(get_path(cfg, ["alignment", "pyramid_levels"]))
    if levels is not None and levels >= 1 and size_eff // (2 ** (levels - 1)) < 4:
        issues.append(
            ValidationIssue(
                severity="warning",
                code="tile_too_small_for_pyramid",
                path="$.alignment.pyramid_levels",
                message=(
                    f"tile.size={size_eff} shrinks below 4 px on the coarsest of {levels} levels; "
                    "coarse tiles are padded to 4 px"
                ),
            )
        )

    radius = _as_int(get_path(cfg, ["alignment", "max_search_radius"]))
    if radius is not None and radius > size_eff:
        issues.append(
            ValidationIssue(
                severity="warning",
                code="search_radius_exceeds_tile",
                path="$.alignment.max_search_radius",
                message=f"max_search_radius={radius} is larger than tile.size={size_eff}",
            )
        )

    return _report(issues)
