"""Response comparison between the legacy and new providers.

``compare`` produces the per-request ``Comparison`` used by dual and shadow
modes.  ``deep_compare`` and ``build_report`` give the field-level detail
(path, difference type, significance) and a migration recommendation when
detailed comparison is enabled.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Any

from migration_gateway.models.results import ExecutionResult, utc_now_iso

_NUMERIC_RE = re.compile(r"^-?\d+(\.\d+)?$")

# Fields that affect business outcomes
CRITICAL_FIELDS: tuple[str, ...] = (
    "batchid",
    "dan",
    "status",
    "error",
    "success",
    "depositid",
    "tenancyid",
    "amount",
)

# Fields that should match but may differ in format
IMPORTANT_FIELDS: tuple[str, ...] = (
    "propertyaddress",
    "tenantname",
    "landlordname",
    "startdate",
    "enddate",
    "branchid",
    "memberid",
)

# Latency difference (percent) below which providers count as similar
_PERFORMANCE_TOLERANCE = 10


@dataclass
class Difference:
    path: str
    type: str
    legacy: Any = None
    new: Any = None
    significance: str = "cosmetic"


@dataclass
class DeepComparison:
    match: bool
    differences: list[Difference]
    match_percentage: int
    total_fields: int
    critical_differences: int = 0
    important_differences: int = 0
    cosmetic_differences: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Comparison:
    """Outcome comparison of one dual/shadow execution.

    ``divergent`` is true exactly when one provider succeeded and the
    other failed.
    """

    divergent: bool
    status_match: bool
    data_match: bool
    both_succeeded: bool
    both_failed: bool
    legacy_duration_ms: float
    new_duration_ms: float
    latency_delta_ms: float
    timestamp: str = field(default_factory=utc_now_iso)
    report: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ── Normalization ───────────────────────────────────────────────────────


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def normalize_payload(value: Any) -> Any:
    """Canonical form for equality: numeric strings and numbers become floats."""
    if isinstance(value, dict):
        return {str(k): normalize_payload(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [normalize_payload(v) for v in value]
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and _NUMERIC_RE.match(value):
        return float(value)
    return value


def payloads_match(legacy: Any, new: Any) -> bool:
    """Deep equality after normalization; booleans only equal booleans."""
    if isinstance(legacy, dict) and isinstance(new, dict):
        return legacy.keys() == new.keys() and all(payloads_match(legacy[k], new[k]) for k in legacy)
    if isinstance(legacy, (list, tuple)) and isinstance(new, (list, tuple)):
        return len(legacy) == len(new) and all(payloads_match(a, b) for a, b in zip(legacy, new))
    if isinstance(legacy, bool) or isinstance(new, bool):
        return isinstance(legacy, bool) and isinstance(new, bool) and legacy == new
    return normalize_payload(legacy) == normalize_payload(new)


# ── Field-level differences ─────────────────────────────────────────────


def detect_differences(legacy: Any, new: Any, path: str = "") -> list[Difference]:
    """Recursively list differences between two payloads."""
    where = path or "root"
    if legacy is None and new is None:
        return []
    if legacy is None:
        return [Difference(where, "missing_in_legacy", legacy, new)]
    if new is None:
        return [Difference(where, "missing_in_new", legacy, new)]

    legacy_type, new_type = _type_name(legacy), _type_name(new)
    if legacy_type != new_type:
        if payloads_match(legacy, new):
            return []
        return [Difference(where, "type_mismatch", legacy, new)]

    if legacy_type == "object":
        differences: list[Difference] = []
        for key in dict.fromkeys([*legacy, *new]):
            child = f"{path}.{key}" if path else str(key)
            if key not in legacy:
                differences.append(Difference(child, "missing_in_legacy", None, new[key]))
            elif key not in new:
                differences.append(Difference(child, "missing_in_new", legacy[key], None))
            else:
                differences.extend(detect_differences(legacy[key], new[key], child))
        return differences

    if legacy_type == "array":
        differences = []
        if len(legacy) != len(new):
            differences.append(Difference(where, "array_length_mismatch", len(legacy), len(new)))
        for i in range(max(len(legacy), len(new))):
            item_legacy = legacy[i] if i < len(legacy) else None
            item_new = new[i] if i < len(new) else None
            differences.extend(detect_differences(item_legacy, item_new, f"{path}[{i}]"))
        return differences

    if not payloads_match(legacy, new):
        return [Difference(where, "value_mismatch", legacy, new)]
    return []


def rank_significance(differences: list[Difference]) -> list[Difference]:
    """Tag each difference as critical, important or cosmetic."""
    for diff in differences:
        path = diff.path.lower().replace("_", "")
        if any(name in path for name in CRITICAL_FIELDS):
            diff.significance = "critical"
        elif any(name in path for name in IMPORTANT_FIELDS):
            diff.significance = "important"
        elif diff.type == "type_mismatch":
            diff.significance = "important"
        elif diff.type in ("missing_in_legacy", "missing_in_new"):
            diff.significance = "cosmetic" if diff.legacy is None or diff.new is None else "important"
        else:
            diff.significance = "cosmetic"
    return differences


def count_fields(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, dict):
        return sum(1 + count_fields(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return sum(count_fields(v) for v in value)
    return 1


def deep_compare(legacy: Any, new: Any) -> DeepComparison:
    """Field-level comparison with match percentage and significance counts."""
    if legacy is None or new is None:
        missing = Difference("root", "missing", legacy, new, significance="critical")
        return DeepComparison(
            match=legacy is None and new is None,
            differences=[] if legacy is None and new is None else [missing],
            match_percentage=100 if legacy is None and new is None else 0,
            total_fields=0,
            critical_differences=0 if legacy is None and new is None else 1,
        )

    differences = rank_significance(detect_differences(legacy, new))
    total = count_fields(legacy) + count_fields(new)
    percentage = round((total - len(differences)) / total * 100) if total else 100
    return DeepComparison(
        match=not differences,
        differences=differences,
        match_percentage=max(0, percentage),
        total_fields=total,
        critical_differences=sum(d.significance == "critical" for d in differences),
        important_differences=sum(d.significance == "important" for d in differences),
        cosmetic_differences=sum(d.significance == "cosmetic" for d in differences),
    )


def compare_performance(legacy_ms: float | None, new_ms: float | None) -> dict[str, Any]:
    if not legacy_ms or not new_ms:
        return {"verdict": "incomplete", "legacy_ms": legacy_ms, "new_ms": new_ms, "difference_ms": None}
    difference = new_ms - legacy_ms
    percentage = round(difference / legacy_ms * 100)
    if percentage < -_PERFORMANCE_TOLERANCE:
        verdict = "new_faster"
    elif percentage > _PERFORMANCE_TOLERANCE:
        verdict = "legacy_faster"
    else:
        verdict = "similar"
    return {
        "verdict": verdict,
        "legacy_ms": legacy_ms,
        "new_ms": new_ms,
        "difference_ms": round(difference, 2),
        "percentage_difference": percentage,
    }


def recommend(legacy_ok: bool, new_ok: bool, detail: DeepComparison | None) -> str:
    """One-line migration recommendation for a comparison report."""
    if not legacy_ok and not new_ok:
        return "Both providers failed - investigate root cause before proceeding"
    if legacy_ok and not new_ok:
        return "Only legacy provider succeeded - new provider needs investigation"
    if new_ok and not legacy_ok:
        return "Only new provider succeeded - investigate legacy provider"
    if detail is None or detail.match:
        return "Perfect match - safe to migrate"
    if detail.critical_differences:
        return f"Critical differences found ({detail.critical_differences}) - do not migrate yet"
    if detail.important_differences:
        return f"Important differences found ({detail.important_differences}) - review before migration"
    return f"Only cosmetic differences ({detail.cosmetic_differences}) - likely safe to migrate"


def build_report(legacy: ExecutionResult, new: ExecutionResult) -> dict[str, Any]:
    """Detailed comparison report attached when comparison is enabled."""
    detail = deep_compare(legacy.data, new.data) if legacy.success and new.success else None
    return {
        "summary": {
            "both_succeeded": legacy.success and new.success,
            "both_failed": not legacy.success and not new.success,
            "only_legacy_succeeded": legacy.success and not new.success,
            "only_new_succeeded": new.success and not legacy.success,
            "response_match": detail.match if detail else False,
        },
        "legacy": legacy.to_dict(),
        "new": new.to_dict(),
        "comparison": detail.to_dict() if detail else None,
        "performance": compare_performance(legacy.duration_ms, new.duration_ms),
        "recommendation": recommend(legacy.success, new.success, detail),
    }


def compare(legacy: ExecutionResult, new: ExecutionResult, *, detailed: bool = False) -> Comparison:
    """Compare a legacy and a new execution of the same request."""
    return Comparison(
        divergent=legacy.success != new.success,
        status_match=legacy.status_code == new.status_code,
        data_match=payloads_match(legacy.data, new.data),
        both_succeeded=legacy.success and new.success,
        both_failed=not legacy.success and not new.success,
        legacy_duration_ms=legacy.duration_ms,
        new_duration_ms=new.duration_ms,
        latency_delta_ms=round(new.duration_ms - legacy.duration_ms, 2),
        report=build_report(legacy, new) if detailed else None,
    )
