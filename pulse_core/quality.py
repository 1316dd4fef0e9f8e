"""
Data quality scoring.

An area's score is a weighted mix of
- reliability: how its inputs were served (fresh or cached 1.0, fallback 0.5, error 0),
- recency: age of the freshest contribution, decaying linearly to 0 over the horizon,
- completeness: share of expected fields present and non-empty in the merged data.
The snapshot score is the area-weighted mean; an unavailable area scores 0.
"""
from typing import Any, List, Mapping, Optional, Sequence, Tuple

from .config import QualityWeights
from .models import SourceContribution

RELIABILITY_BY_STATUS = {
    "fresh": 1.0,
    "cached": 1.0,
    "fallback": 0.5,
    "error": 0.0,
}


def _is_filled(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, list, dict, tuple, set)) and len(value) == 0:
        return False
    return True


def completeness(data: Optional[Mapping[str, Any]], expected_fields: Sequence[str]) -> float:
    if not expected_fields:
        return 1.0 if data else 0.0
    if not data:
        return 0.0
    return sum(1 for f in expected_fields if _is_filled(data.get(f))) / len(expected_fields)


def reliability(contributions: Sequence[SourceContribution]) -> float:
    if not contributions:
        return 0.0
    return sum(RELIABILITY_BY_STATUS[c.status] for c in contributions) / len(contributions)


def recency(contributions: Sequence[SourceContribution], now: float, horizon_s: float) -> float:
    times = [c.fetched_at for c in contributions if c.status != "error" and c.fetched_at is not None]
    if not times:
        return 0.0
    age = max(0.0, now - max(times))
    return max(0.0, 1.0 - age / horizon_s)


def score_area(
    contributions: Sequence[SourceContribution],
    data: Optional[Mapping[str, Any]],
    expected_fields: Sequence[str],
    weights: QualityWeights,
    now: float,
) -> Tuple[float, List[str]]:
    """Return (score in [0, 1], human-readable issues)."""
    issues: List[str] = []
    if data is None or not any(c.status != "error" for c in contributions):
        return 0.0, ["no source delivered data"]

    w = weights.normalised()
    rel = reliability(contributions)
    rec = recency(contributions, now, weights.recency_horizon_s)
    comp = completeness(data, expected_fields)

    for c in contributions:
        if c.status == "fallback":
            issues.append(f"{c.source}:{c.endpoint} served from stale cache")
        elif c.status == "error":
            issues.append(f"{c.source}:{c.endpoint} failed: {c.error}")
    missing = [f for f in expected_fields if not _is_filled(data.get(f))]
    if missing:
        issues.append(f"missing fields: {', '.join(missing)}")

    score = w["reliability"] * rel + w["recency"] * rec + w["completeness"] * comp
    return round(min(1.0, max(0.0, score)), 4), issues


def overall_quality(area_scores: Mapping[str, float], area_weights: Mapping[str, float]) -> float:
    total_weight = sum(area_weights.get(key, 1.0) for key in area_scores)
    if total_weight <= 0:
        return 0.0
    weighted = sum(score * area_weights.get(key, 1.0) for key, score in area_scores.items())
    return round(weighted / total_weight, 4)
