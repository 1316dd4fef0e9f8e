"""
Pure merge primitives.

Each function depends only on its arguments and never on argument order,
so consolidation gives the same snapshot whatever order fetches complete in.
Ties are broken on the canonical JSON form of the records involved.
"""
import json
from collections import Counter
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple


def canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def first_present(*values: Any) -> Any:
    """First value that is not None."""
    for value in values:
        if value is not None:
            return value
    return None


def prefer_by_priority(candidates: Iterable[Tuple[int, Any]]) -> Any:
    """Value of the best-ranked (lowest number) candidate that is not None.

    Equal ranks fall back to the canonical form so the choice never depends
    on the iteration order of ``candidates``.
    """
    present = [(rank, canonical(value), value) for rank, value in candidates if value is not None]
    if not present:
        return None
    return min(present, key=lambda item: (item[0], item[1]))[2]


def sort_by_date(records: Optional[Sequence[Mapping[str, Any]]], date_field: str) -> List[Mapping[str, Any]]:
    """Records carrying ``date_field``, oldest first. ISO dates sort lexically."""
    if not records:
        return []
    dated = [r for r in records if isinstance(r, Mapping) and r.get(date_field)]
    return sorted(dated, key=lambda r: (str(r[date_field]), canonical(r)))


def latest_by_date(records: Optional[Sequence[Mapping[str, Any]]], date_field: str) -> Optional[Mapping[str, Any]]:
    ordered = sort_by_date(records, date_field)
    return ordered[-1] if ordered else None


def union_records(*record_lists: Optional[Sequence[Mapping[str, Any]]],
                  key: Callable[[Mapping[str, Any]], Any]) -> List[Mapping[str, Any]]:
    """Union of several record lists, de-duplicated by ``key``.

    When two lists disagree about the same key the record with the greatest
    canonical form wins; the result is sorted by key.
    """
    merged: Dict[str, Mapping[str, Any]] = {}
    for records in record_lists:
        for record in records or ():
            record_key = canonical(key(record))
            current = merged.get(record_key)
            if current is None or canonical(record) > canonical(current):
                merged[record_key] = record
    return [merged[k] for k in sorted(merged)]


def sum_counts(*mappings: Optional[Mapping[str, Any]]) -> Dict[str, float]:
    """Field-wise sum of numeric values; non-numeric values are ignored."""
    totals: Dict[str, float] = {}
    for mapping in mappings:
        for field, value in (mapping or {}).items():
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                totals[field] = totals.get(field, 0) + value
    return dict(sorted(totals.items()))


def sum_field(records: Optional[Sequence[Mapping[str, Any]]], field: str) -> Optional[float]:
    values = [r.get(field) for r in records or () if isinstance(r.get(field), (int, float))]
    return sum(values) if values else None


def count_by(records: Optional[Sequence[Mapping[str, Any]]], field: str) -> Dict[str, int]:
    counts = Counter(str(r.get(field) or "unknown") for r in records or ())
    return dict(sorted(counts.items()))


def max_value(*values: Any) -> Any:
    present = [v for v in values if v is not None]
    return max(present) if present else None
