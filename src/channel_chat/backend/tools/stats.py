"""Descriptive statistics over row sets.

Errors are reported as ``{"error": ...}`` dicts rather than raised, so they can
be relayed to the model as ordinary tool results.
"""

import logging
import re
from typing import Dict, List, Optional, Sequence

import polars as pl

from .tabular import Row, parse_float

logger = logging.getLogger(__name__)

_NORMALIZE = re.compile(r"[\s_-]+")


def _norm(name: str) -> str:
    return _NORMALIZE.sub("", name.lower())


def available_columns(rows: Sequence[Row]) -> List[str]:
    return list(rows[0].keys()) if rows else []


def resolve_column(rows: Sequence[Row], name: Optional[str]) -> Optional[str]:
    """Map a requested column name onto the actual header key.

    Exact match first, then a case/whitespace/underscore-insensitive match.
    Falls back to the literal name; callers treat an empty numeric set for the
    fallback as "column not found or non-numeric".
    """
    if not rows or not name:
        return name
    keys = available_columns(rows)
    if name in keys:
        return name
    target = _norm(name)
    for k in keys:
        if _norm(k) == target:
            return k
    return name


def numeric_values(rows: Sequence[Row], column: str) -> List[float]:
    out = []
    for r in rows:
        v = parse_float(r.get(column))
        if v is not None:
            out.append(v)
    return out


def describe_values(values: Sequence[float]) -> Dict[str, float]:
    """count/mean/median/std/min/max with population std, rounded to 4 places.

    Median of an even-length sample is the mean of the two middle values.
    """
    s = pl.Series("values", list(values), dtype=pl.Float64)
    return {
        "count": s.len(),
        "mean": round(s.mean(), 4),
        "median": round(s.median(), 4),
        "std": round(s.std(ddof=0), 4),
        "min": round(s.min(), 4),
        "max": round(s.max(), 4),
    }


def column_stats(rows: Sequence[Row], column: Optional[str]) -> dict:
    col = resolve_column(rows, column)
    logger.debug(f"column_stats resolved column: {column!r} -> {col!r}")
    vals = numeric_values(rows, col) if col else []
    if not vals:
        return {
            "error": f'No numeric values found in column "{col}". '
            f"Available columns: {', '.join(available_columns(rows))}"
        }
    return {"column": col, **describe_values(vals)}


def value_counts(rows: Sequence[Row], column: Optional[str], top_n: int = 10) -> dict:
    col = resolve_column(rows, column)
    logger.debug(f"value_counts resolved column: {column!r} -> {col!r}")
    counts: Dict[str, int] = {}
    for r in rows:
        v = r.get(col)
        if v is None or v == "":
            continue
        counts[v] = counts.get(v, 0) + 1
    if not counts:
        return {
            "error": f'Column "{col}" not found or empty. '
            f"Available columns: {', '.join(available_columns(rows))}"
        }
    # sorted() is stable, so ties keep their first-seen order
    ranked = sorted(counts.items(), key=lambda kv: kv[1], reverse=True)[:top_n]
    return {
        "column": col,
        "total_rows": len(rows),
        "value_counts": dict(ranked),
    }
