"""CSV tool set for tweet-style exports.

Three tools are exposed to the model (``compute_column_stats``,
``get_value_counts``, ``get_top_tweets``). The helpers below them prepare a
freshly uploaded dataset once: engagement enrichment, the slim CSV block and
the markdown summary that accompanies every turn.
"""

import logging
import re
from functools import cmp_to_key
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from ..config import DEFAULT_NUMERIC_RATIO_THRESHOLD
from ..models import ComputeColumnStats, GetTopTweets, GetValueCounts
from .stats import available_columns, column_stats, resolve_column, value_counts
from .tabular import Row, parse_float

logger = logging.getLogger(__name__)

ENGAGEMENT = "engagement"

_FAVORITE = re.compile(r"favorite.?count", re.I)
_LIKES = re.compile(r"^likes?$", re.I)
_VIEWS_COUNT = re.compile(r"view.?count", re.I)
_VIEWS = re.compile(r"^views?$", re.I)

SLIM_PATTERNS = [
    re.compile(p, re.I)
    for p in (
        r"^text$",
        r"^language$",
        r"^type$",
        r"^view.?count$",
        r"^reply.?count$",
        r"^retweet.?count$",
        r"^quote.?count$",
        r"^favorite.?count$",
        r"^(created.?at|timestamp|date)$",
        r"^engagement$",
    )
]


def _first_match(columns: Sequence[str], *patterns: re.Pattern) -> Optional[str]:
    for pat in patterns:
        for c in columns:
            if pat.search(c):
                return c
    return None


def enrich_with_engagement(rows: List[Row], columns: List[str]) -> Tuple[List[Row], List[str]]:
    """Add ``engagement = favorites / views`` to every row.

    Returns new ``(rows, columns)``. A no-op when the dataset already has an
    engagement column or when either source column is missing, so calling it
    twice gives the same result as calling it once.
    """
    if not rows:
        return rows, columns
    fav_col = _first_match(columns, _FAVORITE, _LIKES)
    view_col = _first_match(columns, _VIEWS_COUNT, _VIEWS)
    if not fav_col or not view_col:
        return rows, columns
    if ENGAGEMENT in columns:
        return rows, columns

    enriched = []
    for r in rows:
        fav = parse_float(r.get(fav_col))
        view = parse_float(r.get(view_col))
        eng = round(fav / view, 6) if fav is not None and view is not None and view > 0 else None
        enriched.append({**r, ENGAGEMENT: eng})
    logger.debug(f"Engagement enrichment: {fav_col!r} / {view_col!r} over {len(rows)} rows")
    return enriched, [*columns, ENGAGEMENT]


def _escape_cell(value: Any) -> str:
    s = "" if value is None else str(value)
    if "," in s or '"' in s or "\n" in s:
        return '"' + s.replace('"', '""') + '"'
    return s


def build_slim_csv(rows: Sequence[Row], columns: Sequence[str]) -> str:
    """Project rows onto the key analytical columns, as CSV text.

    Columns keep their header order; returns "" when nothing matches.
    """
    if not rows or not columns:
        return ""
    slim = [c for c in columns if any(p.search(c) for p in SLIM_PATTERNS)]
    if not slim:
        return ""
    lines = [",".join(slim)]
    lines.extend(",".join(_escape_cell(r.get(c)) for c in slim) for r in rows)
    return "\n".join(lines)


def _num(x: float) -> str:
    """Render a number the way the summary has always shown it (5, not 5.0)."""
    return str(int(x)) if float(x).is_integer() else str(x)


def compute_dataset_summary(
    rows: Sequence[Row],
    columns: Sequence[str],
    numeric_threshold: float = DEFAULT_NUMERIC_RATIO_THRESHOLD,
) -> str:
    """Markdown overview of every column: mean/min/max for numeric columns,
    top-5 values for categorical ones.

    A column is numeric when at least ``numeric_threshold`` of its non-empty
    values parse as numbers.
    """
    if not rows or not columns:
        return ""
    lines = [f"**Dataset: {len(rows)} rows × {len(columns)} columns**\n"]
    numeric_lines = []
    categorical_lines = []

    for col in columns:
        vals = [r.get(col) for r in rows]
        vals = [v for v in vals if v is not None and v != ""]
        nums = [f for f in (parse_float(v) for v in vals) if f is not None]
        ratio = len(nums) / (len(vals) or 1)
        if nums and ratio >= numeric_threshold:
            mean = round(sum(nums) / len(nums), 2)
            numeric_lines.append(
                f'  • "{col}": mean={_num(mean)}, min={_num(min(nums))}, '
                f"max={_num(max(nums))}, n={len(nums)}"
            )
        else:
            counts: Dict[str, int] = {}
            for v in vals:
                key = _num(v) if isinstance(v, (int, float)) else str(v)
                counts[key] = counts.get(key, 0) + 1
            top = sorted(counts.items(), key=lambda kv: kv[1], reverse=True)[:5]
            top_text = ", ".join(f"{v} ({n})" for v, n in top)
            categorical_lines.append(f'  • "{col}": {len(counts)} unique values — top: {top_text}')

    if numeric_lines:
        lines.append("**Numeric columns** (exact names — use these verbatim in tool calls):")
        lines.extend(numeric_lines)
    if categorical_lines:
        lines.append("\n**Categorical columns** (exact names — use these verbatim in tool calls):")
        lines.extend(categorical_lines)
    return "\n".join(lines)


_TEXT_EXACT = re.compile(r"^text$", re.I)
_TEXT_LIKE = re.compile(r"text|content|tweet|body", re.I)


def get_top_tweets(rows: Sequence[Row], sort_column: str, n: Optional[int] = 10, ascending: Optional[bool] = False) -> dict:
    """Top (or bottom) ``n`` rows by a numeric column, projected for reading.

    Pairs where either side is non-numeric compare equal and keep their
    relative order. This is not a total order, so a column with scattered
    non-numeric cells is only partially sorted.
    """
    columns = available_columns(rows)
    sort_col = resolve_column(rows, sort_column) or sort_column
    n = n or 10
    asc = bool(ascending) if ascending is not None else False
    logger.debug(f"get_top_tweets sort={sort_col!r} n={n} asc={asc}")

    text_col = _first_match(columns, _TEXT_EXACT) or _first_match(columns, _TEXT_LIKE)
    fav_col = _first_match(columns, _FAVORITE)
    view_col = _first_match(columns, _VIEWS_COUNT)
    has_engagement = ENGAGEMENT in columns

    def compare(a: Row, b: Row) -> int:
        av = parse_float(a.get(sort_col))
        bv = parse_float(b.get(sort_col))
        if av is None or bv is None:
            return 0
        diff = av - bv if asc else bv - av
        return (diff > 0) - (diff < 0)

    ranked = sorted(rows, key=cmp_to_key(compare))[:n]

    tweets = []
    for i, r in enumerate(ranked):
        out: Dict[str, Any] = {"rank": i + 1}
        if text_col:
            out["text"] = str(r.get(text_col) or "")[:150]
        if fav_col:
            out[fav_col] = r.get(fav_col)
        if view_col:
            out[view_col] = r.get(view_col)
        if has_engagement:
            out[ENGAGEMENT] = r.get(ENGAGEMENT)
        tweets.append(out)

    if not tweets:
        return {"error": f'No rows found. Column "{sort_col}" may not exist. Available: {", ".join(columns)}'}
    return {
        "sort_column": sort_col,
        "direction": "ascending (lowest first)" if asc else "descending (highest first)",
        "count": len(tweets),
        "tweets": tweets,
    }


def execute_csv_tool(name: str, args: dict, rows: Sequence[Row]) -> dict:
    """Dispatch a CSV tool call by name. Errors come back as ``{"error": ...}``."""
    logger.debug(f"CSV tool {name} args={args} rows={len(rows)} columns={available_columns(rows)}")
    try:
        if name == "compute_column_stats":
            a = ComputeColumnStats(**args)
            return column_stats(rows, a.column)
        if name == "get_value_counts":
            a = GetValueCounts(**args)
            return value_counts(rows, a.column, a.top_n or 10)
        if name == "get_top_tweets":
            a = GetTopTweets(**args)
            return get_top_tweets(rows, a.sort_column, a.n, a.ascending)
    except ValidationError as e:
        return {"error": f"Invalid arguments for {name}: {e.errors(include_url=False)}"}
    return {"error": f"Unknown tool: {name}"}
