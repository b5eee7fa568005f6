"""Tabular parsing for uploaded CSV text.

Rows are kept as plain ``{column: value}`` dicts in file order so the tools can
work with the exact header names the user (and the model) sees.
"""

import math
import re
from typing import Any, Dict, List, Optional, Tuple

Row = Dict[str, Any]

# Leading decimal literal, read the way a browser parseFloat reads it:
# "12.5k" -> 12.5, "  -3e2 views" -> -300.0, "abc" -> no match.
_LEADING_NUMBER = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")


def parse_float(value: Any) -> Optional[float]:
    """Lenient numeric coercion; returns None for anything non-numeric."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        f = float(value)
        return f if math.isfinite(f) else None
    m = _LEADING_NUMBER.match(str(value))
    if not m:
        return None
    f = float(m.group(1))
    return f if math.isfinite(f) else None


def split_line(line: str) -> List[str]:
    """Split one CSV line on commas outside double quotes.

    Quotes only toggle the in-quotes flag; doubled quotes are not unescaped.
    """
    fields = []
    current = []
    in_quotes = False
    for ch in line:
        if ch == '"':
            in_quotes = not in_quotes
        elif ch == "," and not in_quotes:
            fields.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
    fields.append("".join(current).strip())
    return fields


def _strip_quotes(s: str) -> str:
    if s.startswith('"'):
        s = s[1:]
    if s.endswith('"'):
        s = s[:-1]
    return s


def parse_csv_text(text: str) -> Tuple[List[str], List[Row]]:
    """Parse CSV text into ``(columns, rows)``.

    Blank lines are ignored and the first remaining line is the header. Fewer
    than two lines gives ``([], [])`` rather than an error.
    """
    lines = [ln for ln in text.split("\n") if ln.strip()]
    if len(lines) < 2:
        return [], []
    columns = [_strip_quotes(h) for h in split_line(lines[0])]
    rows: List[Row] = []
    for line in lines[1:]:
        values = split_line(line)
        row = {}
        for i, col in enumerate(columns):
            row[col] = _strip_quotes(values[i]) if i < len(values) else ""
        rows.append(row)
    return columns, rows
