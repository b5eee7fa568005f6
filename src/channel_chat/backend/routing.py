"""Per-turn execution mode selection.

Keyword matching is a heuristic, not a grammar. The keyword sets and the rule
order are fixed because users rely on the resulting behavior.
"""

import re
from dataclasses import dataclass
from typing import Literal

Mode = Literal["code_execution", "youtube_tools", "csv_tools", "streaming"]

# Requests the local tools cannot produce (plots and statistical models).
PYTHON_ONLY_KEYWORDS = re.compile(
    r"\b(regression|scatter|histogram|seaborn|matplotlib|numpy|time.?series|heatmap|box.?plot|violin"
    r"|distribut\w*|linear.?model|logistic|forecast|trend.?line)\b",
    re.I,
)

# Generic analysis vocabulary; only routes to code execution when no dataset is loaded.
CODE_KEYWORDS = re.compile(
    r"\b(plot|chart|graph|analyz\w*|statistic\w*|regression|correlat\w*|histogram|visualiz\w*|calculat\w*"
    r"|compute|run code|write code|execute|pandas|numpy|matplotlib|csv|data)\b",
    re.I,
)


def wants_python_only(text: str) -> bool:
    return bool(PYTHON_ONLY_KEYWORDS.search(text or ""))


def wants_code(text: str) -> bool:
    return bool(CODE_KEYWORDS.search(text or ""))


@dataclass(frozen=True)
class TurnContext:
    text: str = ""
    csv_loaded: bool = False
    csv_attached: bool = False
    channel_loaded: bool = False
    images_attached: bool = False


@dataclass(frozen=True)
class ModeDecision:
    mode: Mode
    use_code_execution: bool = False
    python_only: bool = False


def select_mode(ctx: TurnContext) -> ModeDecision:
    python_only = wants_python_only(ctx.text)
    code = wants_code(ctx.text) and not ctx.csv_loaded and not ctx.channel_loaded
    if python_only:
        return ModeDecision("code_execution", True, True)
    if code:
        return ModeDecision("code_execution", True, False)
    if (ctx.channel_loaded or ctx.images_attached) and not ctx.csv_loaded:
        return ModeDecision("youtube_tools")
    if ctx.csv_loaded and not ctx.csv_attached:
        return ModeDecision("csv_tools")
    return ModeDecision("streaming")
