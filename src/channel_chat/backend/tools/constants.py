"""Shared tool classification constants.

Centralizes the tool names so that the declarations sent to the model, the
local dispatchers and the tests do not drift. The names are matched by the
model protocol and must stay byte-for-byte identical.
"""

from __future__ import annotations

CSV_TOOL_NAMES: tuple[str, ...] = (
    "compute_column_stats",
    "get_value_counts",
    "get_top_tweets",
)

YOUTUBE_TOOL_NAMES: tuple[str, ...] = (
    "generateImage",
    "plot_metric_vs_time",
    "play_video",
    "compute_stats_json",
)

# Tools that can run before any channel JSON has been loaded.
NO_CHANNEL_DATA_TOOLS: set[str] = {
    "generateImage",
}


def requires_channel_data(name: str) -> bool:
    return name not in NO_CHANNEL_DATA_TOOLS
