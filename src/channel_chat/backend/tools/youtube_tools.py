"""Tools over a downloaded YouTube channel (list of video records).

Tool names are part of the model protocol and must not change:
``generateImage``, ``plot_metric_vs_time``, ``play_video``, ``compute_stats_json``.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from pydantic import ValidationError

from ..models import (
    ComputeStatsJson,
    GeneratedImage,
    GenerateImage,
    MetricVsTimeChart,
    PlayVideo,
    PlayVideoCard,
    PlotMetricVsTime,
)
from .constants import requires_channel_data
from .stats import describe_values
from .tabular import parse_float

logger = logging.getLogger(__name__)

# generate(prompt, anchor_image_b64) -> {"imageData", "mimeType", "prompt"}
ImageDelegate = Callable[[str, Optional[str]], Awaitable[Dict[str, Any]]]

NO_DATA_ERROR = "No YouTube channel data loaded. Please drag a channel JSON file into the chat first."
THUMBNAIL_URL = "https://img.youtube.com/vi/{video_id}/hqdefault.jpg"
WATCH_URL = "https://www.youtube.com/watch?v={video_id}"

_DURATION = re.compile(r"PT(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?")
_DURATION_FIELDS = ("duration", "duration_seconds")

_ORDINALS = {
    "first": 0, "second": 1, "third": 2, "fourth": 3, "fifth": 4,
    "1st": 0, "2nd": 1, "3rd": 2, "4th": 3, "5th": 4,
}
_VIDEO_N = re.compile(r"^video\s+(\d+)$", re.ASCII)


def parse_duration(value: Any) -> Optional[int]:
    """ISO-8601 ``PT#H#M#S`` to seconds. Absent groups count as 0."""
    if not value or not isinstance(value, str):
        return None
    m = _DURATION.search(value)
    if not m:
        return None
    h, mi, s = (int(g or 0) for g in m.groups())
    return h * 3600 + mi * 60 + s


def _parse_date(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def metric_value(video: dict, field: str) -> Optional[float]:
    """Numeric value of ``field`` for one video; durations are read as seconds."""
    raw = video.get(field)
    if field in _DURATION_FIELDS:
        secs = parse_duration(video.get("duration") or video.get("duration_seconds"))
        if secs is not None:
            return secs
        return raw if isinstance(raw, (int, float)) and not isinstance(raw, bool) else None
    return parse_float(raw)


def _fields(videos: Sequence[dict]) -> str:
    return ", ".join(videos[0].keys()) if videos else ""


def plot_metric_vs_time(videos: Sequence[dict], metric_field: str) -> dict:
    points = []
    for v in videos:
        value = metric_value(v, metric_field)
        date = v.get("published_at") or v.get("release_date")
        when = _parse_date(date)
        if value is None or when is None:
            continue
        points.append((when, {"date": date, "value": value}))
    if not points:
        return {"error": f'No valid data for field "{metric_field}". Available: {_fields(videos)}'}
    points.sort(key=lambda p: p[0])
    chart = MetricVsTimeChart(data=[p for _, p in points], metric_field=metric_field)
    return chart.to_wire()


def select_video(videos: Sequence[dict], selector: Optional[str]) -> Optional[dict]:
    """Resolve a free-text selector to one video.

    Order: "first"/"1", named ordinals, "video N", bare N (1-based),
    "last"/"most recent", "most viewed"/"least viewed", then a
    case-insensitive title substring.
    """
    sel = (selector or "").lower().strip()

    def at(i: int) -> Optional[dict]:
        return videos[i] if 0 <= i < len(videos) else None

    if sel in ("first", "1"):
        return at(0)
    if sel in _ORDINALS:
        return at(_ORDINALS[sel])
    m = _VIDEO_N.match(sel)
    if m:
        return at(int(m.group(1)) - 1)
    if re.fullmatch(r"\d+", sel, re.ASCII) and int(sel) >= 1:
        return at(int(sel) - 1)
    if sel in ("last", "most recent"):
        return at(len(videos) - 1)
    if sel == "most viewed":
        return next(iter(sorted(videos, key=lambda v: v.get("view_count") or 0, reverse=True)), None)
    if sel == "least viewed":
        return next(iter(sorted(videos, key=lambda v: v.get("view_count") or 0)), None)
    for v in videos:
        if sel in (v.get("title") or "").lower():
            return v
    return None


def play_video(videos: Sequence[dict], selector: str) -> dict:
    video = select_video(videos, selector)
    if video is None:
        return {"error": f'No video found for "{selector}"'}
    video_id = video.get("video_id")
    thumb = THUMBNAIL_URL.format(video_id=video_id) if video_id else (video.get("thumbnail_url") or "")
    card = PlayVideoCard(
        title=video.get("title") or "Video",
        thumbnail_url=thumb,
        video_url=video.get("video_url") or WATCH_URL.format(video_id=video_id),
        video_id=video_id,
    )
    return card.to_wire()


def compute_stats_json(videos: Sequence[dict], field: str) -> dict:
    values = [x for x in (metric_value(v, field) for v in videos) if x is not None]
    if not values:
        return {"error": f'No numeric values for "{field}". Available: {_fields(videos)}'}
    return {"field": field, **describe_values(values)}


async def generate_image(
    prompt: str,
    anchor_image: Optional[str],
    delegate: Optional[ImageDelegate],
) -> dict:
    if delegate is None:
        return {"error": "Image generation not available"}
    out = await delegate(prompt, anchor_image)
    image = GeneratedImage(
        image_data=out.get("imageData"),
        mime_type=out.get("mimeType") or "image/png",
        prompt=out.get("prompt", prompt),
    )
    return image.to_wire()


async def execute_youtube_tool(
    name: str,
    args: dict,
    videos: List[dict],
    anchor_image: Optional[str] = None,
    image_delegate: Optional[ImageDelegate] = None,
) -> dict:
    """Dispatch a channel tool call by name.

    User errors come back as ``{"error": ...}``; failures of the image
    delegate propagate to the caller.
    """
    if not videos and requires_channel_data(name):
        return {"error": NO_DATA_ERROR}
    logger.debug(f"YouTube tool {name} args={args} videos={len(videos)}")
    try:
        if name == "generateImage":
            a = GenerateImage(**args)
            return await generate_image(a.prompt, anchor_image, image_delegate)
        if name == "plot_metric_vs_time":
            a = PlotMetricVsTime(**args)
            return plot_metric_vs_time(videos, a.metric_field)
        if name == "play_video":
            a = PlayVideo(**args)
            return play_video(videos, a.selector)
        if name == "compute_stats_json":
            a = ComputeStatsJson(**args)
            return compute_stats_json(videos, a.field)
    except ValidationError as e:
        return {"error": f"Invalid arguments for {name}: {e.errors(include_url=False)}"}
    return {"error": f"Unknown tool: {name}"}
