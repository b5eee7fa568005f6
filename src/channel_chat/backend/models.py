from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    ValidationError,
)
import logging

logger = logging.getLogger(__name__)


# CSV tools
class ComputeColumnStats(BaseModel):
    column: str


class GetValueCounts(BaseModel):
    column: str
    top_n: Optional[int] = 10


class GetTopTweets(BaseModel):
    sort_column: str
    n: Optional[int] = 10
    ascending: Optional[bool] = False


# YouTube tools
class GenerateImage(BaseModel):
    prompt: str
    use_anchor: bool = False


class PlotMetricVsTime(BaseModel):
    metric_field: str


class PlayVideo(BaseModel):
    selector: str


class ComputeStatsJson(BaseModel):
    field: str


# Channel data (shape produced by the channel download pipeline)
class Video(BaseModel):
    model_config = ConfigDict(extra="allow")

    video_id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    duration: Optional[str] = None  # ISO-8601, e.g. PT4M13S
    published_at: Optional[str] = None
    view_count: Optional[int] = None
    like_count: Optional[int] = None
    comment_count: Optional[int] = None
    thumbnail_url: Optional[str] = None
    video_url: Optional[str] = None
    transcript: Optional[str] = None


class ChannelData(BaseModel):
    model_config = ConfigDict(extra="allow")

    channel_id: Optional[str] = None
    channel_url: Optional[str] = None
    videos: List[Video]
    downloaded_at: Optional[str] = None

    def video_dicts(self) -> List[dict]:
        """Videos as plain dicts holding only the fields present in the file."""
        return [v.model_dump(exclude_unset=True) for v in self.videos]


# Chart payloads. `_chartType` is the wire discriminator the renderer switches on.
class _Chart(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


class EngagementChart(_Chart):
    chart_type: Literal["engagement"] = Field("engagement", alias="_chartType")
    data: List[Dict[str, Any]]
    metric_column: str = Field(alias="metricColumn")


class MetricPoint(BaseModel):
    date: str
    value: Union[int, float]


class MetricVsTimeChart(_Chart):
    chart_type: Literal["metric_vs_time"] = Field("metric_vs_time", alias="_chartType")
    data: List[MetricPoint]
    metric_field: str = Field(alias="metricField")


class PlayVideoCard(_Chart):
    chart_type: Literal["play_video"] = Field("play_video", alias="_chartType")
    title: str
    thumbnail_url: str
    video_url: str
    video_id: Optional[str] = None


class GeneratedImage(_Chart):
    chart_type: Literal["generated_image"] = Field("generated_image", alias="_chartType")
    image_data: Optional[str] = Field(None, alias="imageData")  # base64; never persisted
    mime_type: str = Field("image/png", alias="mimeType")
    prompt: Optional[str] = None


def _chart_tag(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("_chartType", value.get("chart_type"))
    return getattr(value, "chart_type", None)


ChartPayload = Annotated[
    Union[
        Annotated[EngagementChart, Tag("engagement")],
        Annotated[MetricVsTimeChart, Tag("metric_vs_time")],
        Annotated[PlayVideoCard, Tag("play_video")],
        Annotated[GeneratedImage, Tag("generated_image")],
    ],
    Discriminator(_chart_tag),
]

CHART_ADAPTER: TypeAdapter = TypeAdapter(ChartPayload)


class ToolError(BaseModel):
    error: str


def classify_tool_result(result: Any) -> Union[EngagementChart, MetricVsTimeChart, PlayVideoCard, GeneratedImage, ToolError, None]:
    """Return the chart variant or ToolError a raw tool result represents, if any."""
    if not isinstance(result, dict):
        return None
    if result.get("_chartType"):
        try:
            return CHART_ADAPTER.validate_python(result)
        except ValidationError as e:
            logger.warning(f"Unrecognized chart payload {result.get('_chartType')!r}: {e}")
            return None
    if isinstance(result.get("error"), str):
        return ToolError(error=result["error"])
    return None


class ToolCallRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: Optional[str]
    args: Dict[str, Any] = Field(default_factory=dict)
    result: Any = None


# Chat
class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "model", "system"]
    content: str = ""


class ImagePart(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    data: str  # base64
    mime_type: str = Field("image/png", alias="mimeType")
    name: Optional[str] = None


class ChatRequest(BaseModel):
    message: str = ""
    history: List[ChatMessage] = Field(default_factory=list)
    csv_file_id: Optional[str] = None
    csv_attached: bool = False
    channel_file_id: Optional[str] = None
    images: List[ImagePart] = Field(default_factory=list)
    session_id: Optional[str] = None


# Completion proxy (OpenAI-compatible contract)
class CompletionRequest(BaseModel):
    messages: List[Dict[str, Any]]
    stream: bool = False
    tools: Optional[List[Dict[str, Any]]] = None
    tool_choice: Optional[Union[str, Dict[str, Any]]] = None


class ImageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt: Optional[str] = None
    anchor_image: Optional[str] = Field(None, alias="anchorImage")


# Sessions
class CreateSession(BaseModel):
    username: str
    agent: Optional[str] = None
    title: Optional[str] = None


class RenameSession(BaseModel):
    title: str


class PersistedMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    role: str
    content: str
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    charts: Optional[List[ChartPayload]] = None
    tool_calls: Optional[List[ToolCallRecord]] = Field(None, alias="toolCalls")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class SaveMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str
    role: str
    content: str
    charts: Optional[List[ChartPayload]] = None
    tool_calls: Optional[List[ToolCallRecord]] = Field(None, alias="toolCalls")


def _without_image_data(value: Any) -> Any:
    if isinstance(value, GeneratedImage):
        return value.model_copy(update={"image_data": None})
    if isinstance(value, dict) and value.get("_chartType") == "generated_image":
        return {k: v for k, v in value.items() if k != "imageData"}
    return value


def persisted_message(
    role: str,
    content: str,
    charts: Optional[List[Any]] = None,
    tool_calls: Optional[List[ToolCallRecord]] = None,
) -> PersistedMessage:
    """Build the stored form of a message; base64 image payloads are dropped."""
    kept_charts = [_without_image_data(c) for c in charts or []] or None
    kept_calls = [
        tc.model_copy(update={"result": _without_image_data(tc.result)}) for tc in tool_calls or []
    ] or None
    return PersistedMessage(role=role, content=content, charts=kept_charts, tool_calls=kept_calls)
