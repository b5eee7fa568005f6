"""Function-calling loop for the CSV and YouTube tool modes.

Each round posts the whole conversation with the tool declarations. The model
either answers (turn done) or requests tool calls, which run locally and are
fed back as ``tool`` messages. The loop is bounded by ``max_rounds``.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .adapters.llm import CSV_TOOLS, YOUTUBE_TOOLS, ChatBackend
from .config import DEFAULT_MAX_TOOL_ROUNDS
from .models import (
    ChatMessage,
    EngagementChart,
    GeneratedImage,
    MetricVsTimeChart,
    PlayVideoCard,
    ToolCallRecord,
    ToolError,
    classify_tool_result,
)
from .observability.timing import TimingCollector
from .prompts import (
    IMAGE_NOTE,
    VIDEO_CARD_NOTE,
    channel_context_header,
    csv_context_header,
    history_messages,
    system_message,
)
from .tools.csv_tools import execute_csv_tool
from .tools.tabular import Row
from .tools.youtube_tools import execute_youtube_tool

logger = logging.getLogger(__name__)

ToolExecutor = Callable[[str, Dict[str, Any]], Awaitable[Any]]
Chart = Any  # one of the chart payload models


@dataclass(frozen=True)
class TurnResult:
    text: str
    charts: Tuple[Chart, ...] = ()
    tool_calls: Tuple[ToolCallRecord, ...] = ()
    rounds: int = 0

    def charts_wire(self) -> List[dict]:
        return [c.to_wire() for c in self.charts]


def parse_arguments(raw: Any) -> Dict[str, Any]:
    """Decode a tool call's JSON arguments; anything malformed is ``{}``."""
    if isinstance(raw, dict):
        return raw
    try:
        args = json.loads(raw or "{}")
    except (json.JSONDecodeError, TypeError):
        logger.debug(f"Malformed tool arguments treated as empty: {str(raw)[:80]!r}")
        return {}
    return args if isinstance(args, dict) else {}


def payload_for_model(result: Any) -> Any:
    """What the model sees of a tool result.

    Content already shown to the user is replaced by a short note so the model
    neither repeats it nor pays for it in context.
    """
    parsed = classify_tool_result(result)
    if isinstance(parsed, GeneratedImage):
        if not parsed.image_data:
            return result
        return {**result, "imageData": "[displayed above]", "_note": IMAGE_NOTE}
    if isinstance(parsed, PlayVideoCard):
        return {**result, "_note": VIDEO_CARD_NOTE}
    if isinstance(parsed, (EngagementChart, MetricVsTimeChart, ToolError)) or parsed is None:
        return result
    raise TypeError(f"Unhandled tool result variant: {type(parsed).__name__}")


def build_messages(system_prompt: str, history: Sequence[ChatMessage], message: str, context_header: str) -> List[dict]:
    return [
        system_message(system_prompt, message, history),
        *history_messages(history),
        {"role": "user", "content": context_header + message},
    ]


async def run_tool_loop(
    backend: ChatBackend,
    messages: List[dict],
    tools: List[dict],
    execute: ToolExecutor,
    max_rounds: int = DEFAULT_MAX_TOOL_ROUNDS,
    timing: Optional[TimingCollector] = None,
) -> TurnResult:
    """Drive model rounds until an answer without tool calls or ``max_rounds``.

    Tool calls within one round run concurrently; all of them finish before
    the next round. Errors from the backend or the image delegate propagate once
    every sibling call in the round has settled.
    """
    conversation = list(messages)
    charts: List[Chart] = []
    records: List[ToolCallRecord] = []

    for round_num in range(max_rounds):
        rnd = timing.start_round(round_num) if timing else None
        logger.debug(f"Round {round_num} start; messages so far={len(conversation)}")
        if timing:
            with timing.llm_call(rnd, model=getattr(backend, "model", "")) as call:
                response = await backend.complete(conversation, tools)
                call.set_usage(response.get("usage"))
                call.model = response.get("model") or call.model
        else:
            response = await backend.complete(conversation, tools)

        choices = response.get("choices") or []
        message = (choices[0].get("message") if choices else None) or {}
        if not message:
            logger.info(f"No choices returned by model in round {round_num}; ending turn")
            return TurnResult("", tuple(charts), tuple(records), round_num + 1)

        tool_calls = message.get("tool_calls") or []
        if not tool_calls:
            logger.info(f"Turn finished after {round_num + 1} round(s), {len(records)} tool call(s)")
            return TurnResult(message.get("content") or "", tuple(charts), tuple(records), round_num + 1)

        conversation.append({"role": "assistant", "content": message.get("content"), "tool_calls": tool_calls})
        calls = []
        for tc in tool_calls:
            fn = tc.get("function") or {}
            calls.append((tc.get("id"), fn.get("name"), parse_arguments(fn.get("arguments"))))
        logger.info(f"Round {round_num}: executing {', '.join(str(name) for _, name, _ in calls)}")

        async def run_one(name: str, args: dict) -> Any:
            if timing:
                with timing.tool_execution(rnd, name):
                    return await execute(name, args)
            return await execute(name, args)

        results = await asyncio.gather(*(run_one(name, args) for _, name, args in calls), return_exceptions=True)
        for (_, name, _), result in zip(calls, results):
            if isinstance(result, BaseException):
                logger.error(f"Tool {name} failed: {result}")
                raise result

        for (call_id, name, args), result in zip(calls, results):
            records.append(ToolCallRecord(name=name, args=args, result=result))
            parsed = classify_tool_result(result)
            if parsed is not None and not isinstance(parsed, ToolError):
                charts.append(parsed)
            conversation.append({
                "role": "tool",
                "tool_call_id": call_id,
                "content": json.dumps(payload_for_model(result), default=str),
            })

    logger.warning(f"Tool loop hit the {max_rounds}-round limit without a final answer")
    return TurnResult("", tuple(charts), tuple(records), max_rounds)


async def chat_with_csv_tools(
    backend: ChatBackend,
    system_prompt: str,
    history: Sequence[ChatMessage],
    message: str,
    columns: Sequence[str],
    rows: Sequence[Row],
    max_rounds: int = DEFAULT_MAX_TOOL_ROUNDS,
    timing: Optional[TimingCollector] = None,
) -> TurnResult:
    messages = build_messages(system_prompt, history, message, csv_context_header(columns))

    async def execute(name: str, args: dict) -> Any:
        return execute_csv_tool(name, args, rows)

    return await run_tool_loop(backend, messages, CSV_TOOLS, execute, max_rounds, timing)


async def chat_with_youtube_tools(
    backend: ChatBackend,
    system_prompt: str,
    history: Sequence[ChatMessage],
    message: str,
    videos: List[dict],
    anchor_image: Optional[str] = None,
    max_rounds: int = DEFAULT_MAX_TOOL_ROUNDS,
    timing: Optional[TimingCollector] = None,
) -> TurnResult:
    # Attached images are not inlined here; the anchor reaches generateImage directly.
    messages = build_messages(system_prompt, history, message, channel_context_header(videos))

    async def execute(name: str, args: dict) -> Any:
        return await execute_youtube_tool(name, args, videos, anchor_image, backend.generate_image)

    return await run_tool_loop(backend, messages, YOUTUBE_TOOLS, execute, max_rounds, timing)
