"""Per-turn dispatch: pick a mode, build the model prompt, run the orchestrator."""

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from .adapters.llm import ChatBackend
from .config import Settings
from .models import ChatRequest, ToolCallRecord
from .observability.timing import TimingCollector
from .orchestrator import TurnResult, chat_with_csv_tools, chat_with_youtube_tools
from .prompts import CsvContext, build_model_prompt, display_content
from .routing import ModeDecision, TurnContext, select_mode
from .storage.data import ChannelRecord, CsvRecord
from .streaming import CancellationToken, stream_chat

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TurnPlan:
    decision: ModeDecision
    model_prompt: str
    display_content: str


@dataclass(frozen=True)
class TurnOutcome:
    mode: str
    display_content: str
    text: str
    charts: Tuple[Any, ...] = ()
    tool_calls: Tuple[ToolCallRecord, ...] = ()
    parts: Optional[List[dict]] = None
    rounds: int = 0

    def to_wire(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "text": self.text,
            "charts": [c.to_wire() for c in self.charts],
            "tool_calls": [tc.model_dump() for tc in self.tool_calls],
            "parts": self.parts,
        }


def plan_turn(req: ChatRequest, csv: Optional[CsvRecord], channel: Optional[ChannelRecord]) -> TurnPlan:
    videos = channel.videos if channel else []
    csv_attached = bool(req.csv_attached and csv is not None)
    decision = select_mode(TurnContext(
        text=req.message,
        csv_loaded=csv is not None,
        csv_attached=csv_attached,
        channel_loaded=channel is not None,
        images_attached=bool(req.images),
    ))
    needs_python = csv_attached and decision.python_only
    csv_ctx = None
    if csv is not None:
        csv_ctx = CsvContext(
            name=csv.name,
            columns=csv.columns,
            row_count=len(csv.rows),
            summary=csv.summary,
            slim_csv=csv.slim_csv,
            base64=csv.base64 if needs_python else "",
        )
    prompt = build_model_prompt(
        req.message,
        csv=csv_ctx,
        csv_attached=csv_attached,
        needs_python=needs_python,
        videos=videos,
        image_count=len(req.images),
    )
    display = display_content(req.message, len(req.images), channel_loaded=channel is not None)
    logger.info(
        f"Turn mode={decision.mode} code_execution={decision.use_code_execution} "
        f"csv={'attached' if csv_attached else 'loaded' if csv else 'none'} "
        f"videos={len(videos)} images={len(req.images)}"
    )
    return TurnPlan(decision, prompt, display)


def _final_text(text_parts: List[str], parts: Optional[List[dict]]) -> str:
    """Streamed text, or the text parts of a structured answer when one arrived."""
    if parts is not None:
        return "\n".join(p.get("text", "") for p in parts if p.get("type") == "text")
    return "".join(text_parts)


async def _run_tools(
    plan: TurnPlan,
    req: ChatRequest,
    settings: Settings,
    backend: ChatBackend,
    csv: Optional[CsvRecord],
    channel: Optional[ChannelRecord],
    timing: TimingCollector,
) -> TurnResult:
    if plan.decision.mode == "youtube_tools":
        anchor = req.images[0].data if req.images else None
        return await chat_with_youtube_tools(
            backend, settings.system_prompt, req.history, plan.model_prompt,
            channel.videos if channel else [], anchor, settings.max_tool_rounds, timing,
        )
    return await chat_with_csv_tools(
        backend, settings.system_prompt, req.history, plan.model_prompt,
        csv.columns, csv.rows, settings.max_tool_rounds, timing,
    )


async def run_turn(
    req: ChatRequest,
    settings: Settings,
    backend: ChatBackend,
    csv: Optional[CsvRecord] = None,
    channel: Optional[ChannelRecord] = None,
) -> TurnOutcome:
    timing = TimingCollector(req.message)
    with timing.phase("prompt_assembly"):
        plan = plan_turn(req, csv, channel)
    timing.record.mode = plan.decision.mode
    try:
        if plan.decision.mode in ("youtube_tools", "csv_tools"):
            result = await _run_tools(plan, req, settings, backend, csv, channel, timing)
            return TurnOutcome(
                plan.decision.mode, plan.display_content, result.text,
                result.charts, result.tool_calls, rounds=result.rounds,
            )

        text_parts: List[str] = []
        parts = None
        async for event in stream_chat(
            backend, settings.system_prompt, req.history, plan.model_prompt,
            req.images, plan.decision.use_code_execution,
        ):
            if event["type"] == "text":
                text_parts.append(event["text"])
            else:
                parts = event["parts"]
        return TurnOutcome(plan.decision.mode, plan.display_content, _final_text(text_parts, parts), parts=parts)
    finally:
        timing.finalize()


async def stream_turn(
    req: ChatRequest,
    settings: Settings,
    backend: ChatBackend,
    csv: Optional[CsvRecord] = None,
    channel: Optional[ChannelRecord] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> AsyncIterator[Dict[str, Any]]:
    """Event form of a turn: ``mode``, then ``text``/``fullResponse`` or
    ``tool_call`` events, then one ``final`` event with the assembled outcome.
    """
    token = cancel_token or CancellationToken()
    timing = TimingCollector(req.message)
    with timing.phase("prompt_assembly"):
        plan = plan_turn(req, csv, channel)
    timing.record.mode = plan.decision.mode
    try:
        yield {"type": "mode", "mode": plan.decision.mode, "use_code_execution": plan.decision.use_code_execution}

        if plan.decision.mode in ("youtube_tools", "csv_tools"):
            result = await _run_tools(plan, req, settings, backend, csv, channel, timing)
            outcome = TurnOutcome(
                plan.decision.mode, plan.display_content, result.text,
                result.charts, result.tool_calls, rounds=result.rounds,
            )
            for tc in outcome.tool_calls:
                if token.cancelled:
                    return
                yield {"type": "tool_call", "name": tc.name, "args": tc.args}
        else:
            text_parts: List[str] = []
            parts = None
            async for event in stream_chat(
                backend, settings.system_prompt, req.history, plan.model_prompt,
                req.images, plan.decision.use_code_execution, token,
            ):
                if event["type"] == "text":
                    text_parts.append(event["text"])
                else:
                    parts = event["parts"]
                yield event
            outcome = TurnOutcome(plan.decision.mode, plan.display_content, _final_text(text_parts, parts), parts=parts)

        if token.cancelled:
            return
        yield {"type": "final", "outcome": outcome}
    finally:
        timing.finalize()
