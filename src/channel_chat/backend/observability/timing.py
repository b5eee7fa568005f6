"""
Per-turn timing for the chat orchestrators.

Records where a turn spends its time:
- Prompt assembly
- Completion calls (one per round)
- Tool executions (concurrent within a round)

Recent records are kept in memory for ``/debug/timing``. With TIMING_MODE=true
they are also appended to a JSONL file.
"""

import json
import logging
import os
import time
import uuid
from collections import deque
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

TIMING_MODE = os.getenv("TIMING_MODE", "false").lower() == "true"
TIMING_OUTPUT_FILE = os.getenv("TIMING_OUTPUT_FILE", "./logs/chat_timing.jsonl")
TIMING_VERBOSE = os.getenv("TIMING_VERBOSE", "false").lower() == "true"

MAX_RECENT_RECORDS = 100
_recent_records: Deque[Dict[str, Any]] = deque(maxlen=MAX_RECENT_RECORDS)


@dataclass
class ToolTiming:
    name: str
    start: float
    end: float
    duration: float
    error: bool = False


@dataclass
class LLMTiming:
    start: float
    end: float
    duration: float
    model: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0


@dataclass
class RoundTiming:
    """One model response plus the tools it requested."""
    round: int
    llm_call: Optional[LLMTiming] = None
    tools: List[ToolTiming] = field(default_factory=list)


@dataclass
class PhaseTiming:
    start: float
    end: float
    duration: float


@dataclass
class TimingRecord:
    request_id: str
    timestamp: str
    user_prompt: str
    mode: str = ""
    prompt_assembly: Optional[PhaseTiming] = None
    rounds: List[RoundTiming] = field(default_factory=list)
    total_duration: float = 0.0
    summary: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "timestamp": self.timestamp,
            "user_prompt": self.user_prompt,
            "mode": self.mode,
            "timings": {
                "prompt_assembly": asdict(self.prompt_assembly) if self.prompt_assembly else None,
                "rounds": [asdict(r) for r in self.rounds],
                "total_duration": self.total_duration,
            },
            "summary": self.summary,
        }

    def compute_summary(self):
        llm_duration = sum(r.llm_call.duration for r in self.rounds if r.llm_call)
        # Tools in a round overlap, so the round's tool time is its longest tool.
        tool_duration = sum(max((t.duration for t in r.tools), default=0.0) for r in self.rounds)
        total_tokens = sum(
            r.llm_call.prompt_tokens + r.llm_call.completion_tokens for r in self.rounds if r.llm_call
        )
        overhead = self.total_duration - llm_duration - tool_duration

        def pct(x: float) -> float:
            return round(100 * x / self.total_duration, 1) if self.total_duration > 0 else 0

        self.summary = {
            "total_duration": round(self.total_duration, 3),
            "llm_duration": round(llm_duration, 3),
            "llm_percentage": pct(llm_duration),
            "tool_duration": round(tool_duration, 3),
            "tool_percentage": pct(tool_duration),
            "overhead_duration": round(overhead, 3),
            "overhead_percentage": pct(overhead),
            "num_rounds": len(self.rounds),
            "num_tools_called": sum(len(r.tools) for r in self.rounds),
            "total_tokens": total_tokens,
        }


class _LLMCall:
    def __init__(self, model: str):
        self.model = model
        self.prompt_tokens = 0
        self.completion_tokens = 0

    def set_usage(self, usage: Optional[Dict[str, Any]]):
        usage = usage or {}
        self.prompt_tokens = usage.get("prompt_tokens") or 0
        self.completion_tokens = usage.get("completion_tokens") or 0


class TimingCollector:
    """
    Collects timing for one chat turn.

    Usage:
        timing = TimingCollector(user_prompt="plot views over time", mode="youtube_tools")
        with timing.phase("prompt_assembly"):
            ...
        rnd = timing.start_round(0)
        with timing.llm_call(rnd, model="gpt-4o-mini") as call:
            response = ...
            call.set_usage(response.get("usage"))
        with timing.tool_execution(rnd, "play_video"):
            ...
        timing.finalize()
    """

    def __init__(self, user_prompt: str, mode: str = ""):
        self.request_id = str(uuid.uuid4())
        self.start_time = time.perf_counter()
        self.record = TimingRecord(
            request_id=self.request_id,
            timestamp=datetime.now(timezone.utc).isoformat(),
            user_prompt=(user_prompt or "")[:100],
            mode=mode,
        )

    def _elapsed(self) -> float:
        return time.perf_counter() - self.start_time

    @contextmanager
    def phase(self, phase_name: str):
        start = self._elapsed()
        try:
            yield
        finally:
            end = self._elapsed()
            timing = PhaseTiming(start=start, end=end, duration=end - start)
            if phase_name == "prompt_assembly":
                self.record.prompt_assembly = timing

    def start_round(self, round_num: int) -> RoundTiming:
        rnd = RoundTiming(round=round_num)
        self.record.rounds.append(rnd)
        return rnd

    @contextmanager
    def llm_call(self, rnd: RoundTiming, model: str = ""):
        start = self._elapsed()
        call = _LLMCall(model)
        try:
            yield call
        finally:
            end = self._elapsed()
            rnd.llm_call = LLMTiming(
                start=start,
                end=end,
                duration=end - start,
                model=call.model,
                prompt_tokens=call.prompt_tokens,
                completion_tokens=call.completion_tokens,
            )

    @contextmanager
    def tool_execution(self, rnd: RoundTiming, tool_name: str):
        start = self._elapsed()
        failed = False
        try:
            yield
        except Exception:
            failed = True
            raise
        finally:
            end = self._elapsed()
            rnd.tools.append(ToolTiming(name=tool_name, start=start, end=end, duration=end - start, error=failed))

    def finalize(self):
        self.record.total_duration = self._elapsed()
        self.record.compute_summary()
        record_dict = self.record.to_dict()
        _recent_records.append(record_dict)

        if TIMING_MODE:
            _write_timing_record(record_dict)
            if TIMING_VERBOSE:
                s = self.record.summary
                logger.info(
                    f"[TIMING] {self.request_id[:8]} {self.record.mode}: {s['total_duration']:.3f}s "
                    f"llm={s['llm_duration']:.3f}s ({s['llm_percentage']:.1f}%) "
                    f"tools={s['tool_duration']:.3f}s ({s['tool_percentage']:.1f}%) rounds={s['num_rounds']}"
                )


def _write_timing_record(record: Dict[str, Any]):
    try:
        output_path = Path(TIMING_OUTPUT_FILE)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record) + "\n")
    except OSError as e:
        logger.warning(f"[TIMING] Error writing timing record: {e}")


def get_recent_records(n: Optional[int] = None) -> List[Dict[str, Any]]:
    if n is None:
        return list(_recent_records)
    if n <= 0:
        return []
    return list(_recent_records)[-n:]


def clear_records():
    _recent_records.clear()


def _percentile(data: List[float], p: int) -> float:
    if not data:
        return 0.0
    ordered = sorted(data)
    k = (len(ordered) - 1) * (p / 100)
    f = int(k)
    c = min(f + 1, len(ordered) - 1)
    return ordered[f] + (k - f) * (ordered[c] - ordered[f])


def get_timing_stats() -> Dict[str, Any]:
    """Aggregate statistics over the recent records."""
    if not _recent_records:
        return {"count": 0, "message": "No timing data available"}

    records = list(_recent_records)
    totals = [r["summary"]["total_duration"] for r in records]
    llm = [r["summary"]["llm_duration"] for r in records]
    tools = [r["summary"]["tool_duration"] for r in records]

    by_mode: Dict[str, int] = {}
    for r in records:
        by_mode[r["mode"]] = by_mode.get(r["mode"], 0) + 1

    return {
        "count": len(records),
        "timing_mode_enabled": TIMING_MODE,
        "by_mode": by_mode,
        "total_duration": {
            "avg": round(sum(totals) / len(totals), 3),
            "p50": round(_percentile(totals, 50), 3),
            "p95": round(_percentile(totals, 95), 3),
            "min": round(min(totals), 3),
            "max": round(max(totals), 3),
        },
        "llm_duration": {
            "avg": round(sum(llm) / len(llm), 3),
            "p50": round(_percentile(llm, 50), 3),
            "p95": round(_percentile(llm, 95), 3),
        },
        "tool_duration": {
            "avg": round(sum(tools) / len(tools), 3),
            "p50": round(_percentile(tools, 50), 3),
            "p95": round(_percentile(tools, 95), 3),
        },
        "recent_requests": [
            {
                "request_id": r["request_id"][:8],
                "timestamp": r["timestamp"],
                "mode": r["mode"],
                "user_prompt": r["user_prompt"],
                "total_duration": r["summary"]["total_duration"],
                "num_rounds": r["summary"]["num_rounds"],
                "num_tools": r["summary"]["num_tools_called"],
            }
            for r in records[-20:]
        ],
    }
