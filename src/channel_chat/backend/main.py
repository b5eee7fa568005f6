import os
import json
from typing import Optional, Tuple
from dotenv import load_dotenv

# Load environment variables from .env file at the repository root
load_dotenv(dotenv_path=os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(os.path.dirname(__file__)))), '.env'))

from fastapi import Body, Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse

from .adapters.llm import ChatBackend, CompletionError, build_backend
from .agent import TurnOutcome, run_turn, stream_turn
from .config import Settings
from .models import (
    ChatRequest,
    CompletionRequest,
    ComputeColumnStats,
    ComputeStatsJson,
    CreateSession,
    GenerateImage,
    GetTopTweets,
    GetValueCounts,
    ImageRequest,
    PlayVideo,
    PlotMetricVsTime,
    RenameSession,
    SaveMessage,
    persisted_message,
)
from .observability.timing import get_recent_records, get_timing_stats
from .prompts import display_content
from .storage.data import ChannelRecord, CsvRecord, DataMemory
from .storage.sessions import SessionStore
from .streaming import CancellationToken
from .tools.csv_tools import execute_csv_tool
from .tools.youtube_tools import execute_youtube_tool

import logging

SETTINGS = Settings.from_env()
DEBUG_ENABLED = SETTINGS.debug

log_level = logging.DEBUG if DEBUG_ENABLED else logging.INFO
logging.basicConfig(
    level=log_level,
    format="%(levelname)s: %(asctime)s | %(name)s | %(message)s",
    force=True  # uvicorn may already have configured logging
)

if DEBUG_ENABLED:
    logging.getLogger().setLevel(logging.DEBUG)
    for logger_name in ["uvicorn", "uvicorn.access", "uvicorn.error", __name__]:
        logging.getLogger(logger_name).setLevel(logging.DEBUG)
    # Third-party clients stay quiet even in debug mode
    for noisy_logger in ["openai", "httpx", "httpcore", "python_multipart.multipart"]:
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def _dbg(msg: str):
    logger.debug(msg)


app = FastAPI(title="Channel Chat")

if DEBUG_ENABLED:
    logger.warning("DEBUG MODE ENABLED - verbose logging active (CHANNEL_CHAT_DEBUG=1)")
else:
    logger.info("Debug mode disabled. Set CHANNEL_CHAT_DEBUG=1 to enable verbose logging.")

# In-memory stores (MVP). Replace with a database keyed by user/session.
DATA_MEMORY = DataMemory(numeric_threshold=SETTINGS.numeric_ratio_threshold)
SESSIONS = SessionStore()
_BACKEND: Optional[ChatBackend] = None


def get_settings() -> Settings:
    return SETTINGS


def get_chat_backend() -> ChatBackend:
    global _BACKEND
    if _BACKEND is None:
        _BACKEND = build_backend(SETTINGS)
    return _BACKEND


def _sse(payload) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


def _error_message(e: Exception) -> str:
    return e.message if isinstance(e, CompletionError) else str(e.args[0] if isinstance(e, KeyError) and e.args else e)


# ── Files ────────────────────────────────────────────────────────────────────

@app.post("/upload_file")
async def upload_file(file: UploadFile = File(...)):
    raw = await file.read()
    try:
        meta = DATA_MEMORY.add_file(file.filename or "upload", raw)
        return {"ok": True, "file": meta}
    except ValueError as e:
        logger.info(f"Upload rejected for {file.filename!r}: {e}")
        return {"ok": False, "error": str(e)}


@app.post("/delete_file")
def delete_file(file_id: str = Query(...)):
    removed = DATA_MEMORY.remove_file(file_id)
    return {"ok": removed, "file_id": file_id}


@app.post("/tools/data_list_files")
def t_data_list_files():
    return {"files": DATA_MEMORY.list_files()}


# ── Direct tool calls ────────────────────────────────────────────────────────

def _csv_tool(name: str, args, file_id: str) -> dict:
    try:
        rec = DATA_MEMORY.get_csv(file_id)
    except KeyError as e:
        return {"error": _error_message(e)}
    return execute_csv_tool(name, args.model_dump(exclude_none=True), rec.rows)


async def _youtube_tool(name: str, args, file_id: Optional[str], backend: ChatBackend) -> dict:
    try:
        rec = DATA_MEMORY.get_channel(file_id)
    except KeyError as e:
        return {"error": _error_message(e)}
    videos = rec.videos if rec else []
    try:
        return await execute_youtube_tool(name, args.model_dump(), videos, None, backend.generate_image)
    except CompletionError as e:
        return {"error": e.message}


@app.post("/tools/compute_column_stats")
def t_compute_column_stats(args: ComputeColumnStats, file_id: str = Query(...)):
    return _csv_tool("compute_column_stats", args, file_id)


@app.post("/tools/get_value_counts")
def t_get_value_counts(args: GetValueCounts, file_id: str = Query(...)):
    return _csv_tool("get_value_counts", args, file_id)


@app.post("/tools/get_top_tweets")
def t_get_top_tweets(args: GetTopTweets, file_id: str = Query(...)):
    return _csv_tool("get_top_tweets", args, file_id)


@app.post("/tools/plot_metric_vs_time")
async def t_plot_metric_vs_time(args: PlotMetricVsTime, file_id: Optional[str] = None,
                                backend: ChatBackend = Depends(get_chat_backend)):
    return await _youtube_tool("plot_metric_vs_time", args, file_id, backend)


@app.post("/tools/play_video")
async def t_play_video(args: PlayVideo, file_id: Optional[str] = None,
                       backend: ChatBackend = Depends(get_chat_backend)):
    return await _youtube_tool("play_video", args, file_id, backend)


@app.post("/tools/compute_stats_json")
async def t_compute_stats_json(args: ComputeStatsJson, file_id: Optional[str] = None,
                               backend: ChatBackend = Depends(get_chat_backend)):
    return await _youtube_tool("compute_stats_json", args, file_id, backend)


@app.post("/tools/generateImage")
async def t_generate_image(args: GenerateImage, file_id: Optional[str] = None,
                           backend: ChatBackend = Depends(get_chat_backend)):
    return await _youtube_tool("generateImage", args, file_id, backend)


# ── Chat turn ────────────────────────────────────────────────────────────────

def _datasets(req: ChatRequest) -> Tuple[Optional[CsvRecord], Optional[ChannelRecord]]:
    return DATA_MEMORY.get_csv(req.csv_file_id), DATA_MEMORY.get_channel(req.channel_file_id)


def _persist_turn(req: ChatRequest, user_content: str, outcome: Optional[TurnOutcome], error_text: Optional[str] = None):
    """Append the user message and the answer to the session, if one was given."""
    if not req.session_id:
        return
    try:
        SESSIONS.append(req.session_id, persisted_message("user", user_content))
        if outcome is not None:
            SESSIONS.append(req.session_id, persisted_message(
                "model", outcome.text, list(outcome.charts), list(outcome.tool_calls),
            ))
        else:
            SESSIONS.append(req.session_id, persisted_message("model", error_text or ""))
    except KeyError as e:
        logger.warning(f"Turn not persisted: {_error_message(e)}")


@app.post("/agent/chat")
async def chat(req: ChatRequest, settings: Settings = Depends(get_settings),
               backend: ChatBackend = Depends(get_chat_backend)):
    """Run one chat turn and return the final answer with charts and tool calls."""
    _dbg(f"/agent/chat called; history={len(req.history)} images={len(req.images)}")
    user_content = display_content(req.message, len(req.images), channel_loaded=bool(req.channel_file_id))
    try:
        csv, channel = _datasets(req)
        outcome = await run_turn(req, settings, backend, csv, channel)
    except (CompletionError, KeyError) as e:
        msg = _error_message(e)
        logger.error(f"Chat turn failed: {msg}")
        _persist_turn(req, user_content, None, f"Error: {msg}")
        return {"ok": False, "error": msg, "text": f"Error: {msg}"}
    _persist_turn(req, outcome.display_content, outcome)
    _dbg(f"Returning mode={outcome.mode} charts={len(outcome.charts)} tool_calls={len(outcome.tool_calls)}")
    return {"ok": True, **outcome.to_wire()}


@app.post("/agent/chat/stream")
async def agent_chat_stream(request: Request, req: ChatRequest = Body(...),
                            settings: Settings = Depends(get_settings),
                            backend: ChatBackend = Depends(get_chat_backend)):
    """Stream a chat turn using Server-Sent Events."""
    _dbg("/agent/chat/stream called")
    token = CancellationToken()
    user_content = display_content(req.message, len(req.images), channel_loaded=bool(req.channel_file_id))

    async def event_generator():
        try:
            csv, channel = _datasets(req)
            async for event in stream_turn(req, settings, backend, csv, channel, token):
                if await request.is_disconnected():
                    logger.info("Client disconnected; cancelling stream")
                    token.cancel()
                    break
                if event["type"] == "final":
                    outcome = event["outcome"]
                    _persist_turn(req, outcome.display_content, outcome)
                    yield _sse({"type": "final", **outcome.to_wire()})
                else:
                    yield _sse(event)
            yield _sse({"type": "complete"})
        except (CompletionError, KeyError) as e:
            msg = _error_message(e)
            logger.error(f"Streaming turn failed: {msg}")
            _persist_turn(req, user_content, None, f"Error: {msg}")
            yield _sse({"type": "error", "error": msg, "text": f"Error: {msg}"})

    return StreamingResponse(event_generator(), media_type="text/event-stream")


# ── Completion proxy ─────────────────────────────────────────────────────────

@app.post("/api/openai/chat")
async def openai_chat(req: CompletionRequest, backend: ChatBackend = Depends(get_chat_backend)):
    if not req.stream:
        try:
            return await backend.complete(req.messages, req.tools)
        except CompletionError as e:
            logger.error(f"[OpenAI proxy] {e.message}")
            return JSONResponse(status_code=500, content={"error": e.message})

    async def frames():
        try:
            async for event in backend.stream(req.messages):
                if event.get("type") == "text":
                    yield _sse({"type": "text", "text": event["text"]})
        except CompletionError as e:
            logger.error(f"[OpenAI proxy] {e.message}")
            yield _sse({"type": "error", "error": e.message})
        yield "data: [DONE]\n\n"

    return StreamingResponse(frames(), media_type="text/event-stream", headers={"Cache-Control": "no-cache"})


@app.post("/api/openai/image")
async def openai_image(req: ImageRequest, backend: ChatBackend = Depends(get_chat_backend)):
    try:
        return await backend.generate_image(req.prompt, req.anchor_image)
    except CompletionError as e:
        logger.error(f"[OpenAI image] {e.message}")
        return JSONResponse(status_code=500, content={"error": e.message})


# ── Sessions ─────────────────────────────────────────────────────────────────

@app.get("/api/sessions")
def list_sessions(username: str = Query(...)):
    return SESSIONS.list(username)


@app.post("/api/sessions")
def create_session(args: CreateSession):
    return {"id": SESSIONS.create(args.username, args.agent, args.title)}


@app.delete("/api/sessions/{session_id}")
def delete_session(session_id: str):
    SESSIONS.delete(session_id)
    return {"ok": True}


@app.patch("/api/sessions/{session_id}/title")
def rename_session(session_id: str, args: RenameSession):
    try:
        SESSIONS.rename(session_id, args.title)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=_error_message(e))
    return {"ok": True}


@app.post("/api/messages")
def save_message(args: SaveMessage):
    msg = persisted_message(args.role, args.content, args.charts, args.tool_calls)
    try:
        SESSIONS.append(args.session_id, msg)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=_error_message(e))
    return {"ok": True}


@app.get("/api/messages")
def get_messages(session_id: str = Query(...)):
    try:
        return {"messages": SESSIONS.messages(session_id)}
    except KeyError as e:
        raise HTTPException(status_code=404, detail=_error_message(e))


# ── Debug ────────────────────────────────────────────────────────────────────

@app.get("/debug/timing")
def debug_timing(n: Optional[int] = None):
    """Timing statistics and recent per-turn records (max 100)."""
    records = get_recent_records(n)
    return {"stats": get_timing_stats(), "records": records, "count": len(records)}


def run():
    import uvicorn

    uvicorn.run(
        "channel_chat.backend.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
    )
