"""Tests for the bounded function-calling loop."""

import asyncio
import json

import pytest

from channel_chat.backend.adapters.llm import CSV_TOOLS, YOUTUBE_TOOLS, CompletionError
from channel_chat.backend.models import ChatMessage, PlayVideoCard
from channel_chat.backend.observability.timing import TimingCollector
from channel_chat.backend.orchestrator import (
    chat_with_csv_tools,
    chat_with_youtube_tools,
    parse_arguments,
    payload_for_model,
    run_tool_loop,
)
from channel_chat.backend.prompts import SYSTEM_PREFIX

ROWS = [
    {"views": "10", "lang": "en"},
    {"views": "20", "lang": "en"},
    {"views": "30", "lang": "fr"},
]
COLUMNS = ["views", "lang"]


@pytest.mark.asyncio
async def test_csv_tool_round_then_answer(scripted, tool_call, answer):
    backend = scripted([tool_call(("compute_column_stats", {"column": "views"})), answer("Average is 20")])
    result = await chat_with_csv_tools(backend, "Be brief.", [], "average views?", COLUMNS, ROWS)

    assert result.text == "Average is 20"
    assert result.rounds == 2
    assert result.charts == ()
    assert len(result.tool_calls) == 1
    assert result.tool_calls[0].name == "compute_column_stats"
    assert result.tool_calls[0].result["mean"] == 20

    first = backend.calls[0]
    assert first[0]["role"] == "system"
    assert first[0]["content"].startswith(SYSTEM_PREFIX)
    assert first[-1] == {"role": "user", "content": "[CSV columns: views, lang]\n\naverage views?"}
    assert backend.tools_seen[0] == CSV_TOOLS

    second = backend.calls[1]
    assert second[-2]["role"] == "assistant"
    assert second[-2]["tool_calls"][0]["id"] == "tc0"
    assert second[-1]["role"] == "tool"
    assert second[-1]["tool_call_id"] == "tc0"
    assert json.loads(second[-1]["content"])["mean"] == 20


@pytest.mark.asyncio
async def test_parallel_calls_keep_request_order(scripted, tool_call, answer):
    backend = scripted([
        tool_call(
            ("get_value_counts", {"column": "lang"}),
            ("compute_column_stats", {"column": "views"}),
            ("get_top_tweets", {"sort_column": "views", "n": 1}),
        ),
        answer("done"),
    ])
    result = await chat_with_csv_tools(backend, "", [], "overview", COLUMNS, ROWS)
    assert [tc.name for tc in result.tool_calls] == ["get_value_counts", "compute_column_stats", "get_top_tweets"]
    tool_msgs = [m for m in backend.calls[1] if m["role"] == "tool"]
    assert [m["tool_call_id"] for m in tool_msgs] == ["tc0", "tc1", "tc2"]


@pytest.mark.asyncio
async def test_loop_stops_at_round_limit(scripted, tool_call):
    backend = scripted([tool_call(("compute_column_stats", {"column": "views"}))])
    result = await chat_with_csv_tools(backend, "", [], "loop forever", COLUMNS, ROWS)
    assert result.text == ""
    assert result.rounds == 5
    assert len(backend.calls) == 5
    assert len(result.tool_calls) >= 5


@pytest.mark.asyncio
async def test_round_limit_is_configurable(scripted, tool_call):
    backend = scripted([tool_call(("compute_column_stats", {"column": "views"}))])
    result = await chat_with_csv_tools(backend, "", [], "q", COLUMNS, ROWS, max_rounds=2)
    assert result.rounds == 2
    assert len(backend.calls) == 2


@pytest.mark.asyncio
async def test_malformed_arguments_become_tool_error(scripted, tool_call, answer):
    backend = scripted([tool_call(("compute_column_stats", "{not json")), answer("sorry")])
    result = await chat_with_csv_tools(backend, "", [], "q", COLUMNS, ROWS)
    assert result.text == "sorry"
    assert result.tool_calls[0].args == {}
    assert result.tool_calls[0].result["error"].startswith("Invalid arguments for compute_column_stats")


@pytest.mark.asyncio
async def test_no_choices_ends_turn(scripted):
    backend = scripted([{"choices": []}])
    result = await chat_with_csv_tools(backend, "", [], "q", COLUMNS, ROWS)
    assert result.text == ""
    assert result.rounds == 1
    assert result.tool_calls == ()


@pytest.mark.asyncio
async def test_backend_errors_propagate(scripted):
    backend = scripted(error=CompletionError("boom", 500))
    with pytest.raises(CompletionError):
        await chat_with_csv_tools(backend, "", [], "q", COLUMNS, ROWS)


@pytest.mark.asyncio
async def test_history_is_sent_before_the_new_message(scripted, answer):
    backend = scripted([answer("ok")])
    history = [ChatMessage(role="user", content="hi"), ChatMessage(role="model", content="hello")]
    await chat_with_csv_tools(backend, "", history, "q", COLUMNS, ROWS)
    roles = [m["role"] for m in backend.calls[0]]
    assert roles == ["system", "user", "assistant", "user"]


@pytest.mark.asyncio
async def test_video_card_is_collected_as_chart(scripted, tool_call, answer, videos):
    backend = scripted([tool_call(("play_video", {"selector": "most viewed"})), answer("Here it is!")])
    result = await chat_with_youtube_tools(backend, "", [], "play the most viewed", videos)

    assert backend.tools_seen[0] == YOUTUBE_TOOLS
    assert backend.calls[0][-1]["content"].startswith("[YouTube channel JSON loaded: 3 videos. Fields: ")
    assert len(result.charts) == 1
    assert isinstance(result.charts[0], PlayVideoCard)
    assert result.charts_wire()[0]["video_id"] == "bbb"
    tool_msg = json.loads(backend.calls[1][-1]["content"])
    assert "_note" in tool_msg


@pytest.mark.asyncio
async def test_generated_image_is_hidden_from_the_model(scripted, tool_call, answer):
    backend = scripted([tool_call(("generateImage", {"prompt": "a red fox", "use_anchor": True})), answer("Done!")])
    result = await chat_with_youtube_tools(backend, "", [], "draw a fox", [], anchor_image="QU5DSE9S")

    assert backend.image_calls == [("a red fox", "QU5DSE9S")]
    assert result.charts_wire()[0]["imageData"] == "aGVsbG8="
    assert result.tool_calls[0].result["imageData"] == "aGVsbG8="
    seen = json.loads(backend.calls[1][-1]["content"])
    assert seen["imageData"] == "[displayed above]"
    assert "_note" in seen


@pytest.mark.asyncio
async def test_tool_errors_are_not_charts(scripted, tool_call, answer):
    backend = scripted([tool_call(("play_video", {"selector": "first"})), answer("No data yet")])
    result = await chat_with_youtube_tools(backend, "", [], "play first", [])
    assert result.charts == ()
    assert "error" in result.tool_calls[0].result


@pytest.mark.asyncio
async def test_rounds_are_timed(scripted, tool_call, answer):
    backend = scripted([tool_call(("compute_column_stats", {"column": "views"})), answer("ok")])
    timing = TimingCollector("q", mode="csv_tools")
    await chat_with_csv_tools(backend, "", [], "q", COLUMNS, ROWS, timing=timing)
    timing.finalize()
    assert timing.record.summary["num_rounds"] == 2
    assert timing.record.summary["num_tools_called"] == 1


@pytest.mark.asyncio
async def test_timed_rounds_record_the_model(scripted, answer):
    backend = scripted([answer("ok")])
    backend.model = "gpt-4o-mini"
    timing = TimingCollector("q")
    await chat_with_csv_tools(backend, "", [], "q", COLUMNS, ROWS, timing=timing)
    assert timing.record.rounds[0].llm_call.model == "gpt-4o-mini"


@pytest.mark.asyncio
async def test_failing_tool_lets_siblings_finish(scripted, tool_call):
    backend = scripted([tool_call(("generateImage", {"prompt": "a fox"}), ("play_video", {"selector": "first"}))])
    finished = []

    async def execute(name, args):
        if name == "generateImage":
            raise RuntimeError("quota exceeded")
        await asyncio.sleep(0.01)
        finished.append(name)
        return {"ok": True}

    with pytest.raises(RuntimeError, match="quota exceeded"):
        await run_tool_loop(backend, [{"role": "user", "content": "go"}], YOUTUBE_TOOLS, execute)
    assert finished == ["play_video"]


def test_parse_arguments():
    assert parse_arguments('{"column": "views"}') == {"column": "views"}
    assert parse_arguments({"column": "views"}) == {"column": "views"}
    assert parse_arguments("") == {}
    assert parse_arguments(None) == {}
    assert parse_arguments("[1, 2]") == {}
    assert parse_arguments("{oops") == {}


def test_payload_for_model_passes_plain_results_through():
    stats = {"column": "views", "mean": 2.0}
    assert payload_for_model(stats) is stats
    err = {"error": "nope"}
    assert payload_for_model(err) is err
