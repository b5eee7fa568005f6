"""Tests for the completion backends (HTTP proxy client and SDK wrapper)."""

import json

import httpx
import pytest

from channel_chat.backend.adapters.llm import (
    API_KEY_INVALID,
    API_KEY_MISSING,
    CompletionError,
    ImageGenerationError,
    OpenAIChatBackend,
    ProxyChatBackend,
    build_backend,
)
from channel_chat.backend.config import Settings


def _proxy(handler):
    return ProxyChatBackend("http://proxy.test/", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_proxy_complete_posts_tools():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": "hi"}}]})

    out = await _proxy(handler).complete([{"role": "user", "content": "hello"}], tools=[{"type": "function"}])
    assert out["choices"][0]["message"]["content"] == "hi"
    assert seen["path"] == "/api/openai/chat"
    assert seen["body"]["stream"] is False
    assert seen["body"]["tool_choice"] == "auto"


@pytest.mark.asyncio
async def test_proxy_stream_parses_frames_until_done():
    body = (
        'data: {"type": "text", "text": "Hi"}\n\n'
        "data: {broken\n\n"
        'data: {"type": "text", "text": " there"}\n\n'
        "data: [DONE]\n\n"
        'data: {"type": "text", "text": "ignored"}\n\n'
    )

    def handler(request):
        assert json.loads(request.content)["stream"] is True
        return httpx.Response(200, content=body.encode(), headers={"content-type": "text/event-stream"})

    events = [e async for e in _proxy(handler).stream([{"role": "user", "content": "hello"}])]
    assert events == [{"type": "text", "text": "Hi"}, {"type": "text", "text": " there"}]


@pytest.mark.asyncio
async def test_proxy_stream_skips_frames_that_are_not_objects():
    body = "data: null\n\ndata: 5\n\ndata: [\"x\"]\n\ndata: {\"type\": \"text\", \"text\": \"hi\"}\n\ndata: [DONE]\n\n"

    def handler(request):
        return httpx.Response(200, content=body.encode(), headers={"content-type": "text/event-stream"})

    events = [e async for e in _proxy(handler).stream([{"role": "user", "content": "hello"}])]
    assert events == [{"type": "text", "text": "hi"}]


@pytest.mark.asyncio
async def test_proxy_401_maps_to_invalid_key_message():
    def handler(request):
        return httpx.Response(401, json={"error": "Incorrect API key provided"})

    with pytest.raises(CompletionError) as exc:
        await _proxy(handler).complete([])
    assert exc.value.message == API_KEY_INVALID
    assert exc.value.status_code == 401


@pytest.mark.asyncio
async def test_proxy_error_body_is_surfaced():
    def handler(request):
        return httpx.Response(500, json={"error": "upstream exploded"})

    with pytest.raises(CompletionError) as exc:
        await _proxy(handler).complete([])
    assert exc.value.message == "upstream exploded"

    with pytest.raises(CompletionError):
        [e async for e in _proxy(handler).stream([])]


@pytest.mark.asyncio
async def test_proxy_image_sends_anchor():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"imageData": "aGk=", "mimeType": "image/png", "prompt": "fox"})

    out = await _proxy(handler).generate_image("fox", anchor_image="QU5D")
    assert out["imageData"] == "aGk="
    assert seen["path"] == "/api/openai/image"
    assert seen["body"] == {"prompt": "fox", "anchorImage": "QU5D"}


@pytest.mark.asyncio
async def test_proxy_image_failure():
    def handler(request):
        return httpx.Response(500, json={"error": "Image generation failed"})

    with pytest.raises(ImageGenerationError):
        await _proxy(handler).generate_image(None)


@pytest.mark.asyncio
async def test_sdk_backend_without_key():
    backend = OpenAIChatBackend(api_key=None)
    with pytest.raises(CompletionError) as exc:
        await backend.complete([{"role": "user", "content": "hi"}])
    assert exc.value.message == API_KEY_MISSING
    with pytest.raises(ImageGenerationError):
        await backend.generate_image("fox")


def test_build_backend_prefers_proxy():
    assert isinstance(build_backend(Settings(proxy_url="http://proxy.test")), ProxyChatBackend)
    assert isinstance(build_backend(Settings()), OpenAIChatBackend)
