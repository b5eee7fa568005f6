import json

import pytest


class ScriptedBackend:
    """Completion backend that replays canned responses.

    ``complete`` pops responses in order and keeps repeating the last one.
    """

    def __init__(self, responses=None, stream_events=None, image=None, error=None):
        self.responses = list(responses or [])
        self.stream_events = list(stream_events or [])
        self.image = image
        self.error = error
        self.calls = []
        self.tools_seen = []
        self.image_calls = []

    async def complete(self, messages, tools=None):
        self.calls.append([dict(m) for m in messages])
        self.tools_seen.append(tools)
        if self.error is not None:
            raise self.error
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]

    async def stream(self, messages):
        self.calls.append(list(messages))
        if self.error is not None:
            raise self.error
        for event in self.stream_events:
            yield event

    async def generate_image(self, prompt, anchor_image=None):
        self.image_calls.append((prompt, anchor_image))
        if isinstance(self.image, Exception):
            raise self.image
        return self.image or {
            "_chartType": "generated_image",
            "imageData": "aGVsbG8=",
            "mimeType": "image/png",
            "prompt": prompt,
        }


def tool_call_response(*calls, content=None):
    """Model response requesting ``(name, args)`` tool calls; args may be a raw string."""
    return {
        "choices": [{
            "index": 0,
            "message": {
                "role": "assistant",
                "content": content,
                "tool_calls": [
                    {
                        "id": f"tc{i}",
                        "type": "function",
                        "function": {
                            "name": name,
                            "arguments": args if isinstance(args, str) else json.dumps(args),
                        },
                    }
                    for i, (name, args) in enumerate(calls)
                ],
            },
        }]
    }


def text_response(text):
    return {"choices": [{"index": 0, "message": {"role": "assistant", "content": text}}]}


@pytest.fixture
def scripted():
    return ScriptedBackend


@pytest.fixture
def tool_call():
    return tool_call_response


@pytest.fixture
def answer():
    return text_response


@pytest.fixture
def tweet_rows():
    """Small enriched-ready tweet table: text, favorites, views, language."""
    columns = ["Text", "Favorite Count", "View Count", "Language"]
    rows = [
        {"Text": "alpha", "Favorite Count": "5", "View Count": "100", "Language": "en"},
        {"Text": "bravo", "Favorite Count": "50", "View Count": "100", "Language": "fr"},
        {"Text": "charlie", "Favorite Count": "20", "View Count": "100", "Language": "en"},
        {"Text": "delta", "Favorite Count": "1", "View Count": "100", "Language": "de"},
    ]
    return columns, rows


@pytest.fixture
def videos():
    return [
        {"video_id": "aaa", "title": "A", "view_count": 10, "like_count": 1,
         "duration": "PT4M13S", "published_at": "2024-03-01T00:00:00Z"},
        {"video_id": "bbb", "title": "B", "view_count": 30, "like_count": 3,
         "duration": "PT1H", "published_at": "2024-01-01T00:00:00Z"},
        {"video_id": "ccc", "title": "C", "view_count": 20, "like_count": 2,
         "duration": "garbage", "published_at": "2024-02-01T00:00:00Z"},
    ]
