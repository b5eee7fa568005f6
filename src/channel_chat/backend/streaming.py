"""Plain streaming chat (no tools).

``stream_chat`` is a lazy, single-use async generator of events:

- ``{"type": "text", "text": delta}`` for incremental content
- at most one ``{"type": "fullResponse", "parts": [...]}`` when the backend
  returns a complete structured answer instead

Cancellation is cooperative: the token is checked before every yielded event.
Text that has already been yielded is not retracted.
"""

import logging
from typing import AsyncIterator, Dict, List, Optional, Sequence

from .adapters.llm import ChatBackend
from .models import ChatMessage, ImagePart
from .prompts import history_messages, system_message

logger = logging.getLogger(__name__)


class CancellationToken:
    def __init__(self):
        self._cancelled = False

    def cancel(self):
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


def user_message(message: str, image_parts: Sequence[ImagePart] = ()) -> dict:
    """Text-only messages stay a plain string; images become data-URL parts."""
    content: List[dict] = []
    if message:
        content.append({"type": "text", "text": message})
    for img in image_parts:
        content.append({
            "type": "image_url",
            "image_url": {"url": f"data:{img.mime_type or 'image/png'};base64,{img.data}"},
        })
    if len(content) == 1 and content[0]["type"] == "text":
        return {"role": "user", "content": content[0]["text"]}
    return {"role": "user", "content": content}


def build_stream_messages(
    system_prompt: str,
    history: Sequence[ChatMessage],
    message: str,
    image_parts: Sequence[ImagePart] = (),
) -> List[dict]:
    return [
        system_message(system_prompt, message, history, streaming=True),
        *history_messages(history),
        user_message(message, image_parts),
    ]


async def stream_chat(
    backend: ChatBackend,
    system_prompt: str,
    history: Sequence[ChatMessage],
    message: str,
    image_parts: Sequence[ImagePart] = (),
    use_code_execution: bool = False,
    cancel_token: Optional[CancellationToken] = None,
) -> AsyncIterator[Dict]:
    token = cancel_token or CancellationToken()
    messages = build_stream_messages(system_prompt, history, message, image_parts)
    if use_code_execution:
        # The completion backends have no sandbox; the model answers in prose/code blocks.
        logger.debug("Code execution requested; streaming without an execution sandbox")

    events = backend.stream(messages)
    full_sent = False
    try:
        async for event in events:
            if token.cancelled:
                logger.info("Stream cancelled by client")
                return
            kind = event.get("type")
            if kind == "text" and event.get("text"):
                yield {"type": "text", "text": event["text"]}
            elif kind == "fullResponse" and not full_sent:
                full_sent = True
                yield {"type": "fullResponse", "parts": list(event.get("parts") or [])}
    finally:
        aclose = getattr(events, "aclose", None)
        if aclose is not None:
            await aclose()
