"""Message assembly for a turn.

Two texts are built for every user message: the display text that is shown
and persisted, and the model prompt that carries dataset context. Base64
payloads only ever appear in the model prompt.
"""

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from .models import ChatMessage

SYSTEM_PREFIX = "Follow these instructions in every response:\n\n"

_USER_PREFIX = re.compile(r"^\[User:\s*([^\]]+)\]\s*\n\n")
_SELF_INTRO = re.compile(
    r"(?:my name is|i'm|i am|call me|it's|i go by|you can call me|this is)\s+([a-zA-Z][a-zA-Z\s'-]{0,50})",
    re.I,
)

KNOWN_NAME = (
    "The user you are speaking with is {name}. Always address them by name when appropriate. "
    "Do not ask for their name - you already know it."
)
UNKNOWN_NAME = (
    "You do not know the user's name yet. Ask for their name in a friendly way. "
    "Once they tell you, remember and use it."
)
KNOWN_NAME_STREAMING = (
    "The user you are speaking with is {name}. Always address them by name when appropriate "
    "throughout the conversation. Do not ask for their name - you already know it."
)
UNKNOWN_NAME_STREAMING = (
    "You do not know the user's name yet. In your response, ask for their name in a friendly, natural way "
    '(e.g. "What\'s your name?" or "I\'d love to know your name!"). Once they tell you their name in a '
    "future message, remember it and use it when addressing them."
)

IMAGE_NOTE = (
    "The image is already displayed in the chat. Do not include any ![image] markdown in your response."
)
VIDEO_CARD_NOTE = (
    "A clickable video card with the actual title and thumbnail is already displayed. Do NOT use "
    "placeholders like [First Video Title] or [Video Duration]. Do NOT say \"click on the title above\" - "
    "the card IS the clickable element. Keep your reply very brief (e.g. \"Here it is!\" or "
    "\"Click the card to watch on YouTube.\")."
)


def name_from_message(message: Optional[str]) -> str:
    """Name from a leading ``[User: Name]`` line, if present."""
    if not message:
        return ""
    m = _USER_PREFIX.match(message)
    return m.group(1).strip() if m else ""


def name_from_history(history: Sequence[ChatMessage]) -> str:
    """Most recent self-introduction ("my name is ...", "call me ...") in user turns."""
    for msg in reversed(history):
        if msg.role != "user" or not msg.content:
            continue
        m = _SELF_INTRO.search(msg.content.strip())
        if m:
            name = m.group(1).strip()
            if 2 <= len(name) <= 50:
                return name
    return ""


def system_message(template: str, message: str, history: Sequence[ChatMessage], streaming: bool = False) -> dict:
    name = name_from_message(message) or name_from_history(history)
    if streaming:
        directive = KNOWN_NAME_STREAMING.format(name=name) if name else UNKNOWN_NAME_STREAMING
    else:
        directive = KNOWN_NAME.format(name=name) if name else UNKNOWN_NAME
    content = f"{template}\n\n{directive}" if template else directive
    return {"role": "system", "content": SYSTEM_PREFIX + content}


def history_messages(history: Iterable[ChatMessage]) -> List[dict]:
    """Prior turns in completion format; every non-user role is the assistant."""
    return [
        {"role": "user" if m.role == "user" else "assistant", "content": m.content or ""}
        for m in history
    ]


def csv_context_header(columns: Sequence[str]) -> str:
    return f"[CSV columns: {', '.join(columns)}]\n\n" if columns else ""


def channel_context_header(videos: Sequence[dict]) -> str:
    if not videos:
        return ""
    fields = ", ".join(videos[0].keys())
    return f"[YouTube channel JSON loaded: {len(videos)} videos. Fields: {fields}]\n\n"


@dataclass
class CsvContext:
    """What the prompt needs to know about the loaded CSV."""

    name: str
    columns: List[str]
    row_count: int
    summary: str = ""
    slim_csv: str = ""
    base64: str = ""


def build_model_prompt(
    text: str,
    csv: Optional[CsvContext] = None,
    csv_attached: bool = False,
    needs_python: bool = False,
    videos: Sequence[dict] = (),
    image_count: int = 0,
) -> str:
    parts = []
    if csv is not None and csv_attached:
        slim_block = f"\n\nFull dataset (key columns):\n```csv\n{csv.slim_csv}\n```" if csv.slim_csv else ""
        header = f'[CSV File: "{csv.name}" | {csv.row_count} rows | Columns: {", ".join(csv.columns)}]'
        if needs_python:
            parts.append(
                f"{header}\n\n{csv.summary}{slim_block}\n\n"
                "IMPORTANT — to load the full data in Python use this exact pattern:\n"
                "```python\n"
                "import pandas as pd, io, base64\n"
                f'df = pd.read_csv(io.BytesIO(base64.b64decode("{csv.base64}")))\n'
                "```\n\n---\n\n"
            )
        else:
            parts.append(f"{header}\n\n{csv.summary}{slim_block}\n\n---\n\n")
    elif csv is not None and csv.summary:
        parts.append(f"[CSV columns: {', '.join(csv.columns)}]\n\n{csv.summary}\n\n---\n\n")

    if videos:
        fields = ", ".join(videos[0].keys())
        parts.append(f"[YouTube channel JSON loaded: {len(videos)} videos. Fields per video: {fields}]\n\n---\n\n")
    if image_count:
        parts.append(
            f"[User has attached {image_count} reference image(s). When they ask to generate, create, or edit "
            "an image, you MUST call the generateImage tool with use_anchor: true. Do NOT say you cannot process "
            "images — you have the generateImage tool. The anchor image will be used as inspiration.\n\n---\n\n"
        )

    if text:
        parts.append(text)
    elif videos:
        parts.append("Please analyze this YouTube channel data.")
    elif image_count:
        parts.append("What do you see in this image?")
    else:
        parts.append("Please analyze this CSV data.")
    return "".join(parts)


def display_content(text: str, image_count: int = 0, channel_loaded: bool = False) -> str:
    if text:
        return text
    if image_count:
        return "(Image)"
    return "(JSON attached)" if channel_loaded else "(CSV attached)"
