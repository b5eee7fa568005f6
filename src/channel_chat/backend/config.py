"""Runtime configuration.

All environment-derived settings are read once into an immutable ``Settings``
object when the service starts. The system prompt template is loaded at the
same point and travels with the settings, so nothing downstream reads files or
environment variables on its own.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_PROMPT_PATH = Path(__file__).with_name("prompt_chat.txt")
DEFAULT_MAX_TOOL_ROUNDS = 5
DEFAULT_NUMERIC_RATIO_THRESHOLD = 0.8


def _env_bool(key: str, default: bool = False) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in ("1", "true", "yes", "y", "on")


def load_system_prompt(path: str | Path | None) -> str:
    """Read the prompt template; a missing file yields an empty prompt."""
    if not path:
        return ""
    try:
        return Path(path).read_text(encoding="utf-8").strip()
    except OSError as e:
        logger.warning(f"System prompt not loaded from {path}: {e}")
        return ""


@dataclass(frozen=True)
class Settings:
    openai_api_key: Optional[str] = None
    model: str = "gpt-4o-mini"
    image_model: str = "dall-e-3"
    proxy_url: Optional[str] = None
    system_prompt: str = ""
    max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS
    numeric_ratio_threshold: float = DEFAULT_NUMERIC_RATIO_THRESHOLD
    request_timeout: float = 120.0
    debug: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        api_key = (os.getenv("REACT_APP_OPENAI_API_KEY") or os.getenv("OPENAI_API_KEY") or "").strip()
        prompt_path = os.getenv("SYSTEM_PROMPT_PATH") or DEFAULT_PROMPT_PATH
        return cls(
            openai_api_key=api_key or None,
            model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            image_model=os.getenv("OPENAI_IMAGE_MODEL", "dall-e-3"),
            proxy_url=(os.getenv("CHAT_PROXY_URL") or "").rstrip("/") or None,
            system_prompt=load_system_prompt(prompt_path),
            max_tool_rounds=int(os.getenv("MAX_TOOL_ROUNDS", str(DEFAULT_MAX_TOOL_ROUNDS))),
            numeric_ratio_threshold=float(
                os.getenv("NUMERIC_RATIO_THRESHOLD", str(DEFAULT_NUMERIC_RATIO_THRESHOLD))
            ),
            request_timeout=float(os.getenv("REQUEST_TIMEOUT_SECONDS", "120")),
            debug=_env_bool("CHANNEL_CHAT_DEBUG"),
        )
