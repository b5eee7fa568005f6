import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

import httpx
from openai import APIError, APIStatusError, AsyncOpenAI, AuthenticationError

logger = logging.getLogger(__name__)

API_KEY_INVALID = (
  "Your OpenAI API key is invalid or expired. Create a new key at "
  "https://platform.openai.com/account/api-keys and update REACT_APP_OPENAI_API_KEY "
  "in your .env file, then restart the server."
)
API_KEY_MISSING = "OpenAI API key not configured"
ANCHOR_PREAMBLE = "Generate an image inspired by the style and composition of the user's reference image. "
DEFAULT_IMAGE_PROMPT = "A beautiful image"

COL_NOTE = (
  "Use the exact column name as it appears in the [CSV columns: ...] header at the top of the message "
  "— copy it character-for-character, preserving spaces and capitalisation."
)

# Tool names are matched by the model protocol; keep them byte-for-byte.
CSV_TOOLS = [
  {
    "type": "function",
    "function": {
      "name": "compute_column_stats",
      "description": "Compute descriptive statistics (mean, median, std, min, max, count) for a numeric column. " + COL_NOTE,
      "parameters": {
        "type": "object",
        "properties": {
          "column": {"type": "string", "description": 'Exact column name copied from [CSV columns: ...]. Example: if the header says "Favorite Count" pass "Favorite Count", not "favorite_count".'}
        },
        "required": ["column"]
      }
    }
  },
  {
    "type": "function",
    "function": {
      "name": "get_value_counts",
      "description": "Count occurrences of each unique value in a column (for categorical data). " + COL_NOTE,
      "parameters": {
        "type": "object",
        "properties": {
          "column": {"type": "string", "description": "Exact column name copied from [CSV columns: ...]. " + COL_NOTE},
          "top_n": {"type": "number", "description": "How many top values to return (default 10)"}
        },
        "required": ["column"]
      }
    }
  },
  {
    "type": "function",
    "function": {
      "name": "get_top_tweets",
      "description": (
        'Return the top or bottom N tweets sorted by any metric, including the computed "engagement" column '
        "(Favorite Count / View Count). Returns tweet text + all key metrics in a readable format. "
        "Use this when someone asks for the best/worst/most/least performing tweets, "
        'e.g. "show me the 10 most engaging tweets" or "what are the least viewed tweets". '
        'The "engagement" column is always available once a CSV is loaded.'
      ),
      "parameters": {
        "type": "object",
        "properties": {
          "sort_column": {"type": "string", "description": 'Metric to sort by. Use "engagement" for engagement ratio, or any exact column name from [CSV columns: ...].'},
          "n": {"type": "number", "description": "Number of tweets to return (default 10)."},
          "ascending": {"type": "boolean", "description": "false = highest first (top performers), true = lowest first (worst performers). Default false."}
        },
        "required": ["sort_column"]
      }
    }
  },
]

YOUTUBE_TOOLS = [
  {
    "type": "function",
    "function": {
      "name": "generateImage",
      "description": (
        "Generate an image from a text prompt. Optionally use an anchor/reference image that the user has dragged in. "
        "Use when the user asks to create, generate, or make an image. The image is displayed in the chat automatically."
      ),
      "parameters": {
        "type": "object",
        "properties": {
          "prompt": {"type": "string", "description": "Detailed text description of the image to generate (style, subject, colors, composition)."},
          "use_anchor": {"type": "boolean", "description": "Whether to use the anchor image the user provided as reference (true if user attached an image)."}
        },
        "required": ["prompt"]
      }
    }
  },
  {
    "type": "function",
    "function": {
      "name": "plot_metric_vs_time",
      "description": (
        "Plot any numeric field (view_count, like_count, comment_count, duration_seconds, etc.) vs time for channel videos. "
        "Use when the user asks to plot, chart, or visualize a metric over time. Requires YouTube channel JSON to be loaded."
      ),
      "parameters": {
        "type": "object",
        "properties": {
          "metric_field": {"type": "string", "description": "Exact field name from the JSON (e.g. view_count, like_count, comment_count). Use published_at for time axis."}
        },
        "required": ["metric_field"]
      }
    }
  },
  {
    "type": "function",
    "function": {
      "name": "play_video",
      "description": (
        "REQUIRED when user asks to play or open a video. Returns a clickable card (displayed automatically) with real title and thumbnail. "
        'User can specify by title (e.g. "play the asbestos video"), ordinal (e.g. "play the first video", "play video 3"), or "most viewed". '
        "Do NOT describe the video in text or use placeholders - the card shows the actual data."
      ),
      "parameters": {
        "type": "object",
        "properties": {
          "selector": {"type": "string", "description": 'How to pick the video: "first", "last", "most viewed", "least viewed", or a partial title match (e.g. "asbestos").'}
        },
        "required": ["selector"]
      }
    }
  },
  {
    "type": "function",
    "function": {
      "name": "compute_stats_json",
      "description": (
        "Compute mean, median, std, min, max for any numeric field in the channel JSON. "
        "Use when the user asks for statistics, average, distribution, or summary of a numeric column (view_count, like_count, comment_count, duration_seconds)."
      ),
      "parameters": {
        "type": "object",
        "properties": {
          "field": {"type": "string", "description": "Exact field name from the JSON (e.g. view_count, like_count, comment_count)."}
        },
        "required": ["field"]
      }
    }
  },
]


class CompletionError(Exception):
  """Non-success from the completion endpoint, carrying a user-facing message."""

  def __init__(self, message: str, status_code: Optional[int] = None):
    super().__init__(message)
    self.message = message
    self.status_code = status_code


class ImageGenerationError(CompletionError):
  pass


class ChatBackend(Protocol):
  async def complete(self, messages: List[Dict], tools: Optional[List[Dict]] = None) -> Dict: ...

  def stream(self, messages: List[Dict]) -> AsyncIterator[Dict]: ...

  async def generate_image(self, prompt: Optional[str], anchor_image: Optional[str] = None) -> Dict: ...


def _status_message(status: Optional[int], message: Optional[str], default: str) -> str:
  if status == 401 or (message and "401" in message):
    return API_KEY_INVALID
  return message or default


class OpenAIChatBackend:
  """Talks to the OpenAI API through the official async SDK."""

  def __init__(self, api_key: Optional[str], model: str = "gpt-4o-mini", image_model: str = "dall-e-3",
               timeout: float = 120.0, client: Optional[AsyncOpenAI] = None):
    self.model = model
    self.image_model = image_model
    self.client = client
    if self.client is None and api_key:
      self.client = AsyncOpenAI(api_key=api_key, timeout=timeout)

  def _require_client(self, error_cls=CompletionError) -> AsyncOpenAI:
    if self.client is None:
      raise error_cls(API_KEY_MISSING, 500)
    return self.client

  @staticmethod
  def _translate(e: APIError, default: str, error_cls=CompletionError) -> CompletionError:
    status = e.status_code if isinstance(e, APIStatusError) else None
    if isinstance(e, AuthenticationError):
      status = 401
    return error_cls(_status_message(status, e.message, default), status)

  async def complete(self, messages: List[Dict], tools: Optional[List[Dict]] = None) -> Dict:
    client = self._require_client()
    opts: Dict[str, Any] = {"model": self.model, "messages": messages}
    if tools:
      opts["tools"] = tools
      opts["tool_choice"] = "auto"
    try:
      resp = await client.chat.completions.create(**opts)
    except APIError as e:
      raise self._translate(e, "OpenAI request failed") from e
    return resp.model_dump()

  async def stream(self, messages: List[Dict]) -> AsyncIterator[Dict]:
    client = self._require_client()
    try:
      completion = await client.chat.completions.create(model=self.model, messages=messages, stream=True)
      async for chunk in completion:
        if not chunk.choices:
          continue
        delta = chunk.choices[0].delta.content
        if delta:
          yield {"type": "text", "text": delta}
    except APIError as e:
      raise self._translate(e, "OpenAI request failed") from e

  async def generate_image(self, prompt: Optional[str], anchor_image: Optional[str] = None) -> Dict:
    client = self._require_client(ImageGenerationError)
    final_prompt = prompt or DEFAULT_IMAGE_PROMPT
    if anchor_image:
      final_prompt = ANCHOR_PREAMBLE + final_prompt
    try:
      resp = await client.images.generate(
        model=self.image_model,
        prompt=final_prompt,
        n=1,
        size="1024x1024",
        response_format="b64_json",
      )
    except APIError as e:
      raise self._translate(e, "Image generation failed", ImageGenerationError) from e
    b64 = resp.data[0].b64_json if resp.data else None
    if not b64:
      raise ImageGenerationError("Image generation failed", 500)
    return {"_chartType": "generated_image", "imageData": b64, "mimeType": "image/png", "prompt": prompt}


def _error_text(resp: httpx.Response) -> Optional[str]:
  try:
    body = resp.json()
  except ValueError:
    return resp.reason_phrase or None
  return body.get("error") if isinstance(body, dict) else None


class ProxyChatBackend:
  """Client for a server exposing ``/api/openai/chat`` and ``/api/openai/image``.

  Streaming responses are SSE frames ``data: {"type": "text", "text": ...}``
  terminated by ``data: [DONE]``.
  """

  def __init__(self, base_url: str, timeout: float = 120.0, transport: Optional[httpx.AsyncBaseTransport] = None):
    self.base_url = base_url.rstrip("/")
    self.timeout = timeout
    self.transport = transport

  def _client(self) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

  async def complete(self, messages: List[Dict], tools: Optional[List[Dict]] = None) -> Dict:
    payload: Dict[str, Any] = {"messages": messages, "stream": False}
    if tools:
      payload["tools"] = tools
      payload["tool_choice"] = "auto"
    async with self._client() as client:
      resp = await client.post("/api/openai/chat", json=payload)
    if resp.status_code >= 400:
      raise CompletionError(_status_message(resp.status_code, _error_text(resp), "Chat request failed"), resp.status_code)
    return resp.json()

  async def stream(self, messages: List[Dict]) -> AsyncIterator[Dict]:
    async with self._client() as client:
      async with client.stream("POST", "/api/openai/chat", json={"messages": messages, "stream": True}) as resp:
        if resp.status_code >= 400:
          await resp.aread()
          raise CompletionError(_status_message(resp.status_code, _error_text(resp), "Chat request failed"), resp.status_code)
        async for line in resp.aiter_lines():
          if not line.startswith("data: "):
            continue
          data = line[6:]
          if data == "[DONE]":
            return
          try:
            parsed = json.loads(data)
          except json.JSONDecodeError:
            logger.debug(f"Skipping malformed SSE frame: {data[:80]!r}")
            continue
          if not isinstance(parsed, dict):
            continue
          if parsed.get("type") == "text" and parsed.get("text"):
            yield {"type": "text", "text": parsed["text"]}
          elif parsed.get("type") == "fullResponse":
            yield {"type": "fullResponse", "parts": parsed.get("parts") or []}

  async def generate_image(self, prompt: Optional[str], anchor_image: Optional[str] = None) -> Dict:
    payload: Dict[str, Any] = {"prompt": prompt or DEFAULT_IMAGE_PROMPT}
    if anchor_image:
      payload["anchorImage"] = anchor_image
    async with self._client() as client:
      resp = await client.post("/api/openai/image", json=payload)
    if resp.status_code >= 400:
      raise ImageGenerationError(_status_message(resp.status_code, _error_text(resp), "Image generation failed"), resp.status_code)
    return resp.json()


def build_backend(settings) -> ChatBackend:
  """Proxy backend when ``CHAT_PROXY_URL`` is set, otherwise the OpenAI SDK."""
  if settings.proxy_url:
    logger.info(f"Using completion proxy at {settings.proxy_url}")
    return ProxyChatBackend(settings.proxy_url, timeout=settings.request_timeout)
  return OpenAIChatBackend(
    settings.openai_api_key,
    model=settings.model,
    image_model=settings.image_model,
    timeout=settings.request_timeout,
  )
