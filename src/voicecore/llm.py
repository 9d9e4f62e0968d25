"""
Chat LLM wrapper with OpenAI-compatible API (Groq by default).

Provides:
- Startup model validation
- Non-streaming completions with tool calling
- Streaming completions segmented into sentences
- Limited retry on rate limiting only
"""

import asyncio
import json
import re
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx
import openai
import structlog
from openai import AsyncOpenAI

from src.voicecore.config import get_config

logger = structlog.get_logger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"
OPENAI_BASE_URL = "https://api.openai.com/v1"

MAX_TOKENS = 150
MAX_TOKENS_WITH_TOOLS = 300
TEMPERATURE = 0.7
REQUEST_TIMEOUT_S = 8.0
DEFAULT_RETRY_AFTER_S = 3.0
MAX_RETRY_AFTER_S = 10.0

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")


class LLMError(Exception):
    """LLM request failed (after any rate-limit retries)."""
    pass


@dataclass
class ToolCall:
    """A function call requested by the model."""
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LLMReply:
    """Response from a non-streaming completion."""
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


def _retry_after_seconds(error: openai.RateLimitError) -> float:
    value = None
    response = getattr(error, "response", None)
    if response is not None:
        value = response.headers.get("retry-after")
    try:
        seconds = float(value) if value is not None else DEFAULT_RETRY_AFTER_S
    except ValueError:
        seconds = DEFAULT_RETRY_AFTER_S
    return max(0.0, min(seconds, MAX_RETRY_AFTER_S))


def _parse_arguments(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.warning("Tool call arguments are not valid JSON", raw=raw[:200])
        return {}
    return parsed if isinstance(parsed, dict) else {}


async def validate_llm_model(api_key: str, model_name: str, base_url: str = GROQ_BASE_URL) -> bool:
    """
    Validate that the configured model exists.

    Calls GET {base_url}/models to check.

    Raises:
        SystemExit: If model doesn't exist (fail fast)
    """
    logger.info("Validating LLM model", model=model_name, base_url=base_url)

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(
                f"{base_url}/models",
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=10.0,
            )
        except httpx.RequestError as e:
            logger.error("Failed to connect to LLM API", error=str(e))
            raise SystemExit(
                f"Failed to connect to LLM API: {e}\n"
                "Check your network connection and API key."
            )

    if response.status_code != 200:
        logger.error(
            "Failed to fetch LLM models",
            status_code=response.status_code,
            response=response.text[:200],
        )
        raise SystemExit(
            f"Failed to validate LLM model. API returned status {response.status_code}. "
            "Check your API key."
        )

    model_ids = [m.get("id") for m in response.json().get("data", [])]
    if model_name not in model_ids:
        available = ", ".join(sorted(str(m) for m in model_ids)[:10])
        logger.error("LLM model not found", requested_model=model_name, available_models=available)
        raise SystemExit(
            f"Model '{model_name}' not found in available models.\n"
            f"Available models include: {available}"
        )

    logger.info("LLM model validated successfully", model=model_name)
    return True


class ChatLLM:
    """
    OpenAI-compatible chat client.

    Conversation history is owned by the caller (per-call Conversation); this
    client is stateless apart from the HTTP connection pool.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        if config is None:
            config = get_config()

        self.config = config
        self.provider = (config.llm_provider or "groq").strip().lower()
        if self.provider == "openai":
            self.model = config.openai_model
            self.base_url = OPENAI_BASE_URL
            api_key = config.openai_api_key
        else:
            self.model = config.groq_model
            self.base_url = GROQ_BASE_URL
            api_key = config.groq_api_key

        self.max_retries = max(0, int(getattr(config, "llm_max_retries", 2)))

        # SDK retries are disabled; only rate limiting is retried, below.
        self._client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=self.base_url,
            timeout=REQUEST_TIMEOUT_S,
            max_retries=0,
        )

    async def validate_model(self) -> bool:
        """Validate the configured model exists."""
        api_key = self.config.openai_api_key if self.provider == "openai" else self.config.groq_api_key
        return await validate_llm_model(api_key, self.model, self.base_url)

    async def _create(self, **kwargs: Any) -> Any:
        attempt = 0
        while True:
            try:
                return await self._client.chat.completions.create(model=self.model, **kwargs)
            except openai.RateLimitError as e:
                if attempt >= self.max_retries:
                    raise LLMError(f"Rate limited after {attempt} retries") from e
                attempt += 1
                delay = _retry_after_seconds(e)
                logger.warning("LLM rate limited, retrying", attempt=attempt, delay_s=delay)
                await asyncio.sleep(delay)
            except openai.OpenAIError as e:
                raise LLMError(str(e)) from e

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> LLMReply:
        """Single (non-streaming) completion, optionally with tool calling."""
        kwargs: Dict[str, Any] = {
            "messages": messages,
            "temperature": TEMPERATURE,
            "max_tokens": MAX_TOKENS,
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
            kwargs["max_tokens"] = MAX_TOKENS_WITH_TOOLS

        response = await self._create(**kwargs)
        if not response.choices:
            raise LLMError("LLM returned no choices")

        message = response.choices[0].message
        tool_calls = [
            ToolCall(
                id=call.id,
                name=call.function.name,
                arguments=_parse_arguments(call.function.arguments),
            )
            for call in (message.tool_calls or [])
        ]
        return LLMReply(text=(message.content or "").strip(), tool_calls=tool_calls)

    async def stream_sentences(self, messages: List[Dict[str, Any]]) -> AsyncGenerator[str, None]:
        """
        Stream a completion and yield whole sentences as they complete.

        Sentences are yielded in generation order; the unterminated remainder is
        yielded once the stream ends.
        """
        stream = await self._create(
            messages=messages,
            temperature=TEMPERATURE,
            max_tokens=MAX_TOKENS,
            stream=True,
        )

        buffer = ""
        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if not delta:
                    continue
                buffer += delta

                parts = _SENTENCE_BOUNDARY.split(buffer)
                for sentence in parts[:-1]:
                    if sentence.strip():
                        yield sentence.strip()
                buffer = parts[-1]
        except openai.OpenAIError as e:
            raise LLMError(str(e)) from e

        if buffer.strip():
            yield buffer.strip()


def create_llm(config: Optional[Any] = None) -> ChatLLM:
    """Create the LLM client for the configured provider."""
    return ChatLLM(config or get_config())
