"""Model access for every pipeline stage.

All stages talk to OpenRouter through the OpenAI-compatible SDK. The engine
only sees ``client.messages.create`` (one reply) and ``client.messages.stream``
(token stream), so tests can swap in a scripted client with the same shape.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator

from medresearch.config import Settings, settings

# Models that reject any sampling temperature other than the default.
FIXED_TEMPERATURE_MODELS = ("gpt-5", "o1", "o3", "o4-mini")


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    @classmethod
    def from_openai(cls, usage: Any) -> "Usage":
        if usage is None:
            return cls()
        return cls(
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
        )


@dataclass
class Completion:
    text: str
    usage: Usage
    finish_reason: str | None = None


class CompletionStream:
    """Async context manager over a streamed chat completion.

    ``text_stream`` yields content deltas as they arrive. Usage comes from the
    trailing usage-only chunk that ``include_usage`` asks OpenRouter to send.
    """

    def __init__(self, pending: Any):
        self._pending = pending
        self._stream: Any | None = None
        self._parts: list[str] = []
        self._usage = Usage()
        self._finish_reason: str | None = None
        self._exhausted = False

    async def __aenter__(self) -> "CompletionStream":
        self._stream = await self._pending
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._stream is not None:
            await self._stream.close()

    def _consume(self, chunk: Any) -> str | None:
        if getattr(chunk, "usage", None):
            self._usage = Usage.from_openai(chunk.usage)
        choices = getattr(chunk, "choices", None)
        if not choices:
            return None
        choice = choices[0]
        if getattr(choice, "finish_reason", None):
            self._finish_reason = choice.finish_reason
        delta = getattr(choice, "delta", None)
        return getattr(delta, "content", None) if delta is not None else None

    async def _deltas(self) -> AsyncIterator[str]:
        if self._stream is None:
            return
        async for chunk in self._stream:
            text = self._consume(chunk)
            if text:
                self._parts.append(text)
                yield text
        self._exhausted = True

    @property
    def text_stream(self) -> AsyncIterator[str]:
        return self._deltas()

    async def get_final_message(self) -> Completion:
        if not self._exhausted:
            async for _ in self._deltas():
                pass
        return Completion(text="".join(self._parts), usage=self._usage, finish_reason=self._finish_reason)


def temperature_for(model: str, temperature: float) -> float:
    name = (model or "").lower().rsplit("/", 1)[-1]
    if name.startswith(FIXED_TEMPERATURE_MODELS):
        return 1
    return temperature


def chat_messages(system: str, messages: list[dict[str, Any]]) -> list[dict[str, str]]:
    """System prompt first, then the turns as plain role/content pairs."""
    return [{"role": "system", "content": system}] + [
        {"role": m["role"], "content": str(m["content"])} for m in messages
    ]


class OpenRouterMessages:
    def __init__(self, openai_client: Any):
        self._client = openai_client

    def _request(
        self,
        model: str,
        max_tokens: int,
        system: str,
        messages: list[dict[str, Any]],
        temperature: float,
        json_mode: bool = False,
    ) -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": model,
            "messages": chat_messages(system, messages),
            "max_tokens": max_tokens,
            "temperature": temperature_for(model, temperature),
        }
        if json_mode:
            request["response_format"] = {"type": "json_object"}
        return request

    async def create(
        self,
        *,
        model: str,
        max_tokens: int,
        system: str,
        messages: list[dict[str, Any]],
        temperature: float = 0.0,
        json_mode: bool = False,
    ) -> Completion:
        response = await self._client.chat.completions.create(
            **self._request(model, max_tokens, system, messages, temperature, json_mode)
        )
        choice = response.choices[0]
        return Completion(
            text=getattr(choice.message, "content", None) or "",
            usage=Usage.from_openai(getattr(response, "usage", None)),
            finish_reason=getattr(choice, "finish_reason", None),
        )

    def stream(
        self,
        *,
        model: str,
        max_tokens: int,
        system: str,
        messages: list[dict[str, Any]],
        temperature: float = 0.0,
    ) -> CompletionStream:
        pending = self._client.chat.completions.create(
            **self._request(model, max_tokens, system, messages, temperature),
            stream=True,
            stream_options={"include_usage": True},
        )
        return CompletionStream(pending)


class OpenRouterClient:
    def __init__(self, openai_client: Any):
        self.messages = OpenRouterMessages(openai_client)


def get_client(
    config: Settings = settings,
    max_retries: int | None = None,
    http_client: Any | None = None,
) -> OpenRouterClient:
    """OpenRouter client for the configured account.

    ``max_retries`` overrides ``llm_max_retries``; the router passes 0 because
    a failed routing call ends the request. An empty key is replaced by a
    placeholder so the client always builds and the first model call fails
    with an authentication error.
    """
    from openai import AsyncOpenAI

    openai_client = AsyncOpenAI(
        api_key=config.openrouter_api_key or "unset",
        base_url=config.openrouter_base_url.strip() or "https://openrouter.ai/api/v1",
        timeout=config.llm_timeout_seconds,
        max_retries=config.llm_max_retries if max_retries is None else max_retries,
        default_headers={"X-Title": config.openrouter_app_title},
        http_client=http_client,
    )
    return OpenRouterClient(openai_client)


def model_for(stage: str, config: Settings = settings) -> str:
    """Model id for a pipeline stage, falling back to the default model."""
    override = getattr(config, f"{stage}_model", "") or ""
    return override.strip() or config.default_model
