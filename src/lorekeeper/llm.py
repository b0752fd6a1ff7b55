from __future__ import annotations

import time
from typing import AsyncIterator, Literal, Protocol

import structlog
from google import genai
from google.genai import types
from pydantic import BaseModel

from .config import settings

log = structlog.get_logger()


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class Completion(BaseModel):
    """Final record of a generation call."""

    content: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: int = 0


class StreamDelta(BaseModel):
    """A partial piece of streamed answer text."""

    content: str


class GenerationClient(Protocol):
    async def complete(
        self,
        messages: list[ChatMessage],
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> Completion: ...

    def stream_complete(
        self,
        messages: list[ChatMessage],
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> AsyncIterator[StreamDelta | Completion]: ...


def _split_messages(messages: list[ChatMessage]) -> tuple[str | None, list[types.Content]]:
    """Gemini takes the system prompt separately and calls the assistant 'model'."""
    system = "\n\n".join(m.content for m in messages if m.role == "system") or None
    contents = [
        types.Content(
            role="model" if m.role == "assistant" else "user",
            parts=[types.Part(text=m.content)],
        )
        for m in messages
        if m.role != "system"
    ]
    return system, contents


def _usage(usage: types.GenerateContentResponseUsageMetadata | None) -> tuple[int, int]:
    if usage is None:
        return 0, 0
    return usage.prompt_token_count or 0, usage.candidates_token_count or 0


class GeminiClient:
    """Async chat completion client on the Google Gen AI SDK."""

    def __init__(self, api_key: str | None = None) -> None:
        self._api_key = api_key
        self._client: genai.Client | None = None

    def _get_client(self) -> genai.Client:
        if self._client is None:
            self._client = genai.Client(api_key=self._api_key or settings.gemini_api_key)
        return self._client

    async def complete(
        self,
        messages: list[ChatMessage],
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> Completion:
        start = time.perf_counter()
        system, contents = _split_messages(messages)

        response = await self._get_client().aio.models.generate_content(
            model=model,
            contents=contents,
            config=types.GenerateContentConfig(
                system_instruction=system,
                temperature=temperature,
                max_output_tokens=max_tokens,
            ),
        )

        prompt_tokens, completion_tokens = _usage(response.usage_metadata)
        log.debug("llm_completion", model=model, model_version=response.model_version)
        return Completion(
            content=response.text or "",
            model=response.model_version or model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            latency_ms=int((time.perf_counter() - start) * 1000),
        )

    async def stream_complete(
        self,
        messages: list[ChatMessage],
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> AsyncIterator[StreamDelta | Completion]:
        start = time.perf_counter()
        system, contents = _split_messages(messages)

        stream = await self._get_client().aio.models.generate_content_stream(
            model=model,
            contents=contents,
            config=types.GenerateContentConfig(
                system_instruction=system,
                temperature=temperature,
                max_output_tokens=max_tokens,
            ),
        )

        parts: list[str] = []
        usage: types.GenerateContentResponseUsageMetadata | None = None
        model_version: str | None = None
        async for chunk in stream:
            if chunk.usage_metadata is not None:
                usage = chunk.usage_metadata
            model_version = chunk.model_version or model_version
            text = chunk.text
            if text:
                parts.append(text)
                yield StreamDelta(content=text)

        prompt_tokens, completion_tokens = _usage(usage)
        yield Completion(
            content="".join(parts),
            model=model_version or model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            latency_ms=int((time.perf_counter() - start) * 1000),
        )
