"""
Inference provider backed by Ollama's OpenAI-compatible chat endpoint.

    POST {base_url}/chat/completions
    {"model": ..., "messages": [...], "stream": false, ...options}
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol

import aiohttp
from pydantic import BaseModel, Field

from .logger import Logger


class OllamaError(Exception):
    """Raised when the inference endpoint fails or answers nonsense."""


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass(frozen=True)
class InferenceResult:
    content: str
    model: str
    usage: Optional[TokenUsage] = None


class InferenceProvider(Protocol):
    async def complete(
        self, model: str, messages: list[dict[str, str]], **options: Any
    ) -> InferenceResult: ...


class OllamaConfig(BaseModel):
    """Ollama endpoint configuration."""

    base_url: str = Field(default="http://localhost:11434/v1", description="API base URL")
    timeout: float = Field(default=300.0, ge=1.0, le=3600.0, description="Request timeout")


class OllamaClient:
    """InferenceProvider talking to a local (or remote) Ollama server."""

    def __init__(self, config: Optional[OllamaConfig] = None) -> None:
        self._config = config or OllamaConfig()
        self._logger = Logger("ollama")

    @property
    def config(self) -> OllamaConfig:
        return self._config

    async def complete(
        self, model: str, messages: list[dict[str, str]], **options: Any
    ) -> InferenceResult:
        """
        Run a non-streaming chat completion.

        Raises:
            OllamaError: on transport errors, HTTP errors or malformed responses
        """
        url = f"{self._config.base_url.rstrip('/')}/chat/completions"
        payload: dict[str, Any] = {"model": model, "messages": messages, "stream": False}
        payload.update({k: v for k, v in options.items() if v is not None})

        timeout = aiohttp.ClientTimeout(total=self._config.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, json=payload) as resp:
                    resp.raise_for_status()
                    data = await resp.json()
        except aiohttp.ClientError as e:
            raise OllamaError(f"request to {url} failed: {e}") from e

        return self._parse_response(data, model)

    def _parse_response(self, data: Any, model: str) -> InferenceResult:
        if not isinstance(data, dict):
            raise OllamaError("unexpected response body")

        choices = data.get("choices") or []
        content = ""
        if choices and isinstance(choices[0], dict):
            content = (choices[0].get("message") or {}).get("content") or ""

        usage = None
        raw_usage = data.get("usage")
        if isinstance(raw_usage, dict) and "total_tokens" in raw_usage:
            usage = TokenUsage(
                prompt_tokens=int(raw_usage.get("prompt_tokens", 0)),
                completion_tokens=int(raw_usage.get("completion_tokens", 0)),
                total_tokens=int(raw_usage["total_tokens"]),
            )

        self._logger.debug(
            "completion_received",
            model=data.get("model", model),
            chars=len(content),
            total_tokens=usage.total_tokens if usage else None,
        )
        return InferenceResult(content=content, model=data.get("model", model), usage=usage)
