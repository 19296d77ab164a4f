"""
Inference providers for Gatekeeper.

The controller never talks to a provider itself; callers wrap provider calls
in operations they submit. This module is pluggable - use the mock provider
for tests and simulations, or any OpenAI-compatible endpoint in production.
"""

import asyncio
import os
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

Messages = list[dict[str, str]]


class ProviderError(RuntimeError):
    """The inference provider failed to produce a completion."""
    pass


@dataclass
class Completion:
    """Result of one inference call."""
    text: str
    input_tokens: int
    output_tokens: int
    model: str
    latency_ms: int


def estimate_tokens(text: str) -> int:
    """Rough token estimate (4 characters per token)."""
    return len(text) // 4


class InferenceProvider(ABC):
    """Abstract base class for inference providers."""

    @abstractmethod
    async def complete(
        self,
        model: str,
        messages: Messages,
        *,
        json_mode: bool = False,
    ) -> Completion:
        """Run one chat completion."""
        pass


class MockProvider(InferenceProvider):
    """
    Mock provider for testing.

    Simulates latency, random failures and token usage. A responder callable
    can supply the response text for a message list.
    """

    def __init__(
        self,
        latency: float = 0.0,
        failure_rate: float = 0.0,
        responder: Optional[Callable[[str, Messages], str]] = None,
        seed: Optional[int] = None,
    ):
        self.latency = latency
        self.failure_rate = failure_rate
        self.responder = responder
        self._random = random.Random(seed)
        self.calls: list[tuple[str, Messages]] = []

    async def complete(
        self,
        model: str,
        messages: Messages,
        *,
        json_mode: bool = False,
    ) -> Completion:
        self.calls.append((model, messages))
        prompt = "".join(m.get("content", "") for m in messages)

        actual_latency = self.latency * (0.8 + self._random.random() * 0.4) if self.latency else 0.0
        if actual_latency:
            await asyncio.sleep(actual_latency)

        if self._random.random() < self.failure_rate:
            raise ProviderError(f"Simulated failure from {model}")

        if self.responder is not None:
            text = self.responder(model, messages)
        elif json_mode:
            text = '{"status": "ok"}'
        else:
            text = f"[Mock response from {model}]"

        return Completion(
            text=text,
            input_tokens=estimate_tokens(prompt),
            output_tokens=max(1, estimate_tokens(text)),
            model=model,
            latency_ms=int(actual_latency * 1000),
        )


class OpenAICompatibleProvider(InferenceProvider):
    """
    Provider for OpenAI-compatible chat completion endpoints (OpenRouter by default).

    Requires OPENROUTER_API_KEY environment variable unless api_key is given.
    """

    def __init__(self, api_key: Optional[str] = None, base_url: str = OPENROUTER_BASE_URL):
        self.api_key = api_key or os.getenv("OPENROUTER_API_KEY")
        self.base_url = base_url
        self._client = None

    @property
    def client(self):
        if self._client is None:
            try:
                from openai import AsyncOpenAI
            except ImportError:
                raise ImportError("openai package required. Install with: pip install openai")
            self._client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)
        return self._client

    async def complete(
        self,
        model: str,
        messages: Messages,
        *,
        json_mode: bool = False,
    ) -> Completion:
        start_time = time.time()
        kwargs = {"model": model, "messages": messages}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = await self.client.chat.completions.create(**kwargs)
        except Exception as e:
            raise ProviderError(f"{model} request failed: {e}") from e

        latency_ms = int((time.time() - start_time) * 1000)
        text = response.choices[0].message.content or ""
        usage = response.usage

        return Completion(
            text=text,
            input_tokens=usage.prompt_tokens if usage else estimate_tokens(str(messages)),
            output_tokens=usage.completion_tokens if usage else estimate_tokens(text),
            model=model,
            latency_ms=latency_ms,
        )
