"""Model calling convention used by the engine."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Protocol

from loguru import logger

from hopline.errors import ModelCallError
from hopline.types import ToolCall


@dataclass(frozen=True)
class ModelRequest:
    system_prompt: str
    messages: list[dict[str, Any]]
    tools: list[dict[str, Any]] = field(default_factory=list)
    purpose: str = "turn"


@dataclass(frozen=True)
class ModelResponse:
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)


class ModelClient(Protocol):
    """Anything that can answer one chat completion request."""

    async def complete(self, request: ModelRequest) -> ModelResponse: ...


class EchoModelClient:
    """Offline model that answers with the latest user text."""

    async def complete(self, request: ModelRequest) -> ModelResponse:
        if request.purpose == "summary":
            return ModelResponse(content=f"{len(request.messages)} earlier messages")
        for message in reversed(request.messages):
            if message.get("role") == "user":
                return ModelResponse(content=str(message.get("content", "")))
            if message.get("role") == "tool":
                return ModelResponse(content=f"tool result: {message.get('content', '')}")
        return ModelResponse(content="")


async def complete_with_retry(
    client: ModelClient,
    request: ModelRequest,
    *,
    max_attempts: int,
    backoff_seconds: float,
    timeout_seconds: float | None,
) -> ModelResponse:
    """Call the model, retrying with exponential backoff; raise ModelCallError when exhausted."""
    last_error: str = "unknown"
    for attempt in range(1, max_attempts + 1):
        try:
            async with asyncio.timeout(timeout_seconds):
                return await client.complete(request)
        except TimeoutError:
            last_error = f"model_timeout: no response within {timeout_seconds}s"
        except Exception as exc:
            last_error = f"model_call_error: {exc!s}"
        logger.warning("model.call.retry attempt={} max_attempts={} error={}", attempt, max_attempts, last_error)
        if attempt < max_attempts:
            await asyncio.sleep(backoff_seconds * 2 ** (attempt - 1))
    raise ModelCallError(last_error)
