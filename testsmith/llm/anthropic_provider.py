from __future__ import annotations

import asyncio
import os
import time
from typing import Any, Dict, List, Optional

import anthropic
from aiolimiter import AsyncLimiter
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from testsmith.core import metrics
from testsmith.core.exceptions import (
    ConfigurationError,
    LLMAPIError,
    LLMRateLimitError,
    LLMTimeoutError,
)
from testsmith.core.logging import get_logger
from testsmith.core.schemas import Message, OracleResponse, ToolCall, ToolSchema

log = get_logger("anthropic")


def to_anthropic_messages(messages: List[Message]) -> tuple[str, List[Dict[str, Any]]]:
    """Split out the system prompt and fold tool results into user turns."""
    system_parts: List[str] = []
    out: List[Dict[str, Any]] = []
    for msg in messages:
        if msg.role == "system":
            system_parts.append(msg.content)
            continue
        if msg.role == "tool":
            block = {
                "type": "tool_result",
                "tool_use_id": msg.tool_call_id or "",
                "content": msg.content,
            }
            # Consecutive tool results belong to one user turn
            if out and out[-1]["role"] == "user" and isinstance(out[-1]["content"], list):
                out[-1]["content"].append(block)
            else:
                out.append({"role": "user", "content": [block]})
            continue
        if msg.role == "assistant" and msg.tool_calls:
            blocks: List[Dict[str, Any]] = []
            if msg.content:
                blocks.append({"type": "text", "text": msg.content})
            blocks.extend(
                {"type": "tool_use", "id": c.id, "name": c.name, "input": c.arguments}
                for c in msg.tool_calls
            )
            out.append({"role": "assistant", "content": blocks})
            continue
        out.append({"role": msg.role, "content": msg.content})
    return "\n\n".join(system_parts), out


class AnthropicOracle:
    def __init__(
        self,
        model: Optional[str] = None,
        timeout: float = 60.0,
        temperature: float = 0.2,
        max_tokens: int = 4000,
        rate_limit_per_minute: int = 30,
    ) -> None:
        api_key = os.getenv("ANTHROPIC_API_KEY")
        if not api_key:
            raise ConfigurationError("ANTHROPIC_API_KEY is required for the anthropic provider")
        self.name = "anthropic"
        self.client = anthropic.AsyncAnthropic(api_key=api_key, timeout=timeout)
        self.model = model or os.getenv("ANTHROPIC_MODEL", "claude-3-5-sonnet-latest")
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.rate_limiter = AsyncLimiter(max_rate=rate_limit_per_minute, time_period=60)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((LLMTimeoutError, LLMRateLimitError)),
        reraise=True,
    )
    async def generate(
        self,
        messages: List[Message],
        tools: Optional[List[ToolSchema]] = None,
    ) -> OracleResponse:
        system, wire_messages = to_anthropic_messages(messages)
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": wire_messages,
        }
        if system:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters}
                for t in tools
            ]

        started = time.perf_counter()
        async with self.rate_limiter:
            try:
                msg = await asyncio.wait_for(self.client.messages.create(**kwargs), timeout=self.timeout)
            except asyncio.TimeoutError:
                metrics.oracle_calls.labels(self.name, "timeout").inc()
                log.error("llm_timeout", provider=self.name, timeout=self.timeout)
                raise LLMTimeoutError(self.name, self.timeout) from None
            except anthropic.RateLimitError as e:
                metrics.oracle_calls.labels(self.name, "rate_limited").inc()
                log.warning("rate_limit_exceeded", provider=self.name)
                raise LLMRateLimitError(self.name) from e
            except anthropic.APIStatusError as e:
                metrics.oracle_calls.labels(self.name, "error").inc()
                log.error("api_error", provider=self.name, status_code=e.status_code, error=str(e))
                raise LLMAPIError(self.name, e.status_code, str(e), retryable=e.status_code >= 500) from e
            except anthropic.APIError as e:
                metrics.oracle_calls.labels(self.name, "error").inc()
                log.error("api_error", provider=self.name, error=str(e))
                raise LLMAPIError(self.name, None, str(e), retryable=False) from e
        metrics.oracle_latency_seconds.labels(self.name).observe(time.perf_counter() - started)
        metrics.oracle_calls.labels(self.name, "ok").inc()

        text_parts: List[str] = []
        calls: List[ToolCall] = []
        for block in msg.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                arguments = block.input if isinstance(block.input, dict) else {"_raw": block.input}
                calls.append(ToolCall(id=block.id, name=block.name, arguments=arguments))
        return OracleResponse(text="".join(text_parts), tool_calls=calls)
