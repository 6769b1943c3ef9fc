from __future__ import annotations

import asyncio
import os
import time
from dataclasses import dataclass
from typing import List, Optional

from aiolimiter import AsyncLimiter
from openai import APIError, APIStatusError, AsyncOpenAI, RateLimitError
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
from testsmith.llm.utils import parse_tool_arguments, to_openai_messages, to_openai_tools

log = get_logger("openai")


@dataclass
class OpenAICompatibleEndpoint:
    """Credentials and defaults for one OpenAI-compatible service."""
    label: str
    api_key: str
    base_url: Optional[str]
    model: str


def endpoint_from_env() -> Optional[OpenAICompatibleEndpoint]:
    """
    Pick the first OpenAI-compatible service configured in the environment.

    DeepSeek is preferred, then GLM, then OpenAI itself.
    """
    if os.getenv("DEEPSEEK_TOKEN"):
        return OpenAICompatibleEndpoint(
            label="deepseek",
            api_key=os.environ["DEEPSEEK_TOKEN"],
            base_url=os.getenv("DEEPSEEK_BASE_URL", "https://api.deepseek.com/v1"),
            model=os.getenv("DEEPSEEK_MODEL", "deepseek-chat"),
        )
    glm_key = os.getenv("GLM_API_KEY") or os.getenv("GLM_TOKEN")
    if glm_key:
        return OpenAICompatibleEndpoint(
            label="glm",
            api_key=glm_key,
            base_url=os.getenv("LLM_BASE_URL", "https://open.bigmodel.cn/api/paas/v4"),
            model=os.getenv("LLM_MODEL", "glm-4-air"),
        )
    if os.getenv("OPENAI_API_KEY"):
        return OpenAICompatibleEndpoint(
            label="openai",
            api_key=os.environ["OPENAI_API_KEY"],
            base_url=os.getenv("OPENAI_BASE_URL") or None,
            model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        )
    return None


class OpenAIOracle:
    """Chat-completions oracle for OpenAI and OpenAI-compatible services."""

    def __init__(
        self,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        temperature: float = 0.2,
        max_tokens: int = 4000,
        rate_limit_per_minute: int = 30,
        endpoint: Optional[OpenAICompatibleEndpoint] = None,
    ) -> None:
        endpoint = endpoint or endpoint_from_env()
        if endpoint is None:
            raise ConfigurationError(
                "No OpenAI-compatible credentials found",
                {"expected": "DEEPSEEK_TOKEN, GLM_API_KEY or OPENAI_API_KEY"},
            )
        self.name = endpoint.label
        self.model = model or endpoint.model
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client = AsyncOpenAI(
            api_key=endpoint.api_key,
            base_url=base_url or endpoint.base_url,
            timeout=timeout,
        )
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
        kwargs = {
            "model": self.model,
            "messages": to_openai_messages(messages),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        tool_specs = to_openai_tools(tools)
        if tool_specs:
            kwargs["tools"] = tool_specs
            kwargs["tool_choice"] = "auto"

        started = time.perf_counter()
        async with self.rate_limiter:
            try:
                resp = await asyncio.wait_for(
                    self.client.chat.completions.create(**kwargs),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError:
                metrics.oracle_calls.labels(self.name, "timeout").inc()
                log.error("llm_timeout", provider=self.name, timeout=self.timeout)
                raise LLMTimeoutError(self.name, self.timeout) from None
            except RateLimitError as e:
                metrics.oracle_calls.labels(self.name, "rate_limited").inc()
                retry_after = e.response.headers.get("retry-after") if e.response is not None else None
                log.warning("rate_limit_exceeded", provider=self.name, retry_after=retry_after)
                raise LLMRateLimitError(
                    self.name, int(retry_after) if retry_after and retry_after.isdigit() else None
                ) from e
            except APIStatusError as e:
                metrics.oracle_calls.labels(self.name, "error").inc()
                log.error("api_error", provider=self.name, status_code=e.status_code, error=str(e))
                raise LLMAPIError(self.name, e.status_code, str(e), retryable=e.status_code >= 500) from e
            except APIError as e:
                metrics.oracle_calls.labels(self.name, "error").inc()
                log.error("api_error", provider=self.name, error=str(e))
                raise LLMAPIError(self.name, None, str(e), retryable=False) from e
        metrics.oracle_latency_seconds.labels(self.name).observe(time.perf_counter() - started)

        if not resp.choices:
            metrics.oracle_calls.labels(self.name, "error").inc()
            raise LLMAPIError(self.name, None, "No choices in response", retryable=False)
        metrics.oracle_calls.labels(self.name, "ok").inc()

        message = resp.choices[0].message
        calls = [
            ToolCall(
                id=call.id,
                name=call.function.name,
                arguments=parse_tool_arguments(call.function.arguments),
            )
            for call in (message.tool_calls or [])
        ]
        usage = getattr(resp, "usage", None)
        log.debug(
            "oracle_response",
            provider=self.name,
            model=self.model,
            tool_calls=len(calls),
            prompt_tokens=getattr(usage, "prompt_tokens", None),
            completion_tokens=getattr(usage, "completion_tokens", None),
        )
        return OracleResponse(text=message.content or "", tool_calls=calls)
