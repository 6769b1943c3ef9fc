from __future__ import annotations

import asyncio
import os
import time
from typing import Any, Dict, List, Optional

import httpx
from aiolimiter import AsyncLimiter
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from testsmith.core import metrics
from testsmith.core.exceptions import LLMAPIError, LLMTimeoutError
from testsmith.core.logging import get_logger
from testsmith.core.schemas import Message, OracleResponse, ToolCall, ToolSchema
from testsmith.llm.utils import parse_tool_arguments, to_openai_tools

log = get_logger("local")


def to_ollama_messages(messages: List[Message]) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for msg in messages:
        entry: Dict[str, Any] = {"role": msg.role, "content": msg.content}
        if msg.role == "assistant" and msg.tool_calls:
            entry["tool_calls"] = [
                {"function": {"name": c.name, "arguments": c.arguments}} for c in msg.tool_calls
            ]
        out.append(entry)
    return out


class LocalOracle:
    """Ollama ``/api/chat`` oracle."""

    def __init__(
        self,
        model: Optional[str] = None,
        host: Optional[str] = None,
        timeout: float = 120.0,
        temperature: float = 0.2,
        rate_limit_per_minute: int = 30,
    ) -> None:
        self.name = "local"
        self.model = model or os.getenv("LOCAL_MODEL", "llama3.1:8b")
        self.host = host or os.getenv("OLLAMA_HOST", "http://localhost:11434")
        self.timeout = timeout
        self.temperature = temperature
        self.rate_limiter = AsyncLimiter(max_rate=rate_limit_per_minute, time_period=60)
        self._client: Optional[httpx.AsyncClient] = None
        self._call_seq = 0

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.host, timeout=self.timeout)
        return self._client

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    def _next_call_id(self) -> str:
        # Ollama does not assign tool-call ids
        self._call_seq += 1
        return f"call_{self._call_seq}"

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(LLMTimeoutError),
        reraise=True,
    )
    async def generate(
        self,
        messages: List[Message],
        tools: Optional[List[ToolSchema]] = None,
    ) -> OracleResponse:
        client = self._get_client()
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": to_ollama_messages(messages),
            "stream": False,
            "options": {"temperature": self.temperature},
        }
        tool_specs = to_openai_tools(tools)
        if tool_specs:
            payload["tools"] = tool_specs

        started = time.perf_counter()
        async with self.rate_limiter:
            try:
                resp = await asyncio.wait_for(client.post("/api/chat", json=payload), timeout=self.timeout)
                resp.raise_for_status()
                data = resp.json()
            except (asyncio.TimeoutError, httpx.TimeoutException):
                metrics.oracle_calls.labels(self.name, "timeout").inc()
                log.error("llm_timeout", provider=self.name, timeout=self.timeout)
                raise LLMTimeoutError(self.name, self.timeout) from None
            except httpx.HTTPStatusError as e:
                metrics.oracle_calls.labels(self.name, "error").inc()
                status = e.response.status_code
                log.error("api_error", provider=self.name, status_code=status, error=str(e))
                raise LLMAPIError(self.name, status, str(e), retryable=status >= 500) from e
            except (httpx.HTTPError, ValueError) as e:
                metrics.oracle_calls.labels(self.name, "error").inc()
                log.error("local_oracle_failed", error=str(e), error_type=type(e).__name__)
                raise LLMAPIError(self.name, None, f"Connection error: {e}", retryable=True) from e
        metrics.oracle_latency_seconds.labels(self.name).observe(time.perf_counter() - started)
        metrics.oracle_calls.labels(self.name, "ok").inc()

        message = data.get("message") or {}
        calls = []
        for raw in message.get("tool_calls") or []:
            function = raw.get("function") or {}
            calls.append(
                ToolCall(
                    id=raw.get("id") or self._next_call_id(),
                    name=function.get("name", ""),
                    arguments=parse_tool_arguments(function.get("arguments")),
                )
            )
        log.debug(
            "oracle_response",
            provider=self.name,
            model=self.model,
            tool_calls=len(calls),
            prompt_tokens=data.get("prompt_eval_count"),
            completion_tokens=data.get("eval_count"),
        )
        return OracleResponse(text=message.get("content") or "", tool_calls=calls)
