"""Bounded conversation driver alternating oracle queries and tool execution."""
from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import List, Optional

from testsmith.core.logging import get_logger
from testsmith.core.schemas import (
    ConversationState,
    Message,
    ToolCall,
    ToolErr,
    ToolResult,
)
from testsmith.llm.base import Oracle
from testsmith.tools.base import ToolRegistry

log = get_logger("agent_loop")

BUDGET_EXHAUSTED = "tool budget exhausted: call not executed"


@dataclass
class AgentLoopResult:
    """
    Outcome of one agent loop run.

    Attributes:
        final_text: The oracle's closing answer, or None when the loop was cut short
        history: Every message of the run, in order
        tool_calls_made: Tool calls actually executed
        exhausted: True when the tool-call budget ran out
        timed_out: True when the deadline expired
    """
    final_text: Optional[str]
    history: List[Message] = field(default_factory=list)
    tool_calls_made: int = 0
    exhausted: bool = False
    timed_out: bool = False

    @property
    def completed(self) -> bool:
        return self.final_text is not None


def render_tool_result(result: ToolResult) -> str:
    return json.dumps(result.to_payload(), ensure_ascii=False, default=str)


class AgentLoop:
    """
    Drives PLANNING -> EXECUTING_TOOLS -> PLANNING ... -> TERMINATED.

    The loop ends when the oracle answers without tool calls, when the tool-call
    count reaches ``max_tool_calls`` or when the deadline expires. Every call the
    oracle issues receives exactly one ``tool`` message, in issue order, before
    the oracle is queried again; calls beyond the remaining budget are answered
    with a budget error instead of being executed.

    Args:
        oracle: Reasoning oracle
        registry: Tools the oracle may call
        parallel_tools: Execute the calls of one turn concurrently (results keep issue order)

    Example:
        >>> loop = AgentLoop(oracle, registry)
        >>> result = await loop.run(messages, max_tool_calls=10)
        >>> result.tool_calls_made <= 10
        True
    """

    def __init__(self, oracle: Oracle, registry: ToolRegistry, parallel_tools: bool = False) -> None:
        self.oracle = oracle
        self.registry = registry
        self.parallel_tools = parallel_tools

    async def run(
        self,
        initial_messages: List[Message],
        max_tool_calls: int,
        deadline: Optional[float] = None,
    ) -> AgentLoopResult:
        """
        Run the conversation to termination.

        Args:
            initial_messages: Seed messages (system prompt, user request)
            max_tool_calls: Upper bound on tool executions
            deadline: Absolute ``time.monotonic()`` value after which the loop stops

        Returns:
            AgentLoopResult; ``final_text`` is None on budget exhaustion or timeout
        """
        if max_tool_calls < 0:
            raise ValueError("max_tool_calls must be >= 0")
        state = ConversationState(messages=list(initial_messages))
        if deadline is None:
            return await self._drive(state, max_tool_calls)

        remaining = deadline - time.monotonic()
        try:
            if remaining <= 0:
                raise asyncio.TimeoutError
            return await asyncio.wait_for(self._drive(state, max_tool_calls), timeout=remaining)
        except asyncio.TimeoutError:
            log.warning("agent_loop_deadline", tool_calls=state.tool_calls_made, messages=len(state.messages))
            return AgentLoopResult(
                final_text=None,
                history=list(state.messages),
                tool_calls_made=state.tool_calls_made,
                timed_out=True,
            )

    async def _drive(self, state: ConversationState, max_tool_calls: int) -> AgentLoopResult:
        schemas = self.registry.schemas()
        rounds = 0
        while True:
            if state.tool_calls_made >= max_tool_calls and rounds > 0:
                log.info("agent_loop_budget_exhausted", tool_calls=state.tool_calls_made, rounds=rounds)
                return AgentLoopResult(
                    final_text=None,
                    history=list(state.messages),
                    tool_calls_made=state.tool_calls_made,
                    exhausted=True,
                )

            budget_left = max_tool_calls - state.tool_calls_made
            response = await self.oracle.generate(
                state.messages,
                schemas if budget_left > 0 else None,
            )
            rounds += 1

            if not response.tool_calls:
                state.append(Message(role="assistant", content=response.text))
                log.info("agent_loop_completed", tool_calls=state.tool_calls_made, rounds=rounds)
                return AgentLoopResult(
                    final_text=response.text,
                    history=list(state.messages),
                    tool_calls_made=state.tool_calls_made,
                )

            calls = response.tool_calls
            state.append(Message(role="assistant", content=response.text, tool_calls=list(calls)))
            to_run, skipped = calls[:budget_left], calls[budget_left:]
            results = await self._execute(to_run)
            state.tool_calls_made += len(to_run)
            results.extend(ToolErr(BUDGET_EXHAUSTED) for _ in skipped)
            if skipped:
                log.warning("tool_calls_over_budget", skipped=[c.name for c in skipped])

            for call, result in zip(calls, results):
                state.append(
                    Message(
                        role="tool",
                        content=render_tool_result(result),
                        tool_call_id=call.id,
                        name=call.name,
                    )
                )
            log.debug(
                "agent_loop_round",
                round=rounds,
                calls=[c.name for c in calls],
                tool_calls=state.tool_calls_made,
            )

            if not to_run and state.tool_calls_made >= max_tool_calls:
                # Nothing could run this turn; end instead of re-asking forever
                return AgentLoopResult(
                    final_text=None,
                    history=list(state.messages),
                    tool_calls_made=state.tool_calls_made,
                    exhausted=True,
                )

    async def _execute(self, calls: List[ToolCall]) -> List[ToolResult]:
        if self.parallel_tools and len(calls) > 1:
            return list(await asyncio.gather(*(self.registry.execute(c) for c in calls)))
        results: List[ToolResult] = []
        for call in calls:
            results.append(await self.registry.execute(call))
        return results
