from __future__ import annotations

from typing import List, Optional, Protocol

from testsmith.core.schemas import Message, OracleResponse, ToolSchema


class Oracle(Protocol):
    """Stateless request/response reasoning service."""

    name: str

    async def generate(
        self,
        messages: List[Message],
        tools: Optional[List[ToolSchema]] = None,
    ) -> OracleResponse:
        ...
