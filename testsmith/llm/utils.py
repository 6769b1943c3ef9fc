"""Utility functions for oracle providers."""
from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional

from testsmith.core.schemas import Message, ToolSchema

_FENCE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)


def _balanced_span(content: str, open_ch: str, close_ch: str) -> Optional[str]:
    """Return the first balanced ``open_ch ... close_ch`` span, honouring JSON strings."""
    start = content.find(open_ch)
    while start >= 0:
        depth = 0
        in_string = False
        escaped = False
        for pos in range(start, len(content)):
            ch = content[pos]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == open_ch:
                depth += 1
            elif ch == close_ch:
                depth -= 1
                if depth == 0:
                    return content[start:pos + 1]
        start = content.find(open_ch, start + 1)
    return None


def extract_json_from_content(content: str) -> Any:
    """
    Extract JSON from oracle response content.

    Handles JSON wrapped in markdown code blocks, JSON surrounded by prose,
    and plain JSON text. Objects are preferred over arrays.

    Args:
        content: Raw content string from the oracle

    Returns:
        Parsed JSON value (dict or list)

    Raises:
        ValueError: If no valid JSON can be extracted
    """
    if not content or not isinstance(content, str):
        raise ValueError("Content must be a non-empty string")

    candidates: List[str] = []
    for block in _FENCE.findall(content):
        if block.strip():
            candidates.append(block.strip())
    candidates.append(content.strip())

    last_error: Optional[Exception] = None
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError as e:
            last_error = e
        for open_ch, close_ch in (("{", "}"), ("[", "]")):
            span = _balanced_span(candidate, open_ch, close_ch)
            if span is None:
                continue
            try:
                return json.loads(span)
            except json.JSONDecodeError as e:
                last_error = e

    if last_error is None:
        raise ValueError("No JSON object or array found in content")
    raise ValueError(f"Failed to parse JSON: {last_error}")


def extract_json_object(content: str) -> Dict[str, Any]:
    """Like :func:`extract_json_from_content` but insists on an object."""
    data = extract_json_from_content(content)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_tool_arguments(raw: Any) -> Dict[str, Any]:
    """Tool-call arguments arrive as a JSON string or an already-decoded mapping."""
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return {"_raw": raw}
    return data if isinstance(data, dict) else {"_raw": data}


def to_openai_messages(messages: List[Message]) -> List[Dict[str, Any]]:
    """Convert transcript messages to the chat-completions wire format."""
    out: List[Dict[str, Any]] = []
    for msg in messages:
        if msg.role == "tool":
            out.append({
                "role": "tool",
                "tool_call_id": msg.tool_call_id or "",
                "content": msg.content,
            })
        elif msg.role == "assistant" and msg.tool_calls:
            out.append({
                "role": "assistant",
                "content": msg.content or None,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {
                            "name": call.name,
                            "arguments": json.dumps(call.arguments, ensure_ascii=False),
                        },
                    }
                    for call in msg.tool_calls
                ],
            })
        else:
            out.append({"role": msg.role, "content": msg.content})
    return out


def to_openai_tools(tools: Optional[List[ToolSchema]]) -> Optional[List[Dict[str, Any]]]:
    if not tools:
        return None
    return [
        {
            "type": "function",
            "function": {
                "name": t.name,
                "description": t.description,
                "parameters": t.parameters,
            },
        }
        for t in tools
    ]
