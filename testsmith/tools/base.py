"""Named, schema-validated tools and the registry that executes them."""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError, best_match

from testsmith.core import metrics
from testsmith.core.exceptions import ConfigurationError
from testsmith.core.logging import get_logger
from testsmith.core.schemas import ToolCall, ToolErr, ToolOk, ToolResult, ToolSchema

log = get_logger("tools")

_TOOL_NAME = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_-]{0,63}$")


@dataclass
class Tool:
    """
    A capability the oracle may invoke.

    Attributes:
        name: Unique tool name exposed to the oracle
        description: What the tool does, written for the oracle
        parameters: JSON-schema object describing the arguments
        handler: Coroutine function receiving the validated arguments as keywords
        timeout_s: Per-call timeout, defaults to the registry's
    """
    name: str
    description: str
    parameters: Dict[str, Any]
    handler: Callable[..., Awaitable[Any]]
    timeout_s: Optional[float] = None

    def schema(self) -> ToolSchema:
        return ToolSchema(name=self.name, description=self.description, parameters=self.parameters)


def validate_tool_schema(tool: Tool) -> Draft202012Validator:
    """
    Check the tool's declared schema and build the validator for its arguments.

    Arguments are passed to the handler as keywords, so undeclared properties
    are rejected unless the schema says otherwise.

    Raises:
        ConfigurationError: Bad tool name, non-object parameters or an invalid JSON schema
    """
    if not _TOOL_NAME.match(tool.name or ""):
        raise ConfigurationError("Invalid tool name", {"tool": tool.name})
    params = tool.parameters
    if not isinstance(params, dict) or params.get("type") != "object":
        raise ConfigurationError("Tool parameters must be a JSON-schema object", {"tool": tool.name})
    try:
        Draft202012Validator.check_schema(params)
    except SchemaError as e:
        raise ConfigurationError(
            "Tool parameters are not a valid JSON schema",
            {"tool": tool.name, "error": e.message},
        ) from e
    undeclared = set(params.get("required", [])) - set(params.get("properties", {}))
    if undeclared:
        raise ConfigurationError(
            "Required parameters must be declared properties",
            {"tool": tool.name, "parameters": sorted(undeclared)},
        )
    return Draft202012Validator({"additionalProperties": False, **params})


def check_arguments(validator: Draft202012Validator, arguments: Any) -> Optional[str]:
    """Return the most relevant schema violation, or None when the arguments fit."""
    error = best_match(validator.iter_errors(arguments))
    if error is None:
        return None
    if error.absolute_path:
        return f"{'.'.join(str(p) for p in error.absolute_path)}: {error.message}"
    return error.message


def _present(arguments: Any) -> Any:
    # Oracles send null for optional parameters they leave out
    if isinstance(arguments, dict):
        return {k: v for k, v in arguments.items() if v is not None}
    return arguments


class ToolRegistry:
    """
    Holds tools and executes oracle-issued calls.

    ``execute`` never raises: unknown tools, bad arguments, handler errors and
    timeouts all come back as ``ToolErr``.
    """

    def __init__(self, tools: Iterable[Tool] = (), default_timeout_s: float = 30.0) -> None:
        self.default_timeout_s = default_timeout_s
        self._tools: Dict[str, Tool] = {}
        self._validators: Dict[str, Draft202012Validator] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        validator = validate_tool_schema(tool)
        if tool.name in self._tools:
            raise ConfigurationError("Duplicate tool name", {"tool": tool.name})
        self._tools[tool.name] = tool
        self._validators[tool.name] = validator

    def extend(self, tools: Iterable[Tool]) -> None:
        for tool in tools:
            self.register(tool)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    def schemas(self) -> List[ToolSchema]:
        return [t.schema() for t in self._tools.values()]

    async def execute(self, call: ToolCall) -> ToolResult:
        tool = self._tools.get(call.name)
        if tool is None:
            metrics.tool_calls.labels(call.name, "unknown").inc()
            log.warning("tool_unknown", tool=call.name, call_id=call.id)
            return ToolErr(f"unknown tool: {call.name}")

        arguments = _present(call.arguments)
        problem = check_arguments(self._validators[call.name], arguments)
        if problem:
            metrics.tool_calls.labels(call.name, "invalid").inc()
            log.warning("tool_arguments_invalid", tool=call.name, problem=problem)
            return ToolErr(f"invalid arguments for {call.name}: {problem}")

        timeout = tool.timeout_s or self.default_timeout_s
        try:
            data = await asyncio.wait_for(tool.handler(**arguments), timeout=timeout)
        except asyncio.TimeoutError:
            metrics.tool_calls.labels(call.name, "timeout").inc()
            log.warning("tool_timeout", tool=call.name, timeout=timeout)
            return ToolErr(f"{call.name} timed out after {timeout}s")
        except Exception as exc:
            metrics.tool_calls.labels(call.name, "error").inc()
            log.warning("tool_failed", tool=call.name, error=str(exc), error_type=type(exc).__name__)
            return ToolErr(f"{call.name} failed: {exc}")

        metrics.tool_calls.labels(call.name, "ok").inc()
        log.debug("tool_executed", tool=call.name, call_id=call.id)
        return ToolOk(data)
