from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from testsmith.agents.agent_loop import AgentLoop, AgentLoopResult
from testsmith.core.config import AnalysisConfig
from testsmith.core.exceptions import LLMError, OracleParseError, PlannerError
from testsmith.core.logging import get_logger
from testsmith.core.schemas import Message, ProjectAnalysis
from testsmith.llm.base import Oracle
from testsmith.llm.utils import extract_json_object
from testsmith.tools.base import ToolRegistry

log = get_logger("analyst")

SYSTEM_PROMPT = """You are an expert frontend developer and test engineer.
Explore the project with the available tools and work out its framework, routes,
key pages and components, and how authentication works (if at all).
Read only what you need: start with package.json and the router or pages directory.

When you are done, answer with JSON only:
{"framework": "react|vue|angular|svelte|next|nuxt|unknown",
 "routes": [{"path": "/login", "name": "Login", "description": "..."}],
 "components": ["LoginForm", "..."],
 "authFlow": {"loginPath": "/login", "fields": ["username", "password"], "notes": "..."},
 "notes": "anything else a tester should know"}"""

_ROUTE_PATH = re.compile(r"""path\s*[:=]\s*['"](/[^'"]*)['"]""")
_ROUTE_FILE_DIRS = ("pages", "routes", "views", "app")
_FRAMEWORK_DEPS = [
    ("next", "next"), ("nuxt", "nuxt"), ("@angular/core", "angular"),
    ("svelte", "svelte"), ("vue", "vue"), ("react", "react"),
]


@dataclass
class AnalysisOutcome:
    analysis: ProjectAnalysis
    loop: AgentLoopResult


def parse_analysis(content: str) -> ProjectAnalysis:
    """
    Parse the analyst's closing answer.

    Raises:
        OracleParseError: If the answer holds no JSON object
    """
    try:
        data = extract_json_object(content)
    except ValueError as e:
        raise OracleParseError(str(e), expected="project analysis JSON", preview=content[:200]) from e

    routes: List[Dict[str, Any]] = []
    for route in data.get("routes") or []:
        if isinstance(route, str):
            routes.append({"path": route})
        elif isinstance(route, dict) and route.get("path"):
            routes.append({k: str(v) for k, v in route.items() if v is not None})
    auth = data.get("authFlow") or data.get("auth_flow") or {}
    return ProjectAnalysis(
        framework=str(data.get("framework") or "unknown").lower(),
        routes=routes,
        components=[str(c) for c in data.get("components") or []],
        auth_flow=auth if isinstance(auth, dict) else {"notes": str(auth)},
        notes=str(data.get("notes") or ""),
    )


def analysis_from_transcript(history: List[Message]) -> ProjectAnalysis:
    """Best-effort analysis from whatever the tools returned before the loop stopped."""
    framework = "unknown"
    route_paths: List[str] = []
    components: List[str] = []

    for message in history:
        if message.role != "tool":
            continue
        try:
            payload = json.loads(message.content)
        except json.JSONDecodeError:
            continue
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            continue

        for file in data.get("files") or []:
            path = Path(file)
            if path.suffix in (".jsx", ".tsx", ".vue", ".svelte") and path.stem[:1].isupper():
                components.append(path.stem)
            if any(part in _ROUTE_FILE_DIRS for part in path.parts[:-1]):
                stem = path.stem.lower()
                route_paths.append("/" if stem in ("index", "home", "page") else f"/{stem}")

        content = data.get("content")
        if isinstance(content, str):
            route_paths.extend(_ROUTE_PATH.findall(content))
            if str(data.get("path", "")).endswith("package.json") and framework == "unknown":
                try:
                    manifest = json.loads(content)
                except json.JSONDecodeError:
                    manifest = {}
                deps = {**manifest.get("dependencies", {}), **manifest.get("devDependencies", {})}
                framework = next((name for dep, name in _FRAMEWORK_DEPS if dep in deps), "unknown")

    seen = set()
    routes = []
    for path in route_paths:
        if path not in seen:
            seen.add(path)
            routes.append({"path": path})
    return ProjectAnalysis(
        framework=framework,
        routes=routes,
        components=sorted(set(components)),
        notes="Reconstructed from tool results; the analysis did not finish.",
        complete=False,
    )


class ProjectAnalyst:
    """Runs the agent loop over the project's file tree (and optionally the live app)."""

    def __init__(self, oracle: Oracle, registry: ToolRegistry, config: Optional[AnalysisConfig] = None) -> None:
        self.config = config or AnalysisConfig()
        self.loop = AgentLoop(oracle, registry, parallel_tools=self.config.parallel_tools)

    async def analyze(self, requirement: str, base_url: str = "") -> AnalysisOutcome:
        user = (
            f"Testing requirement: {requirement}\n"
            f"Application URL: {base_url or 'unknown'}\n"
            "Analyze the project so that UI test scenarios can be written for this requirement."
        )
        deadline = time.monotonic() + self.config.deadline_s if self.config.deadline_s else None
        try:
            result = await self.loop.run(
                [Message(role="system", content=SYSTEM_PROMPT), Message(role="user", content=user)],
                max_tool_calls=self.config.max_tool_calls,
                deadline=deadline,
            )
        except LLMError as e:
            raise PlannerError(
                f"Oracle unavailable while analyzing the project: {e.message}", {"provider": e.provider}
            ) from e

        if result.final_text is None:
            analysis = analysis_from_transcript(result.history)
            log.warning(
                "analysis_incomplete",
                exhausted=result.exhausted,
                timed_out=result.timed_out,
                tool_calls=result.tool_calls_made,
                routes=len(analysis.routes),
            )
            return AnalysisOutcome(analysis, result)

        try:
            analysis = parse_analysis(result.final_text)
        except OracleParseError as e:
            log.warning("analysis_unparseable", error=e.message, preview=e.preview)
            analysis = analysis_from_transcript(result.history)
            analysis.notes = result.final_text[:2000]
        log.info(
            "analysis_complete",
            framework=analysis.framework,
            routes=len(analysis.routes),
            components=len(analysis.components),
            tool_calls=result.tool_calls_made,
        )
        return AnalysisOutcome(analysis, result)
