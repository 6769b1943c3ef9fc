from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from testsmith.agents.constitutions import PLAN_CONSTITUTION
from testsmith.core.constitution import ConstitutionReport, ConstitutionViolation
from testsmith.core.exceptions import LLMError, OracleParseError, PlannerError
from testsmith.core.logging import get_logger
from testsmith.core.schemas import Message, Plan, ProjectAnalysis, Scenario, Step
from testsmith.llm.base import Oracle
from testsmith.llm.utils import extract_json_from_content

log = get_logger("planner")

ACTION_ALIASES = {
    "goto": "navigate", "visit": "navigate", "open": "navigate",
    "fill": "type", "input": "type", "enter": "type",
    "press": "click", "tap": "click", "submit": "click",
    "expect": "assert", "verify": "assert", "check": "assert",
    "sleep": "wait", "pause": "wait",
}

SYSTEM_PROMPT = """You are an expert QA engineer specializing in UI test automation.
Turn the testing requirement and the project analysis into concrete, executable test scenarios.

Each step uses one of these actions:
- navigate: {"action": "navigate", "target": "/login"}  (path relative to the app URL)
- click:    {"action": "click", "target": "button[type='submit']"}
- type:     {"action": "type", "target": "input[name='username']", "value": "demo"}
- wait:     {"action": "wait", "target": "1000"} or {"action": "wait", "target": ".dashboard"}
- assert:   {"action": "assert", "target": "url", "value": "/dashboard"}
            {"action": "assert", "target": "title", "value": "Dashboard"}
            {"action": "assert", "target": ".welcome", "value": "Welcome"}

Selector priority: data-testid > id > stable class > aria-label/name/placeholder > visible text.
Cover the happy path first, then important error and edge cases. Start every scenario with navigate.

Respond with JSON only:
{"scenarios": [{"name": "...", "description": "...", "priority": "high|medium|low",
                "pages": ["/login"], "steps": [...], "expectedResults": ["..."]}]}"""


def smoke_plan(requirement: str, base_url: str) -> Plan:
    """Conservative plan used when the oracle's answer cannot be parsed."""
    return Plan(
        scenarios=[
            Scenario(
                name="Smoke: application loads",
                description="Open the application's start page",
                steps=[
                    Step(action="navigate", target="/", description="Open the start page"),
                    Step(action="wait", target="body", description="Wait for the page body"),
                ],
                expected_results=["The start page renders"],
                pages=["/"],
                priority="high",
            )
        ],
        requirement=requirement,
        base_url=base_url,
    )


def _normalize_step(raw: Dict[str, Any]) -> Step:
    step = Step.from_dict(raw)
    step.action = ACTION_ALIASES.get(step.action, step.action)
    return step


def parse_plan(content: str, requirement: str, base_url: str, max_scenarios: int) -> Plan:
    """
    Parse the planner's answer into a Plan.

    Accepts ``{"scenarios": [...]}`` or a bare list of scenarios.

    Raises:
        OracleParseError: If no scenario list can be recovered
    """
    try:
        data = extract_json_from_content(content)
    except ValueError as e:
        raise OracleParseError(str(e), expected="scenario plan JSON", preview=content[:200]) from e
    raw_scenarios = data.get("scenarios") if isinstance(data, dict) else data
    if not isinstance(raw_scenarios, list):
        raise OracleParseError("No 'scenarios' list", expected="scenario plan JSON", preview=content[:200])

    scenarios: List[Scenario] = []
    names: Dict[str, int] = {}
    for raw in raw_scenarios[:max_scenarios]:
        if not isinstance(raw, dict):
            continue
        scenario = Scenario.from_dict({**raw, "steps": []})
        scenario.steps = [_normalize_step(s) for s in raw.get("steps") or [] if isinstance(s, dict)]
        count = names.get(scenario.name, 0) + 1
        names[scenario.name] = count
        if count > 1:
            scenario.name = f"{scenario.name} ({count})"
        scenarios.append(scenario)
    return Plan(scenarios=scenarios, requirement=requirement, base_url=base_url)


class ScenarioPlanner:
    """
    Produces the initial Plan from the requirement and the project analysis.

    Args:
        oracle: Reasoning oracle
        max_scenarios: Cap on scenarios kept from the oracle's answer

    Raises (from ``plan``):
        PlannerError: The oracle could not be reached, or the plan broke a critical rule
    """

    def __init__(self, oracle: Oracle, max_scenarios: int = 8) -> None:
        self.oracle = oracle
        self.max_scenarios = max_scenarios
        self.last_report: Optional[ConstitutionReport] = None

    async def plan(self, requirement: str, analysis: ProjectAnalysis, base_url: str) -> Plan:
        user = (
            f"Testing requirement: {requirement}\n"
            f"Application URL: {base_url}\n\n"
            f"Project analysis:\n{json.dumps(analysis.to_dict(), ensure_ascii=False, indent=2)}"
        )
        messages = [Message(role="system", content=SYSTEM_PROMPT), Message(role="user", content=user)]
        try:
            response = await self.oracle.generate(messages)
        except LLMError as e:
            raise PlannerError(f"Oracle unavailable while planning: {e.message}", {"provider": e.provider}) from e

        try:
            plan = parse_plan(response.text, requirement, base_url, self.max_scenarios)
        except OracleParseError as e:
            log.warning("plan_unparseable", error=e.message, preview=e.preview)
            plan = smoke_plan(requirement, base_url)

        try:
            self.last_report = PLAN_CONSTITUTION.must_pass(plan)
        except ConstitutionViolation as e:
            raise PlannerError(e.message, {"rules": ",".join(f.rule_name for f in e.failures)}) from e

        log.info("plan_created", scenarios=len(plan.scenarios), steps=sum(len(s.steps) for s in plan.scenarios))
        return plan
