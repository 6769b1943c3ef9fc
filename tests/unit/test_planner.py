import json

import pytest

from conftest import FakeOracle
from testsmith.agents.constitutions import PLAN_CONSTITUTION
from testsmith.agents.planner import ScenarioPlanner, parse_plan, smoke_plan
from testsmith.core.exceptions import LLMAPIError, OracleParseError, PlannerError
from testsmith.core.schemas import OracleResponse, Plan, ProjectAnalysis, Scenario, Step

BASE = "http://app.test"

PLAN_JSON = {
    "scenarios": [
        {
            "name": "Login",
            "description": "valid credentials",
            "priority": "high",
            "pages": ["/login"],
            "steps": [
                {"action": "goto", "target": "/login"},
                {"action": "fill", "selector": "#username", "value": "demo"},
                {"action": "press", "target": "#login-btn"},
                {"action": "verify", "target": "url", "value": "/dashboard"},
            ],
            "expectedResults": ["dashboard is shown"],
        },
        {"name": "Login", "steps": [{"action": "navigate", "target": "/login"}]},
    ]
}


def test_parse_plan_normalizes_actions_and_names():
    plan = parse_plan("```json\n" + json.dumps(PLAN_JSON) + "\n```", "login", BASE, max_scenarios=8)

    assert [s.name for s in plan.scenarios] == ["Login", "Login (2)"]
    assert [s.action for s in plan.scenarios[0].steps] == ["navigate", "type", "click", "assert"]
    assert plan.scenarios[0].steps[1].target == "#username"
    assert plan.base_url == BASE


def test_parse_plan_accepts_a_bare_list_and_caps_scenarios():
    content = json.dumps([{"name": f"s{i}", "steps": [{"action": "navigate", "target": "/"}]} for i in range(5)])
    assert len(parse_plan(content, "r", BASE, max_scenarios=2).scenarios) == 2


def test_parse_plan_rejects_garbage():
    with pytest.raises(OracleParseError):
        parse_plan("I could not think of any tests", "r", BASE, max_scenarios=8)
    with pytest.raises(OracleParseError):
        parse_plan('{"tests": []}', "r", BASE, max_scenarios=8)


def test_smoke_plan_passes_the_constitution():
    report = PLAN_CONSTITUTION.validate(smoke_plan("r", BASE))
    assert report.passed
    assert report.warnings == []


def test_constitution_flags_bad_steps():
    plan = Plan(scenarios=[
        Scenario(name="a", steps=[Step("navigate", "/"), Step("type", "#q")]),
        Scenario(name="a", steps=[Step("hover", "#menu")]),
    ])
    report = PLAN_CONSTITUTION.validate(plan)
    assert not report.passed
    assert [f.rule_name for f in report.failures] == ["step_validity"]
    assert [w.rule_name for w in report.warnings] == ["unique_names"]
    reasons = [i["reason"] for i in report.failures[0].details["invalid_steps"]]
    assert reasons == ["type step missing value", "Invalid action: 'hover'"]


def test_constitution_accepts_waits_without_a_target():
    plan = Plan(scenarios=[
        Scenario(name="a", steps=[Step("navigate", "/"), Step("wait", value="1000"), Step("wait")]),
        Scenario(name="b", steps=[Step("navigate", "/"), Step("click")]),
    ])
    report = PLAN_CONSTITUTION.validate(plan)
    invalid = report.failures[0].details["invalid_steps"]
    assert [(i["scenario"], i["reason"]) for i in invalid] == [("b", "click step missing target")]


@pytest.mark.asyncio
async def test_planner_uses_the_oracle_answer():
    oracle = FakeOracle([OracleResponse(text=json.dumps(PLAN_JSON))])
    planner = ScenarioPlanner(oracle)

    plan = await planner.plan("login works", ProjectAnalysis(framework="react"), BASE)

    assert len(plan.scenarios) == 2
    assert planner.last_report.passed
    prompt = oracle.calls[0]["messages"][1].content
    assert "login works" in prompt and '"framework": "react"' in prompt


@pytest.mark.asyncio
async def test_unparseable_answer_falls_back_to_smoke_plan():
    planner = ScenarioPlanner(FakeOracle([OracleResponse(text="sorry, no JSON today")]))
    plan = await planner.plan("anything", ProjectAnalysis(), BASE)
    assert [s.name for s in plan.scenarios] == ["Smoke: application loads"]


@pytest.mark.asyncio
async def test_unreachable_oracle_is_a_planner_error():
    planner = ScenarioPlanner(FakeOracle([LLMAPIError("fake", 503, "unavailable", retryable=True)]))
    with pytest.raises(PlannerError):
        await planner.plan("anything", ProjectAnalysis(), BASE)


@pytest.mark.asyncio
async def test_plan_breaking_critical_rules_is_a_planner_error():
    answer = {"scenarios": [{"name": "Empty", "steps": []}]}
    planner = ScenarioPlanner(FakeOracle([OracleResponse(text=json.dumps(answer))]))
    with pytest.raises(PlannerError) as info:
        await planner.plan("anything", ProjectAnalysis(), BASE)
    assert "scenario_steps" in str(info.value)
