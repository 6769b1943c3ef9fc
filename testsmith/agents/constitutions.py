"""Plan rules checked before the browser stage."""
from __future__ import annotations

from typing import Any, Dict, List

from testsmith.core.constitution import Constitution, ValidationLevel, ValidationRule
from testsmith.core.schemas import STEP_ACTIONS, Plan

# Actions whose target is mandatory; a bare wait uses its value or the load state
_TARGET_REQUIRED = {"navigate", "click", "type", "assert"}


def check_plan_non_empty(plan: Plan, context: Dict) -> tuple[bool, str, Dict]:
    """Plan must contain at least one scenario."""
    if not isinstance(plan, Plan):
        return False, "Output is not a Plan", {"type": type(plan).__name__}
    if not plan.scenarios:
        return False, "Plan has no scenarios", {"scenarios": 0}
    return True, "Plan has scenarios", {"scenarios": len(plan.scenarios)}


def check_scenarios_have_steps(plan: Plan, context: Dict) -> tuple[bool, str, Dict]:
    empty = [s.name for s in plan.scenarios if not s.steps]
    if empty:
        return False, f"Scenarios without steps: {len(empty)}", {"scenarios": empty}
    return True, "Every scenario has steps", {}


def check_step_validity(plan: Plan, context: Dict) -> tuple[bool, str, Dict]:
    """Every step needs a known action and the fields that action requires."""
    invalid: List[Dict[str, Any]] = []
    for scenario in plan.scenarios:
        for idx, step in enumerate(scenario.steps):
            if step.action not in STEP_ACTIONS:
                invalid.append({"scenario": scenario.name, "index": idx, "reason": f"Invalid action: {step.action!r}"})
            elif step.action in _TARGET_REQUIRED and not step.target:
                invalid.append({"scenario": scenario.name, "index": idx, "reason": f"{step.action} step missing target"})
            elif step.action == "type" and step.value is None:
                invalid.append({"scenario": scenario.name, "index": idx, "reason": "type step missing value"})
    if invalid:
        return False, f"Invalid steps found: {len(invalid)}", {"invalid_steps": invalid}
    return True, "All steps valid", {}


def check_unique_names(plan: Plan, context: Dict) -> tuple[bool, str, Dict]:
    seen, duplicates = set(), []
    for scenario in plan.scenarios:
        if scenario.name in seen:
            duplicates.append(scenario.name)
        seen.add(scenario.name)
    if duplicates:
        return False, "Duplicate scenario names", {"duplicates": duplicates}
    return True, "Scenario names unique", {}


def check_starts_with_navigation(plan: Plan, context: Dict) -> tuple[bool, str, Dict]:
    """Scenarios should open a page before interacting with it."""
    missing = [s.name for s in plan.scenarios if s.steps and s.steps[0].action != "navigate"]
    if missing:
        return False, "Scenarios not starting with navigate", {"scenarios": missing}
    return True, "Scenarios start with navigate", {}


PLAN_CONSTITUTION = Constitution(
    subject="plan",
    rules=[
        ValidationRule(
            name="plan_non_empty",
            description="Plan must have at least one scenario",
            level=ValidationLevel.CRITICAL,
            check=check_plan_non_empty,
        ),
        ValidationRule(
            name="scenario_steps",
            description="Every scenario must have at least one step",
            level=ValidationLevel.CRITICAL,
            check=check_scenarios_have_steps,
        ),
        ValidationRule(
            name="step_validity",
            description="All steps must have known actions and required fields",
            level=ValidationLevel.CRITICAL,
            check=check_step_validity,
        ),
        ValidationRule(
            name="unique_names",
            description="Scenario names should be unique",
            level=ValidationLevel.WARNING,
            check=check_unique_names,
        ),
        ValidationRule(
            name="starts_with_navigation",
            description="Scenarios should begin by navigating to a page",
            level=ValidationLevel.INFO,
            check=check_starts_with_navigation,
        ),
    ],
)
