from __future__ import annotations

import json
from dataclasses import asdict, replace
from typing import Any, Dict, List, Optional

from testsmith.core.exceptions import LLMError, OracleParseError
from testsmith.core.logging import get_logger
from testsmith.core.schemas import (
    STEP_ACTIONS,
    Message,
    PageObservation,
    Scenario,
    Step,
    StepFailure,
)
from testsmith.core.selectors import resolve_selector, role_name_for
from testsmith.llm.base import Oracle
from testsmith.llm.utils import extract_json_object

log = get_logger("refiner")

SYSTEM_PROMPT = """You are a test automation expert repairing a UI test scenario that failed against the live application.

Rewrite the scenario so it matches the page as observed. Rules:
- Allowed actions: navigate, click, type, wait, assert.
- navigate targets are paths relative to the base URL (e.g. "/login").
- click/type targets are CSS or Playwright selectors taken from the observed elements.
- wait targets are a selector or a duration in milliseconds.
- assert targets are "url", "title" or a selector; value is the expected substring.
- Selector priority: data-testid > id > stable class > aria-label/name/placeholder > visible text.
  For inputs prefer name or placeholder; for buttons prefer text or aria-label.

Respond with JSON only:
{"steps": [{"action": "...", "target": "...", "value": "...", "description": "..."}],
 "selectors": {"<old selector or role name>": "<new selector>"}}
Both keys are optional; omit "steps" to keep the current steps and only remap selectors."""

MAX_ELEMENTS_IN_PROMPT = 40


def describe_observation(observation: Optional[PageObservation]) -> Dict[str, Any]:
    if observation is None:
        return {}
    elements = []
    for element in observation.elements[:MAX_ELEMENTS_IN_PROMPT]:
        resolved = resolve_selector(element)
        elements.append({
            "role": role_name_for(element),
            "tag": element.tag,
            "text": element.text[:60],
            "selector": resolved.locator,
            "attributes": element.attributes,
        })
    return {
        "title": observation.title,
        "url": observation.url,
        "elements": elements,
        "forms": observation.forms,
        "errors": observation.errors,
    }


def apply_selector_hints(steps: List[Step], hints: Dict[str, str]) -> List[Step]:
    """Swap step targets named by a hint (old locator or role name) for the hinted locator."""
    if not hints:
        return steps
    return [
        replace(step, target=hints[step.target]) if step.target in hints else step
        for step in steps
    ]


def parse_refinement(content: str, current: Scenario) -> Scenario:
    """
    Merge an oracle refinement into ``current``.

    Raises:
        OracleParseError: If the answer holds no usable steps or hints
    """
    try:
        data = extract_json_object(content)
    except ValueError as e:
        raise OracleParseError(str(e), expected="refined scenario JSON", preview=content[:200]) from e

    steps = current.steps
    raw_steps = data.get("steps")
    if raw_steps is not None:
        if not isinstance(raw_steps, list):
            raise OracleParseError("'steps' is not a list", expected="refined scenario JSON", preview=content[:200])
        parsed = [Step.from_dict(s) for s in raw_steps if isinstance(s, dict)]
        parsed = [s for s in parsed if s.action in STEP_ACTIONS]
        if not parsed:
            raise OracleParseError("No valid steps in refinement", expected="refined scenario JSON", preview=content[:200])
        steps = parsed

    raw_hints = data.get("selectors") or {}
    hints = {str(k): str(v) for k, v in raw_hints.items() if v} if isinstance(raw_hints, dict) else {}
    if raw_steps is None and not hints:
        raise OracleParseError("Refinement changes nothing", expected="refined scenario JSON", preview=content[:200])

    return replace(current, steps=apply_selector_hints(list(steps), hints))


class ScenarioRefiner:
    """Asks the oracle for a repaired scenario after a failed attempt."""

    def __init__(self, oracle: Oracle) -> None:
        self.oracle = oracle

    async def refine(
        self,
        scenario: Scenario,
        failure: StepFailure,
        observation: Optional[PageObservation],
        requirement: str = "",
    ) -> Scenario:
        """
        Return a refined copy of ``scenario``, or ``scenario`` itself when the
        oracle is unreachable or its answer cannot be used.
        """
        failed_step = scenario.steps[failure.step_index] if 0 <= failure.step_index < len(scenario.steps) else None
        payload = {
            "requirement": requirement,
            "scenario": {
                "name": scenario.name,
                "description": scenario.description,
                "steps": [asdict(s) for s in scenario.steps],
                "expectedResults": scenario.expected_results,
            },
            "failure": {
                "step": failure.step_index + 1,
                "kind": failure.kind.value,
                "message": failure.message,
                "failedStep": asdict(failed_step) if failed_step else None,
            },
            "observedPage": describe_observation(observation),
        }
        messages = [
            Message(role="system", content=SYSTEM_PROMPT),
            Message(role="user", content=json.dumps(payload, ensure_ascii=False, indent=2)),
        ]
        try:
            response = await self.oracle.generate(messages)
        except LLMError as e:
            log.warning("refinement_unavailable", scenario=scenario.name, error=str(e))
            return scenario

        try:
            refined = parse_refinement(response.text, scenario)
        except OracleParseError as e:
            log.warning("refinement_unparseable", scenario=scenario.name, error=e.message, preview=e.preview)
            return scenario

        log.info(
            "scenario_refined",
            scenario=scenario.name,
            steps_before=len(scenario.steps),
            steps_after=len(refined.steps),
        )
        return refined
