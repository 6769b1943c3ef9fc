"""Validation-refinement controller."""
from __future__ import annotations

import asyncio
import copy
import re
import time
from dataclasses import dataclass
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional

from testsmith.agents.executor import StepExecutor
from testsmith.agents.refiner import ScenarioRefiner
from testsmith.core import metrics
from testsmith.core.logging import get_logger
from testsmith.core.schemas import (
    FailureKind,
    PageObservation,
    Plan,
    Scenario,
    StepFailure,
    ValidationSummary,
)
from testsmith.core.selectors import SelectorMap
from testsmith.tools.browser import BrowserSession

log = get_logger("validator")

OBSERVE_TIMEOUT_S = 15.0

RetryPolicy = Callable[[StepFailure], bool]


def retry_uniform(failure: StepFailure) -> bool:
    """Every failure kind is worth a refinement."""
    return True


def retry_transient_only(failure: StepFailure) -> bool:
    """A failed assertion means the app disagrees with the scenario; stop early."""
    return failure.kind != FailureKind.ASSERTION_FAILED


RETRY_POLICIES: Dict[str, RetryPolicy] = {
    "uniform": retry_uniform,
    "transient_only": retry_transient_only,
}


@dataclass
class PlanValidation:
    plan: Plan
    selectors: SelectorMap
    summary: ValidationSummary


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-") or "scenario"


class ValidationController:
    """
    Replays scenarios against a live browser and refines the failing ones.

    Per attempt: run the steps until the first failure, capture a page
    observation no matter where the run stopped, then either mark the scenario
    validated (folding the observation into the selector maps) or ask the
    refiner for a better scenario and try again. A scenario that runs out of
    attempts is returned unvalidated with its error history.

    Args:
        refiner: Oracle-backed scenario refiner; None disables refinement
        selector_map: Plan-wide map every validated observation is merged into
        settle_ms: Pause after each step
        retry_policy: Name of a policy in RETRY_POLICIES
        screenshots: Take a full-page screenshot per attempt
        requirement: Original testing requirement, passed to the refiner
    """

    def __init__(
        self,
        refiner: Optional[ScenarioRefiner] = None,
        selector_map: Optional[SelectorMap] = None,
        settle_ms: int = 0,
        retry_policy: str = "uniform",
        screenshots: bool = False,
        requirement: str = "",
    ) -> None:
        if retry_policy not in RETRY_POLICIES:
            raise ValueError(f"Unknown retry policy: {retry_policy}")
        self.refiner = refiner
        self.selector_map = selector_map if selector_map is not None else SelectorMap()
        self.settle_ms = settle_ms
        self.should_retry = RETRY_POLICIES[retry_policy]
        self.screenshots = screenshots
        self.requirement = requirement

    async def validate(
        self,
        scenario: Scenario,
        session: BrowserSession,
        max_iterations: int,
        deadline: Optional[float] = None,
    ) -> Scenario:
        """
        Validate one scenario with at most ``max_iterations`` attempts.

        Args:
            scenario: Scenario to validate; it is not modified
            session: Live browser session
            max_iterations: Attempt budget (>= 1)
            deadline: Absolute ``time.monotonic()`` value bounding the whole validation

        Returns:
            A new Scenario with ``validated``, ``attempts``, ``errors``,
            ``selectors`` and ``last_observation`` filled in
        """
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        current = copy.deepcopy(scenario)
        current.validated = False
        errors: List[str] = list(current.errors)

        for iteration in range(1, max_iterations + 1):
            remaining = self._remaining(deadline)
            if remaining is not None and remaining <= 0:
                errors.append(f"attempt {current.attempts + 1}: deadline exceeded before the attempt started")
                log.warning("validation_deadline", scenario=current.name, attempts=current.attempts)
                break

            current.attempts += 1
            failure = await self._attempt(current, session, remaining)
            observation = await self._observe(current, session)
            current.last_observation = observation

            if failure is None:
                observed = SelectorMap.from_observation(observation)
                own = SelectorMap()
                own.merge_flat(current.selectors)
                own.merge(observed)
                current.selectors = own.as_dict()
                self.selector_map.merge(observed)
                current.validated = True
                metrics.validation_attempts.labels("success").inc()
                log.info(
                    "scenario_validated",
                    scenario=current.name,
                    attempts=current.attempts,
                    selectors=len(current.selectors),
                )
                break

            metrics.validation_attempts.labels("failure").inc()
            step = current.steps[failure.step_index] if 0 <= failure.step_index < len(current.steps) else None
            errors.append(f"attempt {current.attempts}: {failure.describe(step)}")
            log.info(
                "attempt_failed",
                scenario=current.name,
                attempt=current.attempts,
                kind=failure.kind.value,
                step=failure.step_index + 1,
            )

            if iteration == max_iterations:
                break
            if not self.should_retry(failure):
                log.info("validation_abandoned", scenario=current.name, kind=failure.kind.value)
                break
            if self.refiner is not None:
                current = await self._refine(current, failure, observation, deadline)

        current.errors = errors
        metrics.attempts_per_scenario.observe(current.attempts)
        if current.validated:
            metrics.scenarios_validated.inc()
        else:
            metrics.scenarios_failed.inc()
            log.warning(
                "scenario_unvalidated",
                scenario=current.name,
                attempts=current.attempts,
                last_error=errors[-1] if errors else None,
            )
        return current

    async def validate_plan(
        self,
        plan: Plan,
        session_factory: Callable[[], AsyncContextManager[BrowserSession]],
        max_iterations: int,
        deadline_s: Optional[float] = None,
        concurrency: int = 1,
        on_scenario_done: Optional[Callable[[int, Scenario], Any]] = None,
    ) -> PlanValidation:
        """
        Validate every scenario of ``plan``.

        Scenarios run one after another on a single session unless
        ``concurrency`` > 1, in which case each in-flight scenario gets its own
        session from ``session_factory``. The returned plan keeps the input order
        and cardinality.
        """
        scenarios = plan.scenarios

        def _deadline() -> Optional[float]:
            return time.monotonic() + deadline_s if deadline_s else None

        if concurrency <= 1 or len(scenarios) <= 1:
            results: List[Scenario] = []
            if scenarios:
                async with session_factory() as session:
                    for index, scenario in enumerate(scenarios):
                        result = await self.validate(scenario, session, max_iterations, _deadline())
                        results.append(result)
                        if on_scenario_done:
                            on_scenario_done(index, result)
        else:
            semaphore = asyncio.Semaphore(concurrency)

            async def _one(index: int, scenario: Scenario) -> Scenario:
                async with semaphore:
                    async with session_factory() as session:
                        result = await self.validate(scenario, session, max_iterations, _deadline())
                if on_scenario_done:
                    on_scenario_done(index, result)
                return result

            results = list(await asyncio.gather(*(_one(i, s) for i, s in enumerate(scenarios))))

        validated_plan = Plan(scenarios=results, requirement=plan.requirement, base_url=plan.base_url)
        summary = ValidationSummary.from_scenarios(results)
        log.info(
            "plan_validated",
            total=summary.total,
            validated=summary.validated,
            success_rate=round(summary.success_rate, 3),
        )
        return PlanValidation(plan=validated_plan, selectors=self.selector_map, summary=summary)

    @staticmethod
    def _remaining(deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return deadline - time.monotonic()

    async def _attempt(
        self,
        scenario: Scenario,
        session: BrowserSession,
        remaining: Optional[float],
    ) -> Optional[StepFailure]:
        executor = StepExecutor(session, settle_ms=self.settle_ms)
        if remaining is None:
            return await executor.run(scenario)
        try:
            return await asyncio.wait_for(executor.run(scenario), timeout=remaining)
        except asyncio.TimeoutError:
            return StepFailure(
                executor.current_index,
                FailureKind.CANCELLED,
                "attempt cut off by the validation deadline",
            )

    async def _observe(self, scenario: Scenario, session: BrowserSession) -> PageObservation:
        try:
            observation = await asyncio.wait_for(
                session.extract_interactive_elements(), timeout=OBSERVE_TIMEOUT_S
            )
        except Exception as exc:
            log.warning("observation_failed", scenario=scenario.name, error=str(exc))
            url = ""
            try:
                url = await session.current_url()
            except Exception as url_exc:
                log.debug("current_url_unavailable", error=str(url_exc))
            return PageObservation(url=url, errors=[f"observation failed: {exc}"])

        if self.screenshots:
            try:
                observation.screenshot = await session.screenshot(
                    f"{_slug(scenario.name)}-attempt-{scenario.attempts}"
                )
            except Exception as exc:
                observation.errors.append(f"screenshot failed: {exc}")
        return observation

    async def _refine(
        self,
        scenario: Scenario,
        failure: StepFailure,
        observation: PageObservation,
        deadline: Optional[float],
    ) -> Scenario:
        remaining = self._remaining(deadline)
        call = self.refiner.refine(scenario, failure, observation, self.requirement)
        if remaining is None:
            return await call
        if remaining <= 0:
            call.close()
            return scenario
        try:
            return await asyncio.wait_for(call, timeout=remaining)
        except asyncio.TimeoutError:
            log.warning("refinement_deadline", scenario=scenario.name)
            return scenario
