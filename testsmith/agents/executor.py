from __future__ import annotations

import asyncio
import re
from typing import Optional, Union

from testsmith.core.exceptions import AssertionFailedError, StepError
from testsmith.core.logging import get_logger
from testsmith.core.schemas import FailureKind, Scenario, Step, StepFailure
from testsmith.tools.browser import BrowserSession

log = get_logger("executor")

_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s)?\s*$", re.I)


def parse_wait_target(target: Optional[str]) -> Union[int, str, None]:
    """``"1500"``/``"1500ms"``/``"1.5s"`` -> milliseconds, anything else is a locator."""
    if target is None or not str(target).strip():
        return None
    match = _DURATION.match(str(target))
    if not match:
        return str(target)
    amount = float(match.group(1))
    if (match.group(2) or "ms").lower() == "s":
        amount *= 1000
    return int(amount)


def classify(exc: BaseException) -> FailureKind:
    if isinstance(exc, StepError):
        return FailureKind(exc.kind)
    if isinstance(exc, asyncio.TimeoutError):
        return FailureKind.TIMEOUT
    return FailureKind.UNKNOWN


class StepExecutor:
    """
    Runs one attempt of a scenario, stopping at the first failing step.

    ``current_index`` tracks the step in flight so a caller that cancels the
    attempt can say where it stopped.
    """

    def __init__(self, session: BrowserSession, settle_ms: int = 0) -> None:
        self.session = session
        self.settle_ms = settle_ms
        self.current_index = -1

    async def run(self, scenario: Scenario) -> Optional[StepFailure]:
        self.current_index = -1
        if not scenario.steps or scenario.steps[0].action != "navigate":
            try:
                await self.session.navigate(scenario.start_page())
            except Exception as exc:
                return StepFailure(-1, classify(exc), str(exc))

        for index, step in enumerate(scenario.steps):
            self.current_index = index
            try:
                await self.perform(step)
            except Exception as exc:
                kind = classify(exc)
                log.info(
                    "step_failed",
                    scenario=scenario.name,
                    step=index + 1,
                    action=step.action,
                    target=step.target,
                    kind=kind.value,
                    error=str(exc),
                )
                return StepFailure(index, kind, str(exc))
            if self.settle_ms:
                await asyncio.sleep(self.settle_ms / 1000)
        return None

    async def perform(self, step: Step) -> None:
        session = self.session
        if step.action == "navigate":
            await session.navigate(step.target or "/")
        elif step.action == "click":
            await session.click(step.target)
        elif step.action == "type":
            await session.type(step.target, step.value or "")
        elif step.action == "wait":
            await session.wait_for(parse_wait_target(step.target or step.value))
        elif step.action == "assert":
            await self._assert(step)
        else:
            raise StepError(f"Unsupported action: {step.action}", step.action, step.target)

    async def _assert(self, step: Step) -> None:
        target = (step.target or "").strip()
        expected = step.value
        if target.lower() == "url":
            actual = await self.session.current_url()
            if expected and expected not in actual:
                raise AssertionFailedError(
                    f"URL {actual!r} does not contain {expected!r}", "assert", target
                )
            return
        if target.lower() == "title":
            actual = await self.session.title()
            if expected and expected not in actual:
                raise AssertionFailedError(
                    f"Title {actual!r} does not contain {expected!r}", "assert", target
                )
            return
        if not await self.session.is_present(target):
            raise AssertionFailedError(f"Expected element is absent: {target}", "assert", target)
        if expected:
            text = await self.session.text_of(target)
            if expected not in text:
                raise AssertionFailedError(
                    f"Text of {target} is {text[:80]!r}, expected {expected!r}", "assert", target
                )
