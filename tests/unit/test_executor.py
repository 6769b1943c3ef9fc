import asyncio

import pytest

from conftest import RecordedSession
from testsmith.agents.executor import StepExecutor, classify, parse_wait_target
from testsmith.core.exceptions import ElementNotFoundError, StepError
from testsmith.core.schemas import FailureKind, Scenario, Step


@pytest.mark.parametrize(
    "target, expected",
    [
        ("1500", 1500),
        ("1500ms", 1500),
        ("1.5s", 1500),
        (" 2 S ", 2000),
        (".spinner", ".spinner"),
        ("", None),
        (None, None),
    ],
)
def test_parse_wait_target(target, expected):
    assert parse_wait_target(target) == expected


def test_classify():
    assert classify(ElementNotFoundError("#x")) == FailureKind.NOT_FOUND
    assert classify(asyncio.TimeoutError()) == FailureKind.TIMEOUT
    assert classify(StepError("odd")) == FailureKind.UNKNOWN
    assert classify(RuntimeError("?")) == FailureKind.UNKNOWN


async def run(login_app, *steps: Step):
    session = RecordedSession(login_app)
    failure = await StepExecutor(session).run(Scenario(name="t", steps=list(steps)))
    return failure, session


@pytest.mark.asyncio
async def test_assertions_pass(login_app):
    failure, session = await run(
        login_app,
        Step("navigate", "/login"),
        Step("assert", "title", "Sign"),
        Step("type", "#username", "demo"),
        Step("click", "#login-btn"),
        Step("wait", ".welcome"),
        Step("wait", "100"),
        Step("assert", "URL", "/dashboard"),
        Step("assert", ".welcome", "Welcome back"),
        Step("assert", '[data-testid="profile-link"]'),
    )
    assert failure is None
    assert session.typed == {"#username": "demo"}
    assert ("wait", 100) in session.actions


@pytest.mark.asyncio
async def test_wait_without_a_target_uses_its_value(login_app):
    failure, session = await run(login_app, Step("navigate", "/login"), Step("wait", value="250"), Step("wait"))
    assert failure is None
    assert session.actions[-2:] == [("wait", 250), ("wait", None)]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "step, kind",
    [
        (Step("assert", "url", "/admin"), FailureKind.ASSERTION_FAILED),
        (Step("assert", "title", "Admin"), FailureKind.ASSERTION_FAILED),
        (Step("assert", ".missing"), FailureKind.ASSERTION_FAILED),
        (Step("assert", "#login-btn", "Log in now"), FailureKind.ASSERTION_FAILED),
        (Step("click", "#nope"), FailureKind.NOT_FOUND),
        (Step("wait", ".never"), FailureKind.TIMEOUT),
        (Step("hover", "#username"), FailureKind.UNKNOWN),
    ],
)
async def test_first_failure_is_reported(login_app, step, kind):
    failure, session = await run(login_app, Step("navigate", "/login"), step, Step("click", "#login-btn"))
    assert failure.step_index == 1
    assert failure.kind == kind
    # Steps after the failure never run
    assert ("click", "#login-btn") not in session.actions


@pytest.mark.asyncio
async def test_unreachable_start_page(login_app):
    session = RecordedSession(login_app)
    scenario = Scenario(name="t", steps=[Step("click", "#x")], pages=["/gone"])
    failure = await StepExecutor(session).run(scenario)
    assert failure.step_index == -1
    assert failure.kind == FailureKind.NETWORK_ERROR
