"""Integration tests against a real browser on local HTML files."""
from __future__ import annotations

import pytest
import pytest_asyncio

from testsmith.agents.executor import StepExecutor
from testsmith.agents.validator import ValidationController
from testsmith.core.config import ValidationConfig
from testsmith.core.exceptions import ElementNotFoundError, SessionStartError, StepTimeoutError
from testsmith.core.schemas import FailureKind, Scenario, Step
from testsmith.tools.browser import PlaywrightSession

pytestmark = pytest.mark.integration

LOGIN_HTML = """<!doctype html>
<html>
<head><title>Sign in</title></head>
<body>
  <form id="login" onsubmit="event.preventDefault(); document.getElementById('welcome').hidden = false;">
    <input id="username" name="username" type="text">
    <input id="password" name="password" type="password">
    <button id="login-btn" type="submit">Sign in</button>
  </form>
  <p id="welcome" class="welcome" hidden>Welcome back</p>
  <a href="dashboard.html" data-testid="dashboard-link">Dashboard</a>
</body>
</html>
"""


@pytest.fixture
def site(tmp_path):
    (tmp_path / "login.html").write_text(LOGIN_HTML, encoding="utf-8")
    (tmp_path / "dashboard.html").write_text(
        "<html><head><title>Dashboard</title></head><body><h1>Dashboard</h1></body></html>",
        encoding="utf-8",
    )
    return tmp_path


@pytest_asyncio.fixture
async def session(site):
    browser = PlaywrightSession(
        site.as_uri() + "/",
        validation_config=ValidationConfig(step_timeout_ms=1000, navigation_timeout_ms=5000),
        screenshot_dir=site / "shots",
    )
    try:
        await browser.start()
    except SessionStartError as e:
        pytest.skip(f"browser unavailable: {e}")
    yield browser
    await browser.close()


@pytest.mark.asyncio
async def test_actions_and_observation(session):
    await session.navigate("login.html")
    assert await session.title() == "Sign in"

    observation = await session.extract_interactive_elements()
    tags = [e.tag for e in observation.elements]
    assert tags.count("input") == 2
    assert "button" in tags

    await session.type("#username", "demo")
    await session.click("#login-btn")
    await session.wait_for("#welcome")
    assert "Welcome back" in await session.text_of(".welcome")

    shot = await session.screenshot("after-login")
    assert shot.endswith("after-login.png")


@pytest.mark.asyncio
async def test_failures_are_step_errors(session):
    await session.navigate("login.html")
    with pytest.raises(ElementNotFoundError):
        await session.click("#does-not-exist")
    with pytest.raises(StepTimeoutError):
        await session.wait_for("#also-missing")
    assert not await session.is_present("#also-missing")


@pytest.mark.asyncio
async def test_executor_runs_a_scenario(session):
    scenario = Scenario(
        name="Login",
        steps=[
            Step("navigate", "login.html"),
            Step("type", "#username", "demo"),
            Step("click", "#login-btn"),
            Step("assert", "#welcome", "Welcome"),
            Step("click", '[data-testid="dashboard-link"]'),
            Step("wait", "h1"),
            Step("assert", "title", "Dashboard"),
        ],
    )
    assert await StepExecutor(session).run(scenario) is None


@pytest.mark.asyncio
async def test_controller_against_a_real_page(session):
    good = Scenario(name="Good", steps=[Step("navigate", "login.html"), Step("click", "#login-btn")])
    bad = Scenario(name="Bad", steps=[Step("navigate", "login.html"), Step("click", "button.submit")])
    controller = ValidationController(screenshots=True)

    validated_good = await controller.validate(good, session, max_iterations=2)
    validated_bad = await controller.validate(bad, session, max_iterations=2)

    assert validated_good.validated and validated_good.attempts == 1
    assert "#username" in validated_good.selectors.values()
    assert not validated_bad.validated
    assert validated_bad.attempts == 2
    assert validated_bad.errors[0].startswith("attempt 1: step 2 click(button.submit): not_found")
    assert validated_bad.last_observation.screenshot.endswith("bad-attempt-2.png")
    assert FailureKind.NOT_FOUND.value in validated_bad.errors[-1]
