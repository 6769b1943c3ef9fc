import json

import pytest

from conftest import FakeOracle, RecordedSession, session_factory
from testsmith.core.config import TestsmithConfig, ValidationConfig
from testsmith.core.exceptions import ConfigurationError
from testsmith.core.schemas import OracleResponse
from testsmith.emitter.codegen import UNVALIDATED_TAG
from testsmith.runner.pipeline import GenerationPipeline, validate_inputs

BASE = "http://app.test"

ANALYSIS = {"framework": "react", "routes": [{"path": "/login"}, {"path": "/dashboard"}], "components": ["Login"]}

PLAN = {
    "scenarios": [
        {
            "name": "Login succeeds",
            "steps": [
                {"action": "navigate", "target": "/login"},
                {"action": "type", "target": "#username", "value": "demo"},
                {"action": "type", "target": "#password", "value": "secret"},
                {"action": "click", "target": "#login-btn"},
                {"action": "assert", "target": "url", "value": "/dashboard"},
            ],
            "expectedResults": ["dashboard is shown"],
        }
    ]
}


def answer(messages, tools):
    # The analyst is offered tools, the planner is not
    return OracleResponse(text=json.dumps(ANALYSIS if tools else PLAN))


@pytest.fixture
def project(tmp_path):
    root = tmp_path / "app"
    root.mkdir()
    (root / "package.json").write_text('{"dependencies": {"react": "18"}}', encoding="utf-8")
    return root


@pytest.fixture
def config():
    return TestsmithConfig(validation=ValidationConfig(settle_ms=0, screenshots=False))


@pytest.mark.parametrize(
    "requirement, base_url",
    [("", BASE), ("   ", BASE), ("login", "localhost:3000"), ("login", "ftp://app.test"), ("login", "http://")],
)
def test_invalid_inputs(project, requirement, base_url):
    with pytest.raises(ConfigurationError):
        validate_inputs(requirement, project, base_url)


def test_missing_project(tmp_path):
    with pytest.raises(ConfigurationError):
        validate_inputs("login", tmp_path / "missing", BASE)


@pytest.mark.asyncio
async def test_full_run(project, config, login_app, tmp_path):
    session = RecordedSession(login_app)
    pipeline = GenerationPipeline(
        config,
        FakeOracle(responder=answer),
        session_factory=lambda base_url, shots: session_factory(session)(),
    )
    done = []
    out = tmp_path / "out"

    result = await pipeline.run(
        "users can log in", project, BASE, out, on_scenario_done=lambda i, s: done.append((i, s.validated))
    )

    assert done == [(0, True)]
    assert result.summary.success_rate == 1.0
    assert result.analysis.framework == "react"
    assert {"profileLink", "logOutButton"} <= set(result.selectors)
    assert list(result.timings) == ["analysis", "validation", "emission"]
    for name in ("analysis.json", "plan.json", "plan-constitution.json", "validated-plan.json",
                 "execution-summary.json", "report.md", "tests/ui-tests.spec.js", "pages/LoginPage.js"):
        assert (out / name).exists(), name

    spec = (out / "tests" / "ui-tests.spec.js").read_text(encoding="utf-8")
    assert 'test("Login succeeds"' in spec
    assert UNVALIDATED_TAG not in spec.split("\n", 1)[1]
    summary = json.loads((out / "execution-summary.json").read_text(encoding="utf-8"))
    assert summary["success"] is True
    assert summary["validation"]["validated"] == 1


@pytest.mark.asyncio
async def test_skip_validation_emits_unvalidated_tests(project, config, tmp_path):
    def no_browser(base_url, shots):
        raise AssertionError("browser must not be started")

    pipeline = GenerationPipeline(config, FakeOracle(responder=answer), session_factory=no_browser)
    out = tmp_path / "out"

    result = await pipeline.run("users can log in", project, BASE, out, skip_validation=True)

    assert result.summary is None
    assert list(result.timings) == ["analysis", "emission"]
    assert not (out / "validated-plan.json").exists()
    spec = (out / "tests" / "ui-tests.spec.js").read_text(encoding="utf-8")
    assert f'test("Login succeeds {UNVALIDATED_TAG}"' in spec
