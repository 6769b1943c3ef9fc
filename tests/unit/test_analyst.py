import json

import pytest

from conftest import FakeOracle
from testsmith.agents.analyst import ProjectAnalyst, analysis_from_transcript, parse_analysis
from testsmith.core.config import AnalysisConfig
from testsmith.core.exceptions import LLMAPIError, OracleParseError, PlannerError
from testsmith.core.schemas import Message, OracleResponse, ToolCall
from testsmith.tools.base import ToolRegistry
from testsmith.tools.filesystem import ProjectFiles, file_tools


@pytest.fixture
def react_project(tmp_path):
    (tmp_path / "package.json").write_text(
        json.dumps({"dependencies": {"react": "^18.2.0", "react-router-dom": "^6.0.0"}}), encoding="utf-8"
    )
    pages = tmp_path / "src" / "pages"
    pages.mkdir(parents=True)
    (pages / "Login.jsx").write_text("export default () => null;", encoding="utf-8")
    (pages / "Home.jsx").write_text("export default () => null;", encoding="utf-8")
    (tmp_path / "src" / "App.jsx").write_text(
        "<Route path='/settings' element={<Settings/>} />\nconst r = { path: \"/profile\" };",
        encoding="utf-8",
    )
    return tmp_path


def registry_for(root) -> ToolRegistry:
    return ToolRegistry(file_tools(ProjectFiles(root)))


def test_parse_analysis_accepts_loose_shapes():
    analysis = parse_analysis(
        'Done. {"framework": "Vue", "routes": ["/", {"path": "/login", "name": "Login"}],'
        ' "components": ["LoginForm"], "authFlow": "form login", "notes": "uses vuex"}'
    )
    assert analysis.framework == "vue"
    assert analysis.routes == [{"path": "/"}, {"path": "/login", "name": "Login"}]
    assert analysis.auth_flow == {"notes": "form login"}
    assert analysis.complete


def test_parse_analysis_rejects_prose():
    with pytest.raises(OracleParseError):
        parse_analysis("It is a React app with a login page.")


@pytest.mark.asyncio
async def test_analysis_completes_with_the_oracle_answer(react_project):
    final = {"framework": "react", "routes": [{"path": "/login"}], "components": ["Login"]}
    oracle = FakeOracle([
        OracleResponse(tool_calls=[ToolCall(id="1", name="read_file", arguments={"path": "package.json"})]),
        OracleResponse(text=json.dumps(final)),
    ])
    outcome = await ProjectAnalyst(oracle, registry_for(react_project)).analyze("login", "http://app.test")

    assert outcome.analysis.framework == "react"
    assert outcome.analysis.complete
    assert outcome.loop.tool_calls_made == 1


@pytest.mark.asyncio
async def test_exhausted_budget_reconstructs_from_tool_results(react_project):
    script = [
        OracleResponse(tool_calls=[ToolCall(id="1", name="list_files", arguments={})]),
        OracleResponse(tool_calls=[ToolCall(id="2", name="read_file", arguments={"path": "package.json"})]),
        OracleResponse(tool_calls=[ToolCall(id="3", name="read_file", arguments={"path": "src/App.jsx"})]),
    ]
    analyst = ProjectAnalyst(FakeOracle(script), registry_for(react_project), AnalysisConfig(max_tool_calls=3))

    outcome = await analyst.analyze("login", "http://app.test")

    analysis = outcome.analysis
    assert outcome.loop.exhausted
    assert not analysis.complete
    assert analysis.framework == "react"
    assert {"Home", "Login", "App"} <= set(analysis.components)
    paths = [r["path"] for r in analysis.routes]
    assert paths[:2] == ["/", "/login"]
    assert "/profile" in paths


def test_transcript_ignores_failed_and_foreign_messages():
    history = [
        Message(role="user", content='{"data": {"files": ["src/pages/Admin.jsx"]}}'),
        Message(role="tool", content='{"ok": false, "error": "boom"}'),
        Message(role="tool", content="not json"),
    ]
    analysis = analysis_from_transcript(history)
    assert analysis.routes == []
    assert analysis.components == []
    assert analysis.framework == "unknown"


@pytest.mark.asyncio
async def test_unparseable_final_answer_keeps_it_as_notes(react_project):
    oracle = FakeOracle([OracleResponse(text="A React app with a login page.")])
    outcome = await ProjectAnalyst(oracle, registry_for(react_project)).analyze("login")
    assert outcome.analysis.notes == "A React app with a login page."
    assert not outcome.analysis.complete


@pytest.mark.asyncio
async def test_unreachable_oracle_is_a_planner_error(react_project):
    oracle = FakeOracle([LLMAPIError("fake", 401, "bad key")])
    with pytest.raises(PlannerError) as info:
        await ProjectAnalyst(oracle, registry_for(react_project)).analyze("login")
    assert "bad key" in str(info.value)
