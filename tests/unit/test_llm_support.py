import json

import pytest

from testsmith.core.config import TestsmithConfig
from testsmith.core.exceptions import ConfigurationError
from testsmith.core.schemas import Message, ToolCall, ToolSchema
from testsmith.llm.anthropic_provider import to_anthropic_messages
from testsmith.llm.factory import oracle_from_config
from testsmith.llm.openai_provider import endpoint_from_env
from testsmith.llm.utils import (
    extract_json_from_content,
    extract_json_object,
    parse_tool_arguments,
    to_openai_messages,
    to_openai_tools,
)

CREDENTIAL_VARS = [
    "DEEPSEEK_TOKEN", "DEEPSEEK_BASE_URL", "DEEPSEEK_MODEL",
    "GLM_API_KEY", "GLM_TOKEN", "LLM_BASE_URL", "LLM_MODEL",
    "OPENAI_API_KEY", "OPENAI_BASE_URL", "OPENAI_MODEL",
    "ANTHROPIC_API_KEY", "ANTHROPIC_MODEL", "OLLAMA_HOST", "LOCAL_MODEL",
]


@pytest.fixture
def clean_env(monkeypatch):
    for var in CREDENTIAL_VARS:
        monkeypatch.delenv(var, raising=False)
    return monkeypatch


def test_extract_json_from_fenced_block():
    content = 'Here is the plan:\n```json\n{"scenarios": [{"name": "Login"}]}\n```\nGood luck!'
    assert extract_json_from_content(content) == {"scenarios": [{"name": "Login"}]}


def test_extract_json_surrounded_by_prose():
    content = 'Sure! {"steps": [], "note": "brace } inside string"} Hope that helps.'
    assert extract_json_from_content(content) == {"steps": [], "note": "brace } inside string"}


def test_extract_json_array():
    assert extract_json_from_content("result: [1, 2, 3]") == [1, 2, 3]


@pytest.mark.parametrize("content", ["", "no json at all", "{broken: json"])
def test_extract_json_failures(content):
    with pytest.raises(ValueError):
        extract_json_from_content(content)


def test_extract_json_object_rejects_arrays():
    with pytest.raises(ValueError):
        extract_json_object("[1, 2]")


def test_parse_tool_arguments():
    assert parse_tool_arguments('{"path": "src"}') == {"path": "src"}
    assert parse_tool_arguments({"path": "src"}) == {"path": "src"}
    assert parse_tool_arguments("") == {}
    assert parse_tool_arguments("not json") == {"_raw": "not json"}


def test_openai_wire_format_round_trip_of_a_tool_turn():
    messages = [
        Message(role="system", content="sys"),
        Message(role="assistant", tool_calls=[ToolCall(id="c1", name="read_file", arguments={"path": "a.js"})]),
        Message(role="tool", content='{"ok": true}', tool_call_id="c1", name="read_file"),
    ]
    wire = to_openai_messages(messages)
    assert wire[0] == {"role": "system", "content": "sys"}
    assert wire[1]["content"] is None
    assert json.loads(wire[1]["tool_calls"][0]["function"]["arguments"]) == {"path": "a.js"}
    assert wire[2] == {"role": "tool", "tool_call_id": "c1", "content": '{"ok": true}'}

    assert to_openai_tools(None) is None
    tools = to_openai_tools([ToolSchema("list_files", "List files")])
    assert tools[0]["function"]["name"] == "list_files"


def test_anthropic_conversion_groups_tool_results():
    messages = [
        Message(role="system", content="one"),
        Message(role="system", content="two"),
        Message(role="user", content="go"),
        Message(
            role="assistant",
            content="looking",
            tool_calls=[ToolCall(id="a", name="x"), ToolCall(id="b", name="y")],
        ),
        Message(role="tool", content="ra", tool_call_id="a"),
        Message(role="tool", content="rb", tool_call_id="b"),
    ]
    system, wire = to_anthropic_messages(messages)

    assert system == "one\n\ntwo"
    assert [m["role"] for m in wire] == ["user", "assistant", "user"]
    assert [b["type"] for b in wire[1]["content"]] == ["text", "tool_use", "tool_use"]
    assert [b["tool_use_id"] for b in wire[2]["content"]] == ["a", "b"]


def test_endpoint_preference_order(clean_env):
    assert endpoint_from_env() is None
    clean_env.setenv("OPENAI_API_KEY", "sk-openai")
    assert endpoint_from_env().label == "openai"
    clean_env.setenv("GLM_API_KEY", "glm-key")
    assert endpoint_from_env().model == "glm-4-air"
    clean_env.setenv("DEEPSEEK_TOKEN", "ds-key")
    endpoint = endpoint_from_env()
    assert endpoint.label == "deepseek"
    assert endpoint.base_url == "https://api.deepseek.com/v1"


def test_auto_provider_without_credentials_is_a_configuration_error(clean_env):
    with pytest.raises(ConfigurationError):
        oracle_from_config(TestsmithConfig())


def test_auto_provider_picks_openai_compatible_first(clean_env):
    clean_env.setenv("DEEPSEEK_TOKEN", "ds-key")
    clean_env.setenv("ANTHROPIC_API_KEY", "ant-key")
    oracle = oracle_from_config(TestsmithConfig())
    assert oracle.name == "deepseek"
    assert oracle.model == "deepseek-chat"


def test_auto_provider_falls_back_to_anthropic(clean_env):
    clean_env.setenv("ANTHROPIC_API_KEY", "ant-key")
    oracle = oracle_from_config(TestsmithConfig())
    assert oracle.name == "anthropic"


def test_explicit_provider_requires_its_credentials(clean_env):
    with pytest.raises(ConfigurationError):
        oracle_from_config(TestsmithConfig(provider="anthropic"))
