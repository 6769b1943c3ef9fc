from pathlib import Path

import pytest

from testsmith.core.config import TestsmithConfig

REPO_CONFIG = Path(__file__).resolve().parents[2] / "configs" / "config.yaml"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv("TESTSMITH_PROVIDER", raising=False)
    monkeypatch.delenv("TESTSMITH_CONFIG", raising=False)


def test_defaults():
    config = TestsmithConfig()
    assert config.provider == "auto"
    assert config.analysis.max_tool_calls == 10
    assert config.validation.max_iterations == 3
    assert config.validation.retry_policy == "uniform"
    assert "node_modules" in config.analysis.ignore


def test_shipped_config_matches_defaults():
    assert TestsmithConfig.from_yaml(REPO_CONFIG) == TestsmithConfig()


def test_missing_file_gives_defaults(tmp_path):
    assert TestsmithConfig.from_yaml(tmp_path / "nope.yaml") == TestsmithConfig()


def test_partial_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("provider: anthropic\nvalidation:\n  max_iterations: 5\n", encoding="utf-8")
    config = TestsmithConfig.from_yaml(path)
    assert config.provider == "anthropic"
    assert config.validation.max_iterations == 5
    assert config.validation.step_timeout_ms == 10000


def test_invalid_section_is_dropped(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "provider: openai\nvalidation:\n  max_iterations: 0\nplaywright:\n  headless: false\n",
        encoding="utf-8",
    )
    with pytest.warns(UserWarning):
        config = TestsmithConfig.from_yaml(path)
    assert config.provider == "openai"
    assert config.validation.max_iterations == 3
    assert config.playwright.headless is False


@pytest.mark.parametrize("content", ["- just\n- a list\n", "key: [unclosed\n"])
def test_unusable_yaml_falls_back(tmp_path, content):
    path = tmp_path / "config.yaml"
    path.write_text(content, encoding="utf-8")
    with pytest.warns(UserWarning):
        assert TestsmithConfig.from_yaml(path) == TestsmithConfig()


def test_environment_overrides(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text("provider: openai\n", encoding="utf-8")
    monkeypatch.setenv("TESTSMITH_CONFIG", str(path))
    assert TestsmithConfig.load().provider == "openai"

    monkeypatch.setenv("TESTSMITH_PROVIDER", "local")
    assert TestsmithConfig.load().provider == "local"

    monkeypatch.setenv("TESTSMITH_PROVIDER", "gemini")
    with pytest.warns(UserWarning):
        assert TestsmithConfig.load().provider == "openai"
