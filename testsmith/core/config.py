"""Configuration models and validation using Pydantic."""
from __future__ import annotations

import os
import warnings
from pathlib import Path
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

DEFAULT_CONFIG_PATH = "configs/config.yaml"

DEFAULT_IGNORES = [
    "node_modules", ".git", "dist", "build", ".next", ".nuxt", "coverage",
    "__pycache__", ".venv", ".cache", "out",
]


class OracleConfig(BaseModel):
    """Reasoning oracle call settings."""
    model: Optional[str] = Field(default=None, description="Override the provider's default model")
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    max_tokens: int = Field(default=4000, ge=1, le=32000)
    timeout_s: float = Field(default=60.0, gt=0, le=600)
    base_url: Optional[str] = Field(default=None)
    rate_limit_per_minute: int = Field(default=30, ge=1, le=10000)


class AnalysisConfig(BaseModel):
    """Project analysis (agent loop) settings."""
    max_tool_calls: int = Field(default=10, ge=0, le=200)
    deadline_s: Optional[float] = Field(default=None, gt=0)
    tool_timeout_s: float = Field(default=30.0, gt=0, le=600)
    parallel_tools: bool = Field(default=False)
    max_file_bytes: int = Field(default=20000, ge=256, le=2_000_000)
    max_list_entries: int = Field(default=200, ge=1, le=5000)
    max_search_results: int = Field(default=50, ge=1, le=1000)
    ignore: List[str] = Field(default_factory=lambda: list(DEFAULT_IGNORES))
    explore_browser: bool = Field(default=False)


class ValidationConfig(BaseModel):
    """Validation-refinement controller settings."""
    max_iterations: int = Field(default=3, ge=1, le=20)
    deadline_s: Optional[float] = Field(default=None, gt=0, description="Wall-clock budget per scenario")
    step_timeout_ms: int = Field(default=10000, ge=100, le=120000)
    navigation_timeout_ms: int = Field(default=30000, ge=1000, le=300000)
    settle_ms: int = Field(default=500, ge=0, le=10000)
    retry_policy: Literal["uniform", "transient_only"] = Field(default="uniform")
    concurrency: int = Field(default=1, ge=1, le=16)
    screenshots: bool = Field(default=True)


class PlaywrightConfig(BaseModel):
    """Playwright browser configuration."""
    headless: bool = Field(default=True)
    project: Literal["chromium", "firefox", "webkit"] = Field(default="chromium")
    channel: Optional[str] = Field(default=None, description="Browser channel (e.g., 'chrome' to use installed Chrome instead of Chromium)")
    viewport_width: int = Field(default=1280, ge=100, le=7680)
    viewport_height: int = Field(default=720, ge=100, le=4320)


class OutputConfig(BaseModel):
    """Output directory configuration."""
    base_dir: str = Field(default="generated-tests")


class MetricsConfig(BaseModel):
    """Metrics configuration."""
    enabled: bool = Field(default=False)
    prometheus_port: int = Field(default=9109, ge=1024, le=65535)


class TestsmithConfig(BaseModel):
    """Main configuration model for testsmith."""

    __test__ = False

    provider: Literal["openai", "anthropic", "local", "auto"] = Field(default="auto")
    oracle: OracleConfig = Field(default_factory=OracleConfig)
    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    playwright: PlaywrightConfig = Field(default_factory=PlaywrightConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)

    @classmethod
    def from_yaml(cls, config_path: Path) -> TestsmithConfig:
        """Load configuration from YAML file; missing or broken files yield defaults."""
        import yaml

        if not config_path.exists():
            return cls()

        try:
            with config_path.open(encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            warnings.warn(f"Failed to load config file {config_path}: {e}. Using defaults.")
            return cls()

        if not data:
            return cls()
        if not isinstance(data, dict):
            warnings.warn(f"Config file {config_path} is not a mapping. Using defaults.")
            return cls()

        try:
            return cls(**data)
        except ValueError as e:
            warnings.warn(f"Config validation failed: {e}. Using defaults with partial config.")
            partial = {}
            for key, value in data.items():
                if key not in cls.model_fields:
                    continue
                try:
                    cls(**{key: value})
                except ValueError:
                    continue
                partial[key] = value
            return cls(**partial)

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> TestsmithConfig:
        """Load from ``config_path`` or ``TESTSMITH_CONFIG`` and apply environment overrides."""
        path = config_path or Path(os.getenv("TESTSMITH_CONFIG", DEFAULT_CONFIG_PATH))
        config = cls.from_yaml(path)
        provider = os.getenv("TESTSMITH_PROVIDER")
        if provider:
            if provider not in ("openai", "anthropic", "local", "auto"):
                warnings.warn(f"Ignoring unknown TESTSMITH_PROVIDER={provider!r}")
            else:
                config = config.model_copy(update={"provider": provider})
        return config

    def to_dict(self) -> Dict:
        """Convert config to dictionary."""
        return self.model_dump(exclude_none=True)
