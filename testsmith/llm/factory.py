from __future__ import annotations

import os
from typing import List

from testsmith.core.config import TestsmithConfig
from testsmith.core.exceptions import ConfigurationError
from testsmith.core.logging import get_logger
from testsmith.llm.anthropic_provider import AnthropicOracle
from testsmith.llm.base import Oracle
from testsmith.llm.local_provider import LocalOracle
from testsmith.llm.openai_provider import OpenAIOracle

log = get_logger("oracle_factory")


def _openai(cfg: TestsmithConfig) -> OpenAIOracle:
    o = cfg.oracle
    return OpenAIOracle(
        model=o.model,
        base_url=o.base_url,
        timeout=o.timeout_s,
        temperature=o.temperature,
        max_tokens=o.max_tokens,
        rate_limit_per_minute=o.rate_limit_per_minute,
    )


def _anthropic(cfg: TestsmithConfig) -> AnthropicOracle:
    o = cfg.oracle
    return AnthropicOracle(
        model=o.model,
        timeout=o.timeout_s,
        temperature=o.temperature,
        max_tokens=o.max_tokens,
        rate_limit_per_minute=o.rate_limit_per_minute,
    )


def _local(cfg: TestsmithConfig) -> LocalOracle:
    o = cfg.oracle
    return LocalOracle(
        model=o.model,
        host=o.base_url,
        timeout=o.timeout_s,
        temperature=o.temperature,
        rate_limit_per_minute=o.rate_limit_per_minute,
    )


def oracle_from_config(cfg: TestsmithConfig) -> Oracle:
    """
    Build the oracle named by ``cfg.provider``.

    ``auto`` prefers an OpenAI-compatible service, then Anthropic, then a local
    Ollama server when ``OLLAMA_HOST`` or ``LOCAL_MODEL`` is set.

    Raises:
        ConfigurationError: If no provider has credentials
    """
    provider = cfg.provider
    if provider == "openai":
        return _openai(cfg)
    if provider == "anthropic":
        return _anthropic(cfg)
    if provider == "local":
        return _local(cfg)

    errors: List[str] = []
    for factory in (_openai, _anthropic):
        try:
            oracle = factory(cfg)
        except ConfigurationError as exc:
            errors.append(exc.message)
            continue
        log.info("oracle_selected", provider=oracle.name, model=oracle.model)
        return oracle
    if os.getenv("OLLAMA_HOST") or os.getenv("LOCAL_MODEL"):
        oracle = _local(cfg)
        log.info("oracle_selected", provider=oracle.name, model=oracle.model)
        return oracle
    raise ConfigurationError("No oracle credentials configured", {"tried": "; ".join(errors)})
