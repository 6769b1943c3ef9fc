"""Analysis -> validation -> emission, wired together."""
from __future__ import annotations

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Dict, List, Optional
from urllib.parse import urlparse

from testsmith.agents.analyst import ProjectAnalyst
from testsmith.agents.planner import ScenarioPlanner
from testsmith.agents.refiner import ScenarioRefiner
from testsmith.agents.validator import PlanValidation, ValidationController
from testsmith.core.config import TestsmithConfig
from testsmith.core.exceptions import ConfigurationError
from testsmith.core.logging import get_logger
from testsmith.core.schemas import Plan, ProjectAnalysis, Scenario, ValidationSummary
from testsmith.core.selectors import SelectorMap
from testsmith.emitter.codegen import CodeEmitter
from testsmith.llm.base import Oracle
from testsmith.store.artifacts import ArtifactStore
from testsmith.tools.base import ToolRegistry
from testsmith.tools.browser import BrowserSession, PlaywrightSession, browser_tools
from testsmith.tools.filesystem import ProjectFiles, file_tools

log = get_logger("pipeline")

SessionFactory = Callable[[], AsyncContextManager[BrowserSession]]


def validate_inputs(requirement: str, project_path: Path, base_url: str) -> None:
    """
    Reject unusable inputs before any oracle or browser work starts.

    Raises:
        ConfigurationError: Empty requirement, missing project directory or non-http(s) URL
    """
    if not requirement or not requirement.strip():
        raise ConfigurationError("The testing requirement must not be empty")
    if not project_path.exists() or not project_path.is_dir():
        raise ConfigurationError("Project path does not exist or is not a directory", {"path": str(project_path)})
    parsed = urlparse(base_url or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigurationError(
            "Base URL must include http:// or https:// and a host",
            {"base_url": base_url},
        )


@dataclass
class PipelineResult:
    """
    Everything one generation run produced.

    Attributes:
        output_dir: Directory holding artifacts and the emitted test project
        analysis: Stage 1 project analysis
        plan: Final plan (validated unless validation was skipped)
        selectors: Plan-wide role -> locator map
        summary: Validation counts, None when validation was skipped
        timings: Seconds spent per stage
        files: Paths of the emitted test project files
    """
    output_dir: Path
    analysis: ProjectAnalysis
    plan: Plan
    selectors: Dict[str, str] = field(default_factory=dict)
    summary: Optional[ValidationSummary] = None
    timings: Dict[str, float] = field(default_factory=dict)
    files: List[Path] = field(default_factory=list)


class _StageTimer:
    def __init__(self, timings: Dict[str, float], stage: str) -> None:
        self.timings = timings
        self.stage = stage

    def __enter__(self) -> _StageTimer:
        self.started = time.perf_counter()
        log.info("stage_started", stage=self.stage)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        elapsed = time.perf_counter() - self.started
        self.timings[self.stage] = elapsed
        log.info("stage_finished", stage=self.stage, seconds=round(elapsed, 3), failed=exc_type is not None)


class GenerationPipeline:
    """
    Runs the three stages for one requirement.

    Args:
        config: Loaded configuration
        oracle: Reasoning oracle shared by the analyst, planner and refiner
        session_factory: Builds a browser session for a base URL; defaults to PlaywrightSession
    """

    def __init__(
        self,
        config: TestsmithConfig,
        oracle: Oracle,
        session_factory: Optional[Callable[[str, Optional[Path]], AsyncContextManager[BrowserSession]]] = None,
    ) -> None:
        self.config = config
        self.oracle = oracle
        self._session_factory = session_factory or self._playwright_session

    def _playwright_session(self, base_url: str, screenshot_dir: Optional[Path]) -> AsyncContextManager[BrowserSession]:
        return PlaywrightSession(
            base_url,
            browser_config=self.config.playwright,
            validation_config=self.config.validation,
            screenshot_dir=screenshot_dir,
        )

    def sessions(self, base_url: str, output_dir: Optional[Path] = None) -> SessionFactory:
        screenshot_dir = output_dir / "screenshots" if output_dir and self.config.validation.screenshots else None
        return lambda: self._session_factory(base_url, screenshot_dir)

    @asynccontextmanager
    async def _analysis_registry(self, project_path: Path, base_url: str) -> AsyncIterator[ToolRegistry]:
        cfg = self.config.analysis
        registry = ToolRegistry(default_timeout_s=cfg.tool_timeout_s)
        registry.extend(file_tools(ProjectFiles(project_path, cfg), timeout_s=cfg.tool_timeout_s))
        if not cfg.explore_browser:
            yield registry
            return
        async with self.sessions(base_url)() as session:
            registry.extend(browser_tools(session, timeout_s=cfg.tool_timeout_s))
            yield registry

    async def analyze(
        self,
        requirement: str,
        project_path: Path,
        base_url: str,
        max_scenarios: int = 8,
    ) -> tuple[ProjectAnalysis, Plan, ScenarioPlanner]:
        """Stage 1: explore the project and plan scenarios."""
        async with self._analysis_registry(project_path, base_url) as registry:
            outcome = await ProjectAnalyst(self.oracle, registry, self.config.analysis).analyze(requirement, base_url)
        planner = ScenarioPlanner(self.oracle, max_scenarios=max_scenarios)
        plan = await planner.plan(requirement, outcome.analysis, base_url)
        return outcome.analysis, plan, planner

    async def validate(
        self,
        plan: Plan,
        output_dir: Optional[Path] = None,
        max_iterations: Optional[int] = None,
        on_scenario_done: Optional[Callable[[int, Scenario], Any]] = None,
    ) -> PlanValidation:
        """Stage 2: replay and refine every scenario against the live app."""
        cfg = self.config.validation
        controller = ValidationController(
            refiner=ScenarioRefiner(self.oracle),
            selector_map=SelectorMap(),
            settle_ms=cfg.settle_ms,
            retry_policy=cfg.retry_policy,
            screenshots=cfg.screenshots,
            requirement=plan.requirement,
        )
        return await controller.validate_plan(
            plan,
            self.sessions(plan.base_url, output_dir),
            max_iterations=max_iterations or cfg.max_iterations,
            deadline_s=cfg.deadline_s,
            concurrency=cfg.concurrency,
            on_scenario_done=on_scenario_done,
        )

    async def run(
        self,
        requirement: str,
        project_path: Path,
        base_url: str,
        output_dir: Path,
        skip_validation: bool = False,
        max_iterations: Optional[int] = None,
        on_scenario_done: Optional[Callable[[int, Scenario], Any]] = None,
    ) -> PipelineResult:
        """
        Run analysis, validation and emission, writing every artifact to ``output_dir``.

        Raises:
            ConfigurationError: Invalid inputs
            PlannerError: Planning failed
            SessionStartError: The browser could not be started
        """
        validate_inputs(requirement, project_path, base_url)
        store = ArtifactStore(output_dir)
        timings: Dict[str, float] = {}

        with _StageTimer(timings, "analysis"):
            analysis, plan, planner = await self.analyze(requirement, project_path, base_url)
        store.write_analysis(analysis)
        store.write_plan(plan)
        if planner.last_report is not None:
            store.write_constitution_report(planner.last_report)

        summary: Optional[ValidationSummary] = None
        selectors: Dict[str, str] = {}
        if skip_validation:
            log.info("validation_skipped", scenarios=len(plan.scenarios))
        else:
            with _StageTimer(timings, "validation"):
                validation = await self.validate(plan, output_dir, max_iterations, on_scenario_done)
            plan = validation.plan
            summary = validation.summary
            selectors = validation.selectors.as_dict()
            store.write_validated_plan(plan)
            store.write_selectors(selectors)

        with _StageTimer(timings, "emission"):
            files = CodeEmitter(output_dir, headless=self.config.playwright.headless).emit(plan, selectors)

        store.write_summary(
            plan,
            summary,
            timings,
            success=True,
            extra={"analysisComplete": analysis.complete, "emittedFiles": len(files)},
        )
        return PipelineResult(
            output_dir=output_dir,
            analysis=analysis,
            plan=plan,
            selectors=selectors,
            summary=summary,
            timings=timings,
            files=files,
        )
