from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from testsmith.core.constitution import ConstitutionReport
from testsmith.core.exceptions import ConfigurationError
from testsmith.core.logging import get_logger
from testsmith.core.schemas import Plan, ProjectAnalysis, ValidationSummary
from testsmith.store.report import write_markdown_report

log = get_logger("artifacts")

PLAN_FILE = "plan.json"
VALIDATED_PLAN_FILE = "validated-plan.json"
SELECTORS_FILE = "selectors.json"
SUMMARY_FILE = "execution-summary.json"
ANALYSIS_FILE = "analysis.json"
CONSTITUTION_FILE = "plan-constitution.json"


class ArtifactStore:
    """
    Writes the JSON artifacts of one generation run into an output directory.

    Layout::

        <root>/
            analysis.json            project analysis (stage 1)
            plan.json                plan as produced by the planner
            plan-constitution.json   rule report for the plan
            validated-plan.json      plan after validation (stage 2)
            selectors.json           flat role -> locator map
            execution-summary.json   timings, counts, success flag
            report.md                human-readable summary

    Args:
        root: Output directory; created on first write

    Example:
        >>> store = ArtifactStore(Path("generated-tests/login"))
        >>> store.write_plan(plan)
        PosixPath('generated-tests/login/plan.json')
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def path_for(self, name: str) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root / name

    def write_json(self, name: str, data: Any) -> Path:
        path = self.path_for(name)
        path.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
        log.debug("artifact_written", path=str(path))
        return path

    def read_json(self, name: str) -> Any:
        path = self.root / name
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise ConfigurationError(f"Artifact not found: {path}", {"path": str(path)}) from e
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Artifact is not valid JSON: {path}", {"path": str(path), "error": str(e)}) from e

    def write_analysis(self, analysis: ProjectAnalysis) -> Path:
        return self.write_json(ANALYSIS_FILE, analysis.to_dict())

    def write_plan(self, plan: Plan) -> Path:
        return self.write_json(PLAN_FILE, plan.to_dict())

    def write_validated_plan(self, plan: Plan) -> Path:
        return self.write_json(VALIDATED_PLAN_FILE, plan.to_dict())

    def write_selectors(self, selectors: Mapping[str, str]) -> Path:
        return self.write_json(SELECTORS_FILE, dict(sorted(selectors.items())))

    def write_constitution_report(self, report: ConstitutionReport) -> Path:
        return self.write_json(CONSTITUTION_FILE, report.to_dict())

    def load_plan(self, validated: bool = True) -> Plan:
        """Load ``validated-plan.json`` (or ``plan.json``) back into a Plan."""
        data = self.read_json(VALIDATED_PLAN_FILE if validated else PLAN_FILE)
        if not isinstance(data, dict):
            raise ConfigurationError("Plan artifact must be a JSON object", {"path": str(self.root)})
        return Plan.from_dict(data)

    def load_selectors(self) -> Dict[str, str]:
        if not (self.root / SELECTORS_FILE).exists():
            return {}
        data = self.read_json(SELECTORS_FILE)
        return {str(k): str(v) for k, v in data.items()} if isinstance(data, dict) else {}

    def write_summary(
        self,
        plan: Plan,
        summary: Optional[ValidationSummary],
        timings: Dict[str, float],
        success: bool,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Path:
        """Write ``execution-summary.json`` and the Markdown report next to it."""
        data: Dict[str, Any] = {
            "requirement": plan.requirement,
            "baseUrl": plan.base_url,
            "success": success,
            "finishedAt": datetime.now(timezone.utc).isoformat(),
            "timings": {stage: round(seconds, 3) for stage, seconds in timings.items()},
            "totalSeconds": round(sum(timings.values()), 3),
            "scenarios": len(plan.scenarios),
            "validation": summary.to_dict() if summary else None,
        }
        if extra:
            data.update(extra)
        path = self.write_json(SUMMARY_FILE, data)
        write_markdown_report(self.root, plan, summary, timings)
        return path
