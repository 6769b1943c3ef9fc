from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

from testsmith.core.schemas import Plan, ValidationSummary


def _status(validated: bool) -> str:
    return "validated" if validated else "**unvalidated**"


def write_markdown_report(
    path: Path,
    plan: Plan,
    summary: Optional[ValidationSummary] = None,
    timings: Optional[Dict[str, float]] = None,
) -> Path:
    report = path / "report.md"
    summary = summary or ValidationSummary.from_scenarios(plan.scenarios)
    lines = ["# UI Test Generation Report", ""]
    lines.append(f"- Requirement: {plan.requirement}")
    lines.append(f"- Application: `{plan.base_url}`")
    lines.append(f"- Scenarios: {summary.total}")
    lines.append(f"- Validated: {summary.validated} ({summary.success_rate:.0%})")
    lines.append(f"- With selectors: {summary.with_selectors}")
    lines.append("")

    if timings:
        lines.append("## Stage timings")
        lines.append("")
        lines.append("| Stage | Seconds |")
        lines.append("| --- | ---: |")
        for stage, seconds in timings.items():
            lines.append(f"| {stage} | {seconds:.2f} |")
        lines.append("")

    for idx, scenario in enumerate(plan.scenarios, start=1):
        lines.append(f"## {idx:02d}. {scenario.name}")
        if scenario.description:
            lines.append("")
            lines.append(scenario.description)
        lines.append("")
        lines.append(f"- Status: {_status(scenario.validated)} after {scenario.attempts} attempt(s)")
        lines.append(f"- Priority: {scenario.priority}")
        lines.append(f"- Start page: `{scenario.start_page()}`")
        lines.append("")
        for n, step in enumerate(scenario.steps, start=1):
            value = f" = `{step.value}`" if step.value else ""
            lines.append(f"{n}. `{step.label()}`{value}")
        if scenario.expected_results:
            lines.append("")
            lines.append("Expected:")
            for expected in scenario.expected_results:
                lines.append(f"- {expected}")
        if scenario.errors:
            lines.append("")
            lines.append("Errors:")
            for error in scenario.errors:
                lines.append(f"- {error}")
        observation = scenario.last_observation
        if observation is not None and observation.screenshot:
            lines.append("")
            lines.append(f"![{scenario.name}]({observation.screenshot})")
        lines.append("")

    report.write_text("\n".join(lines), encoding="utf-8")
    return report


def summary_rows(summary: ValidationSummary) -> Dict[str, Any]:
    """Rows for the CLI's summary table."""
    return {
        "Scenarios": summary.total,
        "Validated": summary.validated,
        "With selectors": summary.with_selectors,
        "Success rate": f"{summary.success_rate:.0%}",
    }
