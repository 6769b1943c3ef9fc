"""Rule checks that gate stage outputs before the next stage consumes them."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from testsmith.core.exceptions import TestsmithError
from testsmith.core.logging import get_logger

log = get_logger("constitution")

# (passed, reason, details)
RuleOutcome = Tuple[bool, str, Dict[str, Any]]


class ValidationLevel(Enum):
    """Validation severity levels."""
    CRITICAL = "critical"  # Must pass or the stage fails
    WARNING = "warning"  # Reported, stage continues
    INFO = "info"  # Logged only


@dataclass
class ValidationRule:
    """A single named check over a stage output."""
    name: str
    description: str
    level: ValidationLevel
    check: Callable[[Any, Dict[str, Any]], RuleOutcome]
    enabled: bool = True


@dataclass
class RuleFailure:
    rule_name: str
    level: ValidationLevel
    reason: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule": self.rule_name,
            "level": self.level.value,
            "reason": self.reason,
            "details": self.details,
        }


@dataclass
class ConstitutionReport:
    """Outcome of checking one subject against a constitution."""
    subject: str
    passed: bool
    failures: List[RuleFailure] = field(default_factory=list)
    warnings: List[RuleFailure] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject": self.subject,
            "passed": self.passed,
            "failures": [f.to_dict() for f in self.failures],
            "warnings": [w.to_dict() for w in self.warnings],
            "timestamp": self.timestamp.isoformat(),
        }


class ConstitutionViolation(TestsmithError):
    """Raised when a subject fails a critical rule."""

    def __init__(self, subject: str, failures: List[RuleFailure]):
        reasons = "; ".join(f"{f.rule_name}: {f.reason}" for f in failures)
        super().__init__(f"{subject} failed validation: {reasons}", {"subject": subject})
        self.subject = subject
        self.failures = failures


class Constitution:
    """Ordered set of rules applied to one kind of stage output."""

    def __init__(self, subject: str, rules: List[ValidationRule]):
        self.subject = subject
        self.rules = [r for r in rules if r.enabled]

    def validate(self, output: Any, context: Optional[Dict[str, Any]] = None) -> ConstitutionReport:
        """
        Check ``output`` against every enabled rule.

        Args:
            output: Stage output to check (e.g. a Plan)
            context: Extra facts the rules may consult

        Returns:
            ConstitutionReport; ``passed`` is False iff a critical rule failed
        """
        context = context or {}
        failures: List[RuleFailure] = []
        warnings: List[RuleFailure] = []

        for rule in self.rules:
            passed, reason, details = rule.check(output, context)
            if passed:
                continue
            failure = RuleFailure(rule.name, rule.level, reason, details)
            if rule.level == ValidationLevel.CRITICAL:
                failures.append(failure)
            elif rule.level == ValidationLevel.WARNING:
                warnings.append(failure)
            else:
                log.info("constitution_info", subject=self.subject, rule=rule.name, reason=reason)

        report = ConstitutionReport(
            subject=self.subject,
            passed=not failures,
            failures=failures,
            warnings=warnings,
        )
        if failures:
            log.warning(
                "constitution_failed",
                subject=self.subject,
                failures=len(failures),
                warnings=len(warnings),
            )
        elif warnings:
            log.info("constitution_warnings", subject=self.subject, warnings=[w.reason for w in warnings])
        return report

    def must_pass(self, output: Any, context: Optional[Dict[str, Any]] = None) -> ConstitutionReport:
        """Validate and raise ConstitutionViolation on critical failures."""
        report = self.validate(output, context)
        if not report.passed:
            raise ConstitutionViolation(self.subject, report.failures)
        return report
