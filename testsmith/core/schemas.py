from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

STEP_ACTIONS = ("navigate", "click", "type", "wait", "assert")


@dataclass
class Step:
    """
    A single step of a scenario.

    Attributes:
        action: One of "navigate", "click", "type", "wait", "assert"
        target: URL or path for navigate; locator for click/type; locator or
            duration in milliseconds for wait; "url", "title" or a locator for assert
        value: Text to type, or the expected value of an assertion
        description: Human-readable intent of the step
    """
    action: str
    target: Optional[str] = None
    value: Optional[str] = None
    description: str = ""

    def label(self) -> str:
        if self.target:
            return f"{self.action}({self.target})"
        return self.action

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Step:
        target = data.get("target", data.get("selector"))
        if target is not None and not isinstance(target, str):
            target = str(target)
        value = data.get("value")
        if value is not None and not isinstance(value, str):
            value = str(value)
        return cls(
            action=str(data.get("action", "")).strip().lower(),
            target=target,
            value=value,
            description=str(data.get("description") or ""),
        )


@dataclass
class ElementCandidate:
    """
    One interactive element as seen on the page.

    Attributes:
        tag: Lower-case tag name
        attributes: Candidate attributes (id, class, data-testid, aria-label, role,
            name, placeholder, type, href)
        text: Visible text, whitespace-collapsed
        index: 1-based position among siblings of the same tag (nth-of-type)
    """
    tag: str
    attributes: Dict[str, str] = field(default_factory=dict)
    text: str = ""
    index: int = 1

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ElementCandidate:
        attributes = {
            str(k): str(v)
            for k, v in (data.get("attributes") or {}).items()
            if v not in (None, "")
        }
        try:
            index = max(1, int(data.get("index") or 1))
        except (TypeError, ValueError):
            index = 1
        return cls(
            tag=str(data.get("tag") or "div").lower(),
            attributes=attributes,
            text=str(data.get("text") or ""),
            index=index,
        )


@dataclass
class PageObservation:
    """
    Snapshot of the page after one validation attempt.

    Attributes:
        title: Document title
        url: Current page URL
        elements: Interactive elements with their candidate attributes
        forms: Form summaries (action, method, input names)
        errors: Errors encountered while producing the observation
        screenshot: Screenshot path, when one was taken
    """
    title: str = ""
    url: str = ""
    elements: List[ElementCandidate] = field(default_factory=list)
    forms: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    screenshot: Optional[str] = None

    def signature(self) -> str:
        payload = json.dumps({
            "url": self.url,
            "title": self.title,
            "elements": [
                (e.tag, sorted(e.attributes.items()), e.text, e.index)
                for e in self.elements
            ],
        }, sort_keys=True)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PageObservation:
        return cls(
            title=str(data.get("title") or ""),
            url=str(data.get("url") or ""),
            elements=[ElementCandidate.from_dict(e) for e in data.get("elements") or []],
            forms=list(data.get("forms") or []),
            errors=[str(e) for e in data.get("errors") or []],
            screenshot=data.get("screenshot"),
        )


class FailureKind(Enum):
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    ASSERTION_FAILED = "assertion_failed"
    NETWORK_ERROR = "network_error"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


@dataclass
class StepFailure:
    step_index: int
    kind: FailureKind
    message: str

    def describe(self, step: Optional[Step] = None) -> str:
        if self.step_index < 0:
            return f"start page: {self.kind.value}: {self.message}"
        where = f"step {self.step_index + 1}"
        if step is not None:
            where += f" {step.label()}"
        return f"{where}: {self.kind.value}: {self.message}"


@dataclass
class Scenario:
    """
    One user-flow test case.

    Created by the planner and mutated only by the validation controller.

    Attributes:
        name: Unique, human-readable scenario name
        description: What the flow proves
        steps: Ordered steps
        expected_results: Expected outcomes in prose
        pages: Paths the scenario is expected to visit
        priority: "high", "medium" or "low"
        validated: True once an attempt completed every step
        selectors: Role name -> locator observed for this scenario
        attempts: Validation attempts executed so far
        errors: Accumulated attempt errors
        last_observation: Observation of the last attempt
    """
    name: str
    description: str = ""
    steps: List[Step] = field(default_factory=list)
    expected_results: List[str] = field(default_factory=list)
    pages: List[str] = field(default_factory=list)
    priority: str = "medium"
    validated: bool = False
    selectors: Dict[str, str] = field(default_factory=dict)
    attempts: int = 0
    errors: List[str] = field(default_factory=list)
    last_observation: Optional[PageObservation] = None

    def start_page(self) -> str:
        for step in self.steps:
            if step.action == "navigate" and step.target:
                return step.target
        return self.pages[0] if self.pages else "/"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "steps": [asdict(s) for s in self.steps],
            "expectedResults": list(self.expected_results),
            "pages": list(self.pages),
            "priority": self.priority,
            "validated": self.validated,
            "selectors": dict(self.selectors),
            "attempts": self.attempts,
            "errors": list(self.errors),
            "lastObservation": self.last_observation.to_dict() if self.last_observation else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Scenario:
        observation = data.get("lastObservation") or data.get("last_observation")
        return cls(
            name=str(data.get("name") or "Unnamed scenario"),
            description=str(data.get("description") or ""),
            steps=[Step.from_dict(s) for s in data.get("steps") or [] if isinstance(s, dict)],
            expected_results=[
                str(r) for r in data.get("expectedResults") or data.get("expected_results") or []
            ],
            pages=[str(p) for p in data.get("pages") or data.get("expectedPages") or []],
            priority=str(data.get("priority") or "medium"),
            validated=bool(data.get("validated", False)),
            selectors={str(k): str(v) for k, v in (data.get("selectors") or {}).items()},
            attempts=int(data.get("attempts") or 0),
            errors=[str(e) for e in data.get("errors") or []],
            last_observation=PageObservation.from_dict(observation) if observation else None,
        )


@dataclass
class Plan:
    """Ordered scenarios produced once by the planner."""
    scenarios: List[Scenario] = field(default_factory=list)
    requirement: str = ""
    base_url: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requirement": self.requirement,
            "baseUrl": self.base_url,
            "scenarios": [s.to_dict() for s in self.scenarios],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Plan:
        return cls(
            scenarios=[Scenario.from_dict(s) for s in data.get("scenarios") or []],
            requirement=str(data.get("requirement") or ""),
            base_url=str(data.get("baseUrl") or data.get("base_url") or ""),
        )


@dataclass
class ValidationSummary:
    total: int
    validated: int
    with_selectors: int
    success_rate: float

    @classmethod
    def from_scenarios(cls, scenarios: List[Scenario]) -> ValidationSummary:
        total = len(scenarios)
        validated = sum(1 for s in scenarios if s.validated)
        with_selectors = sum(1 for s in scenarios if s.selectors)
        return cls(
            total=total,
            validated=validated,
            with_selectors=with_selectors,
            success_rate=(validated / total) if total else 0.0,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "validated": self.validated,
            "withSelectors": self.with_selectors,
            "successRate": self.success_rate,
        }


@dataclass
class ProjectAnalysis:
    """What the analyst learned about the frontend project."""
    framework: str = "unknown"
    routes: List[Dict[str, Any]] = field(default_factory=list)
    components: List[str] = field(default_factory=list)
    auth_flow: Dict[str, Any] = field(default_factory=dict)
    notes: str = ""
    complete: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# --------------------------------------------------------------------------- #
# Conversation and tool-call contracts
# --------------------------------------------------------------------------- #


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolOk:
    data: Any = None

    @property
    def ok(self) -> bool:
        return True

    def to_payload(self) -> Dict[str, Any]:
        return {"ok": True, "data": self.data}


@dataclass
class ToolErr:
    message: str

    @property
    def ok(self) -> bool:
        return False

    def to_payload(self) -> Dict[str, Any]:
        return {"ok": False, "error": self.message}


ToolResult = Union[ToolOk, ToolErr]


@dataclass
class ToolSchema:
    name: str
    description: str
    parameters: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


@dataclass
class Message:
    role: str  # system | user | assistant | tool
    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_call_id: Optional[str] = None
    name: Optional[str] = None


@dataclass
class OracleResponse:
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)

    @property
    def wants_tools(self) -> bool:
        return bool(self.tool_calls)


@dataclass
class ConversationState:
    """Append-only message history of one agent loop run."""
    messages: List[Message] = field(default_factory=list)
    tool_calls_made: int = 0

    def append(self, message: Message) -> None:
        self.messages.append(message)
