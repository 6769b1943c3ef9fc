import json

import pytest

from testsmith.agents.constitutions import PLAN_CONSTITUTION
from testsmith.core.exceptions import ConfigurationError
from testsmith.core.schemas import PageObservation, Plan, Scenario, Step, ValidationSummary
from testsmith.store.artifacts import (
    PLAN_FILE,
    SUMMARY_FILE,
    VALIDATED_PLAN_FILE,
    ArtifactStore,
)
from testsmith.store.report import summary_rows


def plan() -> Plan:
    return Plan(
        requirement="checkout works",
        base_url="http://shop.test",
        scenarios=[
            Scenario(
                name="Buy one item",
                steps=[Step("navigate", "/cart"), Step("click", "#pay")],
                expected_results=["order confirmed"],
                validated=True,
                attempts=1,
                selectors={"payButton": "#pay"},
            ),
            Scenario(
                name="Empty cart",
                steps=[Step("navigate", "/cart"), Step("assert", ".empty", "Nothing here")],
                attempts=3,
                errors=["attempt 3: step 2 assert(.empty): assertion_failed: absent"],
                last_observation=PageObservation(title="Cart", screenshot="screenshots/empty-cart-attempt-3.png"),
            ),
        ],
    )


def test_plan_round_trip_through_disk(tmp_path):
    store = ArtifactStore(tmp_path / "run")
    store.write_plan(plan())
    store.write_validated_plan(plan())

    assert (tmp_path / "run" / PLAN_FILE).exists()
    loaded = store.load_plan()
    assert [s.name for s in loaded.scenarios] == ["Buy one item", "Empty cart"]
    assert loaded.scenarios[1].errors == plan().scenarios[1].errors
    assert store.load_plan(validated=False).base_url == "http://shop.test"


def test_selectors_are_sorted_and_optional(tmp_path):
    store = ArtifactStore(tmp_path)
    assert store.load_selectors() == {}
    store.write_selectors({"zInput": "#z", "aButton": "#a"})
    assert list(json.loads((tmp_path / "selectors.json").read_text(encoding="utf-8"))) == ["aButton", "zInput"]
    assert store.load_selectors() == {"aButton": "#a", "zInput": "#z"}


def test_missing_or_broken_artifacts_are_configuration_errors(tmp_path):
    store = ArtifactStore(tmp_path)
    with pytest.raises(ConfigurationError):
        store.load_plan()
    (tmp_path / VALIDATED_PLAN_FILE).write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        store.load_plan()
    (tmp_path / VALIDATED_PLAN_FILE).write_text("[]", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        store.load_plan()


def test_constitution_report_is_written(tmp_path):
    path = ArtifactStore(tmp_path).write_constitution_report(PLAN_CONSTITUTION.validate(plan()))
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["passed"] is True


def test_summary_and_report(tmp_path):
    store = ArtifactStore(tmp_path)
    the_plan = plan()
    summary = ValidationSummary.from_scenarios(the_plan.scenarios)

    path = store.write_summary(
        the_plan,
        summary,
        {"analysis": 1.23456, "validation": 10.0, "emission": 0.1},
        success=True,
        extra={"files": ["tests/ui-tests.spec.js"]},
    )

    data = json.loads(path.read_text(encoding="utf-8"))
    assert path.name == SUMMARY_FILE
    assert data["success"] is True
    assert data["timings"]["analysis"] == 1.235
    assert data["totalSeconds"] == pytest.approx(11.335)
    assert data["validation"]["validated"] == 1
    assert data["validation"]["successRate"] == pytest.approx(0.5)
    assert data["files"] == ["tests/ui-tests.spec.js"]

    report = (tmp_path / "report.md").read_text(encoding="utf-8")
    assert "- Validated: 1 (50%)" in report
    assert "| validation | 10.00 |" in report
    assert "## 02. Empty cart" in report
    assert "- Status: **unvalidated** after 3 attempt(s)" in report
    assert "2. `assert(.empty)` = `Nothing here`" in report
    assert "![Empty cart](screenshots/empty-cart-attempt-3.png)" in report


def test_summary_rows():
    rows = summary_rows(ValidationSummary.from_scenarios(plan().scenarios))
    assert rows == {"Scenarios": 2, "Validated": 1, "With selectors": 1, "Success rate": "50%"}
