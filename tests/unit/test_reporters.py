"""Unit tests for reporters module."""
from __future__ import annotations

import json
from pathlib import Path
from xml.etree import ElementTree

import pytest

from reporters import JSONReporter, JUnitReporter, ReportFormat, create_reporters
from test_types import (
    Adaptation,
    PageSnapshot,
    RecoveryAttempt,
    RunStatus,
    StepAction,
    StepStatus,
    TestCase,
    TestResult,
    TestRun,
    TestStep,
)


def _result(case: TestCase, run_id: str, statuses, run_status: RunStatus, error=None) -> TestResult:
    run = TestRun.new(case.id, total_steps=len(case.steps), run_id=run_id)
    run.sandbox_id = "sandbox-1"
    run.transition(RunStatus.RUNNING)
    for number, (action, status) in enumerate(zip(case.steps, statuses), start=1):
        step = TestStep(step_number=number, action=action)
        step.start()
        step.page_state_before = PageSnapshot(url=case.url)
        if status == StepStatus.ADAPTED:
            adapted = action.with_target("#login-button-v2")
            step.add_adaptation(Adaptation(action, adapted, 0.8, "Button was renamed"))
            step.executed_actions.append(adapted)
        elif status == StepStatus.FAILED:
            step.add_recovery_attempt(RecoveryAttempt("renavigate", "Element not found", False, error="still missing"))
        if status == StepStatus.SKIPPED:
            step.skip("Run cancelled")
        else:
            step.finish(status, RuntimeError("element missing") if status == StepStatus.FAILED else None)
        run.add_step(step)
    run.transition(run_status, error)
    return TestResult(case=case, run=run)


@pytest.fixture
def adapted_result(login_case: TestCase) -> TestResult:
    return _result(
        login_case,
        "run-ok",
        [StepStatus.SUCCESS, StepStatus.SUCCESS, StepStatus.ADAPTED],
        RunStatus.COMPLETED,
    )


@pytest.fixture
def failed_result(login_case: TestCase) -> TestResult:
    return _result(
        login_case,
        "run-fail",
        [StepStatus.SUCCESS, StepStatus.FAILED, StepStatus.SKIPPED],
        RunStatus.FAILED,
        "Step 2 failed [element_not_found]: <missing> & gone",
    )


@pytest.fixture
def cancelled_result(login_case: TestCase) -> TestResult:
    return _result(
        login_case,
        "run-cancel",
        [StepStatus.SKIPPED, StepStatus.SKIPPED, StepStatus.SKIPPED],
        RunStatus.CANCELLED,
        "Run cancelled",
    )


class TestCreateReporters:
    """Tests for reporter selection."""

    def test_formats(self):
        assert [r.format for r in create_reporters("json")] == [ReportFormat.JSON]
        assert [r.format for r in create_reporters("junit")] == [ReportFormat.JUNIT]
        assert [r.format for r in create_reporters("all")] == [ReportFormat.JSON, ReportFormat.JUNIT]
        assert create_reporters("none") == []

    def test_unknown_format_rejected(self):
        with pytest.raises(ValueError):
            create_reporters("html")


class TestJSONReporter:
    """Tests for JSON reporter."""

    def test_generates_valid_json(self, temp_dir: Path, adapted_result: TestResult):
        report_path = JSONReporter().generate(adapted_result, temp_dir)

        assert report_path.exists()
        assert report_path.name == "login-run-ok.json"

        data = json.loads(report_path.read_text())
        assert len(data["tests"]) == 1
        assert data["summary"] == {"total": 1, "passed": 1, "failed": 0, "pass_rate": 100.0}

    def test_json_structure(self, temp_dir: Path, adapted_result: TestResult):
        data = json.loads(JSONReporter().generate(adapted_result, temp_dir).read_text())

        test = data["tests"][0]
        assert test["test_case"]["id"] == "login"
        assert test["test_case"]["tags"] == ["auth", "smoke"]
        assert test["result"]["testRunId"] == "run-ok"
        assert test["result"]["status"] == "completed"
        assert test["result"]["adaptedSteps"] == 1
        assert test["result"]["adaptations"] == 1
        assert test["result"]["sandbox_id"] == "sandbox-1"
        assert len(test["steps"]) == 3

    def test_step_detail(self, temp_dir: Path, adapted_result: TestResult):
        data = json.loads(JSONReporter().generate(adapted_result, temp_dir).read_text())

        step = data["tests"][0]["steps"][2]
        assert step["status"] == "adapted"
        assert step["adaptations"][0]["adapted_action"]["target"] == "#login-button-v2"
        assert step["executed"][0]["target"] == "#login-button-v2"
        assert step["url_before"] == "https://app.example.com/login"
        assert step["url_after"] is None
        assert "page_state_before" not in step

    def test_suite_report(
        self,
        temp_dir: Path,
        adapted_result: TestResult,
        failed_result: TestResult,
        cancelled_result: TestResult,
    ):
        report_path = JSONReporter().generate_suite(
            [adapted_result, failed_result, cancelled_result], temp_dir
        )
        assert report_path.name.startswith("suite-")

        data = json.loads(report_path.read_text())
        summary = data["summary"]
        assert summary["total"] == 3
        assert summary["passed"] == 1
        assert summary["failed"] == 1
        assert summary["cancelled"] == 1
        assert summary["adapted_steps"] == 1
        assert summary["recovery_attempts"] == 1
        assert [f["testRunId"] for f in data["failed_tests"]] == ["run-fail", "run-cancel"]

    def test_empty_suite(self, temp_dir: Path):
        data = json.loads(JSONReporter().generate_suite([], temp_dir).read_text())
        assert data["summary"]["total"] == 0
        assert data["summary"]["pass_rate"] == 0.0


class TestJUnitReporter:
    """Tests for JUnit XML reporter."""

    def test_generates_valid_xml(self, temp_dir: Path, adapted_result: TestResult):
        report_path = JUnitReporter().generate(adapted_result, temp_dir)

        assert report_path.name == "junit-login-run-ok.xml"
        root = ElementTree.parse(report_path).getroot()
        assert root.tag == "testsuite"
        assert root.get("tests") == "1"
        assert root.get("failures") == "0"

    def test_adapted_success_has_system_out(self, temp_dir: Path, adapted_result: TestResult):
        root = ElementTree.parse(JUnitReporter().generate(adapted_result, temp_dir)).getroot()

        testcase = root.find("testcase")
        assert testcase.get("classname") == "adaptive.e2e"
        assert testcase.find("failure") is None
        system_out = testcase.find("system-out").text
        assert "Adapted steps: 1/3" in system_out
        assert "#login-button-v2" in system_out

    def test_failure_details(self, temp_dir: Path, failed_result: TestResult):
        root = ElementTree.parse(JUnitReporter().generate(failed_result, temp_dir)).getroot()

        failure = root.find("testcase/failure")
        assert failure.get("message") == "Step 2 failed [element_not_found]: <missing> & gone"
        assert "recovery renavigate failed" in failure.text
        assert "error: element missing" in failure.text

    def test_suite_counts(
        self,
        temp_dir: Path,
        adapted_result: TestResult,
        failed_result: TestResult,
        cancelled_result: TestResult,
    ):
        report_path = JUnitReporter().generate_suite(
            [adapted_result, failed_result, cancelled_result], temp_dir
        )
        root = ElementTree.parse(report_path).getroot()

        assert root.get("tests") == "3"
        assert root.get("failures") == "1"
        assert root.get("skipped") == "1"
        assert len(root.findall("testcase")) == 3
        assert len(root.findall("testcase/skipped")) == 1
