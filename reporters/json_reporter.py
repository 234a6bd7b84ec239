"""JSON report generator for adaptive E2E test runs."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List

from reporters.base import BaseReporter, ReportFormat
from test_types import TestResult, TestStep, utcnow


class JSONReporter(BaseReporter):
    """Generate machine-readable JSON reports."""

    @property
    def format(self) -> ReportFormat:
        return ReportFormat.JSON

    def _step_to_dict(self, step: TestStep) -> Dict[str, Any]:
        """Convert TestStep to JSON-serializable dict, without page snapshots."""
        return {
            "step": step.step_number,
            "action": step.action.to_dict(),
            "status": step.status.value,
            "executed": [a.to_dict() for a in step.executed_actions],
            "adaptations": [a.to_dict() for a in step.adaptations],
            "recovery_attempts": [r.to_dict() for r in step.recovery_attempts],
            "error_type": step.error_type,
            "error_message": step.error_message,
            "url_before": step.page_state_before.url if step.page_state_before else None,
            "url_after": step.page_state_after.url if step.page_state_after else None,
            "duration_ms": step.duration_ms,
        }

    def _result_to_dict(self, result: TestResult) -> Dict[str, Any]:
        """Convert TestResult to JSON-serializable dict."""
        run = result.run
        return {
            "test_case": {
                "id": result.case.id,
                "name": result.case.name,
                "url": result.case.url,
                "objective": result.case.objective,
                "tags": sorted(result.case.tags),
                "reliability_score": result.case.reliability_score,
            },
            "result": {
                **result.to_payload(),
                "success": result.success,
                "sandbox_id": run.sandbox_id,
                "skipped_steps": run.skipped_steps,
                "adaptations": run.adaptation_count,
                "recovery_attempts": run.recovery_attempt_count,
                "started_at": result.started_at.isoformat(),
                "finished_at": result.finished_at.isoformat(),
            },
            "steps": [self._step_to_dict(s) for s in run.steps],
        }

    def _write(self, target: Path, data: Dict[str, Any]) -> Path:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps(data, indent=2), encoding="utf-8")
        return target

    def generate(self, result: TestResult, output_dir: Path) -> Path:
        """Generate JSON report for a single test run."""
        target = output_dir / f"{result.case.id}-{result.test_run_id}.json"
        report_data = {
            "generated_at": utcnow().isoformat(),
            "report_version": "2.0",
            "tests": [self._result_to_dict(result)],
            "summary": {
                "total": 1,
                "passed": 1 if result.success else 0,
                "failed": 0 if result.success else 1,
                "pass_rate": 100.0 if result.success else 0.0,
            },
        }
        return self._write(target, report_data)

    def generate_suite(self, results: List[TestResult], output_dir: Path) -> Path:
        """Generate combined JSON report for multiple test runs."""
        target = output_dir / f"suite-{utcnow().strftime('%Y%m%d-%H%M%S')}.json"

        passed = sum(1 for r in results if r.success)
        cancelled = sum(1 for r in results if r.status.value == "cancelled")
        pass_rate = (passed / len(results) * 100) if results else 0.0

        durations = [r.duration_seconds for r in results]
        total_duration = sum(durations)
        avg_duration = total_duration / len(durations) if durations else 0

        report_data = {
            "generated_at": utcnow().isoformat(),
            "report_version": "2.0",
            "tests": [self._result_to_dict(r) for r in results],
            "summary": {
                "total": len(results),
                "passed": passed,
                "failed": len(results) - passed - cancelled,
                "cancelled": cancelled,
                "pass_rate": round(pass_rate, 2),
                "adapted_steps": sum(r.run.adapted_steps for r in results),
                "recovery_attempts": sum(r.run.recovery_attempt_count for r in results),
                "total_duration_seconds": round(total_duration, 2),
                "avg_duration_seconds": round(avg_duration, 2),
            },
            "failed_tests": [
                {"id": r.case.id, "testRunId": r.test_run_id, "error": r.error}
                for r in results if not r.success
            ],
        }
        return self._write(target, report_data)
