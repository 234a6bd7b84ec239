"""JUnit XML report generator for CI integration."""
from __future__ import annotations

import html
from datetime import datetime
from pathlib import Path
from typing import List

from reporters.base import BaseReporter, ReportFormat
from test_types import RunStatus, TestResult, utcnow


class JUnitReporter(BaseReporter):
    """Generate JUnit XML reports for CI/CD integration."""

    @property
    def format(self) -> ReportFormat:
        return ReportFormat.JUNIT

    def _escape_xml(self, text: str) -> str:
        """Escape special XML characters."""
        return html.escape(str(text), quote=True)

    def _format_timestamp(self, dt: datetime) -> str:
        """Format datetime for JUnit XML."""
        return dt.strftime("%Y-%m-%dT%H:%M:%S")

    def _step_lines(self, result: TestResult) -> List[str]:
        lines = []
        for step in result.run.steps:
            lines.append(f"  [{step.step_number}] {step.status.value:<8} {step.action.describe()}")
            for adaptation in step.adaptations:
                lines.append(
                    f"      adapted -> {adaptation.adapted_action.describe()} "
                    f"({adaptation.confidence:.2f}): {adaptation.reason}"
                )
            for attempt in step.recovery_attempts:
                outcome = "ok" if attempt.success else "failed"
                lines.append(f"      recovery {attempt.strategy} {outcome}: {attempt.reason}")
            if step.error_message:
                lines.append(f"      error: {step.error_message[:200]}")
        return lines

    def _build_testcase_xml(self, result: TestResult) -> str:
        """Build XML for a single test case."""
        lines = []

        classname = "adaptive.e2e"
        name = self._escape_xml(result.case.id)
        time_sec = f"{result.duration_seconds:.3f}"
        lines.append(f'    <testcase classname="{classname}" name="{name}" time="{time_sec}">')

        if result.status == RunStatus.CANCELLED:
            lines.append(f'      <skipped message="{self._escape_xml(result.error or "cancelled")}"/>')
        elif not result.success:
            failure_msg = self._escape_xml(result.error or "Run failed")
            lines.append(f'      <failure message="{failure_msg}" type="TestFailure"><![CDATA[')
            lines.append(f"Test Case: {result.case.id} ({result.case.name})")
            lines.append(f"Run: {result.test_run_id}")
            lines.append(f"URL: {result.case.url or 'N/A'}")
            lines.append(f"Failure Reason: {result.error}")
            lines.append("")
            lines.append("Steps:")
            lines.extend(self._step_lines(result))
            lines.append("]]></failure>")

        if result.success and result.run.adapted_steps:
            lines.append("      <system-out><![CDATA[")
            lines.append(f"Adapted steps: {result.run.adapted_steps}/{result.run.total_steps}")
            lines.extend(self._step_lines(result))
            lines.append("]]></system-out>")

        lines.append("    </testcase>")
        return "\n".join(lines)

    def generate(self, result: TestResult, output_dir: Path) -> Path:
        """Generate JUnit XML report for a single test run."""
        return self._write(
            [result],
            output_dir / f"junit-{result.case.id}-{result.test_run_id}.xml",
        )

    def generate_suite(self, results: List[TestResult], output_dir: Path) -> Path:
        """Generate combined JUnit XML report for multiple test runs."""
        return self._write(results, output_dir / f"junit-{utcnow().strftime('%Y%m%d-%H%M%S')}.xml")

    def _write(self, results: List[TestResult], target: Path) -> Path:
        target.parent.mkdir(parents=True, exist_ok=True)

        tests = len(results)
        skipped = sum(1 for r in results if r.status == RunStatus.CANCELLED)
        failures = sum(1 for r in results if not r.success) - skipped
        total_time = sum(r.duration_seconds for r in results)

        if results:
            timestamp_str = self._format_timestamp(min(r.started_at for r in results))
        else:
            timestamp_str = self._format_timestamp(utcnow())

        lines = ['<?xml version="1.0" encoding="UTF-8"?>']
        lines.append(
            f'<testsuite name="Adaptive E2E Tests" '
            f'tests="{tests}" '
            f'failures="{failures}" '
            f'errors="0" '
            f'skipped="{skipped}" '
            f'time="{total_time:.3f}" '
            f'timestamp="{timestamp_str}">'
        )

        lines.append("  <properties>")
        lines.append('    <property name="reporter" value="adaptive-e2e-junit"/>')
        lines.append(f'    <property name="generated_at" value="{utcnow().isoformat()}"/>')
        lines.append("  </properties>")

        for result in results:
            lines.append(self._build_testcase_xml(result))

        lines.append("</testsuite>")

        target.write_text("\n".join(lines), encoding="utf-8")
        return target
