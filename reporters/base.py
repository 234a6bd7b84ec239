"""Base reporter interface for adaptive E2E test runs."""
from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import List

from test_types import TestResult


class ReportFormat(str, Enum):
    """Supported report formats."""
    JSON = "json"
    JUNIT = "junit"
    ALL = "all"
    NONE = "none"


class BaseReporter(ABC):
    """Abstract base class for report generators."""

    @abstractmethod
    def generate(self, result: TestResult, output_dir: Path) -> Path:
        """
        Generate a report for a single test run.

        Args:
            result: Finished test run with its test case
            output_dir: Directory to write report to

        Returns:
            Path to the generated report file
        """
        pass

    @abstractmethod
    def generate_suite(self, results: List[TestResult], output_dir: Path) -> Path:
        """
        Generate a combined report for multiple test runs.

        Args:
            results: List of finished test runs
            output_dir: Directory to write report to

        Returns:
            Path to the generated report file
        """
        pass

    @property
    @abstractmethod
    def format(self) -> ReportFormat:
        """Return the report format this reporter generates."""
        pass


def create_reporters(output_format: str) -> List[BaseReporter]:
    """Reporters selected by an ``output_format`` setting."""
    from reporters.json_reporter import JSONReporter
    from reporters.junit import JUnitReporter

    fmt = ReportFormat(output_format)
    if fmt == ReportFormat.NONE:
        return []
    if fmt == ReportFormat.ALL:
        return [JSONReporter(), JUnitReporter()]
    if fmt == ReportFormat.JSON:
        return [JSONReporter()]
    return [JUnitReporter()]
