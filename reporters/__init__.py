"""Report generators for adaptive E2E test runs."""
from reporters.base import BaseReporter, ReportFormat, create_reporters
from reporters.json_reporter import JSONReporter
from reporters.junit import JUnitReporter

__all__ = [
    "BaseReporter",
    "ReportFormat",
    "JSONReporter",
    "JUnitReporter",
    "create_reporters",
]
