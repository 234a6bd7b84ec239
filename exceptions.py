"""Custom exception hierarchy for the adaptive E2E engine."""
from __future__ import annotations

from typing import Any, Optional


class AdaptiveE2EError(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# Pool-related exceptions
class PoolError(AdaptiveE2EError):
    """Base exception for container pool errors."""

    pass


class PoolExhausted(PoolError):
    """Raised when no sandbox is idle and the pool is at its maximum size."""

    def __init__(self, test_run_id: str, max_size: int):
        super().__init__(
            f"No sandbox available for run {test_run_id} (pool size {max_size})",
            {"test_run_id": test_run_id, "max_size": max_size},
        )
        self.test_run_id = test_run_id
        self.max_size = max_size


class AllocationConflict(PoolError):
    """Raised when an allocation would break sandbox/run exclusivity."""

    def __init__(
        self,
        message: str,
        sandbox_id: Optional[str] = None,
        test_run_id: Optional[str] = None,
    ):
        details = {}
        if sandbox_id:
            details["sandbox_id"] = sandbox_id
        if test_run_id:
            details["test_run_id"] = test_run_id
        super().__init__(message, details)
        self.sandbox_id = sandbox_id
        self.test_run_id = test_run_id


class AllocationExpired(PoolError):
    """Raised into a run whose allocation was reaped by the health check."""

    def __init__(self, test_run_id: str, sandbox_id: str, timeout_seconds: float):
        super().__init__(
            f"Allocation of sandbox {sandbox_id} to run {test_run_id} expired after {timeout_seconds:g}s",
            {"test_run_id": test_run_id, "sandbox_id": sandbox_id, "timeout_seconds": timeout_seconds},
        )
        self.test_run_id = test_run_id
        self.sandbox_id = sandbox_id
        self.timeout_seconds = timeout_seconds


class SandboxUnhealthy(PoolError):
    """Raised when a sandbox fails its health check or reset."""

    def __init__(self, sandbox_id: str, reason: Optional[str] = None):
        details = {"sandbox_id": sandbox_id}
        if reason:
            details["reason"] = reason
        super().__init__(f"Sandbox {sandbox_id} is unhealthy", details)
        self.sandbox_id = sandbox_id
        self.reason = reason


class SandboxNotFound(PoolError):
    """Raised when an operation names a sandbox the pool does not own."""

    def __init__(self, sandbox_id: str):
        super().__init__(f"Sandbox not found: {sandbox_id}", {"sandbox_id": sandbox_id})
        self.sandbox_id = sandbox_id


# Container runtime exceptions
class RuntimeClientError(AdaptiveE2EError):
    """Base exception for container runtime errors."""

    pass


class ContainerCommandError(RuntimeClientError):
    """Raised when a container CLI command fails or times out."""

    def __init__(
        self,
        message: str,
        command: Optional[list[str]] = None,
        exit_code: Optional[int] = None,
        stderr: Optional[str] = None,
    ):
        details: dict[str, Any] = {}
        if command:
            details["command"] = " ".join(command)
        if exit_code is not None:
            details["exit_code"] = exit_code
        if stderr:
            details["stderr"] = stderr[:300]
        super().__init__(message, details)
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


# Step execution exceptions
class StepExecutionError(AdaptiveE2EError):
    """Raised when a single attempt to execute a step fails.

    Attempt failures are transient by default and retried by the engine.
    """

    category = "unknown"
    retryable = True

    def __init__(
        self,
        message: str,
        action_type: Optional[str] = None,
        target: Optional[str] = None,
        url: Optional[str] = None,
    ):
        details = {}
        if action_type:
            details["action"] = action_type
        if target:
            details["target"] = target
        if url:
            details["url"] = url
        super().__init__(message, details)
        self.action_type = action_type
        self.target = target
        self.url = url


class ElementNotFoundError(StepExecutionError):
    """Raised when the step target cannot be located on the page."""

    category = "element_not_found"


class PageNotLoadedError(StepExecutionError):
    """Raised when navigation or page load does not finish in time."""

    category = "page_not_loaded"


class UnexpectedNavigationError(StepExecutionError):
    """Raised when the page is not where the plan expects it to be."""

    category = "unexpected_navigation"


class AuthRequiredError(StepExecutionError):
    """Raised when the application demands authentication."""

    category = "auth_required"
    retryable = False


# Run-level exceptions
class RunError(AdaptiveE2EError):
    """Base exception for test run errors."""

    pass


class RecoveryFailed(RunError):
    """Raised when every recovery strategy for a step has failed."""

    def __init__(self, step_number: int, category: str, reason: Optional[str] = None):
        details: dict[str, Any] = {"step_number": step_number, "category": category}
        if reason:
            details["reason"] = reason
        super().__init__(f"Recovery failed for step {step_number} ({category})", details)
        self.step_number = step_number
        self.category = category
        self.reason = reason


class AdaptationBudgetExhausted(RunError):
    """Raised when a run needs more adaptations than it is allowed."""

    def __init__(self, max_adaptations: int, requested: int, step_number: Optional[int] = None):
        details: dict[str, Any] = {"max_adaptations": max_adaptations, "requested": requested}
        if step_number is not None:
            details["step_number"] = step_number
        super().__init__(
            f"Adaptation budget exhausted ({requested} > {max_adaptations})",
            details,
        )
        self.max_adaptations = max_adaptations
        self.requested = requested
        self.step_number = step_number


class RunStateError(RunError):
    """Raised on an illegal test run or step state transition."""

    def __init__(self, message: str, run_id: Optional[str] = None, status: Optional[str] = None):
        details = {}
        if run_id:
            details["run_id"] = run_id
        if status:
            details["status"] = status
        super().__init__(message, details)
        self.run_id = run_id
        self.status = status


# AI capability exceptions
class ValidatorError(AdaptiveE2EError):
    """Base exception for step validation/adaptation errors."""

    pass


class ValidatorResponseError(ValidatorError):
    """Raised when the model returns an invalid or unparseable response."""

    def __init__(self, message: str, response: Optional[str] = None):
        details = {"response_preview": response[:200] if response else None}
        super().__init__(message, details)
        self.response = response


# Test definition exceptions
class TestDefinitionError(AdaptiveE2EError):
    """Base exception for test definition/loading errors."""

    pass


class TaskLoadError(TestDefinitionError):
    """Raised when a test case file cannot be loaded or parsed."""

    def __init__(self, message: str, file_path: Optional[str] = None):
        details = {"file_path": file_path} if file_path else {}
        super().__init__(message, details)
        self.file_path = file_path


class TaskValidationError(TestDefinitionError):
    """Raised when a test case definition is invalid."""

    def __init__(self, message: str, task_id: Optional[str] = None, field: Optional[str] = None):
        details = {}
        if task_id:
            details["task_id"] = task_id
        if field:
            details["field"] = field
        super().__init__(message, details)
        self.task_id = task_id
        self.field = field


# Configuration exceptions
class ConfigurationError(AdaptiveE2EError):
    """Raised when configuration is invalid."""

    pass


class ConfigFileNotFoundError(ConfigurationError):
    """Raised when a required config file is not found."""

    def __init__(self, file_path: str):
        super().__init__(f"Configuration file not found: {file_path}", {"file_path": file_path})
        self.file_path = file_path
