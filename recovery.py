"""
Recovery Handler

Runs after a step has exhausted its ordinary retries. The failure is
classified into an error category and the category's strategies are tried
in order, stopping at the first that gets the step through. Each strategy
tried leaves exactly one RecoveryAttempt record.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from config import ExecutionConfig
from container_runtime import ContainerRuntime, PageStateCapturer
from exceptions import AuthRequiredError, PageNotLoadedError, StepExecutionError
from test_types import ActionResult, PageSnapshot, RecoveryAttempt, StepAction
from validator import SnapshotStepValidator


class ErrorCategory(str, Enum):
    ELEMENT_NOT_FOUND = "element_not_found"
    PAGE_NOT_LOADED = "page_not_loaded"
    UNEXPECTED_NAVIGATION = "unexpected_navigation"
    AUTH_REQUIRED = "auth_required"
    UNKNOWN = "unknown"


class RecoveryStrategy(str, Enum):
    ALTERNATIVE_SELECTOR = "alternative_selector"
    WAIT_AND_RETRY = "wait_and_retry"
    RENAVIGATE = "renavigate"
    AUTH_REQUIRED = "auth_required"


STRATEGY_CHAINS: Dict[ErrorCategory, List[RecoveryStrategy]] = {
    ErrorCategory.ELEMENT_NOT_FOUND: [RecoveryStrategy.ALTERNATIVE_SELECTOR, RecoveryStrategy.WAIT_AND_RETRY],
    ErrorCategory.PAGE_NOT_LOADED: [RecoveryStrategy.WAIT_AND_RETRY],
    ErrorCategory.UNEXPECTED_NAVIGATION: [RecoveryStrategy.RENAVIGATE],
    ErrorCategory.AUTH_REQUIRED: [RecoveryStrategy.AUTH_REQUIRED],
    ErrorCategory.UNKNOWN: [RecoveryStrategy.WAIT_AND_RETRY],
}

_AUTH_PATH = re.compile(r"/(login|log-in|signin|sign-in|auth)(/|$)", re.IGNORECASE)


def _is_auth_url(url: Optional[str]) -> bool:
    return bool(url) and bool(_AUTH_PATH.search(urlparse(url).path or "/"))


def _same_page(a: str, b: str) -> bool:
    pa, pb = urlparse(a), urlparse(b)
    return pa.netloc == pb.netloc and (pa.path.rstrip("/") or "/") == (pb.path.rstrip("/") or "/")


def classify_error(
    error: BaseException,
    expected_url: Optional[str] = None,
    current_url: Optional[str] = None,
) -> ErrorCategory:
    """Map a step failure onto the category that selects its recovery chain."""
    if isinstance(error, AuthRequiredError):
        return ErrorCategory.AUTH_REQUIRED
    if _is_auth_url(current_url) and not _is_auth_url(expected_url):
        return ErrorCategory.AUTH_REQUIRED

    category = getattr(error, "category", ErrorCategory.UNKNOWN.value)
    off_page = bool(expected_url and current_url and not _same_page(expected_url, current_url))
    if off_page and category in (ErrorCategory.ELEMENT_NOT_FOUND.value, ErrorCategory.UNKNOWN.value):
        return ErrorCategory.UNEXPECTED_NAVIGATION

    if isinstance(error, StepExecutionError):
        try:
            return ErrorCategory(error.category)
        except ValueError:
            return ErrorCategory.UNKNOWN
    if isinstance(error, asyncio.TimeoutError):
        return ErrorCategory.PAGE_NOT_LOADED
    return ErrorCategory.UNKNOWN


@dataclass
class RecoveryContext:
    sandbox_id: str
    action: StepAction
    error: BaseException
    expected_url: Optional[str] = None
    snapshot: Optional[PageSnapshot] = None


@dataclass
class RecoveryOutcome:
    """Result of running one category's strategy chain."""

    category: ErrorCategory
    original: StepAction
    success: bool = False
    attempts: List[RecoveryAttempt] = field(default_factory=list)
    action: Optional[StepAction] = None
    result: Optional[ActionResult] = None

    @property
    def changed_action(self) -> bool:
        """True when the step only got through with a different action."""
        return self.success and self.action is not None and self.action != self.original


StrategyResult = Tuple[RecoveryAttempt, Optional[StepAction], Optional[ActionResult]]


class RecoveryHandler:
    """
    Selects and runs recovery strategies for failed steps.

    Strategies only ever act inside the run's own sandbox and are bounded by
    the execution config (wait count, wait length and per-action timeout).
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        capturer: PageStateCapturer,
        config: Optional[ExecutionConfig] = None,
        matcher: Optional[SnapshotStepValidator] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.runtime = runtime
        self.capturer = capturer
        self.config = config or ExecutionConfig()
        self.matcher = matcher or SnapshotStepValidator()
        self.logger = logger or logging.getLogger("recovery")
        self._strategies: Dict[RecoveryStrategy, Callable[[RecoveryContext], Awaitable[StrategyResult]]] = {
            RecoveryStrategy.ALTERNATIVE_SELECTOR: self._alternative_selector,
            RecoveryStrategy.WAIT_AND_RETRY: self._wait_and_retry,
            RecoveryStrategy.RENAVIGATE: self._renavigate,
            RecoveryStrategy.AUTH_REQUIRED: self._auth_required,
        }

    def with_config(self, config: ExecutionConfig) -> "RecoveryHandler":
        """Copy of this handler bound to another execution config."""
        return RecoveryHandler(self.runtime, self.capturer, config, self.matcher, self.logger)

    def chain_for(self, category: ErrorCategory) -> List[RecoveryStrategy]:
        enabled = set(self.config.recovery_strategies)
        return [
            s for s in STRATEGY_CHAINS[category]
            if s.value in enabled or s == RecoveryStrategy.AUTH_REQUIRED
        ]

    async def _execute(self, sandbox_id: str, action: StepAction) -> ActionResult:
        try:
            return await asyncio.wait_for(
                self.runtime.exec_in_sandbox(sandbox_id, action),
                timeout=self.config.step_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise PageNotLoadedError(
                f"{action.type} timed out after {self.config.step_timeout_seconds}s",
                action_type=action.type,
                target=action.target,
            ) from e

    async def recover(
        self,
        sandbox_id: str,
        action: StepAction,
        error: BaseException,
        expected_url: Optional[str] = None,
    ) -> RecoveryOutcome:
        snapshot: Optional[PageSnapshot] = None
        try:
            snapshot = await self.capturer.capture(sandbox_id)
        except Exception as e:
            self.logger.warning(f"Could not capture page for recovery: {e}")

        current_url = snapshot.url if snapshot else None
        category = classify_error(error, expected_url, current_url)
        outcome = RecoveryOutcome(category=category, original=action)
        context = RecoveryContext(
            sandbox_id=sandbox_id,
            action=action,
            error=error,
            expected_url=expected_url,
            snapshot=snapshot,
        )

        chain = self.chain_for(category)
        self.logger.info(
            f"Recovering '{action.describe()}' ({category.value}): "
            f"{', '.join(s.value for s in chain) or 'no strategies enabled'}"
        )
        for strategy in chain:
            attempt, recovered_action, result = await self._strategies[strategy](context)
            outcome.attempts.append(attempt)
            if attempt.success:
                outcome.success = True
                outcome.action = recovered_action
                outcome.result = result
                self.logger.info(f"Recovery via {strategy.value} succeeded: {attempt.reason}")
                return outcome
            self.logger.info(f"Recovery via {strategy.value} failed: {attempt.reason}")
            if strategy == RecoveryStrategy.AUTH_REQUIRED:
                break
        return outcome

    # ─────────────────────────────────────────────────────────────────────────
    # Strategies
    # ─────────────────────────────────────────────────────────────────────────

    async def _alternative_selector(self, ctx: RecoveryContext) -> StrategyResult:
        name = RecoveryStrategy.ALTERNATIVE_SELECTOR.value
        action = ctx.action
        if not action.target:
            return RecoveryAttempt(name, "step has no target to replace", False), None, None

        if ctx.snapshot is not None:
            candidates = self.matcher.find_alternatives(action, ctx.snapshot)
        else:
            candidates = [s for s in action.alternatives if s != action.target]
        if not candidates:
            return RecoveryAttempt(name, f"no alternative found for {action.target}", False), None, None

        errors: List[str] = []
        for selector in candidates:
            candidate = action.with_target(selector)
            try:
                result = await self._execute(ctx.sandbox_id, candidate)
            except StepExecutionError as e:
                errors.append(f"{selector}: {e.message}")
                continue
            return RecoveryAttempt(name, f"{action.target} -> {selector}", True), candidate, result

        return (
            RecoveryAttempt(
                name,
                f"{len(candidates)} alternative(s) failed",
                False,
                error="; ".join(errors[-3:]),
            ),
            None,
            None,
        )

    async def _wait_and_retry(self, ctx: RecoveryContext) -> StrategyResult:
        name = RecoveryStrategy.WAIT_AND_RETRY.value
        waited = 0.0
        last_error: Optional[StepExecutionError] = None
        for i in range(1, self.config.recovery_max_waits + 1):
            await asyncio.sleep(self.config.recovery_wait_seconds)
            waited += self.config.recovery_wait_seconds
            try:
                result = await self._execute(ctx.sandbox_id, ctx.action)
            except StepExecutionError as e:
                last_error = e
                if not e.retryable:
                    break
                continue
            return (
                RecoveryAttempt(name, f"succeeded after {i} wait(s)", True, wait_ms=int(waited * 1000)),
                ctx.action,
                result,
            )
        return (
            RecoveryAttempt(
                name,
                f"still failing after {self.config.recovery_max_waits} wait(s)",
                False,
                wait_ms=int(waited * 1000),
                error=last_error.message if last_error else None,
            ),
            None,
            None,
        )

    async def _renavigate(self, ctx: RecoveryContext) -> StrategyResult:
        name = RecoveryStrategy.RENAVIGATE.value
        if not ctx.expected_url:
            return RecoveryAttempt(name, "no known page to return to", False), None, None
        try:
            await self._execute(ctx.sandbox_id, StepAction(type="navigate", value=ctx.expected_url))
            result = await self._execute(ctx.sandbox_id, ctx.action)
        except StepExecutionError as e:
            return RecoveryAttempt(name, f"returned to {ctx.expected_url} but step failed", False, error=e.message), None, None
        return RecoveryAttempt(name, f"returned to {ctx.expected_url}", True), ctx.action, result

    async def _auth_required(self, ctx: RecoveryContext) -> StrategyResult:
        return (
            RecoveryAttempt(
                RecoveryStrategy.AUTH_REQUIRED.value,
                "application requires authentication; not recoverable",
                False,
                error=str(ctx.error),
            ),
            None,
            None,
        )
