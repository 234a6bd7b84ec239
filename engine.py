"""Adaptive execution engine.

Drives one test run end to end: allocate an exclusive sandbox, walk the
planned steps in order (capture, validate, adapt, execute with retry,
recover), record every adaptation and recovery attempt, and always release
the sandbox, persist the terminal run and refresh the test case's
reliability, whatever way the run ends.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Coroutine, Dict, List, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config import ExecutionConfig
from container_runtime import ContainerRuntime, PageStateCapturer
from exceptions import (
    AdaptationBudgetExhausted,
    AllocationExpired,
    PageNotLoadedError,
    PoolError,
    PoolExhausted,
    RecoveryFailed,
    RunStateError,
    StepExecutionError,
)
from persistence import InMemoryRunRepository, RunRepository
from pool_manager import Allocation, ContainerPoolManager, Sandbox
from recovery import RecoveryHandler
from reliability import ReliabilityAggregator
from test_types import (
    ActionResult,
    Adaptation,
    PageSnapshot,
    RunStatus,
    StepAction,
    StepStatus,
    TestCase,
    TestResult,
    TestRun,
    TestStep,
)
from validator import StepValidator

T = TypeVar("T")


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, StepExecutionError) and error.retryable


@dataclass
class _RunControl:
    run: TestRun
    test_case: TestCase
    cancel_requested: bool = False
    inflight: Optional[asyncio.Task] = None
    expired: Optional[AllocationExpired] = None


class AdaptiveExecutionEngine:
    """Runs test cases against pooled sandboxes, adapting to page drift."""

    def __init__(
        self,
        pool: ContainerPoolManager,
        runtime: ContainerRuntime,
        capturer: Optional[PageStateCapturer] = None,
        validator: Optional[StepValidator] = None,
        repository: Optional[RunRepository] = None,
        aggregator: Optional[ReliabilityAggregator] = None,
        config: Optional[ExecutionConfig] = None,
        recovery: Optional[RecoveryHandler] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if capturer is None:
            if not isinstance(runtime, PageStateCapturer):
                raise TypeError("A PageStateCapturer is required when the runtime cannot capture pages")
            capturer = runtime
        self.pool = pool
        self.runtime = runtime
        self.capturer = capturer
        self.validator = validator
        self.repository = repository or InMemoryRunRepository()
        self.aggregator = aggregator or ReliabilityAggregator(self.repository)
        self.config = config or ExecutionConfig()
        self.logger = logger or logging.getLogger("engine")
        self.recovery = recovery or RecoveryHandler(runtime, capturer, self.config, logger=self.logger.getChild("recovery"))
        self._runs: Dict[str, _RunControl] = {}
        pool.add_expiry_listener(self._on_allocation_expired)

    # ─────────────────────────────────────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────────────────────────────────────

    def active_runs(self) -> List[str]:
        return list(self._runs)

    def cancel(self, test_run_id: str) -> bool:
        """Request cancellation of an active run.

        No further steps are issued and the in-flight step (or allocation)
        is interrupted. Returns False when the run is unknown or finished.
        """
        control = self._runs.get(test_run_id)
        if control is None or control.run.is_terminal:
            return False
        control.cancel_requested = True
        if control.inflight is not None and not control.inflight.done():
            control.inflight.cancel()
        self.logger.info(f"Cancellation requested for run {test_run_id}")
        return True

    def _on_allocation_expired(self, allocation: Allocation) -> None:
        """Stop a run whose sandbox the pool reaped; the run ends failed."""
        control = self._runs.get(allocation.test_run_id)
        if control is None or control.run.is_terminal:
            return
        control.expired = AllocationExpired(
            allocation.test_run_id,
            allocation.sandbox_id,
            self.pool.config.stale_allocation_timeout_seconds,
        )
        self.logger.warning(f"Run {allocation.test_run_id}: {control.expired.message}")
        self.cancel(allocation.test_run_id)

    async def execute(
        self,
        test_case: TestCase,
        test_run_id: Optional[str] = None,
        config: Optional[ExecutionConfig] = None,
    ) -> TestResult:
        config = config or self.config
        if test_case.max_adaptations is not None:
            config = config.model_copy(update={"max_adaptations": test_case.max_adaptations})

        run = TestRun.new(test_case.id, len(test_case.steps), test_run_id)
        if run.id in self._runs:
            raise RunStateError("Run is already executing", run_id=run.id)
        control = _RunControl(run=run, test_case=test_case)
        self._runs[run.id] = control
        await self.repository.create_run(run)
        self.logger.info(f"Run {run.id} started for {test_case.id}: {test_case.name}")

        try:
            await self._execute_run(control, config)
        except asyncio.CancelledError:
            self._close_out(control, RunStatus.CANCELLED, "Run cancelled", "Run cancelled")
            raise
        except Exception as e:
            self.logger.error(f"Run {run.id} crashed: {e}", exc_info=True)
            self._close_out(control, RunStatus.FAILED, f"Engine error: {e}", "Run aborted", error=e)
        finally:
            self._runs.pop(run.id, None)
            await self._finalize(run)

        self.logger.info(
            f"Run {run.id} {run.status.value}: {run.completed_steps} ok, {run.adapted_steps} adapted, "
            f"{run.failed_steps} failed, {run.skipped_steps} skipped ({run.duration_seconds:.1f}s)"
        )
        return TestResult(case=test_case, run=run)

    # ─────────────────────────────────────────────────────────────────────────
    # Run loop
    # ─────────────────────────────────────────────────────────────────────────

    async def _execute_run(self, control: _RunControl, config: ExecutionConfig) -> None:
        run, case = control.run, control.test_case
        run.transition(RunStatus.RUNNING)
        await self._save_run(run)
        recovery = self.recovery if config is self.config else self.recovery.with_config(config)

        try:
            sandbox = await self._interruptible(control, self._allocate(run, config))
        except asyncio.CancelledError:
            if not control.cancel_requested:
                raise
            self._close_out(control, RunStatus.CANCELLED, "Cancelled before a sandbox was allocated", "Run cancelled")
            return
        except PoolError as e:
            self._close_out(control, RunStatus.FAILED, f"Sandbox allocation failed: {e}", "No sandbox available")
            return
        run.sandbox_id = sandbox.id
        self.logger.info(f"Run {run.id} using sandbox {sandbox.name}")

        if case.url and not (case.steps and case.steps[0].is_navigation):
            try:
                await self._interruptible(
                    control,
                    self._execute_with_retry(sandbox.id, StepAction(type="navigate", value=case.url), config),
                )
            except asyncio.CancelledError:
                if not control.cancel_requested:
                    raise
                self._close_interrupted(control)
                return
            except StepExecutionError as e:
                self._close_out(control, RunStatus.FAILED, f"Could not open {case.url}: {e.message}", "Start page did not load")
                return

        completed_actions: List[StepAction] = []
        for number, planned in enumerate(case.steps, start=1):
            if control.cancel_requested:
                break
            step = run.add_step(TestStep(step_number=number, action=planned))
            step.start()
            try:
                await self._interruptible(
                    control,
                    self._run_step(run, step, case, sandbox, config, recovery, completed_actions),
                )
            except asyncio.CancelledError:
                if not control.cancel_requested:
                    raise
                if control.expired is not None:
                    step.finish(StepStatus.FAILED, control.expired)
                else:
                    step.skip("Cancelled during execution")
                await self._save_step(run, step)
                break
            except AdaptationBudgetExhausted as e:
                step.finish(StepStatus.FAILED, e)
                await self._save_step(run, step)
                self._close_out(control, RunStatus.FAILED, str(e), "Run aborted: adaptation budget exhausted")
                return
            except RecoveryFailed as e:
                cause = e.__cause__ or e
                step.finish(StepStatus.FAILED, cause)
                await self._save_step(run, step)
                summary = f"Step {number} ({planned.describe()}) failed [{e.category}]: {cause}"
                self.logger.warning(f"Run {run.id}: {summary}")
                if config.on_unrecoverable_step == "abort":
                    self._close_out(control, RunStatus.FAILED, summary, f"Run aborted after step {number}")
                    return
                if run.error_summary is None:
                    run.error_summary = summary
                continue

            await self._save_step(run, step)
            completed_actions.extend(step.executed_actions)

        if control.cancel_requested:
            self._close_interrupted(control)
        elif run.failed_steps:
            self._close_out(control, RunStatus.FAILED, run.error_summary or f"{run.failed_steps} step(s) failed", "")
        else:
            run.transition(RunStatus.COMPLETED)

    async def _run_step(
        self,
        run: TestRun,
        step: TestStep,
        case: TestCase,
        sandbox: Sandbox,
        config: ExecutionConfig,
        recovery: RecoveryHandler,
        completed_actions: List[StepAction],
    ) -> None:
        snapshot = await self._capture(sandbox.id)
        step.page_state_before = snapshot

        actions = [step.action]
        if config.ai_validation and self.validator is not None and snapshot is not None:
            actions = await self._validate_and_adapt(run, step, case, snapshot, config, completed_actions)

        expected_url = snapshot.url if snapshot else None
        recovered_differently = False
        for action in actions:
            try:
                await self._execute_with_retry(sandbox.id, action, config)
                step.executed_actions.append(action)
            except StepExecutionError as e:
                self.logger.info(f"Step {step.step_number} exhausted retries: {e.message}")
                outcome = await recovery.recover(sandbox.id, action, e, expected_url)
                for attempt in outcome.attempts:
                    step.add_recovery_attempt(attempt)
                if not outcome.success:
                    raise RecoveryFailed(step.step_number, outcome.category.value, e.message) from e
                step.executed_actions.append(outcome.action or action)
                recovered_differently = recovered_differently or outcome.changed_action

        step.page_state_after = await self._capture(sandbox.id)
        status = StepStatus.ADAPTED if step.adaptations or recovered_differently else StepStatus.SUCCESS
        step.finish(status)
        self.logger.debug(f"Step {step.step_number} {status.value}: {step.action.describe()}")

    async def _validate_and_adapt(
        self,
        run: TestRun,
        step: TestStep,
        case: TestCase,
        snapshot: PageSnapshot,
        config: ExecutionConfig,
        completed_actions: List[StepAction],
    ) -> List[StepAction]:
        """Actions to execute for ``step``: the planned one or an adapted sequence."""
        try:
            verdict = await self.validator.validate(step.action, snapshot)
        except Exception as e:
            self.logger.warning(f"Validation of step {step.step_number} unavailable, executing as planned: {e}")
            return [step.action]
        if verdict.is_valid:
            return [step.action]

        self.logger.info(
            f"Step {step.step_number} does not fit the page ({verdict.confidence:.2f}): "
            f"{'; '.join(verdict.issues) or verdict.reasoning}"
        )
        try:
            proposal = await self.validator.adapt(
                case.objective or case.name,
                step.action,
                snapshot,
                completed_actions,
                verdict.issues,
            )
        except Exception as e:
            self.logger.warning(f"Adaptation of step {step.step_number} unavailable, executing as planned: {e}")
            return [step.action]

        if proposal.is_empty or proposal.confidence < config.min_adaptation_confidence:
            self.logger.info(
                f"Ignoring adaptation for step {step.step_number} "
                f"(confidence {proposal.confidence:.2f}): {proposal.reason or 'no proposal'}"
            )
            return [step.action]

        requested = run.adaptation_count + len(proposal.steps)
        if requested > config.max_adaptations:
            raise AdaptationBudgetExhausted(config.max_adaptations, requested, step.step_number)

        reason = proposal.reason or "; ".join(verdict.issues) or verdict.reasoning
        for adapted in proposal.steps:
            step.add_adaptation(Adaptation(step.action, adapted, proposal.confidence, reason))
        self.logger.info(
            f"Step {step.step_number} adapted: {step.action.describe()} -> "
            f"{', '.join(a.describe() for a in proposal.steps)}"
        )
        return list(proposal.steps)

    # ─────────────────────────────────────────────────────────────────────────
    # Sandbox interaction
    # ─────────────────────────────────────────────────────────────────────────

    async def _allocate(self, run: TestRun, config: ExecutionConfig) -> Sandbox:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(config.allocation_attempts),
            wait=wait_exponential(
                multiplier=config.backoff_multiplier,
                min=config.backoff_min_seconds,
                max=config.allocation_backoff_max_seconds,
            ),
            retry=retry_if_exception_type(PoolExhausted),
            before_sleep=self._log_allocation_retry,
            reraise=True,
        )
        return await retrying(self.pool.allocate, run.id)

    async def _execute_with_retry(self, sandbox_id: str, action: StepAction, config: ExecutionConfig) -> ActionResult:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(config.max_attempts),
            wait=wait_exponential(
                multiplier=config.backoff_multiplier,
                min=config.backoff_min_seconds,
                max=config.backoff_max_seconds,
            ),
            retry=retry_if_exception(_is_retryable),
            before_sleep=self._log_step_retry,
            reraise=True,
        )
        return await retrying(self._attempt, sandbox_id, action, config)

    async def _attempt(self, sandbox_id: str, action: StepAction, config: ExecutionConfig) -> ActionResult:
        try:
            return await asyncio.wait_for(
                self.runtime.exec_in_sandbox(sandbox_id, action),
                timeout=config.step_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise PageNotLoadedError(
                f"{action.type} timed out after {config.step_timeout_seconds}s",
                action_type=action.type,
                target=action.target,
            ) from e

    async def _capture(self, sandbox_id: str) -> Optional[PageSnapshot]:
        try:
            return await self.capturer.capture(sandbox_id)
        except Exception as e:
            self.logger.warning(f"Page capture failed in {sandbox_id}: {e}")
            return None

    def _log_step_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        self.logger.info(f"Attempt {retry_state.attempt_number} failed: {error}; retrying")

    def _log_allocation_retry(self, retry_state: RetryCallState) -> None:
        self.logger.info(f"Pool exhausted (attempt {retry_state.attempt_number}); waiting for a sandbox")

    async def _interruptible(self, control: _RunControl, coro: Coroutine[Any, Any, T]) -> T:
        """Await ``coro`` as a task that ``cancel()`` can interrupt."""
        if control.cancel_requested:
            coro.close()
            raise asyncio.CancelledError()
        task = asyncio.create_task(coro)
        control.inflight = task
        try:
            return await task
        finally:
            control.inflight = None

    # ─────────────────────────────────────────────────────────────────────────
    # Terminal handling
    # ─────────────────────────────────────────────────────────────────────────

    def _close_out(
        self,
        control: _RunControl,
        status: RunStatus,
        summary: str,
        skip_reason: str,
        error: Optional[BaseException] = None,
    ) -> None:
        """Resolve every open step, record the rest as skipped and end the run."""
        run = control.run
        if run.is_terminal:
            return
        for step in run.steps:
            if step.status.is_resolved:
                continue
            if error is not None:
                step.finish(StepStatus.FAILED, error)
            else:
                step.skip(skip_reason)
        for number in range(len(run.steps) + 1, len(control.test_case.steps) + 1):
            step = TestStep(step_number=number, action=control.test_case.steps[number - 1])
            step.skip(skip_reason or "Not executed")
            run.add_step(step)
        run.transition(status, summary)

    def _close_interrupted(self, control: _RunControl) -> None:
        if control.expired is not None:
            self._close_out(control, RunStatus.FAILED, control.expired.message, "Sandbox allocation expired")
        else:
            self._close_out(control, RunStatus.CANCELLED, "Cancelled by request", "Run cancelled")

    async def _finalize(self, run: TestRun) -> None:
        """Release the sandbox, persist the run and refresh reliability."""
        try:
            await self.pool.release(run.id)
        except Exception as e:
            self.logger.error(f"Releasing sandbox of run {run.id} failed: {e}")
        await self._save_run(run)
        if not run.is_terminal:
            return
        try:
            await self.aggregator.on_run_terminal(run)
        except Exception as e:
            self.logger.error(f"Reliability update for {run.test_case_id} failed: {e}")

    async def _save_run(self, run: TestRun) -> None:
        try:
            await self.repository.update_run(run)
        except Exception as e:
            self.logger.error(f"Persisting run {run.id} failed: {e}")

    async def _save_step(self, run: TestRun, step: TestStep) -> None:
        try:
            await self.repository.save_step(run.id, step)
        except Exception as e:
            self.logger.error(f"Persisting step {step.step_number} of run {run.id} failed: {e}")
