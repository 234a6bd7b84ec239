"""In-process fakes shared by the unit tests."""
from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Sequence, Set, Tuple

from container_runtime import ContainerRuntime, HealthStatus, PageStateCapturer, ResourceLimits
from exceptions import ElementNotFoundError
from pool_manager import ContainerPoolManager
from test_types import ActionResult, PageElement, PageSnapshot, StepAction
from validator import AdaptationProposal, StepValidator, ValidationVerdict


LOGIN_URL = "https://app.example.com/login"


def login_page(url: str = LOGIN_URL) -> PageSnapshot:
    return PageSnapshot(
        url=url,
        title="Sign in",
        elements=[
            PageElement(selector="#email", tag="input", label="Email"),
            PageElement(selector="#password", tag="input", label="Password"),
            PageElement(selector="#login-button-v2", tag="button", text="Log in"),
            PageElement(selector="a[name='forgot']", tag="a", text="Forgot password?"),
        ],
    )


class FakeRuntime(ContainerRuntime, PageStateCapturer):
    """In-process container runtime with a scriptable page.

    ``fail_next(key, *errors)`` queues errors for actions whose target (or
    type, for page-level actions) equals ``key``. Selectors in ``missing``
    always raise ElementNotFoundError.
    """

    def __init__(self, snapshot: Optional[PageSnapshot] = None):
        self.snapshot = snapshot or login_page()
        self.missing: Set[str] = set()
        self.failures: Dict[str, List[BaseException]] = {}
        self.health: Dict[str, HealthStatus] = {}
        self.calls: List[Tuple[str, StepAction]] = []
        self.created: List[str] = []
        self.removed: List[str] = []
        self.context_resets: List[str] = []
        self.restarts: List[str] = []
        self.create_delay = 0.0
        self.action_delay = 0.0
        self.reset_delay = 0.0
        self.reset_error: Optional[Exception] = None
        self.restart_error: Optional[Exception] = None
        self.create_error: Optional[Exception] = None
        self._ports: Dict[str, int] = {}

    def fail_next(self, key: str, *errors: BaseException) -> None:
        self.failures.setdefault(key, []).extend(errors)

    def actions_for(self, target: str) -> List[StepAction]:
        return [a for _, a in self.calls if a.target == target]

    async def create(self, name: str, image: str, limits: ResourceLimits, host_port: int) -> str:
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if self.create_error is not None:
            raise self.create_error
        container_id = f"c{len(self.created) + 1:03d}"
        self.created.append(container_id)
        self._ports[container_id] = host_port
        return container_id

    async def start(self, container_id: str) -> None:
        return None

    async def stop(self, container_id: str) -> None:
        return None

    async def restart(self, container_id: str) -> None:
        self.restarts.append(container_id)
        if self.restart_error is not None:
            raise self.restart_error

    async def remove(self, container_id: str) -> None:
        self.removed.append(container_id)

    def endpoint(self, container_id: str) -> str:
        return f"ws://127.0.0.1:{self._ports.get(container_id, 0)}/"

    async def health_probe(self, container_id: str) -> HealthStatus:
        return self.health.get(container_id, HealthStatus.HEALTHY)

    async def exec_in_sandbox(self, container_id: str, action: StepAction) -> ActionResult:
        self.calls.append((container_id, action))
        if self.action_delay:
            await asyncio.sleep(self.action_delay)
        queue = self.failures.get(action.target or action.type)
        if queue:
            raise queue.pop(0)
        if action.target in self.missing:
            raise ElementNotFoundError(
                f"No element matches {action.target}",
                action_type=action.type,
                target=action.target,
            )
        if action.is_navigation and action.value:
            self.snapshot = PageSnapshot(
                url=action.value,
                title=self.snapshot.title,
                elements=list(self.snapshot.elements),
            )
        return ActionResult(action=action, url=self.snapshot.url)

    async def reset_browser_context(self, container_id: str) -> None:
        if self.reset_delay:
            await asyncio.sleep(self.reset_delay)
        self.context_resets.append(container_id)
        if self.reset_error is not None:
            raise self.reset_error

    async def logs(self, container_id: str, tail: int = 100) -> str:
        return ""

    async def capture(self, container_id: str) -> PageSnapshot:
        return PageSnapshot(
            url=self.snapshot.url,
            title=self.snapshot.title,
            elements=list(self.snapshot.elements),
        )


async def settle(pool: ContainerPoolManager) -> None:
    """Wait for background cleans scheduled by release()."""
    while pool._cleanups:
        await asyncio.gather(*list(pool._cleanups), return_exceptions=True)



class ScriptedValidator(StepValidator):
    """Validator answering from per-target scripts; unscripted steps are valid."""

    def __init__(self) -> None:
        self.verdicts: Dict[str, ValidationVerdict] = {}
        self.proposals: Dict[str, AdaptationProposal] = {}
        self.validate_error: Optional[Exception] = None
        self.validated: List[StepAction] = []
        self.adapt_calls: List[Tuple[str, StepAction, List[StepAction]]] = []

    def reject(self, target: str, *steps: StepAction, confidence: float = 0.9, reason: str = "page changed") -> None:
        self.verdicts[target] = ValidationVerdict(False, 0.9, [f"{target} is not on the page"])
        self.proposals[target] = AdaptationProposal(list(steps), confidence, reason)

    async def validate(self, step: StepAction, snapshot: PageSnapshot) -> ValidationVerdict:
        self.validated.append(step)
        if self.validate_error is not None:
            raise self.validate_error
        return self.verdicts.get(step.target or step.type, ValidationVerdict(True, 0.95))

    async def adapt(
        self,
        objective: str,
        step: StepAction,
        snapshot: PageSnapshot,
        completed_steps: Sequence[StepAction],
        issues: Optional[Sequence[str]] = None,
    ) -> AdaptationProposal:
        self.adapt_calls.append((objective, step, list(completed_steps)))
        return self.proposals.get(step.target or step.type, AdaptationProposal([], 0.0))
