"""Exclusive sandbox pool for concurrent test runs.

Every sandbox is handed to at most one test run at a time. The sandbox table
is guarded by a single ``asyncio.Lock``; container I/O (provisioning, resets,
health checks, teardown) always happens outside the lock, with the sandbox parked in
a transitional status so no other caller can pick it up meanwhile.

Sandbox lifecycle::

    created -> idle -> allocated -> in_use -> cleaning -> idle
                              \\                  \\
                               +---------------> unresponsive -> terminated

``cleaning -> idle`` only happens after a successful reset. A failed reset,
too many failed health checks or an expired allocation quarantine the sandbox
as ``unresponsive``; it stays out of rotation until ``cleanup_container``
removes it.

When the pool is full, ``allocate`` queues the caller. Queued runs are served
in arrival order as sandboxes come back to ``idle`` or capacity frees up.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

from config import PoolConfig
from container_runtime import ContainerRuntime, HealthStatus, ResourceLimits
from exceptions import AllocationConflict, PoolExhausted, SandboxNotFound, SandboxUnhealthy
from test_types import utcnow


class SandboxStatus(str, Enum):
    CREATED = "created"
    IDLE = "idle"
    ALLOCATED = "allocated"
    IN_USE = "in_use"
    CLEANING = "cleaning"
    UNRESPONSIVE = "unresponsive"
    TERMINATED = "terminated"


_TRANSITIONS: Dict[SandboxStatus, Set[SandboxStatus]] = {
    SandboxStatus.CREATED: {SandboxStatus.IDLE, SandboxStatus.ALLOCATED, SandboxStatus.UNRESPONSIVE, SandboxStatus.TERMINATED},
    SandboxStatus.IDLE: {SandboxStatus.ALLOCATED, SandboxStatus.CLEANING, SandboxStatus.UNRESPONSIVE, SandboxStatus.TERMINATED},
    SandboxStatus.ALLOCATED: {SandboxStatus.IN_USE, SandboxStatus.CLEANING, SandboxStatus.UNRESPONSIVE, SandboxStatus.TERMINATED},
    SandboxStatus.IN_USE: {SandboxStatus.CLEANING, SandboxStatus.UNRESPONSIVE, SandboxStatus.TERMINATED},
    SandboxStatus.CLEANING: {SandboxStatus.IDLE, SandboxStatus.UNRESPONSIVE, SandboxStatus.TERMINATED},
    SandboxStatus.UNRESPONSIVE: {SandboxStatus.TERMINATED},
    SandboxStatus.TERMINATED: set(),
}

# Statuses the health monitor checks; the rest are busy or already quarantined
_MONITORED = {SandboxStatus.IDLE, SandboxStatus.ALLOCATED, SandboxStatus.IN_USE}


@dataclass
class Sandbox:
    """One pooled container and its browser endpoint."""

    id: str
    name: str
    endpoint: str
    host_port: int
    limits: ResourceLimits
    status: SandboxStatus = SandboxStatus.CREATED
    health: HealthStatus = HealthStatus.HEALTHY
    consecutive_failures: int = 0
    allocated_to: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None
    last_health_check: Optional[datetime] = None
    allocation_count: int = 0
    reset_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "endpoint": self.endpoint,
            "host_port": self.host_port,
            "memory": self.limits.memory,
            "cpus": self.limits.cpus,
            "status": self.status.value,
            "health": self.health.value,
            "consecutive_failures": self.consecutive_failures,
            "allocated_to": self.allocated_to,
            "created_at": self.created_at.isoformat(),
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "allocation_count": self.allocation_count,
            "reset_count": self.reset_count,
        }


@dataclass
class Allocation:
    """Binding of one sandbox to one test run."""

    sandbox_id: str
    test_run_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    allocated_at: datetime = field(default_factory=utcnow)
    released_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.released_at is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sandbox_id": self.sandbox_id,
            "test_run_id": self.test_run_id,
            "allocated_at": self.allocated_at.isoformat(),
            "released_at": self.released_at.isoformat() if self.released_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Allocation":
        released = data.get("released_at")
        return cls(
            id=data["id"],
            sandbox_id=data["sandbox_id"],
            test_run_id=data["test_run_id"],
            allocated_at=datetime.fromisoformat(data["allocated_at"]),
            released_at=datetime.fromisoformat(released) if released else None,
        )


@dataclass
class ResetResult:
    sandbox_id: str
    success: bool
    strategy: Optional[str] = None
    duration_ms: float = 0.0
    error: Optional[str] = None


@dataclass
class PoolStats:
    """Read-only snapshot of the pool."""

    total: int
    by_status: Dict[str, int]
    active_allocations: int
    active_resets: int
    provisioning: int
    waiting: int
    total_allocations: int
    total_releases: int
    failed_allocations: int
    average_allocation_ms: float
    config: Dict[str, Any]

    @property
    def available(self) -> int:
        return self.by_status.get(SandboxStatus.IDLE.value, 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "by_status": dict(self.by_status),
            "available": self.available,
            "active_allocations": self.active_allocations,
            "active_resets": self.active_resets,
            "provisioning": self.provisioning,
            "waiting": self.waiting,
            "total_allocations": self.total_allocations,
            "total_releases": self.total_releases,
            "failed_allocations": self.failed_allocations,
            "average_allocation_ms": round(self.average_allocation_ms, 2),
            "config": self.config,
        }


@dataclass
class _Grant:
    """What a queued run is handed: an idle sandbox or a reserved slot to provision."""

    sandbox: Optional[Sandbox] = None
    port: Optional[int] = None


@dataclass(eq=False)
class _Waiter:
    test_run_id: str
    future: "asyncio.Future[_Grant]"


AllocationCallback = Callable[[Allocation], Awaitable[None]]
ExpiryListener = Callable[[Allocation], Any]


class ContainerPoolManager:
    """Fixed-capacity pool handing out exclusive sandboxes per test run."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        config: Optional[PoolConfig] = None,
        on_allocation_change: Optional[AllocationCallback] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.runtime = runtime
        self.config = config or PoolConfig()
        self.on_allocation_change = on_allocation_change
        self.logger = logger or logging.getLogger("pool_manager")
        self.limits = ResourceLimits.from_pool_config(self.config)

        self._lock = asyncio.Lock()
        self._sandboxes: Dict[str, Sandbox] = {}
        self._allocations: Dict[str, Allocation] = {}
        self._pending_runs: Set[str] = set()
        self._reserved_ports: Set[int] = set()
        self._provisioning = 0
        self._active_resets: Dict[str, asyncio.Task] = {}
        self._cleanups: Set[asyncio.Task] = set()
        self._waiters: Deque[_Waiter] = deque()
        self._expiry_listeners: List[ExpiryListener] = []
        self._monitor_task: Optional[asyncio.Task] = None

        self._total_allocations = 0
        self._total_releases = 0
        self._failed_allocations = 0
        self._average_allocation_ms = 0.0

    # ─────────────────────────────────────────────────────────────────────────
    # Table helpers (call with the lock held)
    # ─────────────────────────────────────────────────────────────────────────

    def _transition(self, sandbox: Sandbox, status: SandboxStatus) -> None:
        if status not in _TRANSITIONS[sandbox.status]:
            raise AllocationConflict(
                f"Illegal sandbox transition {sandbox.status.value} -> {status.value}",
                sandbox_id=sandbox.id,
                test_run_id=sandbox.allocated_to,
            )
        self.logger.debug(f"Sandbox {sandbox.name}: {sandbox.status.value} -> {status.value}")
        sandbox.status = status

    def _quarantine(self, sandbox: Sandbox, reason: str) -> None:
        if sandbox.status in (SandboxStatus.UNRESPONSIVE, SandboxStatus.TERMINATED):
            return
        self._transition(sandbox, SandboxStatus.UNRESPONSIVE)
        sandbox.health = HealthStatus.UNRESPONSIVE
        self.logger.warning(f"Sandbox {sandbox.name} quarantined: {reason}")

    def _capacity_left(self) -> int:
        return self.config.max_size - len(self._sandboxes) - self._provisioning

    def _reserve_port(self) -> int:
        used = self._reserved_ports | {s.host_port for s in self._sandboxes.values()}
        port = self.config.base_port
        while port in used:
            port += 1
        self._reserved_ports.add(port)
        return port

    def _pick_idle(self, exclude: Set[str]) -> Optional[Sandbox]:
        for sandbox in self._sandboxes.values():
            if (
                sandbox.status == SandboxStatus.IDLE
                and sandbox.health != HealthStatus.UNRESPONSIVE
                and sandbox.id not in exclude
            ):
                return sandbox
        return None

    def _record_allocation_time(self, elapsed_ms: float) -> None:
        n = self._total_allocations
        self._average_allocation_ms = (self._average_allocation_ms * (n - 1) + elapsed_ms) / n

    async def _notify(self, allocation: Allocation) -> None:
        if self.on_allocation_change is None:
            return
        try:
            await self.on_allocation_change(allocation)
        except Exception as e:
            self.logger.error(f"Allocation callback failed for run {allocation.test_run_id}: {e}")

    async def _provision(self, port: int) -> Sandbox:
        name = f"{self.config.name_prefix}-{uuid.uuid4().hex[:8]}"
        container_id = await self.runtime.create(name, self.config.image, self.limits, port)
        return Sandbox(
            id=container_id,
            name=name,
            endpoint=self.runtime.endpoint(container_id),
            host_port=port,
            limits=self.limits,
        )

    def _schedule_clean(self, sandbox: Sandbox, reset: bool) -> asyncio.Task:
        task = asyncio.create_task(self._clean_after_release(sandbox, reset))
        self._cleanups.add(task)
        task.add_done_callback(self._cleanups.discard)
        return task

    # ─────────────────────────────────────────────────────────────────────────
    # Wait queue (call with the lock held, or from code that does not await)
    # ─────────────────────────────────────────────────────────────────────────

    def _serve_waiters(self) -> None:
        """Hand idle sandboxes and free capacity to queued runs, oldest first."""
        while self._waiters:
            waiter = self._waiters[0]
            if waiter.future.done():
                self._waiters.popleft()
                continue
            sandbox = self._pick_idle(set())
            if sandbox is not None:
                self._transition(sandbox, SandboxStatus.ALLOCATED)
                sandbox.allocated_to = waiter.test_run_id
                grant = _Grant(sandbox=sandbox)
            elif self._capacity_left() > 0:
                self._provisioning += 1
                grant = _Grant(port=self._reserve_port())
            else:
                return
            self._waiters.popleft()
            waiter.future.set_result(grant)
            self.logger.debug(f"Queued run {waiter.test_run_id} served")

    def _withdraw(self, waiter: _Waiter) -> Optional[_Grant]:
        """Take ``waiter`` off the queue; returns its grant if it was served meanwhile."""
        if waiter in self._waiters:
            self._waiters.remove(waiter)
        future = waiter.future
        if not future.done():
            future.cancel()
            return None
        if future.cancelled() or future.exception() is not None:
            return None
        return future.result()

    def _abandon(self, test_run_id: str, sandbox: Optional[Sandbox], port: Optional[int]) -> None:
        """Undo an allocation that was interrupted before it completed.

        The sandbox it had picked goes back through cleaning with a reset,
        since an interrupted reset leaves its state unknown. A reserved slot
        that was never filled is freed.
        """
        self._pending_runs.discard(test_run_id)
        if port is not None:
            self._provisioning -= 1
            self._reserved_ports.discard(port)
            if sandbox is not None:
                # Provisioned but not yet registered
                self._sandboxes[sandbox.id] = sandbox
                self._transition(sandbox, SandboxStatus.ALLOCATED)
                sandbox.allocated_to = test_run_id
        if sandbox is None or sandbox.allocated_to != test_run_id:
            self._serve_waiters()
            return
        sandbox.allocated_to = None
        if sandbox.status == SandboxStatus.ALLOCATED:
            self._transition(sandbox, SandboxStatus.CLEANING)
            self._schedule_clean(sandbox, reset=True)
        self.logger.warning(f"Allocation of {sandbox.name} to run {test_run_id} abandoned; cleaning it")

    # ─────────────────────────────────────────────────────────────────────────
    # Allocation
    # ─────────────────────────────────────────────────────────────────────────

    async def allocate(self, test_run_id: str, wait_timeout: Optional[float] = None) -> Sandbox:
        """Hand an exclusive sandbox to ``test_run_id``.

        Reuses an idle sandbox or creates one while under ``max_size``.
        Otherwise the run joins the wait queue for up to ``wait_timeout``
        seconds (``allocation_wait_timeout_seconds`` by default) and is served
        after every run queued before it. Raises PoolExhausted when the wait
        runs out or the queue is full, and AllocationConflict when the run
        already holds (or is acquiring) a sandbox.

        A caller interrupted half way leaves nothing behind: the sandbox it
        had picked is cleaned and returned to rotation.
        """
        if wait_timeout is None:
            wait_timeout = self.config.allocation_wait_timeout_seconds
        started = time.monotonic()
        tried: Set[str] = set()

        while True:
            sandbox: Optional[Sandbox] = None
            port: Optional[int] = None
            waiter: Optional[_Waiter] = None
            async with self._lock:
                if test_run_id in self._allocations or test_run_id in self._pending_runs:
                    raise AllocationConflict(
                        f"Run {test_run_id} already holds a sandbox",
                        sandbox_id=self._allocations[test_run_id].sandbox_id
                        if test_run_id in self._allocations else None,
                        test_run_id=test_run_id,
                    )
                if not self._waiters:
                    sandbox = self._pick_idle(tried)
                if sandbox is not None:
                    self._transition(sandbox, SandboxStatus.ALLOCATED)
                    sandbox.allocated_to = test_run_id
                elif not self._waiters and self._capacity_left() > 0:
                    self._provisioning += 1
                    port = self._reserve_port()
                elif wait_timeout > 0 and len(self._waiters) < self.config.allocation_queue_size:
                    waiter = _Waiter(test_run_id, asyncio.get_running_loop().create_future())
                    self._waiters.append(waiter)
                else:
                    self._failed_allocations += 1
                    raise PoolExhausted(test_run_id, self.config.max_size)
                self._pending_runs.add(test_run_id)

            try:
                if waiter is not None:
                    self.logger.info(f"Run {test_run_id} queued for a sandbox ({len(self._waiters)} waiting)")
                    try:
                        grant = await asyncio.wait_for(asyncio.shield(waiter.future), timeout=wait_timeout)
                    except asyncio.TimeoutError:
                        grant = self._withdraw(waiter)
                        if grant is None:
                            self._failed_allocations += 1
                            raise PoolExhausted(test_run_id, self.config.max_size) from None
                    except BaseException:
                        grant = self._withdraw(waiter)
                        if grant is not None:
                            sandbox, port = grant.sandbox, grant.port
                        raise
                    sandbox, port = grant.sandbox, grant.port

                if port is not None:
                    try:
                        sandbox = await self._provision(port)
                    except Exception:
                        self._failed_allocations += 1
                        raise
                    async with self._lock:
                        self._provisioning -= 1
                        self._reserved_ports.discard(port)
                        port = None
                        self._sandboxes[sandbox.id] = sandbox
                        self._transition(sandbox, SandboxStatus.ALLOCATED)
                        sandbox.allocated_to = test_run_id
                    self.logger.info(f"Provisioned sandbox {sandbox.name} for run {test_run_id}")
                elif self.config.reset_on_allocation:
                    result = await self._reset_sandbox(sandbox)
                    if not result.success:
                        async with self._lock:
                            sandbox.allocated_to = None
                            self._pending_runs.discard(test_run_id)
                            self._quarantine(sandbox, f"reset on allocation failed: {result.error}")
                        tried.add(sandbox.id)
                        continue

                async with self._lock:
                    self._pending_runs.discard(test_run_id)
                    if sandbox.status != SandboxStatus.ALLOCATED:
                        # Quarantined or removed while being prepared
                        sandbox.allocated_to = None
                        tried.add(sandbox.id)
                        continue
                    allocation = Allocation(sandbox_id=sandbox.id, test_run_id=test_run_id)
                    self._allocations[test_run_id] = allocation
                    self._transition(sandbox, SandboxStatus.IN_USE)
                    sandbox.allocation_count += 1
                    sandbox.last_used_at = utcnow()
                    self._total_allocations += 1
                    self._record_allocation_time((time.monotonic() - started) * 1000)
            except BaseException:
                self._abandon(test_run_id, sandbox, port)
                raise

            self.logger.info(f"Allocated sandbox {sandbox.name} to run {test_run_id}")
            await self._notify(allocation)
            return sandbox

    async def release(self, test_run_id: str, wait: bool = False) -> bool:
        """Release the sandbox held by ``test_run_id``.

        Idempotent: returns False without touching any state when the run
        holds no active allocation. The sandbox is cleaned in the background
        (or inline when ``wait`` is set) and only returns to ``idle``, and to
        the next queued run, once its reset succeeds.
        """
        task: Optional[asyncio.Task] = None
        async with self._lock:
            allocation = self._allocations.pop(test_run_id, None)
            if allocation is None:
                self.logger.debug(f"Release is a no-op: run {test_run_id} holds no sandbox")
                return False
            allocation.released_at = utcnow()
            self._total_releases += 1
            sandbox = self._sandboxes.get(allocation.sandbox_id)
            if sandbox is not None:
                sandbox.allocated_to = None
                sandbox.last_used_at = allocation.released_at
                if sandbox.status in (SandboxStatus.ALLOCATED, SandboxStatus.IN_USE):
                    self._transition(sandbox, SandboxStatus.CLEANING)
                    task = self._schedule_clean(sandbox, reset=self.config.reset_on_release)

        self.logger.info(f"Released sandbox {allocation.sandbox_id} from run {test_run_id}")
        await self._notify(allocation)
        if wait and task is not None:
            await task
        return True

    async def _clean_after_release(self, sandbox: Sandbox, reset: bool) -> None:
        if reset:
            result = await self._reset_sandbox(sandbox)
        else:
            result = ResetResult(sandbox_id=sandbox.id, success=True, strategy="none")
        async with self._lock:
            if sandbox.status != SandboxStatus.CLEANING:
                return
            if result.success:
                self._transition(sandbox, SandboxStatus.IDLE)
                self.logger.debug(f"Sandbox {sandbox.name} back in rotation")
                self._serve_waiters()
            else:
                self._quarantine(sandbox, f"reset after release failed: {result.error}")

    def get_allocation(self, test_run_id: str) -> Optional[Allocation]:
        return self._allocations.get(test_run_id)

    def get_sandbox(self, sandbox_id: str) -> Sandbox:
        sandbox = self._sandboxes.get(sandbox_id)
        if sandbox is None:
            raise SandboxNotFound(sandbox_id)
        return sandbox

    def sandboxes(self) -> List[Sandbox]:
        return list(self._sandboxes.values())

    # ─────────────────────────────────────────────────────────────────────────
    # Reset
    # ─────────────────────────────────────────────────────────────────────────

    async def reset(self, sandbox_id: str) -> ResetResult:
        """Force a clean browser context in a sandbox without destroying it.

        Resets of the same sandbox that overlap share one in-flight attempt.
        A failed reset quarantines the sandbox.
        """
        async with self._lock:
            sandbox = self.get_sandbox(sandbox_id)
            if sandbox.status in (SandboxStatus.UNRESPONSIVE, SandboxStatus.TERMINATED):
                raise SandboxUnhealthy(sandbox_id, f"cannot reset a {sandbox.status.value} sandbox")
            was_idle = sandbox.status == SandboxStatus.IDLE
            if was_idle:
                self._transition(sandbox, SandboxStatus.CLEANING)

        try:
            result = await self._reset_sandbox(sandbox)
        except BaseException:
            if was_idle and sandbox.status == SandboxStatus.CLEANING:
                # The shared reset keeps running; let a clean settle the sandbox
                self._schedule_clean(sandbox, reset=True)
            raise

        async with self._lock:
            if not result.success:
                self._quarantine(sandbox, f"reset failed: {result.error}")
            elif was_idle and sandbox.status == SandboxStatus.CLEANING:
                self._transition(sandbox, SandboxStatus.IDLE)
                self._serve_waiters()
        return result

    async def _reset_sandbox(self, sandbox: Sandbox) -> ResetResult:
        task = self._active_resets.get(sandbox.id)
        if task is None or task.done():
            task = asyncio.create_task(self._run_reset(sandbox))
            self._active_resets[sandbox.id] = task

            def _forget(t: asyncio.Task, sandbox_id: str = sandbox.id) -> None:
                if self._active_resets.get(sandbox_id) is t:
                    del self._active_resets[sandbox_id]

            task.add_done_callback(_forget)
        else:
            self.logger.debug(f"Joining in-flight reset of {sandbox.name}")
        return await asyncio.shield(task)

    async def _run_reset(self, sandbox: Sandbox) -> ResetResult:
        """Escalate from a context reset to a container restart."""
        started = time.monotonic()
        deadline = started + self.config.reset_timeout_seconds
        strategies = [
            ("context_reset", self.runtime.reset_browser_context),
            ("restart", self.runtime.restart),
        ]
        errors: List[str] = []

        for name, operation in strategies:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                errors.append(f"{name}: reset timeout exceeded")
                break
            try:
                await asyncio.wait_for(operation(sandbox.id), timeout=remaining)
                if self.config.validate_after_reset:
                    remaining = max(0.1, deadline - time.monotonic())
                    health = await asyncio.wait_for(self.runtime.health_probe(sandbox.id), timeout=remaining)
                    if health == HealthStatus.UNRESPONSIVE:
                        raise SandboxUnhealthy(sandbox.id, "unresponsive after reset")
                    sandbox.health = health
            except asyncio.TimeoutError:
                errors.append(f"{name}: timed out")
                self.logger.warning(f"Reset strategy {name} timed out for {sandbox.name}")
                continue
            except Exception as e:
                errors.append(f"{name}: {e}")
                self.logger.warning(f"Reset strategy {name} failed for {sandbox.name}: {e}")
                continue

            sandbox.consecutive_failures = 0
            sandbox.reset_count += 1
            duration_ms = (time.monotonic() - started) * 1000
            self.logger.info(f"Sandbox {sandbox.name} reset via {name} in {duration_ms:.0f}ms")
            return ResetResult(sandbox_id=sandbox.id, success=True, strategy=name, duration_ms=duration_ms)

        return ResetResult(
            sandbox_id=sandbox.id,
            success=False,
            duration_ms=(time.monotonic() - started) * 1000,
            error="; ".join(errors) or "no reset strategy succeeded",
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Teardown
    # ─────────────────────────────────────────────────────────────────────────

    async def cleanup_container(self, sandbox_id: str, force: bool = False) -> None:
        """Stop and remove a sandbox's container, freeing its slot.

        Refuses a sandbox that is allocated or being cleaned unless ``force``.
        A forced cleanup closes any active allocation on it.
        """
        released: Optional[Allocation] = None
        async with self._lock:
            sandbox = self.get_sandbox(sandbox_id)
            busy = sandbox.status in (SandboxStatus.ALLOCATED, SandboxStatus.IN_USE, SandboxStatus.CLEANING)
            if busy and not force:
                raise AllocationConflict(
                    f"Sandbox {sandbox.name} is {sandbox.status.value}; use force to remove it",
                    sandbox_id=sandbox_id,
                    test_run_id=sandbox.allocated_to,
                )
            if sandbox.allocated_to:
                released = self._allocations.pop(sandbox.allocated_to, None)
                if released is not None:
                    released.released_at = utcnow()
                    self._total_releases += 1
                sandbox.allocated_to = None
            self._transition(sandbox, SandboxStatus.TERMINATED)
            del self._sandboxes[sandbox_id]
            self._serve_waiters()

        if released is not None:
            await self._notify(released)
        try:
            await self.runtime.remove(sandbox_id)
        except Exception as e:
            self.logger.error(f"Removing container {sandbox.name} failed: {e}")
            raise
        self.logger.info(f"Cleaned up sandbox {sandbox.name}")

    async def _add_idle(self) -> Optional[Sandbox]:
        async with self._lock:
            if self._capacity_left() <= 0:
                return None
            self._provisioning += 1
            port = self._reserve_port()
        try:
            sandbox = await self._provision(port)
        except BaseException:
            self._provisioning -= 1
            self._reserved_ports.discard(port)
            self._serve_waiters()
            raise
        async with self._lock:
            self._provisioning -= 1
            self._reserved_ports.discard(port)
            self._sandboxes[sandbox.id] = sandbox
            self._transition(sandbox, SandboxStatus.IDLE)
            self._serve_waiters()
        self.logger.info(f"Provisioned idle sandbox {sandbox.name}")
        return sandbox

    async def initialize(self) -> None:
        """Pre-warm ``warm_size`` idle sandboxes."""
        missing = self.config.warm_size - len(self._sandboxes)
        if missing <= 0:
            return
        results = await asyncio.gather(*(self._add_idle() for _ in range(missing)), return_exceptions=True)
        failures = [r for r in results if isinstance(r, BaseException)]
        for error in failures:
            self.logger.error(f"Failed to pre-warm sandbox: {error}")
        self.logger.info(f"Pool initialized with {len(self._sandboxes)} sandbox(es)")

    async def shutdown(self) -> None:
        """Fail queued runs, stop monitoring, finish pending cleans and remove every container."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.future.done():
                waiter.future.set_exception(PoolExhausted(waiter.test_run_id, self.config.max_size))
        await self.stop_health_monitor()
        if self._cleanups:
            await asyncio.gather(*list(self._cleanups), return_exceptions=True)
        for sandbox_id in list(self._sandboxes):
            try:
                await self.cleanup_container(sandbox_id, force=True)
            except Exception as e:
                self.logger.error(f"Shutdown cleanup of {sandbox_id} failed: {e}")
        self.logger.info("Pool shut down")

    # ─────────────────────────────────────────────────────────────────────────
    # Health
    # ─────────────────────────────────────────────────────────────────────────

    async def _check_health(self, sandbox: Sandbox) -> HealthStatus:
        try:
            return await self.runtime.health_probe(sandbox.id)
        except Exception as e:
            self.logger.warning(f"Health check of {sandbox.name} failed: {e}")
            return HealthStatus.UNRESPONSIVE

    async def health_check(self) -> Dict[str, HealthStatus]:
        """Check live sandboxes, quarantine failing ones and reap stale allocations."""
        async with self._lock:
            targets = [s for s in self._sandboxes.values() if s.status in _MONITORED]

        results = await asyncio.gather(*(self._check_health(s) for s in targets))

        now = utcnow()
        async with self._lock:
            for sandbox, health in zip(targets, results):
                if sandbox.status not in _MONITORED:
                    continue
                sandbox.health = health
                sandbox.last_health_check = now
                if health == HealthStatus.UNRESPONSIVE:
                    sandbox.consecutive_failures += 1
                    if sandbox.consecutive_failures >= self.config.max_consecutive_failures:
                        self._quarantine(
                            sandbox,
                            f"{sandbox.consecutive_failures} consecutive failed health checks",
                        )
                else:
                    sandbox.consecutive_failures = 0
            timeout = self.config.stale_allocation_timeout_seconds
            stale = [
                a for a in self._allocations.values()
                if (now - a.allocated_at).total_seconds() > timeout
            ]
            for allocation in stale:
                self._expire(allocation, now)

        for allocation in stale:
            await self._notify(allocation)
            self._tell_expired(allocation)

        if self.config.auto_replace_unhealthy:
            await self._replace_unhealthy()

        return {s.id: h for s, h in zip(targets, results)}

    def _expire(self, allocation: Allocation, now: datetime) -> None:
        """Close a stale allocation and quarantine its sandbox instead of re-pooling it."""
        del self._allocations[allocation.test_run_id]
        allocation.released_at = now
        self._total_releases += 1
        sandbox = self._sandboxes.get(allocation.sandbox_id)
        if sandbox is not None:
            sandbox.allocated_to = None
            self._quarantine(
                sandbox,
                f"allocation to run {allocation.test_run_id} expired after "
                f"{self.config.stale_allocation_timeout_seconds:g}s",
            )

    def add_expiry_listener(self, listener: ExpiryListener) -> None:
        """Register ``listener(allocation)``, called when the health check reaps an allocation."""
        self._expiry_listeners.append(listener)

    def _tell_expired(self, allocation: Allocation) -> None:
        for listener in self._expiry_listeners:
            try:
                listener(allocation)
            except Exception as e:
                self.logger.error(f"Expiry listener failed for run {allocation.test_run_id}: {e}")

    async def _replace_unhealthy(self) -> None:
        quarantined = [
            s.id for s in self._sandboxes.values()
            if s.status == SandboxStatus.UNRESPONSIVE and s.allocated_to is None
        ]
        for sandbox_id in quarantined:
            try:
                await self.cleanup_container(sandbox_id, force=True)
                await self._add_idle()
            except Exception as e:
                self.logger.error(f"Replacing sandbox {sandbox_id} failed: {e}")

    async def _monitor(self) -> None:
        interval = self.config.health_check_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.health_check()
            except Exception as e:
                self.logger.error(f"Health check crashed: {e}", exc_info=True)

    def start_health_monitor(self) -> None:
        if self._monitor_task is not None and not self._monitor_task.done():
            return
        self._monitor_task = asyncio.create_task(self._monitor())
        self.logger.info(f"Health monitor started (every {self.config.health_check_interval_seconds}s)")

    async def stop_health_monitor(self) -> None:
        task, self._monitor_task = self._monitor_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ─────────────────────────────────────────────────────────────────────────
    # Stats
    # ─────────────────────────────────────────────────────────────────────────

    def get_stats(self) -> PoolStats:
        """Counts by status, resets in flight and effective configuration."""
        by_status = {status.value: 0 for status in SandboxStatus if status != SandboxStatus.TERMINATED}
        for sandbox in list(self._sandboxes.values()):
            by_status[sandbox.status.value] = by_status.get(sandbox.status.value, 0) + 1
        return PoolStats(
            total=len(self._sandboxes),
            by_status=by_status,
            active_allocations=len(self._allocations),
            active_resets=len(self._active_resets),
            provisioning=self._provisioning,
            waiting=len(self._waiters),
            total_allocations=self._total_allocations,
            total_releases=self._total_releases,
            failed_allocations=self._failed_allocations,
            average_allocation_ms=self._average_allocation_ms,
            config=self.config.model_dump(),
        )
