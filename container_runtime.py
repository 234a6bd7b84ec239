"""Container runtime client and page state capture for sandboxes.

``ContainerRuntime`` and ``PageStateCapturer`` are the narrow capabilities the
pool manager and the execution engine depend on. ``DockerRuntime`` implements
both on top of the docker CLI plus one remote Playwright session per
container.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_delay, wait_fixed

from browser import SandboxBrowser
from config import BrowserConfig, PoolConfig
from exceptions import ContainerCommandError, SandboxNotFound
from test_types import ActionResult, PageSnapshot, StepAction


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNRESPONSIVE = "unresponsive"


@dataclass(frozen=True)
class ResourceLimits:
    """Per-sandbox resource limits."""

    memory: str = "512m"
    cpus: float = 0.5

    @classmethod
    def from_pool_config(cls, config: PoolConfig) -> "ResourceLimits":
        return cls(memory=config.memory, cpus=config.cpus)

    def docker_args(self) -> List[str]:
        return [f"--memory={self.memory}", f"--cpus={self.cpus}"]


@dataclass
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class ContainerRuntime(ABC):
    """Create, control and act inside isolated sandbox containers."""

    @abstractmethod
    async def create(self, name: str, image: str, limits: ResourceLimits, host_port: int) -> str:
        """Create and start a container; returns its id."""

    @abstractmethod
    async def start(self, container_id: str) -> None:
        ...

    @abstractmethod
    async def stop(self, container_id: str) -> None:
        ...

    @abstractmethod
    async def restart(self, container_id: str) -> None:
        ...

    @abstractmethod
    async def remove(self, container_id: str) -> None:
        ...

    @abstractmethod
    def endpoint(self, container_id: str) -> str:
        """Automation endpoint of the container."""

    @abstractmethod
    async def health_probe(self, container_id: str) -> HealthStatus:
        ...

    @abstractmethod
    async def exec_in_sandbox(self, container_id: str, action: StepAction) -> ActionResult:
        """Run one action in the sandbox browser.

        Raises a ``StepExecutionError`` subclass when the action fails.
        """

    @abstractmethod
    async def reset_browser_context(self, container_id: str) -> None:
        """Give the sandbox a clean browser context without restarting it."""

    @abstractmethod
    async def logs(self, container_id: str, tail: int = 100) -> str:
        ...


class PageStateCapturer(ABC):
    """Produce structured snapshots of the live page in a sandbox."""

    @abstractmethod
    async def capture(self, container_id: str) -> PageSnapshot:
        ...


@dataclass
class _ContainerInfo:
    name: str
    host_port: int


class DockerRuntime(ContainerRuntime, PageStateCapturer):
    """Docker CLI backed sandboxes running a Playwright server."""

    def __init__(
        self,
        container_port: int = 3000,
        network: Optional[str] = None,
        host: str = "127.0.0.1",
        browser_config: Optional[BrowserConfig] = None,
        server_command: Optional[List[str]] = None,
        command_timeout_seconds: float = 60.0,
        startup_timeout_seconds: float = 60.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.container_port = container_port
        self.network = network
        self.host = host
        self.browser_config = browser_config or BrowserConfig()
        self.server_command = server_command or [
            "npx", "-y", "playwright@1.48.0", "run-server",
            "--port", str(container_port), "--host", "0.0.0.0",
        ]
        self.command_timeout_seconds = command_timeout_seconds
        self.startup_timeout_seconds = startup_timeout_seconds
        self.logger = logger or logging.getLogger("container_runtime")
        self._containers: Dict[str, _ContainerInfo] = {}
        self._sessions: Dict[str, SandboxBrowser] = {}

    @classmethod
    def from_config(
        cls,
        pool: PoolConfig,
        browser: BrowserConfig,
        logger: Optional[logging.Logger] = None,
    ) -> "DockerRuntime":
        return cls(
            container_port=pool.container_port,
            network=pool.network,
            browser_config=browser,
            startup_timeout_seconds=pool.reset_timeout_seconds,
            logger=logger,
        )

    async def _run(self, args: List[str], timeout_seconds: Optional[float] = None) -> CommandResult:
        timeout = timeout_seconds or self.command_timeout_seconds
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout_b, stderr_b = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.communicate()
            return CommandResult(exit_code=-1, stdout="", stderr="command timed out", timed_out=True)
        return CommandResult(
            exit_code=int(proc.returncode or 0),
            stdout=(stdout_b or b"").decode("utf-8", errors="replace"),
            stderr=(stderr_b or b"").decode("utf-8", errors="replace"),
        )

    async def _docker(self, *args: str, timeout_seconds: Optional[float] = None) -> str:
        command = ["docker", *args]
        result = await self._run(command, timeout_seconds)
        if not result.success:
            message = "Docker command timed out" if result.timed_out else "Docker command failed"
            raise ContainerCommandError(
                message,
                command=command,
                exit_code=result.exit_code,
                stderr=result.stderr.strip(),
            )
        return result.stdout.strip()

    def _info(self, container_id: str) -> _ContainerInfo:
        info = self._containers.get(container_id)
        if info is None:
            raise SandboxNotFound(container_id)
        return info

    async def _port_open(self, port: int, timeout: float = 2.0) -> bool:
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(self.host, port), timeout=timeout)
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def _wait_until_ready(self, container_id: str) -> None:
        info = self._info(container_id)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_delay(self.startup_timeout_seconds),
                wait=wait_fixed(0.5),
                retry=retry_if_result(lambda ready: not ready),
            ):
                with attempt:
                    ready = await self._port_open(info.host_port)
                if not attempt.retry_state.outcome.failed:
                    attempt.retry_state.set_result(ready)
        except RetryError as e:
            raise ContainerCommandError(
                f"Sandbox {info.name} did not become ready within {self.startup_timeout_seconds}s",
            ) from e

    async def _close_session(self, container_id: str) -> None:
        session = self._sessions.pop(container_id, None)
        if session is not None:
            await session.close()

    async def _session(self, container_id: str) -> SandboxBrowser:
        session = self._sessions.get(container_id)
        if session is not None and session.is_connected:
            return session
        if session is not None:
            await self._close_session(container_id)
        session = SandboxBrowser(
            self.endpoint(container_id),
            browser_type=self.browser_config.browser,
            viewport_width=self.browser_config.viewport_width,
            viewport_height=self.browser_config.viewport_height,
            navigation_timeout_ms=self.browser_config.navigation_timeout_ms,
            action_timeout_ms=self.browser_config.action_timeout_ms,
            logger=self.logger.getChild("browser"),
        )
        await session.start()
        self._sessions[container_id] = session
        return session

    # ─────────────────────────────────────────────────────────────────────────
    # ContainerRuntime
    # ─────────────────────────────────────────────────────────────────────────

    async def create(self, name: str, image: str, limits: ResourceLimits, host_port: int) -> str:
        args = ["run", "-d", "--name", name, "--init"]
        args += limits.docker_args()
        args += ["-p", f"{host_port}:{self.container_port}"]
        if self.network:
            args += ["--network", self.network]
        args += [image, *self.server_command]
        container_id = await self._docker(*args)
        if not container_id:
            raise ContainerCommandError(f"Docker returned no container id for {name}")
        container_id = container_id.splitlines()[-1][:12]
        self._containers[container_id] = _ContainerInfo(name=name, host_port=host_port)
        self.logger.info(f"Created container {name} ({container_id}) on port {host_port}")
        try:
            await self._wait_until_ready(container_id)
        except ContainerCommandError:
            await self.remove(container_id)
            raise
        return container_id

    async def start(self, container_id: str) -> None:
        await self._docker("start", container_id)
        await self._wait_until_ready(container_id)

    async def stop(self, container_id: str) -> None:
        await self._close_session(container_id)
        await self._docker("stop", "-t", "10", container_id)

    async def restart(self, container_id: str) -> None:
        await self._close_session(container_id)
        await self._docker("restart", "-t", "10", container_id)
        await self._wait_until_ready(container_id)
        self.logger.info(f"Restarted container {container_id}")

    async def remove(self, container_id: str) -> None:
        await self._close_session(container_id)
        result = await self._run(["docker", "rm", "-f", container_id])
        if not result.success and "No such container" not in result.stderr:
            raise ContainerCommandError(
                "Docker command failed",
                command=["docker", "rm", "-f", container_id],
                exit_code=result.exit_code,
                stderr=result.stderr.strip(),
            )
        self._containers.pop(container_id, None)
        self.logger.info(f"Removed container {container_id}")

    def endpoint(self, container_id: str) -> str:
        info = self._info(container_id)
        return f"ws://{self.host}:{info.host_port}/"

    async def health_probe(self, container_id: str) -> HealthStatus:
        info = self._info(container_id)
        result = await self._run(
            ["docker", "inspect", "-f", "{{.State.Running}}", container_id],
            timeout_seconds=10,
        )
        if not result.success or result.stdout.strip().lower() != "true":
            return HealthStatus.UNRESPONSIVE
        if not await self._port_open(info.host_port):
            return HealthStatus.UNRESPONSIVE
        session = self._sessions.get(container_id)
        if session is not None and not session.is_connected:
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY

    async def exec_in_sandbox(self, container_id: str, action: StepAction) -> ActionResult:
        session = await self._session(container_id)
        return await session.perform(action)

    async def reset_browser_context(self, container_id: str) -> None:
        session = self._sessions.get(container_id)
        if session is not None and session.is_connected:
            await session.reset_context()
            return
        # A fresh connection starts from a clean context
        await self._close_session(container_id)
        await self._session(container_id)

    async def logs(self, container_id: str, tail: int = 100) -> str:
        result = await self._run(["docker", "logs", "--tail", str(tail), container_id], timeout_seconds=15)
        return (result.stdout + result.stderr).strip()

    # ─────────────────────────────────────────────────────────────────────────
    # PageStateCapturer
    # ─────────────────────────────────────────────────────────────────────────

    async def capture(self, container_id: str) -> PageSnapshot:
        session = await self._session(container_id)
        return await session.snapshot()

    async def close(self) -> None:
        """Close every open browser session."""
        for container_id in list(self._sessions):
            await self._close_session(container_id)
