"""Unit tests for container_runtime module."""
from __future__ import annotations

from typing import List, Optional

import pytest

from config import BrowserConfig, PoolConfig
from container_runtime import CommandResult, DockerRuntime, HealthStatus, ResourceLimits
from exceptions import ContainerCommandError, SandboxNotFound


class ScriptedDocker:
    """Replaces DockerRuntime._run; answers docker subcommands from a table."""

    def __init__(self) -> None:
        self.commands: List[List[str]] = []
        self.replies = {
            "run": CommandResult(0, "3f2a9c81b7d4e5f60718293a4b5c6d7e\n", ""),
            "inspect": CommandResult(0, "true\n", ""),
            "rm": CommandResult(0, "", ""),
        }

    async def __call__(self, args: List[str], timeout_seconds: Optional[float] = None) -> CommandResult:
        self.commands.append(args)
        return self.replies.get(args[1], CommandResult(0, "", ""))


def _runtime(port_open: bool = True, **kwargs) -> tuple:
    runtime = DockerRuntime(**kwargs)
    docker = ScriptedDocker()
    runtime._run = docker

    async def fake_port_open(port: int, timeout: float = 2.0) -> bool:
        return port_open

    runtime._port_open = fake_port_open
    return runtime, docker


class TestResourceLimits:
    """Tests for ResourceLimits."""

    def test_docker_args(self):
        limits = ResourceLimits.from_pool_config(PoolConfig(memory="1g", cpus=1.5))
        assert limits.docker_args() == ["--memory=1g", "--cpus=1.5"]


class TestDockerRuntime:
    """Tests for DockerRuntime with the docker CLI stubbed out."""

    def test_from_config(self):
        runtime = DockerRuntime.from_config(
            PoolConfig(container_port=4000, network="e2e-net", reset_timeout_seconds=20),
            BrowserConfig(browser="firefox"),
        )
        assert runtime.container_port == 4000
        assert runtime.network == "e2e-net"
        assert runtime.startup_timeout_seconds == 20
        assert runtime.browser_config.browser == "firefox"
        assert "4000" in runtime.server_command

    @pytest.mark.asyncio
    async def test_create_runs_container_with_limits(self):
        runtime, docker = _runtime(network="e2e-net")

        container_id = await runtime.create("sandbox-1", "playwright:latest", ResourceLimits(), 3001)

        assert container_id == "3f2a9c81b7d4"
        args = docker.commands[0]
        assert args[:6] == ["docker", "run", "-d", "--name", "sandbox-1", "--init"]
        assert "--memory=512m" in args
        assert "--cpus=0.5" in args
        assert args[args.index("-p") + 1] == "3001:3000"
        assert args[args.index("--network") + 1] == "e2e-net"
        assert "playwright:latest" in args
        assert runtime.endpoint(container_id) == "ws://127.0.0.1:3001/"

    @pytest.mark.asyncio
    async def test_create_failure_raises(self):
        runtime, docker = _runtime()
        docker.replies["run"] = CommandResult(125, "", "image not found")

        with pytest.raises(ContainerCommandError) as exc_info:
            await runtime.create("sandbox-1", "missing:latest", ResourceLimits(), 3001)
        assert exc_info.value.exit_code == 125

    @pytest.mark.asyncio
    async def test_create_removes_container_that_never_gets_ready(self):
        runtime, docker = _runtime(port_open=False, startup_timeout_seconds=0.1)

        with pytest.raises(ContainerCommandError, match="did not become ready"):
            await runtime.create("sandbox-1", "playwright:latest", ResourceLimits(), 3001)

        assert docker.commands[-1] == ["docker", "rm", "-f", "3f2a9c81b7d4"]
        with pytest.raises(SandboxNotFound):
            runtime.endpoint("3f2a9c81b7d4")

    @pytest.mark.asyncio
    async def test_health_reports_status(self):
        runtime, docker = _runtime()
        container_id = await runtime.create("sandbox-1", "playwright:latest", ResourceLimits(), 3001)

        assert await runtime.health_probe(container_id) == HealthStatus.HEALTHY

        docker.replies["inspect"] = CommandResult(0, "false\n", "")
        assert await runtime.health_probe(container_id) == HealthStatus.UNRESPONSIVE

    @pytest.mark.asyncio
    async def test_health_of_unknown_container(self):
        runtime, _ = _runtime()
        with pytest.raises(SandboxNotFound):
            await runtime.health_probe("nope")

    @pytest.mark.asyncio
    async def test_remove_tolerates_missing_container(self):
        runtime, docker = _runtime()
        docker.replies["rm"] = CommandResult(1, "", "Error: No such container: abc")
        await runtime.remove("abc")

        docker.replies["rm"] = CommandResult(1, "", "permission denied")
        with pytest.raises(ContainerCommandError):
            await runtime.remove("abc")

    @pytest.mark.asyncio
    async def test_restart_waits_for_readiness(self):
        runtime, docker = _runtime()
        container_id = await runtime.create("sandbox-1", "playwright:latest", ResourceLimits(), 3001)

        await runtime.restart(container_id)

        assert docker.commands[-1] == ["docker", "restart", "-t", "10", container_id]
