"""Pytest fixtures for adaptive E2E tests."""
from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Any, Dict

import pytest

from config import ExecutionConfig, PoolConfig
from engine import AdaptiveExecutionEngine
from persistence import InMemoryRunRepository
from pool_manager import ContainerPoolManager
from reliability import ReliabilityAggregator
from test_types import StepAction, TestCase
from tests.fakes import LOGIN_URL, FakeRuntime


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def pool_config() -> PoolConfig:
    return PoolConfig(max_size=2, reset_timeout_seconds=5)


@pytest.fixture
def pool(fake_runtime: FakeRuntime, pool_config: PoolConfig) -> ContainerPoolManager:
    return ContainerPoolManager(fake_runtime, pool_config)


@pytest.fixture
def execution_config() -> ExecutionConfig:
    """Execution policy without real waiting."""
    return ExecutionConfig(
        max_adaptations=3,
        max_attempts=2,
        backoff_multiplier=0.0,
        backoff_max_seconds=0.0,
        step_timeout_seconds=5.0,
        recovery_wait_seconds=0.0,
        recovery_max_waits=3,
        allocation_attempts=1,
        allocation_backoff_max_seconds=0.0,
    )


@pytest.fixture
def repository() -> InMemoryRunRepository:
    return InMemoryRunRepository()


@pytest.fixture
def engine_factory(fake_runtime, pool, repository, execution_config):
    """Build an engine around the shared fakes; keyword arguments override parts."""

    def build(**overrides: Any) -> AdaptiveExecutionEngine:
        parts: Dict[str, Any] = {
            "pool": pool,
            "runtime": fake_runtime,
            "repository": repository,
            "aggregator": ReliabilityAggregator(repository),
            "config": execution_config,
        }
        parts.update(overrides)
        return AdaptiveExecutionEngine(**parts)

    return build


@pytest.fixture
def login_case() -> TestCase:
    return TestCase(
        id="login",
        name="Log in with valid credentials",
        url=LOGIN_URL,
        objective="Sign in and reach the dashboard",
        steps=[
            StepAction(type="fill", target="#email", value="user@example.com"),
            StepAction(type="fill", target="#password", value="secret"),
            StepAction(type="click", target="#login-button"),
        ],
        tags={"smoke", "auth"},
        priority=1,
    )


@pytest.fixture
def temp_dir() -> Path:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_task_yaml() -> str:
    """Sample YAML test case definition."""
    return """
id: signup
name: Sign up a new account
url: https://app.example.com/signup
objective: Create an account and land on the dashboard
steps:
  - action: fill
    target: "#name"
    value: Test User
  - action: fill
    target: "#email"
    value: test@example.com
  - action: click
    target: "#signup"
    alternatives:
      - "button[name='register']"
  - action: assert_visible
    target: "#dashboard"
tags:
  - smoke
  - signup
priority: 1
max_adaptations: 2
"""


@pytest.fixture
def sample_task_json() -> Dict[str, Any]:
    """Sample JSON test case definition."""
    return {
        "id": "search",
        "name": "Search the catalog",
        "url": "https://shop.example.com",
        "steps": [
            {"action": "fill", "target": "#q", "value": "lamp"},
            {"action": "press", "value": "Enter"},
            {"action": "assert_text", "target": ".results", "value": "lamp"},
        ],
        "tags": ["catalog", "p0"],
    }
