"""Configuration module for the adaptive E2E engine."""
from config.models import (
    AgentConfig,
    BrowserConfig,
    EngineConfig,
    ExecutionConfig,
    PoolConfig,
    ReliabilityConfig,
    ReportingConfig,
    load_config,
)

__all__ = [
    "AgentConfig",
    "BrowserConfig",
    "EngineConfig",
    "ExecutionConfig",
    "PoolConfig",
    "ReliabilityConfig",
    "ReportingConfig",
    "load_config",
]
