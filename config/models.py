"""Pydantic configuration models for the adaptive E2E engine."""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, List, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from exceptions import ConfigFileNotFoundError, ConfigurationError


# Load .env file if present
load_dotenv()


RECOVERY_STRATEGIES = ("alternative_selector", "wait_and_retry", "renavigate", "auth_required")


class PoolConfig(BaseModel):
    """Sandbox pool sizing, container limits and reset/health policy."""

    max_size: int = Field(
        default=3,
        ge=1,
        le=64,
        description="Maximum number of sandboxes the pool may own",
    )
    warm_size: int = Field(
        default=0,
        ge=0,
        description="Sandboxes created up front by initialize()",
    )
    image: str = Field(
        default="mcr.microsoft.com/playwright:v1.48.0-jammy",
        description="Container image providing the Playwright server",
    )
    container_port: int = Field(
        default=3000,
        ge=1,
        le=65535,
        description="Port the Playwright server listens on inside the container",
    )
    base_port: int = Field(
        default=3001,
        ge=1024,
        le=65000,
        description="First host port used for published sandbox ports",
    )
    network: Optional[str] = Field(
        default=None,
        description="Docker network to attach sandboxes to",
    )
    name_prefix: str = Field(
        default="adaptive-e2e-sandbox",
        description="Container name prefix",
    )
    memory: str = Field(
        default="512m",
        description="Per-sandbox memory limit (docker --memory)",
    )
    cpus: float = Field(
        default=0.5,
        gt=0.0,
        le=16.0,
        description="Per-sandbox CPU limit (docker --cpus)",
    )
    reset_on_allocation: bool = Field(
        default=False,
        description="Reset the browser context before handing a sandbox out",
    )
    reset_on_release: bool = Field(
        default=True,
        description="Reset the browser context when a run releases its sandbox",
    )
    validate_after_reset: bool = Field(
        default=True,
        description="Health-check a sandbox after each reset",
    )
    reset_timeout_seconds: float = Field(
        default=60.0,
        gt=0.0,
        description="Upper bound for one reset including escalation",
    )
    health_check_interval_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Interval of the background health monitor",
    )
    max_consecutive_failures: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Failed health checks in a row before a sandbox is quarantined",
    )
    stale_allocation_timeout_seconds: float = Field(
        default=1800.0,
        gt=0.0,
        description="Allocations older than this are reaped by the health check and their sandbox quarantined",
    )
    allocation_wait_timeout_seconds: float = Field(
        default=300.0,
        ge=0.0,
        description="How long allocate() queues for a sandbox before PoolExhausted (0 fails fast)",
    )
    allocation_queue_size: int = Field(
        default=100,
        ge=0,
        description="Maximum number of runs queued for a sandbox",
    )
    auto_replace_unhealthy: bool = Field(
        default=False,
        description="Replace quarantined idle sandboxes during health checks",
    )

    @model_validator(mode="before")
    @classmethod
    def load_from_env(cls, data: Any) -> Any:
        """Load the docker network from the environment if not set."""
        if isinstance(data, dict) and not data.get("network"):
            env_value = os.getenv("ADAPTIVE_E2E_DOCKER_NETWORK")
            if env_value:
                data["network"] = env_value
        return data

    @model_validator(mode="after")
    def check_warm_size(self) -> "PoolConfig":
        if self.warm_size > self.max_size:
            raise ValueError("warm_size cannot exceed max_size")
        return self


class ExecutionConfig(BaseModel):
    """Per-run execution policy: adaptation budget, retries and recovery."""

    max_adaptations: int = Field(
        default=5,
        ge=0,
        le=100,
        description="Maximum adaptations allowed in one run",
    )
    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per step before recovery is invoked",
    )
    backoff_multiplier: float = Field(
        default=0.5,
        ge=0.0,
        description="Exponential backoff multiplier between attempts (seconds)",
    )
    backoff_min_seconds: float = Field(
        default=0.0,
        ge=0.0,
        description="Minimum wait between attempts",
    )
    backoff_max_seconds: float = Field(
        default=5.0,
        ge=0.0,
        description="Maximum wait between attempts",
    )
    step_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Timeout applied to each execution attempt",
    )
    on_unrecoverable_step: Literal["abort", "continue"] = Field(
        default="abort",
        description="Abort the run or continue after a step fails recovery",
    )
    ai_validation: bool = Field(
        default=True,
        description="Validate each step against the page snapshot before executing",
    )
    min_adaptation_confidence: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Adaptation proposals below this confidence are ignored",
    )
    recovery_wait_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Wait between tries of the wait-and-retry strategy",
    )
    recovery_max_waits: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Tries of the wait-and-retry strategy",
    )
    recovery_strategies: List[str] = Field(
        default_factory=lambda: list(RECOVERY_STRATEGIES),
        description="Recovery strategies enabled for this run",
    )
    allocation_attempts: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Allocation attempts while the pool is exhausted",
    )
    allocation_backoff_max_seconds: float = Field(
        default=10.0,
        ge=0.0,
        description="Maximum wait between allocation attempts",
    )

    @field_validator("recovery_strategies")
    @classmethod
    def validate_strategies(cls, v: List[str]) -> List[str]:
        unknown = [s for s in v if s not in RECOVERY_STRATEGIES]
        if unknown:
            raise ValueError(f"Unknown recovery strategies: {', '.join(unknown)}")
        return v


class AgentConfig(BaseModel):
    """Step validator/adapter configuration."""

    provider: Literal["llm", "snapshot"] = Field(
        default="llm",
        description="Validator backend: a chat model or the local snapshot matcher",
    )
    model: str = Field(
        default="gpt-4o-mini",
        description="Model name to use for the LLM",
    )
    base_url: str = Field(
        default="https://api.openai.com/v1",
        description="Base URL for the LLM API endpoint",
    )
    api_key: str = Field(
        default="",
        description="API key for the LLM service",
    )
    temperature: float = Field(
        default=0.0,
        ge=0.0,
        le=2.0,
        description="Temperature for model generation",
    )
    max_tokens: int = Field(
        default=768,
        ge=100,
        le=4096,
        description="Maximum tokens for model response",
    )
    max_elements: int = Field(
        default=60,
        ge=5,
        le=500,
        description="Maximum snapshot elements included in a prompt",
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Ensure base_url doesn't have trailing slash."""
        return v.rstrip("/")

    @model_validator(mode="before")
    @classmethod
    def load_from_env(cls, data: Any) -> Any:
        """Load values from environment variables if not explicitly set."""
        if not isinstance(data, dict):
            return data
        env_mapping = {
            "base_url": "ADAPTIVE_E2E_BASE_URL",
            "api_key": "ADAPTIVE_E2E_API_KEY",
            "model": "ADAPTIVE_E2E_MODEL",
        }
        for field_name, env_var in env_mapping.items():
            if field_name not in data or data[field_name] is None:
                env_value = os.getenv(env_var)
                if env_value:
                    data[field_name] = env_value
        return data


class BrowserConfig(BaseModel):
    """Browser session configuration inside each sandbox."""

    browser: Literal["chromium", "firefox", "webkit"] = Field(
        default="chromium",
        description="Browser engine served by the sandbox",
    )
    viewport_width: int = Field(
        default=1440,
        ge=800,
        le=3840,
        description="Browser viewport width",
    )
    viewport_height: int = Field(
        default=900,
        ge=600,
        le=2160,
        description="Browser viewport height",
    )
    navigation_timeout_ms: int = Field(
        default=30000,
        ge=1000,
        le=300000,
        description="Timeout for page navigation",
    )
    action_timeout_ms: int = Field(
        default=5000,
        ge=100,
        le=120000,
        description="Timeout for locating and acting on an element",
    )


class ReportingConfig(BaseModel):
    """Reporting and output configuration."""

    reports_folder: Path = Field(
        default=Path("./reports"),
        description="Directory for saving reports",
    )
    output_format: Literal["json", "junit", "all", "none"] = Field(
        default="json",
        description="Report output format",
    )

    @field_validator("reports_folder", mode="before")
    @classmethod
    def convert_to_path(cls, v: Any) -> Path:
        """Convert string to Path."""
        if isinstance(v, str):
            return Path(v)
        return v


class ReliabilityConfig(BaseModel):
    """Reliability score tuning."""

    adaptation_penalty: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Weight of the adaptation rate in the reliability score",
    )


class EngineConfig(BaseModel):
    """Root configuration model combining all config sections."""

    pool: PoolConfig = Field(default_factory=PoolConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    reporting: ReportingConfig = Field(default_factory=ReportingConfig)
    reliability: ReliabilityConfig = Field(default_factory=ReliabilityConfig)

    store_dir: Optional[Path] = Field(
        default=None,
        description="Directory for JSON run records (in-memory store when unset)",
    )
    verbose: bool = Field(
        default=False,
        description="Enable verbose logging",
    )

    @field_validator("store_dir", mode="before")
    @classmethod
    def convert_store_dir(cls, v: Any) -> Any:
        if isinstance(v, str):
            return Path(v)
        return v

    @classmethod
    def from_flat_dict(cls, data: dict[str, Any]) -> "EngineConfig":
        """Create config from a flat dictionary."""
        sections = {
            "pool": PoolConfig,
            "execution": ExecutionConfig,
            "agent": AgentConfig,
            "browser": BrowserConfig,
            "reporting": ReportingConfig,
            "reliability": ReliabilityConfig,
        }
        # "browser" is both a section and a BrowserConfig field; flat form means the field
        nested: dict[str, Any] = {name: {} for name in sections}

        for key, value in data.items():
            for name, model in sections.items():
                if key in model.model_fields:
                    nested[name][key] = value
                    break
            else:
                if key in {"store_dir", "verbose"}:
                    nested[key] = value
                elif key == "pool_size":
                    nested["pool"]["max_size"] = value

        return cls.model_validate(nested)


def load_config(
    config_path: Optional[Path] = None,
    cli_overrides: Optional[dict[str, Any]] = None,
) -> EngineConfig:
    """
    Load configuration from file with CLI overrides.

    Priority (highest to lowest):
    1. CLI arguments
    2. Environment variables
    3. Config file
    4. Defaults

    An explicitly given path must exist; the default ``config.json`` is optional.
    """
    config_data: dict[str, Any] = {}

    explicit = config_path is not None
    if config_path is None:
        config_path = Path("config.json")

    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            try:
                if config_path.suffix in {".yaml", ".yml"}:
                    import yaml
                    config_data = yaml.safe_load(f) or {}
                else:
                    config_data = json.load(f)
            except ValueError as e:
                raise ConfigurationError(
                    f"Invalid configuration file: {e}",
                    {"file_path": str(config_path)},
                ) from e
    elif explicit:
        raise ConfigFileNotFoundError(str(config_path))

    if not isinstance(config_data, dict):
        raise ConfigurationError(
            "Configuration root must be a mapping",
            {"file_path": str(config_path)},
        )

    # Nested files group settings under section names
    section_names = {"pool", "execution", "agent", "reporting", "reliability"}
    is_flat = bool(config_data) and not any(key in config_data for key in section_names)
    if isinstance(config_data.get("browser"), dict):
        is_flat = False

    if is_flat:
        config = EngineConfig.from_flat_dict(config_data)
    else:
        config = EngineConfig.model_validate(config_data)

    if cli_overrides:
        config_dict = config.model_dump()
        _apply_overrides(config_dict, cli_overrides)
        config = EngineConfig.model_validate(config_dict)

    return config


def _apply_overrides(config_dict: dict[str, Any], overrides: dict[str, Any]) -> None:
    """Apply CLI overrides to config dictionary."""
    override_mapping = {
        "pool_size": ("pool", "max_size"),
        "warm_size": ("pool", "warm_size"),
        "image": ("pool", "image"),
        "network": ("pool", "network"),
        "max_adaptations": ("execution", "max_adaptations"),
        "max_attempts": ("execution", "max_attempts"),
        "on_unrecoverable_step": ("execution", "on_unrecoverable_step"),
        "no_ai_validation": ("execution", "ai_validation"),  # inverted
        "provider": ("agent", "provider"),
        "model": ("agent", "model"),
        "base_url": ("agent", "base_url"),
        "browser": ("browser", "browser"),
        "output_format": ("reporting", "output_format"),
        "reports_folder": ("reporting", "reports_folder"),
        "store_dir": ("store_dir", None),
        "verbose": ("verbose", None),
    }

    for key, value in overrides.items():
        if value is None:
            continue

        if key == "no_ai_validation":
            if value:
                config_dict["execution"]["ai_validation"] = False
            continue

        mapping = override_mapping.get(key)
        if mapping:
            section, field = mapping
            if field is None:
                config_dict[section] = value
            else:
                config_dict[section][field] = value
