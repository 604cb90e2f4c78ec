"""Centralized configuration for the agent runtime.

Settings come from a YAML file (sections ``reliability``, ``circuit_breaker``,
``budgets``, ``alerts`` and ``logging``) with environment variables taking
precedence for the logging and isolation switches.

Example file:

    reliability:
      max_retries: 2
      backoff: exponential
      base_delay: 0.4
      max_delay: 3.0
      total_timeout: 30
      retryable_patterns: ["upstream reset"]
      non_fallback_error_classes: [content_policy]
    circuit_breaker:
      errors: 5
      within: 60
      cooldown: 300
      tenant_isolation: true
    budgets:
      enforcement: hard
      global_daily: 25.0
      per_agent_daily:
        summarizer: 5.0
      global_daily_tokens: 2000000
      soft_cap_percentage: 80
    alerts:
      events: [budget_hard_cap, breaker_open]
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

import yaml

from agent_runner.resilience.budget import BudgetConfig
from agent_runner.resilience.circuit_breaker import BreakerConfig
from agent_runner.resilience.retry import RetryPolicy

# =============================================================================
# Environment variables
# =============================================================================

# Path to the YAML config file
CONFIG_ENV = "AGENT_RUNNER_CONFIG"

# Minimum log level (DEBUG, INFO, WARNING, ERROR)
LOG_LEVEL_ENV = "AGENT_RUNNER_LOG_LEVEL"

# "true" for JSON logs (production), anything else for console logs
LOG_JSON_ENV = "AGENT_RUNNER_LOG_JSON"

# Directory for executions.jsonl / workflows.jsonl (disabled if unset)
EXECUTION_LOG_DIR_ENV = "AGENT_RUNNER_EXECUTION_LOG_DIR"

# "false" to share circuit breakers across tenants
TENANT_ISOLATION_ENV = "AGENT_RUNNER_TENANT_ISOLATION"

DEFAULT_LOG_LEVEL = "INFO"


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class RuntimeConfig:
    """Everything needed to build an AgentRuntime."""

    retry: RetryPolicy = field(default_factory=RetryPolicy)
    circuit_breaker: BreakerConfig = field(default_factory=BreakerConfig)
    budgets: BudgetConfig = field(default_factory=BudgetConfig)
    tenant_isolation: bool = True
    alert_events: Optional[list[str]] = None
    alert_keep_recent: int = 50
    execution_log_dir: Optional[str] = None
    log_level: str = DEFAULT_LOG_LEVEL
    log_json: bool = False

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "RuntimeConfig":
        data = data or {}
        breaker = dict(data.get("circuit_breaker") or {})
        tenant_isolation = bool(breaker.pop("tenant_isolation", True))
        alerts = data.get("alerts") or {}
        logging_section = data.get("logging") or {}

        config = cls(
            retry=RetryPolicy.from_dict(data.get("reliability")),
            circuit_breaker=BreakerConfig.from_dict(breaker),
            budgets=BudgetConfig.from_dict(data.get("budgets")),
            tenant_isolation=tenant_isolation,
            alert_events=alerts.get("events"),
            alert_keep_recent=int(alerts.get("keep_recent", 50)),
            execution_log_dir=logging_section.get("execution_log_dir"),
            log_level=str(logging_section.get("level", DEFAULT_LOG_LEVEL)),
            log_json=bool(logging_section.get("json", False)),
        )
        return config.apply_env()

    def apply_env(self) -> "RuntimeConfig":
        """Override file settings with environment variables."""
        self.log_level = os.environ.get(LOG_LEVEL_ENV, self.log_level)
        self.log_json = _env_flag(LOG_JSON_ENV, self.log_json)
        self.execution_log_dir = os.environ.get(
            EXECUTION_LOG_DIR_ENV, self.execution_log_dir
        )
        self.tenant_isolation = _env_flag(TENANT_ISOLATION_ENV, self.tenant_isolation)
        return self


def resolve_config_path(config: Optional[Union[str, Path]] = None) -> Optional[Path]:
    """Resolve an explicit path, or AGENT_RUNNER_CONFIG, to an existing file.

    Returns:
        Path to the config file, or None when neither is set

    Raises:
        FileNotFoundError: If the named file doesn't exist
    """
    if config is None:
        config = os.environ.get(CONFIG_ENV) or None
    if config is None:
        return None

    config_path = Path(config).expanduser()
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")
    return config_path


def load_runtime_config(config: Optional[Union[str, Path]] = None) -> RuntimeConfig:
    """Load RuntimeConfig from YAML (defaults when no file is configured)."""
    config_path = resolve_config_path(config)
    if config_path is None:
        return RuntimeConfig().apply_env()

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config {config_path} must be a mapping")
    return RuntimeConfig.from_dict(data)
