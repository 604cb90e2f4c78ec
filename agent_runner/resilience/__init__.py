"""Resilience module for agent calls.

This module provides:
- Retry policies with exponential or constant backoff
- Circuit breakers per agent, model and tenant
- Budget ledger with soft and hard enforcement
- The resilient call executor tying them together over a fallback chain

Usage:
    from agent_runner.resilience import ExecutionRequest, ResilientExecutor, RetryPolicy

    executor = ResilientExecutor(provider)
    request = ExecutionRequest.build(
        "summarizer",
        "claude-sonnet",
        fallback_models=["gpt-4o"],
        retry=RetryPolicy(max_retries=2),
    )
    result = await executor.execute(request)
"""

from agent_runner.resilience.retry import (
    BackoffKind,
    ErrorClassifier,
    RetryPolicy,
    backoff_delay,
)
from agent_runner.resilience.store import KeyedStateStore
from agent_runner.resilience.circuit_breaker import (
    BreakerConfig,
    BreakerKey,
    BreakerState,
    BreakerStatus,
    CircuitBreakerRegistry,
)
from agent_runner.resilience.budget import (
    BudgetCheck,
    BudgetConfig,
    BudgetLedger,
    BudgetScope,
    BudgetStatus,
    Enforcement,
    Period,
)
from agent_runner.resilience.executor import (
    ExecutionRequest,
    ResilientExecutor,
)

__all__ = [
    "BackoffKind",
    "ErrorClassifier",
    "RetryPolicy",
    "backoff_delay",
    "KeyedStateStore",
    "BreakerConfig",
    "BreakerKey",
    "BreakerState",
    "BreakerStatus",
    "CircuitBreakerRegistry",
    "BudgetCheck",
    "BudgetConfig",
    "BudgetLedger",
    "BudgetScope",
    "BudgetStatus",
    "Enforcement",
    "Period",
    "ExecutionRequest",
    "ResilientExecutor",
]
