"""Resilient agent calls and multi-agent workflows.

Usage:
    from agent_runner import AgentRuntime, CallableProvider, ExecutionRequest, RetryPolicy

    runtime = AgentRuntime(CallableProvider(call_llm))
    result = await runtime.execute_call(
        ExecutionRequest.build(
            "summarizer",
            "gpt-4o",
            fallback_models=["gpt-4o-mini"],
            retry=RetryPolicy(max_retries=2),
            prompt="Summarize: ...",
        )
    )
"""

from agent_runner.errors import (
    AgentRunnerError,
    BudgetExceededError,
    CircuitOpenError,
    ExecutionCancelledError,
    ExhaustedFallbacksError,
    NonFallbackError,
    RouterError,
    TotalTimeoutError,
    WorkflowCostExceededError,
    WorkflowError,
    WorkflowTimeoutError,
)
from agent_runner.models import (
    AttemptRecord,
    BranchResult,
    ExecutionResult,
    RouteDecision,
    StepResult,
    WorkflowExecution,
)
from agent_runner.providers import (
    CallableProvider,
    CancellationToken,
    Provider,
    ProviderError,
    ProviderResponse,
)
from agent_runner.resilience import (
    BackoffKind,
    BreakerConfig,
    BudgetConfig,
    Enforcement,
    ExecutionRequest,
    ResilientExecutor,
    RetryPolicy,
)
from agent_runner.workflow import (
    AgentCall,
    Branch,
    FailureAction,
    Parallel,
    Pipeline,
    Route,
    Router,
    Step,
)
from agent_runner.runtime import AgentRuntime

__version__ = "0.1.0"

__all__ = [
    "AgentRunnerError",
    "BudgetExceededError",
    "CircuitOpenError",
    "ExecutionCancelledError",
    "ExhaustedFallbacksError",
    "NonFallbackError",
    "RouterError",
    "TotalTimeoutError",
    "WorkflowCostExceededError",
    "WorkflowError",
    "WorkflowTimeoutError",
    "AttemptRecord",
    "BranchResult",
    "ExecutionResult",
    "RouteDecision",
    "StepResult",
    "WorkflowExecution",
    "CallableProvider",
    "CancellationToken",
    "Provider",
    "ProviderError",
    "ProviderResponse",
    "BackoffKind",
    "BreakerConfig",
    "BudgetConfig",
    "Enforcement",
    "ExecutionRequest",
    "ResilientExecutor",
    "RetryPolicy",
    "AgentCall",
    "Branch",
    "FailureAction",
    "Parallel",
    "Pipeline",
    "Route",
    "Router",
    "Step",
    "AgentRuntime",
]
