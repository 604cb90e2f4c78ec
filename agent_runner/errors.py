"""Error taxonomy for agent executions and workflows.

Every error raised by the executor carries the assembled ExecutionResult
(``error.result``) so callers and the execution logger can inspect the full
attempt history. All errors expose ``to_dict()`` for structured reporting.
"""

from datetime import datetime
from typing import Any, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from agent_runner.models import ExecutionResult


class AgentRunnerError(Exception):
    """Base class for all agent-runner errors."""

    default_error_code: str = "AGENT_RUNNER_ERROR"
    retryable: bool = False

    def __init__(self, message: str, result: Optional["ExecutionResult"] = None):
        super().__init__(message)
        self.message = message
        self.result = result

    @property
    def error_code(self) -> str:
        return self.default_error_code

    @property
    def attempts(self) -> list:
        return list(self.result.attempts) if self.result else []

    def details(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        """Convert error to a dictionary for logs and API responses."""
        data: dict[str, Any] = {
            "code": self.error_code,
            "message": self.message,
            "retryable": self.retryable,
        }
        details = self.details()
        if details:
            data["details"] = details
        if self.result is not None:
            data["attempts"] = len(self.result.attempts)
            data["chosen_model_id"] = self.result.chosen_model_id
        return data


class ExecutionError(AgentRunnerError):
    """Base class for errors produced by the resilient call executor."""

    default_error_code = "EXECUTION_ERROR"


class BudgetExceededError(ExecutionError):
    """Raised when a hard budget limit denies a call before it is made."""

    default_error_code = "BUDGET_EXCEEDED"

    def __init__(
        self,
        scope: str,
        period: str,
        limit: float,
        current: float,
        projected_cost: float = 0.0,
        result: Optional["ExecutionResult"] = None,
        unit: str = "usd",
    ):
        if unit == "tokens":
            message = (
                f"Token budget exceeded for {scope} ({period}): "
                f"limit {limit:.0f}, current {current:.0f}"
            )
        else:
            message = (
                f"Budget exceeded for {scope} ({period}): "
                f"limit ${limit:.4f}, current ${current:.4f}"
            )
            if projected_cost:
                message += f", projected +${projected_cost:.4f}"
        super().__init__(message, result=result)
        self.scope = scope
        self.period = period
        self.limit = limit
        self.current = current
        self.projected_cost = projected_cost
        self.unit = unit

    @property
    def remaining(self) -> float:
        return max(self.limit - self.current, 0.0)

    def details(self) -> dict[str, Any]:
        return {
            "scope": self.scope,
            "period": self.period,
            "limit": self.limit,
            "current": self.current,
            "remaining": self.remaining,
            "unit": self.unit,
        }


class CircuitOpenError(ExecutionError):
    """Raised when every candidate model is blocked by an open breaker.

    The caller may retry after ``cooldown_until``.
    """

    default_error_code = "CIRCUIT_OPEN"
    retryable = True

    def __init__(
        self,
        agent_type: str,
        models: list[str],
        cooldown_until: Optional[datetime] = None,
        result: Optional["ExecutionResult"] = None,
    ):
        message = (
            f"Circuit breaker is open for {agent_type} "
            f"(models: {', '.join(models)})"
        )
        super().__init__(message, result=result)
        self.agent_type = agent_type
        self.models = list(models)
        self.cooldown_until = cooldown_until

    def details(self) -> dict[str, Any]:
        return {
            "agent_type": self.agent_type,
            "models": self.models,
            "cooldown_until": (
                self.cooldown_until.isoformat() if self.cooldown_until else None
            ),
        }


class TotalTimeoutError(ExecutionError):
    """Raised when total_timeout elapses across retries and fallbacks."""

    default_error_code = "TOTAL_TIMEOUT"
    retryable = True

    def __init__(
        self,
        timeout_s: float,
        elapsed_s: float,
        result: Optional["ExecutionResult"] = None,
    ):
        super().__init__(
            f"Total timeout of {timeout_s}s exceeded (elapsed: {elapsed_s:.2f}s)",
            result=result,
        )
        self.timeout_s = timeout_s
        self.elapsed_s = elapsed_s

    def details(self) -> dict[str, Any]:
        return {"timeout_s": self.timeout_s, "elapsed_s": round(self.elapsed_s, 3)}


class ExhaustedFallbacksError(ExecutionError):
    """Raised when every candidate model failed after its retries."""

    default_error_code = "EXHAUSTED_FALLBACKS"

    def __init__(
        self,
        models_tried: list[str],
        last_error: Optional[BaseException],
        last_error_kind: Optional[str] = None,
        last_error_retryable: bool = False,
        result: Optional["ExecutionResult"] = None,
    ):
        message = f"All models exhausted: {', '.join(models_tried)}"
        if last_error is not None:
            message += f". Last error: {last_error}"
        super().__init__(message, result=result)
        self.models_tried = list(models_tried)
        self.last_error = last_error
        self.last_error_kind = last_error_kind
        self.last_error_retryable = last_error_retryable

    def details(self) -> dict[str, Any]:
        return {
            "models_tried": self.models_tried,
            "last_error_kind": self.last_error_kind,
            "last_error_retryable": self.last_error_retryable,
        }


class NonFallbackError(ExecutionError):
    """Raised when an error configured as non-fallback ends the execution.

    No further retries or fallback models are tried. The original error is
    available as ``cause``.
    """

    default_error_code = "NON_FALLBACK_ERROR"

    def __init__(
        self,
        model_id: str,
        cause: BaseException,
        cause_kind: Optional[str] = None,
        result: Optional["ExecutionResult"] = None,
    ):
        super().__init__(f"Non-fallback error on {model_id}: {cause}", result=result)
        self.model_id = model_id
        self.cause = cause
        self.cause_kind = cause_kind or type(cause).__name__

    def details(self) -> dict[str, Any]:
        return {"model_id": self.model_id, "error_kind": self.cause_kind}


class ExecutionCancelledError(ExecutionError):
    """Raised when a cancellation token stops an execution between attempts."""

    default_error_code = "EXECUTION_CANCELLED"

    def __init__(self, reason: str, result: Optional["ExecutionResult"] = None):
        super().__init__(f"Execution cancelled: {reason}", result=result)
        self.reason = reason

    def details(self) -> dict[str, Any]:
        return {"reason": self.reason}


class RouterError(AgentRunnerError):
    """Raised when a router cannot resolve a route and has no default.

    This is a configuration error, not a retry candidate.
    """

    default_error_code = "ROUTER_ERROR"


class WorkflowError(AgentRunnerError):
    """Wraps a failure inside a workflow with the workflow and unit name."""

    default_error_code = "WORKFLOW_ERROR"

    def __init__(
        self,
        workflow: str,
        message: str,
        unit: Optional[str] = None,
        cause: Optional[BaseException] = None,
        result: Optional["ExecutionResult"] = None,
    ):
        prefix = f"[{workflow}" + (f".{unit}" if unit else "") + "]"
        super().__init__(f"{prefix} {message}", result=result)
        self.workflow = workflow
        self.unit = unit
        self.cause = cause

    def details(self) -> dict[str, Any]:
        details: dict[str, Any] = {"workflow": self.workflow, "unit": self.unit}
        if isinstance(self.cause, AgentRunnerError):
            details["cause"] = self.cause.to_dict()
        elif self.cause is not None:
            details["cause"] = {
                "code": type(self.cause).__name__,
                "message": str(self.cause),
            }
        return details


class WorkflowCostExceededError(WorkflowError):
    """Raised when accumulated workflow cost passes max_cost."""

    default_error_code = "WORKFLOW_COST_EXCEEDED"

    def __init__(self, workflow: str, accumulated_cost: float, max_cost: float):
        super().__init__(
            workflow,
            f"Workflow cost (${accumulated_cost:.4f}) exceeded maximum (${max_cost:.4f})",
        )
        self.accumulated_cost = accumulated_cost
        self.max_cost = max_cost


class WorkflowTimeoutError(WorkflowError):
    """Raised when a workflow runs past its timeout."""

    default_error_code = "WORKFLOW_TIMEOUT"

    def __init__(self, workflow: str, timeout_s: float, elapsed_s: float):
        super().__init__(
            workflow,
            f"Workflow timeout of {timeout_s}s exceeded (elapsed: {elapsed_s:.2f}s)",
        )
        self.timeout_s = timeout_s
        self.elapsed_s = elapsed_s


def error_kind(error: BaseException) -> str:
    """Short machine-readable label for an error."""
    if isinstance(error, AgentRunnerError):
        return error.error_code
    kind = getattr(error, "error_class", None)
    if kind:
        return str(kind)
    return type(error).__name__
