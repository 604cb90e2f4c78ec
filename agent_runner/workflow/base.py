"""Executable units and the shared workflow base class.

Pipelines, parallel groups and routers all dispatch ExecutableUnits. An
AgentCall runs one ExecutionRequest through the resilient executor; a
WorkflowUnit runs a nested workflow and reports it in the same
ExecutionResult shape, so workflows nest uniformly.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from agent_runner.errors import (
    AgentRunnerError,
    WorkflowCostExceededError,
    WorkflowError,
    WorkflowTimeoutError,
    error_kind,
)
from agent_runner.logging.execution_logger import emit_workflow
from agent_runner.logging.structured import bound_context, get_logger
from agent_runner.models import ExecutionResult, WorkflowExecution, utcnow
from agent_runner.providers.base import CancellationToken
from agent_runner.resilience.circuit_breaker import BreakerConfig
from agent_runner.resilience.executor import ExecutionRequest, ResilientExecutor
from agent_runner.resilience.retry import DEFAULT_POLICY, RetryPolicy

logger = get_logger(__name__)


@dataclass
class RunContext:
    """What a unit needs to run: the executor, tenant and cancellation token."""

    executor: ResilientExecutor
    tenant_id: Optional[str] = None
    cancel_token: CancellationToken = field(default_factory=CancellationToken)

    def child(self) -> "RunContext":
        return RunContext(self.executor, self.tenant_id, self.cancel_token.child())


class ExecutableUnit(ABC):
    """Anything a workflow can dispatch."""

    name: str = "unit"

    @abstractmethod
    async def run(self, payload: Any, context: RunContext) -> ExecutionResult:
        """Run with ``payload`` and return a successful result, or raise."""
        pass


class AgentCall(ExecutableUnit):
    """A request template for one agent, filled in with a payload at run time.

    Args:
        agent_type: Agent name
        model: Primary model
        fallback_models: Models tried in order after the primary
        prompt: Builds the provider prompt from the payload (payload as-is if None)
        retry: Retry policy
        circuit_breaker: Breaker thresholds for this agent
        projected_cost: Expected cost for budget pre-checks
    """

    def __init__(
        self,
        agent_type: str,
        model: str,
        fallback_models: Iterable[str] = (),
        prompt: Optional[Callable[[Any], Any]] = None,
        retry: RetryPolicy = DEFAULT_POLICY,
        circuit_breaker: Optional[BreakerConfig] = None,
        projected_cost: float = 0.0,
        name: Optional[str] = None,
        metadata: Optional[dict] = None,
    ):
        self.agent_type = agent_type
        self.models = (model, *fallback_models)
        self.prompt = prompt
        self.retry = retry
        self.circuit_breaker = circuit_breaker
        self.projected_cost = projected_cost
        self.name = name or agent_type
        self.metadata = metadata or {}

    def to_request(self, payload: Any, tenant_id: Optional[str] = None) -> ExecutionRequest:
        return ExecutionRequest(
            agent_type=self.agent_type,
            models=self.models,
            prompt=self.prompt(payload) if self.prompt else payload,
            retry=self.retry,
            circuit_breaker=self.circuit_breaker,
            tenant_id=tenant_id,
            projected_cost=self.projected_cost,
            metadata=dict(self.metadata),
        )

    async def run(self, payload: Any, context: RunContext) -> ExecutionResult:
        request = self.to_request(payload, context.tenant_id)
        return await context.executor.execute(request, context.cancel_token)

    def __repr__(self) -> str:
        return f"AgentCall({self.agent_type!r}, models={list(self.models)!r})"


class WorkflowUnit(ExecutableUnit):
    """Runs a nested workflow as a single unit.

    The returned ExecutionResult carries the nested WorkflowExecution in
    ``result.workflow`` and the flattened attempts of every child call.
    A nested workflow that ends in ``error`` raises WorkflowError.
    """

    def __init__(self, workflow: "Workflow", name: Optional[str] = None):
        self.workflow = workflow
        self.name = name or workflow.name

    async def run(self, payload: Any, context: RunContext) -> ExecutionResult:
        execution = await self.workflow.run(
            payload,
            context.executor,
            tenant_id=context.tenant_id,
            cancel_token=context.cancel_token.child(),
        )
        result = self.to_result(execution)
        if execution.status == "error":
            raise WorkflowError(
                execution.name,
                execution.error_message or "Nested workflow failed",
                unit=execution.failed_unit,
                result=result,
            )
        return result

    @staticmethod
    def to_result(execution: WorkflowExecution) -> ExecutionResult:
        attempts = []
        for child in execution.child_results():
            attempts.extend(child.attempts)
        model_id = f"workflow:{execution.name}"
        return ExecutionResult(
            execution_id=execution.workflow_id,
            agent_type=execution.name,
            tenant_id=execution.tenant_id,
            status="error" if execution.status == "error" else "success",
            primary_model_id=model_id,
            chosen_model_id=model_id,
            attempts=attempts,
            content=execution.content,
            input_tokens=execution.input_tokens,
            output_tokens=execution.output_tokens,
            total_cost=execution.total_cost,
            error_kind=execution.error_kind,
            error_message=execution.error_message,
            started_at=execution.started_at,
            duration_s=execution.duration_s,
            workflow=execution,
        )


class WorkflowLimits:
    """Cumulative timeout and cost guard for one workflow run."""

    def __init__(
        self,
        workflow: str,
        timeout: Optional[float],
        max_cost: Optional[float],
        clock: Callable[[], float] = time.monotonic,
    ):
        self.workflow = workflow
        self.timeout = timeout
        self.max_cost = max_cost
        self.clock = clock
        self.started = clock()
        self.spent = 0.0

    def add(self, result: Optional[ExecutionResult]) -> None:
        if result is not None:
            self.spent += result.total_cost

    @property
    def elapsed(self) -> float:
        return self.clock() - self.started

    def remaining_time(self) -> Optional[float]:
        if self.timeout is None:
            return None
        return max(self.timeout - self.elapsed, 0.0)

    def exceeded(self) -> Optional[WorkflowError]:
        """The limit error to abort with, or None while within limits."""
        if self.timeout is not None and self.elapsed > self.timeout:
            return WorkflowTimeoutError(self.workflow, self.timeout, self.elapsed)
        if self.max_cost is not None and self.spent > self.max_cost:
            return WorkflowCostExceededError(self.workflow, self.spent, self.max_cost)
        return None


def describe_failure(error: BaseException) -> tuple[Optional[ExecutionResult], str, str]:
    """(attached result, error kind, message) for a failed unit."""
    result = error.result if isinstance(error, AgentRunnerError) else None
    return result, error_kind(error), str(error)


class Workflow(ABC):
    """Base class for pipelines, parallel groups and routers.

    Args:
        name: Workflow name, used in errors and logs
        timeout: Seconds before remaining work is aborted
        max_cost: Cumulative USD cost before remaining work is aborted
    """

    kind: str = "workflow"

    def __init__(
        self,
        name: str,
        timeout: Optional[float] = None,
        max_cost: Optional[float] = None,
    ):
        self.name = name
        self.timeout = timeout
        self.max_cost = max_cost

    async def run(
        self,
        input: Any,
        executor: ResilientExecutor,
        tenant_id: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> WorkflowExecution:
        """Run the workflow and return its record.

        Unit failures are captured in the record; use
        ``execution.raise_for_status()`` to turn an ``error`` status into a
        WorkflowError.
        """
        context = RunContext(executor, tenant_id, cancel_token or CancellationToken())
        execution = WorkflowExecution(name=self.name, kind=self.kind, tenant_id=tenant_id)
        limits = WorkflowLimits(self.name, self.timeout, self.max_cost, executor.clock)

        with bound_context(workflow_id=execution.workflow_id, workflow=self.name):
            logger.info("workflow_started", kind=self.kind)
            await self._run(input, context, execution, limits)

        self._finalize(execution, limits)
        logger.info(
            "workflow_finished",
            workflow=self.name,
            workflow_id=execution.workflow_id,
            status=execution.status,
            cost_usd=round(execution.total_cost, 6),
            failed_unit=execution.failed_unit,
        )
        emit_workflow(executor.execution_logger, execution)
        return execution

    @abstractmethod
    async def _run(
        self,
        input: Any,
        context: RunContext,
        execution: WorkflowExecution,
        limits: WorkflowLimits,
    ) -> None:
        """Run the units, filling in ``execution`` (status included)."""
        pass

    def as_unit(self, name: Optional[str] = None) -> WorkflowUnit:
        """Wrap this workflow so it can be used as a step, branch or route."""
        return WorkflowUnit(self, name=name)

    @staticmethod
    def _fail(
        execution: WorkflowExecution,
        error: BaseException,
        unit: Optional[str] = None,
    ) -> None:
        execution.status = "error"
        execution.error_kind = error_kind(error)
        execution.error_message = str(error)
        execution.failed_unit = unit

    @staticmethod
    def _finalize(execution: WorkflowExecution, limits: WorkflowLimits) -> None:
        children = execution.child_results()
        execution.total_cost = sum(r.total_cost for r in children)
        execution.input_tokens = sum(r.input_tokens for r in children)
        execution.output_tokens = sum(r.output_tokens for r in children)
        execution.duration_s = limits.elapsed
        execution.completed_at = utcnow()
        if execution.status == "running":
            execution.status = "success"
