"""Caller-facing runtime: executor, shared breaker and budget state, workflows.

Usage:
    runtime = AgentRuntime.from_config(my_provider, "agent_runner.yaml")

    result = await runtime.execute_call(
        ExecutionRequest.build("summarizer", "gpt-4o", fallback_models=["gpt-4o-mini"])
    )
    execution = await runtime.run_pipeline(pipeline, {"text": "..."})

    # Operations
    runtime.force_open("summarizer", "gpt-4o", cooldown=600)
    runtime.budget_remaining("agent:summarizer")
"""

import asyncio
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, Union

from agent_runner.alerts import AlertHandler, AlertManager
from agent_runner.config import RuntimeConfig, load_runtime_config
from agent_runner.logging.execution_logger import ExecutionSink, JsonlExecutionLogger
from agent_runner.logging.structured import get_logger
from agent_runner.models import ExecutionResult, WorkflowExecution
from agent_runner.providers.base import CancellationToken, Provider
from agent_runner.resilience.budget import BudgetLedger, BudgetScope, BudgetStatus, Period
from agent_runner.resilience.circuit_breaker import BreakerStatus, CircuitBreakerRegistry
from agent_runner.resilience.executor import ExecutionRequest, ResilientExecutor, SleepFunc
from agent_runner.workflow.base import Workflow
from agent_runner.workflow.parallel import Parallel
from agent_runner.workflow.pipeline import Pipeline
from agent_runner.workflow.router import Router

logger = get_logger(__name__)


class AgentRuntime:
    """Owns the shared state every execution in a process goes through.

    Args:
        provider: Performs model calls
        config: Retry, breaker, budget and alert settings
        alert_handler: Receives budget and breaker alerts
        execution_logger: Sink for finished executions (JSONL when
            config.execution_log_dir is set and this is None)
        clock / wall_clock / sleep: Injectable time sources for tests
    """

    def __init__(
        self,
        provider: Provider,
        config: Optional[RuntimeConfig] = None,
        alert_handler: Optional[AlertHandler] = None,
        execution_logger: Optional[ExecutionSink] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.config = config or RuntimeConfig()
        self.alerts = AlertManager(
            handler=alert_handler,
            events=self.config.alert_events,
            keep_recent=self.config.alert_keep_recent,
        )
        self.breakers = CircuitBreakerRegistry(
            self.config.circuit_breaker,
            alerts=self.alerts,
            clock=wall_clock,
            tenant_isolation=self.config.tenant_isolation,
        )
        self.ledger = BudgetLedger(
            self.config.budgets,
            alerts=self.alerts,
            clock=lambda: datetime.fromtimestamp(wall_clock(), tz=timezone.utc),
        )
        if execution_logger is None and self.config.execution_log_dir:
            execution_logger = JsonlExecutionLogger(self.config.execution_log_dir)
        self.execution_logger = execution_logger
        self.executor = ResilientExecutor(
            provider,
            breakers=self.breakers,
            ledger=self.ledger,
            execution_logger=execution_logger,
            sleep=sleep,
            clock=clock,
        )

    @classmethod
    def from_config(
        cls,
        provider: Provider,
        config: Optional[Union[str, Path]] = None,
        **kwargs,
    ) -> "AgentRuntime":
        """Build a runtime from a YAML file (or AGENT_RUNNER_CONFIG)."""
        return cls(provider, config=load_runtime_config(config), **kwargs)

    # ------------------------------------------------------------------
    # Caller-facing API
    # ------------------------------------------------------------------

    def request(self, agent_type: str, model: str, **kwargs) -> ExecutionRequest:
        """ExecutionRequest using the configured retry policy unless given."""
        kwargs.setdefault("retry", self.config.retry)
        return ExecutionRequest.build(agent_type, model, **kwargs)

    async def execute_call(
        self,
        request: ExecutionRequest,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ExecutionResult:
        return await self.executor.execute(request, cancel_token)

    async def run_workflow(
        self,
        workflow: Workflow,
        input: Any,
        tenant_id: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> WorkflowExecution:
        return await workflow.run(
            input, self.executor, tenant_id=tenant_id, cancel_token=cancel_token
        )

    async def run_pipeline(self, pipeline: Pipeline, input: Any, **kwargs) -> WorkflowExecution:
        return await self.run_workflow(pipeline, input, **kwargs)

    async def run_parallel(self, parallel: Parallel, input: Any, **kwargs) -> WorkflowExecution:
        return await self.run_workflow(parallel, input, **kwargs)

    async def run_router(self, router: Router, input: Any, **kwargs) -> WorkflowExecution:
        return await self.run_workflow(router, input, **kwargs)

    # ------------------------------------------------------------------
    # Administrative API
    # ------------------------------------------------------------------

    def breaker_status(
        self, agent_type: str, model_id: str, tenant_id: Optional[str] = None
    ) -> BreakerStatus:
        return self.breakers.status(self.breakers.key_for(agent_type, model_id, tenant_id))

    def breaker_statuses(self) -> list[BreakerStatus]:
        return self.breakers.statuses()

    def force_open(
        self,
        agent_type: str,
        model_id: str,
        tenant_id: Optional[str] = None,
        cooldown: Optional[float] = None,
    ) -> BreakerStatus:
        key = self.breakers.key_for(agent_type, model_id, tenant_id)
        logger.info("admin_force_open", breaker=key.label(), cooldown=cooldown)
        return self.breakers.force_open(key, cooldown=cooldown)

    def force_close(
        self, agent_type: str, model_id: str, tenant_id: Optional[str] = None
    ) -> BreakerStatus:
        key = self.breakers.key_for(agent_type, model_id, tenant_id)
        logger.info("admin_force_close", breaker=key.label())
        return self.breakers.force_close(key)

    def reset_breakers(self) -> int:
        return self.breakers.reset_all()

    def budget_status(self, scope: Optional[str] = None) -> list[BudgetStatus]:
        """Spend per scope and period; ``scope`` is a label like "agent:summarizer"."""
        scopes = [BudgetScope.parse(scope)] if scope else None
        return self.ledger.status(scopes)

    def budget_remaining(
        self, scope: str = "global", period: Union[Period, str] = Period.DAILY
    ) -> Optional[float]:
        return self.ledger.remaining(BudgetScope.parse(scope), Period(period))

    def tokens_remaining(self, period: Union[Period, str] = Period.DAILY) -> Optional[int]:
        return self.ledger.remaining_tokens(Period(period))

    def reset_budgets(self) -> None:
        self.ledger.reset()
