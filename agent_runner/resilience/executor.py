"""Resilient call executor.

Runs one logical agent call across an ordered chain of candidate models,
combining the budget ledger, circuit breakers and retry policy:

    1. Budget pre-check (global, agent and tenant scopes)
    2. For each candidate model, in declared order:
       a. skip the model if its breaker is open
       b. attempt = 0..max_retries: provider call, backoff between retries
       c. report one failure to the breaker when the model is given up
       d. a non-fallback error ends the execution at once
    3. CircuitOpenError if nothing was attempted, else ExhaustedFallbacksError

Every outcome, success or error, is assembled into one ExecutionResult that
is returned (or attached to the raised error as ``error.result``) and handed
to the execution logger.

Usage:
    executor = ResilientExecutor(provider, CircuitBreakerRegistry(), BudgetLedger())
    request = ExecutionRequest.build(
        "summarizer",
        "gpt-4o",
        fallback_models=["gpt-4o-mini"],
        retry=RetryPolicy(max_retries=2),
        prompt={"text": "..."},
    )
    result = await executor.execute(request)
"""

import asyncio
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from agent_runner.errors import (
    CircuitOpenError,
    ExecutionCancelledError,
    ExecutionError,
    ExhaustedFallbacksError,
    NonFallbackError,
    TotalTimeoutError,
    error_kind,
)
from agent_runner.logging.execution_logger import ExecutionSink, emit_execution
from agent_runner.logging.structured import bound_context, get_logger
from agent_runner.models import AttemptRecord, ExecutionResult, new_id, utcnow
from agent_runner.providers.base import (
    CancellationToken,
    Provider,
    ProviderError,
    ProviderResponse,
)
from agent_runner.resilience.budget import BudgetLedger, estimate_cost
from agent_runner.resilience.circuit_breaker import (
    BreakerConfig,
    CircuitBreakerRegistry,
)
from agent_runner.resilience.retry import DEFAULT_POLICY, RetryPolicy

logger = get_logger(__name__)


@dataclass(frozen=True)
class ExecutionRequest:
    """Everything needed to run one resilient call. Immutable once built.

    Attributes:
        agent_type: Name of the agent, used for breaker keys and budget scope
        models: Candidate models, primary first
        prompt: Opaque payload handed to the provider
        retry: Retry and backoff policy applied to every candidate model
        circuit_breaker: Breaker thresholds for this agent (registry default if None)
        tenant_id: Tenant for budget scope and breaker isolation
        projected_cost: Expected cost used by the budget pre-check
        metadata: Free-form data carried into logs
    """

    agent_type: str
    models: tuple[str, ...]
    prompt: Any = None
    retry: RetryPolicy = DEFAULT_POLICY
    circuit_breaker: Optional[BreakerConfig] = None
    tenant_id: Optional[str] = None
    projected_cost: float = 0.0
    metadata: dict = field(default_factory=dict, compare=False)

    def __post_init__(self):
        models = self.models
        if isinstance(models, str):
            models = (models,)
        # Keep declared order, drop repeats
        models = tuple(dict.fromkeys(m for m in models if m))
        if not models:
            raise ValueError("ExecutionRequest needs at least one model")
        if self.projected_cost < 0:
            raise ValueError("projected_cost must be >= 0")
        object.__setattr__(self, "models", models)

    @property
    def primary_model(self) -> str:
        return self.models[0]

    @property
    def fallback_models(self) -> tuple[str, ...]:
        return self.models[1:]

    @classmethod
    def build(
        cls,
        agent_type: str,
        model: str,
        fallback_models: Iterable[str] = (),
        **kwargs,
    ) -> "ExecutionRequest":
        return cls(agent_type=agent_type, models=(model, *fallback_models), **kwargs)

    def with_prompt(self, prompt: Any) -> "ExecutionRequest":
        return replace(self, prompt=prompt)

    def for_tenant(self, tenant_id: Optional[str]) -> "ExecutionRequest":
        return replace(self, tenant_id=tenant_id)


class _ExecutionTrail:
    """Attempt history and usage totals accumulated by one execute() call."""

    def __init__(self, request: ExecutionRequest, started: float):
        self.request = request
        self.execution_id = new_id()
        self.started = started
        self.started_at = utcnow()
        self.attempts: list[AttemptRecord] = []
        self.skipped_models: list[str] = []
        self.cooldowns: list[datetime] = []
        self.input_tokens = 0
        self.output_tokens = 0
        self.total_cost = 0.0

    def add(self, record: AttemptRecord) -> None:
        self.attempts.append(record)
        self.input_tokens += record.input_tokens
        self.output_tokens += record.output_tokens
        self.total_cost += record.cost_usd

    @property
    def last_model(self) -> Optional[str]:
        return self.attempts[-1].model_id if self.attempts else None

    def build(
        self,
        now: float,
        status: str,
        chosen_model_id: Optional[str] = None,
        content: Any = None,
        error: Optional[BaseException] = None,
    ) -> ExecutionResult:
        chosen = chosen_model_id or self.last_model
        return ExecutionResult(
            execution_id=self.execution_id,
            agent_type=self.request.agent_type,
            tenant_id=self.request.tenant_id,
            status=status,
            primary_model_id=self.request.primary_model,
            chosen_model_id=chosen,
            used_fallback=chosen is not None and chosen != self.request.primary_model,
            attempts=list(self.attempts),
            skipped_models=list(self.skipped_models),
            content=content,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            total_cost=self.total_cost,
            error_kind=error_kind(error) if error is not None else None,
            error_message=str(error) if error is not None else None,
            started_at=self.started_at,
            duration_s=max(now - self.started, 0.0),
        )


SleepFunc = Callable[[float], Awaitable[Any]]


class ResilientExecutor:
    """Executes ExecutionRequests against a provider.

    Args:
        provider: Performs the actual model calls
        breakers: Shared circuit breaker registry
        ledger: Shared budget ledger (no budget checks if None)
        execution_logger: Sink receiving every finished ExecutionResult
        sleep: Awaitable sleep used for backoff, injectable for tests
        clock: Monotonic seconds used for durations and total_timeout
    """

    def __init__(
        self,
        provider: Provider,
        breakers: Optional[CircuitBreakerRegistry] = None,
        ledger: Optional[BudgetLedger] = None,
        execution_logger: Optional[ExecutionSink] = None,
        sleep: SleepFunc = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.breakers = breakers or CircuitBreakerRegistry()
        self.ledger = ledger
        self.execution_logger = execution_logger
        self.sleep = sleep
        self.clock = clock

    async def execute(
        self,
        request: ExecutionRequest,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ExecutionResult:
        """Run ``request`` and return its successful result.

        Raises:
            BudgetExceededError: A hard budget limit denied the call
            CircuitOpenError: Every candidate model's breaker is open
            TotalTimeoutError: total_timeout elapsed before a new attempt
            ExecutionCancelledError: cancel_token was triggered
            ExhaustedFallbacksError: Every candidate failed after its retries
        """
        trail = _ExecutionTrail(request, self.clock())
        with bound_context(
            execution_id=trail.execution_id,
            agent_type=request.agent_type,
            tenant_id=request.tenant_id,
        ):
            return await self._execute(request, trail, cancel_token)

    async def _execute(
        self,
        request: ExecutionRequest,
        trail: _ExecutionTrail,
        cancel_token: Optional[CancellationToken],
    ) -> ExecutionResult:
        policy = request.retry
        scopes = []
        if self.ledger is not None:
            scopes = self.ledger.scopes_for(request.agent_type, request.tenant_id)
            check = self.ledger.check(scopes, request.projected_cost)
            if not check.allowed:
                logger.warning("budget_denied", reason=check.reason)
                self._fail(trail, check.to_error())

        last_error: Optional[BaseException] = None
        last_retryable = False

        for model_id in request.models:
            key = self.breakers.key_for(request.agent_type, model_id, request.tenant_id)
            permit = self.breakers.allow(key, request.circuit_breaker)
            if not permit:
                trail.skipped_models.append(model_id)
                if permit.cooldown_until is not None:
                    trail.cooldowns.append(permit.cooldown_until)
                logger.info("model_skipped_circuit_open", model_id=model_id)
                continue

            reported = False
            try:
                for attempt_index in range(policy.max_attempts):
                    self._check_continue(trail, policy, cancel_token)

                    started = self.clock()
                    started_at = utcnow()
                    try:
                        response = await self.provider.call(
                            model_id, request.prompt, cancel_token
                        )
                    except Exception as e:
                        retryable = policy.is_retryable(e)
                        record = self._failed_attempt(
                            e, model_id, attempt_index, started, started_at, retryable
                        )
                        trail.add(record)
                        if self.ledger is not None and (record.cost_usd or record.total_tokens):
                            self.ledger.commit(
                                scopes, record.cost_usd, record.total_tokens, executions=0
                            )
                        last_error = e
                        last_retryable = retryable
                        logger.warning(
                            "attempt_failed",
                            model_id=model_id,
                            attempt_index=attempt_index,
                            error_kind=record.error_kind,
                            retryable=retryable,
                        )

                        if policy.is_non_fallback(e):
                            self.breakers.record_failure(key, request.circuit_breaker)
                            reported = True
                            self._fail(
                                trail,
                                NonFallbackError(model_id, e, cause_kind=record.error_kind),
                            )

                        if not retryable or not policy.should_retry(attempt_index):
                            break
                        delay = policy.get_delay(attempt_index, e)
                        logger.info(
                            "retry_scheduled",
                            model_id=model_id,
                            attempt_index=attempt_index + 1,
                            delay_s=round(delay, 3),
                        )
                        await self._backoff(delay, trail, policy, cancel_token)
                        continue

                    response = self._coerce(response)
                    record = self._successful_attempt(
                        response, model_id, attempt_index, started, started_at, cancel_token
                    )
                    trail.add(record)
                    if self.ledger is not None:
                        self.ledger.commit(scopes, record.cost_usd, record.total_tokens)
                    self.breakers.record_success(key)
                    reported = True

                    result = trail.build(
                        self.clock(), "success", chosen_model_id=model_id, content=response.content
                    )
                    logger.info(
                        "execution_succeeded",
                        model_id=model_id,
                        attempts=result.attempts_count,
                        used_fallback=result.used_fallback,
                        cost_usd=round(result.total_cost, 6),
                    )
                    emit_execution(self.execution_logger, result)
                    return result

                self.breakers.record_failure(key, request.circuit_breaker)
                reported = True
            finally:
                if permit.trial and not reported:
                    self.breakers.release(key)

        if not trail.attempts:
            self._fail(
                trail,
                CircuitOpenError(
                    request.agent_type,
                    trail.skipped_models,
                    cooldown_until=min(trail.cooldowns) if trail.cooldowns else None,
                ),
            )

        tried = list(dict.fromkeys(a.model_id for a in trail.attempts))
        self._fail(
            trail,
            ExhaustedFallbacksError(
                tried,
                last_error,
                last_error_kind=error_kind(last_error) if last_error else None,
                last_error_retryable=last_retryable,
            ),
        )

    def _check_continue(
        self,
        trail: _ExecutionTrail,
        policy: RetryPolicy,
        cancel_token: Optional[CancellationToken],
    ) -> None:
        """Abort before a new attempt on cancellation or total_timeout."""
        if cancel_token is not None and cancel_token.cancelled:
            self._fail(trail, ExecutionCancelledError(cancel_token.reason or "cancelled"))

        if policy.total_timeout is not None:
            elapsed = self.clock() - trail.started
            if elapsed >= policy.total_timeout:
                self._fail(trail, TotalTimeoutError(policy.total_timeout, elapsed))

    async def _backoff(
        self,
        delay: float,
        trail: _ExecutionTrail,
        policy: RetryPolicy,
        cancel_token: Optional[CancellationToken],
    ) -> None:
        """Wait before a retry.

        The wait never runs past total_timeout and ends early when
        ``cancel_token`` is cancelled.
        """
        if policy.total_timeout is not None:
            left = policy.total_timeout - (self.clock() - trail.started)
            delay = max(min(delay, left), 0.0)
        if cancel_token is None:
            await self.sleep(delay)
            return
        if cancel_token.cancelled:
            return

        loop = asyncio.get_running_loop()
        woken = loop.create_future()

        def wake() -> None:
            if not woken.done():
                woken.set_result(None)

        remove = cancel_token.add_callback(lambda: loop.call_soon_threadsafe(wake))
        sleeper = asyncio.ensure_future(self.sleep(delay))
        try:
            await asyncio.wait({sleeper, woken}, return_when=asyncio.FIRST_COMPLETED)
            if sleeper.done():
                sleeper.result()
        finally:
            remove()
            woken.cancel()
            if not sleeper.done():
                sleeper.cancel()
                await asyncio.gather(sleeper, return_exceptions=True)

    def _fail(self, trail: _ExecutionTrail, error: ExecutionError):
        """Attach the assembled result to ``error``, log it and raise it."""
        error.result = trail.build(self.clock(), "error", error=error)
        logger.warning(
            "execution_failed",
            error_code=error.error_code,
            attempts=len(trail.attempts),
            skipped_models=trail.skipped_models,
        )
        emit_execution(self.execution_logger, error.result)
        raise error

    @staticmethod
    def _coerce(response: Union[ProviderResponse, dict, Any]) -> ProviderResponse:
        if isinstance(response, ProviderResponse):
            return response
        if isinstance(response, dict):
            return ProviderResponse(**response)
        return ProviderResponse(content=response)

    def _successful_attempt(
        self,
        response: ProviderResponse,
        model_id: str,
        attempt_index: int,
        started: float,
        started_at: datetime,
        cancel_token: Optional[CancellationToken],
    ) -> AttemptRecord:
        cost = response.cost
        if cost is None:
            cost = estimate_cost(model_id, response.input_tokens, response.output_tokens)
        return AttemptRecord(
            model_id=model_id,
            attempt_index=attempt_index,
            started_at=started_at,
            duration_s=max(self.clock() - started, 0.0),
            success=True,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            cost_usd=cost,
            late=cancel_token is not None and cancel_token.cancelled,
        )

    def _failed_attempt(
        self,
        error: BaseException,
        model_id: str,
        attempt_index: int,
        started: float,
        started_at: datetime,
        retryable: bool,
    ) -> AttemptRecord:
        input_tokens = output_tokens = 0
        cost = 0.0
        if isinstance(error, ProviderError):
            input_tokens = error.input_tokens
            output_tokens = error.output_tokens
            if error.cost is not None:
                cost = error.cost
            elif input_tokens or output_tokens:
                cost = estimate_cost(model_id, input_tokens, output_tokens)
        return AttemptRecord(
            model_id=model_id,
            attempt_index=attempt_index,
            started_at=started_at,
            duration_s=max(self.clock() - started, 0.0),
            success=False,
            error_kind=error_kind(error),
            error_message=str(error),
            retryable=retryable,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=cost,
        )
