"""Tests for the resilient call executor."""

import asyncio
import time

import pytest

from agent_runner.errors import (
    BudgetExceededError,
    CircuitOpenError,
    ExecutionCancelledError,
    ExhaustedFallbacksError,
    NonFallbackError,
    TotalTimeoutError,
)
from agent_runner.providers.base import CancellationToken, ProviderError, ProviderResponse
from agent_runner.resilience.budget import BudgetConfig, BudgetLedger, BudgetScope
from agent_runner.resilience.circuit_breaker import BreakerConfig
from agent_runner.resilience.executor import ExecutionRequest, ResilientExecutor
from agent_runner.resilience.retry import DEFAULT_CLASSIFIER, ErrorClassifier, RetryPolicy

NO_JITTER = RetryPolicy(max_retries=2, backoff="constant", base_delay=1.0, jitter=False)


def rate_limited():
    return ProviderError("rate_limit", "429 Too Many Requests")


def request(model="gpt-4o", fallbacks=(), **kwargs):
    return ExecutionRequest.build("summarizer", model, fallback_models=fallbacks, **kwargs)


class TestExecutionRequest:
    def test_models_keep_order_without_duplicates(self):
        req = ExecutionRequest("summarizer", ("a", "b", "a", "c"))
        assert req.models == ("a", "b", "c")
        assert req.primary_model == "a"
        assert req.fallback_models == ("b", "c")

    def test_single_model_string(self):
        assert ExecutionRequest("summarizer", "gpt-4o").models == ("gpt-4o",)

    def test_requires_a_model(self):
        with pytest.raises(ValueError):
            ExecutionRequest("summarizer", ())

    def test_rejects_negative_projected_cost(self):
        with pytest.raises(ValueError):
            request(projected_cost=-1)

    def test_with_prompt_and_tenant_return_copies(self):
        base = request(prompt="a")
        assert base.with_prompt("b").prompt == "b"
        assert base.for_tenant("acme").tenant_id == "acme"
        assert base.prompt == "a" and base.tenant_id is None


class TestRetries:
    def test_retries_until_success(self, executor, provider, sleeps):
        provider.scripts["gpt-4o"] = [rate_limited(), rate_limited(), "done"]

        result = asyncio.run(executor.execute(request(retry=NO_JITTER)))

        assert result.status == "success"
        assert result.content == "done"
        assert result.attempts_count == 3
        assert [a.success for a in result.attempts] == [False, False, True]
        assert [a.attempt_index for a in result.attempts] == [0, 1, 2]
        assert not result.used_fallback
        assert result.chosen_model_id == "gpt-4o"
        assert sleeps.delays == [1.0, 1.0]

    def test_exactly_max_retries_plus_one_attempts_per_model(self, executor, provider):
        provider.always("gpt-4o", rate_limited())

        with pytest.raises(ExhaustedFallbacksError) as exc_info:
            asyncio.run(executor.execute(request(retry=NO_JITTER)))

        error = exc_info.value
        assert len(provider.calls_for("gpt-4o")) == 3
        assert error.result.attempts_count == 3
        assert error.result.status == "error"
        assert error.last_error_kind == "rate_limit"
        assert error.last_error_retryable

    def test_retry_after_hint_sets_delay(self, executor, provider, sleeps):
        policy = RetryPolicy(max_retries=1, base_delay=0.4, max_delay=10.0, jitter=False)
        provider.scripts["gpt-4o"] = [ProviderError("rate_limit", retry_after=7), "ok"]

        asyncio.run(executor.execute(request(retry=policy)))

        assert sleeps.delays == [7]

    def test_exponential_backoff_between_attempts(self, executor, provider, sleeps):
        policy = RetryPolicy(max_retries=4, jitter=False)
        provider.always("gpt-4o", rate_limited())

        with pytest.raises(ExhaustedFallbacksError):
            asyncio.run(executor.execute(request(retry=policy)))

        assert sleeps.delays == pytest.approx([0.4, 0.8, 1.6, 3.0])


class TestFallbacks:
    def test_falls_back_after_primary_exhausted(self, executor, provider):
        provider.always("gpt-4o", rate_limited())

        result = asyncio.run(
            executor.execute(request(fallbacks=["gpt-4o-mini"], retry=NO_JITTER))
        )

        assert result.chosen_model_id == "gpt-4o-mini"
        assert result.used_fallback
        assert result.primary_model_id == "gpt-4o"
        assert result.attempts_count == 4
        assert [a.model_id for a in result.attempts] == ["gpt-4o"] * 3 + ["gpt-4o-mini"]

    def test_non_retryable_error_moves_straight_to_fallback(self, executor, provider, sleeps):
        provider.always("gpt-4o", ProviderError("invalid_request", "bad schema"))

        result = asyncio.run(
            executor.execute(request(fallbacks=["claude-sonnet"], retry=NO_JITTER))
        )

        assert len(provider.calls_for("gpt-4o")) == 1
        assert result.attempts[0].retryable is False
        assert result.attempts[0].error_kind == "invalid_request"
        assert result.chosen_model_id == "claude-sonnet"
        assert sleeps.delays == []

    def test_unclassified_exception_is_recorded(self, executor, provider):
        provider.scripts["gpt-4o"] = [ValueError("malformed response")]

        result = asyncio.run(executor.execute(request(fallbacks=["gpt-4o-mini"])))

        assert result.attempts[0].error_kind == "ValueError"
        assert result.attempts[0].error_message == "malformed response"
        assert result.used_fallback

    def test_totals_cover_every_attempt(self, executor, provider):
        provider.scripts["gpt-4o"] = [
            ProviderError("server_error", input_tokens=40, output_tokens=2, cost=0.004),
        ]

        result = asyncio.run(executor.execute(request(fallbacks=["gpt-4o-mini"])))

        assert result.input_tokens == 40 + 10
        assert result.output_tokens == 2 + 5
        assert result.total_cost == pytest.approx(0.005)

    def test_non_fallback_error_ends_execution(self, executor, provider, breakers, sleeps):
        classifier = ErrorClassifier(non_fallback_exceptions=(TypeError,))
        policy = RetryPolicy(max_retries=2, jitter=False, classifier=classifier)
        provider.always("gpt-4o", TypeError("prompt builder returned None"))

        with pytest.raises(NonFallbackError) as exc_info:
            asyncio.run(executor.execute(request(fallbacks=["gpt-4o-mini"], retry=policy)))

        error = exc_info.value
        assert isinstance(error.cause, TypeError)
        assert error.to_dict()["code"] == "NON_FALLBACK_ERROR"
        assert error.to_dict()["details"] == {"model_id": "gpt-4o", "error_kind": "TypeError"}
        assert error.result.attempts_count == 1
        assert provider.calls_for("gpt-4o-mini") == []
        assert sleeps.delays == []
        key = breakers.key_for("summarizer", "gpt-4o")
        assert breakers.status(key).error_count == 1

    def test_non_fallback_error_class(self, executor, provider):
        policy = RetryPolicy(
            classifier=DEFAULT_CLASSIFIER.extend(non_fallback_error_classes=("content_policy",))
        )
        provider.always("gpt-4o", ProviderError("content_policy", "prompt rejected"))

        with pytest.raises(NonFallbackError) as exc_info:
            asyncio.run(executor.execute(request(fallbacks=["gpt-4o-mini"], retry=policy)))

        assert exc_info.value.cause_kind == "content_policy"
        assert provider.calls_for("gpt-4o-mini") == []


class TestCircuitBreaking:
    def test_breaker_counts_one_failure_per_abandoned_model(
        self, executor, provider, breakers
    ):
        provider.always("gpt-4o", rate_limited())

        asyncio.run(executor.execute(request(fallbacks=["gpt-4o-mini"], retry=NO_JITTER)))

        primary = breakers.status(breakers.key_for("summarizer", "gpt-4o"))
        fallback = breakers.status(breakers.key_for("summarizer", "gpt-4o-mini"))
        assert primary.error_count == 1
        assert fallback.error_count == 0

    def test_open_breaker_then_trial(self, executor, provider, clock):
        config = BreakerConfig(errors=3, within=60, cooldown=300)
        provider.scripts["gpt-4o"] = [rate_limited()] * 3
        req = request(circuit_breaker=config)

        for _ in range(3):
            with pytest.raises(ExhaustedFallbacksError):
                asyncio.run(executor.execute(req))
            clock.advance(3)

        clock.advance(1)
        with pytest.raises(CircuitOpenError) as exc_info:
            asyncio.run(executor.execute(req))
        error = exc_info.value
        assert error.result.attempts == []
        assert error.result.skipped_models == ["gpt-4o"]
        assert error.cooldown_until is not None
        assert error.to_dict()["code"] == "CIRCUIT_OPEN"
        assert len(provider.calls) == 3

        clock.advance(301)
        result = asyncio.run(executor.execute(req))
        assert result.success
        assert len(provider.calls) == 4

    def test_open_primary_is_skipped(self, executor, provider, breakers):
        breakers.force_open(breakers.key_for("summarizer", "gpt-4o"))

        result = asyncio.run(executor.execute(request(fallbacks=["gpt-4o-mini"])))

        assert result.skipped_models == ["gpt-4o"]
        assert result.chosen_model_id == "gpt-4o-mini"
        assert result.used_fallback
        assert provider.calls_for("gpt-4o") == []

    def test_breakers_are_isolated_per_tenant(self, executor, provider, breakers):
        breakers.force_open(breakers.key_for("summarizer", "gpt-4o", "acme"))

        with pytest.raises(CircuitOpenError):
            asyncio.run(executor.execute(request(tenant_id="acme")))
        result = asyncio.run(executor.execute(request(tenant_id="globex")))
        assert result.success

    def test_failed_trial_reopens_breaker(self, executor, provider, breakers, clock):
        key = breakers.key_for("summarizer", "gpt-4o")
        breakers.force_open(key, cooldown=10)
        clock.advance(11)
        provider.scripts["gpt-4o"] = [rate_limited()]

        with pytest.raises(ExhaustedFallbacksError):
            asyncio.run(executor.execute(request()))

        status = breakers.status(key)
        assert status.is_open
        assert not status.trial_in_flight

    def test_trial_lease_released_when_trial_is_cancelled(
        self, executor, provider, breakers, clock
    ):
        key = breakers.key_for("summarizer", "gpt-4o")
        breakers.force_open(key, cooldown=10)
        clock.advance(11)
        token = CancellationToken()
        token.cancel("shutdown")

        with pytest.raises(ExecutionCancelledError):
            asyncio.run(executor.execute(request(), token))

        assert breakers.status(key).trial_available


class TestTimeoutAndCancellation:
    def test_total_timeout_preserves_attempts(self, executor, provider, sleeps):
        policy = RetryPolicy(
            max_retries=5, backoff="constant", base_delay=1.0, jitter=False, total_timeout=2.5
        )
        provider.always("gpt-4o", rate_limited())

        with pytest.raises(TotalTimeoutError) as exc_info:
            asyncio.run(executor.execute(request(retry=policy)))

        error = exc_info.value
        assert error.result.attempts_count == 3
        # The last wait is cut to what is left of the 2.5s budget
        assert sleeps.delays == [1.0, 1.0, pytest.approx(0.5)]
        assert error.elapsed_s == pytest.approx(2.5)
        assert error.to_dict()["code"] == "TOTAL_TIMEOUT"

    def test_cancelled_token_stops_before_first_attempt(self, executor, provider):
        token = CancellationToken()
        token.cancel("user aborted")

        with pytest.raises(ExecutionCancelledError) as exc_info:
            asyncio.run(executor.execute(request(), token))

        assert exc_info.value.reason == "user aborted"
        assert provider.calls == []

    def test_cancellation_between_retries(self, executor, scripted, breakers, sleeps, clock):
        token = CancellationToken()

        class CancellingProvider(scripted):
            async def call(self, model_id, prompt, cancel_token=None):
                token.cancel("workflow aborted")
                raise rate_limited()

        provider = CancellingProvider()
        executor = ResilientExecutor(provider, breakers=breakers, sleep=sleeps, clock=clock)

        with pytest.raises(ExecutionCancelledError) as exc_info:
            asyncio.run(executor.execute(request(retry=NO_JITTER), token))

        assert exc_info.value.result.attempts_count == 1

    def test_cancel_wakes_backoff_wait(self, scripted, breakers):
        token = CancellationToken()
        provider = scripted().always("gpt-4o", rate_limited())
        executor = ResilientExecutor(provider, breakers=breakers)
        policy = RetryPolicy(max_retries=1, backoff="constant", base_delay=5.0, jitter=False)

        async def run():
            asyncio.get_running_loop().call_later(0.05, token.cancel, "shutdown")
            return await executor.execute(request(retry=policy), token)

        started = time.monotonic()
        with pytest.raises(ExecutionCancelledError) as exc_info:
            asyncio.run(run())

        assert time.monotonic() - started < 1.0
        assert exc_info.value.reason == "shutdown"
        assert len(provider.calls) == 1


class TestBudget:
    def _executor(self, provider, breakers, sleeps, clock, **config):
        ledger = BudgetLedger(BudgetConfig(**config))
        return ResilientExecutor(
            provider, breakers=breakers, ledger=ledger, sleep=sleeps, clock=clock
        ), ledger

    def test_denied_before_any_call(self, provider, breakers, sleeps, clock):
        executor, ledger = self._executor(
            provider, breakers, sleeps, clock, enforcement="hard", global_daily=10.0
        )
        ledger.commit([BudgetScope.global_scope()], 9.999)

        with pytest.raises(BudgetExceededError) as exc_info:
            asyncio.run(executor.execute(request(projected_cost=0.01)))

        assert provider.calls == []
        assert exc_info.value.result.attempts == []
        assert exc_info.value.scope == "global"

    def test_success_commits_cost_to_every_scope(self, provider, breakers, sleeps, clock):
        executor, ledger = self._executor(provider, breakers, sleeps, clock)

        asyncio.run(executor.execute(request(tenant_id="acme")))

        for scope in ledger.scopes_for("summarizer", "acme"):
            entry = ledger.entry(scope)
            assert entry.cumulative_cost == pytest.approx(0.001)
            assert entry.cumulative_tokens == 15
            assert entry.cumulative_executions == 1

    def test_failed_attempt_cost_is_committed(self, provider, breakers, sleeps, clock):
        executor, ledger = self._executor(provider, breakers, sleeps, clock)
        provider.scripts["gpt-4o"] = [
            ProviderError("server_error", input_tokens=100, output_tokens=0, cost=0.02)
        ]

        asyncio.run(executor.execute(request(fallbacks=["gpt-4o-mini"])))

        entry = ledger.entry(BudgetScope.global_scope())
        assert entry.cumulative_cost == pytest.approx(0.021)
        assert entry.cumulative_tokens == 115
        assert entry.cumulative_executions == 1

    def test_missing_cost_is_estimated_from_pricing(self, scripted, breakers, sleeps, clock):
        provider = scripted(
            {"gpt-4o": [ProviderResponse(content="x", input_tokens=1000, output_tokens=1000)]}
        )
        executor = ResilientExecutor(provider, breakers=breakers, sleep=sleeps, clock=clock)

        result = asyncio.run(executor.execute(request()))

        assert result.total_cost == pytest.approx(0.0125)

    def test_token_limit_denies_once_used_up(self, provider, breakers, sleeps, clock):
        executor, ledger = self._executor(
            provider, breakers, sleeps, clock, enforcement="hard", global_daily_tokens=15
        )

        asyncio.run(executor.execute(request()))
        with pytest.raises(BudgetExceededError) as exc_info:
            asyncio.run(executor.execute(request()))

        assert exc_info.value.unit == "tokens"
        assert exc_info.value.limit == 15
        assert len(provider.calls) == 1
        assert ledger.remaining_tokens() == 0


class TestExecutionLogging:
    def test_logger_receives_success_and_failure(self, executor, provider, execution_log):
        provider.scripts["gpt-4o"] = [ProviderError("invalid_request")]

        with pytest.raises(ExhaustedFallbacksError):
            asyncio.run(executor.execute(request()))
        asyncio.run(executor.execute(request()))

        assert [r.status for r in execution_log.executions] == ["error", "success"]
        assert execution_log.executions[0].error_kind == "EXHAUSTED_FALLBACKS"

    def test_failing_logger_does_not_break_execution(self, provider, breakers, sleeps, clock):
        class BrokenSink:
            def record_execution(self, result):
                raise OSError("disk full")

        executor = ResilientExecutor(
            provider, breakers=breakers, execution_logger=BrokenSink(), sleep=sleeps, clock=clock
        )
        assert asyncio.run(executor.execute(request())).success

    def test_dict_and_raw_responses_are_accepted(self, executor, provider):
        provider.scripts["gpt-4o"] = [
            ProviderResponse(content={"summary": "s"}, input_tokens=3, output_tokens=4, cost=0.0)
        ]
        result = asyncio.run(executor.execute(request()))
        assert result.content == {"summary": "s"}
        assert result.total_tokens == 7
