"""Shared fixtures and scripted providers for testing."""

from typing import Any, Optional

import pytest

from agent_runner.logging.execution_logger import InMemoryExecutionLogger
from agent_runner.providers.base import CancellationToken, Provider, ProviderResponse
from agent_runner.resilience.circuit_breaker import CircuitBreakerRegistry
from agent_runner.resilience.executor import ResilientExecutor


class ScriptedProvider(Provider):
    """Provider returning canned outcomes per model without API calls.

    Each model has a queue of outcomes; an outcome is a ProviderResponse,
    an exception instance (raised) or any other value (used as content).
    When a model's queue is empty, its ``fixed`` outcome is used, or a
    default success.
    """

    name = "scripted"

    def __init__(
        self,
        scripts: Optional[dict[str, list]] = None,
        cost: float = 0.001,
        input_tokens: int = 10,
        output_tokens: int = 5,
    ):
        self.scripts = {model: list(outcomes) for model, outcomes in (scripts or {}).items()}
        self.fixed: dict[str, Any] = {}
        self.cost = cost
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.calls: list[tuple[str, Any]] = []

    def always(self, model_id: str, outcome: Any) -> "ScriptedProvider":
        """Return ``outcome`` for every call to ``model_id`` once its queue is empty."""
        self.fixed[model_id] = outcome
        return self

    def calls_for(self, model_id: str) -> list[Any]:
        return [prompt for model, prompt in self.calls if model == model_id]

    async def call(
        self,
        model_id: str,
        prompt: Any,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ProviderResponse:
        self.calls.append((model_id, prompt))
        queue = self.scripts.get(model_id)
        if queue:
            outcome = queue.pop(0)
        elif model_id in self.fixed:
            outcome = self.fixed[model_id]
        else:
            outcome = f"{model_id}:ok"

        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, ProviderResponse):
            return outcome
        return ProviderResponse(
            content=outcome,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cost=self.cost,
        )


class FakeClock:
    """Manually advanced clock, usable as both monotonic and wall clock."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep that records delays and advances a FakeClock instead of waiting."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.clock is not None:
            self.clock.advance(delay)


@pytest.fixture
def clock():
    """Provide a FakeClock."""
    return FakeClock()


@pytest.fixture
def sleeps(clock):
    """Provide a RecordingSleep bound to the fake clock."""
    return RecordingSleep(clock)


@pytest.fixture
def provider():
    """Provide a fresh ScriptedProvider (every model succeeds)."""
    return ScriptedProvider()


@pytest.fixture
def execution_log():
    return InMemoryExecutionLogger()


@pytest.fixture
def breakers(clock):
    return CircuitBreakerRegistry(clock=clock)


@pytest.fixture
def executor(provider, breakers, execution_log, sleeps, clock):
    """Executor without budget checks, on fake time."""
    return ResilientExecutor(
        provider,
        breakers=breakers,
        execution_logger=execution_log,
        sleep=sleeps,
        clock=clock,
    )


@pytest.fixture
def scripted():
    """The ScriptedProvider class, for tests that build their own."""
    return ScriptedProvider
