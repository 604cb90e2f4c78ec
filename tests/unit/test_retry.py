"""Tests for backoff delays, error classification and retry policies."""

import random

import pytest

from agent_runner.providers.base import ProviderError
from agent_runner.resilience.retry import (
    DEFAULT_CLASSIFIER,
    BackoffKind,
    ErrorClassifier,
    RetryPolicy,
    backoff_delay,
)


class TestBackoffDelay:
    def test_exponential_doubles_until_capped(self):
        delays = [
            backoff_delay(i, BackoffKind.EXPONENTIAL, base=0.4, max_delay=3.0, jitter=False)
            for i in range(5)
        ]
        assert delays == pytest.approx([0.4, 0.8, 1.6, 3.0, 3.0])

    def test_constant_ignores_attempt_index(self):
        delays = [
            backoff_delay(i, "constant", base=1.0, max_delay=0.5, jitter=False)
            for i in range(3)
        ]
        assert delays == [1.0, 1.0, 1.0]

    def test_jitter_stays_within_half_to_one_and_a_half(self):
        rng = random.Random(42)
        for attempt in range(4):
            base = min(0.4 * 2 ** attempt, 3.0)
            for _ in range(200):
                delay = backoff_delay(attempt, base=0.4, max_delay=3.0, rng=rng)
                assert 0.5 * base <= delay < 1.5 * base

    def test_negative_attempt_index_rejected(self):
        with pytest.raises(ValueError):
            backoff_delay(-1)


class TestErrorClassifier:
    def test_retryable_provider_error_classes(self):
        for error_class in ("rate_limit", "timeout", "server_error", "network", "overloaded"):
            assert DEFAULT_CLASSIFIER.is_retryable(ProviderError(error_class))

    def test_unknown_provider_error_class_not_retryable(self):
        assert not DEFAULT_CLASSIFIER.is_retryable(
            ProviderError("invalid_request", "prompt too long")
        )

    def test_retryable_hint_wins_over_class(self):
        assert not DEFAULT_CLASSIFIER.is_retryable(
            ProviderError("rate_limit", retryable_hint=False)
        )
        assert DEFAULT_CLASSIFIER.is_retryable(
            ProviderError("content_filter", retryable_hint=True)
        )

    def test_network_exceptions_retryable(self):
        assert DEFAULT_CLASSIFIER.is_retryable(ConnectionError("reset by peer"))
        assert DEFAULT_CLASSIFIER.is_retryable(TimeoutError())

    def test_message_patterns(self):
        assert DEFAULT_CLASSIFIER.is_retryable(RuntimeError("HTTP 503 Service Unavailable"))
        assert DEFAULT_CLASSIFIER.is_retryable(RuntimeError("Too Many Requests"))
        assert DEFAULT_CLASSIFIER.is_retryable(RuntimeError("model is over capacity"))
        assert not DEFAULT_CLASSIFIER.is_retryable(ValueError("missing field 'title'"))

    def test_predicate_verdict_overrides_defaults(self):
        classifier = ErrorClassifier(
            predicate=lambda e: False if isinstance(e, ConnectionError) else None
        )
        assert not classifier.is_retryable(ConnectionError("refused"))
        # None falls through to the default rules
        assert classifier.is_retryable(ProviderError("rate_limit"))

    def test_extend_adds_patterns_and_classes(self):
        classifier = DEFAULT_CLASSIFIER.extend(
            patterns=("Upstream Reset",),
            error_classes=("quota",),
        )
        assert classifier.is_retryable(RuntimeError("upstream reset while reading"))
        assert classifier.is_retryable(ProviderError("quota"))
        assert not DEFAULT_CLASSIFIER.is_retryable(ProviderError("quota"))

    def test_non_fallback_is_empty_by_default(self):
        assert not DEFAULT_CLASSIFIER.is_non_fallback(TypeError("bad prompt"))
        assert not DEFAULT_CLASSIFIER.is_non_fallback(ProviderError("content_policy"))

    def test_non_fallback_exceptions_and_classes(self):
        classifier = ErrorClassifier(
            non_fallback_exceptions=(TypeError,),
            non_fallback_error_classes=("content_policy",),
        )
        assert classifier.is_non_fallback(TypeError("bad prompt"))
        assert classifier.is_non_fallback(ProviderError("content_policy"))
        assert not classifier.is_non_fallback(ProviderError("rate_limit"))
        assert not classifier.is_non_fallback(ValueError("malformed"))


class TestRetryPolicy:
    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_retries == 0
        assert policy.max_attempts == 1
        assert policy.backoff == BackoffKind.EXPONENTIAL
        assert policy.total_timeout is None

    def test_should_retry_counts_retries_not_attempts(self):
        policy = RetryPolicy(max_retries=2)
        assert policy.should_retry(0)
        assert policy.should_retry(1)
        assert not policy.should_retry(2)

    def test_negative_retries_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_retries=-1)

    def test_backoff_string_is_coerced(self):
        assert RetryPolicy(backoff="constant").backoff == BackoffKind.CONSTANT

    def test_retry_after_hint_capped_at_max_delay(self):
        policy = RetryPolicy(base_delay=0.5, max_delay=2.0, jitter=False)
        assert policy.get_delay(0, ProviderError("rate_limit", retry_after=1.5)) == 1.5
        assert policy.get_delay(0, ProviderError("rate_limit", retry_after=30)) == 2.0

    def test_get_delay_without_hint_uses_backoff(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=10.0, jitter=False)
        assert policy.get_delay(2) == 4.0

    def test_from_dict(self):
        policy = RetryPolicy.from_dict(
            {
                "max_retries": 3,
                "backoff": "constant",
                "base_delay": 2,
                "total_timeout": 30,
                "retryable_patterns": ["connection dropped"],
                "non_fallback_error_classes": ["content_policy"],
            }
        )
        assert policy.max_retries == 3
        assert policy.backoff == BackoffKind.CONSTANT
        assert policy.total_timeout == 30
        assert policy.is_retryable(RuntimeError("Connection dropped"))
        assert policy.is_non_fallback(ProviderError("content_policy"))

    def test_from_dict_ignores_unknown_keys(self):
        policy = RetryPolicy.from_dict({"max_retries": 1, "fallback_models": ["x"]})
        assert policy.max_retries == 1
