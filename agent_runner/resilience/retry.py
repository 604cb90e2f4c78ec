"""Retry policies with exponential or constant backoff.

Provides the backoff delay calculation and the retryable-error classifier
used by the resilient call executor.

Usage:
    policy = RetryPolicy(max_retries=3, base_delay=1.0)

    policy.should_retry(attempt_index=0)   # True
    policy.get_delay(attempt_index=0)      # ~1.0s with jitter
    policy.is_retryable(ProviderError("rate_limit"))  # True
"""

import logging
import random
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Optional, Type

from agent_runner.providers.base import ProviderError

logger = logging.getLogger(__name__)


class BackoffKind(str, Enum):
    EXPONENTIAL = "exponential"
    CONSTANT = "constant"


# Jitter multiplies the delay by a factor in [JITTER_MIN, JITTER_MAX)
JITTER_MIN = 0.5
JITTER_MAX = 1.5


def backoff_delay(
    attempt_index: int,
    kind: BackoffKind = BackoffKind.EXPONENTIAL,
    base: float = 0.4,
    max_delay: float = 3.0,
    jitter: bool = True,
    rng: Optional[random.Random] = None,
) -> float:
    """Calculate the delay before a retry.

    Args:
        attempt_index: 0 for the first retry (the initial attempt has no delay)
        kind: exponential or constant backoff
        base: Base delay in seconds
        max_delay: Cap for exponential backoff
        jitter: Multiply by a uniform factor in [0.5, 1.5)
        rng: Random source, for reproducible delays

    Returns:
        Delay in seconds
    """
    if attempt_index < 0:
        raise ValueError("attempt_index must be >= 0")

    kind = BackoffKind(kind)
    if kind == BackoffKind.EXPONENTIAL:
        delay = min(base * (2 ** attempt_index), max_delay)
    else:
        delay = base

    if jitter:
        source = rng or random
        delay = delay * (JITTER_MIN + source.random() * (JITTER_MAX - JITTER_MIN))

    return delay


# Python exceptions that indicate a transient network condition
RETRYABLE_EXCEPTIONS: tuple[Type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
)

# Provider error classes that are retried unless the provider says otherwise
RETRYABLE_ERROR_CLASSES: tuple[str, ...] = (
    "rate_limit",
    "timeout",
    "server_error",
    "network",
    "overloaded",
)

# Lowercase fragments of error messages that indicate a retryable condition
RETRYABLE_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "too many requests",
    "429",
    "500",
    "502",
    "503",
    "504",
    "service unavailable",
    "internal server error",
    "bad gateway",
    "gateway timeout",
    "overloaded",
    "capacity",
    "timed out",
)


@dataclass(frozen=True)
class ErrorClassifier:
    """Decides whether a failed provider call is worth retrying.

    Checks, in order: the custom predicate (when it returns a verdict), the
    provider's retryable hint, provider error classes, exception types and
    message patterns.

    Errors matching ``non_fallback_exceptions`` or
    ``non_fallback_error_classes`` end the whole execution at once: no
    retries and no fallback models. Both are empty by default.
    """

    exceptions: tuple[Type[BaseException], ...] = RETRYABLE_EXCEPTIONS
    error_classes: tuple[str, ...] = RETRYABLE_ERROR_CLASSES
    patterns: tuple[str, ...] = RETRYABLE_PATTERNS
    predicate: Optional[Callable[[BaseException], Optional[bool]]] = None
    non_fallback_exceptions: tuple[Type[BaseException], ...] = ()
    non_fallback_error_classes: tuple[str, ...] = ()

    def is_retryable(self, error: BaseException) -> bool:
        if self.predicate is not None:
            verdict = self.predicate(error)
            if verdict is not None:
                return bool(verdict)

        if isinstance(error, ProviderError):
            if error.retryable_hint is not None:
                return error.retryable_hint
            if error.error_class in self.error_classes:
                return True

        if isinstance(error, self.exceptions):
            return True

        message = str(error).lower()
        return any(pattern in message for pattern in self.patterns)

    def is_non_fallback(self, error: BaseException) -> bool:
        if self.non_fallback_exceptions and isinstance(error, self.non_fallback_exceptions):
            return True
        return (
            isinstance(error, ProviderError)
            and error.error_class in self.non_fallback_error_classes
        )

    def extend(
        self,
        exceptions: tuple[Type[BaseException], ...] = (),
        error_classes: tuple[str, ...] = (),
        patterns: tuple[str, ...] = (),
        non_fallback_exceptions: tuple[Type[BaseException], ...] = (),
        non_fallback_error_classes: tuple[str, ...] = (),
    ) -> "ErrorClassifier":
        """Return a classifier extended with the given errors."""
        return replace(
            self,
            exceptions=self.exceptions + tuple(exceptions),
            error_classes=self.error_classes + tuple(error_classes),
            patterns=self.patterns + tuple(p.lower() for p in patterns),
            non_fallback_exceptions=(
                self.non_fallback_exceptions + tuple(non_fallback_exceptions)
            ),
            non_fallback_error_classes=(
                self.non_fallback_error_classes + tuple(non_fallback_error_classes)
            ),
        )


DEFAULT_CLASSIFIER = ErrorClassifier()


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior of one execution.

    Attributes:
        max_retries: Retries per candidate model (attempts = max_retries + 1)
        backoff: exponential or constant
        base_delay: Base delay in seconds
        max_delay: Maximum delay in seconds for exponential backoff
        total_timeout: Budget in seconds across all models and retries
        jitter: Apply random jitter to delays
        classifier: Decides which errors are retryable
    """

    max_retries: int = 0
    backoff: BackoffKind = BackoffKind.EXPONENTIAL
    base_delay: float = 0.4
    max_delay: float = 3.0
    total_timeout: Optional[float] = None
    jitter: bool = True
    classifier: ErrorClassifier = field(default=DEFAULT_CLASSIFIER)

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        object.__setattr__(self, "backoff", BackoffKind(self.backoff))

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def get_delay(self, attempt_index: int, error: Optional[BaseException] = None) -> float:
        """Delay before the retry following attempt ``attempt_index`` (0-based)."""
        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            # Server hint wins, but never beyond max_delay
            return min(float(retry_after), max(self.max_delay, self.base_delay))

        return backoff_delay(
            attempt_index,
            kind=self.backoff,
            base=self.base_delay,
            max_delay=self.max_delay,
            jitter=self.jitter,
        )

    def should_retry(self, attempt_index: int) -> bool:
        """Whether another attempt on the same model is allowed."""
        return attempt_index < self.max_retries

    def is_retryable(self, error: BaseException) -> bool:
        return self.classifier.is_retryable(error)

    def is_non_fallback(self, error: BaseException) -> bool:
        return self.classifier.is_non_fallback(error)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "RetryPolicy":
        """Build a policy from a config mapping (YAML ``reliability`` section)."""
        data = dict(data or {})
        classifier = DEFAULT_CLASSIFIER
        patterns = tuple(data.pop("retryable_patterns", ()) or ())
        error_classes = tuple(data.pop("retryable_error_classes", ()) or ())
        non_fallback = tuple(data.pop("non_fallback_error_classes", ()) or ())
        if patterns or error_classes or non_fallback:
            classifier = classifier.extend(
                patterns=patterns,
                error_classes=error_classes,
                non_fallback_error_classes=non_fallback,
            )

        known = {
            "max_retries",
            "backoff",
            "base_delay",
            "max_delay",
            "total_timeout",
            "jitter",
        }
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown retry settings: {sorted(unknown)}")

        return cls(
            classifier=classifier,
            **{k: v for k, v in data.items() if k in known},
        )


DEFAULT_POLICY = RetryPolicy()
