"""Provider call interface."""

from agent_runner.providers.base import (
    CallableProvider,
    CancellationToken,
    Provider,
    ProviderError,
    ProviderResponse,
)

__all__ = [
    "CallableProvider",
    "CancellationToken",
    "Provider",
    "ProviderError",
    "ProviderResponse",
]
