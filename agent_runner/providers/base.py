"""Provider call interface consumed by the resilient call executor.

The executor never inspects prompt payloads or response content. A provider
returns content plus token counts, or raises ProviderError (or any other
exception, which is classified by the retry policy).
"""

import asyncio
import inspect
import threading
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel, Field


class ProviderResponse(BaseModel):
    """Content and usage returned by a successful provider call."""

    content: Any = None
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    cost: Optional[float] = None  # None: price from the model pricing table

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class ProviderError(Exception):
    """Typed failure from a provider call.

    Attributes:
        error_class: Provider-level class, e.g. "rate_limit", "server_error"
        retryable_hint: Provider's own opinion on retrying, if it has one
        retry_after: Server hint in seconds before the next attempt
        input_tokens/output_tokens/cost: Usage consumed by the failed call
    """

    def __init__(
        self,
        error_class: str,
        message: str = "",
        retryable_hint: Optional[bool] = None,
        retry_after: Optional[float] = None,
        input_tokens: int = 0,
        output_tokens: int = 0,
        cost: Optional[float] = None,
    ):
        super().__init__(message or error_class)
        self.error_class = error_class
        self.message = message or error_class
        self.retryable_hint = retryable_hint
        self.retry_after = retry_after
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.cost = cost


class CancellationToken:
    """Cooperative cancellation signal shared between a workflow and its calls.

    Cancelling is best effort: it stops new attempts, branches and steps from
    starting and wakes backoff waits, but a provider call that is already in
    flight may run to completion. Providers may poll ``cancelled`` to stop early.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._parent = parent
        self._event = threading.Event()
        self._reason: Optional[str] = None
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], Any]] = []

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def reason(self) -> Optional[str]:
        if self._event.is_set():
            return self._reason
        if self._parent is not None:
            return self._parent.reason
        return None

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_callback(self, fn: Callable[[], Any]) -> Callable[[], None]:
        """Call ``fn`` once when this token or one of its parents is cancelled.

        ``fn`` runs immediately if the token is already cancelled, and may run
        on whichever thread calls ``cancel``. Returns a function that removes
        the callback again.
        """
        fired = threading.Event()

        def once() -> None:
            if not fired.is_set():
                fired.set()
                fn()

        registered = []
        token = self
        while token is not None:
            with token._lock:
                cancelled = token._event.is_set()
                if not cancelled:
                    token._callbacks.append(once)
                    registered.append(token)
            if cancelled:
                once()
                break
            token = token._parent

        def remove() -> None:
            for t in registered:
                with t._lock:
                    if once in t._callbacks:
                        t._callbacks.remove(once)

        return remove

    def child(self) -> "CancellationToken":
        """Token cancelled together with this one, but cancellable on its own."""
        return CancellationToken(parent=self)


class Provider(ABC):
    """Abstract base for provider call implementations."""

    name: str = "provider"

    @abstractmethod
    async def call(
        self,
        model_id: str,
        prompt: Any,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ProviderResponse:
        """Perform one call against ``model_id``."""
        pass


ProviderFunc = Callable[..., Union[ProviderResponse, Awaitable[ProviderResponse]]]


class CallableProvider(Provider):
    """Adapts a plain function ``fn(model_id, prompt)`` to the Provider interface.

    Coroutine functions are awaited directly. Blocking functions (SDK clients
    that do their own HTTP) run in a worker thread so backoff waits and other
    branches keep running.
    """

    def __init__(self, fn: ProviderFunc, name: Optional[str] = None):
        self.fn = fn
        self.name = name or getattr(fn, "__name__", "callable")
        self._is_async = inspect.iscoroutinefunction(fn)

    async def call(
        self,
        model_id: str,
        prompt: Any,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ProviderResponse:
        if self._is_async:
            response = await self.fn(model_id, prompt)
        else:
            response = await asyncio.to_thread(self.fn, model_id, prompt)
        if isinstance(response, dict):
            response = ProviderResponse(**response)
        return response
