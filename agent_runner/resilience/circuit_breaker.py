"""Circuit breaker registry for agent/model pairs.

Each (agent_type, model_id, tenant_id) key has its own breaker:

    CLOSED -> OPEN      error_count reaches `errors` inside the `within` window
    OPEN   -> trial     once now >= cooldown_until, one caller is let through
    trial  -> CLOSED    the trial call succeeds (counters reset)
    trial  -> OPEN      the trial call fails (fresh cooldown)

All mutations of one key run under that key's lock in a KeyedStateStore, so
concurrent branches calling the same model never corrupt the counters.
Alerts are emitted after the lock is released.

Usage:
    breakers = CircuitBreakerRegistry(BreakerConfig(errors=3, within=60, cooldown=300))
    key = breakers.key_for("summarizer", "gpt-4o", tenant_id="acme")

    permit = breakers.allow(key)
    if permit:
        try:
            call_provider()
            breakers.record_success(key)
        except ProviderError:
            breakers.record_failure(key)
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict

from agent_runner.alerts import BREAKER_CLOSED, BREAKER_OPEN, AlertManager
from agent_runner.logging.structured import get_logger
from agent_runner.resilience.store import KeyedStateStore

logger = get_logger(__name__)


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"


@dataclass(frozen=True)
class BreakerConfig:
    """Thresholds for one breaker.

    Attributes:
        errors: Failures inside the window that open the breaker
        within: Sliding window length in seconds
        cooldown: Seconds the breaker stays open before a trial call
    """

    errors: int = 10
    within: float = 60.0
    cooldown: float = 300.0

    def __post_init__(self):
        if self.errors < 1:
            raise ValueError("errors must be >= 1")
        if self.within <= 0 or self.cooldown < 0:
            raise ValueError("within must be > 0 and cooldown >= 0")

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "BreakerConfig":
        data = data or {}
        return cls(
            errors=int(data.get("errors", cls.errors)),
            within=float(data.get("within", cls.within)),
            cooldown=float(data.get("cooldown", cls.cooldown)),
        )


@dataclass(frozen=True)
class BreakerKey:
    agent_type: str
    model_id: str
    tenant_id: Optional[str] = None

    def label(self) -> str:
        base = f"{self.agent_type}:{self.model_id}"
        return f"{base}@{self.tenant_id}" if self.tenant_id else base


@dataclass
class _BreakerEntry:
    state: BreakerState = BreakerState.CLOSED
    error_count: int = 0
    window_start: Optional[float] = None
    cooldown_until: Optional[float] = None
    trial_started_at: Optional[float] = None
    times_opened: int = 0
    config: Optional[BreakerConfig] = None


@dataclass(frozen=True)
class BreakerPermit:
    """Answer to ``allow``. Truthy when the call may proceed.

    ``trial`` marks the single call allowed after cooldown; its caller must
    report an outcome or ``release`` the lease.
    """

    allowed: bool
    trial: bool = False
    cooldown_until: Optional[datetime] = None

    def __bool__(self) -> bool:
        return self.allowed


class BreakerStatus(BaseModel):
    """Point-in-time view of one breaker, for the admin API."""

    model_config = ConfigDict(protected_namespaces=())

    agent_type: str
    model_id: str
    tenant_id: Optional[str] = None
    state: BreakerState
    is_open: bool
    error_count: int
    threshold: int
    window_start: Optional[datetime] = None
    cooldown_until: Optional[datetime] = None
    trial_available: bool = False
    trial_in_flight: bool = False
    times_opened: int = 0


def _to_datetime(ts: Optional[float]) -> Optional[datetime]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class CircuitBreakerRegistry:
    """Shared breaker state for every agent/model/tenant key.

    Args:
        default_config: Thresholds used when a request carries none
        alerts: Receives breaker_open / breaker_closed events
        clock: Wall-clock seconds, injectable for tests
        tenant_isolation: Include tenant_id in breaker keys
    """

    def __init__(
        self,
        default_config: Optional[BreakerConfig] = None,
        alerts: Optional[AlertManager] = None,
        clock: Callable[[], float] = time.time,
        tenant_isolation: bool = True,
    ):
        self.default_config = default_config or BreakerConfig()
        self.alerts = alerts
        self.clock = clock
        self.tenant_isolation = tenant_isolation
        self._store: KeyedStateStore[BreakerKey, _BreakerEntry] = KeyedStateStore(
            _BreakerEntry
        )

    def key_for(
        self,
        agent_type: str,
        model_id: str,
        tenant_id: Optional[str] = None,
    ) -> BreakerKey:
        return BreakerKey(
            agent_type=agent_type,
            model_id=model_id,
            tenant_id=tenant_id if self.tenant_isolation else None,
        )

    def _config(self, entry: _BreakerEntry, config: Optional[BreakerConfig]) -> BreakerConfig:
        if config is not None:
            entry.config = config
        return entry.config or self.default_config

    # ------------------------------------------------------------------
    # Call flow
    # ------------------------------------------------------------------

    def allow(self, key: BreakerKey, config: Optional[BreakerConfig] = None) -> BreakerPermit:
        """Decide whether a call for ``key`` may proceed."""
        now = self.clock()

        def _allow(entry: _BreakerEntry) -> BreakerPermit:
            cfg = self._config(entry, config)
            if entry.state == BreakerState.CLOSED:
                return BreakerPermit(allowed=True)

            if entry.cooldown_until is not None and now < entry.cooldown_until:
                return BreakerPermit(
                    allowed=False, cooldown_until=_to_datetime(entry.cooldown_until)
                )

            # Another caller holds the trial; an unresolved lease expires
            # after max(cooldown, within)
            if (
                entry.trial_started_at is not None
                and now - entry.trial_started_at < max(cfg.cooldown, cfg.within)
            ):
                return BreakerPermit(
                    allowed=False, cooldown_until=_to_datetime(entry.cooldown_until)
                )

            entry.trial_started_at = now
            return BreakerPermit(allowed=True, trial=True)

        permit = self._store.update(key, _allow)
        if permit.trial:
            logger.info("breaker_trial_started", breaker=key.label())
        return permit

    def record_success(self, key: BreakerKey) -> None:
        def _success(entry: _BreakerEntry) -> bool:
            was_open = entry.state == BreakerState.OPEN
            entry.state = BreakerState.CLOSED
            entry.error_count = 0
            entry.window_start = None
            entry.cooldown_until = None
            entry.trial_started_at = None
            return was_open

        if self._store.update(key, _success):
            logger.info("breaker_closed", breaker=key.label())
            self._alert(BREAKER_CLOSED, key)

    def record_failure(self, key: BreakerKey, config: Optional[BreakerConfig] = None) -> bool:
        """Count one failure for ``key``. Returns True if the breaker opened."""
        now = self.clock()

        def _failure(entry: _BreakerEntry) -> Optional[dict[str, Any]]:
            cfg = self._config(entry, config)

            if entry.state == BreakerState.OPEN:
                in_cooldown = entry.cooldown_until is not None and now < entry.cooldown_until
                if in_cooldown and entry.trial_started_at is None:
                    # Straggler from before the breaker opened
                    return None
                entry.cooldown_until = now + cfg.cooldown
                entry.trial_started_at = None
                entry.times_opened += 1
                return {"reason": "trial_failed", "cfg": cfg}

            if entry.window_start is None or now - entry.window_start > cfg.within:
                entry.window_start = now
                entry.error_count = 1
            else:
                entry.error_count += 1

            if entry.error_count >= cfg.errors:
                entry.state = BreakerState.OPEN
                entry.cooldown_until = now + cfg.cooldown
                entry.trial_started_at = None
                entry.times_opened += 1
                return {"reason": "threshold", "cfg": cfg}
            return None

        opened = self._store.update(key, _failure)
        if opened is None:
            return False

        status = self.status(key)
        logger.warning(
            "breaker_opened",
            breaker=key.label(),
            reason=opened["reason"],
            error_count=status.error_count,
            cooldown_s=opened["cfg"].cooldown,
        )
        self._alert(BREAKER_OPEN, key, status=status, reason=opened["reason"])
        return True

    def release(self, key: BreakerKey) -> None:
        """Drop a trial lease whose call never reported an outcome."""

        def _release(entry: _BreakerEntry) -> None:
            entry.trial_started_at = None

        self._store.update(key, _release)

    # ------------------------------------------------------------------
    # Administrative operations
    # ------------------------------------------------------------------

    def status(self, key: BreakerKey) -> BreakerStatus:
        now = self.clock()

        def _status(entry: _BreakerEntry) -> BreakerStatus:
            cfg = entry.config or self.default_config
            is_open = (
                entry.state == BreakerState.OPEN
                and entry.cooldown_until is not None
                and now < entry.cooldown_until
            )
            trial_available = (
                entry.state == BreakerState.OPEN
                and not is_open
                and entry.trial_started_at is None
            )
            return BreakerStatus(
                agent_type=key.agent_type,
                model_id=key.model_id,
                tenant_id=key.tenant_id,
                state=entry.state,
                is_open=is_open,
                error_count=entry.error_count,
                threshold=cfg.errors,
                window_start=_to_datetime(entry.window_start),
                cooldown_until=_to_datetime(entry.cooldown_until),
                trial_available=trial_available,
                trial_in_flight=entry.trial_started_at is not None,
                times_opened=entry.times_opened,
            )

        return self._store.update(key, _status)

    def statuses(self) -> list[BreakerStatus]:
        return [self.status(key) for key in self._store.keys()]

    def cooldown_until(self, key: BreakerKey) -> Optional[datetime]:
        return self.status(key).cooldown_until

    def force_open(
        self,
        key: BreakerKey,
        cooldown: Optional[float] = None,
        config: Optional[BreakerConfig] = None,
    ) -> BreakerStatus:
        """Open the breaker regardless of its counters."""
        now = self.clock()

        def _open(entry: _BreakerEntry) -> None:
            cfg = self._config(entry, config)
            entry.state = BreakerState.OPEN
            entry.error_count = max(entry.error_count, cfg.errors)
            entry.window_start = entry.window_start or now
            entry.cooldown_until = now + (cfg.cooldown if cooldown is None else cooldown)
            entry.trial_started_at = None
            entry.times_opened += 1

        self._store.update(key, _open)
        status = self.status(key)
        logger.warning("breaker_forced_open", breaker=key.label())
        self._alert(BREAKER_OPEN, key, status=status, reason="forced")
        return status

    def force_close(self, key: BreakerKey) -> BreakerStatus:
        """Close the breaker and reset its counters."""

        def _close(entry: _BreakerEntry) -> bool:
            was_open = entry.state == BreakerState.OPEN
            entry.state = BreakerState.CLOSED
            entry.error_count = 0
            entry.window_start = None
            entry.cooldown_until = None
            entry.trial_started_at = None
            return was_open

        if self._store.update(key, _close):
            logger.info("breaker_forced_closed", breaker=key.label())
            self._alert(BREAKER_CLOSED, key, reason="forced")
        return self.status(key)

    def reset_all(self) -> int:
        """Forget every breaker. Returns how many were tracked."""
        count = len(self._store)
        self._store.clear()
        logger.info("breakers_reset", count=count)
        return count

    def _alert(
        self,
        event: str,
        key: BreakerKey,
        status: Optional[BreakerStatus] = None,
        **extra,
    ) -> None:
        if self.alerts is None:
            return
        payload: dict[str, Any] = {
            "agent_type": key.agent_type,
            "model_id": key.model_id,
            "tenant_id": key.tenant_id,
        }
        if status is not None:
            payload["error_count"] = status.error_count
            payload["threshold"] = status.threshold
            payload["cooldown_until"] = (
                status.cooldown_until.isoformat() if status.cooldown_until else None
            )
        payload.update(extra)
        self.alerts.notify(event, payload)
