"""Budget ledger for API costs.

Tracks spending per scope (global, agent, tenant) and period (daily,
monthly) and enforces configured limits before any provider call is made.

Usage:
    ledger = BudgetLedger(BudgetConfig(
        enforcement=Enforcement.HARD,
        global_daily=10.0,
        per_agent_daily={"summarizer": 2.0},
    ))

    scopes = ledger.scopes_for("summarizer", tenant_id="acme")

    # Check before calling
    ledger.check_or_raise(scopes, projected_cost=0.01)

    # Record after calling
    ledger.commit(scopes, cost=0.008, tokens=1200)
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterable, Optional

from pydantic import BaseModel

from agent_runner.alerts import (
    BUDGET_HARD_CAP,
    BUDGET_SOFT_CAP,
    TOKEN_HARD_CAP,
    TOKEN_SOFT_CAP,
    AlertManager,
)
from agent_runner.errors import BudgetExceededError
from agent_runner.models import utcnow
from agent_runner.resilience.store import KeyedStateStore

logger = logging.getLogger(__name__)


class Enforcement(str, Enum):
    NONE = "none"  # track spend only
    SOFT = "soft"  # allow, but alert when a limit is passed
    HARD = "hard"  # deny calls that would pass a limit


class Period(str, Enum):
    DAILY = "daily"
    MONTHLY = "monthly"

    def bucket(self, now: datetime) -> str:
        """Period bucket for a wall-clock time, in UTC."""
        now = now.astimezone(timezone.utc) if now.tzinfo else now
        if self is Period.DAILY:
            return now.strftime("%Y-%m-%d")
        return now.strftime("%Y-%m")


ALL_PERIODS = (Period.DAILY, Period.MONTHLY)


@dataclass(frozen=True)
class BudgetScope:
    """A spend scope: global, one agent type, or one tenant."""

    kind: str
    name: Optional[str] = None

    @property
    def label(self) -> str:
        return self.kind if self.name is None else f"{self.kind}:{self.name}"

    @classmethod
    def global_scope(cls) -> "BudgetScope":
        return cls("global")

    @classmethod
    def agent(cls, agent_type: str) -> "BudgetScope":
        return cls("agent", agent_type)

    @classmethod
    def tenant(cls, tenant_id: str) -> "BudgetScope":
        return cls("tenant", tenant_id)

    @classmethod
    def parse(cls, label: str) -> "BudgetScope":
        """Inverse of ``label``: "global", "agent:<name>" or "tenant:<id>"."""
        if label == "global":
            return cls.global_scope()
        kind, sep, name = label.partition(":")
        if not sep or kind not in ("agent", "tenant") or not name:
            raise ValueError(f"Invalid budget scope: {label!r}")
        return cls(kind, name)


@dataclass
class BudgetConfig:
    """Configuration for budget enforcement.

    Attributes:
        enforcement: none, soft or hard
        global_daily/global_monthly: Limits across all agents (USD)
        per_agent_daily/per_agent_monthly: Limits per agent type (USD)
        per_tenant_daily/per_tenant_monthly: Limits per tenant (USD)
        per_request_limit: Maximum projected cost of a single request (USD)
        soft_cap_percentage: Share of a limit (0-100) that triggers a warning
        global_daily_tokens/global_monthly_tokens: Token limits across all agents
    """

    enforcement: Enforcement = Enforcement.SOFT
    global_daily: Optional[float] = None
    global_monthly: Optional[float] = None
    per_agent_daily: dict[str, float] = field(default_factory=dict)
    per_agent_monthly: dict[str, float] = field(default_factory=dict)
    per_tenant_daily: dict[str, float] = field(default_factory=dict)
    per_tenant_monthly: dict[str, float] = field(default_factory=dict)
    per_request_limit: Optional[float] = None
    soft_cap_percentage: float = 80.0
    global_daily_tokens: Optional[int] = None
    global_monthly_tokens: Optional[int] = None

    def __post_init__(self):
        self.enforcement = Enforcement(self.enforcement)
        if not 0 < self.soft_cap_percentage <= 100:
            raise ValueError("soft_cap_percentage must be in (0, 100]")
        for name in ("global_daily_tokens", "global_monthly_tokens"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} must be >= 0")

    def limit_for(self, scope: BudgetScope, period: Period) -> Optional[float]:
        daily = period is Period.DAILY
        if scope.kind == "global":
            return self.global_daily if daily else self.global_monthly
        if scope.kind == "agent":
            limits = self.per_agent_daily if daily else self.per_agent_monthly
            return limits.get(scope.name)
        if scope.kind == "tenant":
            limits = self.per_tenant_daily if daily else self.per_tenant_monthly
            return limits.get(scope.name)
        return None

    def token_limit_for(self, scope: BudgetScope, period: Period) -> Optional[int]:
        """Token limit for a scope. Only the global scope has token limits."""
        if scope.kind != "global":
            return None
        if period is Period.DAILY:
            return self.global_daily_tokens
        return self.global_monthly_tokens

    def configured_scopes(self) -> list[BudgetScope]:
        scopes = [BudgetScope.global_scope()]
        for name in {**self.per_agent_daily, **self.per_agent_monthly}:
            scopes.append(BudgetScope.agent(name))
        for name in {**self.per_tenant_daily, **self.per_tenant_monthly}:
            scopes.append(BudgetScope.tenant(name))
        return scopes

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "BudgetConfig":
        data = dict(data or {})
        known = set(cls.__dataclass_fields__)
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown budget settings: {sorted(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class LedgerEntry:
    """Counters for one (scope, period, bucket)."""

    cumulative_cost: float = 0.0
    cumulative_tokens: int = 0
    cumulative_executions: int = 0
    overage_cost: float = 0.0


@dataclass(frozen=True)
class BudgetCheck:
    """Outcome of a budget pre-check. Truthy when the call may proceed."""

    allowed: bool
    reason: Optional[str] = None
    scope: Optional[str] = None
    period: Optional[str] = None
    limit: Optional[float] = None
    current: float = 0.0
    projected_cost: float = 0.0
    unit: str = "usd"

    def __bool__(self) -> bool:
        return self.allowed

    def to_error(self) -> BudgetExceededError:
        return BudgetExceededError(
            scope=self.scope or "global",
            period=self.period or "request",
            limit=self.limit or 0.0,
            current=self.current,
            projected_cost=self.projected_cost,
            unit=self.unit,
        )


class BudgetStatus(BaseModel):
    """Spend against one (scope, period) in the current bucket."""

    scope: str
    period: str
    bucket: str
    limit: Optional[float] = None
    current: float = 0.0
    remaining: Optional[float] = None
    percent_used: Optional[float] = None
    tokens: int = 0
    token_limit: Optional[int] = None
    tokens_remaining: Optional[int] = None
    executions: int = 0
    overage_cost: float = 0.0
    enforcement: str


# Model pricing (per 1M tokens, input/output)
MODEL_PRICING = {
    # Anthropic
    "claude-opus": {"input": 15.0, "output": 75.0},
    "claude-sonnet": {"input": 3.0, "output": 15.0},
    "claude-haiku": {"input": 0.25, "output": 1.25},
    # OpenAI
    "gpt-4o": {"input": 2.5, "output": 10.0},
    "gpt-4o-mini": {"input": 0.15, "output": 0.6},
    "gpt-4-turbo": {"input": 10.0, "output": 30.0},
    # Google
    "gemini-pro": {"input": 0.5, "output": 1.5},
    "gemini-flash": {"input": 0.075, "output": 0.3},
}

# Unknown models are priced conservatively
FALLBACK_PRICING = {"input": 15.0, "output": 75.0}


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Estimate cost in USD for a model call.

    Model ids with a version suffix ("claude-sonnet-4-20250514") match the
    longest known prefix.
    """
    pricing = MODEL_PRICING.get(model)
    if pricing is None:
        prefixes = [name for name in MODEL_PRICING if model.startswith(name)]
        if prefixes:
            pricing = MODEL_PRICING[max(prefixes, key=len)]
        else:
            pricing = FALLBACK_PRICING
            logger.warning(f"Unknown model {model}, using conservative pricing")

    input_cost = (input_tokens / 1_000_000) * pricing["input"]
    output_cost = (output_tokens / 1_000_000) * pricing["output"]
    return input_cost + output_cost


LedgerKey = tuple[str, str, str]  # (scope label, period, bucket)


class BudgetLedger:
    """Cumulative spend counters with limit enforcement.

    Entries live in a KeyedStateStore; every commit is one locked
    read-modify-write per key, so concurrent branches never lose spend.
    Period buckets come from the wall clock: a new day or month starts a
    fresh entry.
    """

    def __init__(
        self,
        config: Optional[BudgetConfig] = None,
        alerts: Optional[AlertManager] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or BudgetConfig()
        self.alerts = alerts
        self.clock = clock
        self._store: KeyedStateStore[LedgerKey, LedgerEntry] = KeyedStateStore(
            LedgerEntry
        )
        self._alerted: set[tuple[str, str, str, str]] = set()
        self._alert_lock = threading.Lock()

    @property
    def enforcement(self) -> Enforcement:
        return self.config.enforcement

    def scopes_for(
        self,
        agent_type: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> list[BudgetScope]:
        """Scopes an execution is charged against."""
        scopes = [BudgetScope.global_scope()]
        if agent_type:
            scopes.append(BudgetScope.agent(agent_type))
        if tenant_id:
            scopes.append(BudgetScope.tenant(tenant_id))
        return scopes

    def _key(self, scope: BudgetScope, period: Period, now: datetime) -> LedgerKey:
        return (scope.label, period.value, period.bucket(now))

    def _snapshot(self, key: LedgerKey) -> LedgerEntry:
        entry = self._store.get(key)
        if entry is None:
            return LedgerEntry()
        return self._store.update(
            key,
            lambda e: LedgerEntry(
                e.cumulative_cost, e.cumulative_tokens, e.cumulative_executions, e.overage_cost
            ),
        )

    def estimate_cost(self, model: str, input_tokens: int, output_tokens: int) -> float:
        return estimate_cost(model, input_tokens, output_tokens)

    # ------------------------------------------------------------------
    # Enforcement
    # ------------------------------------------------------------------

    def check(
        self,
        scopes: Iterable[BudgetScope],
        projected_cost: float = 0.0,
        periods: Iterable[Period] = ALL_PERIODS,
    ) -> BudgetCheck:
        """Compare cumulative + projected spend with every applicable limit.

        Hard enforcement denies when a projection passes a limit or the
        limit was already reached. Soft enforcement allows and alerts.
        """
        if self.enforcement is Enforcement.NONE:
            return BudgetCheck(allowed=True, projected_cost=projected_cost)

        hard = self.enforcement is Enforcement.HARD
        limit = self.config.per_request_limit
        if limit is not None and projected_cost > limit:
            reason = (
                f"Request cost ${projected_cost:.4f} exceeds per-request limit ${limit:.2f}"
            )
            if hard:
                logger.warning(f"Budget denied: {reason}")
                return BudgetCheck(
                    allowed=False,
                    reason=reason,
                    scope="request",
                    period="request",
                    limit=limit,
                    current=projected_cost,
                    projected_cost=projected_cost,
                )
            logger.warning(f"Budget warning: {reason}")

        now = self.clock()
        periods = list(periods)
        for scope in scopes:
            for period in periods:
                key = self._key(scope, period, now)
                denied = self._check_tokens(scope, period, key)
                if denied is not None:
                    return denied

                limit = self.config.limit_for(scope, period)
                if limit is None:
                    continue

                current = self._snapshot(key).cumulative_cost
                projected = current + projected_cost
                exceeded = current >= limit or projected > limit

                if exceeded:
                    self._alert_once(
                        BUDGET_HARD_CAP,
                        key,
                        scope=scope.label,
                        period=period.value,
                        limit=limit,
                        current=current,
                        projected=projected,
                        blocked=hard,
                    )
                    if hard:
                        reason = (
                            f"{period.value.capitalize()} limit exceeded for {scope.label}: "
                            f"${current:.4f} + ${projected_cost:.4f} > ${limit:.2f}"
                        )
                        logger.warning(f"Budget denied: {reason}")
                        return BudgetCheck(
                            allowed=False,
                            reason=reason,
                            scope=scope.label,
                            period=period.value,
                            limit=limit,
                            current=current,
                            projected_cost=projected_cost,
                        )
                    logger.warning(
                        f"Over {period.value} limit for {scope.label}: "
                        f"${projected:.4f} / ${limit:.2f}"
                    )
                elif projected >= limit * self.config.soft_cap_percentage / 100:
                    self._alert_once(
                        BUDGET_SOFT_CAP,
                        key,
                        scope=scope.label,
                        period=period.value,
                        limit=limit,
                        current=current,
                        projected=projected,
                        percentage=self.config.soft_cap_percentage,
                    )

        return BudgetCheck(allowed=True, projected_cost=projected_cost)

    def _check_tokens(
        self, scope: BudgetScope, period: Period, key: LedgerKey
    ) -> Optional[BudgetCheck]:
        """Denial once a token limit is used up under hard enforcement.

        There is no projection: calls are allowed until the limit is reached.
        """
        limit = self.config.token_limit_for(scope, period)
        if limit is None:
            return None
        current = self._snapshot(key).cumulative_tokens
        if current < limit:
            return None

        hard = self.enforcement is Enforcement.HARD
        self._alert_once(
            TOKEN_HARD_CAP if hard else TOKEN_SOFT_CAP,
            key,
            scope=scope.label,
            period=period.value,
            limit=limit,
            current=current,
            blocked=hard,
        )
        if not hard:
            logger.warning(f"Over {period.value} token limit: {current} / {limit}")
            return None

        reason = (
            f"{period.value.capitalize()} token limit reached for {scope.label}: "
            f"{current} >= {limit}"
        )
        logger.warning(f"Budget denied: {reason}")
        return BudgetCheck(
            allowed=False,
            reason=reason,
            scope=scope.label,
            period=period.value,
            limit=limit,
            current=current,
            unit="tokens",
        )

    def check_or_raise(
        self,
        scopes: Iterable[BudgetScope],
        projected_cost: float = 0.0,
        periods: Iterable[Period] = ALL_PERIODS,
    ) -> BudgetCheck:
        """Check budget and raise if a hard limit denies the call.

        Raises:
            BudgetExceededError: If any hard limit would be exceeded
        """
        result = self.check(scopes, projected_cost, periods)
        if not result.allowed:
            raise result.to_error()
        return result

    def commit(
        self,
        scopes: Iterable[BudgetScope],
        cost: float,
        tokens: int = 0,
        periods: Iterable[Period] = ALL_PERIODS,
        executions: int = 1,
    ) -> None:
        """Record realized spend against every scope and period.

        Under hard enforcement a single commit never moves cumulative_cost
        past the limit; the excess is recorded as overage_cost.
        """
        now = self.clock()
        hard = self.enforcement is Enforcement.HARD
        periods = list(periods)

        for scope in scopes:
            for period in periods:
                limit = self.config.limit_for(scope, period)
                key = self._key(scope, period, now)

                def _apply(entry: LedgerEntry, limit=limit) -> tuple[float, int]:
                    entry.cumulative_tokens += tokens
                    entry.cumulative_executions += executions
                    applied = cost
                    if hard and limit is not None:
                        room = max(limit - entry.cumulative_cost, 0.0)
                        applied = min(cost, room)
                        entry.overage_cost += cost - applied
                    entry.cumulative_cost += applied
                    return entry.cumulative_cost, entry.cumulative_tokens

                cumulative, total_tokens = self._store.update(key, _apply)

                if self.enforcement is Enforcement.NONE:
                    continue
                token_limit = self.config.token_limit_for(scope, period)
                if token_limit is not None and total_tokens >= token_limit:
                    self._alert_once(
                        TOKEN_HARD_CAP if hard else TOKEN_SOFT_CAP,
                        key,
                        scope=scope.label,
                        period=period.value,
                        limit=token_limit,
                        current=total_tokens,
                        blocked=hard,
                    )
                if limit is None:
                    continue
                if cumulative >= limit:
                    self._alert_once(
                        BUDGET_HARD_CAP,
                        key,
                        scope=scope.label,
                        period=period.value,
                        limit=limit,
                        current=cumulative,
                        projected=cumulative,
                        blocked=hard,
                    )
                elif cumulative >= limit * self.config.soft_cap_percentage / 100:
                    self._alert_once(
                        BUDGET_SOFT_CAP,
                        key,
                        scope=scope.label,
                        period=period.value,
                        limit=limit,
                        current=cumulative,
                        projected=cumulative,
                        percentage=self.config.soft_cap_percentage,
                    )

        logger.debug(f"Recorded spend: ${cost:.6f} ({tokens} tokens)")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def current_spend(self, scope: BudgetScope, period: Period = Period.DAILY) -> float:
        return self._snapshot(self._key(scope, Period(period), self.clock())).cumulative_cost

    def remaining(self, scope: BudgetScope, period: Period = Period.DAILY) -> Optional[float]:
        """Budget left in the current bucket, or None if the scope has no limit."""
        period = Period(period)
        limit = self.config.limit_for(scope, period)
        if limit is None:
            return None
        return max(limit - self.current_spend(scope, period), 0.0)

    def remaining_tokens(self, period: Period = Period.DAILY) -> Optional[int]:
        """Global tokens left in the current bucket, or None without a token limit."""
        period = Period(period)
        scope = BudgetScope.global_scope()
        limit = self.config.token_limit_for(scope, period)
        if limit is None:
            return None
        used = self._snapshot(self._key(scope, period, self.clock())).cumulative_tokens
        return max(limit - used, 0)

    def entry(self, scope: BudgetScope, period: Period = Period.DAILY) -> LedgerEntry:
        return self._snapshot(self._key(scope, Period(period), self.clock()))

    def status(self, scopes: Optional[Iterable[BudgetScope]] = None) -> list[BudgetStatus]:
        """Spend for the given scopes, or every configured and tracked scope."""
        now = self.clock()
        if scopes is None:
            seen = {s.label: s for s in self.config.configured_scopes()}
            for label, _, _ in self._store.keys():
                seen.setdefault(label, BudgetScope.parse(label))
            scopes = list(seen.values())

        statuses = []
        for scope in scopes:
            for period in ALL_PERIODS:
                key = self._key(scope, period, now)
                entry = self._snapshot(key)
                limit = self.config.limit_for(scope, period)
                token_limit = self.config.token_limit_for(scope, period)
                statuses.append(
                    BudgetStatus(
                        scope=scope.label,
                        period=period.value,
                        bucket=key[2],
                        limit=limit,
                        current=entry.cumulative_cost,
                        remaining=(
                            max(limit - entry.cumulative_cost, 0.0)
                            if limit is not None else None
                        ),
                        percent_used=(
                            round(entry.cumulative_cost / limit * 100, 2)
                            if limit else None
                        ),
                        tokens=entry.cumulative_tokens,
                        token_limit=token_limit,
                        tokens_remaining=(
                            max(token_limit - entry.cumulative_tokens, 0)
                            if token_limit is not None else None
                        ),
                        executions=entry.cumulative_executions,
                        overage_cost=entry.overage_cost,
                        enforcement=self.enforcement.value,
                    )
                )
        return statuses

    def reset(self) -> None:
        """Forget all recorded spend and sent alerts."""
        self._store.clear()
        with self._alert_lock:
            self._alerted.clear()
        logger.info("Budget ledger reset")

    def _alert_once(self, event: str, key: LedgerKey, **payload) -> None:
        marker = (*key, event)
        with self._alert_lock:
            if marker in self._alerted:
                return
            self._alerted.add(marker)

        if self.alerts is not None:
            self.alerts.notify(event, {"bucket": key[2], **payload})
        else:
            logger.warning(f"Budget alert {event}: {payload}")
