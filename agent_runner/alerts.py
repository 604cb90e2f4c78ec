"""Alert delivery for budget and circuit breaker events.

Alerts are fire-and-forget: a failing handler is logged and ignored so it
never affects the execution that triggered it.

Usage:
    alerts = AlertManager(handler=lambda event, payload: send_to_slack(payload))
    alerts.notify("breaker_open", {"agent_type": "summarizer", "model_id": "gpt-4o"})
"""

from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from agent_runner.logging.structured import get_logger

logger = get_logger(__name__)

BUDGET_SOFT_CAP = "budget_soft_cap"
BUDGET_HARD_CAP = "budget_hard_cap"
BREAKER_OPEN = "breaker_open"
BREAKER_CLOSED = "breaker_closed"
TOKEN_SOFT_CAP = "token_soft_cap"
TOKEN_HARD_CAP = "token_hard_cap"

ALERT_EVENTS = (
    BUDGET_SOFT_CAP,
    BUDGET_HARD_CAP,
    BREAKER_OPEN,
    BREAKER_CLOSED,
    TOKEN_SOFT_CAP,
    TOKEN_HARD_CAP,
)

AlertHandler = Callable[[str, dict[str, Any]], None]


class AlertManager:
    """Dispatches named alert events to a handler.

    Args:
        handler: Called with (event, payload). Exceptions are swallowed.
        events: Events to deliver. None delivers every known event.
        keep_recent: How many recent alerts to keep for inspection.
    """

    def __init__(
        self,
        handler: Optional[AlertHandler] = None,
        events: Optional[Iterable[str]] = None,
        keep_recent: int = 50,
    ):
        self.handler = handler
        self.events = set(events) if events is not None else set(ALERT_EVENTS)
        self._recent: deque = deque(maxlen=keep_recent)

    def enabled(self, event: str) -> bool:
        return event in self.events

    def notify(self, event: str, payload: dict[str, Any]) -> bool:
        """Deliver an alert. Returns True if the handler accepted it."""
        if not self.enabled(event):
            return False

        record = {
            "event": event,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **payload,
        }
        self._recent.append(record)
        logger.info("alert_emitted", alert=event, **payload)

        if self.handler is None:
            return False

        try:
            self.handler(event, record)
        except Exception as e:
            logger.warning("alert_delivery_failed", alert=event, error=str(e))
            return False
        return True

    def recent(self, event: Optional[str] = None) -> list[dict[str, Any]]:
        """Recently emitted alerts, oldest first."""
        if event is None:
            return list(self._recent)
        return [a for a in self._recent if a["event"] == event]

    def clear(self) -> None:
        self._recent.clear()
