"""Router workflow: classify the input once, dispatch exactly one route.

Classification priority:
    1. custom function (bypasses everything else)
    2. rules, in order: the first predicate that is true wins (no cost)
    3. LLM classifier: an AgentCall run through the executor, whose content
       names the route and optionally a confidence
    4. the default route

Low confidence, unknown route keys and classifier failures fall back to the
default route. With nothing resolvable and no default, RouterError is raised.

Usage:
    router = Router(
        "support",
        routes=[
            Route("billing", AgentCall("billing_agent", "gpt-4o-mini"), "Invoices and payments"),
            Route("technical", AgentCall("tech_agent", "claude-sonnet"), "Bugs and errors"),
            Route("default", AgentCall("general_agent", "gpt-4o-mini")),
        ],
        rules=[(lambda ticket: ticket.get("priority") == "urgent", "technical")],
        classifier=AgentCall("ticket_classifier", "gpt-4o-mini"),
        confidence_threshold=0.6,
    )
    execution = await router.run({"message": "I was charged twice"}, executor)
    execution.route.route_key   # "billing"
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional

from agent_runner.errors import RouterError, WorkflowError
from agent_runner.logging.structured import get_logger
from agent_runner.models import RouteDecision, WorkflowExecution
from agent_runner.workflow.base import (
    AgentCall,
    ExecutableUnit,
    RunContext,
    Workflow,
    WorkflowLimits,
    describe_failure,
)

logger = get_logger(__name__)

DEFAULT_ROUTE = "default"


@dataclass
class Route:
    """One route.

    Attributes:
        key: Route key returned by rules, the classifier or a custom function
        unit: What runs when this route is chosen
        description: Shown to the LLM classifier
        match: Shorthand rule; routes with a match are checked after ``rules``
    """

    key: str
    unit: ExecutableUnit
    description: str = ""
    match: Optional[Callable[[Any], bool]] = None


Rule = tuple[Callable[[Any], bool], str]


def parse_classification(content: Any) -> tuple[Optional[str], Optional[float]]:
    """Extract (route, confidence) from classifier output.

    Accepts a mapping with ``route`` and ``confidence``, JSON text of the
    same shape, or plain text naming the route.
    """
    if isinstance(content, str):
        text = content.strip()
        if text.startswith("{"):
            try:
                content = json.loads(text)
            except ValueError:
                pass
        if isinstance(content, str):
            words = text.split()
            route = re.sub(r"[^a-z0-9_\-]", "", words[0].lower()) if words else ""
            return route or None, None

    if isinstance(content, Mapping):
        route = content.get("route", content.get("route_key"))
        confidence = content.get("confidence")
        try:
            confidence = float(confidence) if confidence is not None else None
        except (TypeError, ValueError):
            confidence = None
        return (str(route).strip() if route is not None else None), confidence

    return None, None


class Router(Workflow):
    """Dispatches the input to one of several routes.

    Args:
        name: Workflow name
        routes: Available routes
        default: Key of the fallback route (a route keyed "default" if None)
        rules: Ordered (predicate, route_key) pairs
        classifier: AgentCall whose content names the route
        confidence_threshold: Classifier confidence below this uses the default
        custom: Function from input to route key, bypassing rules and classifier
        before_route: Transforms the input once the route is chosen
        timeout / max_cost: Checked before dispatching the chosen route
    """

    kind = "router"

    def __init__(
        self,
        name: str,
        routes: Iterable[Route],
        default: Optional[str] = None,
        rules: Iterable[Rule] = (),
        classifier: Optional[AgentCall] = None,
        confidence_threshold: Optional[float] = None,
        custom: Optional[Callable[[Any], Optional[str]]] = None,
        before_route: Optional[Callable[[Any, str], Any]] = None,
        timeout: Optional[float] = None,
        max_cost: Optional[float] = None,
    ):
        super().__init__(name, timeout=timeout, max_cost=max_cost)
        self.routes: dict[str, Route] = {}
        for route in routes:
            if route.key in self.routes:
                raise ValueError(f"Duplicate route {route.key!r} in {name!r}")
            self.routes[route.key] = route
        if default is not None and default not in self.routes:
            raise ValueError(f"Default route {default!r} is not declared in {name!r}")
        self.default = default if default is not None else (
            DEFAULT_ROUTE if DEFAULT_ROUTE in self.routes else None
        )
        self.rules: list[Rule] = list(rules) + [
            (route.match, route.key) for route in self.routes.values() if route.match
        ]
        self.classifier = classifier
        self.confidence_threshold = confidence_threshold
        self.custom = custom
        self.before_route = before_route

    def resolve(self, key: Optional[str]) -> Optional[str]:
        """Declared route key matching ``key`` (case-insensitive), or None."""
        if key is None:
            return None
        if key in self.routes:
            return key
        lowered = key.lower()
        for declared in self.routes:
            if declared.lower() == lowered:
                return declared
        return None

    def classifier_payload(self, input: Any) -> dict[str, Any]:
        """Payload handed to the classifier's prompt builder."""
        return {
            "input": input,
            "routes": {
                key: route.description
                for key, route in self.routes.items()
                if key != self.default or route.description
            },
        }

    async def classify(self, input: Any, context: RunContext) -> RouteDecision:
        """Pick a route. Raises RouterError if nothing resolves and there is no default."""
        if self.custom is not None:
            try:
                key = self.resolve(self.custom(input))
            except Exception as e:
                logger.warning("custom_router_failed", error=str(e))
                return self._fallback("custom", f"custom router failed: {e}")
            if key is None:
                return self._fallback("custom", "custom router returned an unknown route")
            return RouteDecision(route_key=key, method="custom")

        for predicate, route_key in self.rules:
            try:
                matched = bool(predicate(input))
            except Exception as e:
                logger.warning("route_rule_failed", route=route_key, error=str(e))
                continue
            if matched:
                key = self.resolve(route_key)
                if key is None:
                    return self._fallback(
                        "rule", f"rule points at undeclared route {route_key!r}"
                    )
                return RouteDecision(route_key=key, method="rule")

        if self.classifier is None:
            return self._fallback("rule", "no rule matched")

        try:
            result = await self.classifier.run(self.classifier_payload(input), context)
        except Exception as e:
            classifier_result, kind, _ = describe_failure(e)
            logger.warning("classifier_failed", error_kind=kind)
            return self._fallback(
                "llm", f"classifier failed: {kind}", classifier_result=classifier_result
            )

        raw_key, confidence = parse_classification(result.content)
        key = self.resolve(raw_key)
        if key is None:
            return self._fallback(
                "llm",
                f"classifier returned unknown route {raw_key!r}",
                confidence=confidence,
                classifier_result=result,
            )
        if (
            self.confidence_threshold is not None
            and confidence is not None
            and confidence < self.confidence_threshold
        ):
            return self._fallback(
                "llm",
                f"confidence {confidence:.2f} below {self.confidence_threshold:.2f}",
                confidence=confidence,
                classifier_result=result,
            )
        return RouteDecision(
            route_key=key,
            method="llm",
            confidence=confidence,
            classifier_result=result,
        )

    def _fallback(self, method: str, reason: str, **fields) -> RouteDecision:
        if self.default is None:
            raise RouterError(f"[{self.name}] no route resolved ({reason}) and no default route")
        logger.info("route_default_used", reason=reason)
        return RouteDecision(
            route_key=self.default,
            method=method,
            used_default=True,
            reason=reason,
            **fields,
        )

    async def _run(
        self,
        input: Any,
        context: RunContext,
        execution: WorkflowExecution,
        limits: WorkflowLimits,
    ) -> None:
        decision = await self.classify(input, context)
        execution.route = decision
        limits.add(decision.classifier_result)
        logger.info(
            "route_chosen",
            route=decision.route_key,
            method=decision.method,
            confidence=decision.confidence,
        )

        abort_error = limits.exceeded()
        if abort_error is None and context.cancel_token.cancelled:
            abort_error = WorkflowError(
                self.name, f"Cancelled: {context.cancel_token.reason or 'cancelled'}"
            )
        if abort_error is not None:
            self._fail(execution, abort_error, unit=decision.route_key)
            return

        route = self.routes[decision.route_key]
        try:
            payload = (
                self.before_route(input, decision.route_key)
                if self.before_route
                else input
            )
            result = await route.unit.run(payload, context)
        except Exception as e:
            failed_result, _, _ = describe_failure(e)
            execution.routed_result = failed_result
            self._fail(execution, e, unit=decision.route_key)
            return

        execution.routed_result = result
        execution.content = result.content
        execution.status = "success"
