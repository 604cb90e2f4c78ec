"""Administrative API routes for circuit breakers and budgets.

Provides endpoints for:
- GET  /admin/breakers - Status of every tracked breaker
- GET  /admin/breakers/{agent_type}/{model_id} - Status of one breaker
- POST /admin/breakers/{agent_type}/{model_id}/open - Force a breaker open
- POST /admin/breakers/{agent_type}/{model_id}/close - Force a breaker closed
- POST /admin/breakers/reset - Forget every breaker
- GET  /admin/budgets - Spend per scope and period
- GET  /admin/budgets/remaining - Remaining budget for one scope

Breaker endpoints accept ``tenant_id`` as a query parameter.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from agent_runner.errors import AgentRunnerError
from agent_runner.resilience.budget import BudgetStatus
from agent_runner.resilience.circuit_breaker import BreakerStatus
from agent_runner.runtime import AgentRuntime

logger = logging.getLogger(__name__)


class ForceOpenRequest(BaseModel):
    cooldown: Optional[float] = None


class RemainingBudget(BaseModel):
    scope: str
    period: str
    remaining: Optional[float] = None


def create_error_response(
    code: str,
    message: str,
    details: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Create standardized error response structure."""
    error = {
        "code": code,
        "message": message,
    }
    if details:
        error["details"] = details
    return {"error": error}


def create_router(runtime: AgentRuntime) -> APIRouter:
    """Admin routes bound to ``runtime``."""
    router = APIRouter(prefix="/admin", tags=["admin"])

    @router.get("/breakers", response_model=list[BreakerStatus])
    async def list_breakers() -> list[BreakerStatus]:
        return runtime.breaker_statuses()

    @router.post("/breakers/reset")
    async def reset_breakers() -> dict:
        return {"reset": runtime.reset_breakers()}

    @router.get("/breakers/{agent_type}/{model_id}", response_model=BreakerStatus)
    async def get_breaker(
        agent_type: str,
        model_id: str,
        tenant_id: Optional[str] = Query(default=None),
    ) -> BreakerStatus:
        return runtime.breaker_status(agent_type, model_id, tenant_id)

    @router.post("/breakers/{agent_type}/{model_id}/open", response_model=BreakerStatus)
    async def open_breaker(
        agent_type: str,
        model_id: str,
        body: Optional[ForceOpenRequest] = None,
        tenant_id: Optional[str] = Query(default=None),
    ) -> BreakerStatus:
        cooldown = body.cooldown if body else None
        return runtime.force_open(agent_type, model_id, tenant_id, cooldown=cooldown)

    @router.post("/breakers/{agent_type}/{model_id}/close", response_model=BreakerStatus)
    async def close_breaker(
        agent_type: str,
        model_id: str,
        tenant_id: Optional[str] = Query(default=None),
    ) -> BreakerStatus:
        return runtime.force_close(agent_type, model_id, tenant_id)

    @router.get("/budgets", response_model=list[BudgetStatus])
    async def list_budgets(scope: Optional[str] = Query(default=None)) -> list[BudgetStatus]:
        return runtime.budget_status(scope)

    @router.get("/budgets/remaining", response_model=RemainingBudget)
    async def remaining_budget(
        scope: str = Query(default="global"),
        period: str = Query(default="daily"),
    ) -> RemainingBudget:
        return RemainingBudget(
            scope=scope,
            period=period,
            remaining=runtime.budget_remaining(scope, period),
        )

    return router


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    """Invalid scope labels, periods or cooldowns."""
    logger.warning("Admin API bad request: %s (path=%s)", exc, request.url.path)
    return JSONResponse(
        status_code=400,
        content=create_error_response("BAD_REQUEST", str(exc)),
    )


async def agent_runner_error_handler(request: Request, exc: AgentRunnerError) -> JSONResponse:
    logger.warning(
        "Admin API error: %s (code=%s, path=%s)",
        exc.message,
        exc.error_code,
        request.url.path,
    )
    data = exc.to_dict()
    return JSONResponse(
        status_code=409,
        content=create_error_response(data["code"], data["message"], data.get("details")),
    )


def create_app(runtime: AgentRuntime) -> FastAPI:
    """Standalone FastAPI app exposing the admin routes."""
    app = FastAPI(title="agent-runner admin")
    app.include_router(create_router(runtime))
    app.add_exception_handler(ValueError, value_error_handler)
    app.add_exception_handler(AgentRunnerError, agent_runner_error_handler)
    return app
