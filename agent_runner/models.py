"""Pydantic models for execution results and workflow data structures."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class TokenUsage(BaseModel):
    """Token counts from a provider call."""

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


class AttemptRecord(BaseModel):
    """One provider call made on behalf of an execution. Never mutated."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_id: str
    attempt_index: int = Field(ge=0)
    started_at: datetime
    duration_s: float = 0.0
    success: bool
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    retryable: bool = False
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    late: bool = False

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class ExecutionResult(BaseModel):
    """Outcome of one resilient call executor invocation."""

    execution_id: str = Field(default_factory=new_id)
    agent_type: str
    tenant_id: Optional[str] = None
    status: Literal["success", "error"]
    primary_model_id: str
    chosen_model_id: Optional[str] = None
    used_fallback: bool = False
    attempts: list[AttemptRecord] = Field(default_factory=list)
    skipped_models: list[str] = Field(default_factory=list)
    content: Any = None
    input_tokens: int = 0
    output_tokens: int = 0
    total_cost: float = 0.0
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    duration_s: float = 0.0
    workflow: Optional[WorkflowExecution] = None

    @property
    def success(self) -> bool:
        return self.status == "success"

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def attempts_count(self) -> int:
        return len(self.attempts)

    @property
    def failed_attempts(self) -> list[AttemptRecord]:
        return [a for a in self.attempts if not a.success]

    @property
    def tokens(self) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens, output_tokens=self.output_tokens
        )


class StepResult(BaseModel):
    """Result of one pipeline step."""

    name: str
    result: Optional[ExecutionResult] = None
    required: bool = True
    skipped: bool = False
    failed: bool = False
    skip_reason: Optional[str] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return not self.skipped and not self.failed and self.result is not None


class BranchResult(BaseModel):
    """Result of one parallel branch."""

    name: str
    result: Optional[ExecutionResult] = None
    required: bool = True
    skipped: bool = False
    failed: bool = False
    cancelled: bool = False
    skip_reason: Optional[str] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return (
            not self.skipped
            and not self.failed
            and not self.cancelled
            and self.result is not None
        )


class RouteDecision(BaseModel):
    """How a router picked its route."""

    route_key: str
    method: Literal["rule", "llm", "custom"]
    confidence: Optional[float] = None
    classifier_result: Optional[ExecutionResult] = None
    used_default: bool = False
    reason: Optional[str] = None


class WorkflowExecution(BaseModel):
    """Record of one pipeline, parallel or router run."""

    workflow_id: str = Field(default_factory=new_id)
    name: str
    kind: Literal["pipeline", "parallel", "router"]
    status: Literal["running", "success", "partial", "error"] = "running"
    tenant_id: Optional[str] = None
    steps: list[StepResult] = Field(default_factory=list)
    branches: dict[str, BranchResult] = Field(default_factory=dict)
    route: Optional[RouteDecision] = None
    routed_result: Optional[ExecutionResult] = None
    content: Any = None
    total_cost: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    duration_s: float = 0.0
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    failed_unit: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == "success"

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def step(self, name: str) -> Optional[StepResult]:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def child_results(self) -> list[ExecutionResult]:
        """All execution results produced by this workflow, classifier included."""
        results: list[ExecutionResult] = []
        for step in self.steps:
            if step.result is not None:
                results.append(step.result)
        for branch in self.branches.values():
            if branch.result is not None:
                results.append(branch.result)
        if self.route is not None and self.route.classifier_result is not None:
            results.append(self.route.classifier_result)
        if self.routed_result is not None:
            results.append(self.routed_result)
        return results

    def raise_for_status(self) -> None:
        """Raise WorkflowError if the workflow finished with status error."""
        if self.status != "error":
            return

        from agent_runner.errors import WorkflowError

        raise WorkflowError(
            self.name,
            self.error_message or "Workflow failed",
            unit=self.failed_unit,
        )


ExecutionResult.model_rebuild()
StepResult.model_rebuild()
BranchResult.model_rebuild()
RouteDecision.model_rebuild()
