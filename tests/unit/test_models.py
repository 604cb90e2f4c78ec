"""Tests for result models, errors and cancellation tokens."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from agent_runner.errors import (
    BudgetExceededError,
    CircuitOpenError,
    ExhaustedFallbacksError,
    WorkflowCostExceededError,
    WorkflowError,
    error_kind,
)
from agent_runner.models import (
    AttemptRecord,
    BranchResult,
    ExecutionResult,
    RouteDecision,
    StepResult,
    WorkflowExecution,
)
from agent_runner.providers.base import CancellationToken, ProviderError


def attempt(**kwargs):
    data = {
        "model_id": "gpt-4o",
        "attempt_index": 0,
        "started_at": datetime.now(timezone.utc),
        "success": True,
    }
    data.update(kwargs)
    return AttemptRecord(**data)


class TestAttemptRecord:
    def test_is_immutable(self):
        record = attempt()
        with pytest.raises(ValidationError):
            record.success = False

    def test_rejects_negative_index(self):
        with pytest.raises(ValidationError):
            attempt(attempt_index=-1)

    def test_total_tokens(self):
        assert attempt(input_tokens=3, output_tokens=4).total_tokens == 7


class TestExecutionResult:
    def test_properties(self):
        result = ExecutionResult(
            agent_type="summarizer",
            status="success",
            primary_model_id="gpt-4o",
            chosen_model_id="gpt-4o-mini",
            used_fallback=True,
            attempts=[
                attempt(success=False, error_kind="rate_limit"),
                attempt(model_id="gpt-4o-mini"),
            ],
            input_tokens=10,
            output_tokens=5,
        )

        assert result.success
        assert result.attempts_count == 2
        assert len(result.failed_attempts) == 1
        assert result.total_tokens == 15
        assert result.tokens.total == 15

    def test_status_is_restricted(self):
        with pytest.raises(ValidationError):
            ExecutionResult(agent_type="a", status="maybe", primary_model_id="m")


class TestWorkflowExecution:
    def test_child_results_include_classifier(self):
        classifier = ExecutionResult(agent_type="c", status="success", primary_model_id="m")
        routed = ExecutionResult(agent_type="r", status="success", primary_model_id="m")
        execution = WorkflowExecution(
            name="support",
            kind="router",
            route=RouteDecision(route_key="billing", method="llm", classifier_result=classifier),
            routed_result=routed,
        )
        assert execution.child_results() == [classifier, routed]

    def test_step_lookup(self):
        execution = WorkflowExecution(
            name="doc",
            kind="pipeline",
            steps=[StepResult(name="a", skipped=True), StepResult(name="b", failed=True)],
        )
        assert execution.step("b").failed
        assert execution.step("c") is None
        assert not execution.step("a").succeeded

    def test_raise_for_status(self):
        execution = WorkflowExecution(
            name="doc",
            kind="pipeline",
            status="error",
            error_message="boom",
            failed_unit="extract",
        )
        with pytest.raises(WorkflowError) as exc_info:
            execution.raise_for_status()
        assert str(exc_info.value) == "[doc.extract] boom"

        WorkflowExecution(name="doc", kind="pipeline", status="partial").raise_for_status()

    def test_cancelled_branch_is_not_succeeded(self):
        result = ExecutionResult(agent_type="a", status="success", primary_model_id="m")
        assert BranchResult(name="a", result=result).succeeded
        assert not BranchResult(name="a", result=result, cancelled=True).succeeded


class TestErrors:
    def test_budget_error_to_dict(self):
        error = BudgetExceededError(
            "global", "daily", limit=10.0, current=9.999, projected_cost=0.01
        )
        data = error.to_dict()
        assert data["code"] == "BUDGET_EXCEEDED"
        assert data["retryable"] is False
        assert data["details"]["scope"] == "global"
        assert data["details"]["remaining"] == pytest.approx(0.001)

    def test_circuit_open_is_retryable_later(self):
        until = datetime(2025, 1, 1, tzinfo=timezone.utc)
        error = CircuitOpenError("summarizer", ["gpt-4o"], cooldown_until=until)
        assert error.retryable
        assert error.to_dict()["details"]["cooldown_until"] == until.isoformat()

    def test_exhausted_carries_result(self):
        result = ExecutionResult(
            agent_type="a",
            status="error",
            primary_model_id="m",
            attempts=[attempt(success=False)],
        )
        error = ExhaustedFallbacksError(["m"], ProviderError("server_error"), result=result)
        assert len(error.attempts) == 1
        assert error.to_dict()["attempts"] == 1

    def test_workflow_error_includes_cause(self):
        cause = ProviderError("invalid_request")
        error = WorkflowError("doc", "step failed", unit="extract", cause=cause)
        assert error.to_dict()["details"]["cause"]["code"] == "ProviderError"

    def test_cost_exceeded_code(self):
        error = WorkflowCostExceededError("doc", 0.6, 0.5)
        assert error.error_code == "WORKFLOW_COST_EXCEEDED"
        assert error.workflow == "doc"

    def test_error_kind(self):
        assert error_kind(ProviderError("rate_limit")) == "rate_limit"
        assert error_kind(KeyError("x")) == "KeyError"
        assert error_kind(WorkflowError("w", "m")) == "WORKFLOW_ERROR"


class TestCancellationToken:
    def test_cancel_sets_reason_once(self):
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")
        assert token.cancelled
        assert token.reason == "first"

    def test_child_follows_parent(self):
        parent = CancellationToken()
        child = parent.child()
        parent.cancel("timeout")
        assert child.cancelled
        assert child.reason == "timeout"

    def test_child_cancel_leaves_parent(self):
        parent = CancellationToken()
        parent.child().cancel()
        assert not parent.cancelled

    def test_callback_fires_once_on_parent_cancel(self):
        parent = CancellationToken()
        child = parent.child()
        calls = []
        child.add_callback(lambda: calls.append("woken"))

        parent.cancel("timeout")
        child.cancel("again")

        assert calls == ["woken"]

    def test_callback_on_cancelled_token_runs_immediately(self):
        token = CancellationToken()
        token.cancel()
        calls = []
        token.add_callback(lambda: calls.append("woken"))
        assert calls == ["woken"]

    def test_removed_callback_is_not_called(self):
        token = CancellationToken()
        calls = []
        remove = token.add_callback(lambda: calls.append("woken"))
        remove()
        token.cancel()
        assert calls == []
