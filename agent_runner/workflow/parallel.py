"""Parallel workflow: named branches running concurrently.

Branches run as asyncio tasks bounded by a semaphore of size
``concurrency``. Cancellation is cooperative: fail-fast, timeouts and cost
limits cancel a shared CancellationToken, which stops queued branches and
new retry attempts. A provider call already in flight finishes, and its
branch is recorded as cancelled with the late result attached.

Usage:
    review = Parallel(
        "review",
        branches=[
            Branch("sentiment", AgentCall("sentiment", "gpt-4o-mini")),
            Branch("summary", AgentCall("summarizer", "claude-haiku")),
            Branch("toxicity", AgentCall("moderator", "gpt-4o-mini"), optional=True),
        ],
        concurrency=2,
        fail_fast=True,
    )
    execution = await review.run({"text": "..."}, executor)
    execution.branches["summary"].result.content
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Optional

from agent_runner.errors import (
    ExecutionCancelledError,
    WorkflowError,
    WorkflowTimeoutError,
)
from agent_runner.logging.structured import get_logger
from agent_runner.models import BranchResult, WorkflowExecution
from agent_runner.workflow.base import (
    ExecutableUnit,
    RunContext,
    Workflow,
    WorkflowLimits,
    describe_failure,
)

logger = get_logger(__name__)


@dataclass
class Branch:
    """One named parallel branch.

    Attributes:
        name: Unique branch name
        unit: AgentCall or nested workflow unit
        optional: A failure never makes the workflow fail
        input: Builds the branch payload from the workflow input
    """

    name: str
    unit: ExecutableUnit
    optional: bool = False
    input: Optional[Callable[[Any], Any]] = None

    @property
    def required(self) -> bool:
        return not self.optional


Aggregator = Callable[[dict[str, BranchResult]], Any]


class Parallel(Workflow):
    """Runs branches concurrently and aggregates their results.

    Args:
        name: Workflow name
        branches: Branches to run
        concurrency: Maximum branches running at once (default: all)
        fail_fast: A required branch failure cancels the rest
        aggregate: Reshapes the branch map into the workflow content
        optional_failures_degrade: Failed optional branches turn a success
            into partial; set False to keep success
        timeout: Seconds for the whole branch set
        max_cost: USD for the whole branch set
    """

    kind = "parallel"

    def __init__(
        self,
        name: str,
        branches: list[Branch],
        concurrency: Optional[int] = None,
        fail_fast: bool = False,
        aggregate: Optional[Aggregator] = None,
        optional_failures_degrade: bool = True,
        timeout: Optional[float] = None,
        max_cost: Optional[float] = None,
    ):
        super().__init__(name, timeout=timeout, max_cost=max_cost)
        if not branches:
            raise ValueError(f"Parallel {name!r} needs at least one branch")
        names = [b.name for b in branches]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate branch names in {name!r}")
        if concurrency is not None and concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.branches = list(branches)
        self.concurrency = concurrency
        self.fail_fast = fail_fast
        self._aggregate = aggregate
        self.optional_failures_degrade = optional_failures_degrade

    def aggregate(self, branches: dict[str, BranchResult]) -> Any:
        """Workflow content. Default: branch name -> ExecutionResult."""
        if self._aggregate is not None:
            return self._aggregate(branches)
        return default_aggregate(branches)

    async def _run(
        self,
        input: Any,
        context: RunContext,
        execution: WorkflowExecution,
        limits: WorkflowLimits,
    ) -> None:
        branch_context = context.child()
        token = branch_context.cancel_token
        semaphore = asyncio.Semaphore(self.concurrency or len(self.branches))
        results: dict[str, BranchResult] = {}
        abort: dict[str, Any] = {}

        def trigger_abort(error: BaseException, unit: Optional[str]) -> None:
            if abort:
                return
            abort["error"] = error
            abort["unit"] = unit
            token.cancel(str(error))
            logger.warning("parallel_aborted", unit=unit, reason=str(error))

        async def run_branch(branch: Branch) -> None:
            async with semaphore:
                if token.cancelled:
                    results[branch.name] = BranchResult(
                        name=branch.name,
                        required=branch.required,
                        skipped=True,
                        cancelled=True,
                        skip_reason=token.reason or "cancelled",
                    )
                    return

                try:
                    payload = branch.input(input) if branch.input else input
                    result = await branch.unit.run(payload, branch_context)
                except Exception as e:
                    failed_result, kind, message = describe_failure(e)
                    limits.add(failed_result)
                    cancelled = token.cancelled and isinstance(e, ExecutionCancelledError)
                    results[branch.name] = BranchResult(
                        name=branch.name,
                        result=failed_result,
                        required=branch.required,
                        failed=not cancelled,
                        cancelled=cancelled,
                        error_kind=kind,
                        error_message=message,
                    )
                    if cancelled:
                        return
                    logger.warning(
                        "branch_failed",
                        branch=branch.name,
                        optional=branch.optional,
                        error_kind=kind,
                    )
                    limit_error = limits.exceeded()
                    if self.fail_fast and branch.required:
                        trigger_abort(e, branch.name)
                    elif limit_error is not None:
                        trigger_abort(limit_error, branch.name)
                    return

                limits.add(result)
                if token.cancelled:
                    # Finished after the workflow aborted
                    results[branch.name] = BranchResult(
                        name=branch.name,
                        result=result,
                        required=branch.required,
                        cancelled=True,
                        skip_reason="late",
                    )
                    return

                results[branch.name] = BranchResult(
                    name=branch.name, result=result, required=branch.required
                )
                limit_error = limits.exceeded()
                if limit_error is not None:
                    trigger_abort(limit_error, branch.name)

        tasks = [
            asyncio.create_task(run_branch(branch), name=f"{self.name}.{branch.name}")
            for branch in self.branches
        ]
        remaining = limits.remaining_time()
        if remaining is None:
            await asyncio.gather(*tasks)
        else:
            _, pending = await asyncio.wait(tasks, timeout=remaining)
            if pending:
                trigger_abort(limits.exceeded() or _timeout(self.name, limits), None)
                # In-flight calls finish; queued branches see the cancelled token
                await asyncio.gather(*pending)

        ordered = {b.name: results[b.name] for b in self.branches}
        execution.branches = ordered

        if not abort and context.cancel_token.cancelled:
            # Cancelled from outside: by the caller or an enclosing workflow
            interrupted = [b for b in ordered.values() if b.required and b.cancelled]
            if interrupted:
                abort["error"] = WorkflowError(
                    self.name, f"Cancelled: {context.cancel_token.reason or 'cancelled'}"
                )
                abort["unit"] = interrupted[0].name

        if abort:
            self._fail(execution, abort["error"], unit=abort["unit"])
        else:
            failed_required = [b for b in ordered.values() if b.required and b.failed]
            failed_optional = [
                b for b in ordered.values() if not b.required and not b.succeeded
            ]
            if failed_required:
                first = failed_required[0]
                execution.status = "error"
                execution.error_kind = first.error_kind
                execution.error_message = first.error_message
                execution.failed_unit = first.name
            elif failed_optional and self.optional_failures_degrade:
                execution.status = "partial"
            else:
                execution.status = "success"

        try:
            execution.content = self.aggregate(ordered)
        except Exception as e:
            logger.warning("aggregation_failed", error=str(e))
            execution.content = default_aggregate(ordered)


def default_aggregate(branches: dict[str, BranchResult]) -> dict[str, Any]:
    """Branch name -> ExecutionResult for every branch that produced one."""
    return {name: b.result for name, b in branches.items() if b.result is not None}


def _timeout(workflow: str, limits: WorkflowLimits) -> WorkflowError:
    return WorkflowTimeoutError(workflow, limits.timeout, limits.elapsed)
