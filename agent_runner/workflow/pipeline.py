"""Sequential pipeline workflow.

Steps run one after another. Each step's payload is built from a
PipelineContext holding the original input and the result of every step
that ran before it.

Usage:
    pipeline = Pipeline(
        "document",
        steps=[
            Step("extract", AgentCall("extractor", "gpt-4o-mini")),
            Step("classify", AgentCall("classifier", "gpt-4o-mini"), optional=True),
            Step(
                "translate",
                AgentCall("translator", "claude-sonnet"),
                when=lambda ctx: ctx.input.get("language") != "en",
                input=lambda ctx: {"text": ctx.content("extract")},
            ),
        ],
        max_cost=0.50,
    )
    execution = await pipeline.run({"text": "...", "language": "de"}, executor)
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Union

from agent_runner.errors import WorkflowError
from agent_runner.logging.structured import get_logger
from agent_runner.models import ExecutionResult, StepResult, WorkflowExecution
from agent_runner.workflow.base import (
    ExecutableUnit,
    RunContext,
    Workflow,
    WorkflowLimits,
    describe_failure,
)

logger = get_logger(__name__)


class FailureAction(str, Enum):
    SKIP = "skip"  # mark the step failed and continue
    ABORT = "abort"  # skip every remaining step


@dataclass
class Step:
    """One named pipeline step.

    Attributes:
        name: Unique step name
        unit: AgentCall or nested workflow unit
        optional: A failure is recorded but never aborts the pipeline
        when: Predicate over the context; False skips the step
        input: Builds the step payload from the context
    """

    name: str
    unit: ExecutableUnit
    optional: bool = False
    when: Optional[Callable[["PipelineContext"], bool]] = None
    input: Optional[Callable[["PipelineContext"], Any]] = None

    @property
    def required(self) -> bool:
        return not self.optional

    @property
    def conditional(self) -> bool:
        return self.when is not None


class PipelineContext:
    """Original input plus the results of the steps run so far, in order."""

    def __init__(self, input: Any):
        self.input = input
        self.steps: list[StepResult] = []
        self.results: dict[str, ExecutionResult] = {}

    def record(self, step: StepResult) -> None:
        self.steps.append(step)
        if step.succeeded:
            self.results[step.name] = step.result

    def get(self, name: str) -> Optional[ExecutionResult]:
        return self.results.get(name)

    def __getitem__(self, name: str) -> ExecutionResult:
        return self.results[name]

    def __contains__(self, name: str) -> bool:
        return name in self.results

    def content(self, name: str, default: Any = None) -> Any:
        result = self.results.get(name)
        return result.content if result is not None else default

    @property
    def last_result(self) -> Optional[ExecutionResult]:
        for step in reversed(self.steps):
            if step.succeeded:
                return step.result
        return None

    def default_payload(self) -> Any:
        """Previous successful step's content, or the original input."""
        last = self.last_result
        return self.input if last is None else last.content


FailureHook = Callable[[str, BaseException, PipelineContext], Union[FailureAction, str]]


class Pipeline(Workflow):
    """Runs steps sequentially with per-step failure handling.

    Args:
        name: Workflow name
        steps: Steps in execution order
        on_step_failure: Called when a required step fails; returns
            FailureAction.SKIP or FailureAction.ABORT (default abort)
        timeout: Seconds, checked before each step
        max_cost: USD, checked before each step
    """

    kind = "pipeline"

    def __init__(
        self,
        name: str,
        steps: list[Step],
        on_step_failure: Optional[FailureHook] = None,
        timeout: Optional[float] = None,
        max_cost: Optional[float] = None,
    ):
        super().__init__(name, timeout=timeout, max_cost=max_cost)
        if not steps:
            raise ValueError(f"Pipeline {name!r} needs at least one step")
        names = [s.name for s in steps]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate step names in {name!r}: {sorted(duplicates)}")
        self.steps = list(steps)
        self._failure_hook = on_step_failure

    def on_step_failure(
        self,
        name: str,
        error: BaseException,
        context: PipelineContext,
    ) -> FailureAction:
        """Decide what a required step failure does. Subclasses may override.

        A hook returning anything but skip or abort (including None) aborts.
        """
        if self._failure_hook is None:
            return FailureAction.ABORT
        decision = self._failure_hook(name, error, context)
        try:
            return FailureAction(decision)
        except ValueError:
            logger.warning("invalid_failure_action", step=name, action=repr(decision))
            return FailureAction.ABORT

    async def _run(
        self,
        input: Any,
        context: RunContext,
        execution: WorkflowExecution,
        limits: WorkflowLimits,
    ) -> None:
        ctx = PipelineContext(input)
        degraded = False

        for index, step in enumerate(self.steps):
            abort_error = limits.exceeded()
            if abort_error is None and context.cancel_token.cancelled:
                abort_error = _cancelled(self.name, context)
            if abort_error is not None:
                logger.warning("pipeline_aborted", step=step.name, reason=str(abort_error))
                self._fail(execution, abort_error, unit=step.name)
                self._skip_remaining(ctx, self.steps[index:])
                break

            if step.when is not None and not self._should_run(step, ctx):
                ctx.record(
                    StepResult(
                        name=step.name,
                        required=step.required,
                        skipped=True,
                        skip_reason="condition",
                    )
                )
                continue

            try:
                payload = step.input(ctx) if step.input else ctx.default_payload()
                result = await step.unit.run(payload, context)
            except Exception as e:
                failed_result, kind, message = describe_failure(e)
                limits.add(failed_result)
                ctx.record(
                    StepResult(
                        name=step.name,
                        result=failed_result,
                        required=step.required,
                        failed=True,
                        error_kind=kind,
                        error_message=message,
                    )
                )
                logger.warning(
                    "step_failed",
                    step=step.name,
                    optional=step.optional,
                    error_kind=kind,
                )

                if step.optional:
                    degraded = True
                    continue

                action = self.on_step_failure(step.name, e, ctx)
                if action is FailureAction.SKIP:
                    degraded = True
                    continue

                self._fail(execution, e, unit=step.name)
                self._skip_remaining(ctx, self.steps[index + 1:])
                break

            limits.add(result)
            ctx.record(StepResult(name=step.name, result=result, required=step.required))

        execution.steps = ctx.steps
        last = ctx.last_result
        execution.content = last.content if last is not None else None
        if execution.status == "running":
            execution.status = "partial" if degraded else "success"

    def _should_run(self, step: Step, ctx: PipelineContext) -> bool:
        try:
            return bool(step.when(ctx))
        except Exception as e:
            logger.warning("step_condition_failed", step=step.name, error=str(e))
            return True

    @staticmethod
    def _skip_remaining(ctx: PipelineContext, steps: list[Step]) -> None:
        for step in steps:
            ctx.record(
                StepResult(
                    name=step.name,
                    required=step.required,
                    skipped=True,
                    skip_reason="aborted",
                )
            )


def _cancelled(workflow: str, context: RunContext) -> WorkflowError:
    return WorkflowError(workflow, f"Cancelled: {context.cancel_token.reason or 'cancelled'}")
