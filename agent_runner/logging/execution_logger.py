"""Execution logging sinks.

The executor and the workflow engine hand every finished ExecutionResult and
WorkflowExecution to a sink. Sinks are fire-and-forget: a failure while
writing is logged and never reaches the caller.
"""

import json
import os
import threading
from datetime import datetime, timezone
from typing import Optional

from agent_runner.logging.structured import get_logger
from agent_runner.models import ExecutionResult, WorkflowExecution

logger = get_logger(__name__)


class ExecutionSink:
    """Receives finished executions and workflows. Default: discard."""

    def record_execution(self, result: ExecutionResult) -> None:
        pass

    def record_workflow(self, execution: WorkflowExecution) -> None:
        pass


def emit_execution(sink: Optional[ExecutionSink], result: ExecutionResult) -> None:
    """Hand a result to ``sink``, swallowing any failure."""
    if sink is None:
        return
    try:
        sink.record_execution(result)
    except Exception as e:
        logger.warning(
            "execution_log_failed",
            execution_id=result.execution_id,
            error=str(e),
        )


def emit_workflow(sink: Optional[ExecutionSink], execution: WorkflowExecution) -> None:
    """Hand a workflow record to ``sink``, swallowing any failure."""
    if sink is None:
        return
    try:
        sink.record_workflow(execution)
    except Exception as e:
        logger.warning(
            "workflow_log_failed",
            workflow_id=execution.workflow_id,
            error=str(e),
        )


class JsonlExecutionLogger(ExecutionSink):
    """Appends executions and workflows to JSONL files.

    executions.jsonl holds one line per ExecutionResult (every attempt
    included); workflows.jsonl one line per WorkflowExecution.
    """

    def __init__(self, log_dir: str):
        self.log_dir = log_dir
        self.executions_file = os.path.join(log_dir, "executions.jsonl")
        self.workflows_file = os.path.join(log_dir, "workflows.jsonl")
        os.makedirs(log_dir, exist_ok=True)
        self._lock = threading.Lock()

    def _append(self, path: str, entry: dict):
        line = json.dumps(entry, default=str)
        with self._lock:
            with open(path, "a") as f:
                f.write(line + "\n")

    def record_execution(self, result: ExecutionResult) -> None:
        self._append(
            self.executions_file,
            {
                "ts": datetime.now(timezone.utc).isoformat(),
                "event": "execution",
                **result.model_dump(mode="json", exclude={"workflow"}),
                "workflow_id": result.workflow.workflow_id if result.workflow else None,
            },
        )

    def record_workflow(self, execution: WorkflowExecution) -> None:
        self._append(
            self.workflows_file,
            {
                "ts": datetime.now(timezone.utc).isoformat(),
                "event": "workflow",
                **execution.model_dump(mode="json"),
            },
        )

    def read_executions(self) -> list[dict]:
        return self._read(self.executions_file)

    def read_workflows(self) -> list[dict]:
        return self._read(self.workflows_file)

    def _read(self, path: str) -> list[dict]:
        if not os.path.exists(path):
            return []
        entries = []
        with open(path) as f:
            for line in f:
                line = line.strip()
                if line:
                    entries.append(json.loads(line))
        return entries


class InMemoryExecutionLogger(ExecutionSink):
    """Keeps results in lists. Useful for tests and the admin API."""

    def __init__(self):
        self.executions: list[ExecutionResult] = []
        self.workflows: list[WorkflowExecution] = []
        self._lock = threading.Lock()

    def record_execution(self, result: ExecutionResult) -> None:
        with self._lock:
            self.executions.append(result)

    def record_workflow(self, execution: WorkflowExecution) -> None:
        with self._lock:
            self.workflows.append(execution)

    def clear(self) -> None:
        with self._lock:
            self.executions.clear()
            self.workflows.clear()
