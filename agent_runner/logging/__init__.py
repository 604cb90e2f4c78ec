"""Logging for executions and workflows."""

from agent_runner.logging.execution_logger import (
    ExecutionSink,
    InMemoryExecutionLogger,
    JsonlExecutionLogger,
    emit_execution,
    emit_workflow,
)
from agent_runner.logging.structured import (
    bind_context,
    bound_context,
    clear_context,
    configure_structlog,
    get_logger,
    unbind_context,
)

__all__ = [
    "ExecutionSink",
    "InMemoryExecutionLogger",
    "JsonlExecutionLogger",
    "emit_execution",
    "emit_workflow",
    # Structured logging
    "configure_structlog",
    "get_logger",
    "bind_context",
    "bound_context",
    "unbind_context",
    "clear_context",
]
