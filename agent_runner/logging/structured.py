"""Structured logging with structlog.

Provides:
- JSON-formatted log output for production
- Context binding for execution_id, workflow_id, tenant_id
- Factory function for creating loggers

Context is stored in ``structlog.contextvars`` so concurrent parallel
branches (separate asyncio tasks) each keep their own bound identifiers.
"""

import logging
import sys
from typing import Optional

import structlog
from structlog.types import EventDict, WrappedLogger


SERVICE_NAME = "agent-runner"


def add_service_info(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Add service information to log entries."""
    event_dict["service"] = SERVICE_NAME
    return event_dict


def configure_structlog(
    json_format: bool = True,
    log_level: str = "INFO",
) -> None:
    """Configure structlog for the application.

    Args:
        json_format: If True, output JSON logs (for production).
                     If False, output human-readable logs (for development).
        log_level: The minimum log level to output (DEBUG, INFO, WARNING, ERROR).
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        add_service_info,
    ]

    if json_format:
        renderer = [
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderer = [
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=shared_processors + renderer,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger with the given name.

    Example:
        logger = get_logger(__name__)
        logger.info("breaker_opened", agent_type="summarizer", model_id="gpt-4o")
    """
    return structlog.get_logger(name)


def bind_context(
    execution_id: Optional[str] = None,
    workflow_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
    **extra,
) -> dict[str, str]:
    """Bind identifiers for the current task.

    These values are included in all subsequent log entries emitted from
    the same asyncio task (or thread) until clear_context() is called.

    Returns:
        The values that were bound, for selective unbinding.
    """
    values = {
        "execution_id": execution_id,
        "workflow_id": workflow_id,
        "tenant_id": tenant_id,
        **extra,
    }
    bound = {k: str(v) for k, v in values.items() if v is not None}
    if bound:
        structlog.contextvars.bind_contextvars(**bound)
    return bound


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def bound_context(**values):
    """Context manager binding ``values`` for a block.

    Values bound by an enclosing block (a parent workflow) are restored on
    exit. None values are skipped.

    Example:
        with bound_context(execution_id=result_id, agent_type="summarizer"):
            logger.info("attempt_failed", model_id="gpt-4o")
    """
    return structlog.contextvars.bound_contextvars(
        **{k: str(v) for k, v in values.items() if v is not None}
    )


def clear_context() -> None:
    """Clear all bound context variables."""
    structlog.contextvars.clear_contextvars()
