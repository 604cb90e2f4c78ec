"""HTTP admin API for a running AgentRuntime."""

from agent_runner.api.admin import create_app, create_router

__all__ = ["create_app", "create_router"]
