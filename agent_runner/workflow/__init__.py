"""Workflow engine: pipelines, parallel groups and routers over agent calls."""

from agent_runner.workflow.base import (
    AgentCall,
    ExecutableUnit,
    RunContext,
    Workflow,
    WorkflowUnit,
)
from agent_runner.workflow.pipeline import FailureAction, Pipeline, PipelineContext, Step
from agent_runner.workflow.parallel import Branch, Parallel
from agent_runner.workflow.router import Route, Router, parse_classification

__all__ = [
    "AgentCall",
    "ExecutableUnit",
    "RunContext",
    "Workflow",
    "WorkflowUnit",
    "FailureAction",
    "Pipeline",
    "PipelineContext",
    "Step",
    "Branch",
    "Parallel",
    "Route",
    "Router",
    "parse_classification",
]
