"""Integration workflows and the producer-backed agent runner."""

from agent_foreman.workflow.agent_runner import AgentRunner, AgentRunResult, GeneratedFile, infer_target_files
from agent_foreman.workflow.engine import StepOutcome, WorkflowEngine
from agent_foreman.workflow.steps import (
    DEFAULT_WORKFLOW,
    WORKFLOWS,
    StepFailedError,
    StepKind,
    StepResult,
    UnknownWorkflowError,
    WorkflowError,
    WorkflowRun,
    order_by_tier,
    resolve_workflow,
)

__all__ = [
    "DEFAULT_WORKFLOW",
    "WORKFLOWS",
    "AgentRunResult",
    "AgentRunner",
    "GeneratedFile",
    "StepFailedError",
    "StepKind",
    "StepOutcome",
    "StepResult",
    "UnknownWorkflowError",
    "WorkflowError",
    "WorkflowRun",
    "WorkflowEngine",
    "infer_target_files",
    "order_by_tier",
    "resolve_workflow",
]
