"""Core modules for the Conductor orchestration engine."""

from conductor.core.graph_schema import Connection, Node, NodeKind, Workflow, validate
from conductor.core.models import (
    ExecutionLog,
    ExecutionStatus,
    LogLevel,
    NodeRunStatus,
    WorkflowExecution,
)
from conductor.core.state import (
    Database,
    OrchestrationRepository,
    Repository,
    TemplateRepository,
)

__all__ = [
    "Connection",
    "Database",
    "ExecutionLog",
    "ExecutionStatus",
    "LogLevel",
    "Node",
    "NodeKind",
    "NodeRunStatus",
    "OrchestrationRepository",
    "Repository",
    "TemplateRepository",
    "Workflow",
    "WorkflowExecution",
    "validate",
]
