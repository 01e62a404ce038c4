"""Execution-side data models for the orchestration core.

Uses Pydantic for schema-enforced records that round-trip through SQLite.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class ExecutionStatus(str, Enum):
    """Status of a workflow execution."""

    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"  # Observable sub-state of RUNNING
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.SUCCESS, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)

# Allowed source states for each target state
TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.RUNNING: frozenset({ExecutionStatus.PENDING, ExecutionStatus.RETRYING}),
    ExecutionStatus.RETRYING: frozenset({ExecutionStatus.RUNNING}),
    ExecutionStatus.SUCCESS: frozenset({ExecutionStatus.RUNNING}),
    ExecutionStatus.FAILED: frozenset(
        {ExecutionStatus.PENDING, ExecutionStatus.RUNNING, ExecutionStatus.RETRYING}
    ),
    ExecutionStatus.CANCELLED: frozenset(
        {ExecutionStatus.PENDING, ExecutionStatus.RUNNING, ExecutionStatus.RETRYING}
    ),
}


class TriggerSource(str, Enum):
    """What started an execution."""

    USER = "user"
    WEBHOOK = "webhook"
    SCHEDULE = "schedule"


class LogLevel(str, Enum):
    """Severity of an execution log entry."""

    INFO = "info"
    AGENT = "agent"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    DEBUG = "debug"


class NodeRunStatus(str, Enum):
    """Per-execution status of a single node."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ExecutionError(BaseModel):
    """Terminal error attached to a failed execution."""

    node_id: str | None = None
    message: str
    code: str | None = None
    retry_count: int = 0
    last_tried_at: datetime | None = None


class WorkflowExecution(BaseModel):
    """One run of a workflow version against a trigger input."""

    id: str
    workflow_id: str
    workflow_version: int
    tenant_id: str
    triggered_by: TriggerSource = TriggerSource.USER
    trigger_input: dict[str, Any] = Field(default_factory=dict)
    status: ExecutionStatus = ExecutionStatus.PENDING
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime | None = None
    current_node_id: str | None = None
    error: ExecutionError | None = None


class ExecutionLog(BaseModel):
    """Immutable, sequenced event within an execution."""

    execution_id: str
    sequence: int
    node_id: str | None = None
    level: LogLevel
    message: str
    data: dict[str, Any] | None = None
    timestamp: datetime = Field(default_factory=utc_now)


class NodeRun(BaseModel):
    """Stored state of one node inside one execution."""

    execution_id: str
    node_id: str
    status: NodeRunStatus = NodeRunStatus.PENDING
    attempts: int = 0
    output: dict[str, Any] | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
