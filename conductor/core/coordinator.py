"""Per-tenant orchestration: workflow/agent bindings and fleet health.

Counters are kept reactively from engine transitions and can be rebuilt from
stored executions after a restart. Everything handed out is a copy.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from conductor.core.errors import OrchestrationPausedError
from conductor.core.models import ExecutionError, ExecutionStatus, WorkflowExecution
from conductor.core.state import OrchestrationRepository

if TYPE_CHECKING:
    from conductor.core.graph_engine import ExecutionEngine

logger = logging.getLogger(__name__)

_RUNNING = frozenset({ExecutionStatus.RUNNING, ExecutionStatus.RETRYING})


class OrchestrationState(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"


class OrchestrationStatus(BaseModel):
    """Read-only health snapshot for one tenant."""

    running_count: int = 0
    failed_count: int = 0
    last_status: ExecutionStatus | None = None


class AgentOrchestration(BaseModel):
    id: str = Field(default_factory=lambda: f"orch-{uuid.uuid4().hex[:12]}")
    tenant_id: str
    workflow_ids: list[str] = Field(default_factory=list)
    agent_ids: list[str] = Field(default_factory=list)
    state: OrchestrationState = OrchestrationState.ACTIVE
    last_run_at: datetime | None = None
    last_error: ExecutionError | None = None
    status: OrchestrationStatus = Field(default_factory=OrchestrationStatus)


class _Tracker:
    """Mutable counters behind one orchestration."""

    def __init__(self):
        self.running: set[str] = set()
        self.failed: set[str] = set()
        self.last_execution_id: str | None = None
        self.last_started_at: datetime | None = None
        self.last_status: ExecutionStatus | None = None

    def observe(self, execution: WorkflowExecution, status: ExecutionStatus) -> None:
        self.running.discard(execution.id)
        self.failed.discard(execution.id)
        if status in _RUNNING:
            self.running.add(execution.id)
        elif status == ExecutionStatus.FAILED:
            self.failed.add(execution.id)

        if (
            self.last_started_at is None
            or execution.id == self.last_execution_id
            or execution.started_at >= self.last_started_at
        ):
            self.last_execution_id = execution.id
            self.last_started_at = execution.started_at
            self.last_status = status

    def snapshot(self) -> OrchestrationStatus:
        return OrchestrationStatus(
            running_count=len(self.running),
            failed_count=len(self.failed),
            last_status=self.last_status,
        )


class OrchestrationCoordinator:
    """Binds workflows and agents to tenants and tracks their executions."""

    def __init__(self, db: OrchestrationRepository):
        self.db = db
        self._orchestrations: dict[str, AgentOrchestration] = {}
        self._trackers: dict[str, _Tracker] = {}
        self._load()
        self.rebuild()

    def _load(self) -> None:
        for row in self.db.list_orchestration_rows():
            self._orchestrations[row["tenant_id"]] = AgentOrchestration.model_validate(
                {
                    "id": row["id"],
                    "tenant_id": row["tenant_id"],
                    "workflow_ids": row["workflow_ids"],
                    "agent_ids": row["agent_ids"],
                    "state": row["state"],
                    "last_run_at": row["last_run_at"],
                    "last_error": row["last_error"],
                }
            )
            self._trackers[row["tenant_id"]] = _Tracker()

    def _save(self, orchestration: AgentOrchestration) -> None:
        self.db.upsert_orchestration(
            orchestration.id,
            orchestration.tenant_id,
            orchestration.workflow_ids,
            orchestration.agent_ids,
            orchestration.state.value,
            orchestration.last_run_at,
            orchestration.last_error,
        )

    # ========== Bindings ==========

    def attach(self, engine: ExecutionEngine) -> None:
        """Subscribe to the engine's transitions and gate its runs on pause state."""
        engine.add_listener(self.on_transition)
        engine.add_admission_check(self.check_admission)

    def bind(
        self, tenant_id: str, workflow_ids: list[str], agent_ids: list[str] | None = None
    ) -> AgentOrchestration:
        """Bind workflows and agents to a tenant, merging with any existing binding."""
        orchestration = self._orchestrations.get(tenant_id)
        if orchestration is None:
            orchestration = AgentOrchestration(tenant_id=tenant_id)
            self._orchestrations[tenant_id] = orchestration
            self._trackers[tenant_id] = _Tracker()

        for wf_id in workflow_ids:
            if wf_id not in orchestration.workflow_ids:
                orchestration.workflow_ids.append(wf_id)
        for agent_id in agent_ids or []:
            if agent_id not in orchestration.agent_ids:
                orchestration.agent_ids.append(agent_id)

        self._save(orchestration)
        self.rebuild(tenant_id)
        logger.info(
            f"Bound {len(orchestration.workflow_ids)} workflow(s) and "
            f"{len(orchestration.agent_ids)} agent(s) to tenant {tenant_id}"
        )
        return self.get(tenant_id)

    def get(self, tenant_id: str) -> AgentOrchestration:
        orchestration = self._require(tenant_id)
        return orchestration.model_copy(
            update={"status": self._trackers[tenant_id].snapshot()}, deep=True
        )

    def orchestrations(self) -> list[AgentOrchestration]:
        return [self.get(tenant_id) for tenant_id in sorted(self._orchestrations)]

    def status(self, tenant_id: str) -> OrchestrationStatus:
        self._require(tenant_id)
        return self._trackers[tenant_id].snapshot()

    def _require(self, tenant_id: str) -> AgentOrchestration:
        try:
            return self._orchestrations[tenant_id]
        except KeyError:
            raise KeyError(f"No orchestration bound for tenant '{tenant_id}'") from None

    # ========== Pause / resume ==========

    def pause(self, tenant_id: str) -> AgentOrchestration:
        orchestration = self._require(tenant_id)
        orchestration.state = OrchestrationState.PAUSED
        self._save(orchestration)
        return self.get(tenant_id)

    def resume(self, tenant_id: str) -> AgentOrchestration:
        orchestration = self._require(tenant_id)
        orchestration.state = OrchestrationState.ACTIVE
        self._refresh_state(tenant_id)
        self._save(orchestration)
        return self.get(tenant_id)

    def check_admission(self, tenant_id: str) -> None:
        orchestration = self._orchestrations.get(tenant_id)
        if orchestration is not None and orchestration.state == OrchestrationState.PAUSED:
            raise OrchestrationPausedError(f"Orchestration for tenant '{tenant_id}' is paused")

    # ========== Execution events ==========

    def on_transition(
        self,
        execution: WorkflowExecution,
        previous: ExecutionStatus,
        new: ExecutionStatus,
    ) -> None:
        orchestration = self._orchestrations.get(execution.tenant_id)
        if orchestration is None or execution.workflow_id not in orchestration.workflow_ids:
            return

        self._trackers[execution.tenant_id].observe(execution, new)
        if orchestration.last_run_at is None or execution.started_at >= orchestration.last_run_at:
            orchestration.last_run_at = execution.started_at
        if new == ExecutionStatus.FAILED and execution.error is not None:
            orchestration.last_error = execution.error
        self._refresh_state(execution.tenant_id)
        if new.is_terminal or previous == ExecutionStatus.PENDING:
            self._save(orchestration)

    def _refresh_state(self, tenant_id: str) -> None:
        orchestration = self._orchestrations[tenant_id]
        if orchestration.state == OrchestrationState.PAUSED:
            return
        failed_last = self._trackers[tenant_id].last_status == ExecutionStatus.FAILED
        orchestration.state = OrchestrationState.ERROR if failed_last else OrchestrationState.ACTIVE

    def rebuild(self, tenant_id: str | None = None) -> None:
        """Recompute counters from stored executions (after a restart)."""
        tenants = [tenant_id] if tenant_id else list(self._orchestrations)
        for tid in tenants:
            orchestration = self._require(tid)
            tracker = _Tracker()
            bound = set(orchestration.workflow_ids)
            for execution in self.db.list_executions(tenant_id=tid):
                if execution.workflow_id in bound:
                    tracker.observe(execution, execution.status)
            self._trackers[tid] = tracker
            self._refresh_state(tid)

    def performance(self) -> dict[str, Any]:
        """Fleet summary across tenants."""
        states = [o.state for o in self._orchestrations.values()]
        snapshots = [t.snapshot() for t in self._trackers.values()]
        return {
            "orchestrations": len(states),
            "active": states.count(OrchestrationState.ACTIVE),
            "paused": states.count(OrchestrationState.PAUSED),
            "error": states.count(OrchestrationState.ERROR),
            "running_executions": sum(s.running_count for s in snapshots),
            "failed_executions": sum(s.failed_count for s in snapshots),
        }
