"""SQLite persistence for workflows, executions, logs, templates and orchestrations.

The core only talks to the Repository protocol; Database is the SQLite
implementation. Workflow versions are immutable snapshots so an execution always
reads the graph it was triggered against. Execution logs are append-only with a
per-execution sequence assigned inside the insert transaction.
"""

import json
import logging
import sqlite3
from collections.abc import Generator, Iterable, Mapping
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel

from conductor.core.errors import (
    ExecutionNotFoundError,
    InvalidTransitionError,
    TemplateError,
    WorkflowNotFoundError,
)
from conductor.core.graph_schema import Workflow
from conductor.core.models import (
    TRANSITIONS,
    ExecutionError,
    ExecutionLog,
    ExecutionStatus,
    LogLevel,
    NodeRun,
    NodeRunStatus,
    TriggerSource,
    WorkflowExecution,
    utc_now,
)

logger = logging.getLogger(__name__)


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime, Path and Pydantic models."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def _dumps(obj: Any) -> str | None:
    if obj is None:
        return None
    return json.dumps(obj, cls=_SafeJSONEncoder)


def _loads(raw: str | None) -> Any:
    return json.loads(raw) if raw else None


def _ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class Repository(Protocol):
    """Persistence port used by the engine, log stream and coordinator."""

    def save_workflow(self, workflow: Workflow) -> Workflow: ...

    def get_workflow(self, workflow_id: str, version: int | None = None) -> Workflow: ...

    def list_workflows(
        self, tenant_id: str | None = None, include_deleted: bool = False
    ) -> list[Workflow]: ...

    def delete_workflow(self, workflow_id: str) -> bool: ...

    def create_execution(self, execution: WorkflowExecution) -> None: ...

    def get_execution(self, execution_id: str) -> WorkflowExecution: ...

    def list_executions(
        self,
        tenant_id: str | None = None,
        workflow_id: str | None = None,
        statuses: Iterable[ExecutionStatus] | None = None,
    ) -> list[WorkflowExecution]: ...

    def transition_execution(
        self,
        execution_id: str,
        new_status: ExecutionStatus,
        error: ExecutionError | None = None,
    ) -> tuple[ExecutionStatus, WorkflowExecution]: ...

    def reopen_execution(self, execution_id: str) -> WorkflowExecution: ...

    def set_current_node(self, execution_id: str, node_id: str | None) -> None: ...

    def save_node_run(self, run: NodeRun) -> None: ...

    def get_node_runs(self, execution_id: str) -> dict[str, NodeRun]: ...

    def append_log(
        self,
        execution_id: str,
        level: LogLevel,
        message: str,
        node_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> ExecutionLog: ...

    def get_logs(
        self,
        execution_id: str,
        levels: Iterable[LogLevel] | None = None,
        node_id: str | None = None,
        after_sequence: int = 0,
        limit: int | None = None,
    ) -> list[ExecutionLog]: ...


class TemplateRepository(Repository, Protocol):
    """Persistence port of the template registry.

    Rows are read by column name.
    """

    def insert_template(self, template_id: str, name: str, category: str | None,
                        definition: str) -> None: ...

    def get_template_row(self, template_id: str) -> Mapping[str, Any] | None: ...

    def list_template_rows(self, category: str | None = None) -> list[Mapping[str, Any]]: ...

    def increment_template_deployed(self, template_id: str) -> None: ...

    def record_template_outcome(
        self, template_id: str, success: bool, roi: float | None = None
    ) -> None: ...


class OrchestrationRepository(Repository, Protocol):
    """Persistence port of the orchestration coordinator."""

    def upsert_orchestration(self, orchestration_id: str, tenant_id: str,
                             workflow_ids: list[str], agent_ids: list[str], state: str,
                             last_run_at: datetime | None, last_error: Any) -> None: ...

    def list_orchestration_rows(self) -> list[Mapping[str, Any]]: ...


class Database:
    """SQLite database implementing every persistence port."""

    SCHEMA = """
    -- Workflow head rows (current version pointer + tombstone)
    CREATE TABLE IF NOT EXISTS workflows (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        name TEXT NOT NULL,
        current_version INTEGER NOT NULL,
        deleted INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    );

    -- Immutable workflow snapshots
    CREATE TABLE IF NOT EXISTS workflow_versions (
        workflow_id TEXT NOT NULL,
        version INTEGER NOT NULL,
        definition JSON NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (workflow_id, version),
        FOREIGN KEY (workflow_id) REFERENCES workflows(id)
    );

    CREATE TABLE IF NOT EXISTS executions (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        workflow_version INTEGER NOT NULL,
        tenant_id TEXT NOT NULL,
        triggered_by TEXT NOT NULL,
        trigger_input JSON,
        status TEXT NOT NULL CHECK(status IN
            ('pending', 'running', 'retrying', 'success', 'failed', 'cancelled')),
        started_at TIMESTAMP NOT NULL,
        finished_at TIMESTAMP,
        current_node_id TEXT,
        error JSON,
        FOREIGN KEY (workflow_id) REFERENCES workflows(id)
    );

    CREATE TABLE IF NOT EXISTS node_runs (
        execution_id TEXT NOT NULL,
        node_id TEXT NOT NULL,
        status TEXT NOT NULL CHECK(status IN
            ('pending', 'running', 'completed', 'failed', 'skipped')),
        attempts INTEGER NOT NULL DEFAULT 0,
        output JSON,
        error TEXT,
        started_at TIMESTAMP,
        completed_at TIMESTAMP,
        PRIMARY KEY (execution_id, node_id),
        FOREIGN KEY (execution_id) REFERENCES executions(id)
    );

    -- Append-only log; sequence is gapless per execution
    CREATE TABLE IF NOT EXISTS execution_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        execution_id TEXT NOT NULL,
        sequence INTEGER NOT NULL,
        node_id TEXT,
        level TEXT NOT NULL,
        message TEXT NOT NULL,
        data JSON,
        timestamp TIMESTAMP NOT NULL,
        UNIQUE(execution_id, sequence),
        FOREIGN KEY (execution_id) REFERENCES executions(id)
    );

    CREATE TABLE IF NOT EXISTS templates (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        category TEXT,
        definition JSON NOT NULL,
        deployed INTEGER NOT NULL DEFAULT 0,
        outcomes INTEGER NOT NULL DEFAULT 0,
        roi_samples INTEGER NOT NULL DEFAULT 0,
        avg_success REAL NOT NULL DEFAULT 0,
        avg_roi REAL NOT NULL DEFAULT 0,
        published_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS orchestrations (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL UNIQUE,
        workflow_ids JSON NOT NULL,
        agent_ids JSON NOT NULL,
        state TEXT NOT NULL DEFAULT 'active',
        last_run_at TIMESTAMP,
        last_error JSON
    );

    CREATE INDEX IF NOT EXISTS idx_workflows_tenant ON workflows(tenant_id);
    CREATE INDEX IF NOT EXISTS idx_exec_tenant_status ON executions(tenant_id, status);
    CREATE INDEX IF NOT EXISTS idx_exec_workflow ON executions(workflow_id);
    CREATE INDEX IF NOT EXISTS idx_logs_exec_seq ON execution_logs(execution_id, sequence);
    CREATE INDEX IF NOT EXISTS idx_templates_category ON templates(category);
    """

    def __init__(self, db_path: str | Path = ".conductor/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize schema and enable WAL mode for concurrent readers."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout to handle concurrent access gracefully
        instead of immediately failing with "database is locked".
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            if "database is locked" in str(e):
                raise sqlite3.OperationalError(
                    f"Database locked after 30s timeout. Check for long-running transactions: {e}"
                ) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Explicit write transaction (BEGIN IMMEDIATE) for atomic read-modify-write."""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            yield conn

    # ========== Workflows ==========

    def save_workflow(self, workflow: Workflow) -> Workflow:
        """Store a new immutable version of a workflow and return it.

        The stored copy carries the assigned version number; the caller's
        instance is not modified.
        """
        with self.transaction() as conn:
            head = conn.execute(
                "SELECT current_version, deleted, created_at FROM workflows WHERE id = ?",
                (workflow.id,),
            ).fetchone()
            if head and head["deleted"]:
                raise WorkflowNotFoundError(f"Workflow '{workflow.id}' was deleted")

            version = head["current_version"] + 1 if head else 1
            saved = workflow.model_copy(update={"version": version}, deep=True)

            if head:
                conn.execute(
                    """
                    UPDATE workflows SET name = ?, tenant_id = ?, current_version = ?,
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (saved.name, saved.tenant_id, version, saved.updated_at.isoformat(), saved.id),
                )
            else:
                conn.execute(
                    """
                    INSERT INTO workflows (id, tenant_id, name, current_version, deleted,
                                           created_at, updated_at)
                    VALUES (?, ?, ?, ?, 0, ?, ?)
                    """,
                    (
                        saved.id,
                        saved.tenant_id,
                        saved.name,
                        version,
                        saved.created_at.isoformat(),
                        saved.updated_at.isoformat(),
                    ),
                )
            conn.execute(
                "INSERT INTO workflow_versions (workflow_id, version, definition) VALUES (?, ?, ?)",
                (saved.id, version, saved.model_dump_json()),
            )

        logger.debug(f"Saved workflow {saved.id} v{version}")
        return saved

    def get_workflow(self, workflow_id: str, version: int | None = None) -> Workflow:
        """Load a workflow version (current version when ``version`` is None).

        Explicit versions stay readable after a tombstone so executions can be audited.
        """
        with self._connect() as conn:
            head = conn.execute(
                "SELECT current_version, deleted FROM workflows WHERE id = ?", (workflow_id,)
            ).fetchone()
            if not head or (head["deleted"] and version is None):
                raise WorkflowNotFoundError(f"Workflow '{workflow_id}' not found")
            row = conn.execute(
                "SELECT definition FROM workflow_versions WHERE workflow_id = ? AND version = ?",
                (workflow_id, version or head["current_version"]),
            ).fetchone()
            if not row:
                raise WorkflowNotFoundError(f"Workflow '{workflow_id}' v{version} not found")
            workflow = Workflow.model_validate_json(row["definition"])
            if head["deleted"]:
                workflow = workflow.model_copy(update={"deleted": True})
            return workflow

    def list_workflows(
        self, tenant_id: str | None = None, include_deleted: bool = False
    ) -> list[Workflow]:
        query = """
            SELECT v.definition, w.deleted FROM workflows w
            JOIN workflow_versions v ON v.workflow_id = w.id AND v.version = w.current_version
            WHERE 1 = 1
        """
        params: list[Any] = []
        if tenant_id:
            query += " AND w.tenant_id = ?"
            params.append(tenant_id)
        if not include_deleted:
            query += " AND w.deleted = 0"
        query += " ORDER BY w.created_at, w.id"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            Workflow.model_validate_json(r["definition"]).model_copy(
                update={"deleted": bool(r["deleted"])}
            )
            for r in rows
        ]

    def delete_workflow(self, workflow_id: str) -> bool:
        """Delete a workflow.

        Returns True when the workflow was physically removed, False when it was
        tombstoned because executions still reference it.
        """
        with self.transaction() as conn:
            head = conn.execute(
                "SELECT deleted FROM workflows WHERE id = ?", (workflow_id,)
            ).fetchone()
            if not head or head["deleted"]:
                raise WorkflowNotFoundError(f"Workflow '{workflow_id}' not found")
            referenced = conn.execute(
                "SELECT COUNT(*) FROM executions WHERE workflow_id = ?", (workflow_id,)
            ).fetchone()[0]
            if referenced:
                conn.execute(
                    "UPDATE workflows SET deleted = 1, updated_at = ? WHERE id = ?",
                    (utc_now().isoformat(), workflow_id),
                )
                return False
            conn.execute("DELETE FROM workflow_versions WHERE workflow_id = ?", (workflow_id,))
            conn.execute("DELETE FROM workflows WHERE id = ?", (workflow_id,))
            return True

    # ========== Executions ==========

    def create_execution(self, execution: WorkflowExecution) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO executions (id, workflow_id, workflow_version, tenant_id,
                    triggered_by, trigger_input, status, started_at, finished_at,
                    current_node_id, error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    execution.id,
                    execution.workflow_id,
                    execution.workflow_version,
                    execution.tenant_id,
                    execution.triggered_by.value,
                    _dumps(execution.trigger_input),
                    execution.status.value,
                    execution.started_at.isoformat(),
                    execution.finished_at.isoformat() if execution.finished_at else None,
                    execution.current_node_id,
                    _dumps(execution.error),
                ),
            )

    def get_execution(self, execution_id: str) -> WorkflowExecution:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM executions WHERE id = ?", (execution_id,)).fetchone()
        if not row:
            raise ExecutionNotFoundError(f"Execution '{execution_id}' not found")
        return self._row_to_execution(row)

    def list_executions(
        self,
        tenant_id: str | None = None,
        workflow_id: str | None = None,
        statuses: Iterable[ExecutionStatus] | None = None,
    ) -> list[WorkflowExecution]:
        query = "SELECT * FROM executions WHERE 1 = 1"
        params: list[Any] = []
        if tenant_id:
            query += " AND tenant_id = ?"
            params.append(tenant_id)
        if workflow_id:
            query += " AND workflow_id = ?"
            params.append(workflow_id)
        if statuses is not None:
            values = [s.value for s in statuses]
            if not values:
                return []
            query += f" AND status IN ({','.join('?' * len(values))})"
            params.extend(values)
        query += " ORDER BY started_at, id"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_execution(r) for r in rows]

    def transition_execution(
        self,
        execution_id: str,
        new_status: ExecutionStatus,
        error: ExecutionError | None = None,
    ) -> tuple[ExecutionStatus, WorkflowExecution]:
        """Atomically move an execution to ``new_status``.

        The update is guarded by the allowed source states, so a concurrent
        cancel and completion cannot both win. Returns (previous, updated).
        """
        allowed = TRANSITIONS[new_status]
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT status FROM executions WHERE id = ?", (execution_id,)
            ).fetchone()
            if not row:
                raise ExecutionNotFoundError(f"Execution '{execution_id}' not found")
            previous = ExecutionStatus(row["status"])
            if previous not in allowed:
                raise InvalidTransitionError(
                    f"Execution '{execution_id}': {previous.value} -> {new_status.value} not allowed"
                )
            finished_at = utc_now().isoformat() if new_status.is_terminal else None
            conn.execute(
                """
                UPDATE executions SET status = ?, finished_at = ?, error = COALESCE(?, error)
                WHERE id = ? AND status = ?
                """,
                (new_status.value, finished_at, _dumps(error), execution_id, previous.value),
            )
            updated = conn.execute(
                "SELECT * FROM executions WHERE id = ?", (execution_id,)
            ).fetchone()
        return previous, self._row_to_execution(updated)

    def reopen_execution(self, execution_id: str) -> WorkflowExecution:
        """Move a failed execution back to running for an operator retry."""
        with self.transaction() as conn:
            result = conn.execute(
                """
                UPDATE executions SET status = 'running', finished_at = NULL, error = NULL
                WHERE id = ? AND status = 'failed'
                """,
                (execution_id,),
            )
            if result.rowcount == 0:
                row = conn.execute(
                    "SELECT status FROM executions WHERE id = ?", (execution_id,)
                ).fetchone()
                if not row:
                    raise ExecutionNotFoundError(f"Execution '{execution_id}' not found")
                raise InvalidTransitionError(
                    f"Execution '{execution_id}' is {row['status']}; only failed executions "
                    f"can be retried"
                )
            row = conn.execute("SELECT * FROM executions WHERE id = ?", (execution_id,)).fetchone()
        return self._row_to_execution(row)

    def set_current_node(self, execution_id: str, node_id: str | None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE executions SET current_node_id = ? WHERE id = ?", (node_id, execution_id)
            )

    def _row_to_execution(self, row: sqlite3.Row) -> WorkflowExecution:
        error = _loads(row["error"])
        return WorkflowExecution(
            id=row["id"],
            workflow_id=row["workflow_id"],
            workflow_version=row["workflow_version"],
            tenant_id=row["tenant_id"],
            triggered_by=TriggerSource(row["triggered_by"]),
            trigger_input=_loads(row["trigger_input"]) or {},
            status=ExecutionStatus(row["status"]),
            started_at=_ts(row["started_at"]),
            finished_at=_ts(row["finished_at"]),
            current_node_id=row["current_node_id"],
            error=ExecutionError.model_validate(error) if error else None,
        )

    # ========== Node runs ==========

    def save_node_run(self, run: NodeRun) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO node_runs (execution_id, node_id, status, attempts, output, error,
                                       started_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(execution_id, node_id) DO UPDATE SET
                    status = excluded.status,
                    attempts = excluded.attempts,
                    output = excluded.output,
                    error = excluded.error,
                    started_at = excluded.started_at,
                    completed_at = excluded.completed_at
                """,
                (
                    run.execution_id,
                    run.node_id,
                    run.status.value,
                    run.attempts,
                    _dumps(run.output),
                    run.error,
                    run.started_at.isoformat() if run.started_at else None,
                    run.completed_at.isoformat() if run.completed_at else None,
                ),
            )

    def get_node_runs(self, execution_id: str) -> dict[str, NodeRun]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM node_runs WHERE execution_id = ?", (execution_id,)
            ).fetchall()
        return {
            r["node_id"]: NodeRun(
                execution_id=r["execution_id"],
                node_id=r["node_id"],
                status=NodeRunStatus(r["status"]),
                attempts=r["attempts"],
                output=_loads(r["output"]),
                error=r["error"],
                started_at=_ts(r["started_at"]),
                completed_at=_ts(r["completed_at"]),
            )
            for r in rows
        }

    # ========== Execution logs ==========

    def append_log(
        self,
        execution_id: str,
        level: LogLevel,
        message: str,
        node_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> ExecutionLog:
        """Append a log entry, assigning the next sequence number for the execution."""
        timestamp = utc_now()
        with self.transaction() as conn:
            sequence = conn.execute(
                "SELECT COALESCE(MAX(sequence), 0) + 1 FROM execution_logs WHERE execution_id = ?",
                (execution_id,),
            ).fetchone()[0]
            conn.execute(
                """
                INSERT INTO execution_logs (execution_id, sequence, node_id, level, message,
                                            data, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    execution_id,
                    sequence,
                    node_id,
                    level.value,
                    message,
                    _dumps(data),
                    timestamp.isoformat(),
                ),
            )
        return ExecutionLog(
            execution_id=execution_id,
            sequence=sequence,
            node_id=node_id,
            level=level,
            message=message,
            data=data,
            timestamp=timestamp,
        )

    def get_logs(
        self,
        execution_id: str,
        levels: Iterable[LogLevel] | None = None,
        node_id: str | None = None,
        after_sequence: int = 0,
        limit: int | None = None,
    ) -> list[ExecutionLog]:
        query = "SELECT * FROM execution_logs WHERE execution_id = ? AND sequence > ?"
        params: list[Any] = [execution_id, after_sequence]
        if levels is not None:
            values = [lvl.value for lvl in levels]
            if not values:
                return []
            query += f" AND level IN ({','.join('?' * len(values))})"
            params.extend(values)
        if node_id is not None:
            query += " AND node_id = ?"
            params.append(node_id)
        query += " ORDER BY sequence"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            ExecutionLog(
                execution_id=r["execution_id"],
                sequence=r["sequence"],
                node_id=r["node_id"],
                level=LogLevel(r["level"]),
                message=r["message"],
                data=_loads(r["data"]),
                timestamp=_ts(r["timestamp"]),
            )
            for r in rows
        ]

    # ========== Templates ==========

    def insert_template(self, template_id: str, name: str, category: str | None,
                        definition: str) -> None:
        """Insert a published template; ids are never overwritten."""
        with self._connect() as conn:
            try:
                conn.execute(
                    "INSERT INTO templates (id, name, category, definition) VALUES (?, ?, ?, ?)",
                    (template_id, name, category, definition),
                )
            except sqlite3.IntegrityError as e:
                raise TemplateError(f"Template '{template_id}' is already published") from e

    def get_template_row(self, template_id: str) -> sqlite3.Row | None:
        with self._connect() as conn:
            return conn.execute("SELECT * FROM templates WHERE id = ?", (template_id,)).fetchone()

    def list_template_rows(self, category: str | None = None) -> list[sqlite3.Row]:
        with self._connect() as conn:
            if category:
                return conn.execute(
                    "SELECT * FROM templates WHERE category = ? ORDER BY published_at, id",
                    (category,),
                ).fetchall()
            return conn.execute("SELECT * FROM templates ORDER BY published_at, id").fetchall()

    def increment_template_deployed(self, template_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE templates SET deployed = deployed + 1 WHERE id = ?", (template_id,)
            )

    def record_template_outcome(
        self, template_id: str, success: bool, roi: float | None = None
    ) -> None:
        """Fold one execution outcome into the template's running averages."""
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT outcomes, roi_samples, avg_success, avg_roi FROM templates WHERE id = ?",
                (template_id,),
            ).fetchone()
            if not row:
                raise TemplateError(f"Template '{template_id}' not found")
            outcomes = row["outcomes"] + 1
            avg_success = row["avg_success"] + ((1.0 if success else 0.0) - row["avg_success"]) / outcomes
            roi_samples, avg_roi = row["roi_samples"], row["avg_roi"]
            if roi is not None:
                roi_samples += 1
                avg_roi += (roi - avg_roi) / roi_samples
            conn.execute(
                """
                UPDATE templates SET outcomes = ?, roi_samples = ?, avg_success = ?, avg_roi = ?
                WHERE id = ?
                """,
                (outcomes, roi_samples, avg_success, avg_roi, template_id),
            )

    # ========== Orchestrations ==========

    def upsert_orchestration(self, orchestration_id: str, tenant_id: str,
                             workflow_ids: list[str], agent_ids: list[str], state: str,
                             last_run_at: datetime | None, last_error: Any) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO orchestrations (id, tenant_id, workflow_ids, agent_ids, state,
                                            last_run_at, last_error)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(tenant_id) DO UPDATE SET
                    workflow_ids = excluded.workflow_ids,
                    agent_ids = excluded.agent_ids,
                    state = excluded.state,
                    last_run_at = excluded.last_run_at,
                    last_error = excluded.last_error
                """,
                (
                    orchestration_id,
                    tenant_id,
                    _dumps(workflow_ids),
                    _dumps(agent_ids),
                    state,
                    last_run_at.isoformat() if last_run_at else None,
                    _dumps(last_error),
                ),
            )

    def list_orchestration_rows(self) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM orchestrations ORDER BY tenant_id").fetchall()
        return [
            {
                **dict(r),
                "workflow_ids": _loads(r["workflow_ids"]) or [],
                "agent_ids": _loads(r["agent_ids"]) or [],
                "last_error": _loads(r["last_error"]),
            }
            for r in rows
        ]
