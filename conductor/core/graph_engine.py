"""Workflow execution engine.

Runs one asyncio task per execution. Each task walks the workflow version the
execution was bound to, level by level in topological order, and persists
every step (execution status, node runs, logs) through the repository so the
state survives restarts and can be inspected from another process.

Key properties:
- Status transitions are guarded updates in the store; a cancel racing a
  completion has exactly one winner.
- Cancellation is cooperative: the stored status is checked before every
  dispatch (retries included). An in-flight handler call is never aborted.
- Handler calls and backoff waits are the only suspension points. No lock is
  held across them.
- DB calls are short and synchronous on the loop thread, which is what keeps
  log appends in sequence order for live subscribers.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections import defaultdict
from collections.abc import Callable
from enum import Enum
from typing import Any

from conductor.config import ConductorConfig
from conductor.core.errors import (
    BackpressureError,
    ExecutionNotFoundError,
    HandlerError,
    InvalidTransitionError,
    NodeTimeoutError,
    WorkflowNotFoundError,
)
from conductor.core.graph_schema import Node, Workflow
from conductor.core.handlers import HandlerContext, HandlerRegistry
from conductor.core.log_stream import LogStream
from conductor.core.models import (
    ExecutionError,
    ExecutionStatus,
    LogLevel,
    NodeRun,
    NodeRunStatus,
    TriggerSource,
    WorkflowExecution,
    utc_now,
)
from conductor.core.retry import RetryDecision, RetryManager
from conductor.core.state import Repository

logger = logging.getLogger(__name__)

TransitionListener = Callable[[WorkflowExecution, ExecutionStatus, ExecutionStatus], None]
AdmissionCheck = Callable[[str], None]

_ACTIVE = frozenset({ExecutionStatus.PENDING, ExecutionStatus.RUNNING, ExecutionStatus.RETRYING})


class _Outcome(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    HALTED = "halted"  # Execution was cancelled or failed elsewhere


def _normalize_output(output: Any) -> dict[str, Any]:
    """Coerce a handler result to a JSON-safe dict."""
    if hasattr(output, "model_dump"):
        output = output.model_dump(mode="json")
    if output is None:
        output = {}
    elif not isinstance(output, dict):
        output = {"result": output}
    return json.loads(json.dumps(output, default=str))


class ExecutionEngine:
    """Drives workflow executions from trigger to terminal status."""

    def __init__(
        self,
        db: Repository,
        handlers: HandlerRegistry | None = None,
        *,
        config: ConductorConfig | None = None,
        log_stream: LogStream | None = None,
        retry_manager: RetryManager | None = None,
    ):
        self.db = db
        self.config = config or ConductorConfig()
        self.handlers = handlers or HandlerRegistry()
        self.log_stream = log_stream or LogStream(db)
        self.retry = retry_manager or RetryManager(
            self.log_stream,
            default_policy=self.config.default_policy(),
            policies=self.config.retry_policies(),
        )
        self._tasks: dict[str, asyncio.Task] = {}
        self._active_by_tenant: dict[str, set[str]] = defaultdict(set)
        self._retrying: dict[str, int] = defaultdict(int)
        self._listeners: list[TransitionListener] = []
        self._admission_checks: list[AdmissionCheck] = []

    # ========== Wiring ==========

    def add_listener(self, listener: TransitionListener) -> None:
        """Call ``listener(execution, previous, new)`` after every status change."""
        self._listeners.append(listener)

    def add_admission_check(self, check: AdmissionCheck) -> None:
        """Call ``check(tenant_id)`` before accepting a run; it raises to reject."""
        self._admission_checks.append(check)

    # ========== Public API ==========

    async def run(
        self,
        workflow_id: str,
        trigger_input: dict[str, Any] | None = None,
        *,
        tenant_id: str,
        triggered_by: TriggerSource = TriggerSource.USER,
    ) -> str:
        """Start an execution and return its id without waiting for it to finish.

        Raises:
            WorkflowNotFoundError: Unknown workflow, or owned by another tenant.
            BackpressureError: Tenant is at its concurrency cap.
            OrchestrationPausedError: Tenant orchestration is paused.
        """
        workflow = self.db.get_workflow(workflow_id)
        if workflow.tenant_id != tenant_id:
            raise WorkflowNotFoundError(f"Workflow '{workflow_id}' not found")

        for check in self._admission_checks:
            check(tenant_id)
        self._check_capacity(tenant_id)

        execution = WorkflowExecution(
            id=f"exec-{uuid.uuid4().hex[:12]}",
            workflow_id=workflow.id,
            workflow_version=workflow.version,
            tenant_id=tenant_id,
            triggered_by=triggered_by,
            trigger_input=dict(trigger_input or {}),
        )
        self.db.create_execution(execution)
        self.log_stream.open(execution.id)
        logger.info(
            f"Created execution {execution.id} for {workflow.id} v{workflow.version} "
            f"(tenant={tenant_id})"
        )

        result = workflow.validate_graph()
        if not result.ok:
            self._fail_structural(execution.id, result.errors)
            return execution.id
        for warning in result.warnings:
            self.log_stream.append(execution.id, LogLevel.WARNING, warning)

        self._start_task(execution.id, workflow, resumed=False)
        return execution.id

    async def wait(self, execution_id: str) -> WorkflowExecution:
        """Wait for the execution's task (if any is running here) and return its record."""
        task = self._tasks.get(execution_id)
        if task is not None:
            await asyncio.shield(task)
        return self.db.get_execution(execution_id)

    def cancel(self, execution_id: str) -> WorkflowExecution:
        """Request cancellation. The in-flight handler call, if any, runs to completion."""
        _, updated = self._transition(execution_id, ExecutionStatus.CANCELLED)
        self.log_stream.append(
            execution_id,
            LogLevel.WARNING,
            "Execution cancelled",
            node_id=updated.current_node_id,
        )
        if execution_id not in self._tasks:
            self.log_stream.close(execution_id)
        return updated

    async def retry_node(self, execution_id: str, node_id: str | None = None) -> str:
        """Operator retry of a failed execution from its failed node onward.

        Upstream nodes that already completed are not re-run; their stored
        outputs feed the retried node.
        """
        execution = self.db.get_execution(execution_id)
        if execution.status != ExecutionStatus.FAILED:
            raise InvalidTransitionError(
                f"Execution '{execution_id}' is {execution.status.value}; only failed "
                f"executions can be retried"
            )
        if execution.error is None or execution.error.node_id is None:
            raise InvalidTransitionError(
                f"Execution '{execution_id}' did not fail on a node and cannot be retried"
            )
        node_id = node_id or execution.error.node_id
        run = self.db.get_node_runs(execution_id).get(node_id)
        if run is None or run.status != NodeRunStatus.FAILED:
            raise InvalidTransitionError(
                f"Node '{node_id}' did not fail in execution '{execution_id}'"
            )

        workflow = self.db.get_workflow(execution.workflow_id, execution.workflow_version)
        self._check_capacity(execution.tenant_id)

        self.retry.reset(execution_id, node_id)
        reopened = self.db.reopen_execution(execution_id)
        self._notify(reopened, ExecutionStatus.FAILED, ExecutionStatus.RUNNING)
        self.log_stream.open(execution_id)
        self.log_stream.append(
            execution_id, LogLevel.INFO, f"Manual retry requested for node '{node_id}'",
            node_id=node_id,
        )
        self._start_task(execution_id, workflow, resumed=True)
        return execution_id

    def get_execution(self, execution_id: str) -> WorkflowExecution:
        return self.db.get_execution(execution_id)

    def status(self, execution_id: str) -> ExecutionStatus:
        return self.db.get_execution(execution_id).status

    def node_states(self, execution_id: str) -> dict[str, NodeRunStatus]:
        return {nid: run.status for nid, run in self.db.get_node_runs(execution_id).items()}

    def active_executions(self, tenant_id: str | None = None) -> list[str]:
        if tenant_id is not None:
            return sorted(self._active_by_tenant.get(tenant_id, ()))
        return sorted(self._tasks)

    def recover_interrupted(self) -> list[str]:
        """Fail executions left non-terminal by a previous process."""
        recovered = []
        for execution in self.db.list_executions(statuses=_ACTIVE):
            if execution.id in self._tasks:
                continue
            error = ExecutionError(
                node_id=execution.current_node_id,
                message="Interrupted: engine restarted before the execution finished",
                code="interrupted",
                last_tried_at=utc_now(),
            )
            try:
                self._transition(execution.id, ExecutionStatus.FAILED, error)
            except InvalidTransitionError:
                continue
            self.log_stream.append(
                execution.id, LogLevel.ERROR, error.message, node_id=execution.current_node_id
            )
            recovered.append(execution.id)
        if recovered:
            logger.warning(f"Marked {len(recovered)} interrupted execution(s) as failed")
        return recovered

    async def shutdown(self) -> None:
        """Cancel every running task and wait for them to settle."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ========== Internals: lifecycle ==========

    def _check_capacity(self, tenant_id: str) -> None:
        active = self._active_by_tenant[tenant_id]
        if len(active) >= self.config.tenant_concurrency_cap:
            raise BackpressureError(
                f"Tenant '{tenant_id}' has {len(active)} active executions "
                f"(cap {self.config.tenant_concurrency_cap})"
            )

    def _start_task(self, execution_id: str, workflow: Workflow, resumed: bool) -> None:
        tenant_id = workflow.tenant_id
        self._active_by_tenant[tenant_id].add(execution_id)
        self._tasks[execution_id] = asyncio.create_task(
            self._execute(execution_id, workflow, resumed), name=f"execution:{execution_id}"
        )

    def _transition(
        self,
        execution_id: str,
        new_status: ExecutionStatus,
        error: ExecutionError | None = None,
    ) -> tuple[ExecutionStatus, WorkflowExecution]:
        previous, updated = self.db.transition_execution(execution_id, new_status, error)
        logger.debug(f"Execution {execution_id}: {previous.value} -> {new_status.value}")
        self._notify(updated, previous, new_status)
        return previous, updated

    def _notify(
        self, execution: WorkflowExecution, previous: ExecutionStatus, new: ExecutionStatus
    ) -> None:
        for listener in self._listeners:
            try:
                listener(execution, previous, new)
            except Exception:
                logger.exception(f"Transition listener failed for {execution.id}")

    def _fail_structural(self, execution_id: str, errors: list[str]) -> None:
        message = "Structural validation failed: " + "; ".join(errors)
        self.log_stream.append(execution_id, LogLevel.ERROR, message, data={"errors": errors})
        self._transition(
            execution_id,
            ExecutionStatus.FAILED,
            ExecutionError(message=message, code="structural_error", last_tried_at=utc_now()),
        )
        self.log_stream.close(execution_id)

    def _is_halted(self, execution_id: str) -> bool:
        return self.db.get_execution(execution_id).status.is_terminal

    async def _execute(self, execution_id: str, workflow: Workflow, resumed: bool) -> None:
        try:
            if not resumed:
                try:
                    self._transition(execution_id, ExecutionStatus.RUNNING)
                except InvalidTransitionError:
                    logger.info(f"Execution {execution_id} cancelled before it started")
                    return
                self.log_stream.append(
                    execution_id,
                    LogLevel.INFO,
                    f"Execution started: '{workflow.name}' v{workflow.version}",
                    data={"workflow_id": workflow.id, "version": workflow.version},
                )
            await self._process(execution_id, workflow, resumed)
        except asyncio.CancelledError:
            self._abort(execution_id, "Execution aborted: engine shut down", "shutdown")
            raise
        except Exception as e:
            logger.exception(f"Execution {execution_id} crashed")
            self._abort(execution_id, f"Engine error: {type(e).__name__}: {e}", "engine_error")
        finally:
            self._finish(execution_id, workflow.tenant_id)

    def _abort(self, execution_id: str, message: str, code: str) -> None:
        try:
            self._transition(
                execution_id,
                ExecutionStatus.FAILED,
                ExecutionError(message=message, code=code, last_tried_at=utc_now()),
            )
        except (InvalidTransitionError, ExecutionNotFoundError):
            return
        self.log_stream.append(execution_id, LogLevel.ERROR, message)

    def _finish(self, execution_id: str, tenant_id: str) -> None:
        self._tasks.pop(execution_id, None)
        self._active_by_tenant[tenant_id].discard(execution_id)
        self._retrying.pop(execution_id, None)
        self.retry.clear(execution_id)
        self.log_stream.close(execution_id)

    # ========== Internals: traversal ==========

    async def _process(self, execution_id: str, workflow: Workflow, resumed: bool) -> None:
        execution = self.db.get_execution(execution_id)
        levels = workflow.execution_levels()
        reachable = {node_id for level in levels for node_id in level}

        runs = self.db.get_node_runs(execution_id) if resumed else {}
        statuses = {nid: run.status for nid, run in runs.items()}
        outputs = {
            nid: run.output or {}
            for nid, run in runs.items()
            if run.status == NodeRunStatus.COMPLETED
        }

        if not resumed:
            for node in workflow.nodes:
                if node.id not in reachable:
                    reason = "disabled" if not node.enabled else "unreachable"
                    self._save_skip(execution_id, node.id, statuses)
                    self.log_stream.append(
                        execution_id, LogLevel.DEBUG, f"Node skipped ({reason})", node_id=node.id
                    )

        parallel = self.config.max_parallel_nodes
        semaphore = asyncio.Semaphore(parallel)

        for level in levels:
            pending = [
                nid
                for nid in level
                if statuses.get(nid) not in (NodeRunStatus.COMPLETED, NodeRunStatus.SKIPPED)
            ]
            if not pending:
                continue

            if parallel > 1 and len(pending) > 1:

                async def bounded(node_id: str) -> _Outcome:
                    async with semaphore:
                        return await self._run_node(
                            execution, workflow, node_id, outputs, statuses
                        )

                # All siblings finish before the level's outcome is decided
                outcomes = await asyncio.gather(*[bounded(nid) for nid in pending])
            else:
                outcomes = []
                for node_id in pending:
                    outcome = await self._run_node(execution, workflow, node_id, outputs, statuses)
                    outcomes.append(outcome)
                    if outcome in (_Outcome.FAILED, _Outcome.HALTED):
                        break

            if any(o in (_Outcome.FAILED, _Outcome.HALTED) for o in outcomes):
                return

        try:
            self._transition(execution_id, ExecutionStatus.SUCCESS)
        except InvalidTransitionError:
            # Cancelled while the last node was in flight
            logger.info(f"Execution {execution_id} finished after cancellation")
            return
        self.db.set_current_node(execution_id, None)
        self.log_stream.append(execution_id, LogLevel.INFO, "Execution completed")

    def _save_skip(
        self, execution_id: str, node_id: str, statuses: dict[str, NodeRunStatus]
    ) -> None:
        now = utc_now()
        self.db.save_node_run(
            NodeRun(
                execution_id=execution_id,
                node_id=node_id,
                status=NodeRunStatus.SKIPPED,
                completed_at=now,
            )
        )
        statuses[node_id] = NodeRunStatus.SKIPPED

    def _resolve_inbound(
        self,
        execution: WorkflowExecution,
        workflow: Workflow,
        node: Node,
        outputs: dict[str, dict[str, Any]],
        statuses: dict[str, NodeRunStatus],
    ) -> dict[str, Any] | None:
        """Inbound data for a node, or None when no inbound connection is active."""
        connections = workflow.inbound(node.id)
        if not connections:
            return dict(execution.trigger_input)

        inbound: dict[str, Any] = {}
        active = False
        for conn in connections:
            if statuses.get(conn.source) != NodeRunStatus.COMPLETED:
                continue
            source_output = outputs.get(conn.source, {})
            if conn.condition is not None and not conn.condition.evaluate(source_output):
                continue
            active = True
            inbound.update(conn.map_output(source_output))
        return inbound if active else None

    async def _run_node(
        self,
        execution: WorkflowExecution,
        workflow: Workflow,
        node_id: str,
        outputs: dict[str, dict[str, Any]],
        statuses: dict[str, NodeRunStatus],
    ) -> _Outcome:
        execution_id = execution.id
        if self._is_halted(execution_id):
            return _Outcome.HALTED

        node = workflow.get_node(node_id)
        inbound = self._resolve_inbound(execution, workflow, node, outputs, statuses)
        if inbound is None:
            self._save_skip(execution_id, node_id, statuses)
            self.log_stream.append(
                execution_id,
                LogLevel.INFO,
                f"Node '{node.name or node.id}' skipped: no active inbound connection",
                node_id=node_id,
            )
            return _Outcome.SKIPPED

        run = NodeRun(execution_id=execution_id, node_id=node_id)
        previous = self.db.get_node_runs(execution_id).get(node_id)
        if previous is not None:
            run.attempts = previous.attempts

        handler_timeout = node.config.timeout or self.config.node_timeout
        self.db.set_current_node(execution_id, node_id)

        while True:
            if self._is_halted(execution_id):
                return _Outcome.HALTED

            run.attempts += 1
            run.status = NodeRunStatus.RUNNING
            run.started_at = utc_now()
            run.error = None
            self.db.save_node_run(run)
            self.log_stream.append(
                execution_id,
                LogLevel.DEBUG,
                f"Dispatching {node.kind.value} node '{node.name or node.id}' "
                f"(attempt {run.attempts})",
                node_id=node_id,
            )

            context = HandlerContext(
                execution_id=execution_id,
                tenant_id=execution.tenant_id,
                workflow_id=workflow.id,
                attempt=run.attempts,
                timeout=handler_timeout,
                emit=lambda level, message, data=None: self.log_stream.append(
                    execution_id, level, message, node_id=node_id, data=data
                ),
            )

            try:
                handler = self.handlers.get(node.kind)
                output = await asyncio.wait_for(
                    handler(node, dict(inbound), context), timeout=handler_timeout
                )
                output = _normalize_output(output)
            except TimeoutError:
                error: HandlerError = NodeTimeoutError(
                    f"Node '{node_id}' timed out after {handler_timeout:g}s", node_id
                )
            except HandlerError as e:
                error = e
                error.node_id = error.node_id or node_id
            except Exception as e:
                error = HandlerError(f"{type(e).__name__}: {e}", node_id)
            else:
                run.status = NodeRunStatus.COMPLETED
                run.output = output
                run.completed_at = utc_now()
                self.db.save_node_run(run)
                outputs[node_id] = output
                statuses[node_id] = NodeRunStatus.COMPLETED
                self.log_stream.append(
                    execution_id,
                    LogLevel.SUCCESS,
                    f"Node '{node.name or node.id}' completed",
                    node_id=node_id,
                    data={"output": output, "attempts": run.attempts},
                )
                return _Outcome.COMPLETED

            logger.info(f"Node {node_id} in {execution_id} failed: {error}")
            run.error = str(error)
            if self._is_halted(execution_id):
                return self._halt_node(run, statuses)
            decision = self.retry.on_node_failure(execution_id, node, error)

            if decision == RetryDecision.RETRY:
                if not self._enter_retrying(execution_id):
                    return self._halt_node(run, statuses)
                try:
                    await self.retry.backoff(execution_id, node)
                finally:
                    resumed = self._leave_retrying(execution_id)
                if not resumed:
                    return self._halt_node(run, statuses)
                continue

            run.status = NodeRunStatus.FAILED
            run.completed_at = utc_now()
            self.db.save_node_run(run)
            statuses[node_id] = NodeRunStatus.FAILED
            try:
                self._transition(
                    execution_id,
                    ExecutionStatus.FAILED,
                    ExecutionError(
                        node_id=node_id,
                        message=str(error),
                        code=error.code,
                        retry_count=run.attempts - 1,
                        last_tried_at=run.completed_at,
                    ),
                )
            except InvalidTransitionError:
                return _Outcome.HALTED
            return _Outcome.FAILED

    def _halt_node(self, run: NodeRun, statuses: dict[str, NodeRunStatus]) -> _Outcome:
        run.status = NodeRunStatus.FAILED
        run.completed_at = utc_now()
        self.db.save_node_run(run)
        statuses[run.node_id] = NodeRunStatus.FAILED
        return _Outcome.HALTED

    def _enter_retrying(self, execution_id: str) -> bool:
        """Move to RETRYING for the first branch that backs off; False if halted."""
        if self._retrying[execution_id] == 0:
            try:
                self._transition(execution_id, ExecutionStatus.RETRYING)
            except InvalidTransitionError:
                return False
        self._retrying[execution_id] += 1
        return True

    def _leave_retrying(self, execution_id: str) -> bool:
        """Return to RUNNING once no branch is backing off; False if halted."""
        self._retrying[execution_id] -= 1
        if self._retrying[execution_id] > 0:
            return not self._is_halted(execution_id)
        try:
            self._transition(execution_id, ExecutionStatus.RUNNING)
        except InvalidTransitionError:
            return False
        return True
