"""Tests for the workflow execution engine.

Scenarios run end to end against a real SQLite database. Handlers are async
stubs and the retry scheduler records delays instead of sleeping.
"""

import asyncio

import pytest

from conductor.core.errors import (
    BackpressureError,
    HandlerError,
    InvalidTransitionError,
    WorkflowNotFoundError,
)
from conductor.core.graph_schema import (
    AgentRole,
    Connection,
    GuardCondition,
    Node,
    NodeKind,
    Workflow,
)
from conductor.core.models import (
    ExecutionStatus,
    LogLevel,
    NodeRunStatus,
    WorkflowExecution,
)
from conductor.core.retry import RetryPolicy
from conftest import TENANT, CallRecorder, build_lead_workflow

NO_RETRY = RetryPolicy(max_retries=0)


def _run(engine, workflow_id, trigger_input=None, tenant_id=TENANT) -> WorkflowExecution:
    async def go():
        execution_id = await engine.run(workflow_id, trigger_input, tenant_id=tenant_id)
        return await engine.wait(execution_id)

    return asyncio.run(go())


def _visible(engine, execution_id, node_id=None):
    """(level, node_id) pairs without DEBUG entries."""
    return [
        (e.level, e.node_id)
        for e in engine.log_stream.query(execution_id, node_id=node_id)
        if e.level != LogLevel.DEBUG
    ]


def _transitions(engine) -> list[tuple[ExecutionStatus, ExecutionStatus]]:
    seen = []
    engine.add_listener(lambda execution, previous, new: seen.append((previous, new)))
    return seen


# =============================================================================
# Core scenarios
# =============================================================================


class TestHappyPath:
    """trigger -> agent task -> email, every node succeeds."""

    def test_all_nodes_succeed(self, make_engine, lead_workflow, dispatcher):
        email = CallRecorder(default={"sent": True})
        engine = make_engine(
            handlers={NodeKind.AGENT_TASK: dispatcher.handle, NodeKind.EMAIL_SEND: email}
        )
        transitions = _transitions(engine)

        execution = _run(engine, lead_workflow.id, {"lead": "Omar"})

        assert execution.status == ExecutionStatus.SUCCESS
        assert execution.finished_at is not None
        assert execution.current_node_id is None
        assert transitions == [
            (ExecutionStatus.PENDING, ExecutionStatus.RUNNING),
            (ExecutionStatus.RUNNING, ExecutionStatus.SUCCESS),
        ]
        assert _visible(engine, execution.id) == [
            (LogLevel.INFO, None),
            (LogLevel.SUCCESS, "trigger"),
            (LogLevel.AGENT, "qualify"),
            (LogLevel.SUCCESS, "qualify"),
            (LogLevel.SUCCESS, "email"),
            (LogLevel.INFO, None),
        ]
        assert email.calls[0]["inbound"] == {
            "lead": "Omar",
            "qualified": True,
            "agent": "agent-sara",
        }
        assert engine.node_states(execution.id) == {
            "trigger": NodeRunStatus.COMPLETED,
            "qualify": NodeRunStatus.COMPLETED,
            "email": NodeRunStatus.COMPLETED,
        }

    def test_execution_binds_saved_version(self, make_engine, test_db, lead_workflow):
        """An execution records the version it ran against."""
        test_db.save_workflow(lead_workflow.set_enabled("email", False))
        engine = make_engine(handlers={NodeKind.AGENT_TASK: CallRecorder()})

        execution = _run(engine, lead_workflow.id)

        assert execution.workflow_version == 2
        assert engine.node_states(execution.id)["email"] == NodeRunStatus.SKIPPED

    def test_listener_failure_does_not_stop_execution(self, make_engine, lead_workflow, mocker):
        engine = make_engine(
            handlers={NodeKind.AGENT_TASK: CallRecorder(), NodeKind.EMAIL_SEND: CallRecorder()}
        )
        broken = mocker.Mock(side_effect=RuntimeError("dashboard offline"))
        engine.add_listener(broken)

        execution = _run(engine, lead_workflow.id)

        assert execution.status == ExecutionStatus.SUCCESS
        assert broken.call_count == 2
        _, previous, new = broken.call_args.args
        assert (previous, new) == (ExecutionStatus.RUNNING, ExecutionStatus.SUCCESS)

    def test_success_log_carries_output(self, make_engine, lead_workflow):
        engine = make_engine(
            handlers={
                NodeKind.AGENT_TASK: CallRecorder(default={"score": 88}),
                NodeKind.EMAIL_SEND: CallRecorder(default="queued"),
            }
        )
        execution = _run(engine, lead_workflow.id)

        success = engine.log_stream.query(execution.id, levels=[LogLevel.SUCCESS], node_id="qualify")
        assert success[0].data == {"output": {"score": 88}, "attempts": 1}
        runs = engine.db.get_node_runs(execution.id)
        assert runs["email"].output == {"result": "queued"}

    def test_live_subscription_sees_every_entry(self, make_engine, lead_workflow):
        engine = make_engine(
            handlers={NodeKind.AGENT_TASK: CallRecorder(), NodeKind.EMAIL_SEND: CallRecorder()}
        )

        async def go():
            execution_id = await engine.run(lead_workflow.id, {}, tenant_id=TENANT)
            streamed = [e.sequence async for e in engine.log_stream.subscribe(execution_id)]
            return execution_id, streamed

        execution_id, streamed = asyncio.run(go())
        stored = [e.sequence for e in engine.log_stream.query(execution_id)]
        assert streamed == stored == list(range(1, len(stored) + 1))


class TestRetries:
    def test_transient_failures_then_success(self, make_engine, lead_workflow, scheduler):
        """Two failures are retried with exponential backoff before the node succeeds."""
        qualify = CallRecorder(
            results=[HandlerError("model busy"), RuntimeError("socket closed"), {"score": 90}]
        )
        engine = make_engine(
            handlers={NodeKind.AGENT_TASK: qualify, NodeKind.EMAIL_SEND: CallRecorder()}
        )
        transitions = _transitions(engine)

        execution = _run(engine, lead_workflow.id)

        assert execution.status == ExecutionStatus.SUCCESS
        assert scheduler.delays == [1.0, 2.0]
        assert [c["attempt"] for c in qualify.calls] == [1, 2, 3]
        assert _visible(engine, execution.id, node_id="qualify") == [
            (LogLevel.WARNING, "qualify"),
            (LogLevel.WARNING, "qualify"),
            (LogLevel.SUCCESS, "qualify"),
        ]
        assert transitions.count((ExecutionStatus.RUNNING, ExecutionStatus.RETRYING)) == 2
        assert transitions.count((ExecutionStatus.RETRYING, ExecutionStatus.RUNNING)) == 2
        assert engine.db.get_node_runs(execution.id)["qualify"].attempts == 3

    def test_budget_exhausted_makes_n_plus_one_attempts(self, make_engine, lead_workflow):
        qualify = CallRecorder(default=HandlerError("model down"))
        engine = make_engine(
            handlers={NodeKind.AGENT_TASK: qualify, NodeKind.EMAIL_SEND: CallRecorder()},
            default_policy=RetryPolicy(max_retries=3),
        )
        execution = _run(engine, lead_workflow.id)

        assert execution.status == ExecutionStatus.FAILED
        assert len(qualify.calls) == 4
        assert execution.error.node_id == "qualify"
        assert execution.error.code == "handler_error"
        assert execution.error.retry_count == 3
        levels = [lvl for lvl, _ in _visible(engine, execution.id, node_id="qualify")]
        assert levels == [LogLevel.WARNING] * 3 + [LogLevel.ERROR]

    def test_terminal_failure_stops_downstream(self, make_engine, test_db, lead_workflow):
        """A failing node with no retry budget fails the execution and nothing after it runs."""
        wf = lead_workflow.add_node(Node(id="archive", kind=NodeKind.CUSTOM)).add_connection(
            Connection(source="email", target="archive")
        )
        wf = test_db.save_workflow(wf)
        archive = CallRecorder()
        engine = make_engine(
            handlers={
                NodeKind.AGENT_TASK: CallRecorder(),
                NodeKind.EMAIL_SEND: CallRecorder(default=HandlerError("smtp refused")),
                NodeKind.CUSTOM: archive,
            },
            policies={NodeKind.EMAIL_SEND: NO_RETRY},
        )
        execution = _run(engine, wf.id)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error.node_id == "email"
        assert execution.error.message == "smtp refused"
        assert execution.error.retry_count == 0
        assert archive.calls == []
        assert "archive" not in engine.node_states(execution.id)
        assert engine.node_states(execution.id)["email"] == NodeRunStatus.FAILED

    def test_missing_integration_is_dispatch_error(self, make_engine, lead_workflow):
        engine = make_engine(handlers={NodeKind.AGENT_TASK: CallRecorder()})
        execution = _run(engine, lead_workflow.id)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error.code == "dispatch_error"
        assert "No integration registered for node kind 'email_send'" in execution.error.message

    def test_timeout(self, make_engine, test_db):
        async def slow(node, inbound, context):
            await asyncio.sleep(5)

        wf = build_lead_workflow().update_node_config("email", {"timeout": 0.01})
        test_db.save_workflow(wf)
        engine = make_engine(
            handlers={NodeKind.AGENT_TASK: CallRecorder(), NodeKind.EMAIL_SEND: slow},
            policies={NodeKind.EMAIL_SEND: NO_RETRY},
        )
        execution = _run(engine, wf.id)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error.code == "timeout"
        assert "timed out after 0.01s" in execution.error.message

    def test_manual_retry_resumes_from_failed_node(self, make_engine, lead_workflow):
        qualify = CallRecorder(default={"score": 91})
        email = CallRecorder(results=[HandlerError("smtp refused"), {"sent": True}])
        engine = make_engine(
            handlers={NodeKind.AGENT_TASK: qualify, NodeKind.EMAIL_SEND: email},
            policies={NodeKind.EMAIL_SEND: NO_RETRY},
        )

        async def go():
            execution_id = await engine.run(lead_workflow.id, {"lead": "Omar"}, tenant_id=TENANT)
            failed = await engine.wait(execution_id)
            await engine.retry_node(execution_id)
            return failed, await engine.wait(execution_id)

        failed, retried = asyncio.run(go())

        assert failed.status == ExecutionStatus.FAILED
        assert retried.status == ExecutionStatus.SUCCESS
        assert retried.error is None
        assert len(qualify.calls) == 1
        assert email.calls[1]["inbound"] == {"score": 91}
        assert engine.db.get_node_runs(retried.id)["email"].attempts == 2
        messages = [e.message for e in engine.log_stream.query(retried.id)]
        assert "Manual retry requested for node 'email'" in messages

    def test_manual_retry_requires_failed_execution(self, make_engine, lead_workflow):
        engine = make_engine(
            handlers={NodeKind.AGENT_TASK: CallRecorder(), NodeKind.EMAIL_SEND: CallRecorder()}
        )
        execution = _run(engine, lead_workflow.id)
        with pytest.raises(InvalidTransitionError, match="only failed"):
            asyncio.run(engine.retry_node(execution.id))


# =============================================================================
# Cancellation
# =============================================================================


class TestCancellation:
    def test_cancel_during_node_stops_downstream(self, make_engine, lead_workflow):
        """The in-flight call completes but nothing else is dispatched."""
        engine = None

        async def qualify(node, inbound, context):
            engine.cancel(context.execution_id)
            return {"score": 80}

        email = CallRecorder()
        engine = make_engine(handlers={NodeKind.AGENT_TASK: qualify, NodeKind.EMAIL_SEND: email})
        execution = _run(engine, lead_workflow.id)

        assert execution.status == ExecutionStatus.CANCELLED
        assert email.calls == []
        assert engine.node_states(execution.id)["qualify"] == NodeRunStatus.COMPLETED
        messages = [e.message for e in engine.log_stream.query(execution.id)]
        assert "Execution cancelled" in messages
        assert "Execution completed" not in messages

    def test_cancel_stops_retries(self, make_engine, lead_workflow):
        engine = None
        calls = []

        async def qualify(node, inbound, context):
            calls.append(context.attempt)
            engine.cancel(context.execution_id)
            raise HandlerError("busy")

        engine = make_engine(handlers={NodeKind.AGENT_TASK: qualify})
        execution = _run(engine, lead_workflow.id)

        assert execution.status == ExecutionStatus.CANCELLED
        assert calls == [1]
        warnings = engine.log_stream.query(execution.id, levels=[LogLevel.WARNING])
        assert not any(e.message.startswith("Retry") for e in warnings)

    def test_cancel_terminal_execution_rejected(self, make_engine, lead_workflow):
        engine = make_engine(
            handlers={NodeKind.AGENT_TASK: CallRecorder(), NodeKind.EMAIL_SEND: CallRecorder()}
        )
        execution = _run(engine, lead_workflow.id)
        with pytest.raises(InvalidTransitionError):
            engine.cancel(execution.id)
        assert engine.status(execution.id) == ExecutionStatus.SUCCESS

    def test_shutdown_fails_running_executions(self, make_engine, lead_workflow):
        entered = asyncio.Event()

        async def hang(node, inbound, context):
            entered.set()
            await asyncio.sleep(60)

        engine = make_engine(handlers={NodeKind.AGENT_TASK: hang})

        async def go():
            execution_id = await engine.run(lead_workflow.id, {}, tenant_id=TENANT)
            await entered.wait()
            await engine.shutdown()
            return engine.get_execution(execution_id)

        execution = asyncio.run(go())

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error.code == "shutdown"
        assert engine.active_executions() == []


# =============================================================================
# Structure, routing and data flow
# =============================================================================


class TestStructureAndRouting:
    def test_structural_error_fails_once(self, make_engine, test_db):
        wf = Workflow(
            name="Loop",
            tenant_id=TENANT,
            nodes=[Node(id="a", kind=NodeKind.CUSTOM), Node(id="b", kind=NodeKind.CUSTOM)],
            connections=[Connection(source="a", target="b"), Connection(source="b", target="a")],
        )
        test_db.save_workflow(wf)
        custom = CallRecorder()
        engine = make_engine(handlers={NodeKind.CUSTOM: custom})

        execution = _run(engine, wf.id)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error.code == "structural_error"
        assert custom.calls == []
        logs = engine.log_stream.query(execution.id)
        assert [e.level for e in logs] == [LogLevel.ERROR]
        assert "Cycle detected" in logs[0].message

    def test_guard_skips_branch(self, make_engine, test_db):
        wf = Workflow(
            name="Scored intake",
            tenant_id=TENANT,
            nodes=[
                Node(id="trigger", kind=NodeKind.WEBHOOK_TRIGGER),
                Node(id="score", kind=NodeKind.LEAD_SCORING),
                Node(id="qualify", kind=NodeKind.AGENT_TASK, agent_role=AgentRole.SPECIALIST),
                Node(id="email", kind=NodeKind.EMAIL_SEND),
            ],
            connections=[
                Connection(source="trigger", target="score"),
                Connection(
                    source="score",
                    target="qualify",
                    condition=GuardCondition(field="score", operator=">=", value=70),
                ),
                Connection(source="qualify", target="email"),
            ],
        )
        test_db.save_workflow(wf)
        qualify, email = CallRecorder(), CallRecorder()
        engine = make_engine(
            handlers={
                NodeKind.LEAD_SCORING: CallRecorder(default={"score": 50}),
                NodeKind.AGENT_TASK: qualify,
                NodeKind.EMAIL_SEND: email,
            }
        )
        execution = _run(engine, wf.id)

        assert execution.status == ExecutionStatus.SUCCESS
        assert qualify.calls == [] and email.calls == []
        states = engine.node_states(execution.id)
        assert states["qualify"] == NodeRunStatus.SKIPPED
        assert states["email"] == NodeRunStatus.SKIPPED
        skipped = engine.log_stream.query(execution.id, levels=[LogLevel.INFO], node_id="qualify")
        assert "no active inbound connection" in skipped[0].message

    def test_data_mapping(self, make_engine, test_db):
        wf = Workflow(
            name="Mapped",
            tenant_id=TENANT,
            nodes=[
                Node(id="trigger", kind=NodeKind.WEBHOOK_TRIGGER),
                Node(id="whatsapp", kind=NodeKind.CLIENT_MESSAGE),
            ],
            connections=[
                Connection(
                    source="trigger",
                    target="whatsapp",
                    data_mapping={"mobile": "to", "client_name": "name"},
                )
            ],
        )
        test_db.save_workflow(wf)
        message = CallRecorder()
        engine = make_engine(handlers={NodeKind.CLIENT_MESSAGE: message})

        _run(engine, wf.id, {"mobile": "+971501234567", "client_name": "Layla", "budget": 2})

        assert message.calls[0]["inbound"] == {"to": "+971501234567", "name": "Layla"}

    def test_disabled_and_unreachable_nodes_skipped(self, make_engine, test_db, lead_workflow):
        wf = lead_workflow.set_enabled("email", False).add_node(
            Node(id="orphan", kind=NodeKind.CUSTOM)
        )
        wf = test_db.save_workflow(wf)
        orphan = CallRecorder()
        engine = make_engine(
            handlers={NodeKind.AGENT_TASK: CallRecorder(), NodeKind.CUSTOM: orphan}
        )
        execution = _run(engine, wf.id)

        assert execution.status == ExecutionStatus.SUCCESS
        assert orphan.calls == []
        states = engine.node_states(execution.id)
        assert states["email"] == NodeRunStatus.SKIPPED
        assert states["orphan"] == NodeRunStatus.SKIPPED
        warnings = engine.log_stream.query(execution.id, levels=[LogLevel.WARNING])
        assert "orphan" in warnings[0].message

    def test_other_tenant_cannot_run(self, make_engine, lead_workflow):
        engine = make_engine()
        with pytest.raises(WorkflowNotFoundError):
            _run(engine, lead_workflow.id, tenant_id="tenant-other")


class TestConcurrency:
    @staticmethod
    def _fan_out(test_db) -> Workflow:
        wf = Workflow(
            name="Fan out",
            tenant_id=TENANT,
            nodes=[
                Node(id="trigger", kind=NodeKind.WEBHOOK_TRIGGER),
                Node(id="zeta", kind=NodeKind.CUSTOM),
                Node(id="alpha", kind=NodeKind.CUSTOM),
                Node(id="join", kind=NodeKind.CUSTOM),
            ],
            connections=[
                Connection(source="trigger", target="zeta"),
                Connection(source="trigger", target="alpha"),
                Connection(source="zeta", target="join"),
                Connection(source="alpha", target="join"),
            ],
        )
        return test_db.save_workflow(wf)

    @staticmethod
    def _tracking_handler():
        state = {"in_flight": 0, "peak": 0, "order": [], "inbound": {}}

        async def handle(node, inbound, context):
            state["order"].append(node.id)
            state["inbound"][node.id] = inbound
            state["in_flight"] += 1
            state["peak"] = max(state["peak"], state["in_flight"])
            await asyncio.sleep(0)
            state["in_flight"] -= 1
            return {node.id: True}

        return state, handle

    def test_sequential_by_default_in_insertion_order(self, make_engine, test_db):
        wf = self._fan_out(test_db)
        state, handle = self._tracking_handler()
        engine = make_engine(handlers={NodeKind.CUSTOM: handle})

        execution = _run(engine, wf.id)

        assert execution.status == ExecutionStatus.SUCCESS
        assert state["order"] == ["zeta", "alpha", "join"]
        assert state["peak"] == 1
        assert state["inbound"]["join"] == {"zeta": True, "alpha": True}

    def test_parallel_level(self, make_engine, test_db):
        wf = self._fan_out(test_db)
        state, handle = self._tracking_handler()
        engine = make_engine(handlers={NodeKind.CUSTOM: handle}, max_parallel_nodes=2)

        execution = _run(engine, wf.id)

        assert execution.status == ExecutionStatus.SUCCESS
        assert state["peak"] == 2
        assert state["order"][-1] == "join"

    def test_parallel_branch_failure(self, make_engine, test_db):
        wf = self._fan_out(test_db)
        calls = []

        async def handle(node, inbound, context):
            calls.append(node.id)
            if node.id == "alpha":
                raise HandlerError("portal rejected listing")
            return {}

        engine = make_engine(
            handlers={NodeKind.CUSTOM: handle},
            policies={NodeKind.CUSTOM: NO_RETRY},
            max_parallel_nodes=4,
        )
        execution = _run(engine, wf.id)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error.node_id == "alpha"
        assert "join" not in calls
        assert engine.node_states(execution.id)["zeta"] == NodeRunStatus.COMPLETED

    def test_backpressure(self, make_engine, lead_workflow):
        engine = make_engine(
            handlers={NodeKind.AGENT_TASK: CallRecorder(), NodeKind.EMAIL_SEND: CallRecorder()},
            tenant_concurrency_cap=1,
        )

        async def go():
            first = await engine.run(lead_workflow.id, {}, tenant_id=TENANT)
            with pytest.raises(BackpressureError):
                await engine.run(lead_workflow.id, {}, tenant_id=TENANT)
            done = await engine.wait(first)
            second = await engine.run(lead_workflow.id, {}, tenant_id=TENANT)
            return done, await engine.wait(second)

        done, second = asyncio.run(go())
        assert done.status == ExecutionStatus.SUCCESS
        assert second.status == ExecutionStatus.SUCCESS


# =============================================================================
# Recovery and queries
# =============================================================================


class TestRecoveryAndQueries:
    def test_recover_interrupted(self, make_engine, test_db, lead_workflow):
        test_db.create_execution(
            WorkflowExecution(
                id="exec-stale",
                workflow_id=lead_workflow.id,
                workflow_version=1,
                tenant_id=TENANT,
                status=ExecutionStatus.RUNNING,
                current_node_id="qualify",
            )
        )
        engine = make_engine()

        assert engine.recover_interrupted() == ["exec-stale"]
        execution = engine.get_execution("exec-stale")
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error.code == "interrupted"
        assert execution.error.node_id == "qualify"
        assert engine.recover_interrupted() == []

    def test_status_queries_have_no_side_effects(self, make_engine, lead_workflow):
        engine = make_engine(
            handlers={NodeKind.AGENT_TASK: CallRecorder(), NodeKind.EMAIL_SEND: CallRecorder()}
        )
        execution = _run(engine, lead_workflow.id)
        before = engine.log_stream.query(execution.id)

        assert engine.status(execution.id) == engine.status(execution.id)
        assert engine.node_states(execution.id) == engine.node_states(execution.id)
        assert engine.log_stream.query(execution.id) == before
