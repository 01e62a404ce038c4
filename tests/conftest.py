# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the Conductor test suite.

This module provides the fixtures used across test modules:
- Temporary SQLite databases
- Sample workflows (trigger -> agent task -> email)
- An engine factory wired with a non-sleeping scheduler

Async code is driven with ``asyncio.run`` inside plain test functions.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from conductor.config import ConductorConfig
from conductor.core.dispatcher import AgentDispatcher, AgentInstance, CapabilityContract
from conductor.core.graph_engine import ExecutionEngine
from conductor.core.graph_schema import AgentRole, Connection, Node, NodeKind, Workflow
from conductor.core.handlers import HandlerRegistry
from conductor.core.log_stream import LogStream
from conductor.core.retry import RetryManager, RetryPolicy
from conductor.core.state import Database

TENANT = "tenant-dubai"


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def test_db(tmp_path: Path) -> Database:
    """Create a fresh SQLite database in a temporary directory."""
    return Database(tmp_path / "test.db")


# =============================================================================
# Scheduler / Engine Fixtures
# =============================================================================


class RecordingScheduler:
    """Scheduler that records requested delays and only yields to the loop."""

    def __init__(self):
        self.delays: list[float] = []

    async def sleep(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest.fixture
def make_engine(test_db: Database, scheduler: RecordingScheduler) -> Callable[..., ExecutionEngine]:
    """Factory for engines on the test database.

    Example:
        engine = make_engine(handlers={NodeKind.EMAIL_SEND: send})
    """

    def factory(
        handlers: dict[NodeKind, Any] | None = None,
        policies: dict[NodeKind, RetryPolicy] | None = None,
        default_policy: RetryPolicy | None = None,
        **config: Any,
    ) -> ExecutionEngine:
        registry = HandlerRegistry()
        for kind, handler in (handlers or {}).items():
            registry.register(kind, handler)
        log_stream = LogStream(test_db)
        retry = RetryManager(
            log_stream,
            default_policy=default_policy or RetryPolicy(),
            policies=policies,
            scheduler=scheduler,
        )
        return ExecutionEngine(
            test_db,
            registry,
            config=ConductorConfig(**config),
            log_stream=log_stream,
            retry_manager=retry,
        )

    return factory


# =============================================================================
# Workflow Fixtures
# =============================================================================


def build_lead_workflow(tenant_id: str = TENANT, **overrides: Any) -> Workflow:
    """trigger -> agent task -> email send."""
    data: dict[str, Any] = {
        "name": "Lead intake",
        "tenant_id": tenant_id,
        "nodes": [
            Node(id="trigger", kind=NodeKind.WEBHOOK_TRIGGER, name="Lead Webhook"),
            Node(
                id="qualify",
                kind=NodeKind.AGENT_TASK,
                name="Qualify Lead",
                agent_role=AgentRole.SPECIALIST,
                config={"prompt": "Qualify the lead"},
            ),
            Node(
                id="email",
                kind=NodeKind.EMAIL_SEND,
                name="Notify Manager",
                config={"to": "manager@example.com"},
            ),
        ],
        "connections": [
            Connection(source="trigger", target="qualify"),
            Connection(source="qualify", target="email"),
        ],
    }
    data.update(overrides)
    return Workflow(**data)


@pytest.fixture
def lead_workflow(test_db: Database) -> Workflow:
    """The lead intake workflow, saved as version 1."""
    return test_db.save_workflow(build_lead_workflow())


class CallRecorder:
    """Async handler stub that records calls and replays scripted results."""

    def __init__(self, results: list[Any] | None = None, default: Any = None):
        self.calls: list[dict[str, Any]] = []
        self.results = list(results or [])
        self.default = default if default is not None else {"ok": True}

    async def __call__(self, node, inbound, context):
        self.calls.append({"node": node.id, "inbound": inbound, "attempt": context.attempt})
        result = self.results.pop(0) if self.results else self.default
        if isinstance(result, BaseException):
            raise result
        return result


@pytest.fixture
def dispatcher() -> AgentDispatcher:
    """Dispatcher with one specialist agent for the default tenant that echoes its input."""
    d = AgentDispatcher()

    async def qualify(agent: AgentInstance, payload: dict[str, Any]) -> dict[str, Any]:
        return {**payload["input"], "qualified": True, "agent": agent.id}

    d.register(
        AgentInstance(
            id="agent-sara",
            tenant_id=TENANT,
            name="Sara",
            role=AgentRole.SPECIALIST,
            capability=CapabilityContract(name="qualify"),
        ),
        qualify,
    )
    return d
