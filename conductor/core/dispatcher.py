"""Agent dispatcher: resolves which agent instance services an agent_task node.

Selection is load-aware. Among eligible instances for (tenant, role) the one
with the fewest in-flight tasks wins, ties going to registration order. The
in-flight count covers the handler call only; nothing is held across it.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from enum import Enum
from typing import Any

import jsonschema
from pydantic import BaseModel, Field

from conductor.core.errors import DispatchError
from conductor.core.graph_schema import AgentRole, Node
from conductor.core.handlers import HandlerContext
from conductor.core.models import LogLevel, utc_now

logger = logging.getLogger(__name__)


class AgentStatus(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    BUSY = "busy"
    OFFLINE = "offline"


class CapabilityContract(BaseModel):
    """What an agent instance accepts."""

    name: str
    skills: list[str] = Field(default_factory=list)
    input_schema: dict[str, Any] | None = None  # JSON Schema for the task payload

    def covers(self, skills: list[str] | None) -> bool:
        if not skills:
            return True
        offered = {s.lower() for s in self.skills}
        return all(s.lower() in offered for s in skills)


class AgentInstance(BaseModel):
    """A concrete worker able to service one role for one tenant."""

    id: str
    tenant_id: str
    name: str
    role: AgentRole
    capability: CapabilityContract
    status: AgentStatus = AgentStatus.ACTIVE
    max_concurrency: int = Field(default=4, ge=1)
    in_flight: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
    last_activity: datetime | None = None

    @property
    def success_rate(self) -> float:
        total = self.tasks_completed + self.tasks_failed
        return self.tasks_completed / total if total else 0.0


AgentHandler = Callable[[AgentInstance, dict[str, Any]], Awaitable[dict[str, Any]]]


class AgentDispatcher:
    """Registry of agent instances plus least-loaded dispatch."""

    def __init__(self):
        self._agents: dict[str, AgentInstance] = {}
        self._handlers: dict[str, AgentHandler] = {}

    # ========== Registry ==========

    def register(self, instance: AgentInstance, handler: AgentHandler) -> None:
        if instance.id in self._agents:
            raise ValueError(f"Agent '{instance.id}' is already registered")
        self._agents[instance.id] = instance.model_copy(deep=True)
        self._handlers[instance.id] = handler
        logger.info(f"Registered agent {instance.id} ({instance.role.value}) for {instance.tenant_id}")

    def unregister(self, agent_id: str) -> None:
        self._require(agent_id)
        del self._agents[agent_id]
        del self._handlers[agent_id]

    def set_status(self, agent_id: str, status: AgentStatus) -> None:
        self._require(agent_id).status = status

    def get(self, agent_id: str) -> AgentInstance:
        return self._require(agent_id).model_copy(deep=True)

    def agents(self, tenant_id: str | None = None) -> list[AgentInstance]:
        return [
            a.model_copy(deep=True)
            for a in self._agents.values()
            if tenant_id is None or a.tenant_id == tenant_id
        ]

    def load(self, tenant_id: str | None = None) -> dict[str, int]:
        """In-flight task count per agent id."""
        return {
            a.id: a.in_flight
            for a in self._agents.values()
            if tenant_id is None or a.tenant_id == tenant_id
        }

    def _require(self, agent_id: str) -> AgentInstance:
        try:
            return self._agents[agent_id]
        except KeyError:
            raise KeyError(f"Agent '{agent_id}' is not registered") from None

    # ========== Dispatch ==========

    def eligible(
        self, tenant_id: str, role: AgentRole, skills: list[str] | None = None
    ) -> list[AgentInstance]:
        """Instances that could take a task right now, in registration order."""
        return [
            a
            for a in self._agents.values()
            if a.tenant_id == tenant_id
            and a.role == role
            and a.status != AgentStatus.OFFLINE
            and a.in_flight < a.max_concurrency
            and a.capability.covers(skills)
        ]

    def select(
        self, tenant_id: str, role: AgentRole, skills: list[str] | None = None
    ) -> AgentInstance:
        candidates = self.eligible(tenant_id, role, skills)
        if not candidates:
            wanted = f" with skills {skills}" if skills else ""
            raise DispatchError(
                f"No eligible '{role.value}' agent{wanted} for tenant '{tenant_id}'"
            )
        # min() keeps the first of equals, which is registration order
        return min(candidates, key=lambda a: a.in_flight)

    async def dispatch(
        self,
        tenant_id: str,
        role: AgentRole,
        payload: dict[str, Any],
        *,
        skills: list[str] | None = None,
        on_assign: Callable[[AgentInstance], None] | None = None,
    ) -> dict[str, Any]:
        agent = self.select(tenant_id, role, skills)

        schema = agent.capability.input_schema
        if schema:
            try:
                jsonschema.validate(instance=payload, schema=schema)
            except jsonschema.ValidationError as e:
                raise DispatchError(
                    f"Payload rejected by '{agent.capability.name}' on agent {agent.id}: "
                    f"{e.message}"
                ) from e

        handler = self._handlers[agent.id]
        agent.in_flight += 1
        if agent.in_flight >= agent.max_concurrency:
            agent.status = AgentStatus.BUSY
        if on_assign is not None:
            on_assign(agent.model_copy())

        try:
            result = await handler(agent.model_copy(deep=True), payload)
        except Exception:
            agent.tasks_failed += 1
            raise
        else:
            agent.tasks_completed += 1
            return result
        finally:
            agent.in_flight -= 1
            agent.last_activity = utc_now()
            if agent.status == AgentStatus.BUSY and agent.in_flight < agent.max_concurrency:
                agent.status = AgentStatus.ACTIVE

    async def handle(
        self, node: Node, inbound: dict[str, Any], context: HandlerContext
    ) -> dict[str, Any]:
        """Node handler for ``agent_task`` nodes."""
        payload = {
            "node_id": node.id,
            "execution_id": context.execution_id,
            "prompt": getattr(node.config, "prompt", None),
            "config": node.config.as_dict(),
            "input": inbound,
            "skills": list(node.skills),
            "persona": node.persona,
            "context": node.context,
            "language": node.language.value,
        }

        def on_assign(agent: AgentInstance) -> None:
            context.log(
                LogLevel.AGENT,
                f"{agent.name} handling '{node.name or node.id}'",
                {"agent_id": agent.id, "role": agent.role.value, "in_flight": agent.in_flight},
            )

        return await self.dispatch(
            context.tenant_id,
            node.agent_role,
            payload,
            skills=node.skills or None,
            on_assign=on_assign,
        )
