"""Node handler contract and registry.

A handler is ``async (node, inbound, context) -> dict``. The engine owns the
timeout and the retry loop; handlers only do the work and raise on failure.
``agent_task`` nodes are served by the agent dispatcher, every other kind by
an integration adapter registered here.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from conductor.core.errors import DispatchError
from conductor.core.graph_schema import Node, NodeKind
from conductor.core.models import LogLevel

logger = logging.getLogger(__name__)


@dataclass
class HandlerContext:
    """Per-invocation facts passed to a handler."""

    execution_id: str
    tenant_id: str
    workflow_id: str
    attempt: int
    timeout: float
    emit: Callable[[LogLevel, str, dict[str, Any] | None], Any] = field(repr=False)

    def log(self, level: LogLevel, message: str, data: dict[str, Any] | None = None) -> None:
        """Append a node-scoped entry to the execution's log stream."""
        self.emit(level, message, data)


NodeHandler = Callable[[Node, dict[str, Any], HandlerContext], Awaitable[Any]]


async def passthrough_trigger(
    node: Node, inbound: dict[str, Any], context: HandlerContext
) -> dict[str, Any]:
    """Webhook triggers forward the trigger input unchanged."""
    return dict(inbound)


class HandlerRegistry:
    """Maps node kinds to handlers."""

    def __init__(self, include_defaults: bool = True):
        self._handlers: dict[NodeKind, NodeHandler] = {}
        if include_defaults:
            self.register(NodeKind.WEBHOOK_TRIGGER, passthrough_trigger)

    def register(self, kind: NodeKind, handler: NodeHandler) -> None:
        if kind in self._handlers:
            logger.debug(f"Replacing handler for {kind.value}")
        self._handlers[kind] = handler

    def unregister(self, kind: NodeKind) -> None:
        self._handlers.pop(kind, None)

    def get(self, kind: NodeKind) -> NodeHandler:
        try:
            return self._handlers[kind]
        except KeyError:
            raise DispatchError(f"No integration registered for node kind '{kind.value}'") from None

    def kinds(self) -> list[NodeKind]:
        return list(self._handlers)

    def __contains__(self, kind: NodeKind) -> bool:
        return kind in self._handlers


def echo_handler(kind: NodeKind) -> NodeHandler:
    """Build a handler that reports what it would have done (used by ``--simulate``)."""

    async def handle(node: Node, inbound: dict[str, Any], context: HandlerContext) -> dict[str, Any]:
        context.log(LogLevel.DEBUG, f"Simulated {kind.value} call", node.config.as_dict())
        return {**inbound, "simulated": True, "node": node.id}

    return handle
