"""Retry/error manager for node failures.

Decides between retry and terminal failure per (execution, node), using a
per-kind exponential backoff policy. Backoff waits go through a Scheduler so
the delay is an awaited resumption on the event loop, and tests can swap in a
scheduler that does not sleep.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from conductor.core.errors import DispatchError, StructuralError
from conductor.core.graph_schema import Node, NodeKind
from conductor.core.log_stream import LogStream
from conductor.core.models import LogLevel

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """Retry budget and backoff for one node kind."""

    max_retries: int = 3
    backoff_base: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 30.0
    dispatch_retries: int = 0  # Budget when no agent/integration is available

    def get_delay(self, retry_number: int) -> float:
        """Delay before the given retry (1-indexed). No jitter: the core is deterministic."""
        return min(
            self.backoff_base * (self.backoff_multiplier ** max(retry_number - 1, 0)),
            self.max_delay,
        )

    def budget_for(self, error: Exception) -> int:
        if isinstance(error, StructuralError):
            return 0
        if isinstance(error, DispatchError):
            return self.dispatch_retries
        return self.max_retries


class RetryDecision(str, Enum):
    RETRY = "retry"
    FAIL = "fail"


class Scheduler(Protocol):
    """Timer service used for backoff waits."""

    async def sleep(self, delay: float) -> None: ...


class AsyncioScheduler:
    """Default scheduler: suspends the calling task only."""

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(delay)


class RetryManager:
    """Tracks failures per (execution, node) and applies the kind's policy."""

    def __init__(
        self,
        log_stream: LogStream,
        default_policy: RetryPolicy | None = None,
        policies: dict[NodeKind, RetryPolicy] | None = None,
        scheduler: Scheduler | None = None,
    ):
        self.log_stream = log_stream
        self.default_policy = default_policy or RetryPolicy()
        self.policies = dict(policies or {})
        self.scheduler = scheduler or AsyncioScheduler()
        self._failures: dict[tuple[str, str], int] = {}

    def policy_for(self, kind: NodeKind) -> RetryPolicy:
        return self.policies.get(kind, self.default_policy)

    def attempts(self, execution_id: str, node_id: str) -> int:
        """Failures recorded so far for a node in an execution."""
        return self._failures.get((execution_id, node_id), 0)

    def on_node_failure(
        self, execution_id: str, node: Node, error: Exception
    ) -> RetryDecision:
        key = (execution_id, node.id)
        failures = self._failures.get(key, 0) + 1
        self._failures[key] = failures

        policy = self.policy_for(node.kind)
        budget = policy.budget_for(error)

        if failures <= budget:
            delay = policy.get_delay(failures)
            self.log_stream.append(
                execution_id,
                LogLevel.WARNING,
                f"Retry {failures}/{budget} for node '{node.name or node.id}' "
                f"in {delay:g}s: {error}",
                node_id=node.id,
                data={"attempt": failures, "retry_in": delay, "error": str(error)},
            )
            return RetryDecision.RETRY

        self.log_stream.append(
            execution_id,
            LogLevel.ERROR,
            f"Node '{node.name or node.id}' failed after {failures} attempt(s): {error}",
            node_id=node.id,
            data={
                "attempts": failures,
                "error": str(error),
                "error_type": type(error).__name__,
            },
        )
        return RetryDecision.FAIL

    def delay_for(self, execution_id: str, node: Node) -> float:
        return self.policy_for(node.kind).get_delay(self.attempts(execution_id, node.id))

    async def backoff(self, execution_id: str, node: Node) -> None:
        """Wait out the backoff before the next attempt of ``node``."""
        delay = self.delay_for(execution_id, node)
        logger.debug(f"Backing off {delay:g}s before retrying {execution_id}/{node.id}")
        await self.scheduler.sleep(delay)

    def reset(self, execution_id: str, node_id: str) -> None:
        """Forget failures for a node (operator-triggered retry)."""
        self._failures.pop((execution_id, node_id), None)

    def clear(self, execution_id: str) -> None:
        for key in [k for k in self._failures if k[0] == execution_id]:
            del self._failures[key]
