"""Execution-scoped, append-only log stream.

Entries are persisted first (the store assigns the sequence number) and then
fanned out to live subscribers. Appends are synchronous on the event loop
thread, so subscribers see entries in sequence order.

A subscriber registers its queue before replaying stored entries and drops any
sequence it already yielded, which gives replay-then-live with no gaps and no
duplicates. Streams end when the engine closes the execution.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import AsyncIterator, Iterable
from typing import Any

from conductor.core.models import ExecutionLog, LogLevel
from conductor.core.state import Repository

logger = logging.getLogger(__name__)

_PY_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.AGENT: logging.INFO,
    LogLevel.SUCCESS: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}

_CLOSED = object()


class LogStream:
    """Append/query/subscribe over execution logs."""

    def __init__(self, db: Repository):
        self.db = db
        self._subscribers: dict[str, list[asyncio.Queue]] = {}
        self._open: set[str] = set()

    # ========== Lifecycle ==========

    def open(self, execution_id: str) -> None:
        """Mark an execution as live so subscribers wait for more entries."""
        self._open.add(execution_id)

    def is_open(self, execution_id: str) -> bool:
        return execution_id in self._open

    def close(self, execution_id: str) -> None:
        """End every live subscription for an execution."""
        self._open.discard(execution_id)
        for queue in self._subscribers.pop(execution_id, []):
            queue.put_nowait(_CLOSED)

    # ========== Write side ==========

    def append(
        self,
        execution_id: str,
        level: LogLevel,
        message: str,
        node_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> ExecutionLog:
        entry = self.db.append_log(execution_id, level, message, node_id=node_id, data=data)
        logger.log(
            _PY_LEVELS[level],
            f"[{execution_id} #{entry.sequence}] {node_id or '-'}: {message}",
        )
        for queue in list(self._subscribers.get(execution_id, ())):
            queue.put_nowait(entry)
        return entry

    # ========== Read side ==========

    def query(
        self,
        execution_id: str,
        levels: Iterable[LogLevel | str] | None = None,
        node_id: str | None = None,
        after_sequence: int = 0,
        limit: int | None = None,
    ) -> list[ExecutionLog]:
        """Stored entries for an execution in sequence order, optionally filtered."""
        parsed = [LogLevel(lvl) for lvl in levels] if levels is not None else None
        return self.db.get_logs(
            execution_id,
            levels=parsed,
            node_id=node_id,
            after_sequence=after_sequence,
            limit=limit,
        )

    def level_counts(self, execution_id: str) -> dict[LogLevel, int]:
        counts = Counter(entry.level for entry in self.db.get_logs(execution_id))
        return {level: counts.get(level, 0) for level in LogLevel}

    async def subscribe(self, execution_id: str) -> AsyncIterator[ExecutionLog]:
        """Yield every stored entry, then live entries until the execution closes."""
        self.db.get_execution(execution_id)  # Raises ExecutionNotFoundError

        queue: asyncio.Queue = asyncio.Queue()
        live = execution_id in self._open
        if live:
            # Register before replay so nothing appended in between is missed
            self._subscribers.setdefault(execution_id, []).append(queue)

        last_sequence = 0
        try:
            for entry in self.db.get_logs(execution_id):
                last_sequence = entry.sequence
                yield entry

            if not live:
                return

            while True:
                item = await queue.get()
                if item is _CLOSED:
                    return
                if item.sequence <= last_sequence:
                    continue
                last_sequence = item.sequence
                yield item
        finally:
            subscribers = self._subscribers.get(execution_id)
            if subscribers and queue in subscribers:
                subscribers.remove(queue)
