"""Rich terminal views used by the conductor CLI."""

from conductor.cli_ui.renderers import (
    CatalogRenderer,
    ExecutionTableRenderer,
    LogRenderer,
    WorkflowTreeRenderer,
)

__all__ = [
    "CatalogRenderer",
    "ExecutionTableRenderer",
    "LogRenderer",
    "WorkflowTreeRenderer",
]
