"""Rich renderers for workflows, execution status, logs and fleet health.

All user-controlled strings are escaped to prevent Rich markup injection.
"""

from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from conductor.core.coordinator import AgentOrchestration
from conductor.core.graph_schema import Connection, Node, NodeKind, Workflow
from conductor.core.models import ExecutionLog, LogLevel, NodeRun, NodeRunStatus, WorkflowExecution
from conductor.core.templates import WorkflowTemplate


class WorkflowTreeRenderer:
    """Renders a workflow as a Rich Tree rooted at its entry nodes."""

    NODE_STYLES = {
        NodeKind.WEBHOOK_TRIGGER: ("[T]", "yellow"),
        NodeKind.AGENT_TASK: ("[A]", "cyan"),
        NodeKind.LEAD_SCORING: ("[S]", "magenta"),
        NodeKind.CLIENT_MESSAGE: ("[M]", "green"),
        NodeKind.EMAIL_SEND: ("[E]", "green"),
        NodeKind.HTTP_CALL: ("[H]", "blue"),
        NodeKind.DB_QUERY: ("[D]", "blue"),
        NodeKind.EXTERNAL_PORTAL_SYNC: ("[P]", "blue"),
        NodeKind.CUSTOM: ("[ ]", "white"),
    }

    STATUS_COLORS = {
        "pending": "dim",
        "running": "blue bold",
        "completed": "green",
        "failed": "red bold",
        "skipped": "dim strikethrough",
    }

    STATUS_MARKS = {"completed": " ✓", "failed": " ✗", "running": " ⟳"}

    def render(
        self,
        workflow: Workflow,
        statuses: dict[str, NodeRunStatus] | None = None,
        max_depth: int = 50,
    ) -> Tree:
        tree = Tree(f"[bold]{escape(workflow.name)}[/] (v{workflow.version})")
        node_map = workflow.node_map()
        edge_map: dict[str, list[Connection]] = {n.id: [] for n in workflow.nodes}
        for conn in workflow.connections:
            if conn.source in edge_map:
                edge_map[conn.source].append(conn)

        entries = workflow.entry_nodes()
        if not entries:
            tree.add("[red]No entry node[/]")
            return tree
        for node in entries:
            self._add(tree, node, statuses, node_map, edge_map, set(), 0, max_depth)
        return tree

    def _add(
        self,
        parent: Tree,
        node: Node,
        statuses: dict[str, NodeRunStatus] | None,
        node_map: dict[str, Node],
        edge_map: dict[str, list[Connection]],
        visited: set,
        depth: int,
        max_depth: int,
    ) -> None:
        if depth >= max_depth:
            parent.add("[dim]... (max depth reached)[/]")
            return
        if node.id in visited:
            parent.add(f"[dim]↩ {escape(node.id)} (cycle)[/]")
            return
        visited.add(node.id)

        symbol, color = self.NODE_STYLES.get(node.kind, ("[ ]", "white"))
        label = escape(node.name or node.id)
        if not node.enabled:
            label += " [dim](disabled)[/]"
        status = statuses.get(node.id) if statuses else None
        if status and status != NodeRunStatus.PENDING:
            style = self.STATUS_COLORS.get(status.value, "white")
            text = f"[{style}]{symbol} {label}{self.STATUS_MARKS.get(status.value, '')}[/]"
        else:
            text = f"[{color}]{symbol} {label}[/]"
        branch = parent.add(text)

        for conn in edge_map.get(node.id, []):
            child = node_map.get(conn.target)
            if child is None:
                continue
            target = branch
            if conn.condition:
                cond = conn.condition
                target = branch.add(
                    f"[dim]({escape(cond.field)} {escape(cond.operator)} "
                    f"{escape(str(cond.value)[:50])})[/]"
                )
            self._add(target, child, statuses, node_map, edge_map, visited.copy(), depth + 1, max_depth)


class ExecutionTableRenderer:
    """Execution summary and per-node status table."""

    EXECUTION_COLORS = {
        "pending": "dim",
        "running": "blue",
        "retrying": "yellow",
        "success": "green",
        "failed": "red",
        "cancelled": "magenta",
    }

    def render_executions(self, executions: list[WorkflowExecution]) -> Table:
        table = Table(title="Executions")
        table.add_column("ID", style="cyan")
        table.add_column("Workflow")
        table.add_column("Tenant")
        table.add_column("Status")
        table.add_column("Started")
        for execution in executions:
            color = self.EXECUTION_COLORS.get(execution.status.value, "white")
            table.add_row(
                escape(execution.id),
                escape(f"{execution.workflow_id} v{execution.workflow_version}"),
                escape(execution.tenant_id),
                f"[{color}]{execution.status.value}[/]",
                execution.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            )
        return table

    def render_nodes(self, workflow: Workflow, runs: dict[str, NodeRun]) -> Table:
        table = Table(title=f"Nodes: {escape(workflow.name)}")
        table.add_column("Node", style="cyan")
        table.add_column("Kind", style="magenta")
        table.add_column("Status", justify="center")
        table.add_column("Attempts", justify="right")
        table.add_column("Output / Error", max_width=40)

        for node in workflow.nodes:
            run = runs.get(node.id)
            status = run.status.value if run else "pending"
            detail: Any = ""
            if run is not None:
                detail = run.error if run.status == NodeRunStatus.FAILED else (run.output or "")
            detail_str = escape(str(detail))
            if len(detail_str) > 40:
                detail_str = detail_str[:37] + "..."
            style = WorkflowTreeRenderer.STATUS_COLORS.get(status, "white")
            table.add_row(
                escape(node.name or node.id),
                node.kind.value,
                f"[{style}]{status}[/]",
                str(run.attempts if run else 0),
                detail_str,
            )
        return table


class LogRenderer:
    """Formats execution log entries, one line each."""

    LEVEL_STYLES = {
        LogLevel.INFO: "blue",
        LogLevel.AGENT: "cyan",
        LogLevel.SUCCESS: "green",
        LogLevel.WARNING: "yellow",
        LogLevel.ERROR: "red bold",
        LogLevel.DEBUG: "dim",
    }

    def format(self, entry: ExecutionLog) -> str:
        style = self.LEVEL_STYLES.get(entry.level, "white")
        node = f" [dim]{escape(entry.node_id)}[/]" if entry.node_id else ""
        return (
            f"[dim]{entry.sequence:>4}[/] {entry.timestamp.strftime('%H:%M:%S')} "
            f"[{style}]{entry.level.value.upper():<7}[/]{node} {escape(entry.message)}"
        )

    def print(self, console: Console, entries: list[ExecutionLog]) -> None:
        for entry in entries:
            console.print(self.format(entry))


class CatalogRenderer:
    """Template catalog and fleet tables."""

    def render_templates(self, templates: list[WorkflowTemplate]) -> Table:
        table = Table(title="Workflow Templates")
        table.add_column("ID", style="cyan")
        table.add_column("Name")
        table.add_column("Category", style="magenta")
        table.add_column("Nodes", justify="right")
        table.add_column("Deployed", justify="right")
        table.add_column("Success", justify="right")
        for t in templates:
            table.add_row(
                escape(t.id),
                escape(t.name),
                escape(t.category or "-"),
                str(len(t.nodes)),
                str(t.stats.deployed),
                f"{t.stats.avg_success:.0%}",
            )
        return table

    def render_orchestration(self, orchestration: AgentOrchestration) -> Table:
        status = orchestration.status
        table = Table(title=f"Fleet: {escape(orchestration.tenant_id)}", show_header=False)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        state_color = {"active": "green", "paused": "yellow", "error": "red"}[
            orchestration.state.value
        ]
        table.add_row("State", f"[{state_color}]{orchestration.state.value}[/]")
        table.add_row("Workflows", escape(", ".join(orchestration.workflow_ids) or "-"))
        table.add_row("Agents", escape(", ".join(orchestration.agent_ids) or "-"))
        table.add_row("Running", str(status.running_count))
        table.add_row("Failed", str(status.failed_count))
        table.add_row("Last status", status.last_status.value if status.last_status else "-")
        table.add_row(
            "Last run",
            orchestration.last_run_at.strftime("%Y-%m-%d %H:%M:%S")
            if orchestration.last_run_at
            else "-",
        )
        if orchestration.last_error:
            table.add_row("Last error", f"[red]{escape(orchestration.last_error.message)}[/]")
        return table
