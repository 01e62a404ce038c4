"""CLI entry point for Conductor.

Commands:
- conductor init: Initialize project (config, database, built-in templates)
- conductor validate / save / workflows: Manage workflow definitions
- conductor run: Trigger a workflow and follow its log stream
- conductor status / executions / logs / cancel / retry / recover: Inspect and control executions
- conductor templates / deploy: Template catalog
- conductor bind / fleet / pause / resume: Per-tenant orchestration
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click
import pydantic
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from conductor import __version__
from conductor.cli_ui import CatalogRenderer, ExecutionTableRenderer, LogRenderer, WorkflowTreeRenderer
from conductor.config import CONFIG_DIR, CONFIG_FILE, DEFAULT_CONFIG_YAML, ConductorConfig, load_config
from conductor.core.coordinator import OrchestrationCoordinator
from conductor.core.dispatcher import AgentDispatcher, AgentInstance, CapabilityContract
from conductor.core.errors import ConductorError
from conductor.core.graph_engine import ExecutionEngine
from conductor.core.graph_schema import AgentRole, NodeKind, Workflow
from conductor.core.handlers import HandlerRegistry, echo_handler
from conductor.core.models import ExecutionStatus, LogLevel, TriggerSource
from conductor.core.state import Database
from conductor.core.templates import TemplateRegistry

console = Console()
logger = logging.getLogger(__name__)


def get_repo_path() -> Path:
    """Get the repository path (current directory)."""
    return Path.cwd()


def _open_db() -> tuple[ConductorConfig, Database]:
    config = load_config(get_repo_path())
    if not config.db_path.exists():
        console.print("[yellow]No conductor database found. Run 'conductor init' first.[/yellow]")
    return config, Database(config.db_path)


def _cli_errors(func: Callable) -> Callable:
    """Print known errors as one red line and exit 1."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except pydantic.ValidationError as e:
            console.print("[red]Validation failed:[/red]")
            for err in e.errors():
                loc = ".".join(str(x) for x in err["loc"])
                console.print(f"  - {escape(loc)}: {escape(err['msg'])}")
            sys.exit(1)
        except (ConductorError, KeyError) as e:
            console.print(f"[red]Error:[/red] {escape(str(e))}")
            sys.exit(1)

    return wrapper


def _load_workflow_file(path: str) -> Workflow:
    with open(path) as f:
        try:
            data = yaml.safe_load(f)  # JSON is valid YAML
        except yaml.YAMLError as e:
            console.print(f"[red]Error parsing '{escape(path)}':[/red] {escape(str(e))}")
            sys.exit(1)
    if not isinstance(data, dict):
        console.print(
            f"[red]Error: expected a mapping in '{escape(path)}', "
            f"got {type(data).__name__}.[/red]"
        )
        sys.exit(1)
    return Workflow.model_validate(data)


def _build_engine(
    db: Database,
    config: ConductorConfig,
    simulate: bool = False,
    workflow: Workflow | None = None,
) -> ExecutionEngine:
    """Engine wired to the coordinator and template stats of this project."""
    handlers = HandlerRegistry()
    dispatcher = AgentDispatcher()
    handlers.register(NodeKind.AGENT_TASK, dispatcher.handle)
    if simulate and workflow is not None:
        _install_simulation(handlers, dispatcher, workflow)

    engine = ExecutionEngine(db, handlers, config=config)
    OrchestrationCoordinator(db).attach(engine)
    TemplateRegistry(db).attach(engine)
    return engine


def _install_simulation(
    handlers: HandlerRegistry, dispatcher: AgentDispatcher, workflow: Workflow
) -> None:
    """Echo integrations and one echo agent per role, covering the workflow's skills."""
    for kind in NodeKind:
        if kind not in (NodeKind.AGENT_TASK, NodeKind.WEBHOOK_TRIGGER):
            handlers.register(kind, echo_handler(kind))

    skills = sorted({s for n in workflow.nodes for s in n.skills})

    async def echo_agent(agent: AgentInstance, payload: dict[str, Any]) -> dict[str, Any]:
        return {**payload.get("input", {}), "handled_by": agent.id, "simulated": True}

    for role in AgentRole:
        dispatcher.register(
            AgentInstance(
                id=f"sim-{role.value}",
                tenant_id=workflow.tenant_id,
                name=f"Simulated {role.value}",
                role=role,
                capability=CapabilityContract(name="echo", skills=skills),
            ),
            echo_agent,
        )


def _parse_json_option(raw: str, name: str) -> dict[str, Any]:
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid JSON for {name}:[/red] {escape(str(e))}")
        sys.exit(1)
    if not isinstance(value, dict):
        console.print(f"[red]{name} must be a JSON object[/red]")
        sys.exit(1)
    return value


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Conductor - workflow orchestration for real-estate agent fleets.

    Runs node-and-edge workflows of agent tasks and integration calls,
    with retries, live logs and per-tenant fleet health.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


@main.command()
def version() -> None:
    """Show the installed version."""
    console.print(f"conductor {__version__}")


@main.command()
def init() -> None:
    """Initialize project for conductor."""
    repo_path = get_repo_path()
    conductor_dir = repo_path / CONFIG_DIR

    config_path = conductor_dir / CONFIG_FILE
    if config_path.exists():
        console.print("[yellow]Project already initialized[/yellow]")
        return

    conductor_dir.mkdir(parents=True, exist_ok=True)
    config_path.write_text(DEFAULT_CONFIG_YAML)

    config = load_config(repo_path)
    db = Database(config.db_path)
    published = TemplateRegistry(db).load_builtin()

    console.print(
        Panel(
            "[green]Project initialized![/green]\n\n"
            f"Created: {conductor_dir}\n"
            "- config.yaml: Engine, retry and tenant settings\n"
            f"- state.db: Workflow state database ({len(published)} templates published)",
            title="Conductor Initialized",
        )
    )


# ========== Workflows ==========


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@_cli_errors
def validate(workflow_file: str) -> None:
    """Validate a workflow definition file (YAML or JSON)."""
    workflow = _load_workflow_file(workflow_file)
    result = workflow.validate_graph()

    console.print(WorkflowTreeRenderer().render(workflow))
    console.print(f"\n[bold]Nodes:[/] {len(workflow.nodes)}")
    console.print(f"[bold]Connections:[/] {len(workflow.connections)}")

    for warning in result.warnings:
        console.print(f"  [yellow]! {escape(warning)}[/]")
    if not result.ok:
        console.print("\n[red bold]Validation Errors:[/]")
        for error in result.errors:
            console.print(f"  [red]• {escape(error)}[/]")
        sys.exit(1)
    console.print("\n[green]✓ Graph is valid[/]")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@_cli_errors
def save(workflow_file: str) -> None:
    """Store a workflow definition as a new version."""
    workflow = _load_workflow_file(workflow_file)
    result = workflow.validate_graph()
    if not result.ok:
        for error in result.errors:
            console.print(f"  [red]• {escape(error)}[/]")
        sys.exit(1)
    _, db = _open_db()
    saved = db.save_workflow(workflow)
    console.print(f"[green]Saved {escape(saved.id)} v{saved.version}[/green]")


@main.command()
@click.option("--tenant", "-t", help="Filter by tenant")
@click.option("--all", "include_deleted", is_flag=True, help="Include deleted workflows")
def workflows(tenant: str | None, include_deleted: bool) -> None:
    """List stored workflows."""
    _, db = _open_db()
    table = Table(title="Workflows")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Tenant")
    table.add_column("Version", justify="right")
    table.add_column("Nodes", justify="right")
    table.add_column("Template")
    for wf in db.list_workflows(tenant_id=tenant, include_deleted=include_deleted):
        name = escape(wf.name) + (" [dim](deleted)[/]" if wf.deleted else "")
        table.add_row(
            escape(wf.id),
            name,
            escape(wf.tenant_id),
            str(wf.version),
            str(len(wf.nodes)),
            escape(wf.template_id or "-"),
        )
    console.print(table)


# ========== Executions ==========


async def _drive(engine: ExecutionEngine, execution_id: str, follow: bool):
    if follow:
        renderer = LogRenderer()
        async for entry in engine.log_stream.subscribe(execution_id):
            if entry.level != LogLevel.DEBUG or logger.isEnabledFor(logging.DEBUG):
                console.print(renderer.format(entry))
    return await engine.wait(execution_id)


def _report(execution) -> None:
    if execution.status == ExecutionStatus.SUCCESS:
        console.print(f"[green]Execution {escape(execution.id)} succeeded[/green]")
        return
    message = f"Execution {escape(execution.id)} {execution.status.value}"
    if execution.error:
        message += f": {escape(execution.error.message)}"
    console.print(f"[red]{message}[/red]")
    sys.exit(1)


@main.command()
@click.argument("workflow_id")
@click.option("--tenant", "-t", required=True, help="Tenant that owns the workflow")
@click.option("--input", "input_json", default="{}", help="Trigger input as a JSON object")
@click.option(
    "--trigger",
    type=click.Choice([t.value for t in TriggerSource]),
    default=TriggerSource.USER.value,
    help="Trigger source recorded on the execution",
)
@click.option("--simulate", is_flag=True, help="Use echo integrations and agents")
@click.option("--follow/--no-follow", default=True, help="Stream logs while running")
@_cli_errors
def run(
    workflow_id: str,
    tenant: str,
    input_json: str,
    trigger: str,
    simulate: bool,
    follow: bool,
) -> None:
    """Run a stored workflow and wait for it to finish."""
    trigger_input = _parse_json_option(input_json, "--input")
    config, db = _open_db()
    workflow = db.get_workflow(workflow_id)

    async def go():
        engine = _build_engine(db, config, simulate=simulate, workflow=workflow)
        execution_id = await engine.run(
            workflow_id,
            trigger_input,
            tenant_id=tenant,
            triggered_by=TriggerSource(trigger),
        )
        console.print(f"[blue]Started execution: {escape(execution_id)}[/blue]")
        return await _drive(engine, execution_id, follow)

    _report(asyncio.run(go()))


@main.command()
@click.argument("execution_id")
@click.option("--node", "-n", "node_id", help="Node to retry (default: the failed node)")
@click.option("--simulate", is_flag=True, help="Use echo integrations and agents")
@click.option("--follow/--no-follow", default=True, help="Stream logs while running")
@_cli_errors
def retry(execution_id: str, node_id: str | None, simulate: bool, follow: bool) -> None:
    """Retry a failed execution from its failed node."""
    config, db = _open_db()
    execution = db.get_execution(execution_id)
    workflow = db.get_workflow(execution.workflow_id, execution.workflow_version)

    async def go():
        engine = _build_engine(db, config, simulate=simulate, workflow=workflow)
        await engine.retry_node(execution_id, node_id)
        return await _drive(engine, execution_id, follow)

    _report(asyncio.run(go()))


@main.command()
@click.argument("execution_id")
@_cli_errors
def status(execution_id: str) -> None:
    """Show an execution's status and node states."""
    _, db = _open_db()
    execution = db.get_execution(execution_id)
    workflow = db.get_workflow(execution.workflow_id, execution.workflow_version)
    runs = db.get_node_runs(execution_id)

    color = ExecutionTableRenderer.EXECUTION_COLORS.get(execution.status.value, "white")
    error = escape(execution.error.message) if execution.error else "-"
    console.print(
        Panel(
            f"[bold]Workflow:[/] {escape(workflow.name)} v{execution.workflow_version}\n"
            f"[bold]Tenant:[/] {escape(execution.tenant_id)}\n"
            f"[bold]Status:[/] [{color}]{execution.status.value}[/]\n"
            f"[bold]Started:[/] {execution.started_at}\n"
            f"[bold]Finished:[/] {execution.finished_at or '-'}\n"
            f"[bold]Error:[/] {error}",
            title=f"Execution: {escape(execution.id)}",
        )
    )
    console.print(WorkflowTreeRenderer().render(workflow, {k: r.status for k, r in runs.items()}))
    console.print(ExecutionTableRenderer().render_nodes(workflow, runs))


@main.command()
@click.option("--tenant", "-t", help="Filter by tenant")
@click.option("--workflow", "-w", "workflow_id", help="Filter by workflow")
@click.option(
    "--status",
    "statuses",
    multiple=True,
    type=click.Choice([s.value for s in ExecutionStatus]),
    help="Filter by status (repeatable)",
)
def executions(tenant: str | None, workflow_id: str | None, statuses: tuple[str, ...]) -> None:
    """List executions."""
    _, db = _open_db()
    rows = db.list_executions(
        tenant_id=tenant,
        workflow_id=workflow_id,
        statuses=[ExecutionStatus(s) for s in statuses] if statuses else None,
    )
    console.print(ExecutionTableRenderer().render_executions(rows))


@main.command()
@click.argument("execution_id")
@click.option(
    "--level",
    "-l",
    "levels",
    multiple=True,
    type=click.Choice([lvl.value for lvl in LogLevel]),
    help="Only show these levels (repeatable)",
)
@click.option("--node", "-n", "node_id", help="Only show entries for this node")
@click.option("--after", type=int, default=0, help="Only entries after this sequence number")
@_cli_errors
def logs(execution_id: str, levels: tuple[str, ...], node_id: str | None, after: int) -> None:
    """Show an execution's log entries."""
    _, db = _open_db()
    db.get_execution(execution_id)
    entries = db.get_logs(
        execution_id,
        levels=[LogLevel(lvl) for lvl in levels] if levels else None,
        node_id=node_id,
        after_sequence=after,
    )
    LogRenderer().print(console, entries)


@main.command()
@click.argument("execution_id")
@_cli_errors
def cancel(execution_id: str) -> None:
    """Cancel a pending or running execution."""
    config, db = _open_db()
    execution = _build_engine(db, config).cancel(execution_id)
    console.print(f"[yellow]Execution {escape(execution.id)} cancelled[/yellow]")


@main.command()
def recover() -> None:
    """Fail executions left running by a stopped engine."""
    config, db = _open_db()
    recovered = _build_engine(db, config).recover_interrupted()
    if not recovered:
        console.print("[green]No interrupted executions[/green]")
        return
    for execution_id in recovered:
        console.print(f"[yellow]Marked {escape(execution_id)} as failed[/yellow]")


# ========== Templates ==========


@main.command()
@click.option("--category", "-c", help="Filter by category")
@click.option("--search", "-s", help="Search name, description and use case")
def templates(category: str | None, search: str | None) -> None:
    """List published workflow templates."""
    _, db = _open_db()
    registry = TemplateRegistry(db)
    console.print(CatalogRenderer().render_templates(registry.list(category, search)))
    categories = registry.categories()
    if categories:
        console.print(f"[dim]Categories: {escape(', '.join(categories))}[/]")


@main.command()
@click.argument("template_id")
@click.option("--tenant", "-t", required=True, help="Tenant that will own the workflow")
@click.option("--name", help="Workflow name (default: template name)")
@click.option("--param", "-p", "params", multiple=True, help="Template parameter as KEY=VALUE")
@click.option("--created-by", default="user", help="Recorded author")
@_cli_errors
def deploy(
    template_id: str,
    tenant: str,
    name: str | None,
    params: tuple[str, ...],
    created_by: str,
) -> None:
    """Deploy a template as a new workflow for a tenant."""
    values: dict[str, str] = {}
    for item in params:
        key, sep, value = item.partition("=")
        if not sep or not key:
            console.print(f"[red]Invalid --param '{escape(item)}', expected KEY=VALUE[/red]")
            sys.exit(1)
        values[key] = value

    _, db = _open_db()
    workflow = TemplateRegistry(db).deploy(
        template_id, tenant, created_by=created_by, name=name, params=values
    )
    console.print(
        f"[green]Deployed {escape(template_id)} as {escape(workflow.id)} "
        f"for tenant {escape(tenant)}[/green]"
    )


# ========== Orchestration ==========


@main.command()
@click.argument("tenant")
@click.option("--workflow", "-w", "workflow_ids", multiple=True, help="Workflow id (repeatable)")
@click.option("--agent", "-a", "agent_ids", multiple=True, help="Agent id (repeatable)")
@_cli_errors
def bind(tenant: str, workflow_ids: tuple[str, ...], agent_ids: tuple[str, ...]) -> None:
    """Bind workflows and agents to a tenant's orchestration."""
    _, db = _open_db()
    for wf_id in workflow_ids:
        if db.get_workflow(wf_id).tenant_id != tenant:
            console.print(f"[red]Workflow {escape(wf_id)} is not owned by {escape(tenant)}[/red]")
            sys.exit(1)
    orchestration = OrchestrationCoordinator(db).bind(tenant, list(workflow_ids), list(agent_ids))
    console.print(CatalogRenderer().render_orchestration(orchestration))


@main.command()
@click.argument("tenant", required=False)
@_cli_errors
def fleet(tenant: str | None) -> None:
    """Show orchestration health for one tenant, or a summary of all."""
    _, db = _open_db()
    coordinator = OrchestrationCoordinator(db)
    if tenant:
        console.print(CatalogRenderer().render_orchestration(coordinator.get(tenant)))
        return

    summary = coordinator.performance()
    table = Table(title="Fleet Performance", show_header=False)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    for key, value in summary.items():
        table.add_row(key.replace("_", " ").capitalize(), str(value))
    console.print(table)


@main.command()
@click.argument("tenant")
@_cli_errors
def pause(tenant: str) -> None:
    """Pause a tenant's orchestration (new runs are rejected)."""
    _, db = _open_db()
    OrchestrationCoordinator(db).pause(tenant)
    console.print(f"[yellow]Orchestration for {escape(tenant)} paused[/yellow]")


@main.command()
@click.argument("tenant")
@_cli_errors
def resume(tenant: str) -> None:
    """Resume a paused tenant orchestration."""
    _, db = _open_db()
    OrchestrationCoordinator(db).resume(tenant)
    console.print(f"[green]Orchestration for {escape(tenant)} resumed[/green]")


if __name__ == "__main__":
    main()
