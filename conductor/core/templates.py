"""Template registry: publishable, cloneable workflow blueprints.

Templates are immutable once published. Deploying one clones its graph into a
new tenant-owned workflow, rendering string config values as sandboxed Jinja2
templates against the template's parameter defaults merged with the caller's
values.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from jinja2 import StrictUndefined, TemplateError as JinjaTemplateError
from jinja2.sandbox import SandboxedEnvironment
from pydantic import BaseModel, Field

from conductor.core.errors import TemplateError
from conductor.core.graph_schema import Connection, Language, Node, Workflow
from conductor.core.models import ExecutionStatus, WorkflowExecution, utc_now
from conductor.core.state import TemplateRepository

if TYPE_CHECKING:
    from conductor.core.graph_engine import ExecutionEngine

logger = logging.getLogger(__name__)

BUILTIN_TEMPLATES_DIR = Path(__file__).parent.parent / "config" / "templates"

# Category names of the built-in catalog
CATEGORIES = (
    "Lead Management",
    "Property Marketing",
    "Client Communication",
    "Administrative",
    "Analytics",
)


class TemplateStats(BaseModel):
    deployed: int = 0
    avg_success: float = 0.0
    avg_roi: float = 0.0


class WorkflowTemplate(BaseModel):
    """A publishable workflow blueprint."""

    id: str
    name: str
    description: str = ""
    category: str | None = None
    sample_use_case: str = ""
    language: Language = Language.AR_EN
    created_by: str = "admin"
    created_at: datetime = Field(default_factory=utc_now)
    parameters: dict[str, Any] = Field(default_factory=dict)  # name -> default value
    nodes: list[Node] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)
    stats: TemplateStats = Field(default_factory=TemplateStats)

    def as_workflow(self, tenant_id: str = "__template__") -> Workflow:
        return Workflow(
            id=self.id,
            name=self.name,
            tenant_id=tenant_id,
            description=self.description,
            is_template=True,
            language=self.language,
            nodes=[n.model_copy(deep=True) for n in self.nodes],
            connections=[c.model_copy(deep=True) for c in self.connections],
        )


class TemplateRegistry:
    """Catalog of published templates backed by the ``templates`` table."""

    def __init__(self, db: TemplateRepository):
        self.db = db
        self._env = SandboxedEnvironment(undefined=StrictUndefined, autoescape=False)

    # ========== Catalog ==========

    def publish(self, template: WorkflowTemplate) -> WorkflowTemplate:
        result = template.as_workflow().validate_graph()
        if not result.ok:
            raise TemplateError(
                f"Template '{template.id}' has structural errors: {'; '.join(result.errors)}"
            )
        self.db.insert_template(
            template.id,
            template.name,
            template.category,
            template.model_dump_json(exclude={"stats"}),
        )
        logger.info(f"Published template {template.id} ({template.category})")
        return self.get(template.id)

    def get(self, template_id: str) -> WorkflowTemplate:
        row = self.db.get_template_row(template_id)
        if row is None:
            raise TemplateError(f"Template '{template_id}' not found")
        return self._from_row(row)

    def list(self, category: str | None = None, search: str | None = None) -> list[WorkflowTemplate]:
        templates = [self._from_row(r) for r in self.db.list_template_rows(category)]
        if search:
            needle = search.lower()
            templates = [
                t
                for t in templates
                if needle in t.name.lower()
                or needle in t.description.lower()
                or needle in t.sample_use_case.lower()
            ]
        return templates

    def categories(self) -> list[str]:
        return sorted({r["category"] for r in self.db.list_template_rows() if r["category"]})

    def _from_row(self, row) -> WorkflowTemplate:
        template = WorkflowTemplate.model_validate_json(row["definition"])
        template.stats = TemplateStats(
            deployed=row["deployed"], avg_success=row["avg_success"], avg_roi=row["avg_roi"]
        )
        return template

    def load_builtin(self, directory: Path | None = None) -> list[str]:
        """Publish the YAML templates in ``directory`` that are not published yet."""
        directory = directory or BUILTIN_TEMPLATES_DIR

        published = []
        for path in sorted(directory.glob("*.yaml")):
            with open(path) as f:
                data = yaml.safe_load(f)
            template = WorkflowTemplate.model_validate(data)
            if self.db.get_template_row(template.id) is not None:
                continue
            self.publish(template)
            published.append(template.id)
        if published:
            logger.info(f"Loaded {len(published)} built-in template(s) from {directory}")
        return published

    # ========== Deploy ==========

    def deploy(
        self,
        template_id: str,
        tenant_id: str,
        created_by: str = "user",
        name: str | None = None,
        params: dict[str, Any] | None = None,
    ) -> Workflow:
        """Clone a template into a new workflow owned by ``tenant_id``."""
        template = self.get(template_id)
        values = {**template.parameters, **(params or {})}

        nodes = []
        for node in template.nodes:
            data = node.model_dump(mode="json")
            data["config"] = self._render(data.get("config") or {}, values, node.id)
            nodes.append(Node.model_validate(data))

        workflow = Workflow(
            name=name or template.name,
            tenant_id=tenant_id,
            created_by=created_by,
            description=template.description,
            tags=[f"template:{template.id}"] + ([template.category] if template.category else []),
            language=template.language,
            template_id=template.id,
            nodes=nodes,
            connections=[c.model_copy(deep=True) for c in template.connections],
        )
        saved = self.db.save_workflow(workflow)
        self.db.increment_template_deployed(template.id)
        logger.info(f"Deployed template {template.id} as {saved.id} for tenant {tenant_id}")
        return saved

    def _render(self, value: Any, values: dict[str, Any], node_id: str) -> Any:
        if isinstance(value, str):
            if "{{" not in value and "{%" not in value:
                return value
            try:
                return self._env.from_string(value).render(values)
            except JinjaTemplateError as e:
                raise TemplateError(f"Node '{node_id}': cannot render {value!r}: {e}") from e
        if isinstance(value, dict):
            return {k: self._render(v, values, node_id) for k, v in value.items()}
        if isinstance(value, list):
            return [self._render(v, values, node_id) for v in value]
        return value

    # ========== Outcomes ==========

    def record_outcome(self, template_id: str, success: bool, roi: float | None = None) -> None:
        self.db.record_template_outcome(template_id, success, roi)

    def attach(self, engine: ExecutionEngine) -> None:
        engine.add_listener(self.on_transition)

    def on_transition(
        self,
        execution: WorkflowExecution,
        previous: ExecutionStatus,
        new: ExecutionStatus,
    ) -> None:
        """Fold finished executions of deployed workflows into template stats."""
        if new not in (ExecutionStatus.SUCCESS, ExecutionStatus.FAILED):
            return
        workflow = self.db.get_workflow(execution.workflow_id, execution.workflow_version)
        if workflow.template_id is None or self.db.get_template_row(workflow.template_id) is None:
            return
        self.record_outcome(workflow.template_id, new == ExecutionStatus.SUCCESS)
