"""Workflow graph schema definitions using Pydantic models.

Workflows are directed acyclic graphs of typed nodes (agent tasks, triggers and
integration calls) joined by connections that may carry a field mapping and a
guard condition.

Design:
- Node configuration is a tagged union keyed by node kind. Unknown keys are kept
  in the config's extras so newer editors can round-trip through older engines.
- Guards are structured operators only, never evaluated code.
- A workflow is immutable once built; edits return a new Workflow.
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

import networkx as nx
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SerializeAsAny,
    field_validator,
    model_validator,
)

from conductor.core.models import utc_now


class NodeKind(str, Enum):
    """Closed set of node kinds."""

    AGENT_TASK = "agent_task"
    WEBHOOK_TRIGGER = "webhook_trigger"
    HTTP_CALL = "http_call"
    DB_QUERY = "db_query"
    EMAIL_SEND = "email_send"
    EXTERNAL_PORTAL_SYNC = "external_portal_sync"
    LEAD_SCORING = "lead_scoring"
    CLIENT_MESSAGE = "client_message"
    CUSTOM = "custom"


TRIGGER_KINDS = frozenset({NodeKind.WEBHOOK_TRIGGER})


class AgentRole(str, Enum):
    """Role tag carried by agent_task nodes and agent instances."""

    MANAGER = "manager"
    COORDINATOR = "coordinator"
    SPECIALIST = "specialist"
    NOTIFIER = "notifier"
    CUSTOM = "custom"


class Language(str, Enum):
    EN = "en"
    AR = "ar"
    AR_EN = "ar_en"


# ========== Per-kind configuration ==========


class NodeConfig(BaseModel):
    """Base node configuration.

    Keys are interpreted only by the handler for the node kind, so every field
    is optional here. Extra keys are preserved in ``extras``.
    """

    model_config = ConfigDict(extra="allow")

    timeout: float | None = Field(default=None, gt=0)  # Seconds, overrides engine default

    @property
    def extras(self) -> dict[str, Any]:
        return dict(self.model_extra or {})

    def as_dict(self) -> dict[str, Any]:
        """Known and extra keys as one plain dict (None values dropped)."""
        return self.model_dump(mode="json", exclude_none=True)


class AgentTaskConfig(NodeConfig):
    prompt: str | None = None
    model: str | None = None


class WebhookTriggerConfig(NodeConfig):
    url: str | None = None
    method: str = "POST"


class HttpCallConfig(NodeConfig):
    url: str | None = None
    method: str = "GET"
    headers: dict[str, str] = Field(default_factory=dict)


class DbQueryConfig(NodeConfig):
    table: str | None = None
    filter: dict[str, Any] = Field(default_factory=dict)


class EmailSendConfig(NodeConfig):
    to: str | None = None
    subject: str | None = None
    template: str | None = None


class PortalSyncConfig(NodeConfig):
    portal: str | None = None  # e.g. bayut, property_finder, dubizzle


class LeadScoringConfig(NodeConfig):
    model: str | None = None
    threshold: float | None = None


class ClientMessageConfig(NodeConfig):
    channel: Literal["whatsapp", "sms", "email", "voice"] | None = None
    message: str | None = None


class CustomConfig(NodeConfig):
    handler: str | None = None


CONFIG_MODELS: dict[NodeKind, type[NodeConfig]] = {
    NodeKind.AGENT_TASK: AgentTaskConfig,
    NodeKind.WEBHOOK_TRIGGER: WebhookTriggerConfig,
    NodeKind.HTTP_CALL: HttpCallConfig,
    NodeKind.DB_QUERY: DbQueryConfig,
    NodeKind.EMAIL_SEND: EmailSendConfig,
    NodeKind.EXTERNAL_PORTAL_SYNC: PortalSyncConfig,
    NodeKind.LEAD_SCORING: LeadScoringConfig,
    NodeKind.CLIENT_MESSAGE: ClientMessageConfig,
    NodeKind.CUSTOM: CustomConfig,
}


# ========== Guards ==========


class GuardCondition(BaseModel):
    """
    Safe, declarative guard evaluated against the source node's output.
    NO arbitrary code execution - only structured operators.
    """

    field: str  # Supports dotted notation for nested output: "lead.score"
    operator: Literal[
        "==",
        "!=",
        ">",
        "<",
        ">=",
        "<=",
        "in",
        "not_in",
        "contains",
        "starts_with",
        "ends_with",
        "exists",
    ]
    value: str | int | float | bool | list[str | int | float | bool] | None = None

    @field_validator("field")
    @classmethod
    def validate_field(cls, v):
        """Ensure field names are safe dot-separated identifiers."""
        pattern = r"^[a-zA-Z_][a-zA-Z0-9_]*(\.[a-zA-Z_][a-zA-Z0-9_]*)*$"
        if not re.match(pattern, v):
            raise ValueError(f"Invalid field name: {v}")
        return v

    @model_validator(mode="after")
    def check_value_type_for_operator(self) -> "GuardCondition":
        """Ensure value type is compatible with the operator."""
        is_list_op = self.operator in {"in", "not_in"}
        is_list_val = isinstance(self.value, list)

        if is_list_op and not is_list_val:
            raise ValueError(f"Operator '{self.operator}' requires value to be a list.")
        if not is_list_op and is_list_val:
            raise ValueError(f"Operator '{self.operator}' does not support list values.")
        return self

    def evaluate(self, data: Any) -> bool:
        """Evaluate against a node output.

        Missing fields never match (except for ``exists``, which is then False),
        and type mismatches return False instead of raising.
        """
        if not isinstance(data, dict):
            return False

        found = False
        value = None
        if self.field in data:
            value, found = data[self.field], True
        elif "." in self.field:
            current: Any = data
            try:
                for part in self.field.split("."):
                    current = current[part]
                value, found = current, True
            except (KeyError, TypeError):
                pass

        if self.operator == "exists":
            return found if self.value in (None, True) else not found
        if not found:
            return False

        try:
            if self.operator == "==":
                return value == self.value
            if self.operator == "!=":
                return value != self.value
            if self.operator in (">", "<", ">=", "<="):
                numeric = (int, float)
                if isinstance(value, bool) or isinstance(self.value, bool):
                    return False
                if not (isinstance(value, numeric) and isinstance(self.value, numeric)) and not (
                    isinstance(value, str) and isinstance(self.value, str)
                ):
                    return False
                if self.operator == ">":
                    return value > self.value
                if self.operator == "<":
                    return value < self.value
                if self.operator == ">=":
                    return value >= self.value
                return value <= self.value
            if self.operator == "in":
                return value in self.value
            if self.operator == "not_in":
                return value not in self.value
            if self.operator == "contains":
                return isinstance(value, (str, list, dict)) and self.value in value
            if self.operator == "starts_with":
                return isinstance(value, str) and value.startswith(str(self.value))
            if self.operator == "ends_with":
                return isinstance(value, str) and value.endswith(str(self.value))
        except TypeError:
            return False
        return False


# ========== Nodes and connections ==========


class NodePosition(BaseModel):
    """Editor canvas position; carried verbatim, never interpreted."""

    x: float = 0
    y: float = 0


_NODE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.:-]*$")


class Node(BaseModel):
    """A unit of work in a workflow graph with kind-specific configuration."""

    id: str
    kind: NodeKind
    name: str = ""
    description: str | None = None
    enabled: bool = True
    config: SerializeAsAny[NodeConfig] = Field(default_factory=NodeConfig)
    agent_role: AgentRole | None = None
    position: NodePosition = Field(default_factory=NodePosition)
    language: Language = Language.EN
    skills: list[str] = Field(default_factory=list)
    persona: str | None = None
    context: str | None = None

    @field_validator("id")
    @classmethod
    def validate_node_id(cls, v):
        if not _NODE_ID_PATTERN.match(v):
            raise ValueError(
                f"Invalid node ID: '{v}'. Use letters, digits, '_', '-', '.' or ':'."
            )
        return v

    @model_validator(mode="before")
    @classmethod
    def coerce_config(cls, data: Any) -> Any:
        """Parse ``config`` into the model registered for the node kind."""
        if not isinstance(data, dict):
            return data
        try:
            kind = NodeKind(data.get("kind"))
        except ValueError:
            return data  # Field validation reports the bad kind
        config_model = CONFIG_MODELS[kind]
        raw = data.get("config")
        if raw is None:
            raw = {}
        if isinstance(raw, NodeConfig):
            if type(raw) is config_model:
                return data
            raw = raw.model_dump()
        return {**data, "config": config_model.model_validate(raw)}

    @model_validator(mode="after")
    def validate_agent_role(self) -> "Node":
        """agent_role is required for agent tasks and forbidden elsewhere."""
        if self.kind == NodeKind.AGENT_TASK and self.agent_role is None:
            raise ValueError(f"Node '{self.id}' of kind 'agent_task' requires 'agent_role'")
        if self.kind != NodeKind.AGENT_TASK and self.agent_role is not None:
            raise ValueError(
                f"Node '{self.id}' of kind '{self.kind.value}' cannot set 'agent_role'"
            )
        return self

    @property
    def is_trigger(self) -> bool:
        return self.kind in TRIGGER_KINDS


class Connection(BaseModel):
    """Directed edge with optional field mapping and guard."""

    source: str
    target: str
    data_mapping: dict[str, str] | None = None  # output field -> input field
    condition: GuardCondition | None = None

    def map_output(self, output: dict[str, Any]) -> dict[str, Any]:
        """Project a source output onto the target's input fields."""
        if not self.data_mapping:
            return dict(output)
        return {
            input_field: output.get(output_field)
            for output_field, input_field in self.data_mapping.items()
        }


@dataclass
class ValidationResult:
    """Outcome of structural validation. Warnings never block execution."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    order: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


# ========== Workflow ==========


class Workflow(BaseModel):
    """A named, versioned graph owned by a tenant."""

    id: str = Field(default_factory=lambda: f"wf-{uuid.uuid4().hex[:12]}")
    name: str
    tenant_id: str
    created_by: str = "user"
    description: str | None = None
    tags: list[str] = Field(default_factory=list)
    is_template: bool = False
    template_id: str | None = None  # Set when deployed from a template
    language: Language = Language.AR_EN
    version: int = 1
    deleted: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    nodes: list[Node] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)

    # ---------- Lookup ----------

    def node_map(self) -> dict[str, Node]:
        return {n.id: n for n in self.nodes}

    def get_node(self, node_id: str) -> Node:
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise KeyError(node_id)

    def inbound(self, node_id: str) -> list[Connection]:
        return [c for c in self.connections if c.target == node_id]

    def outbound(self, node_id: str) -> list[Connection]:
        return [c for c in self.connections if c.source == node_id]

    def to_networkx(self) -> nx.DiGraph:
        """Convert to NetworkX DiGraph; dangling connections are left out."""
        G = nx.DiGraph()
        for node in self.nodes:
            G.add_node(node.id)
        for conn in self.connections:
            if conn.source in G and conn.target in G:
                G.add_edge(conn.source, conn.target)
        return G

    # ---------- Validation ----------

    def validate_graph(self) -> ValidationResult:
        """
        Validate graph structure.

        Errors: duplicate node ids, dangling or duplicate connections, cycles.
        Warnings: non-trigger roots that no trigger can reach.
        """
        result = ValidationResult()

        seen: set[str] = set()
        for node in self.nodes:
            if node.id in seen:
                result.errors.append(f"Duplicate node ID: '{node.id}'")
            seen.add(node.id)

        seen_pairs: set[tuple[str, str]] = set()
        for conn in self.connections:
            if conn.source not in seen:
                result.errors.append(
                    f"Connection {conn.source}->{conn.target}: source '{conn.source}' not found"
                )
            if conn.target not in seen:
                result.errors.append(
                    f"Connection {conn.source}->{conn.target}: target '{conn.target}' not found"
                )
            if conn.source == conn.target:
                result.errors.append(f"Self-loop on node '{conn.source}'")
            pair = (conn.source, conn.target)
            if pair in seen_pairs:
                result.warnings.append(
                    f"Duplicate connection from '{conn.source}' to '{conn.target}'"
                )
            seen_pairs.add(pair)

        G = self.to_networkx()
        index = {n.id: i for i, n in enumerate(self.nodes)}
        try:
            result.order = [
                node_id
                for level in nx.topological_generations(G)
                for node_id in sorted(level, key=index.__getitem__)
            ]
        except nx.NetworkXUnfeasible:
            cycle = nx.find_cycle(G)
            path = " -> ".join([edge[0] for edge in cycle] + [cycle[0][0]])
            result.errors.append(f"Cycle detected: {path}")

        if not self.nodes:
            result.warnings.append("Workflow has no nodes")

        if self.trigger_nodes():
            for node in self.nodes:
                if not node.is_trigger and G.in_degree(node.id) == 0:
                    result.warnings.append(
                        f"Node '{node.id}' is unreachable: no inbound connection "
                        f"and kind '{node.kind.value}' is not a trigger"
                    )

        return result

    # ---------- Execution planning ----------

    def trigger_nodes(self) -> list[Node]:
        return [n for n in self.nodes if n.is_trigger]

    def entry_nodes(self) -> list[Node]:
        """Trigger nodes, or every root when the workflow declares no trigger."""
        triggers = self.trigger_nodes()
        if triggers:
            return triggers
        targets = {c.target for c in self.connections}
        return [n for n in self.nodes if n.id not in targets]

    def reachable_nodes(self) -> set[str]:
        """Enabled nodes reachable from enabled entry nodes through enabled nodes."""
        nodes = self.node_map()
        reachable: set[str] = set()
        stack = [n.id for n in self.entry_nodes() if n.enabled]
        while stack:
            node_id = stack.pop()
            if node_id in reachable:
                continue
            reachable.add(node_id)
            for conn in self.outbound(node_id):
                target = nodes.get(conn.target)
                if target is not None and target.enabled and target.id not in reachable:
                    stack.append(target.id)
        return reachable

    def execution_levels(self) -> list[list[str]]:
        """Topological generations of reachable nodes, each in insertion order."""
        reachable = self.reachable_nodes()
        index = {n.id: i for i, n in enumerate(self.nodes)}
        G = self.to_networkx().subgraph(reachable)
        return [
            sorted(level, key=index.__getitem__) for level in nx.topological_generations(G)
        ]

    # ---------- Edits (return a new Workflow) ----------

    def _edited(self, **changes: Any) -> "Workflow":
        changes["updated_at"] = utc_now()
        return self.model_copy(update=changes, deep=True)

    def add_node(self, node: Node) -> "Workflow":
        if node.id in self.node_map():
            raise ValueError(f"Node '{node.id}' already exists")
        return self._edited(nodes=[*self.nodes, node])

    def remove_node(self, node_id: str) -> "Workflow":
        self.get_node(node_id)
        return self._edited(
            nodes=[n for n in self.nodes if n.id != node_id],
            connections=[
                c for c in self.connections if node_id not in (c.source, c.target)
            ],
        )

    def add_connection(self, connection: Connection) -> "Workflow":
        nodes = self.node_map()
        for endpoint in (connection.source, connection.target):
            if endpoint not in nodes:
                raise ValueError(f"Connection endpoint '{endpoint}' not found")
        if any(
            c.source == connection.source and c.target == connection.target
            for c in self.connections
        ):
            raise ValueError(
                f"Connection from '{connection.source}' to '{connection.target}' already exists"
            )
        return self._edited(connections=[*self.connections, connection])

    def remove_connection(self, source: str, target: str) -> "Workflow":
        remaining = [
            c for c in self.connections if not (c.source == source and c.target == target)
        ]
        if len(remaining) == len(self.connections):
            raise KeyError(f"{source}->{target}")
        return self._edited(connections=remaining)

    def update_node_config(self, node_id: str, config: dict[str, Any]) -> "Workflow":
        """Replace a node's config, re-parsed for the node's kind."""
        node = self.get_node(node_id)
        updated = Node.model_validate({**node.model_dump(exclude={"config"}), "config": config})
        return self._edited(nodes=[updated if n.id == node_id else n for n in self.nodes])

    def set_enabled(self, node_id: str, enabled: bool) -> "Workflow":
        node = self.get_node(node_id)
        updated = node.model_copy(update={"enabled": enabled}, deep=True)
        return self._edited(nodes=[updated if n.id == node_id else n for n in self.nodes])


def validate(workflow: Workflow) -> ValidationResult:
    """Validate a workflow's structure."""
    return workflow.validate_graph()
