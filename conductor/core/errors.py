"""Error taxonomy for the orchestration core.

StructuralError is fatal at validation and never retried. HandlerError and its
subclasses go through the retry manager before they become terminal.
"""


class ConductorError(Exception):
    """Base class for all orchestration errors."""

    pass


class StructuralError(ConductorError):
    """Workflow graph is invalid (cycle, dangling reference, duplicate id)."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Invalid workflow graph")


class HandlerError(ConductorError):
    """A node's underlying operation failed."""

    code = "handler_error"

    def __init__(self, message: str, node_id: str | None = None):
        self.node_id = node_id
        super().__init__(message)


class DispatchError(HandlerError):
    """No eligible agent or integration is available for a node."""

    code = "dispatch_error"


class NodeTimeoutError(HandlerError):
    """Handler exceeded its time bound."""

    code = "timeout"


class BackpressureError(ConductorError):
    """Tenant is at its concurrent execution cap."""

    pass


class OrchestrationPausedError(ConductorError):
    """Tenant orchestration is paused; new runs are rejected."""

    pass


class WorkflowNotFoundError(ConductorError):
    """Workflow does not exist or was deleted."""

    pass


class ExecutionNotFoundError(ConductorError):
    """Execution does not exist."""

    pass


class InvalidTransitionError(ConductorError):
    """Execution status transition is not allowed by the state machine."""

    pass


class TemplateError(ConductorError):
    """Template cannot be published or deployed."""

    pass
