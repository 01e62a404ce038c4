"""Project configuration loaded from ``.conductor/config.yaml``."""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

from conductor.core.graph_schema import NodeKind
from conductor.core.retry import RetryPolicy

logger = logging.getLogger(__name__)

CONFIG_DIR = ".conductor"
CONFIG_FILE = "config.yaml"
DB_PATH_ENV = "CONDUCTOR_DB_PATH"

DEFAULT_CONFIG_YAML = """\
# Conductor configuration for this project

# SQLite state database (relative to the project root)
db_path: .conductor/state.db

# Maximum concurrent executions per tenant; further run() calls are rejected
tenant_concurrency_cap: 10

# Nodes of one topological level run concurrently up to this bound (1 = sequential)
max_parallel_nodes: 1

# Default handler timeout in seconds (a node's config.timeout overrides it)
node_timeout: 60

# Default retry policy for every node kind
retry:
  max_retries: 3
  backoff_base: 1.0
  backoff_multiplier: 2.0
  max_delay: 30.0
  dispatch_retries: 0

# Per-kind overrides; unset keys fall back to the default policy
retry_overrides: {}
#  email_send:
#    max_retries: 0
"""


class RetrySettings(BaseModel):
    max_retries: int = Field(default=3, ge=0)
    backoff_base: float = Field(default=1.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=30.0, ge=0)
    dispatch_retries: int = Field(default=0, ge=0)

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(**self.model_dump())


class ConductorConfig(BaseModel):
    db_path: Path = Path(CONFIG_DIR) / "state.db"
    tenant_concurrency_cap: int = Field(default=10, ge=1)
    max_parallel_nodes: int = Field(default=1, ge=1)
    node_timeout: float = Field(default=60.0, gt=0)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    retry_overrides: dict[NodeKind, RetrySettings] = Field(default_factory=dict)

    def default_policy(self) -> RetryPolicy:
        return self.retry.to_policy()

    def retry_policies(self) -> dict[NodeKind, RetryPolicy]:
        """Per-kind policies, each override layered over the default."""
        return {
            kind: self.retry.model_copy(
                update=override.model_dump(exclude_unset=True)
            ).to_policy()
            for kind, override in self.retry_overrides.items()
        }


def load_config(repo_path: Path | None = None) -> ConductorConfig:
    """Load ``.conductor/config.yaml`` under ``repo_path`` (defaults when absent)."""
    repo_path = repo_path or Path.cwd()
    config_path = repo_path / CONFIG_DIR / CONFIG_FILE

    data: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        logger.debug(f"Loaded config from {config_path}")

    config = ConductorConfig.model_validate(data)

    env_db = os.environ.get(DB_PATH_ENV)
    if env_db:
        config.db_path = Path(env_db)
    elif not config.db_path.is_absolute():
        config.db_path = repo_path / config.db_path
    return config
