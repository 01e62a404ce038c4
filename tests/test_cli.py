"""Tests for CLI commands.

Tests the conductor CLI using Click's CliRunner:
- init: Initialize project
- validate / save / workflows: Workflow definitions
- templates / deploy: Template catalog
- run / status / logs / cancel / retry / recover: Executions
- bind / fleet / pause / resume: Orchestration
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from conductor import __version__
from conductor.cli import main
from conductor.config import DB_PATH_ENV
from conductor.core.models import ExecutionStatus
from conductor.core.state import Database

TENANT = "tenant-dubai"


@pytest.fixture
def cli_runner(monkeypatch) -> CliRunner:
    """Create a Click CLI test runner."""
    monkeypatch.delenv(DB_PATH_ENV, raising=False)
    return CliRunner()


@pytest.fixture
def project(cli_runner):
    """An initialized project in an isolated filesystem."""
    with cli_runner.isolated_filesystem():
        result = cli_runner.invoke(main, ["init"])
        assert result.exit_code == 0
        yield Path.cwd()


def _db() -> Database:
    return Database(Path(".conductor/state.db"))


def _deploy_lead_template(cli_runner) -> str:
    result = cli_runner.invoke(
        main, ["deploy", "tmpl-lead-processing", "--tenant", TENANT, "-p", "agency_name=Marina"]
    )
    assert result.exit_code == 0, result.output
    return _db().list_workflows(TENANT)[0].id


WORKFLOW_YAML = {
    "id": "wf-intake",
    "name": "Intake",
    "tenant_id": TENANT,
    "nodes": [
        {"id": "hook", "kind": "webhook_trigger"},
        {"id": "notify", "kind": "email_send", "config": {"to": "ops@example.com"}},
    ],
    "connections": [{"source": "hook", "target": "notify"}],
}


class TestInitCommand:
    def test_init_creates_project(self, cli_runner):
        """Init writes the config, creates the database and publishes templates."""
        with cli_runner.isolated_filesystem():
            result = cli_runner.invoke(main, ["init"])

            assert result.exit_code == 0
            assert "Project initialized!" in result.output
            config = yaml.safe_load(Path(".conductor/config.yaml").read_text())
            assert config["tenant_concurrency_cap"] == 10
            assert Path(".conductor/state.db").exists()
            assert len(_db().list_template_rows()) == 5

    def test_init_twice(self, project, cli_runner):
        result = cli_runner.invoke(main, ["init"])
        assert result.exit_code == 0
        assert "already initialized" in result.output

    def test_env_db_path(self, cli_runner, tmp_path, monkeypatch, mocker):
        """CONDUCTOR_DB_PATH points every command at another database."""
        monkeypatch.setenv(DB_PATH_ENV, str(tmp_path / "shared.db"))
        mocker.patch("conductor.cli.get_repo_path", return_value=tmp_path / "repo")
        result = cli_runner.invoke(main, ["init"])
        assert result.exit_code == 0
        assert (tmp_path / "shared.db").exists()
        assert (tmp_path / "repo" / ".conductor" / "config.yaml").exists()

    def test_version(self, cli_runner):
        result = cli_runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output


class TestWorkflowCommands:
    def test_validate_valid(self, project, cli_runner):
        Path("wf.yaml").write_text(yaml.safe_dump(WORKFLOW_YAML))
        result = cli_runner.invoke(main, ["validate", "wf.yaml"])
        assert result.exit_code == 0
        assert "Graph is valid" in result.output

    def test_validate_cycle(self, project, cli_runner):
        data = dict(WORKFLOW_YAML, connections=WORKFLOW_YAML["connections"] + [
            {"source": "notify", "target": "hook"}
        ])
        Path("wf.json").write_text(json.dumps(data))
        result = cli_runner.invoke(main, ["validate", "wf.json"])
        assert result.exit_code == 1
        assert "Cycle detected" in result.output

    def test_validate_schema_error(self, project, cli_runner):
        data = dict(WORKFLOW_YAML, nodes=[{"id": "a", "kind": "agent_task"}], connections=[])
        Path("wf.yaml").write_text(yaml.safe_dump(data))
        result = cli_runner.invoke(main, ["validate", "wf.yaml"])
        assert result.exit_code == 1
        assert "Validation failed" in result.output

    def test_save_creates_versions(self, project, cli_runner):
        Path("wf.yaml").write_text(yaml.safe_dump(WORKFLOW_YAML))
        assert "v1" in cli_runner.invoke(main, ["save", "wf.yaml"]).output
        assert "v2" in cli_runner.invoke(main, ["save", "wf.yaml"]).output
        assert _db().get_workflow("wf-intake").version == 2

        result = cli_runner.invoke(main, ["workflows", "--tenant", TENANT])
        assert result.exit_code == 0
        assert "Intake" in result.output


class TestTemplateCommands:
    def test_templates_lists_catalog(self, project, cli_runner):
        result = cli_runner.invoke(main, ["templates"])
        assert result.exit_code == 0
        assert "Workflow Templates" in result.output
        assert "Categories:" in result.output

    def test_deploy(self, project, cli_runner):
        workflow_id = _deploy_lead_template(cli_runner)
        workflow = _db().get_workflow(workflow_id)
        assert workflow.template_id == "tmpl-lead-processing"
        assert workflow.get_node("node-manager").config.subject == "Qualified lead for Marina"

    def test_deploy_bad_param(self, project, cli_runner):
        result = cli_runner.invoke(
            main, ["deploy", "tmpl-lead-processing", "--tenant", TENANT, "-p", "novalue"]
        )
        assert result.exit_code == 1
        assert "expected KEY=VALUE" in result.output

    def test_deploy_unknown_template(self, project, cli_runner):
        result = cli_runner.invoke(main, ["deploy", "tmpl-nope", "--tenant", TENANT])
        assert result.exit_code == 1
        assert "not found" in result.output


class TestExecutionCommands:
    def test_run_simulated(self, project, cli_runner):
        workflow_id = _deploy_lead_template(cli_runner)
        result = cli_runner.invoke(
            main,
            ["run", workflow_id, "--tenant", TENANT, "--simulate", "--input", '{"score": 85}'],
        )
        assert result.exit_code == 0, result.output
        assert "succeeded" in result.output

        execution = _db().list_executions(tenant_id=TENANT)[0]
        assert execution.status == ExecutionStatus.SUCCESS

        status = cli_runner.invoke(main, ["status", execution.id])
        assert status.exit_code == 0
        assert "success" in status.output

        logs = cli_runner.invoke(main, ["logs", execution.id, "--level", "agent"])
        assert logs.exit_code == 0
        assert "Simulated specialist" in logs.output

    def test_run_low_score_skips_qualifier(self, project, cli_runner):
        workflow_id = _deploy_lead_template(cli_runner)
        result = cli_runner.invoke(
            main,
            ["run", workflow_id, "-t", TENANT, "--simulate", "--no-follow", "--input", '{"score": 40}'],
        )
        assert result.exit_code == 0
        runs = _db().get_node_runs(_db().list_executions()[0].id)
        assert runs["node-ai-qualifier"].status.value == "skipped"

    def test_run_without_integrations_fails(self, project, cli_runner):
        workflow_id = _deploy_lead_template(cli_runner)
        result = cli_runner.invoke(main, ["run", workflow_id, "-t", TENANT, "--no-follow"])
        assert result.exit_code == 1
        assert "failed" in result.output

        execution = _db().list_executions()[0]
        assert execution.error.code == "dispatch_error"

        retried = cli_runner.invoke(main, ["retry", execution.id, "--simulate", "--no-follow"])
        assert retried.exit_code == 0, retried.output
        assert _db().get_execution(execution.id).status == ExecutionStatus.SUCCESS

    def test_run_invalid_input(self, project, cli_runner):
        workflow_id = _deploy_lead_template(cli_runner)
        result = cli_runner.invoke(main, ["run", workflow_id, "-t", TENANT, "--input", "[1]"])
        assert result.exit_code == 1
        assert "must be a JSON object" in result.output

    def test_run_wrong_tenant(self, project, cli_runner):
        workflow_id = _deploy_lead_template(cli_runner)
        result = cli_runner.invoke(main, ["run", workflow_id, "-t", "tenant-other", "--simulate"])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_cancel_finished_execution(self, project, cli_runner):
        workflow_id = _deploy_lead_template(cli_runner)
        cli_runner.invoke(main, ["run", workflow_id, "-t", TENANT, "--simulate", "--no-follow"])
        execution_id = _db().list_executions()[0].id

        result = cli_runner.invoke(main, ["cancel", execution_id])
        assert result.exit_code == 1
        assert "not allowed" in result.output

    def test_recover_nothing(self, project, cli_runner):
        result = cli_runner.invoke(main, ["recover"])
        assert result.exit_code == 0
        assert "No interrupted executions" in result.output

    def test_status_unknown_execution(self, project, cli_runner):
        result = cli_runner.invoke(main, ["status", "exec-missing"])
        assert result.exit_code == 1
        assert "not found" in result.output


class TestOrchestrationCommands:
    def test_bind_pause_resume(self, project, cli_runner):
        workflow_id = _deploy_lead_template(cli_runner)

        result = cli_runner.invoke(main, ["bind", TENANT, "-w", workflow_id, "-a", "agent-sara"])
        assert result.exit_code == 0
        assert "active" in result.output

        assert cli_runner.invoke(main, ["pause", TENANT]).exit_code == 0
        blocked = cli_runner.invoke(main, ["run", workflow_id, "-t", TENANT, "--simulate"])
        assert blocked.exit_code == 1
        assert "paused" in blocked.output

        assert cli_runner.invoke(main, ["resume", TENANT]).exit_code == 0
        ran = cli_runner.invoke(main, ["run", workflow_id, "-t", TENANT, "--simulate"])
        assert ran.exit_code == 0

        fleet = cli_runner.invoke(main, ["fleet"])
        assert fleet.exit_code == 0
        assert "Fleet Performance" in fleet.output

    def test_bind_foreign_workflow(self, project, cli_runner):
        workflow_id = _deploy_lead_template(cli_runner)
        result = cli_runner.invoke(main, ["bind", "tenant-other", "-w", workflow_id])
        assert result.exit_code == 1
        assert "not owned" in result.output

    def test_fleet_unknown_tenant(self, project, cli_runner):
        result = cli_runner.invoke(main, ["fleet", "tenant-missing"])
        assert result.exit_code == 1
