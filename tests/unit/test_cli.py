import json

import pytest
from typer.testing import CliRunner

from opsflow.cli import app

BUNDLE = """
definitions:
  - id: contact-onboarding
    tenant_id: t1
    trigger:
      event_type: contact.created
    entry_step_id: welcome
    steps:
      - id: welcome
        kind: notify
        config:
          message: "Welcome {{email}}"
campaigns:
  - id: camp-1
    tenant_id: t1
    name: Spring outreach
    agent_id: assistant-1
    targets:
      - id: target-1
        phone: "+15550000001"
      - id: target-2
        phone: "+15550000002"
"""

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated_database(tmp_path, monkeypatch):
    monkeypatch.setenv("OPSFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("OPSFLOW_DATABASE_URL", f"sqlite:///{tmp_path / 'ops.db'}")
    monkeypatch.delenv("OPSFLOW_TRANSPORT", raising=False)


@pytest.fixture
def loaded(tmp_path):
    path = tmp_path / "bundle.yaml"
    path.write_text(BUNDLE)
    result = runner.invoke(app, ["workflow", "load", str(path)])
    assert result.exit_code == 0, result.output
    assert "Loaded 1 definition(s) and 1 campaign(s)" in result.output


def test_workflow_list(loaded):
    result = runner.invoke(app, ["workflow", "list"])
    assert result.exit_code == 0, result.output
    assert "contact-onboarding\tcontact.created\tenabled" in result.output

    result = runner.invoke(app, ["workflow", "list", "--executions"])
    assert "No executions found" in result.output


def test_empty_workflow_list():
    result = runner.invoke(app, ["workflow", "list"])
    assert result.exit_code == 0, result.output
    assert "No definitions found" in result.output


def test_load_rejects_missing_or_invalid_files(tmp_path):
    result = runner.invoke(app, ["workflow", "load", str(tmp_path / "nope.yaml")])
    assert result.exit_code == 1

    bad = tmp_path / "bad.yaml"
    bad.write_text("definitions:\n  - id: broken\n")
    result = runner.invoke(app, ["workflow", "load", str(bad)])
    assert result.exit_code == 1
    assert "Invalid definitions" in result.output


def test_workflow_show_missing_execution(loaded):
    result = runner.invoke(app, ["workflow", "show", "missing"])
    assert result.exit_code == 1
    assert "Execution not found" in result.output


def test_campaign_status_and_queued_start(loaded):
    result = runner.invoke(
        app, ["--log-level", "WARNING", "campaign", "status", "camp-1"]
    )
    assert result.exit_code == 0, result.output
    status = json.loads(result.output)
    assert status["campaign_id"] == "camp-1"
    assert status["execution"] is None

    result = runner.invoke(app, ["campaign", "start", "camp-1"])
    assert result.exit_code == 0, result.output
    assert "Queued start for campaign camp-1" in result.output


def test_unknown_campaign_is_an_error(loaded):
    result = runner.invoke(app, ["campaign", "status", "ghost"])
    assert result.exit_code == 1
    assert "Error [not_found]" in result.output

    result = runner.invoke(app, ["campaign", "pause", "ghost"])
    assert result.exit_code == 1


def test_sync_abandoned_is_empty(loaded):
    result = runner.invoke(app, ["sync", "abandoned"])
    assert result.exit_code == 0, result.output
    assert "No abandoned sync records" in result.output
