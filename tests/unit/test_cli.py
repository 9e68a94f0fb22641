import asyncio
import csv
import io
from pathlib import Path

import pytest
from typer.testing import CliRunner

import dealflow.persistence as persistence
from dealflow.cli import app
from dealflow.contracts import (
    AuditRecord,
    DeliveryAttempt,
    EngagementEvent,
    FlowDefinition,
    Run,
)
from dealflow.persistence import InMemoryEngineRepository

FIXTURES = Path(__file__).parent.parent / "fixtures"


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    for name in ("DEALFLOW_DATABASE_URL", "DATABASE_URL", "DEALFLOW_TRANSPORT"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DEALFLOW_CONFIG", str(tmp_path / "missing.yaml"))


def _setup_repo() -> InMemoryEngineRepository:
    repo = InMemoryEngineRepository()
    persistence._repository_instance = repo
    return repo


def _seed(repo):
    flow = FlowDefinition(
        id="welcome",
        name="Welcome Series",
        trigger={"type": "user_signup"},
        steps=[{"id": "hello", "type": "message", "channel": "sms", "template_ref": "t"}],
        is_active=True,
    )
    asyncio.run(repo.save_flow(flow))
    done = Run(id="run-done", flow_id="welcome", flow_version=1, recipient_id="R", state="completed")
    failed = Run(
        id="run-failed",
        flow_id="welcome",
        flow_version=1,
        recipient_id="S",
        state="failed",
        last_error="Message too long for sms: 178 chars (max 160)",
    )
    asyncio.run(repo.create_run(done))
    asyncio.run(repo.create_run(failed))
    attempt = DeliveryAttempt(
        run_id="run-done",
        flow_id="welcome",
        step_id="hello",
        channel="sms",
        attempt_number=1,
        outcome="sent",
        cost=0.05,
    )
    asyncio.run(repo.add_attempt(attempt))
    asyncio.run(
        repo.add_audit_record(
            AuditRecord(
                run_id="run-done",
                flow_id="welcome",
                step_id="hello",
                channel="sms",
                audience="Welcome Series",
                status="Sent",
                attempt_number=1,
                cost=0.05,
            )
        )
    )
    for kind in ("delivered", "opened"):
        asyncio.run(
            repo.add_event(
                EngagementEvent(
                    type=kind, run_id="run-done", step_id="hello", flow_id="welcome", channel="sms"
                )
            )
        )


def test_flows_list_shows_flows():
    repo = _setup_repo()
    runner = CliRunner()
    result = runner.invoke(app, ["flows", "list"])
    assert result.exit_code == 0, result.output
    assert "No flows found" in result.output

    _seed(repo)
    result = runner.invoke(app, ["flows", "list"])
    assert result.exit_code == 0, result.output
    assert "welcome\tv1\tactive\tuser_signup\tWelcome Series" in result.output


def test_runs_list_and_state_filter():
    repo = _setup_repo()
    _seed(repo)
    runner = CliRunner()

    result = runner.invoke(app, ["runs", "list"])
    assert result.exit_code == 0, result.output
    assert "run-done" in result.output
    assert "run-failed" in result.output

    result = runner.invoke(app, ["runs", "list", "--state", "failed"])
    assert result.exit_code == 0, result.output
    assert "run-done" not in result.output
    assert "Message too long" in result.output


def test_runs_show_details_and_missing():
    repo = _setup_repo()
    _seed(repo)
    runner = CliRunner()

    result = runner.invoke(app, ["runs", "show", "run-done"])
    assert result.exit_code == 0, result.output
    assert "Run run-done: completed" in result.output
    assert "hello #1 sms: sent" in result.output

    result_missing = runner.invoke(app, ["runs", "show", "missing-id"])
    assert result_missing.exit_code == 1
    assert "Run not found" in result_missing.output


def test_metrics_show_rebuilds_from_log():
    repo = _setup_repo()
    _seed(repo)
    result = CliRunner().invoke(app, ["metrics", "show", "--channel", "sms"])
    assert result.exit_code == 0, result.output
    assert "Sent: 1" in result.output
    assert "Delivered: 1" in result.output
    assert "Opened: 1" in result.output
    assert "Open rate: 100.0%" in result.output
    assert "Cost per click: 0.00" in result.output


def test_audit_export_csv(tmp_path):
    repo = _setup_repo()
    _seed(repo)
    runner = CliRunner()

    result = runner.invoke(app, ["audit", "export"])
    assert result.exit_code == 0, result.output
    rows = list(csv.reader(io.StringIO(result.output)))
    assert rows[0] == [
        "date", "channel", "audience", "status", "delivered", "opened", "clicked", "cost"
    ]
    assert rows[1][1:] == ["sms", "Welcome Series", "Sent", "1", "1", "0", "0.050"]

    out = tmp_path / "log.csv"
    result = runner.invoke(app, ["audit", "export", "--output", str(out)])
    assert result.exit_code == 0, result.output
    assert "Wrote 1 rows" in result.output
    assert out.read_text().startswith("date,channel")


def test_flows_load_validates_and_saves():
    repo = _setup_repo()
    runner = CliRunner()

    result = runner.invoke(
        app,
        [
            "flows",
            "load",
            str(FIXTURES / "flows.yaml"),
            "--templates",
            str(FIXTURES / "templates.yaml"),
            "--activate",
        ],
    )
    assert result.exit_code == 0, result.output
    assert "Saved welcome-series v1" in result.output
    flows = asyncio.run(repo.list_flows())
    assert {f.id for f in flows} == {"welcome-series", "expiring-soon"}
    assert all(f.is_active for f in flows)

    result = runner.invoke(app, ["flows", "load", str(FIXTURES / "flows.yaml")])
    assert result.exit_code == 1
    assert "Template not found" in result.output


def test_flows_duplicate_saves_inactive_copy():
    repo = _setup_repo()
    runner = CliRunner()
    catalog = str(FIXTURES / "templates.yaml")
    result = runner.invoke(
        app, ["flows", "load", str(FIXTURES / "flows.yaml"), "--templates", catalog, "--activate"]
    )
    assert result.exit_code == 0, result.output

    result = runner.invoke(
        app,
        ["flows", "duplicate", "welcome-series", "--copy-id", "welcome-b", "--templates", catalog],
    )
    assert result.exit_code == 0, result.output
    assert "Duplicated welcome-series as welcome-b" in result.output
    copy = asyncio.run(repo.get_flow("welcome-b"))
    assert copy.name.endswith("(Copy)")
    assert not copy.is_active

    result = runner.invoke(app, ["flows", "duplicate", "ghost"])
    assert result.exit_code == 1
    assert "Error" in result.output
