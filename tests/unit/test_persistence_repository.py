from datetime import datetime, timedelta, timezone

import pytest

import dealflow.persistence as persistence
from dealflow.contracts import (
    AuditRecord,
    DeliveryAttempt,
    EngagementEvent,
    FlowDefinition,
    Run,
)
from dealflow.persistence import (
    InMemoryEngineRepository,
    SQLiteEngineRepository,
    get_repository,
)

NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteEngineRepository(tmp_path / "engine.db")
    return InMemoryEngineRepository()


def _flow(flow_id="f1", **kwargs):
    return FlowDefinition(
        id=flow_id,
        name="Flow",
        trigger={"type": "user_signup"},
        steps=[{"id": "s1", "type": "message", "channel": "sms", "template_ref": "t"}],
        **kwargs,
    )


def _attempt(run_id="r1", n=1, outcome="sent", channel="sms"):
    return DeliveryAttempt(
        run_id=run_id,
        flow_id="f1",
        step_id="s1",
        channel=channel,
        attempt_number=n,
        outcome=outcome,
        timestamp=NOW,
    )


@pytest.mark.asyncio
async def test_flow_versions_and_soft_delete(repo):
    v1 = await repo.save_flow(_flow())
    v2 = await repo.save_flow(_flow(is_active=True))
    assert (v1.version, v2.version) == (1, 2)

    latest = await repo.get_flow("f1")
    assert latest.version == 2 and latest.is_active
    assert (await repo.get_flow("f1", 1)).version == 1
    assert await repo.get_flow("f1", 9) is None

    toggled = await repo.set_flow_active("f1", False)
    assert toggled.is_active is False

    assert await repo.delete_flow("f1") is True
    assert await repo.delete_flow("f1") is False
    assert await repo.get_flow("f1") is None
    assert await repo.list_flows() == []
    assert (await repo.get_flow("f1", 2)).version == 2
    assert await repo.set_flow_active("f1", True) is None


@pytest.mark.asyncio
async def test_run_queries(repo):
    waiting = Run(
        flow_id="f1",
        flow_version=1,
        recipient_id="R",
        itinerary=["s1"],
        state="waiting",
        wake_at=NOW + timedelta(hours=1),
    )
    done = Run(flow_id="f1", flow_version=1, recipient_id="S", state="completed")
    other = Run(flow_id="f2", flow_version=1, recipient_id="R")
    for run in (waiting, done, other):
        await repo.create_run(run)

    assert {r.id for r in await repo.list_runs(flow_id="f1")} == {waiting.id, done.id}
    assert [r.id for r in await repo.list_runs(states=["completed"])] == [done.id]
    assert {r.id for r in await repo.list_runs(recipient_id="R")} == {waiting.id, other.id}
    assert await repo.list_runs(states=[]) == []

    assert (await repo.find_open_run("f1", "R")).id == waiting.id
    assert await repo.find_open_run("f1", "S") is None

    assert await repo.list_due_runs(NOW) == []
    due = await repo.list_due_runs(NOW + timedelta(hours=1))
    assert [r.id for r in due] == [waiting.id]

    waiting.state = "completed"
    waiting.executed = ["s1"]
    waiting.itinerary = []
    await repo.update_run(waiting)
    stored = await repo.get_run(waiting.id)
    assert stored.state == "completed"
    assert stored.executed == ["s1"]
    assert stored.wake_at == NOW + timedelta(hours=1)
    assert await repo.get_run("missing") is None


@pytest.mark.asyncio
async def test_attempts_are_unique_per_key(repo):
    assert await repo.add_attempt(_attempt(n=1, outcome="failed")) is True
    assert await repo.add_attempt(_attempt(n=2)) is True
    assert await repo.add_attempt(_attempt(n=2)) is False
    await repo.add_attempt(_attempt(run_id="r2", channel="whatsapp"))

    attempts = await repo.list_attempts(run_id="r1")
    assert [a.attempt_number for a in attempts] == [1, 2]
    assert [a.run_id for a in await repo.list_attempts(channel="whatsapp")] == ["r2"]
    assert len(await repo.list_attempts(flow_id="f1", step_id="s1")) == 3


@pytest.mark.asyncio
async def test_events_and_audit_filters(repo):
    await repo.add_event(EngagementEvent(type="opened", run_id="r1", flow_id="f1", channel="sms"))
    await repo.add_event(EngagementEvent(type="clicked", flow_id="f2", channel="email"))
    assert [e.type for e in await repo.list_events(run_id="r1")] == ["opened"]
    assert [e.type for e in await repo.list_events(flow_id="f2")] == ["clicked"]
    assert len(await repo.list_events()) == 2

    await repo.add_audit_record(AuditRecord(flow_id="f1", channel="sms", status="Sent", cost=0.05))
    await repo.add_audit_record(AuditRecord(flow_id="f1", channel="whatsapp", status="Failed"))
    records = await repo.list_audit_records(flow_id="f1")
    assert [r.status for r in records] == ["Sent", "Failed"]
    assert [r.channel for r in await repo.list_audit_records(channel="whatsapp")] == ["whatsapp"]


@pytest.mark.asyncio
async def test_sqlite_state_survives_reopen(tmp_path):
    path = tmp_path / "engine.db"
    repo = SQLiteEngineRepository(path)
    await repo.save_flow(_flow())
    run = Run(flow_id="f1", flow_version=1, recipient_id="R", context={"firstName": "Ana"})
    await repo.create_run(run)
    await repo.add_attempt(_attempt(run_id=run.id))

    reopened = SQLiteEngineRepository(path)
    assert (await reopened.get_flow("f1")).version == 1
    assert (await reopened.get_run(run.id)).context == {"firstName": "Ana"}
    assert await reopened.add_attempt(_attempt(run_id=run.id)) is False


def test_get_repository_backends(tmp_path, monkeypatch):
    monkeypatch.delenv("DEALFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("DEALFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setattr(persistence, "_repository_instance", None)

    assert isinstance(get_repository(), InMemoryEngineRepository)
    sqlite_repo = get_repository(f"sqlite://{tmp_path / 'x.db'}")
    assert isinstance(sqlite_repo, SQLiteEngineRepository)
    assert get_repository() is sqlite_repo
    with pytest.raises(ValueError):
        get_repository("mysql://nope")
