"""Trigger matching, cancellation and flow lifecycle."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from dealflow import DealflowConfig, Engine, SandboxProvider
from dealflow.errors import FlowNotFound, ValidationError
from dealflow.persistence import InMemoryEngineRepository
from dealflow.transports import InMemoryTransport


def _flow(flow_id="welcome", trigger=None, steps=None, name="Welcome Series"):
    return {
        "id": flow_id,
        "name": name,
        "trigger": trigger or {"type": "user_signup"},
        "steps": steps
        or [
            {"id": "hello", "type": "message", "channel": "sms", "template_ref": "welcome"},
            {"id": "wait", "type": "delay", "duration": 1, "unit": "days"},
            {"id": "nudge", "type": "message", "channel": "whatsapp", "template_ref": "check-in"},
        ],
        "is_active": True,
    }


SIGNUP = {"type": "user_signup", "recipient_id": "R", "event_id": "evt-1"}


@pytest.mark.asyncio
async def test_redelivered_event_creates_no_second_run(engine, clock):
    await engine.save_flow(_flow())
    first = await engine.emit(SIGNUP)
    assert len(first) == 1
    assert await engine.emit(SIGNUP) == []
    await engine.run_pending()
    assert await engine.emit(SIGNUP) == []
    assert len(await engine.list_runs(flow_id="welcome")) == 1

    clock.advance(timedelta(days=1))
    await engine.tick()
    assert (await engine.get_run_status(first[0])).run.state == "completed"
    assert len(await engine.emit(SIGNUP)) == 1


@pytest.mark.asyncio
async def test_unknown_and_malformed_events(engine):
    await engine.save_flow(_flow())
    assert await engine.emit({"type": "wishlist_shared", "recipient_id": "R"}) == []
    with pytest.raises(ValidationError):
        await engine.emit({"type": "deal_expiring", "recipient_id": "R"})
    with pytest.raises(ValidationError):
        await engine.emit({"type": "user_signup"})
    with pytest.raises(ValidationError):
        await engine.emit("user_signup")


@pytest.mark.asyncio
async def test_trigger_conditions(engine):
    sms_only = [{"id": "s", "type": "message", "channel": "sms", "template_ref": "welcome"}]
    await engine.save_flow(
        _flow("expiring", {"type": "deal_expiring", "days": 3}, sms_only)
    )
    await engine.save_flow(
        _flow("winback", {"type": "inactive_user", "idle_days": 30}, sms_only)
    )
    await engine.save_flow(
        _flow("fashion", {"type": "new_deal_published", "deal_category": "Fashion"}, sms_only)
    )

    assert await engine.emit({"type": "deal_expiring", "recipient_id": "R", "days": 2}) == []
    assert len(await engine.emit({"type": "deal_expiring", "recipient_id": "R", "days": 3})) == 1
    assert await engine.emit({"type": "inactive_user", "recipient_id": "R", "idle_days": 10}) == []
    assert len(await engine.emit({"type": "inactive_user", "recipient_id": "R", "idle_days": 45})) == 1
    assert (
        await engine.emit(
            {"type": "new_deal_published", "recipient_id": "R", "deal_category": "Food"}
        )
        == []
    )
    created = await engine.emit(
        {"type": "new_deal_published", "recipient_id": "R", "deal_category": "fashion"}
    )
    assert len(created) == 1
    run = (await engine.get_run_status(created[0])).run
    assert run.context["deal_category"] == "fashion"
    assert run.context["firstName"] == "Ana"
    assert run.trigger_type == "new_deal_published"


@pytest.mark.asyncio
async def test_user_segment_matches_recipient_context(engine):
    await engine.save_flow(
        _flow(
            "vip",
            {"type": "password_reset", "user_segment": "vip"},
            [{"id": "s", "type": "message", "channel": "sms", "template_ref": "welcome"}],
        )
    )
    assert await engine.emit({"type": "password_reset", "recipient_id": "R"}) == []
    engine.directory.upsert("R", segment="vip")
    assert len(await engine.emit({"type": "password_reset", "recipient_id": "R"})) == 1



SMS_ONLY = [{"id": "s", "type": "message", "channel": "sms", "template_ref": "welcome"}]


async def _started_flows(engine, event):
    run_ids = await engine.emit(event)
    await engine.run_pending()
    return sorted([(await engine.get_run_status(run_id)).run.flow_id for run_id in run_ids])


@pytest.mark.asyncio
async def test_deal_value_and_category_list_conditions(engine):
    await engine.save_flow(
        _flow(
            "big-prop",
            {
                "type": "deal_clicked",
                "min_deal_value": 100,
                "deal_categories": ["CFD Prop", "Futures Prop"],
            },
            SMS_ONLY,
        )
    )
    await engine.save_flow(
        _flow("any-click", {"type": "deal_clicked", "deal_categories": ["All"]}, SMS_ONLY)
    )

    def click(**fields):
        return {"type": "deal_clicked", "recipient_id": "R", **fields}

    assert await _started_flows(engine, click(deal_category="cfd prop", deal_value=50)) == [
        "any-click"
    ]
    assert await _started_flows(engine, click(deal_category="Stocks", deal_value=150)) == [
        "any-click"
    ]
    assert await _started_flows(engine, click(deal_category="futures prop", deal_value=150)) == [
        "any-click",
        "big-prop",
    ]
    assert await _started_flows(engine, click(deal_category="CFD Prop")) == ["any-click"]
    assert await _started_flows(engine, click()) == ["any-click"]


@pytest.mark.asyncio
async def test_user_tags_match_any_recipient_tag(engine):
    await engine.save_flow(
        _flow("beta", {"type": "profile_updated", "user_tags": ["premium", "beta"]}, SMS_ONLY)
    )
    updated = {"type": "profile_updated", "recipient_id": "R", "changed_fields": ["email"]}
    assert await _started_flows(engine, updated) == []
    engine.directory.upsert("R", tags=["Beta", "early"])
    assert await _started_flows(engine, updated) == ["beta"]
    engine.directory.upsert("R", tags="vip, premium")
    assert await _started_flows(engine, updated) == ["beta"]


@pytest.mark.asyncio
async def test_scheduled_trigger_holds_run_until_slot(engine, clock, provider):
    trigger = {
        "type": "subscription_ended",
        "schedule": {"enabled": True, "time": "09:00", "days": ["monday"], "timezone": "UTC"},
    }
    await engine.save_flow(_flow("winback", trigger, SMS_ONLY))
    ended = {"type": "subscription_ended", "recipient_id": "R", "plan": "pro"}

    run_id = (await engine.emit(ended))[0]
    await engine.run_pending()
    run = (await engine.get_run_status(run_id)).run
    assert run.state == "waiting"
    assert run.wait_reason == "schedule"
    assert run.wake_at == datetime(2025, 1, 6, 9, tzinfo=timezone.utc)
    assert run.context["plan"] == "pro"
    assert provider.outbox == []
    assert await engine.emit(ended) == []

    clock.advance(timedelta(days=5))
    await engine.tick()
    assert (await engine.get_run_status(run_id)).run.state == "waiting"

    clock.advance(timedelta(hours=9))
    await engine.tick()
    assert (await engine.get_run_status(run_id)).run.state == "completed"
    assert len(provider.outbox) == 1


@pytest.mark.asyncio
async def test_disabled_schedule_starts_immediately(engine, provider):
    trigger = {"type": "subscription_ended", "schedule": {"enabled": False, "days": ["monday"]}}
    await engine.save_flow(_flow("winback", trigger, SMS_ONLY))
    assert await _started_flows(engine, {"type": "subscription_ended", "recipient_id": "R"}) == [
        "winback"
    ]
    assert len(provider.outbox) == 1

@pytest.mark.asyncio
async def test_deactivation_cancels_open_runs(engine, clock):
    await engine.save_flow(_flow())
    run_id = (await engine.emit(SIGNUP))[0]
    await engine.run_pending()

    await engine.toggle_flow("welcome", False)
    status = await engine.get_run_status(run_id)
    assert status.run.state == "cancelled"
    assert await engine.emit(SIGNUP) == []

    clock.advance(timedelta(days=2))
    await engine.tick()
    assert len((await engine.get_run_status(run_id)).attempts) == 1


@pytest.mark.asyncio
async def test_deactivation_can_leave_pinned_runs_running(clock, provider, templates):
    config = DealflowConfig(scheduler={"cancel_runs_on_deactivate": False})
    engine = Engine(
        config=config,
        repository=InMemoryEngineRepository(),
        transport=InMemoryTransport(),
        provider=provider,
        clock=clock,
        templates=templates,
    )
    engine.directory.upsert("R", firstName="Ana", phone="+351900000001")
    await engine.save_flow(_flow())
    run_id = (await engine.emit(SIGNUP))[0]
    await engine.run_pending()

    await engine.toggle_flow("welcome", False)
    clock.advance(timedelta(days=1))
    await engine.tick()
    assert (await engine.get_run_status(run_id)).run.state == "completed"


@pytest.mark.asyncio
async def test_delete_and_edit_keep_pinned_version(engine, clock):
    await engine.save_flow(_flow())
    run_id = (await engine.emit(SIGNUP))[0]
    await engine.run_pending()

    edited = _flow(
        steps=[{"id": "other", "type": "message", "channel": "sms", "template_ref": "welcome"}]
    )
    v2 = await engine.save_flow(edited)
    assert v2.version == 2
    await engine.delete_flow("welcome")
    with pytest.raises(FlowNotFound):
        await engine.get_flow("welcome")

    clock.advance(timedelta(days=1))
    await engine.tick()
    status = await engine.get_run_status(run_id)
    assert status.run.flow_version == 1
    assert status.run.state == "completed"
    assert [a.step_id for a in status.attempts] == ["hello", "nudge"]
    assert await engine.list_flows() == []


@pytest.mark.asyncio
async def test_cancel_waiting_run(engine, clock):
    await engine.save_flow(_flow())
    run_id = (await engine.emit(SIGNUP))[0]
    await engine.run_pending()

    run = await engine.scheduler.cancel(run_id)
    assert run.state == "cancelled"
    clock.advance(timedelta(days=1))
    await engine.tick()
    status = await engine.get_run_status(run_id)
    assert status.run.state == "cancelled"
    assert len(status.attempts) == 1


class BlockingProvider(SandboxProvider):
    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def deliver(self, channel, address, message, idempotency_key):
        self.entered.set()
        await self.release.wait()
        return await super().deliver(channel, address, message, idempotency_key)


@pytest.mark.asyncio
async def test_cancel_lets_in_flight_step_finish(clock, templates):
    provider = BlockingProvider()
    engine = Engine(
        config=DealflowConfig(),
        repository=InMemoryEngineRepository(),
        transport=InMemoryTransport(),
        provider=provider,
        clock=clock,
        templates=templates,
    )
    engine.directory.upsert("R", firstName="Ana", phone="+351900000001")
    await engine.save_flow(
        _flow(
            steps=[
                {"id": "hello", "type": "message", "channel": "sms", "template_ref": "welcome"},
                {"id": "nudge", "type": "message", "channel": "whatsapp", "template_ref": "check-in"},
            ]
        )
    )
    run_id = (await engine.emit(SIGNUP))[0]

    worker = asyncio.create_task(engine.run_pending())
    await provider.entered.wait()
    cancel = asyncio.create_task(engine.scheduler.cancel(run_id))
    await asyncio.sleep(0)
    assert not cancel.done()

    provider.release.set()
    await worker
    assert (await cancel).state == "cancelled"

    status = await engine.get_run_status(run_id)
    assert status.run.state == "cancelled"
    assert [a.step_id for a in status.attempts] == ["hello"]
    assert status.run.executed == ["hello"]


class SlowLoadRepository(InMemoryEngineRepository):
    """Stalls the next run load so a second task can race the worker."""

    def __init__(self):
        super().__init__()
        self.stall_next_load = False

    async def get_run(self, run_id):
        if self.stall_next_load:
            self.stall_next_load = False
            await asyncio.sleep(0.05)
        return await super().get_run(run_id)


@pytest.mark.asyncio
async def test_cancel_during_duplicate_wake_message_sticks(clock, provider, templates):
    repository = SlowLoadRepository()
    engine = Engine(
        config=DealflowConfig(),
        repository=repository,
        transport=InMemoryTransport(),
        provider=provider,
        clock=clock,
        templates=templates,
    )
    engine.directory.upsert("R", firstName="Ana", phone="+351900000001")
    await engine.save_flow(
        _flow(
            steps=[
                {"id": "a", "type": "message", "channel": "sms", "template_ref": "welcome"},
                {"id": "wait", "type": "delay", "duration": 1, "unit": "days"},
                {"id": "b", "type": "message", "channel": "sms", "template_ref": "welcome"},
            ]
        )
    )
    run_id = (await engine.emit(SIGNUP))[0]
    await engine.run_pending()

    # A redelivered run message arrives before the delay is due.
    repository.stall_next_load = True
    early = asyncio.create_task(engine.scheduler.advance(run_id))
    await asyncio.sleep(0)
    cancelled = await engine.scheduler.cancel(run_id, "recipient opted out")
    await early

    assert cancelled.state == "cancelled"
    assert cancelled.last_error == "recipient opted out"

    clock.advance(timedelta(days=2))
    await engine.tick()
    status = await engine.get_run_status(run_id)
    assert status.run.state == "cancelled"
    assert [a.step_id for a in status.attempts] == ["a"]
    assert len(provider.outbox) == 1
    assert len(engine.scheduler._locks) == 0

@pytest.mark.asyncio
async def test_opt_out_cancels_and_blocks_new_runs(engine):
    await engine.save_flow(_flow())
    await engine.save_flow(_flow("second", name="Second"))
    run_ids = await engine.emit(SIGNUP)
    await engine.run_pending()
    assert len(run_ids) == 2

    cancelled = await engine.opt_out("R")
    assert set(cancelled) == set(run_ids)
    for run_id in run_ids:
        assert (await engine.get_run_status(run_id)).run.state == "cancelled"
    assert await engine.emit({"type": "user_signup", "recipient_id": "R"}) == []



class AccountServiceDirectory:
    """Directory owned by another service; only reachable through its methods."""

    def __init__(self):
        self.records = {"R": {"firstName": "Ana", "phone": "+351900000001"}}
        self.opt_outs = []

    async def get(self, recipient_id):
        record = self.records.get(recipient_id)
        return dict(record) if record is not None else None

    async def resolve(self, audience):
        return []

    async def opt_out(self, recipient_id):
        self.opt_outs.append(recipient_id)
        self.records[recipient_id]["opted_out"] = True


@pytest.mark.asyncio
async def test_opt_out_reaches_any_directory(clock, provider, templates):
    directory = AccountServiceDirectory()
    engine = Engine(
        config=DealflowConfig(),
        repository=InMemoryEngineRepository(),
        transport=InMemoryTransport(),
        provider=provider,
        clock=clock,
        directory=directory,
        templates=templates,
    )
    await engine.save_flow(_flow())
    run_id = (await engine.emit(SIGNUP))[0]
    await engine.run_pending()

    assert await engine.opt_out("R") == [run_id]
    assert directory.opt_outs == ["R"]
    assert await engine.emit({"type": "user_signup", "recipient_id": "R"}) == []

@pytest.mark.asyncio
async def test_broadcast_resolves_audience_and_targets_flow(engine, provider):
    engine.directory.upsert("S", firstName="Sol", phone="+34600000002", country="ES")
    engine.directory.upsert("T", firstName="Tia", phone="+351900000003", country="pt", opted_out=True)
    sms_only = [{"id": "s", "type": "message", "channel": "sms", "template_ref": "welcome"}]
    await engine.save_flow(_flow("promo-a", {"type": "custom_broadcast"}, sms_only, name="Promo A"))
    await engine.save_flow(_flow("promo-b", {"type": "custom_broadcast"}, sms_only, name="Promo B"))

    created = await engine.emit(
        {
            "type": "custom_broadcast",
            "flow_id": "promo-a",
            "audience_filter": {"kind": "by_country", "country": "pt"},
        }
    )
    await engine.run_pending()
    assert len(created) == 1
    run = (await engine.get_run_status(created[0])).run
    assert (run.flow_id, run.recipient_id, run.state) == ("promo-a", "R", "completed")

    rows = await engine.export_audit(flow_id="promo-a")
    assert [(r.audience, r.status) for r in rows] == [("Users in pt", "Sent")]

    everyone = await engine.emit({"type": "custom_broadcast"})
    assert len(everyone) == 4


@pytest.mark.asyncio
async def test_worker_processes_runs_concurrently(engine):
    sms_only = [{"id": "s", "type": "message", "channel": "sms", "template_ref": "welcome"}]
    await engine.save_flow(_flow(steps=sms_only))
    for i in range(5):
        engine.directory.upsert(f"user-{i}", firstName=f"U{i}", phone=f"+35190000010{i}")
        await engine.emit({"type": "user_signup", "recipient_id": f"user-{i}"})

    await engine.start(lifespan=0.5)

    completed = await engine.list_runs(state="completed")
    assert len(completed) == 5
    assert len(engine.provider.outbox) == 5
    assert (await engine.get_metrics_snapshot()).sent == 5
    assert len(engine.triggers._pair_locks) == 0
    assert len(engine.scheduler._locks) == 0
