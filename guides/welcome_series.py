"""Walk a new signup through the welcome series using a mock clock."""

import asyncio
from datetime import timedelta
from pathlib import Path

from dealflow import DealflowConfig, Engine, MockClock
from dealflow.persistence import InMemoryEngineRepository
from dealflow.transports import InMemoryTransport

HERE = Path(__file__).parent


async def main():
    clock = MockClock()
    engine = Engine(
        config=DealflowConfig(templates_path=str(HERE / "templates.yaml")),
        repository=InMemoryEngineRepository(),
        transport=InMemoryTransport(),
        clock=clock,
    )
    await engine.load_flows(str(HERE / "flows.yaml"), activate=True)

    engine.directory.upsert(
        "user-42",
        firstName="Ana",
        email="ana@example.com",
        phone="+351900000000",
        appUrl="https://reduzed.com/app",
        emailVerified=False,
    )

    run_ids = await engine.emit({"type": "user_signup", "recipient_id": "user-42"})
    await engine.run_pending()
    print(f"Started runs: {run_ids}")

    clock.advance(timedelta(days=1))
    await engine.tick()

    status = await engine.get_run_status(run_ids[0])
    print(f"Run state: {status.run.state}")
    for attempt in status.attempts:
        print(f"  {attempt.step_id}: {attempt.channel} {attempt.outcome}")

    for entry in engine.provider.outbox:
        print(f"Outbox -> {entry.address}: {entry.subject or entry.body[:40]}")

    print(await engine.get_metrics_snapshot())


if __name__ == "__main__":
    asyncio.run(main())
