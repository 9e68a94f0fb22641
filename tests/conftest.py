from pathlib import Path

import pytest

from dealflow import DealflowConfig, Engine, MockClock, SandboxProvider, Template
from dealflow.persistence import InMemoryEngineRepository
from dealflow.templates import TemplateStore
from dealflow.transports import InMemoryTransport

FIXTURES = Path(__file__).parent / "fixtures"

LONG_SMS_BODY = "Hi {{firstName}}! " + "x" * 170


@pytest.fixture
def clock():
    return MockClock()


@pytest.fixture
def provider():
    return SandboxProvider()


@pytest.fixture
def templates():
    store = TemplateStore()
    store.put(
        Template(
            id="welcome",
            name="Welcome SMS",
            channel="sms",
            limit_class="sms",
            body="Hi {{firstName}}, welcome to REDUZED!",
        )
    )
    store.put(
        Template(
            id="check-in",
            name="Check-in",
            channel="whatsapp",
            limit_class="whatsapp",
            body="Hi {{firstName}}, found a deal you like yet?",
        )
    )
    store.put(
        Template(
            id="welcome-email",
            name="Welcome Email",
            channel="email",
            subject="Welcome {{firstName}}",
            body="Hi {{firstName}},\nyour deals are waiting.",
        )
    )
    store.put(
        Template(
            id="verify-email",
            name="Verify Email",
            channel="email",
            subject="Please verify",
            body="Confirm your address, {{firstName}}.",
        )
    )
    store.put(
        Template(
            id="long-sms",
            name="Too long",
            channel="sms",
            limit_class="sms",
            body=LONG_SMS_BODY,
        )
    )
    return store


@pytest.fixture
def engine(clock, provider, templates):
    engine = Engine(
        config=DealflowConfig(),
        repository=InMemoryEngineRepository(),
        transport=InMemoryTransport(),
        provider=provider,
        clock=clock,
        templates=templates,
    )
    engine.directory.upsert(
        "R",
        firstName="Ana",
        email="ana@example.com",
        phone="+351900000001",
        country="PT",
    )
    return engine
