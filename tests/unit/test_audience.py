import pytest

from dealflow.audience import InMemoryRecipientDirectory
from dealflow.contracts import AudienceFilter


@pytest.fixture
def directory():
    return InMemoryRecipientDirectory(
        {
            "r1": {"country": "PT", "saved_deals": ["d1"]},
            "r2": {"country": "es", "saved_deals": []},
            "r3": {"country": "pt", "opted_out": True, "saved_deals": ["d1"]},
            "r4": {"country": "DE", "saved_deals": ["d2"]},
        }
    )


async def _ids(directory, **kwargs):
    return [r.recipient_id for r in await directory.resolve(AudienceFilter(**kwargs))]


@pytest.mark.asyncio
async def test_all_skips_opted_out(directory):
    assert await _ids(directory) == ["r1", "r2", "r4"]


@pytest.mark.asyncio
async def test_by_country_is_case_insensitive(directory):
    assert await _ids(directory, kind="by_country", country="pt") == ["r1"]


@pytest.mark.asyncio
async def test_saved_deal_followers(directory):
    assert await _ids(directory, kind="saved_deal_followers") == ["r1", "r4"]
    assert await _ids(directory, kind="saved_deal_followers", deal_id="d2") == ["r4"]


@pytest.mark.asyncio
async def test_get_returns_copy(directory):
    record = await directory.get("r1")
    record["country"] = "FR"
    assert (await directory.get("r1"))["country"] == "PT"
    assert await directory.get("ghost") is None

    directory.upsert("r1", emailVerified=True)
    assert (await directory.get("r1"))["emailVerified"] is True


def test_audience_labels():
    assert AudienceFilter().label() == "All users"
    assert AudienceFilter(kind="by_country", country="PT").label() == "Users in PT"
    assert AudienceFilter(kind="saved_deal_followers").label() == "Users with saved deals"
    with pytest.raises(ValueError):
        AudienceFilter(kind="by_country")
