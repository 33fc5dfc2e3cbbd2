"""
Shared fixtures: anyio backend, a throwaway SQLite database per test, and
an in-memory stand-in for the Meta Graph client.
"""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from smart_campaign.database import init_db
from smart_campaign.meta_client import MetaAPIError
from smart_campaign.services.store_service import SmartStore


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def session_factory(anyio_backend, tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'smart.db'}")
    await init_db(engine)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store(session_factory):
    return SmartStore(session_factory)


def insights_row(impressions=0, clicks=0, spend=0.0, ctr=0.0, cpm=0.0, frequency=0.0) -> dict:
    """Graph insights rows carry numbers as strings."""
    return {
        "impressions": str(impressions),
        "clicks": str(clicks),
        "spend": str(spend),
        "ctr": str(ctr),
        "cpm": str(cpm),
        "frequency": str(frequency),
    }


class FakeMetaClient:
    """
    Dict-backed Graph client. ``insights[(object_id, since)]`` gives the row
    for a window; ``failing`` maps object ids to the exception their
    insights call raises.
    """

    def __init__(self, adsets=None, ads_by_adset=None, campaign_ads=None, insights=None, failing=None):
        self.adsets = adsets or []
        self.ads_by_adset = ads_by_adset or {}
        self.campaign_ads = campaign_ads or []
        self.insights = insights or {}
        self.failing = failing or {}
        self.insight_calls: list[tuple] = []

    async def list_adsets(self, campaign_id):
        if "adsets" in self.failing:
            raise self.failing["adsets"]
        return [{"id": a} for a in self.adsets]

    async def list_campaign_ads(self, campaign_id):
        return self.campaign_ads

    async def list_ads(self, adset_id):
        if ("ads", adset_id) in self.failing:
            raise self.failing[("ads", adset_id)]
        return self.ads_by_adset.get(adset_id, [])

    async def get_insights(self, object_id, since, until, level):
        self.insight_calls.append((object_id, since, until, level))
        if object_id in self.failing:
            raise self.failing[object_id]
        return self.insights.get((object_id, since), {})


def graph_error(message="boom", code=1) -> MetaAPIError:
    return MetaAPIError(message, code=code)
