"""
Tests for the periodic sweep.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from smart_campaign.services.scheduler import SmartScheduler


@pytest.mark.anyio
async def test_sweep_runs_each_active_config_and_survives_failures(store):
    await store.upsert_config("c1", "act_1", "p")
    await store.upsert_config("c2", "act_1", "p")
    await store.upsert_config("c3", "act_1", "p", is_active=False)

    coordinator = MagicMock()

    async def run_once(campaign_id, account_id, options):
        assert options.trigger == "sweep"
        if campaign_id == "c1":
            raise RuntimeError("renderer exploded")
        return {"status": "no_plateau", "campaign_id": campaign_id}

    coordinator.run_once = AsyncMock(side_effect=run_once)
    coordinator.commit_winners = AsyncMock(return_value={"status": "no_commit"})
    scheduler = SmartScheduler(coordinator, store)

    result = await scheduler.sweep()

    assert result["status"] == "ok"
    assert [r["campaign_id"] for r in result["results"]] == ["c1", "c2"]
    assert result["results"][0]["status"] == "error"
    assert result["results"][1]["status"] == "no_plateau"
    assert scheduler.last_sweep is result


@pytest.mark.anyio
async def test_overlapping_sweep_is_busy(store):
    await store.upsert_config("c1", "act_1", "p")
    started = asyncio.Event()
    release = asyncio.Event()

    async def run_once(campaign_id, account_id, options):
        started.set()
        await release.wait()
        return {"status": "completed"}

    coordinator = MagicMock()
    coordinator.run_once = AsyncMock(side_effect=run_once)
    coordinator.commit_winners = AsyncMock(return_value={"status": "no_commit"})
    scheduler = SmartScheduler(coordinator, store)

    first = asyncio.create_task(scheduler.sweep())
    await started.wait()
    assert await scheduler.sweep() == {"status": "busy", "results": []}

    release.set()
    assert (await first)["status"] == "ok"
    assert coordinator.run_once.await_count == 1


@pytest.mark.anyio
async def test_start_and_stop(store):
    coordinator = MagicMock()
    coordinator.run_once = AsyncMock()
    scheduler = SmartScheduler(coordinator, store, interval_minutes=15, initial_delay_seconds=3600)

    scheduler.start()
    assert scheduler.running
    scheduler.start()

    await scheduler.stop()
    assert not scheduler.running
    coordinator.run_once.assert_not_awaited()


@pytest.mark.anyio
async def test_sweep_commits_winners_before_spawning(store):
    await store.upsert_config("c1", "act_1", "p")
    calls = []

    async def commit_winners(campaign_id, account_id, options):
        calls.append(("commit", campaign_id))
        raise RuntimeError("graph timeout")

    async def run_once(campaign_id, account_id, options):
        calls.append(("run", campaign_id))
        return {"status": "skipped", "reason": "plateau_unconfirmed"}

    coordinator = MagicMock()
    coordinator.commit_winners = AsyncMock(side_effect=commit_winners)
    coordinator.run_once = AsyncMock(side_effect=run_once)
    scheduler = SmartScheduler(coordinator, store)

    result = await scheduler.sweep()

    assert calls == [("commit", "c1"), ("run", "c1")]
    entry = result["results"][0]
    assert entry["commit"] == "error"
    assert entry["status"] == "skipped"
    assert entry["reason"] == "plateau_unconfirmed"
