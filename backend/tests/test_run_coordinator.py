"""
Tests for the Run Coordinator state machine against a real SQLite store
with the Analyzer, Generator and Deployer replaced by fakes.
"""

import asyncio
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import update

from smart_campaign.config import Settings
from smart_campaign.meta_client import MetaAuthError, PlatformCredentials
from smart_campaign.models import SmartConfig
from smart_campaign.schemas import (
    Analysis, CreativeVariant, DateRange, DeployResult, EntityWindows, GenerationResult, VariantPlan, WindowMetrics,
)
from smart_campaign.services.deployer_service import DeployerService
from smart_campaign.services.generator_service import GenerationError
from smart_campaign.services.run_coordinator import ConfigurationError, RunCoordinator, RunOptions
from smart_campaign.services.token_service import CredentialsError
from smart_campaign.services.store_service import adset_state
from smart_campaign.utils import utcnow

IMG1 = CreativeVariant(variant_id="img_1", kind="image", image_url="https://cdn.test/1.png")


def _analysis(plateau=None) -> Analysis:
    plateau = plateau if plateau is not None else {"as1": True, "as2": False}
    return Analysis(
        campaign_id="c1",
        as_of="2026-05-10",
        recent_range=DateRange(since="2026-05-08", until="2026-05-10"),
        prior_range=DateRange(since="2026-05-05", until="2026-05-07"),
        adset_ids=list(plateau),
        plateau_by_adset=plateau,
        winners_by_adset={a: [f"w_{a}"] for a in plateau},
        losers_by_adset={a: [f"l_{a}"] for a in plateau},
    )


def _fake_deployer(fail=()):
    deployer = MagicMock()

    async def deploy(**kw):
        result = kw["result"] if kw.get("result") is not None else DeployResult()
        for adset_id in kw["adset_ids"]:
            if adset_id in fail:
                result.errors.append({"adset_id": adset_id, "step": "create_ad", "error": "Invalid parameter"})
                continue
            for variant in kw["creatives"]:
                ad_id = f"ad_{adset_id}_{variant.variant_id}"
                result.created_ads_by_adset.setdefault(adset_id, []).append(ad_id)
                result.variant_map_by_adset.setdefault(adset_id, {})[variant.variant_id] = ad_id
        return result

    deployer.deploy = AsyncMock(side_effect=deploy)
    return deployer


def _coordinator(store, analysis=None, fail_adsets=(), **settings_overrides):
    params = dict(
        min_hours_between_runs=24,
        min_hours_between_new_ads=72,
        max_new_ads_per_run_per_adset=2,
        plateau_confirm_hours=0,
    )
    params.update(settings_overrides)
    settings = Settings(**params)
    fakes = SimpleNamespace(
        client=MagicMock(),
        analyzer=MagicMock(),
        generator=MagicMock(),
        deployer=_fake_deployer(fail_adsets),
        credentials=AsyncMock(return_value=PlatformCredentials("tok")),
    )
    fakes.client.pause_ad = AsyncMock(return_value={"success": True})
    fakes.analyzer.analyze_campaign = AsyncMock(return_value=analysis or _analysis())
    fakes.generator.generate_variants = AsyncMock(
        return_value=GenerationResult(variants=[IMG1], requested=VariantPlan(images=1))
    )
    coordinator = RunCoordinator(
        store,
        settings=settings,
        credentials_provider=fakes.credentials,
        client_factory=lambda creds: fakes.client,
        analyzer_factory=lambda client: fakes.analyzer,
        generator=fakes.generator,
        deployer_factory=lambda client: fakes.deployer,
    )
    return coordinator, fakes


async def _enable(store, **fields):
    params = {"asset_types": "image", "daily_budget": 5}
    params.update(fields)
    return await store.upsert_config("c1", "act_1", "page1", **params)


async def _set_last_run(session_factory, hours_ago):
    async with session_factory() as session:
        await session.execute(
            update(SmartConfig)
            .where(SmartConfig.campaign_id == "c1")
            .values(last_run_at=utcnow() - timedelta(hours=hours_ago))
        )
        await session.commit()


@pytest.mark.anyio
async def test_plateau_cycle_generates_once_and_deploys_to_plateaued_adsets(store):
    await _enable(store)
    coordinator, fakes = _coordinator(store)

    result = await coordinator.run_once("c1")

    assert result["status"] == "completed"
    assert result["mode"] == "plateau"
    assert result["target_adset_ids"] == ["as1"]
    assert result["created_counts_per_adset"] == {"as1": {"images": 1, "videos": 0}}
    fakes.generator.generate_variants.assert_awaited_once()
    assert fakes.generator.generate_variants.await_args.kwargs["variant_plan"] == VariantPlan(images=1, videos=0)
    deploy_kwargs = fakes.deployer.deploy.await_args.kwargs
    assert deploy_kwargs["adset_ids"] == ["as1"]
    assert deploy_kwargs["is_initial"] is False

    cfg = await store.get_config("c1")
    assert cfg.last_run_at is not None
    assert cfg.total_runs == 1
    runs = await store.recent_runs("c1")
    assert len(runs) == 1
    assert runs[0].status == "completed"


@pytest.mark.anyio
async def test_recent_run_is_skipped_without_external_calls(store, session_factory):
    await _enable(store)
    await _set_last_run(session_factory, hours_ago=1)
    coordinator, fakes = _coordinator(store)

    result = await coordinator.run_once("c1")

    assert result["status"] == "skipped"
    assert result["reason"] == "min_interval"
    assert "next_eligible_at" in result
    fakes.credentials.assert_not_awaited()
    fakes.analyzer.analyze_campaign.assert_not_awaited()
    assert await store.recent_runs("c1") == []


@pytest.mark.anyio
async def test_force_bypasses_min_interval(store, session_factory):
    await _enable(store)
    await _set_last_run(session_factory, hours_ago=1)
    coordinator, fakes = _coordinator(store, analysis=_analysis({"as1": False, "as2": False}))

    result = await coordinator.run_once("c1", options=RunOptions(force=True))

    assert result["status"] == "completed"
    assert result["mode"] == "initial"
    assert result["target_adset_ids"] == ["as1", "as2"]
    assert fakes.deployer.deploy.await_args.kwargs["is_initial"] is True


@pytest.mark.anyio
async def test_no_plateau_makes_no_generation_calls(store):
    await _enable(store)
    coordinator, fakes = _coordinator(store, analysis=_analysis({"as1": False, "as2": False}))

    result = await coordinator.run_once("c1")

    assert result["status"] == "no_plateau"
    assert result["variant_plan"] == {"images": 1, "videos": 0}
    fakes.generator.generate_variants.assert_not_awaited()
    fakes.deployer.deploy.assert_not_awaited()
    assert await store.recent_runs("c1") == []


@pytest.mark.anyio
async def test_concurrent_run_for_same_campaign_is_busy(store):
    await _enable(store)
    coordinator, fakes = _coordinator(store)
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow_generate(**kw):
        started.set()
        await release.wait()
        return GenerationResult(variants=[IMG1], requested=VariantPlan(images=1))

    fakes.generator.generate_variants = AsyncMock(side_effect=slow_generate)

    first = asyncio.create_task(coordinator.run_once("c1"))
    await started.wait()
    assert coordinator.locks.is_busy("c1")

    second = await coordinator.run_once("c1")
    assert second == {"status": "busy", "campaign_id": "c1", "reason": "in_progress"}

    release.set()
    assert (await first)["status"] == "completed"
    assert fakes.generator.generate_variants.await_count == 1
    assert len(await store.recent_runs("c1")) == 1


@pytest.mark.anyio
async def test_lease_held_by_another_worker_is_busy(store):
    await _enable(store)
    assert await store.try_acquire_lease("c1", "other-worker", 60)
    coordinator, fakes = _coordinator(store)

    result = await coordinator.run_once("c1")

    assert result["status"] == "busy"
    assert result["reason"] == "leased"
    fakes.analyzer.analyze_campaign.assert_not_awaited()


@pytest.mark.anyio
async def test_lease_is_released_after_the_cycle(store):
    await _enable(store)
    coordinator, _ = _coordinator(store)
    await coordinator.run_once("c1")
    assert await store.try_acquire_lease("c1", "next", 60) is True


@pytest.mark.anyio
async def test_partial_deploy_is_recorded_and_advances_last_run(store):
    await _enable(store)
    analysis = _analysis({"as1": True, "as2": True})
    coordinator, _ = _coordinator(store, analysis=analysis, fail_adsets=("as1",))

    result = await coordinator.run_once("c1")

    assert result["status"] == "completed"
    assert result["run"]["status"] == "partial"
    assert result["run"]["created_ads_by_adset"] == {"as2": ["ad_as2_img_1"]}
    assert result["run"]["errors"][0]["adset_id"] == "as1"
    cfg = await store.get_config("c1")
    assert cfg.last_run_at is not None
    assert set(await store.last_creation_by_adset("c1", ["as1", "as2"])) == {"as2"}


@pytest.mark.anyio
async def test_generation_failure_deploys_nothing_and_keeps_last_run(store):
    await _enable(store)
    coordinator, fakes = _coordinator(store)
    fakes.generator.generate_variants = AsyncMock(
        side_effect=GenerationError("No variants generated", [{"step": "image", "error": "500"}])
    )

    result = await coordinator.run_once("c1")

    assert result["status"] == "failed"
    assert result["reason"] == "generation"
    assert result["errors"] == [{"step": "image", "error": "500"}]
    fakes.deployer.deploy.assert_not_awaited()
    assert (await store.get_config("c1")).last_run_at is None
    assert await store.recent_runs("c1") == []


@pytest.mark.anyio
async def test_auth_failure_during_analysis_fails_the_cycle(store):
    await _enable(store)
    coordinator, fakes = _coordinator(store)
    fakes.analyzer.analyze_campaign = AsyncMock(side_effect=MetaAuthError("Session has expired", code=190))

    result = await coordinator.run_once("c1")

    assert result["status"] == "failed"
    assert result["reason"] == "auth"
    fakes.generator.generate_variants.assert_not_awaited()


@pytest.mark.anyio
async def test_missing_credentials_fail_the_cycle(store):
    await _enable(store)
    coordinator, fakes = _coordinator(store)
    fakes.credentials.side_effect = CredentialsError("No platform credential stored")

    result = await coordinator.run_once("c1")

    assert result["status"] == "failed"
    assert result["reason"] == "credentials"
    fakes.analyzer.analyze_campaign.assert_not_awaited()


@pytest.mark.anyio
async def test_adsets_with_recent_new_ads_cool_down(store, session_factory):
    await _enable(store)
    await store.record_cycle(
        campaign_id="c1", account_id="act_1", mode="plateau", trigger="sweep",
        deploy=DeployResult(
            created_ads_by_adset={"as1": ["old_ad"]},
            variant_map_by_adset={"as1": {"img_1": "old_ad"}},
        ),
        plateau_by_adset={"as1": True}, variant_plan={"images": 1},
    )
    await _set_last_run(session_factory, hours_ago=30)
    coordinator, fakes = _coordinator(store)

    result = await coordinator.run_once("c1")

    assert result["status"] == "skipped"
    assert result["reason"] == "cooldown"
    fakes.generator.generate_variants.assert_not_awaited()


@pytest.mark.anyio
async def test_empty_plan_is_skipped(store):
    await _enable(store, override_count_per_type=0)
    coordinator, fakes = _coordinator(store)

    result = await coordinator.run_once("c1")

    assert result["status"] == "skipped"
    assert result["reason"] == "empty_plan"
    fakes.generator.generate_variants.assert_not_awaited()


@pytest.mark.anyio
async def test_no_adsets_fails_when_forced(store):
    await _enable(store)
    coordinator, _ = _coordinator(store, analysis=_analysis({}))

    result = await coordinator.run_once("c1", options=RunOptions(initial=True))

    assert result["status"] == "failed"
    assert result["reason"] == "no_adsets"


@pytest.mark.anyio
async def test_dry_run_records_run_without_advancing_guardrails(store):
    await _enable(store)
    coordinator, _ = _coordinator(store)

    result = await coordinator.run_once("c1", options=RunOptions(dry_run=True))

    assert result["status"] == "completed"
    assert result["run"]["dry_run"] is True
    cfg = await store.get_config("c1")
    assert cfg.last_run_at is None
    assert cfg.total_runs == 0


@pytest.mark.anyio
async def test_analysis_past_deadline_fails_without_mutation(store):
    await _enable(store)
    coordinator, fakes = _coordinator(store, cycle_deadline_seconds=0.05)

    async def slow_analyze(*args, **kwargs):
        await asyncio.sleep(1)
        return _analysis()

    fakes.analyzer.analyze_campaign = AsyncMock(side_effect=slow_analyze)

    result = await coordinator.run_once("c1")

    assert result["status"] == "failed"
    assert result["reason"] == "deadline"
    fakes.deployer.deploy.assert_not_awaited()
    assert await store.recent_runs("c1") == []


@pytest.mark.anyio
async def test_missing_identifiers_raise_configuration_error(store):
    coordinator, _ = _coordinator(store)
    with pytest.raises(ConfigurationError):
        await coordinator.run_once("")
    with pytest.raises(ConfigurationError):
        await coordinator.run_once("c9", "act_1")


@pytest.mark.anyio
async def test_unknown_campaign_with_page_id_is_enabled_on_the_fly(store):
    coordinator, fakes = _coordinator(store)

    result = await coordinator.run_once(
        "c1", "act_1",
        RunOptions(page_id="page1", asset_types="image", url="https://shop.test", answers={"industry": "tea"}),
    )

    assert result["status"] == "completed"
    cfg = await store.get_config("c1")
    assert cfg.page_id == "page1"
    assert cfg.link == "https://shop.test"
    assert cfg.creative_context["answers"] == {"industry": "tea"}
    assert fakes.generator.generate_variants.await_args.kwargs["answers"] == {"industry": "tea"}


@pytest.mark.anyio
async def test_status_reports_runs_and_busy_flag(store):
    await _enable(store)
    coordinator, _ = _coordinator(store)
    await coordinator.run_once("c1")

    status = await coordinator.status("c1")

    assert status["busy"] is False
    assert status["config"]["total_runs"] == 1
    assert len(status["runs"]) == 1


# ── Plateau confirmation and flight floor ────────────────────────────

@pytest.mark.anyio
async def test_plateau_must_persist_before_challengers_spawn(store):
    await _enable(store)
    coordinator, fakes = _coordinator(store, plateau_confirm_hours=36)

    first = await coordinator.run_once("c1")

    assert first["status"] == "skipped"
    assert first["reason"] == "plateau_unconfirmed"
    assert set(first["plateau_since"]) == {"as1"}
    fakes.generator.generate_variants.assert_not_awaited()
    assert adset_state(await store.get_config("c1"), "as1")["plateau_since"]
    assert await store.recent_runs("c1") == []

    since = (utcnow() - timedelta(hours=40)).isoformat()
    await store.update_adset_state("c1", {"as1": {"plateau_since": since}})
    second = await coordinator.run_once("c1")

    assert second["status"] == "completed"
    assert second["target_adset_ids"] == ["as1"]
    lane = adset_state(await store.get_config("c1"), "as1")
    assert lane["plateau_since"] is None
    assert lane["last_spawn_at"]


@pytest.mark.anyio
async def test_recovered_adset_resets_plateau_clock(store):
    await _enable(store)
    await store.update_adset_state("c1", {"as1": {"plateau_since": utcnow().isoformat()}})
    coordinator, _ = _coordinator(store, analysis=_analysis({"as1": False, "as2": False}), plateau_confirm_hours=36)

    result = await coordinator.run_once("c1")

    assert result["status"] == "no_plateau"
    assert adset_state(await store.get_config("c1"), "as1")["plateau_since"] is None


@pytest.mark.anyio
async def test_flight_ending_blocks_unforced_spawn(store):
    await _enable(store, flight_end=(utcnow() + timedelta(hours=10)).isoformat())
    coordinator, fakes = _coordinator(store)

    result = await coordinator.run_once("c1")

    assert result["status"] == "skipped"
    assert result["reason"] == "flight_ending"
    assert result["hours_left"] < 24
    fakes.generator.generate_variants.assert_not_awaited()

    forced = await coordinator.run_once("c1", options=RunOptions(force=True))
    assert forced["status"] == "completed"


@pytest.mark.anyio
async def test_long_flight_allows_spawn(store):
    await _enable(store, flight_end=(utcnow() + timedelta(days=5)).isoformat())
    coordinator, _ = _coordinator(store)

    result = await coordinator.run_once("c1")

    assert result["status"] == "completed"


# ── Interrupted deploys ──────────────────────────────────────────────

def _meta_client(on_second_adset):
    """Graph client whose create_ad succeeds for as1 and hands as2 to ``on_second_adset``."""
    client = MagicMock()
    client.download_asset = AsyncMock(return_value=(b"png-bytes", "image/png"))
    client.upload_image = AsyncMock(return_value="hash1")
    client.create_creative = AsyncMock(return_value="cr1")
    client.pause_ad = AsyncMock(return_value={"success": True})

    async def create_ad(account_id, adset_id, creative_id, name, status="ACTIVE"):
        if adset_id == "as2":
            await on_second_adset()
        return f"ad_{adset_id}"

    client.create_ad = AsyncMock(side_effect=create_ad)
    return client


@pytest.mark.anyio
async def test_cancelled_deploy_still_records_what_landed(store):
    await _enable(store)
    entered = asyncio.Event()

    async def hang():
        entered.set()
        await asyncio.Event().wait()

    client = _meta_client(hang)
    coordinator, _ = _coordinator(store, analysis=_analysis({"as1": True, "as2": True}))
    coordinator.client_factory = lambda creds: client
    coordinator.deployer_factory = lambda c: DeployerService(c, max_new_ads_per_adset=2)

    task = asyncio.create_task(coordinator.run_once("c1"))
    await entered.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    runs = await store.recent_runs("c1")
    assert len(runs) == 1
    assert runs[0].status == "partial"
    assert runs[0].created_ads_by_adset == {"as1": ["ad_as1"]}
    assert runs[0].errors[0]["step"] == "deploy"
    cfg = await store.get_config("c1")
    assert cfg.last_run_at is not None
    assert set(await store.last_creation_by_adset("c1", ["as1", "as2"])) == {"as1"}
    assert await store.try_acquire_lease("c1", "next", 60) is True


@pytest.mark.anyio
async def test_unexpected_deploy_error_is_recorded_as_partial_run(store):
    await _enable(store)

    async def explode():
        raise RuntimeError("connection reset by peer")

    client = _meta_client(explode)
    coordinator, _ = _coordinator(store, analysis=_analysis({"as1": True, "as2": True}))
    coordinator.client_factory = lambda creds: client
    coordinator.deployer_factory = lambda c: DeployerService(c, max_new_ads_per_adset=2)

    result = await coordinator.run_once("c1")

    assert result["status"] == "completed"
    assert result["run"]["status"] == "partial"
    assert result["run"]["created_ads_by_adset"] == {"as1": ["ad_as1"]}
    assert "RuntimeError" in result["run"]["errors"][0]["error"]
    assert (await store.get_config("c1")).last_run_at is not None


# ── Stop-rules winner commit ─────────────────────────────────────────

def _windows(spend, clicks, ctr=1.0) -> EntityWindows:
    return EntityWindows(recent=WindowMetrics(spend=spend, clicks=clicks, ctr=ctr, cpc=spend / clicks if clicks else None))


def _commit_analysis(ready=("a1", "a2", "b1")) -> Analysis:
    analysis = _analysis({"as1": False, "as2": False})
    analysis.ad_ids_by_adset = {"as1": ["a1", "a2", "a3"], "as2": ["b1"]}
    analysis.ad_metrics = {
        "a1": _windows(spend=20, clicks=10),
        "a2": _windows(spend=20, clicks=20),
        "a3": _windows(spend=20, clicks=0),
        "b1": _windows(spend=20, clicks=10),
    }
    analysis.stop_flags_by_ad = {
        ad_id: {"flags": {}, "any": ad_id in ready or ad_id == "a3"}
        for ad_id in ("a1", "a2", "a3", "b1")
    }
    return analysis


@pytest.mark.anyio
async def test_commit_keeps_lowest_cpc_and_pauses_the_rest(store):
    await _enable(store)
    coordinator, fakes = _coordinator(store, analysis=_commit_analysis())

    result = await coordinator.commit_winners("c1")

    assert result["status"] == "completed"
    assert result["mode"] == "stop_rules_commit"
    assert result["champion_by_adset"] == {"as1": "a2"}
    assert result["paused_ads_by_adset"] == {"as1": ["a1", "a3"]}
    assert [c.args[0] for c in fakes.client.pause_ad.await_args_list] == ["a1", "a3"]
    fakes.generator.generate_variants.assert_not_awaited()

    cfg = await store.get_config("c1")
    lane = adset_state(cfg, "as1")
    assert lane["champion_ad_id"] == "a2"
    assert lane["winner_committed_at"]
    assert cfg.last_run_at is None
    runs = await store.recent_runs("c1")
    assert runs[0].mode == "stop_rules_commit"
    assert runs[0].champion_by_adset == {"as1": "a2"}


@pytest.mark.anyio
async def test_commit_is_idempotent_per_adset(store):
    await _enable(store)
    coordinator, fakes = _coordinator(store, analysis=_commit_analysis())

    await coordinator.commit_winners("c1")
    again = await coordinator.commit_winners("c1")

    assert again["status"] == "no_commit"
    assert fakes.client.pause_ad.await_count == 2
    assert len(await store.recent_runs("c1")) == 1


@pytest.mark.anyio
async def test_commit_waits_until_every_ad_meets_a_stop_rule(store):
    await _enable(store)
    coordinator, fakes = _coordinator(store, analysis=_commit_analysis(ready=("a1",)))

    result = await coordinator.commit_winners("c1")

    assert result["status"] == "no_commit"
    assert result["pending_adset_ids"] == ["as1"]
    fakes.client.pause_ad.assert_not_awaited()

    forced = await coordinator.commit_winners("c1", options=RunOptions(force=True))
    assert forced["champion_by_adset"] == {"as1": "a2"}


@pytest.mark.anyio
async def test_commit_dry_run_pauses_nothing_and_keeps_state(store):
    await _enable(store)
    coordinator, fakes = _coordinator(store, analysis=_commit_analysis())

    result = await coordinator.commit_winners("c1", options=RunOptions(dry_run=True))

    assert result["paused_ads_by_adset"] == {"as1": ["a1", "a3"]}
    assert result["run"]["dry_run"] is True
    fakes.client.pause_ad.assert_not_awaited()
    assert adset_state(await store.get_config("c1"), "as1") == {}


@pytest.mark.anyio
async def test_new_challengers_reopen_a_committed_adset(store):
    await _enable(store)
    coordinator, _ = _coordinator(store, analysis=_commit_analysis())
    await coordinator.commit_winners("c1")

    coordinator.analyzer_factory = lambda client: MagicMock(
        analyze_campaign=AsyncMock(return_value=_analysis({"as1": True, "as2": False}))
    )
    spawned = await coordinator.run_once("c1")

    assert spawned["status"] == "completed"
    lane = adset_state(await store.get_config("c1"), "as1")
    assert lane["winner_committed_at"] is None
    assert lane["champion_ad_id"] == "a2"
