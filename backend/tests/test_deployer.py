"""
Tests for the Deployer: loser pausing, partial failure, caps, dry run and deadline.
"""

import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from smart_campaign.meta_client import MetaAPIError
from smart_campaign.schemas import CreativeVariant, DeployResult
from smart_campaign.services.deployer_service import DeployerService

IMG1 = CreativeVariant(variant_id="img_1", kind="image", image_url="https://cdn.test/1.png", ad_copy="hi")
IMG2 = CreativeVariant(variant_id="img_2", kind="image", image_url="https://cdn.test/2.png")
IMG3 = CreativeVariant(variant_id="img_3", kind="image", image_url="https://cdn.test/3.png")
VID1 = CreativeVariant(variant_id="vid_1", kind="video", fb_video_id="fbv1")


def _client(fail_adsets=()):
    client = MagicMock()
    client.download_asset = AsyncMock(return_value=(b"png-bytes", "image/png"))
    client.upload_image = AsyncMock(return_value="hash123")
    client.upload_video = AsyncMock(return_value="vid999")
    client.create_creative = AsyncMock(return_value="cr1")
    client.pause_ad = AsyncMock(return_value={"success": True})
    counter = {"n": 0}

    async def create_ad(account_id, adset_id, creative_id, name, status="ACTIVE"):
        if adset_id in fail_adsets:
            raise MetaAPIError("Invalid parameter", code=100)
        counter["n"] += 1
        return f"ad_{adset_id}_{counter['n']}"

    client.create_ad = AsyncMock(side_effect=create_ad)
    return client


async def _deploy(client, adsets, creatives, **kw):
    params = dict(
        account_id="123",
        page_id="page1",
        campaign_link="https://shop.test",
        adset_ids=adsets,
        winners_by_adset={"as1": ["w1"], "as2": ["w2"]},
        losers_by_adset={"as1": ["l1"], "as2": ["l2"]},
        creatives=creatives,
    )
    params.update(kw)
    return await DeployerService(client, max_new_ads_per_adset=2).deploy(**params)


@pytest.mark.anyio
async def test_rotation_pauses_loser_and_creates_ads():
    client = _client()
    result = await _deploy(client, ["as1"], [IMG1, VID1], is_initial=False)

    client.pause_ad.assert_awaited_once_with("l1")
    assert result.paused_ads_by_adset == {"as1": ["l1"]}
    assert len(result.created_ads_by_adset["as1"]) == 2
    assert set(result.variant_map_by_adset["as1"]) == {"img_1", "vid_1"}
    # Rendered video id is reused instead of re-uploading
    client.upload_video.assert_not_awaited()


@pytest.mark.anyio
async def test_initial_run_never_pauses():
    client = _client()
    result = await _deploy(client, ["as1"], [IMG1], is_initial=True)
    client.pause_ad.assert_not_awaited()
    assert result.paused_ads_by_adset == {}


@pytest.mark.anyio
async def test_sole_ad_winner_is_not_paused():
    client = _client()
    result = await _deploy(
        client, ["as1"], [IMG1],
        winners_by_adset={"as1": ["only"]}, losers_by_adset={"as1": ["only"]},
    )
    client.pause_ad.assert_not_awaited()
    assert result.skipped_pauses == {"as1": "only"}
    assert result.errors == []


@pytest.mark.anyio
async def test_failure_in_one_adset_does_not_abort_others():
    client = _client(fail_adsets=("as1",))
    result = await _deploy(client, ["as1", "as2"], [IMG1], is_initial=True)

    assert "as1" not in result.created_ads_by_adset
    assert result.created_ads_by_adset["as2"] == ["ad_as2_1"]
    assert result.errors[0]["adset_id"] == "as1"
    assert result.errors[0]["meta"]["code"] == 100


@pytest.mark.anyio
async def test_image_uploaded_once_per_variant_across_adsets():
    client = _client()
    await _deploy(client, ["as1", "as2"], [IMG1], is_initial=True)
    assert client.upload_image.await_count == 1
    assert client.create_ad.await_count == 2


@pytest.mark.anyio
async def test_cap_per_kind_per_adset():
    client = _client()
    result = await _deploy(client, ["as1"], [IMG1, IMG2, IMG3, VID1], is_initial=True)
    assert set(result.variant_map_by_adset["as1"]) == {"img_1", "img_2", "vid_1"}


@pytest.mark.anyio
async def test_dry_run_makes_no_platform_writes():
    client = _client()
    result = await _deploy(client, ["as1"], [IMG1, VID1], dry_run=True)
    client.create_ad.assert_not_awaited()
    client.pause_ad.assert_not_awaited()
    assert result.variant_map_by_adset["as1"]["img_1"].startswith("DRYRUN_IMAGE_")
    assert result.variant_map_by_adset["as1"]["vid_1"].startswith("DRYRUN_VIDEO_")
    assert result.paused_ads_by_adset == {"as1": ["l1"]}


@pytest.mark.anyio
async def test_past_deadline_skips_creations():
    client = _client()
    result = await _deploy(client, ["as1"], [IMG1], is_initial=True, deadline=time.monotonic() - 1)
    client.create_ad.assert_not_awaited()
    assert result.created_ads_by_adset == {}
    assert result.errors[0]["error"] == "cycle deadline reached"


@pytest.mark.anyio
async def test_pause_failure_is_recorded():
    client = _client()
    client.pause_ad = AsyncMock(side_effect=MetaAPIError("nope", code=200))
    result = await _deploy(client, ["as1"], [IMG1])
    assert result.paused_ads_by_adset == {}
    assert result.errors[0]["step"] == "pause_ad"
    assert result.created_ads_by_adset["as1"]


@pytest.mark.anyio
async def test_past_deadline_skips_loser_pause():
    client = _client()
    result = await _deploy(client, ["as1"], [IMG1], deadline=time.monotonic() - 1)
    client.pause_ad.assert_not_awaited()
    assert result.paused_ads_by_adset == {}
    assert [e["step"] for e in result.errors] == ["pause_ad", "create_ad"]
    assert all(e["error"] == "cycle deadline reached" for e in result.errors)


@pytest.mark.anyio
async def test_caller_result_keeps_progress_when_deploy_raises():
    client = _client()
    original = client.create_ad.side_effect

    async def create_ad(account_id, adset_id, creative_id, name, status="ACTIVE"):
        if adset_id == "as2":
            raise RuntimeError("connection reset")
        return await original(account_id, adset_id, creative_id, name, status)

    client.create_ad = AsyncMock(side_effect=create_ad)
    result = DeployResult()
    with pytest.raises(RuntimeError):
        await _deploy(client, ["as1", "as2"], [IMG1], is_initial=True, result=result)

    assert result.created_ads_by_adset == {"as1": ["ad_as1_1"]}
