"""
Deployer Service — pushes generated variants into Meta ad sets.
For each target ad set: pause the designated loser (rotation runs only),
then attach every variant as a new ad. Failures are recorded per ad set /
per ad and never abort the remaining ad sets.
"""

import logging
import time
from typing import Optional
from smart_campaign.meta_client import MetaAdsClient, MetaAPIError
from smart_campaign.schemas import CreativeVariant, DeployResult
from smart_campaign.utils import utcnow

logger = logging.getLogger(__name__)


class DeployerService:
    def __init__(self, client: MetaAdsClient, max_new_ads_per_adset: int = 2, create_paused: bool = False):
        self.client = client
        self.max_new_ads_per_adset = max(0, int(max_new_ads_per_adset))
        self.create_paused = create_paused
        # Account-level asset references, reused across ad sets within one deploy
        self._image_hashes: dict[str, str] = {}
        self._video_ids: dict[str, str] = {}

    async def deploy(
        self,
        account_id: str,
        page_id: str,
        campaign_link: str,
        adset_ids: list[str],
        winners_by_adset: dict[str, list[str]],
        losers_by_adset: dict[str, list[str]],
        creatives: list[CreativeVariant],
        is_initial: bool = False,
        dry_run: bool = False,
        deadline: Optional[float] = None,
        result: Optional[DeployResult] = None,
    ) -> DeployResult:
        """
        Deploy ``creatives`` into each of ``adset_ids``.

        ``deadline`` is a ``time.monotonic()`` instant; once it passes, the
        remaining pauses and creations are skipped and recorded as errors.
        ``result`` may be supplied by the caller and is filled in place, so
        whatever succeeded is still visible if the deploy is interrupted.
        The result only lists ad sets where something actually succeeded.
        """
        if result is None:
            result = DeployResult()
        self._image_hashes.clear()
        self._video_ids.clear()

        logger.info(
            f"Deploying {len(creatives)} variant(s) to {len(adset_ids)} ad set(s) "
            f"(initial={is_initial}, dry_run={dry_run})"
        )

        for adset_id in adset_ids:
            if not is_initial:
                if deadline is not None and time.monotonic() >= deadline:
                    result.errors.append({
                        "adset_id": adset_id,
                        "step": "pause_ad",
                        "error": "cycle deadline reached",
                    })
                else:
                    await self._pause_loser(adset_id, winners_by_adset, losers_by_adset, dry_run, result)

            per_kind: dict[str, int] = {"image": 0, "video": 0}
            for variant in creatives:
                if per_kind.get(variant.kind, 0) >= self.max_new_ads_per_adset:
                    continue
                if deadline is not None and time.monotonic() >= deadline:
                    result.errors.append({
                        "adset_id": adset_id,
                        "variant_id": variant.variant_id,
                        "step": "create_ad",
                        "error": "cycle deadline reached",
                    })
                    continue

                try:
                    if dry_run:
                        ad_id = f"DRYRUN_{variant.kind.upper()}_{adset_id}_{variant.variant_id}"
                    else:
                        ad_id = await self._create_ad(account_id, page_id, campaign_link, adset_id, variant)
                except (MetaAPIError, ValueError) as e:
                    logger.warning(f"Create ad failed for ad set {adset_id} variant {variant.variant_id}: {e}")
                    entry = {
                        "adset_id": adset_id,
                        "variant_id": variant.variant_id,
                        "step": "create_ad",
                        "error": str(e),
                    }
                    if isinstance(e, MetaAPIError):
                        entry["meta"] = e.to_dict()
                    result.errors.append(entry)
                    continue

                result.created_ads_by_adset.setdefault(adset_id, []).append(ad_id)
                result.variant_map_by_adset.setdefault(adset_id, {})[variant.variant_id] = ad_id
                per_kind[variant.kind] = per_kind.get(variant.kind, 0) + 1

        logger.info(
            f"Deploy finished: created={result.created_count}, "
            f"paused={sum(len(v) for v in result.paused_ads_by_adset.values())}, errors={len(result.errors)}"
        )
        return result

    async def _pause_loser(self, adset_id: str, winners_by_adset: dict, losers_by_adset: dict,
                           dry_run: bool, result: DeployResult) -> None:
        winners = set((winners_by_adset or {}).get(adset_id) or [])
        for loser in (losers_by_adset or {}).get(adset_id) or []:
            if loser in winners:
                # Winner and loser are the same (sole) ad
                result.skipped_pauses[adset_id] = loser
                continue
            if not dry_run:
                try:
                    await self.client.pause_ad(loser)
                except MetaAPIError as e:
                    logger.warning(f"Pause failed for ad {loser} in ad set {adset_id}: {e}")
                    result.errors.append({
                        "adset_id": adset_id,
                        "ad_id": loser,
                        "step": "pause_ad",
                        "error": str(e),
                        "meta": e.to_dict(),
                    })
                    continue
            result.paused_ads_by_adset.setdefault(adset_id, []).append(loser)

    async def _create_ad(self, account_id: str, page_id: str, link: str, adset_id: str,
                         variant: CreativeVariant) -> str:
        stamp = utcnow().strftime("%Y-%m-%dT%H:%M:%S")
        if variant.kind == "image":
            spec = await self._image_story_spec(account_id, page_id, link, variant)
        elif variant.kind == "video":
            spec = await self._video_story_spec(account_id, page_id, link, variant)
        else:
            raise ValueError(f"Unknown variant kind {variant.kind!r}")

        creative_id = await self.client.create_creative(
            account_id, f"Smart {variant.kind} {variant.variant_id} {stamp}", spec,
        )
        return await self.client.create_ad(
            account_id,
            adset_id,
            creative_id,
            name=f"Smart {variant.kind} ad {variant.variant_id} {stamp}",
            status="PAUSED" if self.create_paused else "ACTIVE",
        )

    async def _image_story_spec(self, account_id: str, page_id: str, link: str,
                                variant: CreativeVariant) -> dict:
        if not variant.image_url:
            raise ValueError(f"Image variant {variant.variant_id} has no image_url")
        image_hash = self._image_hashes.get(variant.variant_id)
        if image_hash is None:
            content, _ = await self.client.download_asset(variant.image_url)
            image_hash = await self.client.upload_image(account_id, content)
            self._image_hashes[variant.variant_id] = image_hash
        return {
            "page_id": page_id,
            "link_data": {
                "message": variant.ad_copy or "",
                "link": link,
                "image_hash": image_hash,
            },
        }

    async def _video_story_spec(self, account_id: str, page_id: str, link: str,
                                variant: CreativeVariant) -> dict:
        video_id = variant.fb_video_id or self._video_ids.get(variant.variant_id)
        if not video_id:
            if not variant.video_url:
                raise ValueError(f"Video variant {variant.variant_id} has no video_url")
            video_id = await self.client.upload_video(account_id, variant.video_url)
            self._video_ids[variant.variant_id] = video_id
        video_data = {
            "video_id": video_id,
            "message": variant.ad_copy or "",
            "call_to_action": {"type": "LEARN_MORE", "value": {"link": link}},
        }
        if variant.thumbnail_url:
            video_data["image_url"] = variant.thumbnail_url
        return {"page_id": page_id, "video_data": video_data}
