"""
Analyzer Service — windowed performance analysis for one campaign.
Pulls campaign → ad sets → ads → insights for a "recent" and a "prior"
window, flags plateaued ad sets and ranks ads into winners and losers.
"""

import asyncio
import logging
from datetime import date, timedelta
from typing import Optional
from smart_campaign.meta_client import MetaAdsClient, MetaAPIError, MetaAuthError
from smart_campaign.schemas import Analysis, DateRange, EntityWindows, StopRules, Thresholds, WindowMetrics
from smart_campaign.services import policy
from smart_campaign.utils import utcnow

logger = logging.getLogger(__name__)


def window_ranges(as_of: date, recent_days: int, prior_days: int) -> tuple[DateRange, DateRange]:
    """
    Two contiguous, non-overlapping inclusive ranges ending at ``as_of``:
    recent = the last ``recent_days`` days, prior = the ``prior_days`` before it.
    """
    recent_until = as_of
    recent_since = recent_until - timedelta(days=recent_days - 1)
    prior_until = recent_since - timedelta(days=1)
    prior_since = prior_until - timedelta(days=prior_days - 1)
    return (
        DateRange(since=recent_since.isoformat(), until=recent_until.isoformat()),
        DateRange(since=prior_since.isoformat(), until=prior_until.isoformat()),
    )


class AnalyzerService:
    def __init__(
        self,
        client: MetaAdsClient,
        recent_days: int = policy.WINDOWS["RECENT_DAYS"],
        prior_days: int = policy.WINDOWS["PRIOR_DAYS"],
    ):
        self.client = client
        self.recent_days = max(1, int(recent_days))
        self.prior_days = max(1, int(prior_days))

    async def analyze_campaign(
        self,
        account_id: str,
        campaign_id: str,
        kpi: str = "cpc",
        thresholds: Optional[Thresholds] = None,
        stop_rules: Optional[StopRules] = None,
        as_of: Optional[date] = None,
    ) -> Analysis:
        """
        Build a fresh Analysis for the campaign.

        Algorithm:
        1. List the campaign's ad sets (fall back to the ad sets of its ads)
        2. Fetch recent/prior metrics per ad set
        3. List each ad set's ads and fetch recent/prior metrics per ad
        4. Plateau check per ad set on its own windows
        5. Rank ads by the KPI's recent value: best → winner, worst → loser

        Read failures degrade the entity to zero metrics and are recorded in
        ``errors``. An authentication failure aborts the whole analysis.
        """
        kpi = (kpi or "cpc").lower()
        as_of = as_of or utcnow().date()
        recent_range, prior_range = window_ranges(as_of, self.recent_days, self.prior_days)
        analysis = Analysis(
            campaign_id=campaign_id,
            as_of=as_of.isoformat(),
            recent_range=recent_range,
            prior_range=prior_range,
            kpi=kpi,
        )
        logger.info(
            f"Analyzing campaign {campaign_id} (account {account_id}) kpi={kpi} "
            f"recent={recent_range.since}..{recent_range.until} prior={prior_range.since}..{prior_range.until}"
        )

        # Step 1: Ad sets
        adsets = await self._list_adsets(campaign_id, analysis)
        analysis.adset_ids = [str(a["id"]) for a in adsets if a.get("id")]

        ad_created: dict[str, Optional[str]] = {}

        # Steps 2-3: Ad set and ad metrics, sequential per ad set (rate limits)
        for adset_id in analysis.adset_ids:
            analysis.adset_metrics[adset_id] = await self._windows(adset_id, "adset", analysis)

            try:
                ads = await self.client.list_ads(adset_id)
            except MetaAuthError:
                raise
            except MetaAPIError as e:
                logger.warning(f"Ad listing failed for ad set {adset_id}: {e}")
                analysis.errors.append({"entity": "adset", "id": adset_id, "step": "list_ads", "error": str(e)})
                ads = []

            ad_ids = [str(a["id"]) for a in ads if a.get("id")]
            analysis.ad_ids_by_adset[adset_id] = ad_ids
            for a in ads:
                if a.get("id"):
                    ad_created[str(a["id"])] = a.get("created_time")

            for ad_id in ad_ids:
                analysis.ad_metrics[ad_id] = await self._windows(ad_id, "ad", analysis)

        # Step 4: Plateau per ad set
        for adset_id in analysis.adset_ids:
            windows = analysis.adset_metrics.get(adset_id) or EntityWindows()
            analysis.plateau_by_adset[adset_id] = policy.is_plateau(windows.recent, windows.prior, thresholds)

        # Step 5: Winners / losers
        for adset_id in analysis.adset_ids:
            ranking = self.rank_ads(
                {ad_id: analysis.ad_metrics[ad_id].recent for ad_id in analysis.ad_ids_by_adset.get(adset_id, [])},
                kpi,
            )
            analysis.winners_by_adset[adset_id] = ranking[:1]
            analysis.losers_by_adset[adset_id] = ranking[-1:]
            for ad_id in analysis.ad_ids_by_adset.get(adset_id, []):
                analysis.stop_flags_by_ad[ad_id] = policy.evaluate_stop_flags(
                    analysis.ad_metrics[ad_id].recent, ad_created.get(ad_id), stop_rules
                )

        plateaued = [a for a, p in analysis.plateau_by_adset.items() if p]
        logger.info(
            f"Analysis for {campaign_id}: {len(analysis.adset_ids)} ad sets, "
            f"{len(analysis.ad_metrics)} ads, plateaued={plateaued}, errors={len(analysis.errors)}"
        )
        return analysis

    @staticmethod
    def rank_ads(recent_by_ad: dict[str, WindowMetrics], kpi: str) -> list[str]:
        """Ad ids best-first by the KPI. Ties keep listing order."""
        return [
            ad_id
            for ad_id, _ in sorted(
                recent_by_ad.items(),
                key=lambda item: policy.kpi_sort_key(kpi, item[1]),
            )
        ]

    async def _list_adsets(self, campaign_id: str, analysis: Analysis) -> list[dict]:
        try:
            adsets = await self.client.list_adsets(campaign_id)
        except MetaAuthError:
            raise
        except MetaAPIError as e:
            logger.warning(f"Ad set listing failed for campaign {campaign_id}: {e}")
            analysis.errors.append({"entity": "campaign", "id": campaign_id, "step": "list_adsets", "error": str(e)})
            adsets = []

        if adsets:
            return adsets

        # Some campaigns only expose ad sets through their ads
        try:
            ads = await self.client.list_campaign_ads(campaign_id)
        except MetaAuthError:
            raise
        except MetaAPIError as e:
            logger.warning(f"Campaign ad listing failed for {campaign_id}: {e}")
            analysis.errors.append({"entity": "campaign", "id": campaign_id, "step": "list_campaign_ads", "error": str(e)})
            return []
        seen: list[str] = []
        for ad in ads:
            adset_id = ad.get("adset_id")
            if adset_id and str(adset_id) not in seen:
                seen.append(str(adset_id))
        return [{"id": a} for a in seen]

    async def _windows(self, object_id: str, level: str, analysis: Analysis) -> EntityWindows:
        """Recent and prior metrics for one entity, fetched concurrently. Failures → zero metrics."""
        try:
            recent_row, prior_row = await asyncio.gather(
                self.client.get_insights(object_id, analysis.recent_range.since, analysis.recent_range.until, level),
                self.client.get_insights(object_id, analysis.prior_range.since, analysis.prior_range.until, level),
            )
        except MetaAuthError:
            raise
        except MetaAPIError as e:
            logger.warning(f"Insights fetch failed for {level} {object_id}: {e}")
            analysis.errors.append({"entity": level, "id": object_id, "step": "insights", "error": str(e)})
            return EntityWindows()
        return EntityWindows(
            recent=WindowMetrics.from_insights_row(recent_row),
            prior=WindowMetrics.from_insights_row(prior_row),
        )
