"""
Run Coordinator — one optimization cycle for one campaign.

Idle → Analyzing → (NoPlateau | Planning) → Generating → Deploying → Recorded

Guardrails (minimum interval between runs, plateau confirmation, flight
time left, per-ad-set new-ad cooldown, per-ad-set creation cap) are
enforced here, and at most one cycle per campaign is in flight: an
in-process lock per campaign plus a lease on the config row for other
worker processes. The stop-rules winner commit shares the same exclusion.
"""

import asyncio
import logging
import time
import uuid
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, Optional
from pydantic import BaseModel
from smart_campaign.config import Settings, get_settings
from smart_campaign.meta_client import MetaAdsClient, MetaAPIError, MetaAuthError, PlatformCredentials, create_meta_client
from smart_campaign.models import RunMode, SmartConfig
from smart_campaign.schemas import Analysis, DeployResult, GenerationResult, VariantPlan
from smart_campaign.services import policy
from smart_campaign.services.analyzer_service import AnalyzerService
from smart_campaign.services.deployer_service import DeployerService
from smart_campaign.services.generator_service import GenerationError, GeneratorService
from smart_campaign.services.store_service import SmartStore, adset_state, serialize_run
from smart_campaign.services.token_service import CredentialsError, get_platform_credentials
from smart_campaign.utils import count_variants_by_kind, hours_between, parse_datetime, utcnow

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Missing identifiers or an unknown campaign; raised before any external call."""


class CycleAborted(Exception):
    """A cycle ended early with an outcome to hand back (failed credentials, auth, deadline)."""

    def __init__(self, result: dict):
        super().__init__(result.get("reason"))
        self.result = result


class RunOptions(BaseModel):
    """Per-call flags and overrides. Overrides win over the stored config."""
    force: bool = False
    initial: bool = False
    dry_run: bool = False
    trigger: str = "manual"  # manual / sweep

    page_id: Optional[str] = None
    link: Optional[str] = None
    asset_types: Optional[str] = None
    daily_budget: Optional[float] = None
    flight_start: Optional[str] = None
    flight_end: Optional[str] = None
    flight_hours: Optional[float] = None
    override_count_per_type: Optional[Any] = None
    force_two_per_type: Optional[bool] = None

    form: Optional[dict] = None
    answers: Optional[dict] = None
    url: Optional[str] = None

    as_of: Optional[date] = None

    @property
    def forced(self) -> bool:
        return self.force or self.initial


class CampaignLocks:
    """One asyncio.Lock per campaign id, created on first use."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, campaign_id: str) -> asyncio.Lock:
        lock = self._locks.get(campaign_id)
        if lock is None:
            lock = self._locks[campaign_id] = asyncio.Lock()
        return lock

    def is_busy(self, campaign_id: str) -> bool:
        lock = self._locks.get(campaign_id)
        return lock is not None and lock.locked()


def _result(status: str, campaign_id: str, **extra: Any) -> dict:
    return {"status": status, "campaign_id": campaign_id, **extra}


class RunCoordinator:
    def __init__(
        self,
        store: SmartStore,
        settings: Optional[Settings] = None,
        locks: Optional[CampaignLocks] = None,
        credentials_provider: Optional[Callable[[], Awaitable[PlatformCredentials]]] = None,
        client_factory: Optional[Callable[[PlatformCredentials], MetaAdsClient]] = None,
        analyzer_factory: Optional[Callable[[MetaAdsClient], AnalyzerService]] = None,
        generator: Optional[GeneratorService] = None,
        deployer_factory: Optional[Callable[[MetaAdsClient], DeployerService]] = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.locks = locks or CampaignLocks()
        s = self.settings
        self.credentials_provider = credentials_provider or (
            lambda: get_platform_credentials(store.session_factory)
        )
        self.client_factory = client_factory or (
            lambda creds: create_meta_client(creds, graph_version=s.meta_graph_version, timeout=s.meta_timeout_seconds)
        )
        self.analyzer_factory = analyzer_factory or (
            lambda client: AnalyzerService(client, s.recent_days, s.prior_days)
        )
        self.generator = generator or GeneratorService(s.render_base_url, timeout=s.render_timeout_seconds)
        self.deployer_factory = deployer_factory or (
            lambda client: DeployerService(client, s.max_new_ads_per_run_per_adset, s.meta_create_ads_paused)
        )

    # ── Planning ──────────────────────────────────────────────────────

    def plan_for(self, cfg: SmartConfig, options: RunOptions) -> VariantPlan:
        """VariantPlan from the config with call-site overrides, clamped to the per-ad-set cap."""
        def pick(override, stored):
            return override if override is not None else stored

        flight_hours = policy.resolve_flight_hours(
            start_at=options.flight_start or cfg.flight_start,
            end_at=options.flight_end or cfg.flight_end,
            fallback_hours=pick(options.flight_hours, cfg.flight_hours),
        )
        plan = policy.decide_variant_plan(
            asset_types=options.asset_types or cfg.asset_types,
            daily_budget=pick(options.daily_budget, cfg.daily_budget),
            flight_hours=flight_hours,
            override_count_per_type=pick(options.override_count_per_type, cfg.override_count_per_type),
            force_two_per_type=bool(pick(options.force_two_per_type, cfg.force_two_per_type)),
        )
        return policy.clamp_plan(plan, self.settings.max_new_ads_per_run_per_adset)

    # ── Entry points ──────────────────────────────────────────────────

    async def run_once(self, campaign_id: str, account_id: Optional[str] = None,
                       options: Optional[RunOptions] = None) -> dict:
        """
        Execute one cycle for ``campaign_id``.

        Returns a dict whose ``status`` is one of completed, no_plateau,
        skipped, busy, failed. Raises ConfigurationError for missing
        identifiers or an unknown campaign without a page id.
        """
        return await self._exclusive(campaign_id, account_id, options or RunOptions(), self._cycle)

    async def commit_winners(self, campaign_id: str, account_id: Optional[str] = None,
                             options: Optional[RunOptions] = None) -> dict:
        """
        Decide each ad set's test round: once every ad has met a stop rule
        (or ``options.force`` is set), keep the champion and pause the rest.

        Ad sets already committed are left alone until new challengers are
        deployed into them. Returns status completed, no_commit, busy or failed.
        """
        return await self._exclusive(campaign_id, account_id, options or RunOptions(), self._commit_cycle)

    async def _exclusive(self, campaign_id: str, account_id: Optional[str], options: RunOptions,
                         body: Callable[[SmartConfig, str, RunOptions], Awaitable[dict]]) -> dict:
        if not campaign_id:
            raise ConfigurationError("campaign_id is required")

        lock = self.locks.get(campaign_id)
        if lock.locked():
            logger.info(f"Campaign {campaign_id} already has a cycle in flight — busy")
            return _result("busy", campaign_id, reason="in_progress")

        async with lock:
            cfg = await self._load_config(campaign_id, account_id, options)
            account_id = account_id or cfg.account_id

            lease_token = uuid.uuid4().hex
            if not await self.store.try_acquire_lease(campaign_id, lease_token, self.settings.lease_seconds):
                logger.info(f"Campaign {campaign_id} is leased by another worker — busy")
                return _result("busy", campaign_id, reason="leased")
            try:
                cfg = await self.store.get_config(campaign_id) or cfg
                return await body(cfg, account_id, options)
            except CycleAborted as e:
                return e.result
            finally:
                await self.store.release_lease(campaign_id, lease_token)

    async def _load_config(self, campaign_id: str, account_id: Optional[str], options: RunOptions) -> SmartConfig:
        cfg = await self.store.get_config(campaign_id)
        if cfg is not None:
            if not (account_id or cfg.account_id):
                raise ConfigurationError("account_id is required")
            return cfg

        if not account_id:
            raise ConfigurationError("account_id and campaign_id are required")
        if not options.page_id:
            raise ConfigurationError("Config not found. Provide page_id or enable the campaign first.")
        return await self.store.upsert_config(
            campaign_id,
            account_id,
            options.page_id,
            link=options.link or (options.form or {}).get("url") or options.url,
            asset_types=options.asset_types,
            daily_budget=options.daily_budget,
            flight_start=options.flight_start,
            flight_end=options.flight_end,
            flight_hours=options.flight_hours,
            override_count_per_type=options.override_count_per_type,
            force_two_per_type=options.force_two_per_type,
            creative_context={
                "form": options.form or {},
                "answers": options.answers or {},
                "url": options.url or "",
            },
        )

    # ── Shared steps ──────────────────────────────────────────────────

    async def _connect_and_analyze(self, cfg: SmartConfig, account_id: str, options: RunOptions,
                                   deadline: float) -> tuple[MetaAdsClient, Analysis]:
        campaign_id = cfg.campaign_id
        try:
            credentials = await self.credentials_provider()
        except CredentialsError as e:
            logger.warning(f"Campaign {campaign_id}: no usable credentials: {e}")
            raise CycleAborted(_result("failed", campaign_id, reason="credentials", error=str(e)))
        client = self.client_factory(credentials)

        analyzer = self.analyzer_factory(client)
        try:
            analysis = await asyncio.wait_for(
                analyzer.analyze_campaign(
                    account_id,
                    campaign_id,
                    kpi=cfg.kpi or "cpc",
                    thresholds=policy.merge_thresholds(cfg.thresholds),
                    stop_rules=policy.merge_stop_rules(cfg.stop_rules),
                    as_of=options.as_of,
                ),
                timeout=self._remaining(deadline),
            )
        except MetaAuthError as e:
            logger.error(f"Campaign {campaign_id}: authentication failed during analysis: {e}")
            raise CycleAborted(_result("failed", campaign_id, reason="auth", error=str(e)))
        except asyncio.TimeoutError:
            logger.error(f"Campaign {campaign_id}: analysis exceeded the cycle deadline")
            raise CycleAborted(_result("failed", campaign_id, reason="deadline", step="analyze"))
        return client, analysis

    # ── The cycle ─────────────────────────────────────────────────────

    async def _cycle(self, cfg: SmartConfig, account_id: str, options: RunOptions) -> dict:
        campaign_id = cfg.campaign_id
        started_at = utcnow()
        deadline = time.monotonic() + self.settings.cycle_deadline_seconds
        forced = options.forced

        # Guardrail: minimum interval between runs
        if not forced and cfg.last_run_at is not None:
            elapsed = hours_between(started_at, cfg.last_run_at)
            if elapsed < self.settings.min_hours_between_runs:
                next_at = cfg.last_run_at + timedelta(hours=self.settings.min_hours_between_runs)
                logger.info(f"Campaign {campaign_id}: last run {elapsed:.1f}h ago — skipped")
                return _result(
                    "skipped", campaign_id,
                    reason="min_interval",
                    last_run_at=cfg.last_run_at.isoformat(),
                    next_eligible_at=next_at.isoformat(),
                )

        # Steps 1-2: Credentials, Analyze
        client, analysis = await self._connect_and_analyze(cfg, account_id, options, deadline)
        confirmed, plateau_since = await self._track_plateaus(cfg, analysis, started_at, options.dry_run)

        # Step 3: Plan
        plan = self.plan_for(cfg, options)
        if not analysis.plateau_detected and not forced:
            logger.info(f"Campaign {campaign_id}: no plateau detected (and not forced)")
            return _result("no_plateau", campaign_id, analysis=analysis.model_dump(), variant_plan=plan.model_dump())

        if not analysis.adset_ids:
            return _result("failed", campaign_id, reason="no_adsets", analysis=analysis.model_dump())

        if forced:
            targets = list(analysis.adset_ids)
        else:
            hours_left = policy.flight_hours_left(
                start_at=options.flight_start or cfg.flight_start,
                end_at=options.flight_end or cfg.flight_end,
                fallback_hours=options.flight_hours if options.flight_hours is not None else cfg.flight_hours,
                now=started_at,
            )
            if hours_left is not None and hours_left < self.settings.min_hours_left_to_spawn:
                logger.info(f"Campaign {campaign_id}: {hours_left}h of flight left, too late for challengers")
                return _result(
                    "skipped", campaign_id,
                    reason="flight_ending",
                    hours_left=hours_left,
                    analysis=analysis.model_dump(),
                    variant_plan=plan.model_dump(),
                )
            if not confirmed:
                return _result(
                    "skipped", campaign_id,
                    reason="plateau_unconfirmed",
                    plateau_since=plateau_since,
                    analysis=analysis.model_dump(),
                    variant_plan=plan.model_dump(),
                )
            targets = await self._drop_cooling_down(campaign_id, confirmed, started_at)
        if not targets:
            return _result(
                "skipped", campaign_id,
                reason="cooldown",
                analysis=analysis.model_dump(),
                variant_plan=plan.model_dump(),
            )
        if plan.total <= 0:
            return _result(
                "skipped", campaign_id,
                reason="empty_plan",
                analysis=analysis.model_dump(),
                variant_plan=plan.model_dump(),
            )

        # Step 4: Generate
        context = cfg.creative_context or {}
        try:
            generation: GenerationResult = await asyncio.wait_for(
                self.generator.generate_variants(
                    form=options.form if options.form is not None else context.get("form") or {},
                    answers=options.answers if options.answers is not None else context.get("answers") or {},
                    url=options.url or context.get("url") or cfg.link or "",
                    media_selection=policy.normalize_asset_types(options.asset_types or cfg.asset_types),
                    variant_plan=plan,
                ),
                timeout=self._remaining(deadline),
            )
        except GenerationError as e:
            logger.error(f"Campaign {campaign_id}: generation failed, nothing deployed: {e}")
            return _result("failed", campaign_id, reason="generation", error=str(e), errors=e.errors)
        except asyncio.TimeoutError:
            logger.error(f"Campaign {campaign_id}: generation exceeded the cycle deadline")
            return _result("failed", campaign_id, reason="deadline", step="generate")

        # Step 5: Deploy. The result is filled in place so an interruption keeps what already landed.
        deployer = self.deployer_factory(client)
        deploy = DeployResult()
        interrupted: Optional[BaseException] = None
        try:
            await deployer.deploy(
                account_id=account_id,
                page_id=cfg.page_id,
                campaign_link=cfg.link or options.url or self.settings.default_campaign_link,
                adset_ids=targets,
                winners_by_adset=analysis.winners_by_adset,
                losers_by_adset=analysis.losers_by_adset,
                creatives=generation.variants,
                is_initial=forced,
                dry_run=options.dry_run,
                deadline=deadline,
                result=deploy,
            )
        except BaseException as e:
            logger.error(
                f"Campaign {campaign_id}: deploy interrupted after {deploy.created_count} ad(s): {e!r}"
            )
            deploy.errors.append({"step": "deploy", "error": f"interrupted: {e!r}"})
            interrupted = e

        # Step 6: Record
        errors = list(deploy.errors)
        if generation.shortfall.total:
            errors.append({
                "step": "generate",
                "error": "fewer variants generated than planned",
                "shortfall": generation.shortfall.model_dump(),
                "attempts": generation.errors,
            })
        mode = RunMode.INITIAL.value if forced else RunMode.PLATEAU.value
        run = await asyncio.shield(self.store.record_cycle(
            campaign_id=campaign_id,
            account_id=account_id,
            mode=mode,
            trigger=options.trigger,
            deploy=deploy,
            plateau_by_adset=analysis.plateau_by_adset,
            variant_plan=plan.model_dump(),
            shortfall=generation.shortfall.model_dump(),
            errors=errors,
            started_at=started_at,
            dry_run=options.dry_run,
        ))
        # Cancellation and interpreter exits still propagate once the partial run is on record
        if interrupted is not None and not isinstance(interrupted, Exception):
            raise interrupted

        return _result(
            "completed", campaign_id,
            mode=mode,
            run=serialize_run(run),
            analysis=analysis.model_dump(),
            variant_plan=plan.model_dump(),
            expected_per_type=plan.model_dump(),
            created_counts_per_adset={
                adset_id: count_variants_by_kind(vmap)
                for adset_id, vmap in deploy.variant_map_by_adset.items()
            },
            skipped_pauses=deploy.skipped_pauses,
            target_adset_ids=targets,
        )

    async def _track_plateaus(self, cfg: SmartConfig, analysis: Analysis, now,
                              dry_run: bool) -> tuple[list[str], dict[str, str]]:
        """
        Keep each ad set's plateau clock: started on the first plateaued
        observation, cleared as soon as the ad set recovers. Returns the ad
        sets whose plateau has lasted ``plateau_confirm_hours`` and the
        current clock per plateaued ad set.
        """
        updates: dict[str, dict] = {}
        confirmed: list[str] = []
        since_by_adset: dict[str, str] = {}
        for adset_id in analysis.adset_ids:
            stored = adset_state(cfg, adset_id).get("plateau_since")
            if not analysis.plateau_by_adset.get(adset_id):
                if stored:
                    updates[adset_id] = {"plateau_since": None}
                continue
            since = parse_datetime(stored)
            if since is None:
                since = now
                updates[adset_id] = {"plateau_since": now.isoformat()}
            since_by_adset[adset_id] = since.isoformat()
            if hours_between(now, since) >= self.settings.plateau_confirm_hours:
                confirmed.append(adset_id)
            else:
                logger.info(
                    f"Ad set {adset_id}: plateau for {hours_between(now, since):.1f}h, "
                    f"waiting for {self.settings.plateau_confirm_hours:g}h"
                )
        if updates and not dry_run:
            await self.store.update_adset_state(cfg.campaign_id, updates)
        return confirmed, since_by_adset

    async def _drop_cooling_down(self, campaign_id: str, adset_ids: list[str], now) -> list[str]:
        last = await self.store.last_creation_by_adset(campaign_id, adset_ids)
        keep = []
        for adset_id in adset_ids:
            created_at = last.get(adset_id)
            if created_at is not None and hours_between(now, created_at) < self.settings.min_hours_between_new_ads:
                logger.info(f"Ad set {adset_id}: new ads created {hours_between(now, created_at):.1f}h ago — cooling down")
                continue
            keep.append(adset_id)
        return keep

    # ── Stop-rules winner commit ──────────────────────────────────────

    async def _commit_cycle(self, cfg: SmartConfig, account_id: str, options: RunOptions) -> dict:
        campaign_id = cfg.campaign_id
        started_at = utcnow()
        deadline = time.monotonic() + self.settings.cycle_deadline_seconds

        client, analysis = await self._connect_and_analyze(cfg, account_id, options, deadline)

        champions: dict[str, str] = {}
        paused: dict[str, list[str]] = {}
        errors: list[dict] = []
        pending: list[str] = []
        for adset_id in analysis.adset_ids:
            ad_ids = analysis.ad_ids_by_adset.get(adset_id) or []
            if len(ad_ids) < 2:
                continue
            if adset_state(cfg, adset_id).get("winner_committed_at"):
                continue
            ready = all((analysis.stop_flags_by_ad.get(ad_id) or {}).get("any") for ad_id in ad_ids)
            if not ready and not options.forced:
                pending.append(adset_id)
                continue

            champion = policy.pick_champion(ad_ids, analysis.ad_metrics)
            if champion is None:
                continue
            champions[adset_id] = champion
            for ad_id in ad_ids:
                if ad_id == champion:
                    continue
                if not options.dry_run:
                    try:
                        await client.pause_ad(ad_id)
                    except MetaAPIError as e:
                        logger.warning(f"Commit: pause failed for ad {ad_id} in ad set {adset_id}: {e}")
                        errors.append({
                            "adset_id": adset_id,
                            "ad_id": ad_id,
                            "step": "pause_ad",
                            "error": str(e),
                            "meta": e.to_dict(),
                        })
                        continue
                paused.setdefault(adset_id, []).append(ad_id)

        if not champions:
            logger.info(f"Campaign {campaign_id}: no ad set ready to commit (pending={pending})")
            return _result("no_commit", campaign_id, pending_adset_ids=pending, analysis=analysis.model_dump())

        run = await asyncio.shield(self.store.record_commit(
            campaign_id=campaign_id,
            account_id=account_id,
            trigger=options.trigger,
            champion_by_adset=champions,
            paused_ads_by_adset=paused,
            errors=errors,
            started_at=started_at,
            dry_run=options.dry_run,
        ))
        return _result(
            "completed", campaign_id,
            mode=RunMode.STOP_RULES_COMMIT.value,
            run=serialize_run(run),
            champion_by_adset=champions,
            paused_ads_by_adset=paused,
            pending_adset_ids=pending,
        )

    @staticmethod
    def _remaining(deadline: float) -> float:
        return max(0.0, deadline - time.monotonic())

    async def status(self, campaign_id: str) -> dict:
        data = await self.store.get_status(campaign_id, self.settings.status_recent_runs)
        data["busy"] = self.locks.is_busy(campaign_id)
        return data
