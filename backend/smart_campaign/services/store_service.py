"""
Config & Run Store — durable, campaign-keyed persistence for the engine.
Atomic config upserts, a cross-process run lease on the config row, and
append-only run / creative-history records. Every method is one transaction.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Optional
from sqlalchemy import select, update, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from smart_campaign.models import SmartConfig, SmartRun, CreativeHistory, RunMode, RunStatus
from smart_campaign.schemas import DeployResult
from smart_campaign.services import policy
from smart_campaign.utils import kind_from_variant_id, parse_datetime, safe_float, utcnow

logger = logging.getLogger(__name__)

CONFIG_FIELDS = (
    "link", "kpi", "asset_types", "daily_budget", "flight_start", "flight_end",
    "flight_hours", "override_count_per_type", "force_two_per_type",
    "thresholds", "stop_rules", "creative_context", "is_active",
)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def serialize_config(cfg: SmartConfig) -> dict:
    return {
        "id": str(cfg.id),
        "campaign_id": cfg.campaign_id,
        "account_id": cfg.account_id,
        "page_id": cfg.page_id,
        "link": cfg.link,
        "kpi": cfg.kpi,
        "asset_types": cfg.asset_types,
        "daily_budget": cfg.daily_budget,
        "flight_start": _iso(cfg.flight_start),
        "flight_end": _iso(cfg.flight_end),
        "flight_hours": cfg.flight_hours,
        "override_count_per_type": cfg.override_count_per_type,
        "force_two_per_type": cfg.force_two_per_type,
        "thresholds": cfg.thresholds,
        "stop_rules": cfg.stop_rules,
        "is_active": cfg.is_active,
        "last_run_at": _iso(cfg.last_run_at),
        "total_runs": cfg.total_runs,
        "state": cfg.state or {"adsets": {}},
        "created_at": _iso(cfg.created_at),
        "updated_at": _iso(cfg.updated_at),
    }


def serialize_run(run: SmartRun) -> dict:
    return {
        "id": str(run.id),
        "campaign_id": run.campaign_id,
        "account_id": run.account_id,
        "mode": run.mode,
        "trigger": run.trigger,
        "status": run.status,
        "dry_run": run.dry_run,
        "plateau_by_adset": run.plateau_by_adset or {},
        "variant_plan": run.variant_plan or {},
        "created_ads_by_adset": run.created_ads_by_adset or {},
        "paused_ads_by_adset": run.paused_ads_by_adset or {},
        "variant_map_by_adset": run.variant_map_by_adset or {},
        "champion_by_adset": run.champion_by_adset or {},
        "shortfall": run.shortfall or {},
        "errors": run.errors or [],
        "started_at": _iso(run.started_at),
        "completed_at": _iso(run.completed_at),
    }


def _normalize_fields(fields: dict[str, Any]) -> dict[str, Any]:
    """Coerce API-shaped values into column values. Unknown keys and None are dropped."""
    values: dict[str, Any] = {}
    for key, value in fields.items():
        if key not in CONFIG_FIELDS or value is None:
            continue
        if key in ("flight_start", "flight_end"):
            value = parse_datetime(value)
        elif key in ("daily_budget", "flight_hours"):
            value = safe_float(value)
        elif key == "asset_types":
            value = policy.normalize_asset_types(value)
        elif key == "kpi":
            value = str(value).lower()
        elif key == "thresholds":
            value = policy.merge_thresholds(value).model_dump()
        elif key == "stop_rules":
            value = policy.merge_stop_rules(value).model_dump()
        elif key in ("force_two_per_type", "is_active"):
            value = bool(value)
        values[key] = value
    return values


def adset_state(cfg: Optional[SmartConfig], adset_id: str) -> dict:
    """Per-ad-set rotation state (champion, commit and plateau timestamps) as stored on the config."""
    if cfg is None:
        return {}
    return dict(((cfg.state or {}).get("adsets") or {}).get(adset_id) or {})


def _merge_adset_state(state: Optional[dict], updates: dict[str, dict]) -> dict:
    """New state dict with ``updates`` overlaid per ad set. Always a fresh object so the JSON column is flagged dirty."""
    adsets = {k: dict(v) for k, v in ((state or {}).get("adsets") or {}).items()}
    for adset_id, fields in updates.items():
        adsets.setdefault(adset_id, {}).update(fields)
    return {**(state or {}), "adsets": adsets}


class SmartStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ── Configs ───────────────────────────────────────────────────────

    async def upsert_config(self, campaign_id: str, account_id: str, page_id: Optional[str] = None,
                            **fields: Any) -> SmartConfig:
        """
        Create or update the config for ``campaign_id``.
        A concurrent insert for the same campaign loses on the unique
        constraint and is retried as an update.
        """
        values = _normalize_fields(fields)
        try:
            return await self._upsert(campaign_id, account_id, page_id, values)
        except IntegrityError:
            logger.info(f"Concurrent config insert for campaign {campaign_id}, retrying as update")
            return await self._upsert(campaign_id, account_id, page_id, values)

    async def _upsert(self, campaign_id: str, account_id: str, page_id: Optional[str],
                      values: dict[str, Any]) -> SmartConfig:
        async with self.session_factory() as session:
            async with session.begin():
                cfg = (await session.execute(
                    select(SmartConfig).where(SmartConfig.campaign_id == campaign_id)
                )).scalar_one_or_none()
                if cfg is None:
                    if not page_id:
                        raise ValueError("page_id is required to create a config")
                    cfg = SmartConfig(
                        campaign_id=campaign_id,
                        account_id=account_id,
                        page_id=page_id,
                        **{
                            "thresholds": policy.DEFAULT_THRESHOLDS.model_dump(),
                            "stop_rules": policy.DEFAULT_STOP_RULES.model_dump(),
                            **values,
                        },
                    )
                    session.add(cfg)
                    logger.info(f"Created smart config for campaign {campaign_id}")
                else:
                    if account_id:
                        cfg.account_id = account_id
                    if page_id:
                        cfg.page_id = page_id
                    for key, value in values.items():
                        setattr(cfg, key, value)
                    cfg.updated_at = utcnow()
                    logger.info(f"Updated smart config for campaign {campaign_id}")
            return cfg

    async def get_config(self, campaign_id: str) -> Optional[SmartConfig]:
        async with self.session_factory() as session:
            return (await session.execute(
                select(SmartConfig).where(SmartConfig.campaign_id == campaign_id)
            )).scalar_one_or_none()

    async def list_active_configs(self) -> list[SmartConfig]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SmartConfig)
                .where(SmartConfig.is_active.is_(True))
                .order_by(SmartConfig.created_at)
            )
            return list(result.scalars().all())

    async def update_stop_rules(self, campaign_id: str, stop_rules: dict) -> Optional[SmartConfig]:
        async with self.session_factory() as session:
            async with session.begin():
                cfg = (await session.execute(
                    select(SmartConfig).where(SmartConfig.campaign_id == campaign_id)
                )).scalar_one_or_none()
                if cfg is None:
                    return None
                cfg.stop_rules = policy.merge_stop_rules({**(cfg.stop_rules or {}), **(stop_rules or {})}).model_dump()
                cfg.updated_at = utcnow()
            return cfg

    async def update_adset_state(self, campaign_id: str, updates: dict[str, dict]) -> Optional[SmartConfig]:
        """Merge per-ad-set fields into the config's rotation state."""
        if not updates:
            return await self.get_config(campaign_id)
        async with self.session_factory() as session:
            async with session.begin():
                cfg = (await session.execute(
                    select(SmartConfig).where(SmartConfig.campaign_id == campaign_id)
                )).scalar_one_or_none()
                if cfg is None:
                    return None
                cfg.state = _merge_adset_state(cfg.state, updates)
            return cfg

    # ── Run lease ─────────────────────────────────────────────────────

    async def try_acquire_lease(self, campaign_id: str, token: str, lease_seconds: float) -> bool:
        """
        Claim the config row for one cycle. Succeeds only when no other
        holder has an unexpired lease; a crashed holder's lease simply expires.
        """
        now = utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(SmartConfig)
                    .where(
                        SmartConfig.campaign_id == campaign_id,
                        or_(
                            SmartConfig.lock_token.is_(None),
                            SmartConfig.locked_until.is_(None),
                            SmartConfig.locked_until < now,
                        ),
                    )
                    .values(lock_token=token, locked_until=now + timedelta(seconds=lease_seconds))
                    .execution_options(synchronize_session=False)
                )
            return result.rowcount == 1

    async def release_lease(self, campaign_id: str, token: str) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(SmartConfig)
                    .where(SmartConfig.campaign_id == campaign_id, SmartConfig.lock_token == token)
                    .values(lock_token=None, locked_until=None)
                    .execution_options(synchronize_session=False)
                )

    # ── History ───────────────────────────────────────────────────────

    async def last_creation_by_adset(self, campaign_id: str, adset_ids: list[str]) -> dict[str, datetime]:
        """Most recent ad creation time per ad set (ad sets with no history are absent)."""
        if not adset_ids:
            return {}
        async with self.session_factory() as session:
            result = await session.execute(
                select(CreativeHistory.adset_id, func.max(CreativeHistory.created_at))
                .where(
                    CreativeHistory.campaign_id == campaign_id,
                    CreativeHistory.adset_id.in_(adset_ids),
                )
                .group_by(CreativeHistory.adset_id)
            )
            return {adset_id: created_at for adset_id, created_at in result.all() if created_at}

    async def record_cycle(
        self,
        campaign_id: str,
        account_id: str,
        mode: str,
        trigger: str,
        deploy: DeployResult,
        plateau_by_adset: dict,
        variant_plan: dict,
        shortfall: Optional[dict] = None,
        errors: Optional[list] = None,
        started_at: Optional[datetime] = None,
        dry_run: bool = False,
    ) -> SmartRun:
        """
        Append the Run, one CreativeHistory row per created ad, and advance
        the config's ``last_run_at``, all in one transaction. Ad sets that
        received ads start a new test round: their plateau clock and winner
        commit are cleared. Dry runs are recorded but leave guardrail state
        and creative history untouched.
        """
        now = utcnow()
        all_errors = list(errors or [])
        status = RunStatus.PARTIAL.value if all_errors else RunStatus.COMPLETED.value

        async with self.session_factory() as session:
            async with session.begin():
                run = SmartRun(
                    campaign_id=campaign_id,
                    account_id=account_id,
                    mode=mode,
                    trigger=trigger,
                    status=status,
                    dry_run=dry_run,
                    plateau_by_adset=plateau_by_adset or {},
                    variant_plan=variant_plan or {},
                    created_ads_by_adset=deploy.created_ads_by_adset,
                    paused_ads_by_adset=deploy.paused_ads_by_adset,
                    variant_map_by_adset=deploy.variant_map_by_adset,
                    shortfall=shortfall or {},
                    errors=all_errors,
                    started_at=started_at or now,
                    completed_at=now,
                )
                session.add(run)
                await session.flush()

                if not dry_run:
                    for adset_id, variant_map in deploy.variant_map_by_adset.items():
                        for variant_id, ad_id in variant_map.items():
                            session.add(CreativeHistory(
                                run_id=run.id,
                                campaign_id=campaign_id,
                                adset_id=adset_id,
                                ad_id=ad_id,
                                variant_id=variant_id,
                                kind=kind_from_variant_id(variant_id) or "image",
                                created_at=now,
                            ))
                    values: dict[str, Any] = {"last_run_at": now, "total_runs": SmartConfig.total_runs + 1}
                    if deploy.created_ads_by_adset:
                        state = (await session.execute(
                            select(SmartConfig.state).where(SmartConfig.campaign_id == campaign_id)
                        )).scalar_one_or_none()
                        values["state"] = _merge_adset_state(state, {
                            adset_id: {"plateau_since": None, "winner_committed_at": None, "last_spawn_at": now.isoformat()}
                            for adset_id in deploy.created_ads_by_adset
                        })
                    await session.execute(
                        update(SmartConfig)
                        .where(SmartConfig.campaign_id == campaign_id)
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )

        logger.info(
            f"Recorded {mode} run {run.id} for campaign {campaign_id}: status={status}, "
            f"created={deploy.created_count}, dry_run={dry_run}"
        )
        return run

    async def record_commit(
        self,
        campaign_id: str,
        account_id: str,
        trigger: str,
        champion_by_adset: dict[str, str],
        paused_ads_by_adset: dict[str, list[str]],
        errors: Optional[list] = None,
        started_at: Optional[datetime] = None,
        dry_run: bool = False,
    ) -> SmartRun:
        """
        Append a stop-rules commit Run and mark each ad set's test round as
        decided (champion kept, plateau clock cleared). Does not touch
        ``last_run_at``: committing is not a creation cycle.
        """
        now = utcnow()
        all_errors = list(errors or [])
        status = RunStatus.PARTIAL.value if all_errors else RunStatus.COMPLETED.value

        async with self.session_factory() as session:
            async with session.begin():
                run = SmartRun(
                    campaign_id=campaign_id,
                    account_id=account_id,
                    mode=RunMode.STOP_RULES_COMMIT.value,
                    trigger=trigger,
                    status=status,
                    dry_run=dry_run,
                    variant_plan={"images": 0, "videos": 0},
                    created_ads_by_adset={},
                    paused_ads_by_adset=paused_ads_by_adset,
                    variant_map_by_adset={},
                    champion_by_adset=champion_by_adset,
                    errors=all_errors,
                    started_at=started_at or now,
                    completed_at=now,
                )
                session.add(run)

                if not dry_run:
                    cfg = (await session.execute(
                        select(SmartConfig).where(SmartConfig.campaign_id == campaign_id)
                    )).scalar_one_or_none()
                    if cfg is not None:
                        cfg.state = _merge_adset_state(cfg.state, {
                            adset_id: {
                                "champion_ad_id": champion,
                                "winner_committed_at": now.isoformat(),
                                "plateau_since": None,
                            }
                            for adset_id, champion in champion_by_adset.items()
                        })
                        cfg.updated_at = now

        logger.info(
            f"Recorded stop-rules commit {run.id} for campaign {campaign_id}: "
            f"champions={champion_by_adset}, dry_run={dry_run}"
        )
        return run

    async def recent_runs(self, campaign_id: str, limit: int = 10) -> list[SmartRun]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SmartRun)
                .where(SmartRun.campaign_id == campaign_id)
                .order_by(SmartRun.completed_at.desc(), SmartRun.started_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_status(self, campaign_id: str, limit: int = 10) -> dict:
        cfg = await self.get_config(campaign_id)
        runs = await self.recent_runs(campaign_id, limit)
        return {
            "campaign_id": campaign_id,
            "config": serialize_config(cfg) if cfg else None,
            "runs": [serialize_run(r) for r in runs],
        }
