"""
Smart Router — enable campaigns for creative rotation, run one cycle on
demand, commit test winners, inspect config + recent runs, tune stop
rules, trigger a sweep.
"""

import logging
from typing import Any, Optional
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from smart_campaign.services.run_coordinator import ConfigurationError, RunCoordinator, RunOptions
from smart_campaign.services.scheduler import SmartScheduler
from smart_campaign.services.store_service import SmartStore, serialize_config
from smart_campaign.services.token_service import CredentialsError, store_credential
from smart_campaign.utils import safe_error_detail

logger = logging.getLogger(__name__)

router = APIRouter()

# Non-success cycle outcomes → HTTP status
FAILURE_STATUS = {
    "credentials": 401,
    "auth": 401,
    "no_adsets": 409,
    "generation": 502,
    "deadline": 504,
}


# ── Schemas ──────────────────────────────────────────────────────────
class EnableRequest(BaseModel):
    account_id: Optional[str] = None
    campaign_id: Optional[str] = None
    page_id: Optional[str] = None
    link: Optional[str] = None
    kpi: str = "cpc"
    asset_types: Optional[str] = None
    media_selection: Optional[str] = None
    daily_budget: Optional[float] = None
    flight_start: Optional[str] = None
    flight_end: Optional[str] = None
    flight_hours: Optional[float] = None
    override_count_per_type: Optional[Any] = None
    force_two_per_type: Optional[bool] = None
    thresholds: Optional[dict] = None
    stop_rules: Optional[dict] = None
    form: Optional[dict] = None
    answers: Optional[dict] = None
    url: Optional[str] = None
    is_active: bool = True


class RunOnceRequest(BaseModel):
    account_id: Optional[str] = None
    campaign_id: Optional[str] = None
    page_id: Optional[str] = None
    form: Optional[dict] = None
    answers: Optional[dict] = None
    url: Optional[str] = None
    media_selection: Optional[str] = None
    force: bool = False
    initial: bool = False
    daily_budget: Optional[float] = None
    flight_start: Optional[str] = None
    flight_end: Optional[str] = None
    flight_hours: Optional[float] = None
    override_count_per_type: Optional[Any] = None
    force_two_per_type: Optional[bool] = None
    dry_run: bool = True  # Simulate deployment unless explicitly disabled


class CommitNowRequest(BaseModel):
    account_id: Optional[str] = None
    campaign_id: Optional[str] = None
    force: bool = True  # Commit without waiting for every ad to meet a stop rule
    dry_run: bool = False


class StopRulesUpdate(BaseModel):
    spend_per_ad: Optional[float] = None
    impressions_per_ad: Optional[float] = None
    clicks_per_ad: Optional[float] = None
    time_cap_hours: Optional[float] = None

    model_config = ConfigDict(extra="allow")


class CredentialIn(BaseModel):
    access_token: str
    expires_in: Optional[float] = None


# ── Dependencies ─────────────────────────────────────────────────────
def get_store(request: Request) -> SmartStore:
    return request.app.state.store


def get_coordinator(request: Request) -> RunCoordinator:
    return request.app.state.coordinator


def get_scheduler(request: Request) -> SmartScheduler:
    return request.app.state.scheduler


def _outcome_response(result: dict) -> Any:
    status = result.get("status")
    if status == "busy":
        return JSONResponse(status_code=409, content=result)
    if status == "failed":
        return JSONResponse(status_code=FAILURE_STATUS.get(result.get("reason"), 500), content=result)
    return result


# ── Endpoints ────────────────────────────────────────────────────────
@router.post("/enable")
async def enable_campaign(body: EnableRequest, store: SmartStore = Depends(get_store)):
    """Create or update the smart config for a campaign."""
    if not body.account_id or not body.campaign_id or not body.page_id:
        raise HTTPException(400, "account_id, campaign_id and page_id are required")

    context = None
    if body.form is not None or body.answers is not None or body.url is not None:
        context = {"form": body.form or {}, "answers": body.answers or {}, "url": body.url or ""}

    cfg = await store.upsert_config(
        body.campaign_id,
        body.account_id,
        body.page_id,
        link=body.link or (body.form or {}).get("url") or body.url,
        kpi=body.kpi,
        asset_types=body.asset_types or body.media_selection,
        daily_budget=body.daily_budget,
        flight_start=body.flight_start,
        flight_end=body.flight_end,
        flight_hours=body.flight_hours,
        override_count_per_type=body.override_count_per_type,
        force_two_per_type=body.force_two_per_type,
        thresholds=body.thresholds,
        stop_rules=body.stop_rules,
        creative_context=context,
        is_active=body.is_active,
    )
    return {"success": True, "config": serialize_config(cfg)}


@router.post("/run-once")
async def run_once(body: RunOnceRequest, coordinator: RunCoordinator = Depends(get_coordinator)):
    """Run one optimization cycle now (optionally forced as an initial run)."""
    if not body.account_id or not body.campaign_id:
        raise HTTPException(400, "account_id and campaign_id are required")

    options = RunOptions(
        force=body.force,
        initial=body.initial,
        dry_run=body.dry_run,
        trigger="manual",
        page_id=body.page_id,
        asset_types=body.media_selection,
        daily_budget=body.daily_budget,
        flight_start=body.flight_start,
        flight_end=body.flight_end,
        flight_hours=body.flight_hours,
        override_count_per_type=body.override_count_per_type,
        force_two_per_type=body.force_two_per_type,
        form=body.form,
        answers=body.answers,
        url=body.url,
    )
    try:
        result = await coordinator.run_once(body.campaign_id, body.account_id, options)
    except ConfigurationError as e:
        raise HTTPException(400, str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=safe_error_detail(e, "Smart run failed."))
    return _outcome_response(result)


@router.post("/commit-now")
async def commit_now(body: CommitNowRequest, coordinator: RunCoordinator = Depends(get_coordinator)):
    """Keep each ad set's best ad (lowest CPC) and pause the others."""
    if not body.account_id or not body.campaign_id:
        raise HTTPException(400, "account_id and campaign_id are required")

    options = RunOptions(force=body.force, dry_run=body.dry_run, trigger="manual")
    try:
        result = await coordinator.commit_winners(body.campaign_id, body.account_id, options)
    except ConfigurationError as e:
        raise HTTPException(400, str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=safe_error_detail(e, "Winner commit failed."))
    return _outcome_response(result)


@router.get("/status/{campaign_id}")
async def campaign_status(campaign_id: str, coordinator: RunCoordinator = Depends(get_coordinator)):
    """Config plus the most recent runs for a campaign."""
    data = await coordinator.status(campaign_id)
    if data["config"] is None and not data["runs"]:
        raise HTTPException(404, "No smart config for this campaign")
    return data


@router.post("/config/{campaign_id}/stop-rules")
async def update_stop_rules(campaign_id: str, body: StopRulesUpdate, store: SmartStore = Depends(get_store)):
    rules = body.model_dump(exclude_none=True)
    cfg = await store.update_stop_rules(campaign_id, rules)
    if cfg is None:
        raise HTTPException(404, "No smart config for this campaign")
    return {"success": True, "stop_rules": cfg.stop_rules}


@router.post("/sweep-now")
async def sweep_now(scheduler: SmartScheduler = Depends(get_scheduler)):
    """Run a full sweep immediately instead of waiting for the timer."""
    result = await scheduler.sweep()
    if result.get("status") == "busy":
        return JSONResponse(status_code=409, content=result)
    return result


@router.post("/credentials")
async def save_credentials(body: CredentialIn, store: SmartStore = Depends(get_store)):
    """Store the Meta user token obtained by the OAuth flow."""
    try:
        cred = await store_credential(store.session_factory, body.access_token, body.expires_in)
    except CredentialsError as e:
        raise HTTPException(400, str(e))
    return {
        "success": True,
        "status": cred.status,
        "token_expires_at": cred.token_expires_at.isoformat() if cred.token_expires_at else None,
    }
