"""
Cron — sweep endpoint for an external scheduler (QStash, platform cron).

Use this instead of (or alongside) the in-process scheduler when the app
runs on hosts that sleep between requests. Verifies CRON_SECRET:
  X-Cron-Secret: <CRON_SECRET>
  OR Authorization: Bearer <CRON_SECRET>
"""

import logging
import secrets
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from smart_campaign.config import get_settings
from smart_campaign.utils import safe_error_detail

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"])


async def _require_cron_secret(
    x_cron_secret: str | None = Header(None, alias="X-Cron-Secret"),
    authorization: str | None = Header(None),
) -> None:
    """Verify request came from the cron caller with a valid secret."""
    secret = get_settings().cron_secret
    if not secret:
        raise HTTPException(500, "CRON_SECRET not configured")
    # Accept X-Cron-Secret header or Bearer token
    token = x_cron_secret
    if not token and authorization and authorization.startswith("Bearer "):
        token = authorization[7:]
    if not token or not secrets.compare_digest(token, secret):
        raise HTTPException(401, "Invalid cron secret")


@router.post("/sweep")
async def cron_sweep(request: Request, _: None = Depends(_require_cron_secret)):
    """
    Scheduled sweep over all active smart configs.
    POST https://your-app/api/cron/sweep
    Header: X-Cron-Secret: <CRON_SECRET>
    """
    try:
        result = await request.app.state.scheduler.sweep()
    except Exception as e:
        raise HTTPException(500, safe_error_detail(e, "Sweep failed."))
    if result.get("status") == "busy":
        return JSONResponse(status_code=409, content=result)
    logger.info(f"Cron sweep completed: {len(result.get('results', []))} campaign(s)")
    return result
