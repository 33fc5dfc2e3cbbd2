"""
Authentication — API-key bearer auth for every engine route.

- Programmatic / UI backend: Authorization: Bearer <API_KEY>
- Cron: X-Cron-Secret (see routers/cron.py)

In development with no API_KEY set, auth is skipped for local dev.
"""

import logging
import secrets
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from smart_campaign.config import get_settings

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


async def require_auth(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> str:
    """Require the configured API key. Returns the matched key (or a dev marker)."""
    settings = get_settings()
    api_key = settings.api_key

    # Dev convenience: skip auth when no key is configured
    if not api_key:
        if settings.is_production:
            raise HTTPException(
                status_code=500,
                detail="Server misconfiguration: API_KEY must be set in production.",
            )
        return "dev-no-auth"

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization. Include header: Authorization: Bearer <API_KEY>",
        )

    if secrets.compare_digest(credentials.credentials, api_key):
        return api_key

    logger.warning("Rejected request with an invalid API key")
    raise HTTPException(status_code=401, detail="Invalid API key.")
