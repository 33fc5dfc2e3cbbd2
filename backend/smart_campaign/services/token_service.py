"""
Token Service — the Meta user access token behind every Graph call.
Stores the token (encrypted) and hands out scoped PlatformCredentials,
exchanging it for a fresh long-lived token shortly before expiry.
"""

import logging
from datetime import timedelta
from typing import Optional
import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from smart_campaign.config import get_settings
from smart_campaign.crypto import decrypt_token, encrypt_token
from smart_campaign.meta_client import GRAPH_BASE_URL, PlatformCredentials
from smart_campaign.models import CredentialStatus, PlatformCredential
from smart_campaign.utils import utcnow

logger = logging.getLogger(__name__)

# Exchange a long-lived token this long before it expires
REFRESH_BUFFER = timedelta(days=7)


class CredentialsError(Exception):
    """No usable Meta access token is stored."""


async def exchange_long_lived_token(app_id: str, app_secret: str, token: str,
                                    transport: Optional[httpx.AsyncBaseTransport] = None) -> dict:
    """
    Exchange a user token for a long-lived one via fb_exchange_token.
    Returns dict with access_token and (usually) expires_in.
    """
    settings = get_settings()
    async with httpx.AsyncClient(transport=transport) as client:
        response = await client.get(
            f"{GRAPH_BASE_URL}/{settings.meta_graph_version}/oauth/access_token",
            params={
                "grant_type": "fb_exchange_token",
                "client_id": app_id,
                "client_secret": app_secret,
                "fb_exchange_token": token,
            },
            timeout=30,
        )
        response.raise_for_status()
        return response.json()


async def _current(session: AsyncSession) -> Optional[PlatformCredential]:
    result = await session.execute(
        select(PlatformCredential).order_by(PlatformCredential.updated_at.desc()).limit(1)
    )
    return result.scalar_one_or_none()


async def store_credential(session_factory: async_sessionmaker[AsyncSession], access_token: str,
                           expires_in: Optional[float] = None) -> PlatformCredential:
    """Save the token delivered by the OAuth flow, replacing the previous one."""
    if not access_token:
        raise CredentialsError("access_token is required")
    now = utcnow()
    expires_at = now + timedelta(seconds=float(expires_in)) if expires_in else None
    async with session_factory() as session:
        async with session.begin():
            cred = await _current(session)
            if cred is None:
                cred = PlatformCredential(access_token=encrypt_token(access_token))
                session.add(cred)
            cred.access_token = encrypt_token(access_token)
            cred.token_expires_at = expires_at
            cred.status = CredentialStatus.ACTIVE.value
            cred.updated_at = now
    logger.info(f"Stored Meta access token (expires_at={expires_at})")
    return cred


async def get_platform_credentials(
    session_factory: async_sessionmaker[AsyncSession],
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> PlatformCredentials:
    """
    Load the stored token, refreshing it first when it is inside the refresh
    buffer and an app id/secret are configured.
    Raises CredentialsError when no token is stored or it has expired.
    """
    settings = get_settings()
    async with session_factory() as session:
        async with session.begin():
            cred = await _current(session)
            if cred is None or not cred.access_token:
                raise CredentialsError("No Meta access token stored. Connect the ad account first.")

            token = decrypt_token(cred.access_token)
            now = utcnow()
            expires_at = cred.token_expires_at

            due = expires_at is not None and now >= expires_at - REFRESH_BUFFER
            if due and settings.meta_app_id and settings.meta_app_secret:
                logger.info("Meta access token near expiry, exchanging for a long-lived token...")
                try:
                    data = await exchange_long_lived_token(
                        settings.meta_app_id, settings.meta_app_secret, token, transport=transport,
                    )
                    token = data["access_token"]
                    expires_in = data.get("expires_in")
                    expires_at = now + timedelta(seconds=float(expires_in)) if expires_in else None
                    cred.access_token = encrypt_token(token)
                    cred.token_expires_at = expires_at
                    cred.status = CredentialStatus.ACTIVE.value
                    cred.updated_at = now
                    logger.info(f"Meta access token refreshed, expires_at={expires_at}")
                except (httpx.HTTPError, KeyError, ValueError) as e:
                    logger.error(f"Meta token exchange failed: {e}")

            expired = expires_at is not None and now >= expires_at
            if expired:
                cred.status = CredentialStatus.EXPIRED.value

    if expired:
        raise CredentialsError("Meta access token expired. Reconnect the ad account.")
    return PlatformCredentials(access_token=token, expires_at=expires_at)
