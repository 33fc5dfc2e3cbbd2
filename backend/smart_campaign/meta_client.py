"""
Meta Marketing API Client
Thin async wrapper over the Graph API endpoints the engine needs:
ad set / ad listing, windowed insights, image and video upload,
creative + ad creation, and pausing ads.
"""

import base64
import json
import logging
from datetime import datetime
from typing import Any, Optional
import httpx

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.facebook.com"

# OAuthException (190) and session/API-unknown (102) mean the token is unusable
AUTH_ERROR_CODES = {102, 190}

INSIGHT_FIELDS = "impressions,clicks,spend,ctr,cpm,frequency"


class PlatformCredentials:
    """
    Scoped Meta credentials handed to every client instance.
    Refresh and expiry are owned by token_service; the client only reads the token.
    """

    def __init__(self, access_token: str, expires_at: Optional[datetime] = None):
        self.access_token = access_token
        self.expires_at = expires_at

    def __repr__(self) -> str:
        return f"PlatformCredentials(expires_at={self.expires_at!r})"


class MetaAPIError(Exception):
    """A Graph API call failed (HTTP error, Graph error payload, timeout)."""

    def __init__(self, message: str, code: Optional[int] = None, subcode: Optional[int] = None,
                 fbtrace_id: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.subcode = subcode
        self.fbtrace_id = fbtrace_id
        self.status_code = status_code

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "code": self.code,
            "subcode": self.subcode,
            "fbtrace_id": self.fbtrace_id,
        }


class MetaAuthError(MetaAPIError):
    """The access token is invalid, expired, or lacks permissions."""


def act_id(account_id: str) -> str:
    aid = str(account_id or "").strip()
    return aid if aid.startswith("act_") else f"act_{aid}"


class MetaAdsClient:
    """
    Wrapper around the Meta Graph API.
    Each instance is bound to one set of PlatformCredentials.
    """

    def __init__(
        self,
        credentials: PlatformCredentials,
        graph_version: str = "v23.0",
        timeout: float = 30.0,
        base_url: str = GRAPH_BASE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.credentials = credentials
        self.graph_version = graph_version
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    def _url(self, path: str) -> str:
        if path.startswith("http"):
            return path
        return f"{self.base_url}/{self.graph_version}/{path.lstrip('/')}"

    def _http(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout or self.timeout, transport=self._transport)

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        data: Optional[dict] = None,
    ) -> dict:
        """Send one Graph request and return the decoded JSON body."""
        url = self._url(path)
        params = dict(params or {})
        # Absolute paging URLs already carry the token
        if not path.startswith("http"):
            params["access_token"] = self.credentials.access_token
        if data is not None:
            data = {
                k: json.dumps(v) if isinstance(v, (dict, list)) else v
                for k, v in data.items()
                if v is not None
            }

        logger.info(f"Graph {method} {path.split('?')[0] if path.startswith('http') else path}")
        try:
            async with self._http() as http:
                resp = await http.request(method, url, params=params, data=data)
        except httpx.TimeoutException as e:
            raise MetaAPIError(f"Graph {method} {path} timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise MetaAPIError(f"Graph {method} {path} failed: {e}") from e

        return self._parse_response(resp, method, path)

    @staticmethod
    def _parse_response(resp: httpx.Response, method: str, path: str) -> dict:
        try:
            body = resp.json()
        except ValueError:
            body = {"error": {"message": resp.text[:400]}} if resp.status_code >= 400 else {}

        err = body.get("error") if isinstance(body, dict) else None
        if resp.status_code >= 400 or err:
            err = err if isinstance(err, dict) else {"message": str(err or resp.text[:400])}
            code = err.get("code")
            message = err.get("message") or f"HTTP {resp.status_code}"
            exc_cls = MetaAuthError if (code in AUTH_ERROR_CODES or resp.status_code == 401) else MetaAPIError
            logger.warning(
                f"Graph {method} {path} failed: {resp.status_code} code={code} "
                f"subcode={err.get('error_subcode')} trace={err.get('fbtrace_id')} — {message}"
            )
            raise exc_cls(
                message,
                code=code,
                subcode=err.get("error_subcode"),
                fbtrace_id=err.get("fbtrace_id"),
                status_code=resp.status_code,
            )
        return body if isinstance(body, dict) else {"data": body}

    # ── Paginated Query Helper ────────────────────────────────────────

    async def _paged(self, path: str, params: dict, max_pages: int = 20) -> list[dict]:
        """Follow paging.next until exhausted or max_pages is reached."""
        rows: list[dict] = []
        next_path: Optional[str] = path
        next_params: Optional[dict] = params
        page = 0
        while next_path and page < max_pages:
            body = await self._request("GET", next_path, params=next_params)
            data = body.get("data") or []
            if not isinstance(data, list):
                break
            rows.extend(data)
            page += 1
            next_path = (body.get("paging") or {}).get("next")
            next_params = None
        return rows

    # ── Reads ─────────────────────────────────────────────────────────

    async def list_adsets(self, campaign_id: str) -> list[dict]:
        return await self._paged(f"{campaign_id}/adsets", {
            "fields": "id,name,status,effective_status,created_time",
            "limit": 200,
        })

    async def list_campaign_ads(self, campaign_id: str) -> list[dict]:
        return await self._paged(f"{campaign_id}/ads", {"fields": "id,adset_id", "limit": 200})

    async def list_ads(self, adset_id: str) -> list[dict]:
        return await self._paged(f"{adset_id}/ads", {
            "fields": "id,name,status,effective_status,created_time",
            "limit": 200,
        })

    async def get_insights(self, object_id: str, since: str, until: str, level: str) -> dict:
        """First insights row for the object over [since, until] (inclusive), or {} when empty."""
        body = await self._request("GET", f"{object_id}/insights", params={
            "fields": INSIGHT_FIELDS,
            "time_range": json.dumps({"since": since, "until": until}),
            "level": level,
        })
        rows = body.get("data") or []
        return rows[0] if rows and isinstance(rows[0], dict) else {}

    async def download_asset(self, url: str) -> tuple[bytes, str]:
        """Fetch a rendered asset. Returns (content, content_type)."""
        try:
            async with self._http(timeout=120.0) as http:
                resp = await http.get(url)
                resp.raise_for_status()
        except httpx.HTTPError as e:
            raise MetaAPIError(f"Asset download failed for {url}: {e}") from e
        return resp.content, resp.headers.get("content-type", "")

    # ── Writes ────────────────────────────────────────────────────────

    async def upload_image(self, account_id: str, content: bytes) -> str:
        body = await self._request("POST", f"{act_id(account_id)}/adimages", data={
            "bytes": base64.b64encode(content).decode(),
        })
        images = body.get("images") or {}
        for entry in images.values():
            if isinstance(entry, dict) and entry.get("hash"):
                return entry["hash"]
        raise MetaAPIError("Image upload returned no hash")

    async def upload_video(self, account_id: str, file_url: str) -> str:
        body = await self._request("POST", f"{act_id(account_id)}/advideos", data={"file_url": file_url})
        if not body.get("id"):
            raise MetaAPIError("Video upload returned no id")
        return str(body["id"])

    async def create_creative(self, account_id: str, name: str, object_story_spec: dict) -> str:
        body = await self._request("POST", f"{act_id(account_id)}/adcreatives", data={
            "name": name,
            "object_story_spec": object_story_spec,
        })
        if not body.get("id"):
            raise MetaAPIError("Creative create returned no id")
        return str(body["id"])

    async def create_ad(self, account_id: str, adset_id: str, creative_id: str, name: str,
                        status: str = "ACTIVE") -> str:
        body = await self._request("POST", f"{act_id(account_id)}/ads", data={
            "name": name,
            "adset_id": adset_id,
            "creative": {"creative_id": creative_id},
            "status": status,
        })
        if not body.get("id"):
            raise MetaAPIError("Ad create returned no id")
        return str(body["id"])

    async def pause_ad(self, ad_id: str) -> dict:
        return await self._request("POST", str(ad_id), data={"status": "PAUSED"})


def create_meta_client(credentials: PlatformCredentials, **kwargs: Any) -> MetaAdsClient:
    """Factory function to create a Graph client instance."""
    return MetaAdsClient(credentials, **kwargs)
