"""
Tests for the Graph API client using httpx's mock transport.
"""

import json
from urllib.parse import parse_qs

import httpx
import pytest

from smart_campaign.meta_client import MetaAdsClient, MetaAPIError, MetaAuthError, PlatformCredentials, act_id


def _client(handler) -> MetaAdsClient:
    return MetaAdsClient(PlatformCredentials("secret-token"), transport=httpx.MockTransport(handler))


def test_act_id_prefix():
    assert act_id("123") == "act_123"
    assert act_id("act_123") == "act_123"


def test_credentials_repr_hides_token():
    assert "secret-token" not in repr(PlatformCredentials("secret-token"))


@pytest.mark.anyio
async def test_list_adsets_follows_paging_next():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url)
        if request.url.params.get("after") == "p2":
            return httpx.Response(200, json={"data": [{"id": "as3"}]})
        return httpx.Response(200, json={
            "data": [{"id": "as1"}, {"id": "as2"}],
            "paging": {"next": "https://graph.facebook.com/v23.0/c1/adsets?access_token=secret-token&after=p2"},
        })

    rows = await _client(handler).list_adsets("c1")

    assert [r["id"] for r in rows] == ["as1", "as2", "as3"]
    assert seen[0].path == "/v23.0/c1/adsets"
    assert seen[0].params["access_token"] == "secret-token"
    assert len(seen) == 2


@pytest.mark.anyio
async def test_get_insights_sends_time_range_and_returns_first_row():
    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.url.params["time_range"]) == {"since": "2026-05-08", "until": "2026-05-10"}
        assert request.url.params["level"] == "adset"
        return httpx.Response(200, json={"data": [{"impressions": "10"}]})

    row = await _client(handler).get_insights("as1", "2026-05-08", "2026-05-10", "adset")
    assert row == {"impressions": "10"}


@pytest.mark.anyio
async def test_empty_insights_give_empty_row():
    row = await _client(lambda r: httpx.Response(200, json={"data": []})).get_insights("as1", "a", "b", "ad")
    assert row == {}


@pytest.mark.anyio
async def test_token_errors_raise_auth_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"message": "Session has expired", "code": 190, "fbtrace_id": "T1"}})

    with pytest.raises(MetaAuthError) as exc:
        await _client(handler).list_ads("as1")
    assert exc.value.code == 190
    assert exc.value.to_dict()["fbtrace_id"] == "T1"


@pytest.mark.anyio
async def test_other_graph_errors_raise_api_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"message": "Invalid parameter", "code": 100, "error_subcode": 33}})

    with pytest.raises(MetaAPIError) as exc:
        await _client(handler).pause_ad("ad1")
    assert not isinstance(exc.value, MetaAuthError)
    assert exc.value.subcode == 33


@pytest.mark.anyio
async def test_upload_image_returns_hash():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v23.0/act_123/adimages"
        form = parse_qs(request.content.decode())
        assert form["bytes"] == ["cG5n"]
        return httpx.Response(200, json={"images": {"bytes": {"hash": "abc123"}}})

    assert await _client(handler).upload_image("123", b"png") == "abc123"


@pytest.mark.anyio
async def test_create_ad_serializes_nested_creative():
    def handler(request: httpx.Request) -> httpx.Response:
        form = parse_qs(request.content.decode())
        assert json.loads(form["creative"][0]) == {"creative_id": "cr1"}
        assert form["status"] == ["PAUSED"]
        return httpx.Response(200, json={"id": "ad9"})

    ad_id = await _client(handler).create_ad("123", "as1", "cr1", name="Smart img_1", status="PAUSED")
    assert ad_id == "ad9"


@pytest.mark.anyio
async def test_network_failure_becomes_api_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(MetaAPIError):
        await _client(handler).list_adsets("c1")
