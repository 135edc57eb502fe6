"""Unit tests for RobloxOAuthClient: authorize URL, code exchange, userinfo."""

from urllib.parse import parse_qs, urlparse

import pytest
from unittest.mock import AsyncMock, MagicMock

from rb_common.errors import TokenExchangeError, UserinfoError
from rb_common.roblox.oauth_client import AUTHORIZE_URL, RobloxOAuthClient


@pytest.fixture
def client():
    c = RobloxOAuthClient("cid", "secret", "https://bridge.example/oauth/callback")
    c._http_client = MagicMock()
    return c


def _make_response(status_code: int = 200, json_data: dict = None):
    mock = MagicMock()
    mock.status_code = status_code
    mock.json.return_value = json_data or {}
    mock.text = ""
    return mock


def test_authorize_url_carries_state_and_scopes(client):
    url = client.authorize_url("abc123")

    assert url.startswith(AUTHORIZE_URL + "?")
    query = parse_qs(urlparse(url).query)
    assert query["state"] == ["abc123"]
    assert query["client_id"] == ["cid"]
    assert query["scope"] == ["openid profile"]
    assert query["response_type"] == ["code"]
    assert query["redirect_uri"] == ["https://bridge.example/oauth/callback"]


async def test_exchange_code_returns_token(client):
    client._http_client.post = AsyncMock(return_value=_make_response(200, {"access_token": "tok"}))

    assert await client.exchange_code("the-code") == "tok"

    _, kwargs = client._http_client.post.call_args
    assert kwargs["data"]["grant_type"] == "authorization_code"
    assert kwargs["data"]["code"] == "the-code"


async def test_exchange_code_rejected(client):
    client._http_client.post = AsyncMock(return_value=_make_response(400))
    with pytest.raises(TokenExchangeError):
        await client.exchange_code("bad")


async def test_exchange_code_without_token(client):
    client._http_client.post = AsyncMock(return_value=_make_response(200, {}))
    with pytest.raises(TokenExchangeError):
        await client.exchange_code("odd")


async def test_userinfo_uses_bearer_token(client):
    client._http_client.get = AsyncMock(return_value=_make_response(200, {
        "sub": "156", "preferred_username": "builderman",
    }))

    info = await client.get_userinfo("tok")

    assert info["sub"] == "156"
    _, kwargs = client._http_client.get.call_args
    assert kwargs["headers"] == {"Authorization": "Bearer tok"}


async def test_userinfo_failure(client):
    client._http_client.get = AsyncMock(return_value=_make_response(401))
    with pytest.raises(UserinfoError):
        await client.get_userinfo("tok")


async def test_userinfo_without_subject(client):
    client._http_client.get = AsyncMock(return_value=_make_response(200, {"name": "x"}))
    with pytest.raises(UserinfoError):
        await client.get_userinfo("tok")
