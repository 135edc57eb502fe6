"""Roblox OAuth 2.0 (authorization code) client used by one-click verification."""

import logging
from typing import Optional
from urllib.parse import urlencode

import httpx

from rb_common.errors import TokenExchangeError, UserinfoError

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://apis.roblox.com/oauth/v1/authorize"
TOKEN_URL = "https://apis.roblox.com/oauth/v1/token"
USERINFO_URL = "https://apis.roblox.com/oauth/v1/userinfo"

SCOPES = "openid profile"


class RobloxOAuthClient:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        timeout: float = 15.0,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self._http_client: Optional[httpx.AsyncClient] = None

    async def initialize(self):
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)

    async def close(self):
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def authorize_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": SCOPES,
            "response_type": "code",
            "state": state,
            "prompt": "consent select_account",
        }
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> str:
        """Trade an authorization code for an access token."""
        await self.initialize()
        response = await self._http_client.post(
            TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": self.redirect_uri,
            },
        )
        if response.status_code != 200:
            logger.error("OAuth token exchange failed: %s %s", response.status_code, response.text)
            raise TokenExchangeError()
        token = response.json().get("access_token")
        if not token:
            raise TokenExchangeError("Roblox did not return an access token.")
        return token

    async def get_userinfo(self, access_token: str) -> dict:
        """Fetch the OIDC userinfo (sub, preferred_username, nickname)."""
        await self.initialize()
        response = await self._http_client.get(
            USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"}
        )
        if response.status_code != 200:
            logger.error("OAuth userinfo fetch failed: %s", response.status_code)
            raise UserinfoError()
        data = response.json()
        if not data.get("sub"):
            raise UserinfoError("Roblox userinfo response had no subject.")
        return data
