"""
Roblox API client for users, groups and group ranks.

Handles:
- Username -> user resolution and profile (bio) lookup
- Group role listing and membership/rank lookup
- Rank mutation through Open Cloud (API key)
- Retry with backoff on 429/5xx (honours Retry-After) and a request-rate cap

Open Cloud v2 is the primary path for group data. When it errors, the legacy
public groups API is used instead; callers never see which one answered.

Usage:
    client = RobloxClient(api_key)
    await client.initialize()
    user = await client.resolve_username("builderman")
    membership = await client.get_membership_rank(user.id, "1234")
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

import httpx
from aiolimiter import AsyncLimiter
from httpx_retries import Retry, RetryTransport

logger = logging.getLogger(__name__)

OPEN_CLOUD_BASE_URL = "https://apis.roblox.com"
USERS_API_URL = "https://users.roblox.com"
GROUPS_API_URL = "https://groups.roblox.com"

# Roblox allows roughly this many calls per minute per key before 429s start
DEFAULT_RATE_LIMIT = 90
DEFAULT_RATE_PERIOD = 60.0

GROUP_ROLES_TTL_SECONDS = 60.0


@dataclass
class RobloxUser:
    """Result of a username lookup."""
    id: str
    name: str
    display_name: str


@dataclass
class RobloxProfile:
    id: str
    name: str
    display_name: str
    description: str = ""


@dataclass
class GroupRole:
    id: str
    rank: int
    name: str


@dataclass
class GroupMembership:
    in_group: bool
    rank: int = 0
    role_id: Optional[str] = None
    role_name: Optional[str] = None


NOT_A_MEMBER = GroupMembership(in_group=False)


def _build_retry() -> Retry:
    return Retry(
        total=3,
        backoff_factor=0.5,
        max_backoff_wait=30.0,
        respect_retry_after_header=True,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=("GET", "POST", "PATCH"),
    )


def _last_segment(path: str | None) -> str | None:
    """'groups/1/roles/456' -> '456'."""
    if not path:
        return None
    return path.rstrip("/").split("/")[-1]


class RobloxClient:
    """Async client for the Roblox Open Cloud and public web APIs."""

    def __init__(
        self,
        api_key: str,
        rate_limit: int = DEFAULT_RATE_LIMIT,
        rate_period: float = DEFAULT_RATE_PERIOD,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

        self._http_client: Optional[httpx.AsyncClient] = None
        self._limiter = AsyncLimiter(rate_limit, rate_period)
        self._roles_cache: dict[str, tuple[float, list[GroupRole]]] = {}
        self._request_count = 0

    async def initialize(self):
        """Create the HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=RetryTransport(transport=self._transport, retry=_build_retry()),
            )

    async def close(self):
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # ------------------------------------------------------------------
    # transport
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict | None = None,
        json: dict | None = None,
        open_cloud: bool = False,
    ) -> Optional[dict]:
        """Send one request. Returns parsed JSON, or None on 404."""
        if self._http_client is None:
            await self.initialize()

        headers = {"x-api-key": self.api_key} if open_cloud else {}

        async with self._limiter:
            response = await self._http_client.request(
                method, url, params=params, json=json, headers=headers
            )
        self._request_count += 1

        if response.status_code == 404:
            logger.debug("Roblox API 404: %s %s", method, url)
            return None

        response.raise_for_status()
        return response.json()

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------

    async def resolve_username(self, username: str) -> Optional[RobloxUser]:
        """
        Resolve a username to a user.

        Endpoint: POST users.roblox.com/v1/usernames/users
        Returns None when no (unbanned) user has that name.
        """
        data = await self._request(
            "POST",
            f"{USERS_API_URL}/v1/usernames/users",
            json={"usernames": [username], "excludeBannedUsers": True},
        )
        entries = (data or {}).get("data") or []
        if not entries:
            return None
        entry = entries[0]
        return RobloxUser(
            id=str(entry["id"]),
            name=entry.get("name", username),
            display_name=entry.get("displayName") or entry.get("name", username),
        )

    async def get_profile(self, user_id: str) -> Optional[RobloxProfile]:
        """
        Fetch a user's public profile, including the bio ("description").

        Endpoint: GET users.roblox.com/v1/users/{userId}
        """
        data = await self._request("GET", f"{USERS_API_URL}/v1/users/{user_id}")
        if not data:
            return None
        name = data.get("name", "")
        return RobloxProfile(
            id=str(data.get("id", user_id)),
            name=name,
            display_name=data.get("displayName") or name,
            description=data.get("description") or "",
        )

    # ------------------------------------------------------------------
    # groups
    # ------------------------------------------------------------------

    async def get_group_info(self, group_id: str) -> Optional[dict]:
        return await self._request("GET", f"{GROUPS_API_URL}/v1/groups/{group_id}")

    async def get_group_roles(self, group_id: str) -> list[GroupRole]:
        """
        List every role (rank) in a group, lowest rank first.

        Endpoint: GET /cloud/v2/groups/{groupId}/roles (paged),
        falling back to GET groups.roblox.com/v1/groups/{groupId}/roles.
        """
        group_id = str(group_id)
        cached = self._roles_cache.get(group_id)
        if cached and time.monotonic() - cached[0] < GROUP_ROLES_TTL_SECONDS:
            return cached[1]

        try:
            roles = await self._get_group_roles_open_cloud(group_id)
        except httpx.HTTPError as exc:
            logger.warning("Open Cloud group roles failed for %s (%s), using legacy API", group_id, exc)
            roles = await self._get_group_roles_legacy(group_id)

        roles.sort(key=lambda r: r.rank)
        if roles:
            self._roles_cache[group_id] = (time.monotonic(), roles)
        return roles

    async def _get_group_roles_open_cloud(self, group_id: str) -> list[GroupRole]:
        roles: list[GroupRole] = []
        page_token = None
        while True:
            params = {"maxPageSize": 20}
            if page_token:
                params["pageToken"] = page_token
            data = await self._request(
                "GET",
                f"{OPEN_CLOUD_BASE_URL}/cloud/v2/groups/{group_id}/roles",
                params=params,
                open_cloud=True,
            )
            if data is None:
                break
            for entry in data.get("groupRoles", []):
                role_id = _last_segment(entry.get("path")) or str(entry.get("id"))
                roles.append(GroupRole(
                    id=role_id,
                    rank=int(entry.get("rank", 0)),
                    name=entry.get("displayName") or role_id,
                ))
            page_token = data.get("nextPageToken")
            if not page_token:
                break
        return roles

    async def _get_group_roles_legacy(self, group_id: str) -> list[GroupRole]:
        try:
            data = await self._request("GET", f"{GROUPS_API_URL}/v1/groups/{group_id}/roles")
        except httpx.HTTPError as exc:
            logger.error("Legacy group roles failed for %s: %s", group_id, exc)
            return []
        return [
            GroupRole(id=str(r["id"]), rank=int(r.get("rank", 0)), name=r.get("name", ""))
            for r in (data or {}).get("roles", [])
        ]

    async def get_membership_rank(self, user_id: str, group_id: str) -> Optional[GroupMembership]:
        """
        Look up whether a user is in a group and at which rank.

        Returns a GroupMembership (in_group False when not a member), or None
        when neither API could answer. A member whose role cannot be resolved
        to a rank is never reported at rank 0.
        """
        try:
            return await self._get_membership_open_cloud(str(user_id), str(group_id))
        except httpx.HTTPError as exc:
            logger.warning(
                "Open Cloud membership lookup failed for user %s group %s (%s), using legacy API",
                user_id, group_id, exc,
            )
            return await self._get_membership_legacy(str(user_id), str(group_id))

    async def _get_membership_open_cloud(self, user_id: str, group_id: str) -> Optional[GroupMembership]:
        data = await self._request(
            "GET",
            f"{OPEN_CLOUD_BASE_URL}/cloud/v2/groups/{group_id}/memberships",
            params={"filter": f"user == 'users/{user_id}'", "maxPageSize": 1},
            open_cloud=True,
        )
        memberships = (data or {}).get("groupMemberships") or []
        if not memberships:
            return NOT_A_MEMBER

        role_id = _last_segment(memberships[0].get("role"))
        roles = await self.get_group_roles(group_id)
        matched = next((r for r in roles if r.id == role_id), None)
        if matched is None:
            # The legacy payload carries the rank itself
            logger.warning(
                "Role %s of user %s not found in group %s roles, using legacy API",
                role_id, user_id, group_id,
            )
            return await self._get_membership_legacy(user_id, group_id)
        return GroupMembership(
            in_group=True,
            rank=matched.rank,
            role_id=role_id,
            role_name=matched.name,
        )

    async def _get_membership_legacy(self, user_id: str, group_id: str) -> Optional[GroupMembership]:
        try:
            data = await self._request(
                "GET", f"{GROUPS_API_URL}/v1/users/{user_id}/groups/roles"
            )
        except httpx.HTTPError as exc:
            logger.error("Legacy membership lookup failed for user %s: %s", user_id, exc)
            return None
        if data is None:
            return None

        for entry in data.get("data", []):
            if str(entry.get("group", {}).get("id")) == group_id:
                role = entry.get("role", {})
                return GroupMembership(
                    in_group=True,
                    rank=int(role.get("rank", 0)),
                    role_id=str(role.get("id")),
                    role_name=role.get("name"),
                )
        return NOT_A_MEMBER

    async def set_rank(self, group_id: str, user_id: str, role_id: str) -> bool:
        """
        Move a member to a different role in a group.

        Endpoint: PATCH /cloud/v2/groups/{groupId}/memberships/{userId}
        Returns False when the user has no membership to change (404).
        Raises httpx.HTTPStatusError when Roblox rejects the change.
        """
        data = await self._request(
            "PATCH",
            f"{OPEN_CLOUD_BASE_URL}/cloud/v2/groups/{group_id}/memberships/{user_id}",
            json={"role": f"groups/{group_id}/roles/{role_id}"},
            open_cloud=True,
        )
        if data is None:
            return False
        logger.info("Set rank for user %s to role %s in group %s", user_id, role_id, group_id)
        return True
