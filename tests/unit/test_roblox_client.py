"""
Unit tests for the RobloxClient.

All HTTP calls are mocked; no real network access.
Tests cover: username resolution, profile parsing, group role paging and
caching, the Open Cloud -> legacy fallback for membership, set_rank, and
retries through the real transport.
"""

import httpx
import pytest
import pytest_asyncio
from httpx_retries import Retry
from unittest.mock import AsyncMock, MagicMock, patch

from rb_common.roblox.client import (
    GroupMembership,
    GroupRole,
    NOT_A_MEMBER,
    RobloxClient,
)


@pytest_asyncio.fixture
async def client():
    """RobloxClient with a mocked HTTP client."""
    c = RobloxClient(api_key="test_key")
    c._http_client = MagicMock()
    yield c


def _make_response(status_code: int = 200, json_data: dict = None):
    """Build a mock httpx response."""
    mock = MagicMock()
    mock.status_code = status_code
    mock.json.return_value = json_data or {}
    if status_code >= 400 and status_code != 404:
        request = httpx.Request("GET", "https://apis.roblox.com/")
        mock.raise_for_status.side_effect = httpx.HTTPStatusError(
            "error", request=request, response=MagicMock(status_code=status_code)
        )
    else:
        mock.raise_for_status = MagicMock()
    return mock


def _route(responses: dict):
    """request() side effect that answers by URL substring."""
    async def _request(method, url, **kwargs):
        for fragment, response in responses.items():
            if fragment in url:
                if isinstance(response, Exception):
                    raise response
                return response
        raise AssertionError(f"unexpected request {method} {url}")
    return _request


ROLES_OPEN_CLOUD = {
    "groupRoles": [
        {"path": "groups/7/roles/300", "rank": 255, "displayName": "Owner"},
        {"path": "groups/7/roles/100", "rank": 0, "displayName": "Guest"},
        {"path": "groups/7/roles/200", "rank": 10, "displayName": "Member"},
    ]
}


class TestUsers:
    async def test_resolve_username(self, client):
        client._http_client.request = AsyncMock(return_value=_make_response(200, {
            "data": [{"id": 156, "name": "builderman", "displayName": "Builder"}],
        }))

        user = await client.resolve_username("builderman")

        assert user.id == "156"
        assert user.name == "builderman"
        assert user.display_name == "Builder"
        _, kwargs = client._http_client.request.call_args
        assert kwargs["json"] == {"usernames": ["builderman"], "excludeBannedUsers": True}

    async def test_unknown_username_returns_none(self, client):
        client._http_client.request = AsyncMock(return_value=_make_response(200, {"data": []}))
        assert await client.resolve_username("nobody_here") is None

    async def test_profile_includes_description(self, client):
        client._http_client.request = AsyncMock(return_value=_make_response(200, {
            "id": 156, "name": "builderman", "displayName": "", "description": "code ABCD2345",
        }))

        profile = await client.get_profile("156")

        assert profile.description == "code ABCD2345"
        # empty display name falls back to the username
        assert profile.display_name == "builderman"

    async def test_profile_404_returns_none(self, client):
        client._http_client.request = AsyncMock(return_value=_make_response(404))
        assert await client.get_profile("999") is None

    async def test_open_cloud_header_only_on_cloud_calls(self, client):
        client._http_client.request = AsyncMock(return_value=_make_response(200, {"data": []}))
        await client.resolve_username("x")
        _, kwargs = client._http_client.request.call_args
        assert "x-api-key" not in kwargs["headers"]


class TestGroupRoles:
    async def test_roles_sorted_by_rank(self, client):
        client._http_client.request = AsyncMock(return_value=_make_response(200, ROLES_OPEN_CLOUD))

        roles = await client.get_group_roles("7")

        assert [r.rank for r in roles] == [0, 10, 255]
        assert roles[1] == GroupRole(id="200", rank=10, name="Member")

    async def test_roles_follow_page_token(self, client):
        pages = [
            _make_response(200, {"groupRoles": ROLES_OPEN_CLOUD["groupRoles"][:1], "nextPageToken": "p2"}),
            _make_response(200, {"groupRoles": ROLES_OPEN_CLOUD["groupRoles"][1:]}),
        ]
        client._http_client.request = AsyncMock(side_effect=pages)

        roles = await client.get_group_roles("7")

        assert len(roles) == 3
        second_call = client._http_client.request.call_args_list[1]
        assert second_call.kwargs["params"]["pageToken"] == "p2"

    async def test_roles_are_cached(self, client):
        client._http_client.request = AsyncMock(return_value=_make_response(200, ROLES_OPEN_CLOUD))

        await client.get_group_roles("7")
        await client.get_group_roles("7")

        assert client._http_client.request.call_count == 1

    async def test_roles_fall_back_to_legacy(self, client):
        client._http_client.request = AsyncMock(side_effect=_route({
            "/cloud/v2/groups/7/roles": _make_response(500),
            "groups.roblox.com/v1/groups/7/roles": _make_response(200, {
                "roles": [{"id": 11, "rank": 1, "name": "Member"}, {"id": 10, "rank": 0, "name": "Guest"}],
            }),
        }))

        roles = await client.get_group_roles("7")

        assert [(r.id, r.rank) for r in roles] == [("10", 0), ("11", 1)]


class TestMembership:
    async def test_member_rank_resolved_through_role(self, client):
        client._http_client.request = AsyncMock(side_effect=_route({
            "/memberships": _make_response(200, {
                "groupMemberships": [{"path": "groups/7/memberships/x", "role": "groups/7/roles/200"}],
            }),
            "/roles": _make_response(200, ROLES_OPEN_CLOUD),
        }))

        membership = await client.get_membership_rank("156", "7")

        assert membership == GroupMembership(in_group=True, rank=10, role_id="200", role_name="Member")

    async def test_no_membership_means_not_in_group(self, client):
        client._http_client.request = AsyncMock(
            return_value=_make_response(200, {"groupMemberships": []})
        )
        assert await client.get_membership_rank("156", "7") == NOT_A_MEMBER

    async def test_falls_back_to_legacy_api(self, client):
        client._http_client.request = AsyncMock(side_effect=_route({
            "apis.roblox.com/cloud/v2/groups/7/memberships": _make_response(503),
            "groups.roblox.com/v1/users/156/groups/roles": _make_response(200, {
                "data": [
                    {"group": {"id": 8}, "role": {"id": 1, "rank": 50, "name": "Other"}},
                    {"group": {"id": 7}, "role": {"id": 2, "rank": 20, "name": "Sergeant"}},
                ],
            }),
        }))

        membership = await client.get_membership_rank("156", "7")

        assert membership.in_group is True
        assert membership.rank == 20
        assert membership.role_name == "Sergeant"

    async def test_legacy_not_in_group(self, client):
        client._http_client.request = AsyncMock(side_effect=_route({
            "apis.roblox.com": httpx.ConnectError("down"),
            "groups.roblox.com": _make_response(200, {"data": []}),
        }))
        assert await client.get_membership_rank("156", "7") == NOT_A_MEMBER

    async def test_both_apis_failing_returns_none(self, client):
        client._http_client.request = AsyncMock(side_effect=_route({
            "apis.roblox.com": _make_response(500),
            "groups.roblox.com": _make_response(500),
        }))
        assert await client.get_membership_rank("156", "7") is None


class TestSetRank:
    async def test_set_rank_patches_membership(self, client):
        client._http_client.request = AsyncMock(return_value=_make_response(200, {"path": "ok"}))

        assert await client.set_rank("7", "156", "300") is True

        args, kwargs = client._http_client.request.call_args
        assert args[0] == "PATCH"
        assert args[1].endswith("/cloud/v2/groups/7/memberships/156")
        assert kwargs["json"] == {"role": "groups/7/roles/300"}
        assert kwargs["headers"] == {"x-api-key": "test_key"}

    async def test_set_rank_404_returns_false(self, client):
        client._http_client.request = AsyncMock(return_value=_make_response(404))
        assert await client.set_rank("7", "156", "300") is False

    async def test_set_rank_rejection_raises(self, client):
        client._http_client.request = AsyncMock(return_value=_make_response(403))
        with pytest.raises(httpx.HTTPStatusError):
            await client.set_rank("7", "156", "300")


class TestUnresolvedRole:
    """A membership whose role cannot be mapped to a rank is never read as rank 0."""

    async def test_roles_unavailable_uses_legacy_rank(self, client):
        client._http_client.request = AsyncMock(side_effect=_route({
            "/memberships": _make_response(200, {
                "groupMemberships": [{"path": "groups/7/memberships/x", "role": "groups/7/roles/200"}],
            }),
            "/cloud/v2/groups/7/roles": _make_response(503),
            "/v1/groups/7/roles": _make_response(503),
            "/v1/users/156/groups/roles": _make_response(200, {
                "data": [{"group": {"id": 7}, "role": {"id": 200, "rank": 5, "name": "Corporal"}}],
            }),
        }))

        membership = await client.get_membership_rank("156", "7")

        assert membership == GroupMembership(in_group=True, rank=5, role_id="200", role_name="Corporal")

    async def test_everything_down_returns_none(self, client):
        client._http_client.request = AsyncMock(side_effect=_route({
            "/memberships": _make_response(200, {
                "groupMemberships": [{"path": "groups/7/memberships/x", "role": "groups/7/roles/200"}],
            }),
            "/cloud/v2/groups/7/roles": _make_response(503),
            "/v1/groups/7/roles": _make_response(503),
            "/v1/users/156/groups/roles": _make_response(503),
        }))

        assert await client.get_membership_rank("156", "7") is None


class TestRetryTransport:
    """Requests go through the real RetryTransport over a mock transport."""

    @pytest.fixture(autouse=True)
    def no_backoff_sleep(self):
        with patch.object(Retry, "asleep", new_callable=AsyncMock) as sleep:
            yield sleep

    async def test_429_is_retried(self, no_backoff_sleep):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            if len(calls) == 1:
                return httpx.Response(429, headers={"Retry-After": "0"})
            return httpx.Response(200, json={"id": 156, "name": "builderman", "displayName": "Builder"})

        async with RobloxClient(api_key="test_key", transport=httpx.MockTransport(handler)) as c:
            profile = await c.get_profile("156")

        assert profile.name == "builderman"
        assert calls == ["/v1/users/156", "/v1/users/156"]
        no_backoff_sleep.assert_awaited_once()

    async def test_gives_up_after_retry_budget(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            return httpx.Response(503, headers={"Retry-After": "0"})

        async with RobloxClient(api_key="test_key", transport=httpx.MockTransport(handler)) as c:
            with pytest.raises(httpx.HTTPStatusError):
                await c.get_profile("156")

        # first attempt plus three retries
        assert len(calls) == 4
