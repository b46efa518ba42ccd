"""Git credential environment tests."""

import base64
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from agent_manager.schemas.credentials import AuthKind, GitCredential, GitHubUserInfo, GitIdentity
from agent_manager.services.git_env import (
    build_auth_directives,
    build_git_env,
    build_identity_env,
    fetch_github_user_info,
    get_credential_for_host,
    get_default_username,
    get_ssh_credentials_for_host,
    normalize_credential_host,
    resolve_git_identity,
)

GIT_ENV = "agent_manager.services.git_env"


def _pat(name="gh", host="github.com", token="ghp_token", username=None):
    return GitCredential(name=name, host=host, auth_kind=AuthKind.PAT, token=token, username=username)


def _ssh(name, host):
    return GitCredential(name=name, host=host, auth_kind=AuthKind.SSH, ssh_private_key_encrypted="x")


# ── Directives ───────────────────────────────────────────────────────


def test_github_pat_uses_x_access_token():
    [directive] = build_auth_directives([_pat(token="abc")])
    expected = base64.b64encode(b"x-access-token:abc").decode()
    assert directive.scope == "https://github.com/"
    assert directive.directive == f"AUTHORIZATION: basic {expected}"


def test_explicit_username_wins():
    [directive] = build_auth_directives([_pat(host="https://git.example.com", token="t", username="bob")])
    assert directive.directive.endswith(base64.b64encode(b"bob:t").decode())
    assert directive.scope == "https://git.example.com/"


def test_malformed_credentials_skipped():
    creds = [
        _pat(name="no-token", token=None),
        _pat(name="no-host", host="", token="t"),
        _ssh("ssh", "github.com"),
    ]
    assert build_auth_directives(creds) == []


def test_default_usernames():
    assert get_default_username("github.com") == "x-access-token"
    assert get_default_username("https://gitlab.com") == "oauth2"
    assert get_default_username("git.internal") == "oauth2"


def test_normalize_credential_host():
    assert normalize_credential_host("gitlab.com") == "https://gitlab.com/"
    assert normalize_credential_host("https://gitlab.com/") == "https://gitlab.com/"


def test_build_git_env():
    env = build_git_env([_pat(), _pat(name="gl", host="gitlab.com", token="glpat")])
    assert env["GIT_TERMINAL_PROMPT"] == "0"
    assert env["GIT_CONFIG_COUNT"] == "2"
    assert env["GIT_CONFIG_KEY_0"] == "http.https://github.com/.extraheader"
    assert env["GIT_CONFIG_KEY_1"] == "http.https://gitlab.com/.extraheader"
    assert env["GIT_CONFIG_VALUE_1"].startswith("AUTHORIZATION: basic ")


def test_build_git_env_without_credentials():
    assert build_git_env([]) == {"GIT_TERMINAL_PROMPT": "0", "GIT_CONFIG_COUNT": "0"}


# ── Lookups ──────────────────────────────────────────────────────────


def test_get_credential_for_host():
    gl = _pat(name="gl", host="https://GitLab.com/")
    assert get_credential_for_host([_pat(), gl], "gitlab.com") is gl
    assert get_credential_for_host([_pat()], "bitbucket.org") is None


def test_ssh_credentials_exact_then_normalized():
    exact = _ssh("a", "example.com")
    url_form = _ssh("b", "ssh://git@example.com:22")
    other_port = _ssh("c", "example.com:2222")
    creds = [exact, url_form, other_port, _pat()]

    assert get_ssh_credentials_for_host(creds, "example.com") == [exact, url_form]
    assert get_ssh_credentials_for_host(creds, "example.com:2222") == [other_port]
    assert get_ssh_credentials_for_host(creds, "unknown.org") == []


# ── Identity ─────────────────────────────────────────────────────────


def _mock_github(handler):
    real_client = httpx.AsyncClient

    def factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    return patch(f"{GIT_ENV}.httpx.AsyncClient", side_effect=factory)


@pytest.mark.asyncio
async def test_fetch_github_user_info_primary_email():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer tok"
        if request.url.path == "/user":
            return httpx.Response(200, json={"id": 42, "login": "octo", "name": "Octo Cat"})
        return httpx.Response(200, json=[
            {"email": "other@example.com", "primary": False, "verified": True},
            {"email": "octo@example.com", "primary": True, "verified": True},
        ])

    with _mock_github(handler):
        info = await fetch_github_user_info("tok", api_url="https://api.github.com")
    assert info is not None
    assert info.login == "octo"
    assert info.name == "Octo Cat"
    assert info.email == "octo@example.com"


@pytest.mark.asyncio
async def test_fetch_github_user_info_noreply_fallback():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/user":
            return httpx.Response(200, json={"id": 42, "login": "octo"})
        return httpx.Response(403)

    with _mock_github(handler):
        info = await fetch_github_user_info("tok", api_url="https://api.github.com")
    assert info.email == "42+octo@users.noreply.github.com"


@pytest.mark.asyncio
async def test_fetch_github_user_info_failure_returns_none():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("boom", request=request)

    with _mock_github(handler):
        assert await fetch_github_user_info("tok") is None


@pytest.mark.asyncio
async def test_non_json_user_reply_resolves_to_no_identity():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>Sign in to the network</html>", headers={"Content-Type": "text/html"})

    with _mock_github(handler):
        assert await fetch_github_user_info("tok", api_url="https://api.github.com") is None
        assert await resolve_git_identity(None, [_pat()]) is None


@pytest.mark.asyncio
async def test_malformed_email_list_keeps_noreply():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/user":
            return httpx.Response(200, json={"id": 7, "login": "octo"})
        return httpx.Response(200, json={"message": "not a list"})

    with _mock_github(handler):
        info = await fetch_github_user_info("tok", api_url="https://api.github.com")
    assert info.email == "7+octo@users.noreply.github.com"


@pytest.mark.asyncio
async def test_identity_lookup_uses_pat_behind_ssh_credential():
    user = GitHubUserInfo(login="octo", name="Octo", email="octo@example.com")
    creds = [_ssh("gh-ssh", "github.com"), _pat(token="ghp_later")]
    with patch(f"{GIT_ENV}.fetch_github_user_info", new_callable=AsyncMock, return_value=user) as fetch:
        resolved = await resolve_git_identity(None, creds)
    fetch.assert_awaited_once_with("ghp_later")
    assert resolved == GitIdentity(name="Octo", email="octo@example.com")

@pytest.mark.asyncio
async def test_manual_identity_skips_lookup():
    manual = GitIdentity(name="Dev", email="dev@example.com")
    with patch(f"{GIT_ENV}.fetch_github_user_info", new_callable=AsyncMock) as fetch:
        resolved = await resolve_git_identity(manual, [_pat()])
    fetch.assert_not_called()
    assert resolved == manual


@pytest.mark.asyncio
async def test_identity_completed_from_github():
    user = GitHubUserInfo(login="octo", name=None, email="octo@example.com")
    with patch(f"{GIT_ENV}.fetch_github_user_info", new_callable=AsyncMock, return_value=user):
        resolved = await resolve_git_identity(GitIdentity(name="Manual Name"), [_pat()])
    assert resolved == GitIdentity(name="Manual Name", email="octo@example.com")


@pytest.mark.asyncio
async def test_no_identity_available():
    assert await resolve_git_identity(None, []) is None
    assert build_identity_env(None) == {}


def test_build_identity_env():
    env = build_identity_env(GitIdentity(name="Dev", email="dev@example.com"))
    assert env == {
        "GIT_AUTHOR_NAME": "Dev",
        "GIT_AUTHOR_EMAIL": "dev@example.com",
        "GIT_COMMITTER_NAME": "Dev",
        "GIT_COMMITTER_EMAIL": "dev@example.com",
    }
