"""Git credential environment — host-scoped auth headers and commit identity.

Turns the credentials and identity handed out by the settings service into
environment variables for git. Nothing here touches durable storage; decoded
tokens only live in the returned mappings.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from urllib.parse import urlsplit

import httpx

from agent_manager.config import settings
from agent_manager.schemas.credentials import (
    AuthDirective,
    AuthKind,
    GitCredential,
    GitHubUserInfo,
    GitIdentity,
)

logger = logging.getLogger(__name__)

DEFAULT_SSH_PORT = "22"

_GITHUB_API_HEADERS = {
    "Accept": "application/vnd.github+json",
    "X-GitHub-Api-Version": "2022-11-28",
}


# ── Host helpers ─────────────────────────────────────────────────────


def _with_scheme(host: str, scheme: str = "https") -> str:
    return host if "://" in host else f"{scheme}://{host}"


def credential_hostname(host: str) -> str | None:
    """Lower-cased hostname of a credential host ('https://GitHub.com/' → 'github.com')."""
    try:
        return urlsplit(_with_scheme(host.strip())).hostname
    except ValueError:
        return None


def normalize_credential_host(host: str) -> str:
    """Turn a credential host into the URL prefix git scopes headers by."""
    url = _with_scheme(host.strip())
    return url if url.endswith("/") else f"{url}/"


def get_default_username(host: str) -> str:
    """Username paired with a bare token for HTTPS basic auth."""
    hostname = credential_hostname(host) or ""
    if hostname == "github.com":
        return "x-access-token"
    return "oauth2"  # GitLab and most other forges


# ── PAT auth ─────────────────────────────────────────────────────────


def build_auth_directives(credentials: list[GitCredential]) -> list[AuthDirective]:
    """One header directive per usable PAT credential; malformed entries are skipped."""
    directives: list[AuthDirective] = []
    for cred in credentials or []:
        if cred.auth_kind != AuthKind.PAT:
            continue
        if not cred.host or not cred.token:
            logger.debug("Skipping credential %r: missing host or token", cred.name)
            continue

        scope = normalize_credential_host(cred.host)
        username = cred.username or get_default_username(scope)
        basic = base64.b64encode(f"{username}:{cred.token}".encode()).decode()
        directives.append(AuthDirective(scope=scope, directive=f"AUTHORIZATION: basic {basic}"))
    return directives


def build_git_env(credentials: list[GitCredential]) -> dict[str, str]:
    """Render auth directives through git's GIT_CONFIG_KEY_n / GIT_CONFIG_VALUE_n overrides."""
    env = {"GIT_TERMINAL_PROMPT": "0"}
    directives = build_auth_directives(credentials)
    for index, directive in enumerate(directives):
        env[f"GIT_CONFIG_KEY_{index}"] = f"http.{directive.scope}.extraheader"
        env[f"GIT_CONFIG_VALUE_{index}"] = directive.directive
    env["GIT_CONFIG_COUNT"] = str(len(directives))
    return env


def find_github_credential(credentials: list[GitCredential]) -> GitCredential | None:
    """First github.com PAT; SSH credentials carry no API token."""
    for cred in credentials or []:
        if cred.auth_kind == AuthKind.PAT and cred.token and credential_hostname(cred.host) == "github.com":
            return cred
    return None


def get_credential_for_host(credentials: list[GitCredential], hostname: str) -> GitCredential | None:
    target = hostname.lower()
    for cred in credentials or []:
        if credential_hostname(cred.host) == target:
            return cred
    return None


# ── SSH credential selection ─────────────────────────────────────────


def _split_ssh_host(value: str) -> tuple[str, str] | None:
    """('host', 'port') from 'ssh://git@host:2222', 'git@host', 'host:2222' or 'host'."""
    try:
        parsed = urlsplit(_with_scheme(value.strip().lower(), "ssh"))
        hostname = parsed.hostname
        port = str(parsed.port) if parsed.port else DEFAULT_SSH_PORT
    except ValueError:
        return None
    if not hostname:
        return None
    return hostname, port


def get_ssh_credentials_for_host(credentials: list[GitCredential], host: str) -> list[GitCredential]:
    """SSH credentials bound to ``host`` (host or host:port).

    Exact match first, then a normalized hostname/port comparison so that
    'ssh://git@example.com:22' matches 'example.com'.
    """
    target = host.lower()
    target_split = _split_ssh_host(target)
    matches = []
    for cred in credentials or []:
        if cred.auth_kind != AuthKind.SSH or not cred.host:
            continue
        cred_host = cred.host.lower()
        if cred_host == target:
            matches.append(cred)
            continue
        cred_split = _split_ssh_host(cred_host)
        if cred_split is not None and cred_split == target_split:
            matches.append(cred)
    return matches


# ── Identity ─────────────────────────────────────────────────────────


def _noreply_domain(api_url: str) -> str:
    hostname = urlsplit(api_url).hostname or "github.com"
    return hostname.removeprefix("api.")


def _json_or_none(response: httpx.Response):
    try:
        return response.json()
    except ValueError:
        return None


async def fetch_github_user_info(
    token: str,
    *,
    api_url: str | None = None,
    timeout: float = 10.0,
) -> GitHubUserInfo | None:
    """Look up the token owner's name and verified primary email.

    Falls back to the deterministic no-reply address when no verified primary
    email is visible. Any failure yields ``None``.
    """
    base = (api_url or settings.github_api_url).rstrip("/")
    headers = {"Authorization": f"Bearer {token}", **_GITHUB_API_HEADERS}
    try:
        async with httpx.AsyncClient(timeout=timeout, headers=headers) as client:
            user_resp, emails_resp = await asyncio.gather(
                client.get(f"{base}/user"),
                client.get(f"{base}/user/emails"),
            )
    except httpx.HTTPError as exc:
        logger.warning("GitHub user lookup failed: %s", exc.__class__.__name__)
        return None

    if not user_resp.is_success:
        return None
    data = _json_or_none(user_resp)
    if not isinstance(data, dict):
        logger.warning("GitHub user lookup returned a non-JSON body")
        return None
    user_id, login = data.get("id"), data.get("login")
    if not user_id or not login:
        return None

    email = f"{user_id}+{login}@users.noreply.{_noreply_domain(base)}"
    emails = _json_or_none(emails_resp) if emails_resp.is_success else None
    for entry in emails if isinstance(emails, list) else []:
        if not isinstance(entry, dict):
            continue
        if entry.get("primary") and entry.get("verified") and entry.get("email"):
            email = entry["email"]
            break

    return GitHubUserInfo(login=login, name=data.get("name"), email=email)


async def resolve_git_identity(
    manual: GitIdentity | None,
    credentials: list[GitCredential],
) -> GitIdentity | None:
    """Manual identity, else the GitHub token owner, else whatever manual parts exist."""
    if manual and manual.name and manual.email:
        return GitIdentity(name=manual.name, email=manual.email)

    github_cred = find_github_credential(credentials)
    if github_cred and github_cred.token:
        user = await fetch_github_user_info(github_cred.token)
        if user:
            return GitIdentity(
                name=(manual.name if manual else "") or user.name or user.login,
                email=(manual.email if manual else "") or user.email,
            )

    if manual and (manual.name or manual.email):
        return GitIdentity(name=manual.name, email=manual.email)
    return None


def build_identity_env(identity: GitIdentity | None) -> dict[str, str]:
    if identity is None:
        return {}
    return {
        "GIT_AUTHOR_NAME": identity.name,
        "GIT_AUTHOR_EMAIL": identity.email,
        "GIT_COMMITTER_NAME": identity.name,
        "GIT_COMMITTER_EMAIL": identity.email,
    }
