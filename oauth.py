from __future__ import annotations

import asyncio
from dataclasses import dataclass
import json
import logging
from typing import Any, Optional
from urllib import error as urllib_error, request as urllib_request
from urllib.parse import urlencode

from errors import AuthenticationError, ConfigurationError

logger = logging.getLogger(__name__)

GITHUB_AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_API_URL = "https://api.github.com"
GITHUB_SCOPE = "read:user user:email"
USER_AGENT = "PicShelf"
HTTP_TIMEOUT = 15


@dataclass(frozen=True)
class GitHubProfile:
    email: str
    name: Optional[str]
    avatar: Optional[str]
    provider_id: str


def authorize_url(client_id: str, redirect_uri: str, state: str) -> str:
    query = urlencode(
        {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scope": GITHUB_SCOPE,
            "state": state,
        }
    )
    return f"{GITHUB_AUTHORIZE_URL}?{query}"


def _request_json(
    url: str, *, payload: Optional[dict[str, Any]] = None, token: Optional[str] = None
) -> Any:
    headers = {"accept": "application/json", "user-agent": USER_AGENT}
    data = None
    if payload is not None:
        headers["content-type"] = "application/json"
        data = json.dumps(payload).encode("utf-8")
    if token:
        headers["authorization"] = f"Bearer {token}"
    req = urllib_request.Request(
        url, data=data, headers=headers, method="POST" if data is not None else "GET"
    )
    try:
        with urllib_request.urlopen(req, timeout=HTTP_TIMEOUT) as resp:
            raw = resp.read().decode("utf-8", errors="replace")
    except urllib_error.HTTPError as exc:
        raise AuthenticationError(f"github responded {exc.code} for {url}") from exc
    except (urllib_error.URLError, TimeoutError) as exc:
        raise AuthenticationError(f"github unreachable: {exc}") from exc
    try:
        return json.loads(raw) if raw else None
    except json.JSONDecodeError as exc:
        raise AuthenticationError(f"github returned invalid json for {url}") from exc


def primary_email(user: dict[str, Any], emails: Any) -> Optional[str]:
    """The profile email if public, else the primary verified address."""
    if user.get("email"):
        return str(user["email"])
    for entry in emails if isinstance(emails, list) else []:
        if isinstance(entry, dict) and entry.get("primary") and entry.get("verified"):
            return str(entry.get("email") or "") or None
    return None


def _exchange_code(client_id: str, client_secret: str, code: str) -> GitHubProfile:
    token_data = _request_json(
        GITHUB_TOKEN_URL,
        payload={"client_id": client_id, "client_secret": client_secret, "code": code},
    )
    if not isinstance(token_data, dict) or not token_data.get("access_token"):
        reason = token_data.get("error") if isinstance(token_data, dict) else None
        raise AuthenticationError(f"github token exchange failed: {reason or 'no access token'}")
    access_token = str(token_data["access_token"])
    user = _request_json(f"{GITHUB_API_URL}/user", token=access_token)
    emails = _request_json(f"{GITHUB_API_URL}/user/emails", token=access_token)
    if not isinstance(user, dict) or user.get("id") is None:
        raise AuthenticationError("github user payload missing id")
    email = primary_email(user, emails)
    if not email:
        raise AuthenticationError("no verified email on github account")
    return GitHubProfile(
        email=email.strip().lower(),
        name=user.get("name") or user.get("login"),
        avatar=user.get("avatar_url"),
        provider_id=str(user["id"]),
    )


async def exchange_code(client_id: Optional[str], client_secret: Optional[str], code: str) -> GitHubProfile:
    """Trade an authorization code for the user's verified GitHub profile."""
    if not client_id or not client_secret:
        raise ConfigurationError("GITHUB_CLIENT_ID and GITHUB_CLIENT_SECRET are required")
    profile = await asyncio.to_thread(_exchange_code, client_id, client_secret, code)
    logger.info("github login verified provider_id=%s", profile.provider_id)
    return profile
