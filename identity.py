"""Resolve "who is making this request" from its headers.

Credential schemes are tried in a fixed order; the first one that yields an
identity wins. Session cookies come first because they cost no data access,
upload tokens second because each attempt costs one catalog lookup.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Awaitable, Callable, Iterable, Mapping, Optional, Sequence

from auth import SESSION_COOKIE_NAME, SessionCodec, get_cookie_value
from errors import AuthenticationError, AuthorizationError
from tokens import UploadTokenRegistry

logger = logging.getLogger(__name__)

SESSION = "session"
UPLOAD_TOKEN = "upload_token"


@dataclass(frozen=True)
class Identity:
    user_id: str
    method: str
    is_admin: bool = False
    token_id: Optional[str] = None


ResolverFn = Callable[[Mapping[str, str]], Awaitable[Optional[Identity]]]


@dataclass(frozen=True)
class CredentialResolver:
    method: str
    resolve: ResolverFn


def session_resolver(codec: SessionCodec) -> CredentialResolver:
    async def resolve(headers: Mapping[str, str]) -> Optional[Identity]:
        payload = codec.decode(get_cookie_value(headers, SESSION_COOKIE_NAME))
        if payload is None:
            return None
        return Identity(user_id=payload.user_id, method=SESSION, is_admin=payload.is_admin)

    return CredentialResolver(SESSION, resolve)


def upload_token_resolver(registry: UploadTokenRegistry) -> CredentialResolver:
    async def resolve(headers: Mapping[str, str]) -> Optional[Identity]:
        resolved = await registry.resolve(headers)
        if resolved is None:
            return None
        # Tokens never carry admin rights.
        return Identity(
            user_id=resolved.user_id,
            method=UPLOAD_TOKEN,
            is_admin=False,
            token_id=resolved.token_id,
        )

    return CredentialResolver(UPLOAD_TOKEN, resolve)


class RequestAuthenticator:
    def __init__(self, resolvers: Sequence[CredentialResolver]) -> None:
        self.resolvers = list(resolvers)

    @classmethod
    def default(cls, codec: SessionCodec, registry: UploadTokenRegistry) -> "RequestAuthenticator":
        return cls([session_resolver(codec), upload_token_resolver(registry)])

    async def authenticate(
        self, headers: Mapping[str, str], *, methods: Optional[Iterable[str]] = None
    ) -> Optional[Identity]:
        allowed = set(methods) if methods is not None else None
        for resolver in self.resolvers:
            if allowed is not None and resolver.method not in allowed:
                continue
            identity = await resolver.resolve(headers)
            if identity is not None:
                return identity
        return None

    async def require(
        self, headers: Mapping[str, str], *, methods: Optional[Iterable[str]] = None
    ) -> Identity:
        identity = await self.authenticate(headers, methods=methods)
        if identity is None:
            raise AuthenticationError("no valid credential")
        return identity

    async def require_session(self, headers: Mapping[str, str]) -> Identity:
        return await self.require(headers, methods=(SESSION,))

    async def require_admin(self, headers: Mapping[str, str]) -> Identity:
        """Admin operations accept sessions only."""
        identity = await self.require_session(headers)
        if not identity.is_admin:
            logger.warning("admin access denied user_id=%s", identity.user_id)
            raise AuthorizationError("administrator privileges required")
        return identity
