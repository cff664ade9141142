from __future__ import annotations

import asyncio
from dataclasses import dataclass
import hashlib
import logging
import secrets
import string
from typing import Any, Mapping, Optional

from database import Database, UploadTokenRecord, now_iso

logger = logging.getLogger(__name__)

TOKEN_ALPHABET = string.ascii_letters + string.digits + "-_"
TOKEN_LENGTH = 48
UPLOAD_TOKEN_HEADER = "x-upload-token"


@dataclass(frozen=True)
class ResolvedToken:
    user_id: str
    token_id: str


def generate_raw_token(length: int = TOKEN_LENGTH) -> str:
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


def hash_token(token: str) -> str:
    """One-way SHA-256 hex digest; the only form of a token that is stored."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    return headers.get(name) or headers.get(name.title())


def extract_bearer_token(headers: Mapping[str, str]) -> Optional[str]:
    """Read the token from ``Authorization: Bearer`` or the upload-token header."""
    auth_header = (_header(headers, "authorization") or "").strip()
    if auth_header:
        scheme, _, rest = auth_header.partition(" ")
        token = rest.strip() if scheme.lower() == "bearer" else auth_header
        if token:
            return token
    fallback = (_header(headers, UPLOAD_TOKEN_HEADER) or "").strip()
    return fallback or None


def public_token_view(record: UploadTokenRecord) -> dict[str, Any]:
    """Token listing entry. Never includes the hash."""
    return {
        "id": record.id,
        "name": record.name,
        "createdAt": record.created_at,
        "lastUsedAt": record.last_used_at,
        "revoked": record.revoked,
    }


class UploadTokenRegistry:
    """Long-lived bearer tokens for programmatic upload clients."""

    def __init__(self, db: Database) -> None:
        self.db = db
        self._pending_touches: set[asyncio.Task[None]] = set()

    async def issue(self, user_id: str, name: str) -> tuple[str, UploadTokenRecord]:
        """Create a token. The raw value is returned here and never again."""
        raw = generate_raw_token()
        record = await self.db.create_upload_token(
            user_id=user_id, name=name, token_hash=hash_token(raw)
        )
        logger.info("upload token issued user_id=%s token_id=%s", user_id, record.id)
        return raw, record

    async def resolve(self, headers: Mapping[str, str]) -> Optional[ResolvedToken]:
        raw = extract_bearer_token(headers)
        if not raw:
            return None
        return await self.resolve_raw(raw)

    async def resolve_raw(self, raw: str) -> Optional[ResolvedToken]:
        """Unknown and revoked tokens both resolve to None."""
        record = await self.db.fetch_upload_token_by_hash(hash_token(raw))
        if record is None or record.revoked:
            return None
        self._schedule_touch(record.id)
        return ResolvedToken(user_id=record.user_id, token_id=record.id)

    def _schedule_touch(self, token_id: str) -> None:
        task = asyncio.get_running_loop().create_task(self._touch(token_id))
        self._pending_touches.add(task)
        task.add_done_callback(self._pending_touches.discard)

    async def _touch(self, token_id: str) -> None:
        try:
            await self.db.touch_upload_token(token_id, now_iso())
        except Exception:
            logger.warning("upload token touch failed token_id=%s", token_id, exc_info=True)

    async def drain(self) -> None:
        """Wait for outstanding last-used updates (shutdown and tests)."""
        if self._pending_touches:
            await asyncio.gather(*list(self._pending_touches))

    async def revoke(self, user_id: str, token_id: str) -> bool:
        revoked = await self.db.revoke_upload_token(user_id, token_id)
        if revoked:
            logger.info("upload token revoked user_id=%s token_id=%s", user_id, token_id)
        else:
            logger.warning(
                "upload token revoke ignored user_id=%s token_id=%s reason=not_owned_or_missing",
                user_id,
                token_id,
            )
        return revoked

    async def list(self, user_id: str) -> list[dict[str, Any]]:
        """Newest first, without hashes."""
        records = await self.db.list_upload_tokens(user_id)
        return [public_token_view(record) for record in records]
