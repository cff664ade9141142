from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from functools import lru_cache
import hmac
import json
import logging
import secrets
import time
from typing import Any, Mapping, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from itsdangerous import BadData, URLSafeTimedSerializer

from config import DEFAULT_KDF_SALT, MIN_KDF_ITERATIONS

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "session"
SESSION_MAX_AGE = 30 * 24 * 60 * 60  # 30 days, in seconds
OAUTH_STATE_COOKIE_NAME = "oauth_state"
OAUTH_STATE_MAX_AGE = 10 * 60

NONCE_BYTES = 12
KEY_BYTES = 32

PASSWORD_HASH_PREFIX = "pbkdf2_sha256"
PASSWORD_ITERATIONS = 100_000
PASSWORD_SALT_BYTES = 16
PASSWORD_KEY_BYTES = 32
MAX_PASSWORD_ITERATIONS = 10_000_000


@dataclass(frozen=True)
class SessionPayload:
    user_id: str
    expires_at: int  # epoch milliseconds
    is_admin: bool = False

    def to_json(self) -> bytes:
        return json.dumps(
            {"userId": self.user_id, "expiresAt": self.expires_at, "isAdmin": self.is_admin},
            separators=(",", ":"),
        ).encode("utf-8")

    @classmethod
    def from_json(cls, raw: bytes) -> "SessionPayload":
        data = json.loads(raw.decode("utf-8"))
        if not isinstance(data, dict):
            raise ValueError("session payload is not an object")
        user_id = data.get("userId")
        expires_at = data.get("expiresAt")
        is_admin = data.get("isAdmin", False)
        if not isinstance(user_id, str) or not user_id:
            raise ValueError("session payload has no user id")
        if isinstance(expires_at, bool) or not isinstance(expires_at, int):
            raise ValueError("session payload has no expiry")
        return cls(user_id=user_id, expires_at=expires_at, is_admin=bool(is_admin))


def now_ms() -> int:
    return int(time.time() * 1000)


@lru_cache(maxsize=8)
def derive_session_key(
    secret: str,
    salt: str = DEFAULT_KDF_SALT,
    iterations: int = MIN_KDF_ITERATIONS,
) -> bytes:
    """Stretch the session secret into a 256-bit AES key.

    Deterministic for a given (secret, salt, iterations) so any process holding
    the same secret can read cookies written by another. Cached because the
    derivation is deliberately slow.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=salt.encode("utf-8"),
        iterations=iterations,
    )
    return kdf.derive(secret.encode("utf-8"))


class SessionCodec:
    """Encrypts session payloads into opaque cookie values and back."""

    def __init__(
        self,
        secret: str,
        *,
        salt: str = DEFAULT_KDF_SALT,
        iterations: int = MIN_KDF_ITERATIONS,
    ) -> None:
        self._aead = AESGCM(derive_session_key(secret, salt, iterations))

    def encode(self, payload: SessionPayload) -> str:
        nonce = secrets.token_bytes(NONCE_BYTES)
        ciphertext = self._aead.encrypt(nonce, payload.to_json(), None)
        return base64.urlsafe_b64encode(nonce + ciphertext).decode("ascii")

    def decode(self, token: Optional[str]) -> Optional[SessionPayload]:
        """Return the payload, or None for any bad, foreign or expired token."""
        if not token:
            return None
        try:
            raw = base64.b64decode(token, altchars=b"-_", validate=True)
            # Non-canonical encodings would let unused trailing bits vary.
            if base64.urlsafe_b64encode(raw).decode("ascii") != token:
                raise ValueError("non-canonical encoding")
            if len(raw) <= NONCE_BYTES:
                raise ValueError("token too short")
            plaintext = self._aead.decrypt(raw[:NONCE_BYTES], raw[NONCE_BYTES:], None)
            payload = SessionPayload.from_json(plaintext)
        except (binascii.Error, InvalidTag, ValueError, UnicodeError) as exc:
            logger.debug("session rejected reason=%s", type(exc).__name__)
            return None
        if payload.expires_at < now_ms():
            logger.debug("session rejected reason=expired user_id=%s", payload.user_id)
            return None
        return payload


def encode_session(payload: SessionPayload, secret: str, **kdf: Any) -> str:
    return SessionCodec(secret, **kdf).encode(payload)


def decode_session(token: Optional[str], secret: str, **kdf: Any) -> Optional[SessionPayload]:
    return SessionCodec(secret, **kdf).decode(token)


def new_session_payload(
    user_id: str, *, is_admin: bool = False, max_age: int = SESSION_MAX_AGE
) -> SessionPayload:
    return SessionPayload(
        user_id=user_id,
        expires_at=now_ms() + max_age * 1000,
        is_admin=is_admin,
    )


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _derive_password(password: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=PASSWORD_KEY_BYTES,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))


def hash_password(plain: str) -> str:
    """Hash a password as ``pbkdf2_sha256$iterations$salt$hash``."""
    salt = secrets.token_bytes(PASSWORD_SALT_BYTES)
    derived = _derive_password(plain, salt, PASSWORD_ITERATIONS)
    return "$".join([PASSWORD_HASH_PREFIX, str(PASSWORD_ITERATIONS), _b64(salt), _b64(derived)])


def verify_password(plain: str, hashed: Optional[str]) -> bool:
    """Compare a plaintext password against the stored hash in constant time."""
    if not hashed:
        return False
    parts = hashed.split("$")
    if len(parts) != 4:
        return False
    prefix, iterations_raw, salt_b64, expected_b64 = parts
    if prefix != PASSWORD_HASH_PREFIX:
        return False
    try:
        iterations = int(iterations_raw)
        salt = base64.b64decode(salt_b64, validate=True)
        expected = base64.b64decode(expected_b64, validate=True)
    except (ValueError, binascii.Error):
        return False
    if iterations <= 0 or iterations > MAX_PASSWORD_ITERATIONS or not expected:
        return False
    derived = _derive_password(plain, salt, iterations)
    return hmac.compare_digest(derived, expected)


def get_cookie_value(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Extract a single cookie value from the request headers."""
    cookie_header = headers.get("cookie") or headers.get("Cookie")
    if not cookie_header:
        return None
    for chunk in cookie_header.split(";"):
        key, sep, value = chunk.strip().partition("=")
        if not sep:
            continue
        if key.strip() == name:
            return value.strip()
    return None


def _cookie_header(name: str, value: str, *, max_age: int, secure: bool) -> str:
    parts = [f"{name}={value}", f"Max-Age={max_age}", "Path=/", "HttpOnly", "SameSite=Lax"]
    if secure:
        parts.append("Secure")
    return "; ".join(parts)


def session_cookie_header(token: str, *, secure: bool = True) -> str:
    """Set-Cookie value that stores the session for thirty days."""
    return _cookie_header(SESSION_COOKIE_NAME, token, max_age=SESSION_MAX_AGE, secure=secure)


def clear_session_cookie_header(*, secure: bool = True) -> str:
    """Set-Cookie value that makes the browser forget the session immediately."""
    return _cookie_header(SESSION_COOKIE_NAME, "", max_age=0, secure=secure)


class OAuthStateSigner:
    """Signs the short-lived anti-CSRF state used by the OAuth redirect."""

    def __init__(self, secret: str) -> None:
        self.serializer = URLSafeTimedSerializer(secret, salt="picshelf.oauth-state")

    def issue(self) -> tuple[str, str]:
        """Return (state for the provider, signed value for the cookie)."""
        state = secrets.token_urlsafe(16)
        return state, self.serializer.dumps({"state": state})

    def verify(self, cookie_value: Optional[str], state: Optional[str]) -> bool:
        if not cookie_value or not state:
            return False
        try:
            payload = self.serializer.loads(cookie_value, max_age=OAUTH_STATE_MAX_AGE)
        except BadData:
            return False
        expected = payload.get("state") if isinstance(payload, dict) else None
        if not isinstance(expected, str):
            return False
        return hmac.compare_digest(expected, state)

    def cookie_header(self, signed: str, *, secure: bool = True) -> str:
        return _cookie_header(
            OAUTH_STATE_COOKIE_NAME, signed, max_age=OAUTH_STATE_MAX_AGE, secure=secure
        )
