import base64

import pytest

from auth import (
    OAuthStateSigner,
    SessionCodec,
    SessionPayload,
    clear_session_cookie_header,
    decode_session,
    encode_session,
    get_cookie_value,
    hash_password,
    new_session_payload,
    now_ms,
    session_cookie_header,
    verify_password,
)
from tests.conftest import TEST_SECRET

OTHER_SECRET = "another-secret-that-is-long-enough-0123456789"


@pytest.fixture(scope="module")
def codec() -> SessionCodec:
    return SessionCodec(TEST_SECRET)


def test_session_round_trip(codec: SessionCodec) -> None:
    payload = new_session_payload("user-1", is_admin=True)
    token = codec.encode(payload)
    assert codec.decode(token) == payload


def test_session_tokens_are_not_deterministic(codec: SessionCodec) -> None:
    payload = new_session_payload("user-1")
    assert codec.encode(payload) != codec.encode(payload)


def test_expired_session_decodes_as_absent(codec: SessionCodec) -> None:
    expired = SessionPayload(user_id="user-1", expires_at=now_ms() - 1000)
    assert codec.decode(codec.encode(expired)) is None


def test_every_flipped_character_is_rejected(codec: SessionCodec) -> None:
    token = codec.encode(new_session_payload("user-1"))
    for index, char in enumerate(token):
        replacement = "A" if char != "A" else "B"
        tampered = token[:index] + replacement + token[index + 1 :]
        assert codec.decode(tampered) is None, f"tampered position {index} accepted"


def test_flipped_ciphertext_bit_is_rejected(codec: SessionCodec) -> None:
    raw = bytearray(base64.urlsafe_b64decode(codec.encode(new_session_payload("user-1"))))
    raw[-1] ^= 0x01
    assert codec.decode(base64.urlsafe_b64encode(bytes(raw)).decode("ascii")) is None


def test_wrong_secret_and_garbage_decode_as_absent(codec: SessionCodec) -> None:
    token = codec.encode(new_session_payload("user-1"))
    assert decode_session(token, OTHER_SECRET) is None
    for garbage in ("", "not-a-token", "!!!!", "AAAA", None):
        assert codec.decode(garbage) is None


def test_module_helpers_share_the_derived_key() -> None:
    payload = new_session_payload("user-2")
    token = encode_session(payload, TEST_SECRET)
    assert decode_session(token, TEST_SECRET) == payload


def test_password_hash_round_trip() -> None:
    hashed = hash_password("correct horse")
    prefix, iterations, _, _ = hashed.split("$")
    assert prefix == "pbkdf2_sha256"
    assert iterations == "100000"
    assert verify_password("correct horse", hashed)
    assert not verify_password("wrong horse", hashed)


def test_password_hashes_are_salted() -> None:
    assert hash_password("same") != hash_password("same")


@pytest.mark.parametrize(
    "stored",
    [
        None,
        "",
        "plain",
        "md5$1$c2FsdA==$aGFzaA==",
        "pbkdf2_sha256$abc$c2FsdA==$aGFzaA==",
        "pbkdf2_sha256$0$c2FsdA==$aGFzaA==",
        "pbkdf2_sha256$100000$***$aGFzaA==",
        "pbkdf2_sha256$100000000$c2FsdA==$aGFzaA==",
        "pbkdf2_sha256$100000$c2FsdA==",
    ],
)
def test_malformed_password_hashes_never_verify(stored) -> None:
    assert verify_password("anything", stored) is False


def test_session_cookie_attributes() -> None:
    header = session_cookie_header("abc", secure=True)
    assert header.startswith("session=abc")
    assert "HttpOnly" in header
    assert "SameSite=Lax" in header
    assert "Path=/" in header
    assert f"Max-Age={30 * 24 * 60 * 60}" in header
    assert "Secure" in header
    assert "Secure" not in session_cookie_header("abc", secure=False)


def test_clear_cookie_expires_immediately() -> None:
    header = clear_session_cookie_header(secure=False)
    assert header.startswith("session=;")
    assert "Max-Age=0" in header


def test_get_cookie_value_picks_named_cookie() -> None:
    headers = {"cookie": "theme=dark; session=tok123; other=1"}
    assert get_cookie_value(headers, "session") == "tok123"
    assert get_cookie_value(headers, "missing") is None
    assert get_cookie_value({}, "session") is None


def test_oauth_state_round_trip() -> None:
    signer = OAuthStateSigner(TEST_SECRET)
    state, signed = signer.issue()
    assert signer.verify(signed, state)
    assert not signer.verify(signed, "other-state")
    assert not signer.verify(None, state)
    assert not OAuthStateSigner(OTHER_SECRET).verify(signed, state)
    assert signer.cookie_header(signed, secure=False).startswith(f"oauth_state={signed}")
