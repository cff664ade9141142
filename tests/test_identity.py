import pytest

from auth import SessionCodec, new_session_payload
from database import Database
from errors import AuthenticationError, AuthorizationError
from identity import SESSION, UPLOAD_TOKEN, CredentialResolver, Identity, RequestAuthenticator
from tokens import UploadTokenRegistry
from tests.conftest import TEST_SECRET


@pytest.fixture(scope="module")
def codec() -> SessionCodec:
    return SessionCodec(TEST_SECRET)


@pytest.mark.asyncio
async def test_session_cookie_wins_over_token(db: Database, owner, other_user, codec) -> None:
    registry = UploadTokenRegistry(db)
    raw, _ = await registry.issue(other_user.id, "theirs")
    authenticator = RequestAuthenticator.default(codec, registry)
    cookie = codec.encode(new_session_payload(owner.id, is_admin=True))

    identity = await authenticator.require(
        {"cookie": f"session={cookie}", "authorization": f"Bearer {raw}"}
    )
    assert identity.user_id == owner.id
    assert identity.method == SESSION
    assert identity.is_admin is True


@pytest.mark.asyncio
async def test_token_used_when_no_session(db: Database, owner, codec) -> None:
    registry = UploadTokenRegistry(db)
    raw, record = await registry.issue(owner.id, "cli")
    authenticator = RequestAuthenticator.default(codec, registry)

    identity = await authenticator.require({"x-upload-token": raw, "cookie": "session=garbage"})
    assert identity.method == UPLOAD_TOKEN
    assert identity.token_id == record.id
    assert identity.is_admin is False
    await registry.drain()


@pytest.mark.asyncio
async def test_missing_credentials_raise_uniform_error(db: Database, codec) -> None:
    authenticator = RequestAuthenticator.default(codec, UploadTokenRegistry(db))
    with pytest.raises(AuthenticationError) as excinfo:
        await authenticator.require({"authorization": "Bearer nope"})
    assert excinfo.value.to_payload() == {"error": "unauthorized"}
    assert await authenticator.authenticate({}) is None


@pytest.mark.asyncio
async def test_admin_requires_admin_session(db: Database, owner, codec) -> None:
    registry = UploadTokenRegistry(db)
    raw, _ = await registry.issue(owner.id, "cli")
    authenticator = RequestAuthenticator.default(codec, registry)

    with pytest.raises(AuthenticationError):
        await authenticator.require_admin({"authorization": f"Bearer {raw}"})

    plain = codec.encode(new_session_payload(owner.id, is_admin=False))
    with pytest.raises(AuthorizationError):
        await authenticator.require_admin({"cookie": f"session={plain}"})

    admin = codec.encode(new_session_payload(owner.id, is_admin=True))
    identity = await authenticator.require_admin({"cookie": f"session={admin}"})
    assert identity.is_admin is True


@pytest.mark.asyncio
async def test_resolvers_tried_in_order_until_first_hit() -> None:
    calls: list[str] = []

    def resolver(name: str, result):
        async def resolve(headers):
            calls.append(name)
            return result

        return CredentialResolver(name, resolve)

    hit = Identity(user_id="u", method="second")
    authenticator = RequestAuthenticator(
        [resolver("first", None), resolver("second", hit), resolver("third", None)]
    )
    assert await authenticator.authenticate({}) is hit
    assert calls == ["first", "second"]

    calls.clear()
    assert await authenticator.authenticate({}, methods=("third",)) is None
    assert calls == ["third"]
