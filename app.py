from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import functools
import json
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional
from urllib.parse import urlencode

from robyn import Request, Response, Robyn

from auth import (
    OAUTH_STATE_COOKIE_NAME,
    OAuthStateSigner,
    SessionCodec,
    clear_session_cookie_header,
    get_cookie_value,
    hash_password,
    new_session_payload,
    session_cookie_header,
    verify_password,
)
from config import get_settings
from database import Database, UserRecord
from errors import (
    AuthenticationError,
    AuthorizationError,
    ConfigurationError,
    NotFoundError,
    PicShelfError,
    ValidationError,
)
from identity import SESSION, RequestAuthenticator
from oauth import authorize_url, exchange_code
from storage import create_blob_store
from sync import ReconciliationEngine
from tokens import UPLOAD_TOKEN_HEADER, UploadTokenRegistry, public_token_view
from uploads import (
    UploadFile,
    Uploader,
    guess_content_type,
    multipart_duplicates,
    split_json_files,
)

app = Robyn(__file__)
logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
CREDENTIAL_HEADERS = ("cookie", "authorization", UPLOAD_TOKEN_HEADER)
NO_STORE_HEADERS = {"cache-control": "no-store, private", "vary": "Cookie"}

# Singletons used by every request. A missing session secret stops the
# process here, before the server accepts traffic.
settings = get_settings()
session_secret = settings.require_session_secret()
db = Database(settings.db_path)
blob_store = create_blob_store(settings)
codec = SessionCodec(
    session_secret,
    salt=settings.session_kdf_salt,
    iterations=settings.session_kdf_iterations,
)
token_registry = UploadTokenRegistry(db)
authenticator = RequestAuthenticator.default(codec, token_registry)
uploader = Uploader(blob_store, db, settings.public_base_url())
reconciler = ReconciliationEngine(blob_store, db, settings.public_base_url())
state_signer = OAuthStateSigner(session_secret)


async def _ensure_database() -> None:
    """Create tables once before handling the first request."""
    await db.initialize()


async def _drain_background_work() -> None:
    await token_registry.drain()


app.startup_handler(_ensure_database)
app.shutdown_handler(_drain_background_work)


def _credential_headers(request: Request) -> dict[str, str]:
    """Copy the headers credential resolvers look at into a plain dict."""
    headers: dict[str, str] = {}
    for name in CREDENTIAL_HEADERS:
        value = request.headers.get(name)
        if value:
            headers[name] = value
    return headers


def _raw_body_bytes(request: Request) -> bytes:
    raw_body = request.body
    if isinstance(raw_body, (bytes, bytearray)):
        return bytes(raw_body)
    if isinstance(raw_body, list):
        return bytes(raw_body)
    if isinstance(raw_body, str):
        return raw_body.encode("utf-8")
    return b""


def _json_data(request: Request) -> dict:
    body = _raw_body_bytes(request)
    if not body:
        return {}
    try:
        parsed = json.loads(body.decode("utf-8", errors="replace"))
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _json_response(
    payload: dict, *, status: int = 200, headers: Optional[Mapping[str, str]] = None
) -> Response:
    response_headers = {"content-type": "application/json; charset=utf-8"}
    if headers:
        response_headers.update(headers)
    return Response(
        status_code=status,
        headers=response_headers,
        description=json.dumps(payload),
    )


def _redirect(location: str, *, headers: Optional[Mapping[str, str]] = None) -> Response:
    response_headers = {"location": location}
    if headers:
        response_headers.update(headers)
    return Response(status_code=302, headers=response_headers, description="")


def _error_response(exc: PicShelfError) -> Response:
    return _json_response(exc.to_payload(), status=exc.status_code)


Handler = Callable[[Request], Awaitable[Response]]


def _api(handler: Handler) -> Handler:
    """Turn domain errors into JSON responses; anything else is a logged 500."""

    @functools.wraps(handler)
    async def wrapper(request: Request) -> Response:
        try:
            return await handler(request)
        except AuthenticationError as exc:
            logger.info(
                "request unauthenticated handler=%s reason=%s", handler.__name__, exc.message
            )
            return _error_response(exc)
        except PicShelfError as exc:
            if exc.status_code >= 500:
                logger.exception("request failed handler=%s", handler.__name__)
            else:
                logger.warning(
                    "request rejected handler=%s status=%s reason=%s",
                    handler.__name__,
                    exc.status_code,
                    exc.message,
                )
            return _error_response(exc)
        except Exception:
            logger.exception("request failed unexpectedly handler=%s", handler.__name__)
            return _json_response({"error": "internal server error"}, status=500)

    return wrapper


def _app_base_url(request: Request) -> str:
    if settings.app_url:
        return settings.app_url.rstrip("/")
    return f"{request.url.scheme}://{request.url.host}"


def _int_param(request: Request, name: str, default: int) -> int:
    raw = request.query_params.get(name, None)
    try:
        return int(raw) if raw is not None else default
    except ValueError:
        return default


def _user_view(user: UserRecord, *, is_admin: bool) -> dict[str, Any]:
    """Profile without secrets."""
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "avatar": user.avatar,
        "provider": user.provider,
        "createdAt": user.created_at,
        "isAdmin": is_admin,
    }


def _upload_files(request: Request) -> tuple[list[UploadFile], list[dict[str, str]]]:
    """Multipart files first, then a JSON body (single object or ``files`` list).

    Returns the decoded files plus per-file rejections for entries that could
    not become a file at all.
    """
    native = request.files or {}
    if native:
        files = [
            UploadFile(
                filename=str(name),
                content_type=guess_content_type(str(name)),
                data=bytes(content),
            )
            for name, content in native.items()
        ]
        duplicates = multipart_duplicates(_raw_body_bytes(request))
        if duplicates:
            logger.warning(
                "multipart upload collapsed duplicate filenames dropped=%s names=%s",
                len(duplicates),
                sorted({entry["filename"] for entry in duplicates}),
            )
        return files, duplicates
    payload = _json_data(request)
    entries = payload.get("files")
    if isinstance(entries, list):
        return split_json_files(entries)
    if payload:
        return split_json_files([payload])
    return [], []


# auth


@app.post("/api/password-login")
@_api
async def password_login(request: Request) -> Response:
    """Single-owner password login; issues an admin session."""
    payload = _json_data(request)
    username = str(payload.get("username") or "").strip()
    password = payload.get("password") if isinstance(payload.get("password"), str) else ""
    if not username or not password:
        raise ValidationError("username and password are required")
    if not settings.owner_email:
        raise ConfigurationError("OWNER_EMAIL is not configured")
    owner_email = settings.owner_email.strip().lower()
    if username.lower() != owner_email:
        raise AuthenticationError("password login for non-owner")

    user = await db.fetch_user_by_email(owner_email)
    if user is None:
        password_hash = await asyncio.to_thread(hash_password, password)
        user = await db.create_password_user(owner_email, username, password_hash)
        logger.info("owner account created user_id=%s", user.id)
    elif not user.password_hash:
        password_hash = await asyncio.to_thread(hash_password, password)
        await db.update_password_hash(user.id, password_hash)
        logger.info("owner password set user_id=%s", user.id)
    elif not await asyncio.to_thread(verify_password, password, user.password_hash):
        raise AuthenticationError("password mismatch")

    token = codec.encode(new_session_payload(user.id, is_admin=True))
    logger.info("login succeeded user_id=%s method=password", user.id)
    return _json_response(
        {"success": True},
        headers={"set-cookie": session_cookie_header(token, secure=settings.secure_cookies)},
    )


@app.get("/auth/login")
@_api
async def oauth_login(request: Request) -> Response:
    if not settings.github_client_id:
        raise ConfigurationError("GITHUB_CLIENT_ID is not configured")
    if not settings.owner_email:
        raise AuthorizationError("login disabled: OWNER_EMAIL is not configured")
    state, signed = state_signer.issue()
    callback_url = f"{_app_base_url(request)}/auth/github-callback"
    return _redirect(
        authorize_url(settings.github_client_id, callback_url, state),
        headers={"set-cookie": state_signer.cookie_header(signed, secure=settings.secure_cookies)},
    )


@app.get("/auth/github-callback")
@_api
async def oauth_callback(request: Request) -> Response:
    base = _app_base_url(request)
    provider_error = request.query_params.get("error", None)
    if provider_error:
        logger.warning("github login declined reason=%s", provider_error)
        return _redirect(f"{base}/auth/signin?{urlencode({'error': provider_error})}")
    code = request.query_params.get("code", None)
    if not code:
        raise ValidationError("missing authorization code")
    state_cookie = get_cookie_value(_credential_headers(request), OAUTH_STATE_COOKIE_NAME)
    if not state_signer.verify(state_cookie, request.query_params.get("state", None)):
        raise AuthenticationError("oauth state mismatch")

    profile = await exchange_code(settings.github_client_id, settings.github_client_secret, code)
    user = await db.upsert_oauth_user(
        email=profile.email,
        name=profile.name,
        avatar=profile.avatar,
        provider_id=profile.provider_id,
    )
    is_admin = bool(settings.owner_email) and user.email == settings.owner_email.strip().lower()
    token = codec.encode(new_session_payload(user.id, is_admin=is_admin))
    logger.info("login succeeded user_id=%s method=github is_admin=%s", user.id, is_admin)
    return _redirect(
        f"{base}/dashboard",
        headers={"set-cookie": session_cookie_header(token, secure=settings.secure_cookies)},
    )


@app.get("/auth/logout")
async def logout_get(request: Request) -> Response:
    return _logout_response()


@app.post("/auth/logout")
async def logout_post(request: Request) -> Response:
    return _logout_response()


def _logout_response() -> Response:
    return _json_response(
        {"success": True},
        headers={"set-cookie": clear_session_cookie_header(secure=settings.secure_cookies)},
    )


@app.get("/auth/me")
@_api
async def auth_me(request: Request) -> Response:
    identity = await authenticator.require_session(_credential_headers(request))
    user = await db.fetch_user_by_id(identity.user_id)
    if user is None:
        raise NotFoundError("user not found")
    return _json_response({"user": _user_view(user, is_admin=identity.is_admin)})


@app.get("/auth/status")
async def auth_status(request: Request) -> Response:
    """Always 200; never raises for a missing or broken cookie."""
    identity = await authenticator.authenticate(_credential_headers(request), methods=(SESSION,))
    return _json_response({"authenticated": identity is not None}, headers=NO_STORE_HEADERS)


# images


@app.get("/api/images")
@_api
async def list_images(request: Request) -> Response:
    identity = await authenticator.require_session(_credential_headers(request))
    limit = _int_param(request, "limit", DEFAULT_PAGE_SIZE)
    if limit <= 0:
        limit = DEFAULT_PAGE_SIZE
    limit = min(limit, MAX_PAGE_SIZE)
    offset = max(_int_param(request, "offset", 0), 0)
    images, (image_count, total_size) = await asyncio.gather(
        db.list_images_for_user(identity.user_id, limit=limit, offset=offset),
        db.user_stats(identity.user_id),
    )
    return _json_response(
        {
            "success": True,
            "images": [image.to_dict() for image in images],
            "pagination": {"limit": limit, "offset": offset, "total": image_count},
            "stats": {"imageCount": image_count, "totalSize": total_size},
        }
    )


async def _owned_image(request: Request):
    identity = await authenticator.require_session(_credential_headers(request))
    image_id = request.path_params.get("id")
    image = await db.fetch_image_by_id(image_id) if image_id else None
    if image is None:
        raise NotFoundError("image not found")
    if image.user_id != identity.user_id:
        raise AuthorizationError("you do not own this image")
    return identity, image


@app.get("/api/images/:id")
@_api
async def get_image(request: Request) -> Response:
    _, image = await _owned_image(request)
    return _json_response({"success": True, "image": image.to_dict()})


@app.delete("/api/images/:id")
@_api
async def delete_image(request: Request) -> Response:
    """Blob first (best effort), then the catalog row regardless."""
    identity, image = await _owned_image(request)
    try:
        await blob_store.delete(image.storage_key)
    except Exception:
        logger.warning(
            "blob delete failed user_id=%s image_id=%s storage_key=%s",
            identity.user_id,
            image.id,
            image.storage_key,
            exc_info=True,
        )
    await db.delete_image(image.id)
    logger.info("delete completed user_id=%s image_id=%s", identity.user_id, image.id)
    return _json_response({"success": True})


@app.post("/api/images/sync")
@_api
async def sync_images(request: Request) -> Response:
    identity = await authenticator.require_admin(_credential_headers(request))
    report = await reconciler.run(identity.user_id)
    return _json_response({"success": True, **report.to_dict()})


# uploads


@app.post("/api/upload")
@_api
async def upload(request: Request) -> Response:
    identity = await authenticator.require(_credential_headers(request))
    files, rejected = _upload_files(request)
    if len(files) + len(rejected) > 1:
        raise ValidationError("one file per request; use /api/upload/batch for several")
    if rejected:
        raise ValidationError(rejected[0]["error"])
    if not files:
        raise ValidationError("no file provided")
    uploaded = await uploader.upload(files[0], identity.user_id)
    return _json_response({"success": True, **uploaded.to_dict()}, status=201)


@app.post("/api/upload/batch")
@_api
async def upload_batch(request: Request) -> Response:
    identity = await authenticator.require(_credential_headers(request))
    files, rejected = _upload_files(request)
    batch = await uploader.upload_batch(files, identity.user_id, rejected)
    return _json_response(batch.to_dict())


# upload tokens


@app.get("/api/upload-tokens")
@_api
async def list_upload_tokens(request: Request) -> Response:
    identity = await authenticator.require_session(_credential_headers(request))
    return _json_response({"tokens": await token_registry.list(identity.user_id)})


@app.post("/api/upload-tokens")
@_api
async def create_upload_token(request: Request) -> Response:
    identity = await authenticator.require_session(_credential_headers(request))
    name = str(_json_data(request).get("name") or "").strip()
    if not name:
        name = f"Token-{datetime.now(timezone.utc).date().isoformat()}"
    raw, record = await token_registry.issue(identity.user_id, name)
    return _json_response({"token": raw, "record": public_token_view(record)})


@app.delete("/api/upload-tokens")
@_api
async def revoke_upload_token(request: Request) -> Response:
    identity = await authenticator.require_session(_credential_headers(request))
    token_id = request.query_params.get("id", None) or str(_json_data(request).get("id") or "")
    if not token_id:
        raise ValidationError("token id is required")
    if not await token_registry.revoke(identity.user_id, token_id):
        raise NotFoundError("token not found")
    return _json_response({"success": True})


# misc


@app.get("/api/stats")
@_api
async def stats(request: Request) -> Response:
    identity = await authenticator.require_session(_credential_headers(request))
    image_count, total_size = await db.user_stats(identity.user_id)
    return _json_response(
        {
            "success": True,
            "stats": {
                "imageCount": image_count,
                "totalSizeMB": f"{total_size / (1024 * 1024):.2f}",
            },
        }
    )


@app.get("/api/health")
@_api
async def health(request: Request) -> Response:
    """Catalog and blob store reachability plus which settings are present."""
    await authenticator.require_session(_credential_headers(request))
    checks: dict[str, dict[str, Any]] = {}
    try:
        checks["catalog"] = {"ok": await db.ping()}
    except Exception as exc:
        logger.warning("health check failed component=catalog error=%s", exc)
        checks["catalog"] = {"ok": False, "error": str(exc)}
    try:
        await blob_store.list_page(limit=1)
        checks["blobStore"] = {"ok": True}
    except Exception as exc:
        logger.warning("health check failed component=blob_store error=%s", exc)
        checks["blobStore"] = {"ok": False, "error": str(exc)}
    healthy = all(check["ok"] for check in checks.values())
    return _json_response(
        {
            "success": healthy,
            **checks,
            "env": {
                "appUrl": bool(settings.app_url),
                "publicUrl": bool(settings.public_url),
                "sessionSecret": True,
                "ownerEmail": bool(settings.owner_email),
                "github": {
                    "clientId": bool(settings.github_client_id),
                    "clientSecret": bool(settings.github_client_secret),
                },
                "blobBackend": settings.blob_backend,
            },
        }
    )


if __name__ == "__main__":
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    app.start(_check_port=False)
