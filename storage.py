"""Blob storage for image bytes.

Objects are addressed by random keys and carry a small string metadata map
(owner id, original filename, upload timestamp). Production uses a Backblaze
B2 bucket; tests and local development use the in-memory store.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import secrets
import string
from typing import Any, AsyncIterator, Mapping, Optional

from b2sdk.v2 import B2Api, InMemoryAccountInfo
from b2sdk.v2.exception import FileNotPresent

from config import Settings
from errors import ConfigurationError

logger = logging.getLogger(__name__)

KEY_ALPHABET = string.ascii_letters + string.digits
# 62**16 possible keys; collisions are not retried.
KEY_LENGTH = 16
LIST_PAGE_SIZE = 1000

# B2 stores file info names case-insensitively.
_METADATA_NAMES = {"userid": "userId", "originalfilename": "originalFilename", "uploadedat": "uploadedAt"}


@dataclass
class BlobObject:
    key: str
    size: int
    last_modified: datetime
    content_type: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class BlobPage:
    objects: list[BlobObject]
    next_cursor: Optional[str]


def generate_storage_key(filename: str) -> str:
    """Random object key that keeps the lower-cased file extension."""
    _, dot, ext = filename.rpartition(".")
    ext = ext.lower() if dot and ext else "jpg"
    unique = "".join(secrets.choice(KEY_ALPHABET) for _ in range(KEY_LENGTH))
    return f"{unique}.{ext}"


def public_url(base_url: str, key: str) -> str:
    return f"{base_url.rstrip('/')}/{key}"


class BlobStore(ABC):
    """Object storage contract used by uploads and reconciliation."""

    @abstractmethod
    async def put(
        self, key: str, data: bytes, content_type: str, metadata: Mapping[str, str]
    ) -> BlobObject:
        """Store bytes under ``key``."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete the object. No-op if it does not exist."""

    @abstractmethod
    async def list_page(
        self, cursor: Optional[str] = None, limit: int = LIST_PAGE_SIZE
    ) -> BlobPage:
        """Return one page of objects; ``next_cursor`` is None on the last page."""

    async def iter_all(self) -> AsyncIterator[BlobObject]:
        """Walk every page until the provider reports no more."""
        cursor: Optional[str] = None
        while True:
            page = await self.list_page(cursor)
            for obj in page.objects:
                yield obj
            if not page.next_cursor:
                return
            cursor = page.next_cursor

    async def list_all(self) -> list[BlobObject]:
        return [obj async for obj in self.iter_all()]


class InMemoryBlobStore(BlobStore):
    """Dictionary-backed store for tests and local development."""

    def __init__(self) -> None:
        self._objects: dict[str, tuple[bytes, BlobObject]] = {}
        self.write_count = 0

    async def put(
        self, key: str, data: bytes, content_type: str, metadata: Mapping[str, str]
    ) -> BlobObject:
        obj = BlobObject(
            key=key,
            size=len(data),
            last_modified=datetime.now(timezone.utc),
            content_type=content_type,
            metadata=dict(metadata),
        )
        self._objects[key] = (bytes(data), obj)
        self.write_count += 1
        return obj

    async def delete(self, key: str) -> None:
        self._objects.pop(key, None)

    async def list_page(
        self, cursor: Optional[str] = None, limit: int = LIST_PAGE_SIZE
    ) -> BlobPage:
        keys = sorted(k for k in self._objects if cursor is None or k >= cursor)
        page_keys = keys[:limit]
        next_cursor = keys[limit] if len(keys) > limit else None
        return BlobPage(
            objects=[self._objects[k][1] for k in page_keys], next_cursor=next_cursor
        )

    def get(self, key: str) -> Optional[bytes]:
        entry = self._objects.get(key)
        return entry[0] if entry else None

    def __contains__(self, key: object) -> bool:
        return key in self._objects

    def __len__(self) -> int:
        return len(self._objects)


def _metadata_from_file_info(file_info: Mapping[str, Any]) -> dict[str, str]:
    metadata: dict[str, str] = {}
    for name, value in (file_info or {}).items():
        canonical = _METADATA_NAMES.get(name.lower())
        if canonical and value is not None:
            metadata[canonical] = str(value)
    return metadata


class B2BlobStore(BlobStore):
    """Backblaze B2 bucket accessed through b2sdk; calls run in worker threads."""

    def __init__(self, bucket: Any) -> None:
        self.bucket = bucket

    @classmethod
    def from_credentials(cls, key_id: str, app_key: str, bucket_name: str) -> "B2BlobStore":
        info = InMemoryAccountInfo()
        b2_api = B2Api(info)
        b2_api.authorize_account("production", key_id, app_key)
        return cls(b2_api.get_bucket_by_name(bucket_name))

    async def put(
        self, key: str, data: bytes, content_type: str, metadata: Mapping[str, str]
    ) -> BlobObject:
        file_version = await asyncio.to_thread(
            self.bucket.upload_bytes,
            data,
            key,
            content_type=content_type,
            file_info=dict(metadata),
        )
        return BlobObject(
            key=key,
            size=len(data),
            last_modified=_from_millis(getattr(file_version, "upload_timestamp", None)),
            content_type=content_type,
            metadata=dict(metadata),
        )

    async def delete(self, key: str) -> None:
        try:
            file_version = await asyncio.to_thread(self.bucket.get_file_info_by_name, key)
        except FileNotPresent:
            return
        await asyncio.to_thread(self.bucket.delete_file_version, file_version.id_, key)

    async def list_page(
        self, cursor: Optional[str] = None, limit: int = LIST_PAGE_SIZE
    ) -> BlobPage:
        response = await asyncio.to_thread(
            self.bucket.api.session.list_file_names,
            self.bucket.id_,
            cursor,
            limit,
        )
        objects = [
            BlobObject(
                key=item["fileName"],
                size=int(item.get("contentLength") or 0),
                last_modified=_from_millis(item.get("uploadTimestamp")),
                content_type=item.get("contentType"),
                metadata=_metadata_from_file_info(item.get("fileInfo") or {}),
            )
            for item in response.get("files", [])
            if item.get("action", "upload") == "upload"
        ]
        return BlobPage(objects=objects, next_cursor=response.get("nextFileName"))


def _from_millis(value: Optional[int]) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def create_blob_store(settings: Settings) -> BlobStore:
    """Build the blob store selected by ``BLOB_BACKEND``."""
    if settings.blob_backend == "memory":
        logger.warning("blob store backend=memory; uploaded files vanish on restart")
        return InMemoryBlobStore()
    if settings.blob_backend != "b2":
        raise ConfigurationError(f"Unknown BLOB_BACKEND: {settings.blob_backend}")
    if not (settings.b2_key_id and settings.b2_app_key and settings.b2_bucket_name):
        raise ConfigurationError(
            "Missing B2 settings. Required: KEY_ID, APP_KEY, BUCKET_NAME"
        )
    return B2BlobStore.from_credentials(
        settings.b2_key_id, settings.b2_app_key, settings.b2_bucket_name
    )
