from __future__ import annotations

import asyncio
import base64
import binascii
from collections import Counter
from dataclasses import dataclass, field
from io import BytesIO
import logging
import mimetypes
import re
from typing import Any, Optional, Protocol, Sequence

from PIL import Image, UnidentifiedImageError

from database import ImageRecord, now_iso
from errors import ConsistencyRepairFailure, StorageError, ValidationError
from storage import BlobStore, generate_storage_key, public_url

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 10 * 1024 * 1024  # 10 MiB
MAX_BATCH_SIZE = 20
ALLOWED_MIME_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")
GENERIC_UPLOAD_ERROR = "upload failed, please retry later"
DUPLICATE_FILENAME_ERROR = "duplicate filename in batch; only one copy was received"

_MULTIPART_FILENAME = re.compile(
    rb"content-disposition:[^\r\n]*?\bfilename=\"([^\"\r\n]*)\"", re.IGNORECASE
)


class ImageCatalog(Protocol):
    async def create_image(self, **fields: Any) -> ImageRecord: ...


def normalize_mime(mime: Optional[str]) -> Optional[str]:
    """Lower-case a MIME type and fold the ``image/jpg`` alias into ``image/jpeg``."""
    candidate = (mime or "").strip().lower()
    if not candidate:
        return None
    return "image/jpeg" if candidate == "image/jpg" else candidate


def normalize_format(filename: str, mime: Optional[str] = None) -> str:
    """File extension, lower-cased, with ``jpg`` folded into ``jpeg``."""
    _, dot, ext = filename.rpartition(".")
    ext = ext.lower() if dot and ext else ""
    if not ext and mime and "/" in mime:
        ext = mime.split("/", 1)[1]
    ext = ext or "jpeg"
    return "jpeg" if ext == "jpg" else ext


def guess_content_type(filename: str, declared: Optional[str] = None) -> str:
    """Prefer a declared image type, otherwise guess from the filename."""
    candidate = (declared or "").strip().lower()
    if candidate.startswith("image/"):
        return candidate
    guessed, _ = mimetypes.guess_type(filename)
    if guessed and guessed.startswith("image/"):
        return guessed
    return "application/octet-stream"


def probe_dimensions(data: bytes) -> tuple[Optional[int], Optional[int]]:
    """Read width/height from the image header; (None, None) when unreadable."""
    try:
        with Image.open(BytesIO(data)) as img:
            width, height = img.size
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError):
        return None, None
    return int(width), int(height)


@dataclass
class UploadFile:
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class UploadedImage:
    id: str
    url: str
    filename: str
    size: int
    format: str
    created_at: str

    @classmethod
    def from_record(cls, record: ImageRecord) -> "UploadedImage":
        return cls(
            id=record.id,
            url=record.url,
            filename=record.filename,
            size=record.file_size,
            format=record.format,
            created_at=record.created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "filename": self.filename,
            "size": self.size,
            "format": self.format,
            "createdAt": self.created_at,
        }


@dataclass
class BatchResult:
    results: list[UploadedImage] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)

    @property
    def uploaded(self) -> int:
        return len(self.results)

    @property
    def failed(self) -> int:
        return len(self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.uploaded > 0,
            "uploaded": self.uploaded,
            "failed": self.failed,
            "results": [item.to_dict() for item in self.results],
            "errors": list(self.errors),
        }


def validate_upload(file: UploadFile) -> str:
    """Check type then size before any I/O. Returns the normalized MIME type."""
    mime = normalize_mime(file.content_type)
    if mime not in ALLOWED_MIME_TYPES:
        raise ValidationError(
            f"unsupported file type: {file.content_type or 'unknown'}. "
            f"Allowed types: {', '.join(ALLOWED_MIME_TYPES)}"
        )
    if file.size > MAX_FILE_SIZE:
        raise ValidationError(
            f"file too large: {file.size / 1024 / 1024:.2f}MB "
            f"(max {MAX_FILE_SIZE // (1024 * 1024)}MB)"
        )
    return mime


def file_from_json(entry: Any) -> UploadFile:
    """Decode one ``{filename, content_type, image_base64}`` object."""
    if not isinstance(entry, dict):
        raise ValidationError("each file must be an object")
    filename = str(entry.get("filename", "")).strip()
    image_base64 = str(entry.get("image_base64", "")).strip()
    if not filename or not image_base64:
        raise ValidationError("filename and image_base64 are required")
    try:
        data = base64.b64decode(image_base64, validate=True)
    except (ValueError, binascii.Error) as exc:
        raise ValidationError("invalid image_base64 payload") from exc
    if not data:
        raise ValidationError("empty image payload")
    content_type = guess_content_type(filename, str(entry.get("content_type", "")))
    return UploadFile(filename=filename, content_type=content_type, data=data)


def split_json_files(entries: Sequence[Any]) -> tuple[list[UploadFile], list[dict[str, str]]]:
    """Decode each entry on its own; undecodable ones become per-file errors."""
    files: list[UploadFile] = []
    rejected: list[dict[str, str]] = []
    for index, entry in enumerate(entries, start=1):
        try:
            files.append(file_from_json(entry))
        except ValidationError as exc:
            name = entry.get("filename") if isinstance(entry, dict) else None
            rejected.append({"filename": str(name or f"file-{index}"), "error": exc.message})
    return files, rejected


def multipart_duplicates(body: bytes) -> list[dict[str, str]]:
    """One error per extra part that reused an earlier part's filename.

    Multipart files arrive keyed by filename, so repeated names collapse into
    a single file before the handler sees them. Counting the part headers in
    the raw body is the only way to report the copies that were dropped.
    """
    names = [
        match.group(1).decode("utf-8", errors="replace")
        for match in _MULTIPART_FILENAME.finditer(body or b"")
    ]
    return [
        {"filename": name, "error": DUPLICATE_FILENAME_ERROR}
        for name, count in Counter(names).items()
        for _ in range(count - 1)
    ]


class UploadSaga:
    """Moves one file into the blob store and the catalog.

    Two commits and one compensation: if the catalog insert fails (or the
    request is cancelled after the blob landed) the blob is deleted again and
    the original error propagates. A failed delete leaves an orphaned blob,
    which reconciliation can later adopt; a catalog row without a blob is
    never produced.
    """

    def __init__(
        self,
        file: UploadFile,
        user_id: str,
        *,
        blob_store: BlobStore,
        catalog: ImageCatalog,
        public_base_url: str,
    ) -> None:
        self.file = file
        self.user_id = user_id
        self.blob_store = blob_store
        self.catalog = catalog
        self.public_base_url = public_base_url
        self.mime_type: Optional[str] = None
        self.storage_key: Optional[str] = None
        self.blob_committed = False

    def validate(self) -> None:
        self.mime_type = validate_upload(self.file)

    async def commit_blob(self) -> str:
        key = generate_storage_key(self.file.filename)
        metadata = {
            "userId": self.user_id,
            "originalFilename": self.file.filename,
            "uploadedAt": now_iso(),
        }
        # The key is known before the write so a cancelled request can still
        # find and remove a blob that lands after the caller gave up.
        self.storage_key = key
        put = asyncio.ensure_future(
            self.blob_store.put(key, self.file.data, self.mime_type or "", metadata)
        )
        try:
            await asyncio.shield(put)
        except asyncio.CancelledError:
            logger.warning(
                "upload cancelled during blob write user_id=%s storage_key=%s",
                self.user_id,
                key,
            )
            await asyncio.shield(self._discard_pending_blob(put))
            raise
        except Exception as exc:
            raise StorageError(f"blob write failed for {key}: {exc}") from exc
        self.blob_committed = True
        return key

    async def _discard_pending_blob(self, put: asyncio.Future) -> None:
        """Wait for an abandoned write to settle, then compensate if it landed."""
        try:
            await put
        except Exception:
            return
        self.blob_committed = True
        await self.compensate()

    async def commit_catalog(self) -> ImageRecord:
        if not self.blob_committed or self.storage_key is None:
            raise RuntimeError("commit_blob must succeed before commit_catalog")
        width, height = probe_dimensions(self.file.data)
        return await self.catalog.create_image(
            user_id=self.user_id,
            filename=self.file.filename,
            storage_key=self.storage_key,
            file_size=self.file.size,
            width=width,
            height=height,
            format=normalize_format(self.file.filename, self.mime_type),
            mime_type=self.mime_type,
            url=public_url(self.public_base_url, self.storage_key),
        )

    async def compensate(self) -> None:
        """Best-effort removal of the blob written by ``commit_blob``."""
        if not self.blob_committed or self.storage_key is None:
            return
        try:
            await self.blob_store.delete(self.storage_key)
        except Exception as exc:
            failure = ConsistencyRepairFailure(self.storage_key, exc)
            logger.warning(
                "upload compensation failed user_id=%s storage_key=%s error=%s",
                self.user_id,
                self.storage_key,
                failure,
            )
            return
        self.blob_committed = False
        logger.info(
            "upload compensated user_id=%s storage_key=%s", self.user_id, self.storage_key
        )

    async def execute(self) -> UploadedImage:
        self.validate()
        await self.commit_blob()
        try:
            record = await self.commit_catalog()
        except BaseException as exc:
            logger.warning(
                "catalog insert failed user_id=%s storage_key=%s error=%r",
                self.user_id,
                self.storage_key,
                exc,
            )
            await asyncio.shield(self.compensate())
            raise
        return UploadedImage.from_record(record)


class Uploader:
    """Runs upload sagas, singly or as an independent concurrent batch."""

    def __init__(self, blob_store: BlobStore, catalog: ImageCatalog, public_base_url: str) -> None:
        self.blob_store = blob_store
        self.catalog = catalog
        self.public_base_url = public_base_url

    def saga(self, file: UploadFile, user_id: str) -> UploadSaga:
        return UploadSaga(
            file,
            user_id,
            blob_store=self.blob_store,
            catalog=self.catalog,
            public_base_url=self.public_base_url,
        )

    async def upload(self, file: UploadFile, user_id: str) -> UploadedImage:
        logger.info(
            "upload started user_id=%s filename=%s bytes=%s content_type=%s",
            user_id,
            file.filename,
            file.size,
            file.content_type,
        )
        uploaded = await self.saga(file, user_id).execute()
        logger.info(
            "upload completed user_id=%s image_id=%s storage_key=%s",
            user_id,
            uploaded.id,
            uploaded.url.rsplit("/", 1)[-1],
        )
        return uploaded

    async def _settle(self, file: UploadFile, user_id: str) -> UploadedImage | dict[str, str]:
        try:
            return await self.upload(file, user_id)
        except ValidationError as exc:
            logger.warning(
                "upload rejected user_id=%s filename=%s reason=%s", user_id, file.filename, exc
            )
            return {"filename": file.filename, "error": exc.message}
        except Exception:
            logger.exception("upload failed user_id=%s filename=%s", user_id, file.filename)
            return {"filename": file.filename, "error": GENERIC_UPLOAD_ERROR}

    async def upload_batch(
        self,
        files: Sequence[UploadFile],
        user_id: str,
        rejected: Sequence[dict[str, str]] = (),
    ) -> BatchResult:
        """Run every file's saga concurrently.

        ``rejected`` holds entries that failed before becoming an UploadFile
        (bad base64, duplicate multipart names); they count toward the batch
        limit and are reported as failures alongside the rest.
        """
        if not files and not rejected:
            raise ValidationError("no files provided")
        if len(files) + len(rejected) > MAX_BATCH_SIZE:
            raise ValidationError(f"at most {MAX_BATCH_SIZE} files per batch")
        for entry in rejected:
            logger.warning(
                "upload rejected user_id=%s filename=%s reason=%s",
                user_id,
                entry["filename"],
                entry["error"],
            )
        outcomes = await asyncio.gather(*(self._settle(file, user_id) for file in files))
        batch = BatchResult(errors=list(rejected))
        for outcome in outcomes:
            if isinstance(outcome, UploadedImage):
                batch.results.append(outcome)
            else:
                batch.errors.append(outcome)
        logger.info(
            "batch upload finished user_id=%s uploaded=%s failed=%s",
            user_id,
            batch.uploaded,
            batch.failed,
        )
        return batch
