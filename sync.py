"""Backfill catalog rows for blobs that were written outside the upload path.

The storage key is the only de-duplication key. The per-object existence check
keeps a single sweep from inserting twice; the catalog's unique constraint on
``storage_key`` is what keeps overlapping sweeps correct.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import enum
import logging
from typing import Any, Optional

import aiosqlite

from database import Database
from errors import StorageError
from storage import BlobObject, BlobStore, public_url
from uploads import ALLOWED_MIME_TYPES, normalize_format, normalize_mime

logger = logging.getLogger(__name__)


class Outcome(enum.Enum):
    ADDED = "added"
    ALREADY_PRESENT = "already_present"
    UNSUPPORTED_TYPE = "unsupported_type"


@dataclass
class SyncReport:
    total: int = 0
    added: int = 0
    already_present: int = 0
    unsupported_type: int = 0
    adopted: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        return self.already_present + self.unsupported_type

    def record(self, outcome: Outcome) -> None:
        if outcome is Outcome.ADDED:
            self.added += 1
        elif outcome is Outcome.ALREADY_PRESENT:
            self.already_present += 1
        else:
            self.unsupported_type += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "stats": {
                "total": self.total,
                "added": self.added,
                "skipped": self.skipped,
                "errors": len(self.errors),
                "alreadyPresent": self.already_present,
                "unsupportedType": self.unsupported_type,
                "adopted": self.adopted,
            },
            "errors": list(self.errors),
        }


def parse_uploaded_at(value: Optional[str]) -> Optional[datetime]:
    raw = (value or "").strip()
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def original_filename(obj: BlobObject) -> str:
    name = (obj.metadata.get("originalFilename") or "").strip()
    if name:
        return name
    return obj.key.rsplit("/", 1)[-1] or obj.key


class ReconciliationEngine:
    def __init__(self, blob_store: BlobStore, catalog: Database, public_base_url: str) -> None:
        self.blob_store = blob_store
        self.catalog = catalog
        self.public_base_url = public_base_url

    async def run(self, acting_user_id: str) -> SyncReport:
        """Scan every blob sequentially; one bad object never stops the sweep."""
        report = SyncReport()
        logger.info("sync started acting_user_id=%s", acting_user_id)
        try:
            async for obj in self.blob_store.iter_all():
                report.total += 1
                try:
                    outcome = await self.reconcile(obj, acting_user_id, report)
                except Exception as exc:
                    logger.warning("sync object failed storage_key=%s error=%s", obj.key, exc)
                    report.errors.append(f"{obj.key}: {exc}")
                    continue
                report.record(outcome)
        except StorageError:
            raise
        except Exception as exc:
            logger.exception("sync listing failed after objects=%s", report.total)
            raise StorageError(f"blob listing failed: {exc}") from exc
        logger.info(
            "sync finished total=%s added=%s already_present=%s unsupported_type=%s adopted=%s errors=%s",
            report.total,
            report.added,
            report.already_present,
            report.unsupported_type,
            report.adopted,
            len(report.errors),
        )
        return report

    async def reconcile(self, obj: BlobObject, acting_user_id: str, report: SyncReport) -> Outcome:
        if await self.catalog.fetch_image_by_storage_key(obj.key):
            return Outcome.ALREADY_PRESENT

        filename = original_filename(obj)
        fmt = normalize_format(filename)
        mime_type = normalize_mime(obj.content_type) or f"image/{fmt}"
        if mime_type not in ALLOWED_MIME_TYPES:
            logger.info("sync skipped storage_key=%s reason=unsupported_type mime=%s", obj.key, mime_type)
            return Outcome.UNSUPPORTED_TYPE

        owner = (obj.metadata.get("userId") or "").strip()
        adopted = not owner
        if adopted:
            owner = acting_user_id
        created = parse_uploaded_at(obj.metadata.get("uploadedAt")) or obj.last_modified

        try:
            await self.catalog.create_image(
                user_id=owner,
                filename=filename,
                storage_key=obj.key,
                file_size=obj.size,
                format=fmt,
                mime_type=mime_type,
                url=public_url(self.public_base_url, obj.key),
                created_at=created.isoformat(),
            )
        except aiosqlite.IntegrityError:
            # Another sweep or upload inserted the key after our check.
            if await self.catalog.fetch_image_by_storage_key(obj.key):
                return Outcome.ALREADY_PRESENT
            raise

        if adopted:
            report.adopted += 1
            logger.info(
                "sync adopted blob storage_key=%s owner=%s reason=no_owner_metadata",
                obj.key,
                owner,
            )
        return Outcome.ADDED
