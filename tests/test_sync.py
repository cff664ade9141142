import asyncio

import pytest

from database import Database
from errors import StorageError
from storage import InMemoryBlobStore
from sync import ReconciliationEngine, parse_uploaded_at
from tests.conftest import PUBLIC_URL


class SmallPageBlobStore(InMemoryBlobStore):
    def __init__(self, page_size: int) -> None:
        super().__init__()
        self.page_size = page_size
        self.pages_served = 0

    async def list_page(self, cursor=None, limit=1000):
        self.pages_served += 1
        return await super().list_page(cursor, self.page_size)


class BrokenListingBlobStore(InMemoryBlobStore):
    async def list_page(self, cursor=None, limit=1000):
        raise ConnectionError("listing refused")


async def _put(store, key, *, content_type="image/png", size=10, **metadata):
    await store.put(key, b"x" * size, content_type, metadata)


def test_parse_uploaded_at() -> None:
    assert parse_uploaded_at("2024-05-06T07:08:09Z").isoformat() == "2024-05-06T07:08:09+00:00"
    assert parse_uploaded_at("2024-05-06T07:08:09").tzinfo is not None
    assert parse_uploaded_at("yesterday") is None
    assert parse_uploaded_at(None) is None


@pytest.mark.asyncio
async def test_sweep_adds_missing_rows_and_is_idempotent(db: Database, owner, blob_store) -> None:
    await _put(blob_store, "a.png", userId=owner.id, originalFilename="Sunset.png")
    await _put(blob_store, "b.jpg", content_type="image/jpg", userId=owner.id)
    engine = ReconciliationEngine(blob_store, db, PUBLIC_URL)

    first = await engine.run(owner.id)
    second = await engine.run(owner.id)

    assert first.total == 2 and first.added == 2
    assert second.total == 2
    assert second.added == 0
    assert second.already_present == 2
    assert second.to_dict()["stats"]["skipped"] == 2
    row = await db.fetch_image_by_storage_key("a.png")
    assert row.filename == "Sunset.png"
    assert row.url == f"{PUBLIC_URL}/a.png"
    assert row.file_size == 10
    jpeg = await db.fetch_image_by_storage_key("b.jpg")
    assert jpeg.format == "jpeg"
    assert jpeg.mime_type == "image/jpeg"


@pytest.mark.asyncio
async def test_unsupported_types_are_skipped_not_errors(db: Database, owner, blob_store) -> None:
    await _put(blob_store, "doc.pdf", content_type="application/pdf", userId=owner.id)
    await _put(blob_store, "raw.bmp", content_type="", userId=owner.id)
    await _put(blob_store, "ok.WEBP", content_type="", userId=owner.id)

    report = await ReconciliationEngine(blob_store, db, PUBLIC_URL).run(owner.id)

    assert report.unsupported_type == 2
    assert report.added == 1
    assert report.errors == []
    assert report.to_dict()["stats"] == {
        "total": 3,
        "added": 1,
        "skipped": 2,
        "errors": 0,
        "alreadyPresent": 0,
        "unsupportedType": 2,
        "adopted": 0,
    }
    assert await db.fetch_image_by_storage_key("doc.pdf") is None
    webp = await db.fetch_image_by_storage_key("ok.WEBP")
    assert webp.mime_type == "image/webp"


@pytest.mark.asyncio
async def test_untagged_blob_is_adopted_by_acting_admin(db: Database, owner, blob_store) -> None:
    await _put(blob_store, "folder/sub/orphan.gif", content_type="image/gif")

    report = await ReconciliationEngine(blob_store, db, PUBLIC_URL).run(owner.id)

    assert report.added == 1
    assert report.adopted == 1
    row = await db.fetch_image_by_storage_key("folder/sub/orphan.gif")
    assert row.user_id == owner.id
    assert row.filename == "orphan.gif"


@pytest.mark.asyncio
async def test_uploaded_at_metadata_becomes_created_at(db: Database, owner, blob_store) -> None:
    await _put(blob_store, "old.png", userId=owner.id, uploadedAt="2020-02-03T04:05:06Z")
    await _put(blob_store, "new.png", userId=owner.id)

    await ReconciliationEngine(blob_store, db, PUBLIC_URL).run(owner.id)

    old = await db.fetch_image_by_storage_key("old.png")
    assert old.created_at == "2020-02-03T04:05:06+00:00"
    new = await db.fetch_image_by_storage_key("new.png")
    [listed] = [obj for obj in await blob_store.list_all() if obj.key == "new.png"]
    assert new.created_at == listed.last_modified.isoformat()


@pytest.mark.asyncio
async def test_bad_object_does_not_stop_the_sweep(db: Database, owner, blob_store) -> None:
    await _put(blob_store, "a.png", userId="no-such-user")
    await _put(blob_store, "b.png", userId=owner.id)

    report = await ReconciliationEngine(blob_store, db, PUBLIC_URL).run(owner.id)

    assert report.total == 2
    assert report.added == 1
    assert len(report.errors) == 1
    assert report.errors[0].startswith("a.png: ")
    assert await db.fetch_image_by_storage_key("b.png") is not None


@pytest.mark.asyncio
async def test_sweep_follows_pagination(db: Database, owner) -> None:
    store = SmallPageBlobStore(page_size=3)
    for index in range(8):
        await _put(store, f"k{index:02d}.png", userId=owner.id)

    report = await ReconciliationEngine(store, db, PUBLIC_URL).run(owner.id)

    assert store.pages_served == 3
    assert report.total == 8
    assert report.added == 8
    assert await db.count_images() == 8


@pytest.mark.asyncio
async def test_listing_failure_is_storage_error(db: Database, owner) -> None:
    with pytest.raises(StorageError):
        await ReconciliationEngine(BrokenListingBlobStore(), db, PUBLIC_URL).run(owner.id)


@pytest.mark.asyncio
async def test_concurrent_sweeps_never_duplicate(db: Database, owner) -> None:
    store = SmallPageBlobStore(page_size=10)
    for index in range(100):
        await _put(store, f"img{index:03d}.png", userId=owner.id)

    first, second = await asyncio.gather(
        ReconciliationEngine(store, db, PUBLIC_URL).run(owner.id),
        ReconciliationEngine(store, db, PUBLIC_URL).run(owner.id),
    )

    assert await db.count_images() == 100
    assert first.added + second.added == 100
    assert first.errors == [] and second.errors == []
    assert first.already_present + second.already_present == 100


@pytest.mark.asyncio
async def test_offset_timestamps_are_stored_in_utc(db: Database, owner, blob_store) -> None:
    assert parse_uploaded_at("2024-05-06T15:08:09+08:00").isoformat() == "2024-05-06T07:08:09+00:00"
    await _put(blob_store, "east.png", userId=owner.id, uploadedAt="2024-05-06T15:00:00+08:00")
    await _put(blob_store, "west.png", userId=owner.id, uploadedAt="2024-05-06T08:00:00Z")

    await ReconciliationEngine(blob_store, db, PUBLIC_URL).run(owner.id)

    east = await db.fetch_image_by_storage_key("east.png")
    west = await db.fetch_image_by_storage_key("west.png")
    assert east.created_at == "2024-05-06T07:00:00+00:00"
    assert west.created_at > east.created_at
    listed = await db.list_images_for_user(owner.id)
    assert [image.storage_key for image in listed] == ["west.png", "east.png"]
