from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Optional, Sequence
from uuid import uuid4

import aiosqlite

from config import DEFAULT_DB_PATH

IMAGE_COLUMNS = """
    id, user_id, filename, storage_key, file_size, width, height, format,
    mime_type, is_compressed, compression_quality, original_size, url, created_at
"""

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        avatar TEXT,
        provider TEXT NOT NULL,
        provider_id TEXT NOT NULL,
        password_hash TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS upload_tokens (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        token_hash TEXT NOT NULL UNIQUE,
        created_at TEXT NOT NULL,
        last_used_at TEXT,
        revoked INTEGER NOT NULL DEFAULT 0,
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_upload_tokens_user ON upload_tokens(user_id)",
    """
    CREATE TABLE IF NOT EXISTS images (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        filename TEXT NOT NULL,
        storage_key TEXT NOT NULL UNIQUE,
        file_size INTEGER NOT NULL,
        width INTEGER,
        height INTEGER,
        format TEXT NOT NULL,
        mime_type TEXT NOT NULL,
        is_compressed INTEGER NOT NULL DEFAULT 0,
        compression_quality INTEGER,
        original_size INTEGER,
        url TEXT NOT NULL,
        created_at TEXT NOT NULL,
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_images_user_created ON images(user_id, created_at)",
)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class UserRecord:
    id: str
    email: str
    name: Optional[str]
    avatar: Optional[str]
    provider: str
    provider_id: str
    password_hash: Optional[str]
    created_at: str
    updated_at: str


@dataclass
class UploadTokenRecord:
    id: str
    user_id: str
    name: str
    token_hash: str
    created_at: str
    last_used_at: Optional[str]
    revoked: bool


@dataclass
class ImageRecord:
    id: str
    user_id: str
    filename: str
    storage_key: str
    file_size: int
    width: Optional[int]
    height: Optional[int]
    format: str
    mime_type: str
    is_compressed: bool
    compression_quality: Optional[int]
    original_size: Optional[int]
    url: str
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _image_from_row(row: aiosqlite.Row) -> ImageRecord:
    data = dict(row)
    data["is_compressed"] = bool(data["is_compressed"])
    return ImageRecord(**data)


def _token_from_row(row: aiosqlite.Row) -> UploadTokenRecord:
    data = dict(row)
    data["revoked"] = bool(data["revoked"])
    return UploadTokenRecord(**data)


class Database:
    """Image catalog and account store on top of aiosqlite."""

    def __init__(self, db_path: Path = DEFAULT_DB_PATH) -> None:
        self.db_path = db_path

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a connection with foreign-key support enabled."""
        async with aiosqlite.connect(self.db_path) as conn:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA foreign_keys = ON;")
            yield conn

    async def initialize(self) -> None:
        """Create the data directory and every table. Safe to call repeatedly."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._connection() as conn:
            await conn.execute("PRAGMA journal_mode = WAL;")
            for statement in SCHEMA:
                await conn.execute(statement)
            await conn.commit()

    async def fetch_one(
        self, query: str, params: Sequence[Any]
    ) -> Optional[aiosqlite.Row]:
        """Execute a single-row SELECT statement with given parameters."""
        async with self._connection() as conn:
            cursor = await conn.execute(query, params)
            row = await cursor.fetchone()
            await cursor.close()
            return row

    async def fetch_all(self, query: str, params: Sequence[Any]) -> list[aiosqlite.Row]:
        async with self._connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return list(rows)

    async def execute(self, query: str, params: Sequence[Any]) -> int:
        """Run a write statement and return the number of affected rows."""
        async with self._connection() as conn:
            cursor = await conn.execute(query, params)
            await conn.commit()
            return cursor.rowcount

    async def ping(self) -> bool:
        row = await self.fetch_one("SELECT 1 AS ok", ())
        return bool(row and row["ok"] == 1)

    # users

    async def fetch_user_by_email(self, email: str) -> Optional[UserRecord]:
        """Find a user row by their normalized (lowercased) email address."""
        row = await self.fetch_one(
            "SELECT * FROM users WHERE email = ?", (email.strip().lower(),)
        )
        return UserRecord(**row) if row else None

    async def fetch_user_by_id(self, user_id: str) -> Optional[UserRecord]:
        """Retrieve a user record directly from its primary key."""
        row = await self.fetch_one("SELECT * FROM users WHERE id = ?", (user_id,))
        return UserRecord(**row) if row else None

    async def upsert_oauth_user(
        self,
        *,
        email: str,
        name: Optional[str],
        avatar: Optional[str],
        provider_id: str,
        provider: str = "github",
    ) -> UserRecord:
        """Create the user on first OAuth login, refresh name/avatar afterwards."""
        now = now_iso()
        await self.execute(
            """
            INSERT INTO users (id, email, name, avatar, provider, provider_id,
                               password_hash, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, NULL, ?, ?)
            ON CONFLICT(email) DO UPDATE SET
                name = excluded.name,
                avatar = excluded.avatar,
                updated_at = excluded.updated_at
            """,
            (uuid4().hex, email.strip().lower(), name, avatar, provider, provider_id, now, now),
        )
        user = await self.fetch_user_by_email(email)
        if user is None:
            raise RuntimeError("Failed to read the upserted user.")
        return user

    async def create_password_user(
        self, email: str, name: str, password_hash: str
    ) -> UserRecord:
        """Insert a password-login user and return the constructed dataclass."""
        now = now_iso()
        user = UserRecord(
            id=uuid4().hex,
            email=email.strip().lower(),
            name=name,
            avatar=None,
            provider="password",
            provider_id=f"password:{name.strip().lower()}",
            password_hash=password_hash,
            created_at=now,
            updated_at=now,
        )
        await self.execute(
            """
            INSERT INTO users (id, email, name, avatar, provider, provider_id,
                               password_hash, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user.id,
                user.email,
                user.name,
                user.avatar,
                user.provider,
                user.provider_id,
                user.password_hash,
                user.created_at,
                user.updated_at,
            ),
        )
        return user

    async def update_password_hash(self, user_id: str, password_hash: str) -> None:
        await self.execute(
            "UPDATE users SET password_hash = ?, updated_at = ? WHERE id = ?",
            (password_hash, now_iso(), user_id),
        )

    # images

    async def create_image(
        self,
        *,
        user_id: str,
        filename: str,
        storage_key: str,
        file_size: int,
        format: str,
        mime_type: str,
        url: str,
        width: Optional[int] = None,
        height: Optional[int] = None,
        is_compressed: bool = False,
        compression_quality: Optional[int] = None,
        original_size: Optional[int] = None,
        created_at: Optional[str] = None,
        image_id: Optional[str] = None,
    ) -> ImageRecord:
        """Insert an image row. Raises aiosqlite.IntegrityError on a reused storage key."""
        record = ImageRecord(
            id=image_id or uuid4().hex,
            user_id=user_id,
            filename=filename,
            storage_key=storage_key,
            file_size=file_size,
            width=width,
            height=height,
            format=format,
            mime_type=mime_type,
            is_compressed=is_compressed,
            compression_quality=compression_quality,
            original_size=original_size,
            url=url,
            created_at=created_at or now_iso(),
        )
        await self.execute(
            f"INSERT INTO images ({IMAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                record.id,
                record.user_id,
                record.filename,
                record.storage_key,
                record.file_size,
                record.width,
                record.height,
                record.format,
                record.mime_type,
                int(record.is_compressed),
                record.compression_quality,
                record.original_size,
                record.url,
                record.created_at,
            ),
        )
        return record

    async def fetch_image_by_id(self, image_id: str) -> Optional[ImageRecord]:
        row = await self.fetch_one(
            f"SELECT {IMAGE_COLUMNS} FROM images WHERE id = ?", (image_id,)
        )
        return _image_from_row(row) if row else None

    async def fetch_image_by_storage_key(self, storage_key: str) -> Optional[ImageRecord]:
        row = await self.fetch_one(
            f"SELECT {IMAGE_COLUMNS} FROM images WHERE storage_key = ?", (storage_key,)
        )
        return _image_from_row(row) if row else None

    async def list_images_for_user(
        self, user_id: str, *, limit: int = 50, offset: int = 0
    ) -> list[ImageRecord]:
        """Newest first, paginated."""
        rows = await self.fetch_all(
            f"""
            SELECT {IMAGE_COLUMNS} FROM images
            WHERE user_id = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT ? OFFSET ?
            """,
            (user_id, limit, offset),
        )
        return [_image_from_row(row) for row in rows]

    async def count_images(self) -> int:
        row = await self.fetch_one("SELECT COUNT(*) AS total FROM images", ())
        return int(row["total"]) if row else 0

    async def delete_image(self, image_id: str) -> bool:
        return await self.execute("DELETE FROM images WHERE id = ?", (image_id,)) > 0

    async def user_stats(self, user_id: str) -> tuple[int, int]:
        """Return (image count, total bytes) for one owner."""
        row = await self.fetch_one(
            """
            SELECT COUNT(*) AS image_count, COALESCE(SUM(file_size), 0) AS total_size
            FROM images WHERE user_id = ?
            """,
            (user_id,),
        )
        if not row:
            return 0, 0
        return int(row["image_count"]), int(row["total_size"])

    # upload tokens

    async def create_upload_token(
        self, *, user_id: str, name: str, token_hash: str
    ) -> UploadTokenRecord:
        record = UploadTokenRecord(
            id=uuid4().hex,
            user_id=user_id,
            name=name,
            token_hash=token_hash,
            created_at=now_iso(),
            last_used_at=None,
            revoked=False,
        )
        await self.execute(
            """
            INSERT INTO upload_tokens (id, user_id, name, token_hash, created_at, last_used_at, revoked)
            VALUES (?, ?, ?, ?, ?, NULL, 0)
            """,
            (record.id, record.user_id, record.name, record.token_hash, record.created_at),
        )
        return record

    async def list_upload_tokens(self, user_id: str) -> list[UploadTokenRecord]:
        rows = await self.fetch_all(
            """
            SELECT * FROM upload_tokens
            WHERE user_id = ?
            ORDER BY created_at DESC, rowid DESC
            """,
            (user_id,),
        )
        return [_token_from_row(row) for row in rows]

    async def fetch_upload_token_by_hash(self, token_hash: str) -> Optional[UploadTokenRecord]:
        row = await self.fetch_one(
            "SELECT * FROM upload_tokens WHERE token_hash = ?", (token_hash,)
        )
        return _token_from_row(row) if row else None

    async def touch_upload_token(self, token_id: str, last_used_at: str) -> None:
        """Update the token activity timestamp."""
        await self.execute(
            "UPDATE upload_tokens SET last_used_at = ? WHERE id = ?",
            (last_used_at, token_id),
        )

    async def revoke_upload_token(self, user_id: str, token_id: str) -> bool:
        """Mark a token revoked, only when it belongs to ``user_id``."""
        changed = await self.execute(
            "UPDATE upload_tokens SET revoked = 1 WHERE id = ? AND user_id = ?",
            (token_id, user_id),
        )
        return changed > 0
