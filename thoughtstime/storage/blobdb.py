"""In-memory SQLite database persisted as a single base64 image in the host store."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import sqlite3
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, List, Optional, Sequence

import aiosqlite

from thoughtstime.storage.errors import StorageNotInitializedError, StorageUnavailableError
from thoughtstime.storage.kvstore import KeyValueStore
from thoughtstime.storage.migrations import MigrationStep, apply_migrations, get_current_version

logger = logging.getLogger(__name__)

ITER_CHUNK_SIZE = 64


def engine_supports_images() -> bool:
    """True when this interpreter's sqlite3 can serialize/deserialize databases."""
    return hasattr(sqlite3.Connection, "serialize") and hasattr(sqlite3.Connection, "deserialize")


class BlobDatabase:
    """Async SQLite database that lives in memory and is flushed wholesale.

    Every committed write should be followed by ``persist()``, which
    serializes the whole database and stores it under ``image_key``. This
    keeps the host store as the only durable medium, at the cost of
    rewriting the full image on each change.

    Usage:
        db = BlobDatabase(kv, "my-image-key", items_migrations)
        await db.open()
        async with db.transaction() as conn:
            await conn.execute(...)
        await db.persist()
        await db.close()
    """

    def __init__(
        self,
        kv: KeyValueStore,
        image_key: str,
        migrations: Callable[[], List[MigrationStep]],
    ):
        self.kv = kv
        self.image_key = image_key
        self.migrations = migrations
        self._conn: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()
        self._open_lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StorageNotInitializedError("Database not initialized")
        return self._conn

    async def open(self) -> None:
        """Load the stored image (or start fresh) and bring the schema up to date.

        Concurrent callers share one connection: later ones wait for the
        first open to finish.
        """
        if self._conn is not None:
            return
        async with self._open_lock:
            if self._conn is None:
                await self._open()

    async def _open(self) -> None:
        if not engine_supports_images():
            raise StorageUnavailableError(
                "sqlite3 in this interpreter cannot serialize databases"
            )

        conn: Optional[aiosqlite.Connection] = None
        image = self._load_image()
        if image is not None:
            try:
                conn = await self._connect(image)
                cursor = await conn.execute("SELECT COUNT(*) FROM sqlite_master")
                await cursor.fetchone()
            except (sqlite3.DatabaseError, ValueError) as e:
                logger.warning("Discarding unreadable database image %s: %s", self.image_key, e)
                if conn is not None:
                    await conn.close()
                conn = None

        fresh = conn is None
        if conn is None:
            conn = await self._connect(None)

        try:
            before = await get_current_version(conn)
            after = await apply_migrations(conn, self.migrations())
        except Exception:
            await conn.close()
            raise

        self._conn = conn
        logger.info(
            "Opened %s database %s (schema v%d)",
            "new" if fresh else "stored", self.image_key, after,
        )
        if fresh or after != before:
            try:
                await self.persist()
            except Exception as e:
                # The in-memory database is usable; the next write retries the flush.
                logger.warning("Could not persist %s after open: %s", self.image_key, e)

    async def close(self) -> None:
        """Persist a final image and release the connection."""
        if self._conn is None:
            return
        try:
            await self.persist()
        except Exception as e:
            logger.warning("Final persist of %s failed: %s", self.image_key, e)
        finally:
            await self._conn.close()
            self._conn = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Acquire write lock and begin a transaction.

        Rolls back on any error and re-raises it; a failing rollback is
        ignored since the transaction is already gone.
        """
        conn = self.connection
        async with self._write_lock:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                await conn.commit()
            except Exception:
                try:
                    await conn.rollback()
                except Exception as e:
                    logger.debug("Rollback of %s failed: %s", self.image_key, e)
                raise

    async def fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[aiosqlite.Row]:
        cursor = await self.connection.execute(sql, params)
        return list(await cursor.fetchall())

    async def fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[aiosqlite.Row]:
        cursor = await self.connection.execute(sql, params)
        return await cursor.fetchone()

    async def persist(self) -> None:
        """Serialize the whole database into the host store.

        Raises QuotaExceededError or StorageUnavailableError from the host store.
        """
        image = await self.export_image()
        self.kv.set_item(self.image_key, base64.b64encode(image).decode("ascii"))
        logger.debug("Persisted %s (%d bytes)", self.image_key, len(image))

    async def export_image(self) -> bytes:
        scratch = sqlite3.connect(":memory:", check_same_thread=False)
        try:
            await self.connection.backup(scratch)
            return scratch.serialize()
        finally:
            scratch.close()

    def discard_image(self) -> None:
        """Drop the stored image without opening it."""
        self.kv.remove_item(self.image_key)

    # --- Helpers ---

    def _load_image(self) -> Optional[bytes]:
        stored = self.kv.get_item(self.image_key)
        if not stored:
            return None
        try:
            return base64.b64decode(stored, validate=True)
        except (binascii.Error, ValueError) as e:
            logger.warning("Stored image %s is not valid base64: %s", self.image_key, e)
            return None

    async def _connect(self, image: Optional[bytes]) -> aiosqlite.Connection:
        def connector() -> sqlite3.Connection:
            conn = sqlite3.connect(":memory:", isolation_level=None)
            if image is not None:
                conn.deserialize(image)
            conn.execute("PRAGMA foreign_keys=ON")
            return conn

        conn = await aiosqlite.Connection(connector, ITER_CHUNK_SIZE)
        conn.row_factory = aiosqlite.Row
        return conn
