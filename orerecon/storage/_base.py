import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional, Sequence

import aiosqlite

logger = logging.getLogger("storage")


class BaseRepo:
    """Shared connection plumbing: every write is serialized on one lock per connection."""

    def __init__(self, db: aiosqlite.Connection, lock: Optional[asyncio.Lock] = None):
        self._db = db
        self._lock = lock or asyncio.Lock()

    async def _write(self, sql: str, params: Sequence = ()) -> int:
        async with self._lock:
            try:
                cursor = await self._db.execute(sql, params)
            except Exception:
                await self._db.rollback()
                raise
            rowcount = cursor.rowcount
            await cursor.close()
            await self._db.commit()
        return rowcount

    @asynccontextmanager
    async def _atomic(self):
        async with self._lock:
            await self._db.execute("BEGIN IMMEDIATE")
            try:
                yield self._db
                await self._db.commit()
            except BaseException:
                try:
                    await self._db.execute("ROLLBACK")
                except Exception:
                    logger.exception("Rollback failed")
                raise

    async def _fetchone(self, sql: str, params: Sequence = ()):
        async with self._db.execute(sql, params) as cursor:
            return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: Sequence = ()) -> list:
        async with self._db.execute(sql, params) as cursor:
            return list(await cursor.fetchall())

    async def _scalar(self, sql: str, params: Sequence = (), default=0):
        row = await self._fetchone(sql, params)
        if row is None or row[0] is None:
            return default
        return row[0]
