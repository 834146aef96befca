import time
from typing import Iterable, List, Optional, Tuple

from ._base import BaseRepo

ITEM_COLUMNS = (
    "id", "round_id", "action", "status", "attempts", "error",
    "created_at", "started_at", "completed_at",
)

_SELECT = "SELECT " + ", ".join(ITEM_COLUMNS) + " FROM action_queue"


def _item_dict(row) -> dict:
    return dict(zip(ITEM_COLUMNS, row))


class ActionQueueRepo(BaseRepo):
    """Persistent per-round action queue plus the single-row pause switch."""

    async def enqueue_many(self, round_ids: Iterable[int], action: str) -> Tuple[int, int]:
        """Returns (queued, already_queued)."""
        now = time.time()
        params = [(rid, action, now) for rid in round_ids]
        if not params:
            return 0, 0
        async with self._atomic() as db:
            cursor = await db.executemany(
                "INSERT OR IGNORE INTO action_queue (round_id, action, status, created_at) "
                "VALUES (?, ?, 'pending', ?)",
                params,
            )
            queued = cursor.rowcount
        return queued, len(params) - queued

    async def claim_next(self) -> Optional[dict]:
        """Move the oldest pending item to processing, unless something is already processing."""
        now = time.time()
        async with self._atomic() as db:
            async with db.execute(
                "SELECT 1 FROM action_queue WHERE status = 'processing' LIMIT 1"
            ) as cursor:
                if await cursor.fetchone() is not None:
                    return None
            async with db.execute(
                "SELECT id FROM action_queue WHERE status = 'pending' ORDER BY id LIMIT 1"
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                return None
            await db.execute(
                "UPDATE action_queue SET status = 'processing', attempts = attempts + 1, "
                "started_at = ?, completed_at = NULL, error = NULL WHERE id = ? AND status = 'pending'",
                (now, row[0]),
            )
            async with db.execute(_SELECT + " WHERE id = ?", (row[0],)) as cursor:
                claimed = await cursor.fetchone()
        return _item_dict(claimed)

    async def complete(self, item_id: int) -> None:
        await self._write(
            "UPDATE action_queue SET status = 'completed', completed_at = ?, error = NULL WHERE id = ?",
            (time.time(), item_id),
        )

    async def fail(self, item_id: int, error: str) -> None:
        await self._write(
            "UPDATE action_queue SET status = 'failed', completed_at = ?, error = ? WHERE id = ?",
            (time.time(), error, item_id),
        )

    async def get(self, item_id: int) -> Optional[dict]:
        row = await self._fetchone(_SELECT + " WHERE id = ?", (item_id,))
        return _item_dict(row) if row else None

    async def processing(self) -> Optional[dict]:
        row = await self._fetchone(_SELECT + " WHERE status = 'processing' ORDER BY id LIMIT 1")
        return _item_dict(row) if row else None

    async def counts(self) -> dict:
        counts = {"pending": 0, "processing": 0, "completed": 0, "failed": 0}
        for status, n in await self._fetchall(
            "SELECT status, COUNT(*) FROM action_queue GROUP BY status"
        ):
            counts[status] = n
        return counts

    async def list_items(self, status: Optional[str] = None, page: int = 1, limit: int = 50) -> dict:
        where = ""
        params: tuple = ()
        if status:
            where = " WHERE status = ?"
            params = (status,)
        total = await self._scalar("SELECT COUNT(*) FROM action_queue" + where, params)
        rows = await self._fetchall(
            _SELECT + where + " ORDER BY id DESC LIMIT ? OFFSET ?",
            params + (limit, (page - 1) * limit),
        )
        return {
            "items": [_item_dict(r) for r in rows],
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": max(1, (total + limit - 1) // limit),
        }

    async def clear_pending(self) -> int:
        return await self._write("DELETE FROM action_queue WHERE status = 'pending'")

    async def retry_failed(self, max_attempts: int) -> int:
        # OR IGNORE: a failed row whose (round, action) is already queued again stays failed
        return await self._write(
            "UPDATE OR IGNORE action_queue SET status = 'pending', error = NULL, started_at = NULL, "
            "completed_at = NULL WHERE status = 'failed' AND attempts < ?",
            (max_attempts,),
        )

    async def sweep_stale(self, older_than_sec: float) -> int:
        cutoff = time.time() - older_than_sec
        return await self._write(
            "UPDATE OR IGNORE action_queue SET status = 'pending', started_at = NULL "
            "WHERE status = 'processing' AND started_at < ?",
            (cutoff,),
        )

    async def is_paused(self) -> bool:
        return bool(await self._scalar("SELECT paused FROM queue_control WHERE id = 1"))

    async def set_paused(self, paused: bool) -> None:
        await self._write(
            "INSERT INTO queue_control (id, paused, updated_at) VALUES (1, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET paused = excluded.paused, updated_at = excluded.updated_at",
            (1 if paused else 0, time.time()),
        )

    async def pending_round_ids(self, action: str) -> List[int]:
        rows = await self._fetchall(
            "SELECT round_id FROM action_queue WHERE action = ? AND status IN ('pending', 'processing')",
            (action,),
        )
        return [r[0] for r in rows]
