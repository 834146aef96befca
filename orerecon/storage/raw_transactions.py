import json
import time
from typing import List, Optional

from ._base import BaseRepo


class RawTransactionRepo(BaseRepo):
    """Raw fetched transactions. Rows are never updated; duplicate signatures are ignored."""

    async def insert_many(self, round_id: int, entries: List[dict]) -> int:
        """Store raw transactions; returns how many were new.

        Each entry carries signature, slot, block_time, tx_type, signer, authority and
        `raw` (the decoded JSON transaction).
        """
        if not entries:
            return 0
        now = time.time()
        params = [
            (
                e["signature"],
                round_id,
                e.get("slot", 0),
                e.get("block_time") or 0,
                e.get("tx_type", "deploy"),
                e.get("signer", ""),
                e.get("authority", ""),
                json.dumps(e["raw"], separators=(",", ":")),
                now,
            )
            for e in entries
        ]
        async with self._atomic() as db:
            cursor = await db.executemany(
                "INSERT OR IGNORE INTO raw_transactions (signature, round_id, slot, block_time, "
                "tx_type, signer, authority, raw_json, fetched_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                params,
            )
            inserted = cursor.rowcount
        return inserted

    async def list_for_round(self, round_id: int) -> List[dict]:
        """Decoded raw payloads in slot order."""
        rows = await self._fetchall(
            "SELECT raw_json FROM raw_transactions WHERE round_id = ? ORDER BY slot, signature",
            (round_id,),
        )
        return [json.loads(r[0]) for r in rows]

    async def count_for_round(self, round_id: int) -> int:
        return await self._scalar(
            "SELECT COUNT(*) FROM raw_transactions WHERE round_id = ?", (round_id,)
        )

    async def get(self, signature: str) -> Optional[dict]:
        row = await self._fetchone(
            "SELECT signature, round_id, slot, block_time, tx_type, signer, authority, raw_json, "
            "fetched_at FROM raw_transactions WHERE signature = ?",
            (signature,),
        )
        if row is None:
            return None
        return {
            "signature": row[0],
            "round_id": row[1],
            "slot": row[2],
            "block_time": row[3],
            "tx_type": row[4],
            "signer": row[5],
            "authority": row[6],
            "raw": json.loads(row[7]),
            "fetched_at": row[8],
        }

    async def list_page(self, round_id: int, page: int = 1, limit: int = 50) -> dict:
        total = await self.count_for_round(round_id)
        items = []
        async with self._db.execute(
            "SELECT signature, slot, block_time, tx_type, signer, authority, raw_json "
            "FROM raw_transactions WHERE round_id = ? ORDER BY slot, signature LIMIT ? OFFSET ?",
            (round_id, limit, (page - 1) * limit),
        ) as cursor:
            async for row in cursor:
                items.append({
                    "signature": row[0],
                    "slot": row[1],
                    "block_time": row[2],
                    "tx_type": row[3],
                    "signer": row[4],
                    "authority": row[5],
                    "raw": json.loads(row[6]),
                })
        return {
            "items": items,
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": max(1, (total + limit - 1) // limit),
        }
