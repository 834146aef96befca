import time
from typing import List, Optional, Tuple

from ._base import BaseRepo

ROUND_COLUMNS = (
    "round_id", "start_slot", "end_slot", "winning_square", "top_miner",
    "total_deployed", "total_vaulted", "total_winnings", "total_minted",
    "unique_miners", "motherlode", "motherlode_hit", "source", "ts", "created_at",
)

_SELECT = "SELECT " + ", ".join(ROUND_COLUMNS) + " FROM rounds"

# Columns joined in from round_status for list views
_STATUS_COLUMNS = (
    "meta_fetched", "transactions_fetched", "transaction_count", "reconstructed",
    "deployment_count", "parsed_total", "discrepancy", "invalid", "verified", "finalized",
)

FILTER_MODES = ("all", "missing_deployments", "invalid_deployments")


def _round_dict(row) -> dict:
    d = dict(zip(ROUND_COLUMNS, row))
    d["motherlode_hit"] = bool(d["motherlode_hit"])
    return d


class RoundRepo(BaseRepo):
    """Round metadata: upsert from the feed, listings and gap detection."""

    async def upsert(self, summary: dict, source: str = "backfill") -> None:
        now = time.time()
        await self._write(
            "INSERT INTO rounds (round_id, start_slot, end_slot, winning_square, top_miner, "
            "total_deployed, total_vaulted, total_winnings, total_minted, unique_miners, "
            "motherlode, motherlode_hit, source, ts, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(round_id) DO UPDATE SET "
            "start_slot = excluded.start_slot, end_slot = excluded.end_slot, "
            "winning_square = excluded.winning_square, top_miner = excluded.top_miner, "
            "total_deployed = excluded.total_deployed, total_vaulted = excluded.total_vaulted, "
            "total_winnings = excluded.total_winnings, total_minted = excluded.total_minted, "
            "unique_miners = excluded.unique_miners, motherlode = excluded.motherlode, "
            "motherlode_hit = excluded.motherlode_hit, ts = excluded.ts",
            (
                summary["round_id"],
                summary.get("start_slot", 0),
                summary.get("end_slot", 0),
                summary.get("winning_square", 0),
                summary.get("top_miner", ""),
                summary.get("total_deployed", 0),
                summary.get("total_vaulted", 0),
                summary.get("total_winnings", 0),
                summary.get("total_minted", 0),
                summary.get("unique_miners", 0),
                summary.get("motherlode", 0),
                1 if summary.get("motherlode_hit") else 0,
                source,
                summary.get("ts", 0),
                now,
            ),
        )

    async def get(self, round_id: int) -> Optional[dict]:
        row = await self._fetchone(_SELECT + " WHERE round_id = ?", (round_id,))
        return _round_dict(row) if row else None

    async def exists(self, round_id: int) -> bool:
        row = await self._fetchone("SELECT 1 FROM rounds WHERE round_id = ?", (round_id,))
        return row is not None

    async def existing_ids(self, round_ids: List[int]) -> List[int]:
        if not round_ids:
            return []
        marks = ", ".join("?" for _ in round_ids)
        rows = await self._fetchall(
            f"SELECT round_id FROM rounds WHERE round_id IN ({marks}) ORDER BY round_id",
            tuple(round_ids),
        )
        return [r[0] for r in rows]

    async def delete(self, round_id: int) -> int:
        return await self._write("DELETE FROM rounds WHERE round_id = ?", (round_id,))

    async def bounds(self) -> Tuple[Optional[int], Optional[int]]:
        row = await self._fetchone("SELECT MIN(round_id), MAX(round_id) FROM rounds")
        return (row[0], row[1]) if row else (None, None)

    async def count(self) -> int:
        return await self._scalar("SELECT COUNT(*) FROM rounds")

    def _filter_clause(self, filter_mode: str) -> str:
        if filter_mode == "missing_deployments":
            return "r.total_deployed > 0 AND COALESCE(s.deployment_count, 0) = 0"
        if filter_mode == "invalid_deployments":
            return "COALESCE(s.invalid, 0) = 1"
        return "1 = 1"

    async def count_filtered(self, filter_mode: str) -> int:
        return await self._scalar(
            "SELECT COUNT(*) FROM rounds r LEFT JOIN round_status s ON s.round_id = r.round_id "
            f"WHERE {self._filter_clause(filter_mode)}"
        )

    async def list_page(
        self,
        filter_mode: str = "all",
        limit: int = 50,
        page: int = 1,
        before: Optional[int] = None,
        round_id_gte: Optional[int] = None,
        round_id_lte: Optional[int] = None,
    ) -> dict:
        """Newest-first page of rounds joined with workflow state.

        `before` switches to cursor paging (round_id < before) and ignores `page`.
        """
        where = [self._filter_clause(filter_mode)]
        params: list = []
        if round_id_gte is not None:
            where.append("r.round_id >= ?")
            params.append(round_id_gte)
        if round_id_lte is not None:
            where.append("r.round_id <= ?")
            params.append(round_id_lte)
        base_where = " AND ".join(where)
        base_from = "FROM rounds r LEFT JOIN round_status s ON s.round_id = r.round_id"

        total = await self._scalar(f"SELECT COUNT(*) {base_from} WHERE {base_where}", tuple(params))

        page_where = base_where
        page_params = list(params)
        offset = (page - 1) * limit
        if before is not None:
            page_where += " AND r.round_id < ?"
            page_params.append(before)
            offset = 0

        cols = ", ".join("r." + c for c in ROUND_COLUMNS)
        status_cols = ", ".join(f"COALESCE(s.{c}, 0)" for c in _STATUS_COLUMNS)
        rows = await self._fetchall(
            f"SELECT {cols}, s.round_id IS NOT NULL, {status_cols} {base_from} "
            f"WHERE {page_where} ORDER BY r.round_id DESC LIMIT ? OFFSET ?",
            tuple(page_params) + (limit, offset),
        )
        items = []
        n = len(ROUND_COLUMNS)
        for row in rows:
            item = _round_dict(row[:n])
            item["in_workflow"] = bool(row[n])
            for name, value in zip(_STATUS_COLUMNS, row[n + 1:]):
                item[name] = value
            for flag in ("meta_fetched", "transactions_fetched", "reconstructed",
                         "invalid", "verified", "finalized"):
                item[flag] = bool(item[flag])
            items.append(item)

        return {
            "items": items,
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": max(1, (total + limit - 1) // limit),
            "next_cursor": items[-1]["round_id"] if len(items) == limit else None,
        }

    async def gaps(self) -> List[Tuple[int, int]]:
        """Inclusive (start, end) ranges of ids absent between the stored min and max."""
        rows = await self._fetchall(
            "SELECT round_id, next_id FROM ("
            "  SELECT round_id, LEAD(round_id) OVER (ORDER BY round_id) AS next_id FROM rounds"
            ") WHERE next_id IS NOT NULL AND next_id > round_id + 1 ORDER BY round_id DESC"
        )
        return [(r[0] + 1, r[1] - 1) for r in rows]

    async def missing_page(self, page: int = 1, limit: int = 100) -> dict:
        gaps = await self.gaps()
        total = sum(end - start + 1 for start, end in gaps)
        skip = (page - 1) * limit
        ids: List[int] = []
        # newest gaps first, each gap walked downwards
        for start, end in gaps:
            size = end - start + 1
            if skip >= size:
                skip -= size
                continue
            rid = end - skip
            skip = 0
            while rid >= start and len(ids) < limit:
                ids.append(rid)
                rid -= 1
            if len(ids) >= limit:
                break
        return {
            "items": ids,
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": max(1, (total + limit - 1) // limit),
        }

    async def stats(self) -> dict:
        min_id, max_id = await self.bounds()
        total = await self.count()
        gaps = await self.gaps()
        return {
            "total_rounds": total,
            "missing_deployments_count": await self.count_filtered("missing_deployments"),
            "invalid_deployments_count": await self.count_filtered("invalid_deployments"),
            "missing_rounds_count": sum(end - start + 1 for start, end in gaps),
            "min_stored_round": min_id,
            "max_stored_round": max_id,
        }
