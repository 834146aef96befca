import time
from typing import Dict, Iterable, List, Optional, Tuple

from orerecon.errors import WorkflowError

from ._base import BaseRepo

STATUS_COLUMNS = (
    "round_id", "meta_fetched", "meta_fetched_at", "transactions_fetched",
    "transactions_fetched_at", "transaction_count", "reconstructed", "reconstructed_at",
    "deployment_count", "parsed_total", "logged_total", "logged_vs_parsed_diff",
    "discrepancy", "unmatched_logged", "invalid", "verified", "verified_at",
    "verification_notes", "finalized", "finalized_at", "updated_at",
)

FLAG_COLUMNS = ("meta_fetched", "transactions_fetched", "reconstructed", "invalid", "verified", "finalized")

_SELECT = "SELECT " + ", ".join(STATUS_COLUMNS) + " FROM round_status"

# Complete: finalized with at least one deployment
COMPLETE_PREDICATE = "finalized = 1 AND deployment_count > 0"


def _status_dict(row) -> dict:
    d = dict(zip(STATUS_COLUMNS, row))
    for flag in FLAG_COLUMNS:
        d[flag] = bool(d[flag])
    return d


class WorkflowRepo(BaseRepo):
    """Per-round stage flags. Each transition is one conditional UPDATE; callers check the rowcount."""

    async def get(self, round_id: int) -> Optional[dict]:
        row = await self._fetchone(_SELECT + " WHERE round_id = ?", (round_id,))
        return _status_dict(row) if row else None

    async def get_many(self, start_round: int, end_round: int) -> Dict[int, dict]:
        rows = await self._fetchall(
            _SELECT + " WHERE round_id BETWEEN ? AND ? ORDER BY round_id",
            (start_round, end_round),
        )
        return {row[0]: _status_dict(row) for row in rows}

    async def set_meta_fetched(self, round_id: int) -> None:
        now = time.time()
        await self._write(
            "INSERT INTO round_status (round_id, meta_fetched, meta_fetched_at, updated_at) "
            "VALUES (?, 1, ?, ?) "
            "ON CONFLICT(round_id) DO UPDATE SET meta_fetched = 1, "
            "meta_fetched_at = COALESCE(round_status.meta_fetched_at, excluded.meta_fetched_at), "
            "updated_at = excluded.updated_at",
            (round_id, now, now),
        )

    async def add_many(self, round_ids: Iterable[int]) -> int:
        """Register rounds with meta_fetched set; existing rows are left alone."""
        now = time.time()
        params = [(rid, now, now) for rid in round_ids]
        if not params:
            return 0
        async with self._atomic() as db:
            cursor = await db.executemany(
                "INSERT OR IGNORE INTO round_status (round_id, meta_fetched, meta_fetched_at, updated_at) "
                "VALUES (?, 1, ?, ?)",
                params,
            )
            added = cursor.rowcount
        return added

    async def mark_transactions_fetched(self, round_id: int, transaction_count: int) -> bool:
        now = time.time()
        changed = await self._write(
            "UPDATE round_status SET transactions_fetched = 1, transactions_fetched_at = ?, "
            "transaction_count = ?, updated_at = ? WHERE round_id = ? AND meta_fetched = 1",
            (now, transaction_count, now, round_id),
        )
        return changed == 1

    async def reset_transactions(self, round_id: int) -> bool:
        changed = await self._write(
            "UPDATE round_status SET transactions_fetched = 0, transactions_fetched_at = NULL, "
            "transaction_count = 0, reconstructed = 0, reconstructed_at = NULL, updated_at = ? "
            "WHERE round_id = ? AND transactions_fetched = 1 AND reconstructed = 0",
            (time.time(), round_id),
        )
        return changed == 1

    async def record_reconstruction(
        self,
        round_id: int,
        deployments: List[Tuple[str, int, int, int]],
        report: dict,
    ) -> None:
        """Replace staged deployments and set the reconstruction fields in one transaction.

        `deployments` rows are (miner_pubkey, square_id, amount, deployed_slot).
        """
        now = time.time()
        async with self._atomic() as db:
            cursor = await db.execute(
                "UPDATE round_status SET reconstructed = 1, reconstructed_at = ?, "
                "deployment_count = ?, parsed_total = ?, logged_total = ?, "
                "logged_vs_parsed_diff = ?, discrepancy = ?, unmatched_logged = ?, invalid = ?, "
                "verified = 0, verified_at = NULL, updated_at = ? "
                "WHERE round_id = ? AND transactions_fetched = 1",
                (
                    now,
                    len(deployments),
                    report["parsed_total"],
                    report["logged_total"],
                    report["logged_vs_parsed_diff"],
                    report["discrepancy"],
                    report["unmatched_logged"],
                    1 if report["invalid"] else 0,
                    now,
                    round_id,
                ),
            )
            if cursor.rowcount != 1:
                raise WorkflowError(f"Round {round_id}: transactions not fetched")
            await db.execute("DELETE FROM staged_deployments WHERE round_id = ?", (round_id,))
            await db.executemany(
                "INSERT INTO staged_deployments (round_id, miner_pubkey, square_id, amount, deployed_slot) "
                "VALUES (?, ?, ?, ?, ?)",
                [(round_id,) + tuple(d) for d in deployments],
            )

    async def mark_verified(self, round_id: int, notes: str = "", override: bool = False) -> bool:
        now = time.time()
        changed = await self._write(
            "UPDATE round_status SET verified = 1, verified_at = ?, verification_notes = ?, "
            "updated_at = ? WHERE round_id = ? AND reconstructed = 1 AND (invalid = 0 OR ? = 1)",
            (now, notes or "", now, round_id, 1 if override else 0),
        )
        return changed == 1

    async def verify_candidates(self, start_round: int, end_round: int) -> Tuple[List[int], int]:
        """Rounds eligible for bulk verify, plus how many workflow rows in range are not."""
        rows = await self._fetchall(
            "SELECT round_id FROM round_status WHERE round_id BETWEEN ? AND ? "
            "AND reconstructed = 1 AND invalid = 0 AND verified = 0 AND discrepancy = 0 "
            "ORDER BY round_id",
            (start_round, end_round),
        )
        total = await self._scalar(
            "SELECT COUNT(*) FROM round_status WHERE round_id BETWEEN ? AND ?",
            (start_round, end_round),
        )
        eligible = [r[0] for r in rows]
        return eligible, total - len(eligible)

    async def mark_finalized(self, round_id: int) -> bool:
        now = time.time()
        changed = await self._write(
            "UPDATE round_status SET finalized = 1, finalized_at = ?, updated_at = ? "
            "WHERE round_id = ? AND reconstructed = 1",
            (now, now, round_id),
        )
        return changed == 1

    async def reset_to_meta(self, round_id: int) -> bool:
        """Administrative: back to metadata-only; ignores the usual transition rules."""
        now = time.time()
        changed = await self._write(
            "UPDATE round_status SET meta_fetched = 1, transactions_fetched = 0, "
            "transactions_fetched_at = NULL, transaction_count = 0, reconstructed = 0, "
            "reconstructed_at = NULL, deployment_count = 0, parsed_total = 0, logged_total = 0, "
            "logged_vs_parsed_diff = 0, discrepancy = 0, unmatched_logged = 0, invalid = 0, "
            "verified = 0, verified_at = NULL, verification_notes = '', finalized = 0, "
            "finalized_at = NULL, updated_at = ? WHERE round_id = ?",
            (now, round_id),
        )
        return changed == 1

    async def purge_round(self, round_id: int) -> None:
        """Remove every row-store trace of a round."""
        async with self._atomic() as db:
            await db.execute("DELETE FROM staged_deployments WHERE round_id = ?", (round_id,))
            await db.execute("DELETE FROM raw_transactions WHERE round_id = ?", (round_id,))
            await db.execute("DELETE FROM round_status WHERE round_id = ?", (round_id,))
            await db.execute("DELETE FROM rounds WHERE round_id = ?", (round_id,))

    async def is_complete(self, round_id: int) -> bool:
        row = await self._fetchone(
            f"SELECT 1 FROM round_status WHERE round_id = ? AND {COMPLETE_PREDICATE}",
            (round_id,),
        )
        return row is not None

    async def complete_floor(self, below: int) -> int:
        """Lowest f such that every id in [f, below) is complete; `below` if below-1 is not."""
        floor = below
        async with self._db.execute(
            f"SELECT round_id FROM round_status WHERE round_id < ? AND {COMPLETE_PREDICATE} "
            "ORDER BY round_id DESC",
            (below,),
        ) as cursor:
            async for row in cursor:
                if row[0] != floor - 1:
                    break
                floor = row[0]
        return floor

    async def list_pending(self, limit: int = 100) -> List[dict]:
        rows = await self._fetchall(
            _SELECT + " WHERE finalized = 0 ORDER BY round_id DESC LIMIT ?", (limit,)
        )
        return [_status_dict(r) for r in rows]

    async def pipeline_stats(self) -> dict:
        row = await self._fetchone(
            "SELECT COUNT(*), "
            "COALESCE(SUM(meta_fetched), 0), COALESCE(SUM(transactions_fetched), 0), "
            "COALESCE(SUM(reconstructed), 0), COALESCE(SUM(verified), 0), "
            "COALESCE(SUM(finalized), 0), COALESCE(SUM(invalid), 0), "
            "COALESCE(SUM(CASE WHEN reconstructed = 1 AND deployment_count = 0 THEN 1 ELSE 0 END), 0) "
            "FROM round_status"
        )
        return {
            "total": row[0],
            "meta_fetched": row[1],
            "transactions_fetched": row[2],
            "reconstructed": row[3],
            "verified": row[4],
            "finalized": row[5],
            "invalid": row[6],
            "missing_deployments": row[7],
        }
