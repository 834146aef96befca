import time
from typing import List

from ._base import BaseRepo


class AnalyticsRepo(BaseRepo):
    """Finalized facts. Only the finalizer and administrative deletes write here."""

    async def replace_round(self, round_row: dict, deployments: List[dict]) -> None:
        """Swap a round's whole deployment set and upsert its round row, all or nothing."""
        round_id = round_row["round_id"]
        async with self._atomic() as db:
            await db.execute("DELETE FROM deployments WHERE round_id = ?", (round_id,))
            await db.executemany(
                "INSERT INTO deployments (round_id, miner_pubkey, square_id, amount, deployed_slot, "
                "ore_earned, sol_earned, is_winner, is_top_miner) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        round_id,
                        d["miner_pubkey"],
                        d["square_id"],
                        d["amount"],
                        d.get("deployed_slot", 0),
                        d.get("ore_earned", 0),
                        d.get("sol_earned", 0),
                        1 if d.get("is_winner") else 0,
                        1 if d.get("is_top_miner") else 0,
                    )
                    for d in deployments
                ],
            )
            await db.execute(
                "INSERT OR REPLACE INTO finalized_rounds (round_id, start_slot, end_slot, "
                "winning_square, top_miner, total_deployed, total_winnings, motherlode, "
                "motherlode_hit, unique_miners, deployment_count, deployments_sum, source, "
                "finalized_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    round_id,
                    round_row.get("start_slot", 0),
                    round_row.get("end_slot", 0),
                    round_row.get("winning_square", 0),
                    round_row.get("top_miner", ""),
                    round_row.get("total_deployed", 0),
                    round_row.get("total_winnings", 0),
                    round_row.get("motherlode", 0),
                    1 if round_row.get("motherlode_hit") else 0,
                    len({d["miner_pubkey"] for d in deployments}),
                    len(deployments),
                    sum(d["amount"] for d in deployments),
                    round_row.get("source", "backfill"),
                    time.time(),
                ),
            )

    async def delete_round(self, round_id: int) -> int:
        async with self._atomic() as db:
            cursor = await db.execute("DELETE FROM deployments WHERE round_id = ?", (round_id,))
            removed = cursor.rowcount
            await db.execute("DELETE FROM finalized_rounds WHERE round_id = ?", (round_id,))
        return removed

    async def list_deployments(self, round_id: int) -> List[dict]:
        results = []
        async with self._db.execute(
            "SELECT miner_pubkey, square_id, amount, deployed_slot, ore_earned, sol_earned, "
            "is_winner, is_top_miner FROM deployments WHERE round_id = ? "
            "ORDER BY square_id, miner_pubkey",
            (round_id,),
        ) as cursor:
            async for row in cursor:
                results.append({
                    "round_id": round_id,
                    "miner_pubkey": row[0],
                    "square_id": row[1],
                    "amount": row[2],
                    "deployed_slot": row[3],
                    "ore_earned": row[4],
                    "sol_earned": row[5],
                    "is_winner": bool(row[6]),
                    "is_top_miner": bool(row[7]),
                })
        return results

    async def round_validity(self, round_id: int, total_deployed: int) -> dict:
        row = await self._fetchone(
            "SELECT COUNT(*), COALESCE(SUM(amount), 0) FROM deployments WHERE round_id = ?",
            (round_id,),
        )
        count, total = row[0], row[1]
        return {
            "deployment_count": count,
            "deployments_sum": total,
            "total_deployed": total_deployed,
            "is_valid": count > 0 and total == total_deployed,
            "discrepancy": total_deployed - total,
        }

    async def stats(self) -> dict:
        deploy_row = await self._fetchone(
            "SELECT COUNT(*), COALESCE(SUM(amount), 0), COUNT(DISTINCT miner_pubkey) FROM deployments"
        )
        rounds_row = await self._fetchone(
            "SELECT COUNT(*), MIN(round_id), MAX(round_id) FROM finalized_rounds"
        )
        page_count = await self._scalar("PRAGMA page_count")
        page_size = await self._scalar("PRAGMA page_size")
        freelist = await self._scalar("PRAGMA freelist_count")
        return {
            "deployment_count": deploy_row[0],
            "total_deployed": deploy_row[1],
            "unique_miners": deploy_row[2],
            "finalized_rounds": rounds_row[0],
            "min_round": rounds_row[1],
            "max_round": rounds_row[2],
            "storage": {
                "page_count": page_count,
                "page_size": page_size,
                "freelist_count": freelist,
                "size_bytes": page_count * page_size,
            },
        }
