from typing import List

from ._base import BaseRepo


class StagedDeploymentRepo(BaseRepo):
    """Read side of the candidate deployments; writes happen in WorkflowRepo.record_reconstruction."""

    async def list_for_round(self, round_id: int) -> List[dict]:
        results = []
        async with self._db.execute(
            "SELECT miner_pubkey, square_id, amount, deployed_slot FROM staged_deployments "
            "WHERE round_id = ? ORDER BY miner_pubkey, square_id",
            (round_id,),
        ) as cursor:
            async for row in cursor:
                results.append({
                    "round_id": round_id,
                    "miner_pubkey": row[0],
                    "square_id": row[1],
                    "amount": row[2],
                    "deployed_slot": row[3],
                })
        return results

    async def totals(self, round_id: int) -> dict:
        row = await self._fetchone(
            "SELECT COUNT(*), COALESCE(SUM(amount), 0), COUNT(DISTINCT miner_pubkey) "
            "FROM staged_deployments WHERE round_id = ?",
            (round_id,),
        )
        return {"deployment_count": row[0], "deployments_sum": row[1], "unique_miners": row[2]}
