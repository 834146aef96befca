"""
finalizer.py - Commit a round's staged deployments to the analytical store.

The round's previous deployment set is replaced inside a single
BEGIN IMMEDIATE transaction; a failure rolls back and leaves it intact.
Only after the analytical write succeeds is the round marked finalized.
"""

import logging
from typing import TYPE_CHECKING

from orerecon.errors import RoundNotFound, WorkflowError

if TYPE_CHECKING:
    from orerecon.storage import StorageManager

logger = logging.getLogger("finalizer")


class Finalizer:
    def __init__(self, storage: "StorageManager"):
        self.storage = storage

    async def finalize(self, round_id: int) -> dict:
        round_row = await self.storage.rounds.get(round_id)
        if round_row is None:
            raise RoundNotFound(round_id)

        staged = await self.storage.staged.list_for_round(round_id)
        winning_square = round_row["winning_square"]
        top_miner = round_row["top_miner"]
        deployments = [
            {
                **d,
                "ore_earned": 0,
                "sol_earned": 0,
                "is_winner": d["square_id"] == winning_square,
                "is_top_miner": bool(top_miner) and d["miner_pubkey"] == top_miner,
            }
            for d in staged
        ]

        try:
            await self.storage.analytics.replace_round(round_row, deployments)
        except Exception:
            logger.exception("Finalize failed for round %d; previous deployments kept", round_id)
            raise

        if not await self.storage.workflow.mark_finalized(round_id):
            raise WorkflowError(f"Round {round_id}: cannot mark finalized before reconstruction")

        validity = await self.storage.analytics.round_validity(round_id, round_row["total_deployed"])
        logger.info(
            "Round %d finalized: %d deployments, %d lamports (valid=%s)",
            round_id, validity["deployment_count"], validity["deployments_sum"], validity["is_valid"],
        )
        return {"round_id": round_id, **validity}
