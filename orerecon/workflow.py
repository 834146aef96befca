"""
workflow.py - Per-round workflow state machine.

Stages, conventionally traversed in order:

    meta_fetched -> transactions_fetched -> reconstructed -> verified -> finalized

Each flag is set by one conditional UPDATE in WorkflowRepo. Preconditions are
checked up front for a descriptive WorkflowError, and the conditional UPDATE
re-checks them so a concurrent change cannot slip through. Once finalized, a
round only leaves that state through an administrative delete.
"""

import logging
from enum import Enum
from typing import TYPE_CHECKING, Iterable, List, Optional

from orerecon.analyzer import analyze_batch
from orerecon.errors import RoundNotFound, WorkflowError

if TYPE_CHECKING:
    from orerecon.finalizer import Finalizer
    from orerecon.helius import HeliusClient
    from orerecon.reconstruction import ReconstructionEngine
    from orerecon.storage import StorageManager

logger = logging.getLogger("workflow")


class FinalizeGate(str, Enum):
    ADVISORY = "advisory"
    BLOCK_INVALID = "block_invalid"
    REQUIRE_VERIFIED = "require_verified"


class RoundAction(str, Enum):
    FETCH_TXNS = "fetch_txns"
    RECONSTRUCT = "reconstruct"
    FINALIZE = "finalize"


# Workflow flag that marks each queued action as done
ACTION_DONE_FLAG = {
    RoundAction.FETCH_TXNS: "transactions_fetched",
    RoundAction.RECONSTRUCT: "reconstructed",
    RoundAction.FINALIZE: "finalized",
}


def _classify(analysis) -> tuple:
    """(tx_type, authority) for a stored raw transaction."""
    ore = analysis.ore_analysis
    if ore is None:
        return "other", ""
    if ore.deployments:
        return "deploy", ore.deployments[0].authority
    if ore.reset_count:
        return "reset", ""
    return "ore", ""


class RoundWorkflow:
    def __init__(
        self,
        storage: "StorageManager",
        helius: "HeliusClient",
        reconstruction: "ReconstructionEngine",
        finalizer: "Finalizer",
        finalize_gate: FinalizeGate = FinalizeGate.ADVISORY,
    ):
        self.storage = storage
        self.helius = helius
        self.reconstruction = reconstruction
        self.finalizer = finalizer
        self.finalize_gate = FinalizeGate(finalize_gate)

    async def _require_status(self, round_id: int) -> dict:
        status = await self.storage.workflow.get(round_id)
        if status is None:
            if await self.storage.rounds.exists(round_id):
                raise WorkflowError(f"Round {round_id} is not in the workflow")
            raise RoundNotFound(round_id)
        return status

    async def status(self, round_id: int) -> dict:
        status = await self._require_status(round_id)
        round_row = await self.storage.rounds.get(round_id)
        total_deployed = round_row["total_deployed"] if round_row else 0
        validity = await self.storage.analytics.round_validity(round_id, total_deployed)
        return {**status, "round": round_row, "analytics": validity}

    # -- stages ------------------------------------------------------------

    async def fetch_meta(self, round_id: int, summary: Optional[dict] = None) -> dict:
        if summary is not None:
            await self.storage.rounds.upsert({**summary, "round_id": round_id}, source="backfill")
        elif not await self.storage.rounds.exists(round_id):
            raise RoundNotFound(round_id)
        await self.storage.workflow.set_meta_fetched(round_id)
        logger.info("Round %d: metadata fetched", round_id)
        return await self.storage.workflow.get(round_id)

    async def fetch_transactions(self, round_id: int) -> dict:
        status = await self._require_status(round_id)
        if not status["meta_fetched"]:
            raise WorkflowError(f"Round {round_id}: metadata not fetched")
        round_row = await self.storage.rounds.get(round_id)
        if round_row is None:
            raise RoundNotFound(round_id)

        # UpstreamError propagates with the flag still unset
        txs = await self.helius.get_transactions_for_round(
            round_id, round_row["start_slot"], round_row["end_slot"]
        )

        analyses, _ = analyze_batch(txs, round_id)
        by_sig = {a.signature: a for a in analyses}
        entries = []
        for tx in txs:
            sigs = (tx.get("transaction") or {}).get("signatures") or []
            if not sigs:
                logger.warning("Round %d: skipping transaction without signature", round_id)
                continue
            analysis = by_sig.get(sigs[0])
            tx_type, authority = _classify(analysis) if analysis else ("unknown", "")
            entries.append({
                "signature": sigs[0],
                "slot": int(tx.get("slot") or 0),
                "block_time": tx.get("blockTime"),
                "tx_type": tx_type,
                "signer": analysis.signers[0] if analysis and analysis.signers else "",
                "authority": authority,
                "raw": tx,
            })

        inserted = await self.storage.raw_transactions.insert_many(round_id, entries)
        count = await self.storage.raw_transactions.count_for_round(round_id)
        if not await self.storage.workflow.mark_transactions_fetched(round_id, count):
            raise WorkflowError(f"Round {round_id}: metadata not fetched")
        logger.info("Round %d: %d transactions stored (%d new)", round_id, count, inserted)
        return {"round_id": round_id, "transaction_count": count, "inserted": inserted}

    async def reset_transactions(self, round_id: int) -> dict:
        status = await self._require_status(round_id)
        if not status["transactions_fetched"]:
            raise WorkflowError(f"Round {round_id}: transactions not fetched")
        if status["reconstructed"]:
            raise WorkflowError(f"Round {round_id}: already reconstructed")
        if not await self.storage.workflow.reset_transactions(round_id):
            raise WorkflowError(f"Round {round_id}: state changed, reset refused")
        logger.info("Round %d: transactions reset", round_id)
        return await self.storage.workflow.get(round_id)

    async def reconstruct(self, round_id: int) -> dict:
        status = await self._require_status(round_id)
        if not status["transactions_fetched"]:
            raise WorkflowError(f"Round {round_id}: transactions not fetched")
        result = await self.reconstruction.reconstruct(round_id)
        return result.to_dict()

    async def verify(self, round_id: int, notes: str = "", override: bool = False) -> dict:
        status = await self._require_status(round_id)
        if not status["reconstructed"]:
            raise WorkflowError(f"Round {round_id}: not reconstructed")
        if status["invalid"] and not override:
            raise WorkflowError(
                f"Round {round_id} is invalid (discrepancy {status['discrepancy']}); "
                "use override to verify anyway"
            )
        if not await self.storage.workflow.mark_verified(round_id, notes, override):
            raise WorkflowError(f"Round {round_id}: state changed, verify refused")
        logger.info("Round %d verified%s", round_id, " (override)" if override else "")
        return await self.storage.workflow.get(round_id)

    async def bulk_verify(self, start_round: int, end_round: int, notes: str = "") -> dict:
        if end_round < start_round:
            raise WorkflowError("end_round must be >= start_round")
        eligible, skipped = await self.storage.workflow.verify_candidates(start_round, end_round)
        verified = 0
        for round_id in eligible:
            if await self.storage.workflow.mark_verified(round_id, notes):
                verified += 1
            else:
                skipped += 1
        logger.info("Bulk verify %d-%d: %d verified, %d skipped", start_round, end_round, verified, skipped)
        return {"verified": verified, "skipped": skipped}

    async def finalize(self, round_id: int, override: bool = False) -> dict:
        status = await self._require_status(round_id)
        if not status["reconstructed"]:
            raise WorkflowError(f"Round {round_id}: not reconstructed")
        gate = self.finalize_gate
        if gate == FinalizeGate.BLOCK_INVALID and status["invalid"] and not override:
            raise WorkflowError(f"Round {round_id} is invalid; use override to finalize")
        if gate == FinalizeGate.REQUIRE_VERIFIED and not status["verified"] and not override:
            raise WorkflowError(f"Round {round_id} is not verified")
        if gate == FinalizeGate.ADVISORY and (status["invalid"] or not status["verified"]):
            logger.warning(
                "Round %d finalized while %s", round_id,
                "invalid" if status["invalid"] else "unverified",
            )
        return await self.finalizer.finalize(round_id)

    # -- administrative ----------------------------------------------------

    async def delete(self, round_id: int, delete_round: bool = False, delete_deployments: bool = False) -> dict:
        status = await self.storage.workflow.get(round_id)
        exists = await self.storage.rounds.exists(round_id)
        if status is None and not exists and not delete_deployments:
            raise RoundNotFound(round_id)

        removed_deployments = 0
        if delete_deployments:
            removed_deployments = await self.storage.analytics.delete_round(round_id)
        if delete_round:
            await self.storage.workflow.purge_round(round_id)
        elif status is not None:
            await self.storage.workflow.reset_to_meta(round_id)
        logger.info(
            "Round %d deleted (round=%s, deployments=%s)", round_id, delete_round, delete_deployments
        )
        return {
            "round_id": round_id,
            "round_deleted": delete_round,
            "deployments_deleted": removed_deployments,
            "workflow_reset": not delete_round and status is not None,
        }

    async def bulk_delete(
        self, round_ids: Iterable[int], delete_rounds: bool = False, delete_deployments: bool = False
    ) -> dict:
        deleted = 0
        not_found: List[int] = []
        for round_id in round_ids:
            try:
                await self.delete(round_id, delete_rounds, delete_deployments)
                deleted += 1
            except RoundNotFound:
                not_found.append(round_id)
        return {"deleted": deleted, "not_found": not_found}

    async def add_to_workflow(self, round_ids: List[int]) -> dict:
        existing = await self.storage.rounds.existing_ids(round_ids)
        added = await self.storage.workflow.add_many(existing)
        missing = sorted(set(round_ids) - set(existing))
        return {"added": added, "already_present": len(existing) - added, "not_found": missing}

    async def run_action(self, round_id: int, action: str) -> dict:
        action = RoundAction(action)
        if action == RoundAction.FETCH_TXNS:
            return await self.fetch_transactions(round_id)
        if action == RoundAction.RECONSTRUCT:
            return await self.reconstruct(round_id)
        return await self.finalize(round_id)
