"""
reconstruction.py - Rebuild one round's deployment ledger from stored transactions.

Runs the analyzer over every raw transaction of the round, reconciles the
instruction-derived deployments against the log-derived ones and the
reported round total, and stages one row per (miner, square) with the summed
amount and earliest slot. Deploys that no log line confirmed are handed to
the automation queue.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Tuple

from orerecon.analyzer import AnalysisFailure, OreDeploymentInfo, TransactionAnalysis, analyze_batch
from orerecon.errors import RoundNotFound
from orerecon.pda import automation_pda
from orerecon.reconciler import ReconciliationReport, reconcile_round

if TYPE_CHECKING:
    from orerecon.storage import StorageManager

logger = logging.getLogger("workflow")


@dataclass
class ReconstructionResult:
    round_id: int
    transactions: int
    failures: List[AnalysisFailure]
    deployment_count: int
    automation_enqueued: int
    report: ReconciliationReport
    parse_errors: int = 0
    staged: List[Tuple[str, int, int, int]] = field(default_factory=list)

    @property
    def missing_deployments(self) -> bool:
        return self.deployment_count == 0

    def to_dict(self) -> dict:
        return {
            "round_id": self.round_id,
            "transactions": self.transactions,
            "analysis_failures": [
                {"signature": f.signature, "slot": f.slot, "error": f.error} for f in self.failures
            ],
            "parse_errors": self.parse_errors,
            "deployment_count": self.deployment_count,
            "missing_deployments": self.missing_deployments,
            "automation_enqueued": self.automation_enqueued,
            "reconciliation": self.report.to_dict(),
        }


def counted_deployments(analyses: List[TransactionAnalysis]) -> List[OreDeploymentInfo]:
    """Deploys that count toward the round: successful and aimed at the expected round."""
    out = []
    for a in analyses:
        if a.ore_analysis is None:
            continue
        out.extend(d for d in a.ore_analysis.deployments if d.success and d.round_matches)
    return out


def aggregate_deployments(deploys: List[OreDeploymentInfo]) -> List[Tuple[str, int, int, int]]:
    """Collapse deploys to (miner, square, total amount, earliest slot) rows."""
    cells: Dict[Tuple[str, int], List[int]] = {}
    for d in deploys:
        for square in d.squares:
            cell = cells.get((d.authority, square))
            if cell is None:
                cells[(d.authority, square)] = [d.amount_per_square, d.slot]
            else:
                cell[0] += d.amount_per_square
                cell[1] = min(cell[1], d.slot)
    return [(miner, square, v[0], v[1]) for (miner, square), v in sorted(cells.items())]


class ReconstructionEngine:
    def __init__(self, storage: "StorageManager"):
        self.storage = storage

    async def reconstruct(self, round_id: int) -> ReconstructionResult:
        round_row = await self.storage.rounds.get(round_id)
        if round_row is None:
            raise RoundNotFound(round_id)

        raw = await self.storage.raw_transactions.list_for_round(round_id)
        analyses, failures = analyze_batch(raw, round_id)
        report = reconcile_round(analyses, round_row["total_deployed"], round_id)
        deploys = counted_deployments(analyses)
        staged = aggregate_deployments(deploys)

        await self.storage.workflow.record_reconstruction(
            round_id,
            staged,
            {
                "parsed_total": report.parsed_total,
                "logged_total": report.logged_total,
                "logged_vs_parsed_diff": report.logged_vs_parsed_diff,
                "discrepancy": report.discrepancy,
                "unmatched_logged": len(report.unmatched_logged),
                "invalid": report.invalid,
            },
        )

        enqueued = 0
        for d in deploys:
            if d.matched_logged:
                continue
            added = await self.storage.automation_queue.enqueue(
                round_id=round_id,
                miner_pubkey=d.miner,
                authority_pubkey=d.authority,
                automation_pda=automation_pda(d.authority),
                deploy_signature=d.signature,
                deploy_ix_index=d.ix_index,
                deploy_slot=d.slot,
            )
            if added:
                enqueued += 1

        parse_errors = sum(len(a.parse_errors) for a in analyses)
        if report.unmatched_logged:
            logger.warning(
                "Round %d: %d logged deployments have no decoded counterpart",
                round_id, len(report.unmatched_logged),
            )
        if report.invalid:
            logger.warning(
                "Round %d invalid: reported %d, parsed %d (discrepancy %d)",
                round_id, report.reported_total, report.parsed_total, report.discrepancy,
            )
        logger.info(
            "Round %d reconstructed: %d txs, %d failures, %d deployments, %d automation lookups",
            round_id, len(raw), len(failures), len(staged), enqueued,
        )

        return ReconstructionResult(
            round_id=round_id,
            transactions=len(raw),
            failures=failures,
            deployment_count=len(staged),
            automation_enqueued=enqueued,
            report=report,
            parse_errors=parse_errors,
            staged=staged,
        )

    async def unmatched_deploys(self, round_id: int) -> List[OreDeploymentInfo]:
        """Counted deploys of a stored round with no matching deploy log."""
        raw = await self.storage.raw_transactions.list_for_round(round_id)
        analyses, _ = analyze_batch(raw, round_id)
        reconcile_round(analyses, None, round_id)
        return [d for d in counted_deployments(analyses) if not d.matched_logged]
