"""
reconciler.py - Logged vs. parsed deployment reconciliation.

Matches each LoggedDeployment to a parsed OreDeploymentInfo with the same
(authority, round_id, total lamports), greedily and consuming each parsed
record at most once, so reordered and duplicated log lines are tolerated.
Totals only count successful transactions scoped to the expected round.

Reconciliation never raises on mismatch: results carry discrepancy fields
and an invalid flag for the workflow/operator layer to act on.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from orerecon.analyzer import LoggedDeployment, OreDeploymentInfo, TransactionAnalysis


@dataclass
class ReconciliationReport:
    round_id: Optional[int]
    parsed_count: int
    logged_count: int
    matched_count: int
    parsed_total: int
    logged_total: int
    logged_vs_parsed_diff: int
    reported_total: Optional[int]
    discrepancy: int
    logged_discrepancy: Optional[int]
    invalid: bool
    unmatched_logged: List[LoggedDeployment] = field(default_factory=list)
    unmatched_parsed: List[OreDeploymentInfo] = field(default_factory=list)

    @property
    def missing_deployments(self) -> bool:
        return self.parsed_count == 0

    def to_dict(self) -> dict:
        return {
            "round_id": self.round_id,
            "parsed_count": self.parsed_count,
            "logged_count": self.logged_count,
            "matched_count": self.matched_count,
            "parsed_total": self.parsed_total,
            "logged_total": self.logged_total,
            "logged_vs_parsed_diff": self.logged_vs_parsed_diff,
            "reported_total": self.reported_total,
            "discrepancy": self.discrepancy,
            "logged_discrepancy": self.logged_discrepancy,
            "invalid": self.invalid,
            "unmatched_logged": [
                {"signature": l.signature, "authority": l.authority,
                 "round_id": l.round_id, "total_lamports": l.total_lamports}
                for l in self.unmatched_logged
            ],
            "unmatched_parsed": [
                {"signature": p.signature, "ix_index": p.ix_index, "authority": p.authority,
                 "total_lamports": p.total_lamports}
                for p in self.unmatched_parsed
            ],
        }


def _counted(rec) -> bool:
    return rec.success and rec.round_matches


def match_deployments(
    parsed: List[OreDeploymentInfo], logged: List[LoggedDeployment]
) -> int:
    """Greedy match; sets matched flags in place and returns the match count."""
    buckets: Dict[Tuple[str, Optional[int], int], List[OreDeploymentInfo]] = {}
    for p in parsed:
        p.matched_logged = False
        buckets.setdefault((p.authority, p.round_id, p.total_lamports), []).append(p)
    matched = 0
    for l in logged:
        l.matched_parsed = False
        if l.authority is None:
            continue
        candidates = buckets.get((l.authority, l.round_id, l.total_lamports))
        if candidates:
            p = candidates.pop(0)
            p.matched_logged = True
            l.matched_parsed = True
            matched += 1
    return matched


def _report(
    parsed: List[OreDeploymentInfo],
    logged: List[LoggedDeployment],
    reported_total: Optional[int],
    round_id: Optional[int],
) -> ReconciliationReport:
    parsed_total = sum(p.total_lamports for p in parsed)
    logged_total = sum(l.total_lamports for l in logged)
    diff = logged_total - parsed_total
    if reported_total is None:
        discrepancy = 0
        logged_discrepancy = None
    else:
        discrepancy = reported_total - parsed_total
        logged_discrepancy = reported_total - logged_total if diff == 0 else None

    return ReconciliationReport(
        round_id=round_id,
        parsed_count=len(parsed),
        logged_count=len(logged),
        matched_count=sum(1 for l in logged if l.matched_parsed),
        parsed_total=parsed_total,
        logged_total=logged_total,
        logged_vs_parsed_diff=diff,
        reported_total=reported_total,
        discrepancy=discrepancy,
        logged_discrepancy=logged_discrepancy,
        invalid=discrepancy != 0,
        unmatched_logged=[l for l in logged if not l.matched_parsed],
        unmatched_parsed=[p for p in parsed if not p.matched_logged],
    )


def reconcile(
    parsed: Iterable[OreDeploymentInfo],
    logged: Iterable[LoggedDeployment],
    reported_total: Optional[int] = None,
    round_id: Optional[int] = None,
) -> ReconciliationReport:
    parsed = [p for p in parsed if _counted(p)]
    logged = [l for l in logged if _counted(l)]
    match_deployments(parsed, logged)
    return _report(parsed, logged, reported_total, round_id)


def reconcile_transaction(analysis: TransactionAnalysis) -> ReconciliationReport:
    """Match within one transaction regardless of round scope or success."""
    ore = analysis.ore_analysis
    if ore is None:
        return _report([], [], None, None)
    match_deployments(ore.deployments, ore.logged_deployments)
    return _report(ore.deployments, ore.logged_deployments, None, None)


def reconcile_round(
    analyses: Iterable[TransactionAnalysis],
    reported_total: Optional[int],
    round_id: Optional[int] = None,
) -> ReconciliationReport:
    # A log line may only pair with a deploy from its own transaction.
    parsed: List[OreDeploymentInfo] = []
    logged: List[LoggedDeployment] = []
    for a in analyses:
        if a.ore_analysis is None:
            continue
        tx_parsed = [p for p in a.ore_analysis.deployments if _counted(p)]
        tx_logged = [l for l in a.ore_analysis.logged_deployments if _counted(l)]
        match_deployments(tx_parsed, tx_logged)
        parsed.extend(tx_parsed)
        logged.extend(tx_logged)
    return _report(parsed, logged, reported_total, round_id)
