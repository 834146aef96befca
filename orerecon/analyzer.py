"""
analyzer.py - Transaction analyzer.

Decodes a whole Helius json-encoded transaction: every top-level and inner
instruction, per-account balance deltas, program invocation counts, and the
ORE deployment summary.

Deployments are extracted twice, independently:
 - from decoded Deploy instructions (OreDeploymentInfo), and
 - from "Round #X: deploying Y SOL to Z squares" program log lines
   (LoggedDeployment), attributed to the top-level instruction whose
   invocation emitted them.

Transactions that failed on-chain are still analyzed; callers exclude them
from totals. A transaction that cannot be decoded at all raises DecodeError
from analyze_transaction and becomes an AnalysisFailure in analyze_batch.
"""

import logging
import re
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, List, Optional, Tuple

from orerecon.decoder import (
    COMPUTE_BUDGET_PROGRAM_ID,
    ORE_PROGRAM_ID,
    PROGRAM_NAMES,
    AccountTable,
    OreDeploy,
    OreLog,
    OreReset,
    ParsedInstruction,
    decode_raw_instruction,
)
from orerecon.errors import DecodeError
from orerecon.pda import round_pda

logger = logging.getLogger("analyzer")

LAMPORTS_PER_SOL = 1_000_000_000

DEPLOY_LOG_RE = re.compile(r"Round #(\d+): deploying ([\d.]+) SOL to (\d+) squares")
INVOKE_TOP_LEVEL_RE = re.compile(r"^Program (\S+) invoke \[1\]$")


@dataclass
class OreDeploymentInfo:
    signature: str
    slot: int
    ix_index: int
    inner_index: Optional[int]
    signer: str
    authority: str
    miner: str
    automation: str
    round: str
    round_id: Optional[int]
    expected_round_id: Optional[int]
    round_matches: bool
    amount_per_square: int
    squares: List[int]
    total_lamports: int
    success: bool = True
    matched_logged: bool = False

    @property
    def is_automated(self) -> bool:
        return self.signer != self.authority


@dataclass
class LoggedDeployment:
    signature: str
    slot: int
    ix_index: Optional[int]
    authority: Optional[str]
    round_id: int
    amount_sol: str
    amount_per_square: int
    squares: int
    total_lamports: int
    round_matches: bool
    success: bool = True
    matched_parsed: bool = False


@dataclass
class OreAnalysis:
    deploy_count: int = 0
    reset_count: int = 0
    log_count: int = 0
    other_count: int = 0
    deployments: List[OreDeploymentInfo] = field(default_factory=list)
    logged_deployments: List[LoggedDeployment] = field(default_factory=list)
    total_deployed: int = 0
    logged_deploy_count: int = 0
    logged_total: int = 0


@dataclass
class BalanceChange:
    account: str
    pre: int
    post: int
    change: int


@dataclass
class ProgramInvocation:
    program_id: str
    name: str
    invocation_count: int


@dataclass
class InstructionRecord:
    ix_index: int
    inner_index: Optional[int]
    parsed: ParsedInstruction

    def to_dict(self) -> dict:
        d = self.parsed.to_dict()
        d["ix_index"] = self.ix_index
        d["inner_index"] = self.inner_index
        return d


@dataclass
class TransactionAnalysis:
    signature: str
    slot: int
    block_time: Optional[int]
    success: bool
    error: Optional[str]
    fee: int
    compute_units_consumed: Optional[int]
    signers: List[str]
    account_count: int
    balance_changes: List[BalanceChange]
    programs_invoked: List[ProgramInvocation]
    instructions: List[InstructionRecord]
    logs: List[str]
    ore_analysis: Optional[OreAnalysis]
    summary: dict

    @property
    def parse_errors(self) -> List[str]:
        return [r.parsed.parse_error for r in self.instructions if r.parsed.parse_error]

    def to_dict(self) -> dict:
        return {
            "signature": self.signature,
            "slot": self.slot,
            "block_time": self.block_time,
            "success": self.success,
            "error": self.error,
            "fee": self.fee,
            "compute_units_consumed": self.compute_units_consumed,
            "signers": self.signers,
            "account_count": self.account_count,
            "balance_changes": [asdict(b) for b in self.balance_changes],
            "programs_invoked": [asdict(p) for p in self.programs_invoked],
            "instructions": [r.to_dict() for r in self.instructions],
            "logs": self.logs,
            "ore_analysis": asdict(self.ore_analysis) if self.ore_analysis else None,
            "summary": self.summary,
        }


@dataclass
class AnalysisFailure:
    signature: str
    slot: int
    error: str


def sol_to_lamports(amount: str) -> int:
    try:
        return int(Decimal(amount) * LAMPORTS_PER_SOL)
    except InvalidOperation:
        raise ValueError(f"not a SOL amount: {amount!r}")


def parse_deploy_logs(logs: Iterable[str]) -> List[Tuple[Optional[int], int, str, int]]:
    """Return (top_level_ix_index, round_id, amount_sol, squares) per deploy log line."""
    out = []
    top_index = -1
    for line in logs:
        if INVOKE_TOP_LEVEL_RE.match(line):
            top_index += 1
            continue
        m = DEPLOY_LOG_RE.search(line)
        if m:
            out.append((top_index if top_index >= 0 else None, int(m.group(1)), m.group(2), int(m.group(3))))
    return out


def _signature_of(tx: dict) -> str:
    sigs = (tx.get("transaction") or {}).get("signatures") or []
    return sigs[0] if sigs else ""


def analyze_transaction(tx: dict, expected_round_id: Optional[int] = None) -> TransactionAnalysis:
    transaction = tx.get("transaction")
    if not isinstance(transaction, dict):
        raise DecodeError("missing transaction object")
    message = transaction.get("message")
    if not isinstance(message, dict):
        raise DecodeError("missing transaction message")
    meta = tx.get("meta") or {}

    signature = _signature_of(tx)
    slot = int(tx.get("slot") or 0)
    block_time = tx.get("blockTime")
    err = meta.get("err")
    success = err is None
    table = AccountTable.from_message(message, meta)
    expected_pda = round_pda(expected_round_id) if expected_round_id is not None else None

    instructions: List[InstructionRecord] = []
    for ix_index, ix in enumerate(message.get("instructions") or []):
        parsed = decode_raw_instruction(ix, table, expected_round_id, expected_pda)
        instructions.append(InstructionRecord(ix_index, None, parsed))
    for group in meta.get("innerInstructions") or []:
        parent = int(group.get("index", 0))
        for inner_index, ix in enumerate(group.get("instructions") or []):
            parsed = decode_raw_instruction(ix, table, expected_round_id, expected_pda)
            instructions.append(InstructionRecord(parent, inner_index, parsed))
    # top-level first, then inner in order under their parent
    instructions.sort(key=lambda r: (r.ix_index, -1 if r.inner_index is None else r.inner_index))

    pre = meta.get("preBalances") or []
    post = meta.get("postBalances") or []
    balance_changes = []
    for idx in range(min(len(pre), len(post), len(table))):
        delta = int(post[idx]) - int(pre[idx])
        if delta != 0:
            balance_changes.append(BalanceChange(table.keys[idx], int(pre[idx]), int(post[idx]), delta))

    invoked: "OrderedDict[str, int]" = OrderedDict()
    for rec in instructions:
        invoked[rec.parsed.program_id] = invoked.get(rec.parsed.program_id, 0) + 1
    programs_invoked = [
        ProgramInvocation(pid, PROGRAM_NAMES.get(pid, "Unknown Program"), count)
        for pid, count in invoked.items()
    ]

    logs = list(meta.get("logMessages") or [])
    ore = _ore_analysis(signature, slot, success, instructions, logs, expected_round_id)

    return TransactionAnalysis(
        signature=signature,
        slot=slot,
        block_time=block_time,
        success=success,
        error=None if success else str(err),
        fee=int(meta.get("fee") or 0),
        compute_units_consumed=meta.get("computeUnitsConsumed"),
        signers=[k for i, k in enumerate(table.keys) if table.is_signer(i)],
        account_count=len(table),
        balance_changes=balance_changes,
        programs_invoked=programs_invoked,
        instructions=instructions,
        logs=logs,
        ore_analysis=ore,
        summary=_summarize(instructions, ore),
    )


def _ore_analysis(
    signature: str,
    slot: int,
    success: bool,
    instructions: List[InstructionRecord],
    logs: List[str],
    expected_round_id: Optional[int],
) -> Optional[OreAnalysis]:
    ore = OreAnalysis()
    saw_ore = False
    by_top_level: Dict[int, List[OreDeploymentInfo]] = {}

    for rec in instructions:
        parsed = rec.parsed
        if parsed.program_id != ORE_PROGRAM_ID:
            continue
        saw_ore = True
        payload = parsed.data
        if isinstance(payload, OreDeploy):
            ore.deploy_count += 1
            info = OreDeploymentInfo(
                signature=signature,
                slot=slot,
                ix_index=rec.ix_index,
                inner_index=rec.inner_index,
                signer=payload.signer,
                authority=payload.authority,
                miner=payload.miner,
                automation=payload.automation,
                round=payload.round,
                round_id=payload.round_id,
                expected_round_id=expected_round_id,
                round_matches=(expected_round_id is not None and payload.round_id == expected_round_id),
                amount_per_square=payload.amount_per_square,
                squares=list(payload.squares),
                total_lamports=payload.total_lamports,
                success=success,
            )
            ore.deployments.append(info)
            by_top_level.setdefault(rec.ix_index, []).append(info)
            if info.round_matches and success:
                ore.total_deployed += info.total_lamports
        elif isinstance(payload, OreReset):
            ore.reset_count += 1
        elif isinstance(payload, OreLog):
            ore.log_count += 1
        else:
            ore.other_count += 1

    seen_per_ix: Dict[Optional[int], int] = {}
    for top_index, round_id, amount_sol, squares in parse_deploy_logs(logs):
        saw_ore = True
        # the k-th deploy log under an instruction belongs to its k-th decoded deploy
        k = seen_per_ix.get(top_index, 0)
        seen_per_ix[top_index] = k + 1
        group = by_top_level.get(top_index, []) if top_index is not None else []
        authority = group[k].authority if k < len(group) else None
        try:
            per_square = sol_to_lamports(amount_sol)
        except ValueError as e:
            logger.warning("Skipping deploy log in %s: %s", signature, e)
            continue
        logged = LoggedDeployment(
            signature=signature,
            slot=slot,
            ix_index=top_index,
            authority=authority,
            round_id=round_id,
            amount_sol=amount_sol,
            amount_per_square=per_square,
            squares=squares,
            total_lamports=per_square * squares,
            round_matches=(expected_round_id is not None and round_id == expected_round_id),
            success=success,
        )
        ore.logged_deployments.append(logged)
        if logged.round_matches and success:
            ore.logged_deploy_count += 1
            ore.logged_total += logged.total_lamports

    return ore if saw_ore else None


def _summarize(instructions: List[InstructionRecord], ore: Optional[OreAnalysis]) -> dict:
    top_level = [r for r in instructions if r.inner_index is None]
    if ore and ore.deployments:
        squares = sum(len(d.squares) for d in ore.deployments)
        primary = f"ORE Deploy ({squares} squares)"
    elif ore and ore.reset_count:
        primary = "ORE Reset"
    else:
        primary = "Unknown"
        for rec in top_level:
            if rec.parsed.program_id == COMPUTE_BUDGET_PROGRAM_ID:
                continue
            if rec.parsed.program_id == ORE_PROGRAM_ID:
                primary = f"ORE {rec.parsed.instruction_type}"
            else:
                primary = f"{rec.parsed.program_name}: {rec.parsed.instruction_type}"
            break
        else:
            if top_level:
                primary = "Compute Budget only"
    total = ore.total_deployed if ore else 0
    return {
        "primary_action": primary,
        "instruction_count": len(top_level),
        "inner_instruction_count": len(instructions) - len(top_level),
        "ore_deploy_count": ore.deploy_count if ore else 0,
        "total_deployed_lamports": total,
        "total_deployed_sol": total / LAMPORTS_PER_SOL,
    }


def analyze_batch(
    txs: Iterable[dict], expected_round_id: Optional[int] = None
) -> Tuple[List[TransactionAnalysis], List[AnalysisFailure]]:
    analyses = []
    failures = []
    for tx in txs:
        try:
            analyses.append(analyze_transaction(tx, expected_round_id))
        except (DecodeError, KeyError, TypeError, ValueError) as e:
            signature = _signature_of(tx) if isinstance(tx, dict) else ""
            slot = int(tx.get("slot") or 0) if isinstance(tx, dict) else 0
            logger.warning("Failed to analyze %s (slot %d): %s", signature or "<no signature>", slot, e)
            failures.append(AnalysisFailure(signature, slot, str(e)))
    return analyses, failures


def summarize_round(analyses: List[TransactionAnalysis]) -> dict:
    """Aggregate fees, signers, programs and per-square ORE totals for a round."""
    total_fee = 0
    total_compute = 0
    successful = 0
    signers = set()
    programs: Dict[str, List] = {}
    deployments = []
    matching = 0
    wrong_round = 0
    miners = set()
    squares: Dict[int, List[int]] = {}

    for a in analyses:
        total_fee += a.fee
        total_compute += a.compute_units_consumed or 0
        if a.success:
            successful += 1
        signers.update(a.signers)
        for p in a.programs_invoked:
            entry = programs.setdefault(p.program_id, [p.name, 0])
            entry[1] += p.invocation_count
        if not a.ore_analysis:
            continue
        for d in a.ore_analysis.deployments:
            deployments.append(d)
            miners.add(d.authority)
            if d.round_matches:
                matching += 1
            else:
                wrong_round += 1
            for sq in d.squares:
                entry = squares.setdefault(sq, [0, 0])
                entry[0] += 1
                entry[1] += d.amount_per_square

    ore_summary = None
    if deployments:
        total_deployed = sum(d.total_lamports for d in deployments if d.round_matches and d.success)
        ore_summary = {
            "total_deployments": len(deployments),
            "deployments_matching_round": matching,
            "deployments_wrong_round": wrong_round,
            "unique_miners": len(miners),
            "total_deployed_lamports": total_deployed,
            "total_deployed_sol": total_deployed / LAMPORTS_PER_SOL,
            "squares_deployed": [
                {"square": sq, "deployment_count": v[0], "total_lamports": v[1]}
                for sq, v in sorted(squares.items())
            ],
        }

    return {
        "total_transactions": len(analyses),
        "successful_transactions": successful,
        "failed_transactions": len(analyses) - successful,
        "total_fee_paid": total_fee,
        "total_fee_sol": total_fee / LAMPORTS_PER_SOL,
        "total_compute_units": total_compute,
        "unique_signers": len(signers),
        "programs_used": [
            {"program": pid, "name": v[0], "invocation_count": v[1]} for pid, v in programs.items()
        ],
        "ore_summary": ore_summary,
    }
