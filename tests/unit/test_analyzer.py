"""
test_analyzer.py - Whole-transaction analysis.

Decoded deploys vs. deploy log lines, round scoping, failed transactions,
balance deltas, program invocation counts, batch failure capture and the
per-round summary.
"""

import base58
import pytest

from orerecon.analyzer import (
    analyze_batch,
    analyze_transaction,
    parse_deploy_logs,
    sol_to_lamports,
    summarize_round,
)
from orerecon.decoder import COMPUTE_BUDGET_PROGRAM_ID, ORE_PROGRAM_ID, SYSTEM_PROGRAM_ID
from orerecon.errors import DecodeError

from tx_factory import TxBuilder, deploy_tx, new_key


# ── Deploy extraction ───────────────────────────────────────────────────────

class TestDeployExtraction:
    def test_parsed_and_logged(self):
        tx = deploy_tx(1000, 1_000_000, [1, 2, 3], slot=500)
        a = analyze_transaction(tx, expected_round_id=1000)
        ore = a.ore_analysis
        assert ore.deploy_count == 1
        d = ore.deployments[0]
        assert d.round_id == 1000
        assert d.round_matches is True
        assert d.ix_index == 1
        assert d.inner_index is None
        assert d.total_lamports == 3_000_000
        assert ore.total_deployed == 3_000_000

        assert len(ore.logged_deployments) == 1
        logged = ore.logged_deployments[0]
        assert logged.round_id == 1000
        assert logged.amount_per_square == 1_000_000
        assert logged.squares == 3
        assert logged.authority == d.authority
        assert ore.logged_total == 3_000_000
        assert ore.logged_deploy_count == 1

    def test_other_round_not_counted(self):
        tx = deploy_tx(999, 1_000_000, [1], slot=500)
        ore = analyze_transaction(tx, expected_round_id=1000).ore_analysis
        assert ore.deployments[0].round_matches is False
        assert ore.deployments[0].round_id is None
        assert ore.total_deployed == 0
        assert ore.logged_total == 0

    def test_no_expected_round(self):
        ore = analyze_transaction(deploy_tx(5, 10, [0])).ore_analysis
        assert ore.deployments[0].round_matches is False
        assert ore.deployments[0].expected_round_id is None

    def test_failed_transaction_analyzed_but_not_counted(self):
        b = TxBuilder(slot=10)
        b.deploy(7, 2_000, [4])
        a = analyze_transaction(b.failed().build(), expected_round_id=7)
        assert a.success is False
        assert a.error is not None
        assert a.ore_analysis.deploy_count == 1
        assert a.ore_analysis.deployments[0].success is False
        assert a.ore_analysis.total_deployed == 0
        assert a.ore_analysis.logged_total == 0

    def test_automated_deploy(self):
        authority = new_key()
        b = TxBuilder(slot=10)
        b.deploy(7, 100, [0, 1], authority=authority)
        d = analyze_transaction(b.build(), 7).ore_analysis.deployments[0]
        assert d.authority == authority
        assert d.signer != authority
        assert d.is_automated is True

    def test_two_deploys_logs_attributed_in_order(self):
        first, second = new_key(), new_key()
        b = TxBuilder(slot=10)
        b.deploy(7, 100, [0], authority=first)
        b.deploy(7, 300, [1, 2], authority=second)
        ore = analyze_transaction(b.build(), 7).ore_analysis
        assert [l.authority for l in ore.logged_deployments] == [first, second]
        assert ore.total_deployed == 700
        assert ore.logged_total == 700

    def test_inner_deploy(self):
        authority = new_key()
        outer = TxBuilder(slot=10)
        outer.add(new_key(), [outer.payer], b"\x01")
        helper = TxBuilder(payer=outer.payer)
        helper.deploy(7, 50, [9], authority=authority)
        ix = helper.instructions[0]
        outer.add_inner(0, ORE_PROGRAM_ID,
                        [helper.keys[i] for i in ix["accounts"]],
                        base58.b58decode(ix["data"]))
        ore = analyze_transaction(outer.build(), 7).ore_analysis
        d = ore.deployments[0]
        assert (d.ix_index, d.inner_index) == (0, 0)
        assert d.round_matches is True
        # no deploy log was emitted for the inner call
        assert ore.logged_deployments == []

    def test_non_ore_transaction(self):
        b = TxBuilder(slot=1)
        b.transfer(new_key(), 1_000)
        a = analyze_transaction(b.build())
        assert a.ore_analysis is None
        assert a.summary["primary_action"] == "System Program: Transfer"


# ── Transaction-level details ──────────────────────────────────────────────

class TestTransactionDetails:
    def test_balances_programs_and_summary(self):
        dest = new_key()
        b = TxBuilder(slot=42)
        b.compute_limit()
        b.transfer(dest, 7_000)
        b.deploy(3, 10, [0, 1])
        a = analyze_transaction(b.build(), 3)

        assert a.signature == b.signature
        assert a.slot == 42
        assert a.fee == 5000
        assert a.signers == [b.payer]
        changes = {c.account: c.change for c in a.balance_changes}
        assert changes[dest] == 7_000
        assert changes[b.payer] == -7_000 - 5000

        programs = {p.program_id: p.invocation_count for p in a.programs_invoked}
        assert programs == {COMPUTE_BUDGET_PROGRAM_ID: 1, SYSTEM_PROGRAM_ID: 1, ORE_PROGRAM_ID: 1}
        assert a.summary["primary_action"] == "ORE Deploy (2 squares)"
        assert a.summary["instruction_count"] == 3
        assert a.summary["total_deployed_lamports"] == 20

    def test_to_dict_is_plain_data(self):
        a = analyze_transaction(deploy_tx(3, 10, [0]), 3)
        d = a.to_dict()
        assert d["ore_analysis"]["deploy_count"] == 1
        assert d["instructions"][1]["data"]["kind"] == "ore_deploy"
        assert d["instructions"][1]["ix_index"] == 1

    def test_compute_budget_only(self):
        b = TxBuilder()
        b.compute_limit()
        assert analyze_transaction(b.build()).summary["primary_action"] == "Compute Budget only"

    def test_malformed_instruction_flagged_not_fatal(self):
        b = TxBuilder()
        b.add(ORE_PROGRAM_ID, [b.payer], bytes([6, 0, 0]))
        a = analyze_transaction(b.build(), 1)
        assert len(a.parse_errors) == 1
        assert a.ore_analysis.deploy_count == 0

    def test_missing_message_raises(self):
        with pytest.raises(DecodeError):
            analyze_transaction({"slot": 1, "transaction": {"signatures": ["x"]}})


# ── Logs ────────────────────────────────────────────────────────────────────

class TestDeployLogs:
    def test_attribution_by_top_level_invoke(self):
        logs = [
            f"Program {COMPUTE_BUDGET_PROGRAM_ID} invoke [1]",
            f"Program {COMPUTE_BUDGET_PROGRAM_ID} success",
            f"Program {ORE_PROGRAM_ID} invoke [1]",
            f"Program {SYSTEM_PROGRAM_ID} invoke [2]",
            "Program log: Round #12: deploying 0.5 SOL to 2 squares",
            f"Program {ORE_PROGRAM_ID} success",
        ]
        assert parse_deploy_logs(logs) == [(1, 12, "0.5", 2)]

    def test_log_before_any_invoke(self):
        assert parse_deploy_logs(["Round #3: deploying 1 SOL to 1 squares"]) == [(None, 3, "1", 1)]

    def test_sol_to_lamports(self):
        assert sol_to_lamports("0.001") == 1_000_000
        assert sol_to_lamports("1") == 1_000_000_000
        with pytest.raises(ValueError):
            sol_to_lamports("abc")

    def test_malformed_amount_skips_only_that_log(self):
        b = TxBuilder(slot=9)
        b.deploy(4, 2_000_000, [0], authority=new_key())
        b.deploy(4, 3_000_000, [1], authority=new_key())
        tx = b.build()
        logs = tx["meta"]["logMessages"]
        last = max(i for i, line in enumerate(logs) if "Round #4" in line)
        logs[last] = "Program log: Round #4: deploying 1.2.3 SOL to 1 squares"

        ore = analyze_transaction(tx, expected_round_id=4).ore_analysis
        assert ore.deploy_count == 2
        assert ore.logged_deploy_count == 1
        assert ore.logged_total == 2_000_000


# ── Batch & round summary ──────────────────────────────────────────────────

class TestBatch:
    def test_failures_captured(self):
        good = deploy_tx(1, 10, [0], slot=5)
        bad = {"slot": 6, "transaction": {"signatures": ["badsig"]}}
        analyses, failures = analyze_batch([good, bad], 1)
        assert len(analyses) == 1
        assert len(failures) == 1
        assert failures[0].signature == "badsig"
        assert failures[0].slot == 6

    def test_summarize_round(self):
        miner_a, miner_b = new_key(), new_key()
        txs = [
            deploy_tx(9, 100, [0, 1], slot=1, authority=miner_a),
            deploy_tx(9, 200, [1], slot=2, authority=miner_b),
            deploy_tx(8, 999, [2], slot=3),
        ]
        analyses, _ = analyze_batch(txs, 9)
        summary = summarize_round(analyses)
        assert summary["total_transactions"] == 3
        assert summary["successful_transactions"] == 3
        assert summary["total_fee_paid"] == 15_000
        ore = summary["ore_summary"]
        assert ore["total_deployments"] == 3
        assert ore["deployments_matching_round"] == 2
        assert ore["deployments_wrong_round"] == 1
        assert ore["total_deployed_lamports"] == 400
        squares = {s["square"]: s for s in ore["squares_deployed"]}
        assert squares[1]["deployment_count"] == 2
        assert squares[1]["total_lamports"] == 300
