"""
test_reconciler.py - Logged vs. parsed deployment reconciliation.
"""

from dataclasses import replace

from orerecon.analyzer import analyze_batch, analyze_transaction
from orerecon.reconciler import reconcile, reconcile_round, reconcile_transaction

from tx_factory import TxBuilder, deploy_tx, new_key


def analyses(txs, round_id):
    result, failures = analyze_batch(txs, round_id)
    assert failures == []
    return result


class TestReconcileRound:
    def test_clean_round(self):
        txs = [deploy_tx(5, 1_000, [0, 1], slot=1), deploy_tx(5, 500, [2], slot=2)]
        report = reconcile_round(analyses(txs, 5), reported_total=2_500, round_id=5)
        assert report.parsed_count == 2
        assert report.logged_count == 2
        assert report.matched_count == 2
        assert report.parsed_total == 2_500
        assert report.logged_total == 2_500
        assert report.logged_vs_parsed_diff == 0
        assert report.discrepancy == 0
        assert report.logged_discrepancy == 0
        assert report.invalid is False
        assert report.unmatched_logged == []
        assert report.unmatched_parsed == []

    def test_round_short_of_reported_total_is_invalid(self):
        txs = [
            deploy_tx(1000, 1_000_000_000, [0, 1, 2, 3], slot=1),
            deploy_tx(1000, 999_000_000, [4], slot=2),
        ]
        report = reconcile_round(analyses(txs, 1000), reported_total=5_000_000_000, round_id=1000)
        assert report.parsed_total == 4_999_000_000
        assert report.discrepancy == 1_000_000
        assert report.invalid is True
        assert report.to_dict()["discrepancy"] == 1_000_000

    def test_deploy_without_log_is_unmatched(self):
        txs = [deploy_tx(5, 100, [0], slot=1), deploy_tx(5, 100, [1], slot=2, log=False)]
        report = reconcile_round(analyses(txs, 5), reported_total=200, round_id=5)
        assert report.discrepancy == 0
        assert report.logged_vs_parsed_diff == -100
        assert report.logged_discrepancy is None
        assert len(report.unmatched_parsed) == 1
        assert report.unmatched_parsed[0].matched_logged is False

    def test_failed_and_foreign_round_excluded(self):
        failed = TxBuilder(slot=3)
        failed.deploy(5, 700, [0])
        txs = [deploy_tx(5, 100, [0], slot=1), deploy_tx(4, 300, [0], slot=2), failed.failed().build()]
        report = reconcile_round(analyses(txs, 5), reported_total=100, round_id=5)
        assert report.parsed_count == 1
        assert report.logged_count == 1
        assert report.invalid is False

    def test_logs_pair_only_within_their_transaction(self):
        authority = new_key()
        # same authority and amount in two transactions, only one of them logged
        txs = [
            deploy_tx(5, 100, [0], slot=1, authority=authority, log=False),
            deploy_tx(5, 100, [0], slot=2, authority=authority),
        ]
        report = reconcile_round(analyses(txs, 5), reported_total=200, round_id=5)
        assert report.matched_count == 1
        assert report.unmatched_parsed[0].slot == 1

    def test_no_reported_total(self):
        report = reconcile_round(analyses([deploy_tx(5, 1, [0])], 5), reported_total=None)
        assert report.discrepancy == 0
        assert report.invalid is False
        assert report.reported_total is None

    def test_empty_round_missing_deployments(self):
        report = reconcile_round([], reported_total=0, round_id=5)
        assert report.missing_deployments is True
        assert report.invalid is False


class TestMatching:
    def test_reordered_logs_match(self):
        a, b = new_key(), new_key()
        tx = TxBuilder(slot=1)
        tx.deploy(5, 100, [0], authority=a)
        tx.deploy(5, 200, [1], authority=b)
        analysis = analyze_transaction(tx.build(), 5)
        ore = analysis.ore_analysis
        report = reconcile(ore.deployments, list(reversed(ore.logged_deployments)), reported_total=300)
        assert report.matched_count == 2
        assert report.invalid is False

    def test_duplicated_log_left_unmatched(self):
        tx = TxBuilder(slot=1)
        tx.deploy(5, 100, [0])
        ore = analyze_transaction(tx.build(), 5).ore_analysis
        logged = [ore.logged_deployments[0], replace(ore.logged_deployments[0])]
        report = reconcile(ore.deployments, logged)
        assert report.matched_count == 1
        assert report.logged_total == 200
        assert report.logged_vs_parsed_diff == 100

    def test_amount_mismatch_does_not_match(self):
        tx = TxBuilder(slot=1)
        tx.deploy(5, 100, [0, 1])
        tx.logs = [l.replace("to 2 squares", "to 1 squares") for l in tx.logs]
        ore = analyze_transaction(tx.build(), 5).ore_analysis
        report = reconcile(ore.deployments, ore.logged_deployments)
        assert report.matched_count == 0
        assert len(report.unmatched_logged) == 1


def test_reconcile_transaction_includes_failed():
    tx = TxBuilder(slot=1)
    tx.deploy(9, 100, [0, 1])
    report = reconcile_transaction(analyze_transaction(tx.failed().build(), 9))
    assert report.parsed_count == 1
    assert report.matched_count == 1
    assert report.round_id is None


def test_reconcile_transaction_without_ore():
    tx = TxBuilder()
    tx.compute_limit()
    report = reconcile_transaction(analyze_transaction(tx.build()))
    assert report.parsed_count == 0
    assert report.missing_deployments is True
