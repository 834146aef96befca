"""
test_finalizer.py - Committing staged deployments to the analytical store.
"""

import pytest

from orerecon.errors import RoundNotFound, WorkflowError

from fakes import round_summary, seed_round
from tx_factory import deploy_tx, new_key

pytestmark = pytest.mark.asyncio


async def _reconstructed(workflow, helius, round_id, total_deployed, txs, **summary):
    helius.add_round(round_id, txs)
    await workflow.fetch_meta(round_id, round_summary(round_id, total_deployed, **summary))
    await workflow.fetch_transactions(round_id)
    await workflow.reconstruct(round_id)


async def test_winner_and_top_miner_flags(workflow, helius, finalizer, storage):
    top = new_key()
    txs = [deploy_tx(4, 100, [3, 5], slot=1, authority=top), deploy_tx(4, 50, [3], slot=2)]
    await _reconstructed(workflow, helius, 4, 250, txs, winning_square=3, top_miner=top)

    result = await finalizer.finalize(4)
    assert result == {
        "round_id": 4,
        "deployment_count": 3,
        "deployments_sum": 250,
        "total_deployed": 250,
        "is_valid": True,
        "discrepancy": 0,
    }

    rows = await storage.analytics.list_deployments(4)
    flags = {(r["miner_pubkey"], r["square_id"]): (r["is_winner"], r["is_top_miner"]) for r in rows}
    assert flags[(top, 3)] == (True, True)
    assert flags[(top, 5)] == (False, True)
    assert sum(1 for r in rows if r["is_winner"]) == 2


async def test_refinalize_replaces_previous_set(workflow, helius, finalizer, storage):
    miner = new_key()
    await _reconstructed(workflow, helius, 6, 300, [deploy_tx(6, 100, [0, 1, 2], authority=miner)])
    await finalizer.finalize(6)

    # a later reconstruction of the same round drops to one square
    await workflow.delete(6, delete_round=True)
    assert len(await storage.analytics.list_deployments(6)) == 3
    helius.round_txs[6] = []
    await _reconstructed(workflow, helius, 6, 300, [deploy_tx(6, 300, [7], authority=miner)])
    result = await finalizer.finalize(6)

    assert result["deployment_count"] == 1
    rows = await storage.analytics.list_deployments(6)
    assert [(r["square_id"], r["amount"]) for r in rows] == [(7, 300)]


async def test_short_round_reported_invalid(workflow, helius, finalizer):
    await _reconstructed(workflow, helius, 8, 1_000, [deploy_tx(8, 400, [0])])
    result = await finalizer.finalize(8)
    assert result["is_valid"] is False
    assert result["discrepancy"] == 600


async def test_unknown_round(finalizer):
    with pytest.raises(RoundNotFound):
        await finalizer.finalize(999)


async def test_requires_reconstruction(finalizer, storage):
    await seed_round(storage, 9)
    with pytest.raises(WorkflowError):
        await finalizer.finalize(9)


async def test_completeness_agrees_with_analytics(workflow, helius, storage):
    await _reconstructed(workflow, helius, 8, 60, [deploy_tx(8, 20, [0, 1, 2], slot=1)])
    await _reconstructed(workflow, helius, 9, 0, [])
    await workflow.finalize(8)
    await workflow.finalize(9)

    status = await storage.workflow.get(8)
    assert status["deployment_count"] == len(await storage.analytics.list_deployments(8)) == 3
    assert await storage.workflow.is_complete(8) is True

    assert await storage.analytics.list_deployments(9) == []
    assert await storage.workflow.is_complete(9) is False
