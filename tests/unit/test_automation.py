"""
test_automation.py - Automation-state lookups for unlogged deploys.

Each lookup resolves from the slot cache, a backward search of the
automation account's history, or the state of an earlier deploy; the page
bound and upstream errors fail the item instead.
"""

import asyncio

import pytest

from orerecon.automation import AutomationPipeline, find_automate
from orerecon.pda import automation_pda

from fakes import round_summary
from tx_factory import TxBuilder, deploy_tx, new_key


def automate_tx(authority, slot, **kwargs):
    b = TxBuilder(payer=authority, slot=slot)
    b.automate(authority=authority, **kwargs)
    return b.build()


def close_tx(authority, slot):
    b = TxBuilder(payer=authority, slot=slot)
    b.close_automation(authority=authority)
    return b.build()


def noise_tx(slot):
    b = TxBuilder(slot=slot)
    b.transfer(new_key(), 1)
    return b.build()


def item(authority, deploy_slot, round_id=1):
    return {
        "round_id": round_id,
        "miner_pubkey": new_key(),
        "authority_pubkey": authority,
        "automation_pda": automation_pda(authority),
        "deploy_signature": f"deploy-{authority[:8]}-{deploy_slot}",
        "deploy_ix_index": 0,
        "deploy_slot": deploy_slot,
    }


@pytest.fixture
def pipeline(storage, helius, reconstruction):
    return AutomationPipeline(storage, helius, reconstruction)


# ── find_automate ──────────────────────────────────────────────────────────

class TestFindAutomate:
    def test_matches_authority_and_account(self):
        authority = new_key()
        hit = find_automate(automate_tx(authority, 10, amount=7), authority, automation_pda(authority))
        assert hit.slot == 10
        assert hit.automate.amount == 7

    def test_other_authority_ignored(self):
        authority = new_key()
        assert find_automate(automate_tx(new_key(), 10), authority, automation_pda(authority)) is None

    def test_undecodable_skipped(self):
        assert find_automate({"slot": 1, "transaction": {}}, new_key(), new_key()) is None


# ── Lookup sources ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestLookup:
    async def test_backward_search(self, pipeline, helius, storage):
        authority = new_key()
        helius.add_address(automation_pda(authority), [
            automate_tx(authority, 300, amount=7, strategy=1), noise_tx(400), noise_tx(600),
        ])
        await pipeline.enqueue(item(authority, 500))

        [result] = await pipeline.process(1)
        assert result["status"] == "completed"
        assert result["source"] == "search"
        assert result["automation_found"] is True
        assert result["automation_active"] is True

        [state] = await storage.automation_states.list_for_authority(authority)
        assert state["amount"] == 7
        assert state["strategy"] == 1
        assert state["automate_slot"] == 300
        assert state["txns_searched"] == 2

    async def test_close_means_inactive(self, pipeline, helius):
        authority = new_key()
        helius.add_address(automation_pda(authority), [automate_tx(authority, 300), close_tx(authority, 350)])
        await pipeline.enqueue(item(authority, 500))
        [result] = await pipeline.process(1)
        assert result["automation_found"] is True
        assert result["automation_active"] is False

    async def test_slot_cache(self, pipeline, helius):
        authority = new_key()
        helius.add_address(automation_pda(authority), [automate_tx(authority, 300)])
        await pipeline.enqueue(item(authority, 500))
        await pipeline.process(1)
        calls = len(helius.calls)

        await pipeline.enqueue(item(authority, 450))
        [result] = await pipeline.process(1)
        assert result["source"] == "cache"
        assert result["automation_found"] is True
        assert len(helius.calls) == calls

    async def test_fallback_to_earlier_state(self, pipeline, helius, storage):
        authority = new_key()
        helius.add_address(automation_pda(authority), [automate_tx(authority, 300, amount=9), noise_tx(400)])
        await pipeline.enqueue(item(authority, 500))
        await pipeline.process(1)

        await pipeline.enqueue(item(authority, 800))
        [result] = await pipeline.process(1)
        assert result["source"] == "fallback"
        states = await storage.automation_states.list_for_authority(authority)
        assert states[0]["deploy_slot"] == 800
        assert states[0]["amount"] == 9

    async def test_history_exhausted(self, pipeline, storage):
        await pipeline.enqueue(item(new_key(), 500))
        [result] = await pipeline.process(1)
        assert result["status"] == "completed"
        assert result["source"] == "exhausted"
        assert result["automation_found"] is False
        assert (await storage.automation_queue.stats())["completed"] == 1


# ── Failures ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestFailures:
    async def test_page_bound_fails_item(self, storage, helius, reconstruction):
        pipeline = AutomationPipeline(storage, helius, reconstruction, max_pages=2, page_limit=1)
        authority = new_key()
        helius.add_address(automation_pda(authority), [noise_tx(s) for s in (100, 200, 300)])
        await pipeline.enqueue(item(authority, 500))

        [result] = await pipeline.process(1)
        assert result["status"] == "failed"
        [row] = (await storage.automation_queue.list_items(status="failed"))["items"]
        assert row["pages_fetched"] == 2
        assert row["txns_searched"] == 2
        assert "2 pages" in row["last_error"]

    async def test_upstream_error_then_retry(self, pipeline, helius, storage):
        authority = new_key()
        helius.fail_addresses.add(automation_pda(authority))
        await pipeline.enqueue(item(authority, 500))
        [result] = await pipeline.process(1)
        assert result["status"] == "failed"
        assert "simulated outage" in result["error"]

        helius.fail_addresses.clear()
        assert await pipeline.retry_failed() == 1
        [result] = await pipeline.process(1)
        assert result["status"] == "completed"
        assert pipeline.live()["session_failed"] == 1
        assert pipeline.live()["session_succeeded"] == 1


# ── Queueing & observability ───────────────────────────────────────────────

@pytest.mark.asyncio
async def test_enqueue_round_from_stored_transactions(pipeline, workflow, helius, storage):
    authority = new_key()
    helius.add_round(3, [deploy_tx(3, 100, [0], authority=authority, log=False), deploy_tx(3, 50, [1])])
    await workflow.fetch_meta(3, round_summary(3, 150))
    await workflow.fetch_transactions(3)

    first = await pipeline.enqueue_round(3)
    assert first == {"round_id": 3, "candidates": 1, "queued": 1, "already_queued": 0}
    again = await pipeline.enqueue_round(3)
    assert again["already_queued"] == 1


@pytest.mark.asyncio
async def test_process_respects_count(pipeline):
    for _ in range(3):
        await pipeline.enqueue(item(new_key(), 500))
    assert len(await pipeline.process(2)) == 2
    assert len(await pipeline.process(5)) == 1
    assert await pipeline.process(5) == []


@pytest.mark.asyncio
async def test_stats_include_live_view(pipeline):
    stats = await pipeline.stats()
    assert stats["total"] == 0
    assert stats["live"]["running"] is False
    assert stats["live"]["elapsed_ms"] is None


@pytest.mark.asyncio
async def test_concurrent_batch_returns_empty(pipeline):
    for _ in range(2):
        await pipeline.enqueue(item(new_key(), 500))
    first, second = await asyncio.gather(pipeline.process(5), pipeline.process(5))
    assert len(first) == 2
    assert second == []


@pytest.mark.asyncio
async def test_unexpected_error_fails_item_and_batch_continues(pipeline, storage, monkeypatch):
    real_save = storage.automation_states.save
    calls = []

    async def flaky_save(row):
        calls.append(row["deploy_signature"])
        if len(calls) == 1:
            raise RuntimeError("disk full")
        return await real_save(row)

    monkeypatch.setattr(storage.automation_states, "save", flaky_save)
    for _ in range(2):
        await pipeline.enqueue(item(new_key(), 500))

    results = await pipeline.process(5)
    assert [r["status"] for r in results] == ["failed", "completed"]
    assert "RuntimeError: disk full" in results[0]["error"]

    [row] = (await storage.automation_queue.list_items(status="failed"))["items"]
    assert "disk full" in row["last_error"]
    assert (await storage.automation_queue.stats())["processing"] == 0
    assert pipeline.live()["session_failed"] == 1
