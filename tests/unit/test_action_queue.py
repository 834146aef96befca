"""
test_action_queue.py - Range enqueue, single-flight processing, pause and retry.
"""

import asyncio

import pytest
import pytest_asyncio

from orerecon.action_queue import ActionQueue
from orerecon.errors import WorkflowError

from fakes import round_summary, seed_round
from tx_factory import deploy_tx

pytestmark = pytest.mark.asyncio


@pytest_asyncio.fixture
async def queue(storage, workflow):
    return ActionQueue(storage, workflow)


async def _ready_for_reconstruct(workflow, helius, round_id, amount=100):
    helius.add_round(round_id, [deploy_tx(round_id, amount, [0])])
    await workflow.fetch_meta(round_id, round_summary(round_id, amount))
    await workflow.fetch_transactions(round_id)


# ── Enqueue ─────────────────────────────────────────────────────────────────

class TestEnqueue:
    async def test_skips_done_and_unknown_rounds(self, queue, storage):
        await storage.workflow.add_many(range(900, 951))
        await storage.workflow._write(
            "UPDATE round_status SET transactions_fetched = 1, reconstructed = 1 WHERE round_id <= 950"
        )
        await storage.workflow.add_many(range(981, 1001))

        result = await queue.enqueue(900, 1000, "reconstruct")
        assert result == {"queued": 20, "skipped": 81, "already_queued": 0}

        page = await storage.action_queue.list_items(limit=100)
        assert sorted(i["round_id"] for i in page["items"]) == list(range(981, 1001))

    async def test_second_enqueue_reports_already_queued(self, queue, storage):
        await storage.workflow.add_many([1, 2])
        await queue.enqueue(1, 2, "fetch_txns")
        result = await queue.enqueue(1, 2, "fetch_txns")
        assert result == {"queued": 0, "skipped": 0, "already_queued": 2}

    async def test_without_workflow_filter(self, queue):
        result = await queue.enqueue(1, 3, "finalize", only_in_workflow=False)
        assert result["queued"] == 3

    async def test_skip_if_done_disabled(self, queue, storage):
        await storage.workflow.add_many([1])
        await storage.workflow._write("UPDATE round_status SET transactions_fetched = 1")
        assert (await queue.enqueue(1, 1, "fetch_txns"))["skipped"] == 1
        assert (await queue.enqueue(1, 1, "fetch_txns", skip_if_done=False))["queued"] == 1

    async def test_unknown_action(self, queue):
        with pytest.raises(WorkflowError):
            await queue.enqueue(1, 2, "explode")

    async def test_inverted_range(self, queue):
        with pytest.raises(WorkflowError):
            await queue.enqueue(5, 1, "reconstruct")


# ── Processing ─────────────────────────────────────────────────────────────

class TestProcessing:
    async def test_idle_returns_none(self, queue):
        assert await queue.process_next() is None

    async def test_success(self, queue, workflow, helius, storage):
        await _ready_for_reconstruct(workflow, helius, 10)
        await queue.enqueue(10, 10, "reconstruct")

        item = await queue.process_next()
        assert item["status"] == "completed"
        assert item["round_id"] == 10
        assert item["result"]["deployment_count"] == 1
        assert (await storage.workflow.get(10))["reconstructed"] is True

        status = await queue.status()
        assert status["completed_count"] == 1
        assert status["pending_count"] == 0
        assert status["processing"] is None
        assert status["total_processed"] == 1

    async def test_failure_recorded(self, queue, storage):
        await seed_round(storage, 11)
        await queue.enqueue(11, 11, "reconstruct")

        item = await queue.process_next()
        assert item["status"] == "failed"
        assert "transactions not fetched" in item["error"]

        stored = await storage.action_queue.get(item["id"])
        assert stored["status"] == "failed"
        assert stored["attempts"] == 1
        assert (await queue.status())["total_failed"] == 1

    async def test_retry_failed_runs_again(self, queue, workflow, helius, storage):
        await seed_round(storage, 12)
        await queue.enqueue(12, 12, "fetch_txns")
        helius.fail_rounds.add(12)
        assert (await queue.process_next())["status"] == "failed"

        helius.fail_rounds.clear()
        assert await queue.retry_failed() == 1
        item = await queue.process_next()
        assert item["status"] == "completed"
        assert item["attempts"] == 2

    async def test_oldest_first(self, queue, workflow, helius):
        for rid in (21, 20):
            await _ready_for_reconstruct(workflow, helius, rid)
            await queue.enqueue(rid, rid, "reconstruct")
        assert (await queue.process_next())["round_id"] == 21
        assert (await queue.process_next())["round_id"] == 20

    async def test_pause_and_resume(self, queue, workflow, helius):
        await _ready_for_reconstruct(workflow, helius, 30)
        await queue.enqueue(30, 30, "reconstruct")

        status = await queue.pause()
        assert status["paused"] is True
        assert await queue.process_next() is None

        status = await queue.resume()
        assert status["paused"] is False
        assert (await queue.process_next())["status"] == "completed"

    async def test_one_item_in_flight(self, queue, workflow, helius, storage):
        for rid in (40, 41):
            await _ready_for_reconstruct(workflow, helius, rid)
        await queue.enqueue(40, 41, "reconstruct")

        first, second = await asyncio.gather(queue.process_next(), queue.process_next())
        assert first["status"] == "completed"
        assert second is None
        status = await queue.status()
        assert status["completed_count"] == 1
        assert status["pending_count"] == 1

    async def test_clear_pending(self, queue, storage):
        await storage.workflow.add_many([1, 2, 3])
        await queue.enqueue(1, 3, "fetch_txns")
        assert await queue.clear() == 3
        assert (await queue.status())["pending_count"] == 0


async def test_rate_needs_two_samples(queue):
    assert queue.rate_per_minute() == 0.0
    queue._finished_at.extend([100.0, 130.0, 160.0])
    assert queue.rate_per_minute() == 2.0
