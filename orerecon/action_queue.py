"""
action_queue.py - Pausable single-flight queue of per-round workflow actions.

One worker drains the queue: the oldest pending item is claimed only while
nothing else is processing, the matching RoundWorkflow operation runs, and
the item is marked completed or failed. Failed items stay failed until an
operator calls retry_failed(); attempts are capped at MAX_ATTEMPTS.
"""

import asyncio
import logging
import time
from collections import deque
from typing import TYPE_CHECKING, Optional

from orerecon.errors import ReconError, WorkflowError
from orerecon.workflow import ACTION_DONE_FLAG, RoundAction

if TYPE_CHECKING:
    from orerecon.storage import StorageManager
    from orerecon.workflow import RoundWorkflow

logger = logging.getLogger("queue")

MAX_ATTEMPTS = 5
STALE_AFTER_SEC = 600
MAX_ENQUEUE_RANGE = 100_000
_RATE_WINDOW = 50


class ActionQueue:
    def __init__(
        self,
        storage: "StorageManager",
        workflow: "RoundWorkflow",
        stale_after_sec: float = STALE_AFTER_SEC,
    ):
        self.storage = storage
        self.workflow = workflow
        self.stale_after_sec = stale_after_sec
        self._lock = asyncio.Lock()
        self.total_processed = 0
        self.total_failed = 0
        self._finished_at: deque = deque(maxlen=_RATE_WINDOW)

    async def enqueue(
        self,
        start_round: int,
        end_round: int,
        action: str,
        skip_if_done: bool = True,
        only_in_workflow: bool = True,
    ) -> dict:
        try:
            action = RoundAction(action)
        except ValueError:
            raise WorkflowError(f"Unknown action: {action}")
        if end_round < start_round:
            raise WorkflowError("end_round must be >= start_round")
        if end_round - start_round + 1 > MAX_ENQUEUE_RANGE:
            raise WorkflowError(f"Range too large (max {MAX_ENQUEUE_RANGE} rounds)")

        statuses = await self.storage.workflow.get_many(start_round, end_round)
        done_flag = ACTION_DONE_FLAG[action]
        candidates = []
        skipped = 0
        for round_id in range(start_round, end_round + 1):
            status = statuses.get(round_id)
            if status is None and only_in_workflow:
                skipped += 1
            elif skip_if_done and status is not None and status[done_flag]:
                skipped += 1
            else:
                candidates.append(round_id)

        queued, already = await self.storage.action_queue.enqueue_many(candidates, action.value)
        logger.info(
            "Enqueued %s for %d-%d: %d queued, %d skipped, %d already queued",
            action.value, start_round, end_round, queued, skipped, already,
        )
        return {"queued": queued, "skipped": skipped, "already_queued": already}

    async def process_next(self) -> Optional[dict]:
        """Run one item; None when paused, idle, or another item is in flight."""
        if self._lock.locked():
            return None
        async with self._lock:
            if await self.storage.action_queue.is_paused():
                return None
            item = await self.storage.action_queue.claim_next()
            if item is None:
                return None

            logger.info("Processing %s for round %d (attempt %d)", item["action"], item["round_id"], item["attempts"])
            try:
                result = await self.workflow.run_action(item["round_id"], item["action"])
            except ReconError as e:
                await self._failed(item, str(e))
                return {**item, "status": "failed", "error": str(e)}
            except Exception as e:
                logger.exception("Unexpected error running %s for round %d", item["action"], item["round_id"])
                await self._failed(item, f"{type(e).__name__}: {e}")
                return {**item, "status": "failed", "error": str(e)}

            await self.storage.action_queue.complete(item["id"])
            self.total_processed += 1
            self._finished_at.append(time.time())
            return {**item, "status": "completed", "result": result}

    async def _failed(self, item: dict, error: str):
        await self.storage.action_queue.fail(item["id"], error)
        self.total_processed += 1
        self.total_failed += 1
        self._finished_at.append(time.time())
        logger.warning("%s for round %d failed: %s", item["action"], item["round_id"], error)

    async def pause(self) -> dict:
        await self.storage.action_queue.set_paused(True)
        logger.info("Queue paused")
        return await self.status()

    async def resume(self) -> dict:
        await self.storage.action_queue.set_paused(False)
        logger.info("Queue resumed")
        return await self.status()

    async def clear(self) -> int:
        n = await self.storage.action_queue.clear_pending()
        logger.info("Cleared %d pending items", n)
        return n

    async def retry_failed(self) -> int:
        n = await self.storage.action_queue.retry_failed(MAX_ATTEMPTS)
        logger.info("Requeued %d failed items", n)
        return n

    async def sweep_stale(self) -> int:
        n = await self.storage.action_queue.sweep_stale(self.stale_after_sec)
        if n:
            logger.warning("Returned %d stale items to pending", n)
        return n

    def rate_per_minute(self) -> float:
        if len(self._finished_at) < 2:
            return 0.0
        span = self._finished_at[-1] - self._finished_at[0]
        if span <= 0:
            return 0.0
        return round((len(self._finished_at) - 1) / span * 60, 2)

    async def status(self) -> dict:
        counts = await self.storage.action_queue.counts()
        rate = self.rate_per_minute()
        eta = round(counts["pending"] / rate * 60, 1) if rate > 0 else None
        return {
            "paused": await self.storage.action_queue.is_paused(),
            "pending_count": counts["pending"],
            "processing": await self.storage.action_queue.processing(),
            "completed_count": counts["completed"],
            "failed_count": counts["failed"],
            "total_processed": self.total_processed,
            "total_failed": self.total_failed,
            "rate_per_minute": rate,
            "eta_seconds": eta,
        }

    async def run_forever(self, interval_sec: float = 1.0):
        while True:
            try:
                item = await self.process_next()
            except Exception:
                logger.exception("Error in queue worker")
                await asyncio.sleep(5)
                continue
            if item is None:
                await asyncio.sleep(interval_sec)
