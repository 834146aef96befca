"""
backfill.py - Historical round backfill from the round-metadata feed.

Pages the feed from newest to oldest (page 0 first) and seeds the workflow
store. When an entire page is already complete, the task asks the store how
far down the run of complete rounds extends and jumps over the pages that
cover it. The page it lands on must reach back up to the end of that run;
if it starts lower, the task steps back one page at a time until the pages
overlap, so no round below the first seen is skipped unverified.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from orerecon.errors import ConflictError

if TYPE_CHECKING:
    from orerecon.feed import RoundFeedClient
    from orerecon.storage import StorageManager

logger = logging.getLogger("backfill")

DEFAULT_MAX_PAGES = 100


class BackfillStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class BackfillTask:
    def __init__(self, storage: "StorageManager", feed: "RoundFeedClient"):
        self.storage = storage
        self.feed = feed
        self._task: Optional[asyncio.Task] = None
        self._reset(stop_at_round=0, max_pages=DEFAULT_MAX_PAGES)
        self.status = BackfillStatus.IDLE

    def _reset(self, stop_at_round: int, max_pages: int):
        self.status = BackfillStatus.RUNNING
        self._cancel_requested = False
        self.stop_at_round = stop_at_round
        self.max_pages = max_pages
        self.rounds_fetched = 0
        self.rounds_skipped = 0
        self.rounds_missing_deployments = 0
        self.pages_fetched = 0
        self.pages_jumped = 0
        self.current_page = 0
        self.first_round_seen: Optional[int] = None
        self.last_round_seen: Optional[int] = None
        self.rounds_seen = 0
        self.error: Optional[str] = None
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None

    @property
    def running(self) -> bool:
        return self.status == BackfillStatus.RUNNING

    def start(self, stop_at_round: int = 0, max_pages: int = DEFAULT_MAX_PAGES) -> dict:
        if self.running:
            raise ConflictError("Backfill already running")
        self._reset(stop_at_round, max_pages)
        self._task = asyncio.create_task(self._run())
        return self.get_status()

    def cancel(self) -> dict:
        if self.running:
            self._cancel_requested = True
            logger.info("Backfill cancel requested")
        return self.get_status()

    async def wait(self):
        if self._task is not None:
            await self._task

    async def run(self, stop_at_round: int = 0, max_pages: int = DEFAULT_MAX_PAGES) -> dict:
        """Scan in the current task and return the final status."""
        if self.running:
            raise ConflictError("Backfill already running")
        self._reset(stop_at_round, max_pages)
        await self._run()
        return self.get_status()

    async def _run(self):
        self.started_at = time.time()
        logger.info("Backfill started (stop_at_round=%d, max_pages=%d)", self.stop_at_round, self.max_pages)
        try:
            await self._scan()
        except Exception as e:
            self.status = BackfillStatus.FAILED
            self.error = str(e)
            logger.exception("Backfill failed on page %d", self.current_page)
        else:
            self.status = BackfillStatus.CANCELLED if self._cancel_requested else BackfillStatus.COMPLETED
            logger.info(
                "Backfill %s: %d fetched, %d skipped, %d missing deployments, %d pages (+%d jumped)",
                self.status.value, self.rounds_fetched, self.rounds_skipped,
                self.rounds_missing_deployments, self.pages_fetched, self.pages_jumped,
            )
        finally:
            self.finished_at = time.time()

    async def _scan(self):
        page = 0
        # After a jump: (floor, earliest page allowed when stepping back)
        verify: Optional[tuple] = None

        while self.pages_fetched < self.max_pages and not self._cancel_requested:
            self.current_page = page
            rounds = await self.feed.get_page(page)
            self.pages_fetched += 1
            if not rounds:
                if verify is not None and page > verify[1]:
                    logger.info("Page %d is empty after a jump; stepping back", page)
                    page -= 1
                    continue
                break
            ids = [r["round_id"] for r in rounds]
            top, lowest = max(ids), min(ids)

            if verify is not None:
                floor, min_page = verify
                if top < floor - 1 and page > min_page:
                    logger.info("Page %d starts at %d, below %d; stepping back", page, top, floor - 1)
                    page -= 1
                    continue
                verify = None

            if self.first_round_seen is None:
                self.first_round_seen = top

            all_skipped = await self._ingest_page(rounds)
            self.last_round_seen = lowest

            if lowest <= self.stop_at_round:
                break

            if all_skipped:
                floor = await self.storage.workflow.complete_floor(lowest)
                jump = (lowest - floor) // len(rounds)
                if jump > 0:
                    logger.info(
                        "Page %d fully complete; rounds %d-%d complete, jumping %d pages",
                        page, floor, lowest - 1, jump,
                    )
                    self.pages_jumped += jump
                    verify = (floor, page + 1)
                    page += 1 + jump
                    continue
            page += 1

    async def _ingest_page(self, rounds: List[dict]) -> bool:
        """Seed each round on the page; True when every round was already complete."""
        all_skipped = True
        for summary in sorted(rounds, key=lambda r: r["round_id"], reverse=True):
            round_id = summary["round_id"]
            if round_id < self.stop_at_round:
                continue
            self.rounds_seen += 1
            if await self.storage.workflow.is_complete(round_id):
                self.rounds_skipped += 1
                continue
            all_skipped = False
            exists = await self.storage.rounds.exists(round_id)
            await self.storage.rounds.upsert(summary, source="backfill")
            await self.storage.workflow.set_meta_fetched(round_id)
            if exists and summary.get("total_deployed", 0) > 0:
                self.rounds_missing_deployments += 1
            else:
                self.rounds_fetched += 1
        return all_skipped

    def _eta_seconds(self, elapsed: float) -> Optional[float]:
        if not self.running or self.pages_fetched == 0 or self.last_round_seen is None:
            return None
        per_page = elapsed / self.pages_fetched
        rounds_per_page = max(1.0, self.rounds_seen / self.pages_fetched)
        remaining_rounds = max(0, self.last_round_seen - self.stop_at_round)
        remaining_pages = min(remaining_rounds / rounds_per_page, self.max_pages - self.pages_fetched)
        return round(max(0.0, remaining_pages) * per_page, 1)

    def get_status(self) -> dict:
        if self.started_at is None:
            elapsed = 0.0
        else:
            elapsed = (self.finished_at or time.time()) - self.started_at
        return {
            "status": self.status.value,
            "stop_at_round": self.stop_at_round,
            "max_pages": self.max_pages,
            "rounds_fetched": self.rounds_fetched,
            "rounds_skipped": self.rounds_skipped,
            "rounds_missing_deployments": self.rounds_missing_deployments,
            "pages_fetched": self.pages_fetched,
            "pages_jumped": self.pages_jumped,
            "current_page": self.current_page,
            "first_round_seen": self.first_round_seen,
            "last_round_seen": self.last_round_seen,
            "elapsed_seconds": round(elapsed, 1),
            "eta_seconds": self._eta_seconds(elapsed),
            "error": self.error,
        }
