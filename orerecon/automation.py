"""
automation.py - Automation-state lookups for deploys with no deploy log.

Automated deploys are executed by a delegate, and their outcome is not
always logged. For each such deploy we recover the automation config that
was in force at the deploy slot: the latest Automate instruction for the
authority's automation PDA at or before that slot.

Lookup order per queued item:
 1. slot cache: a stored state for the same authority whose Automate
    precedes this deploy and whose own deploy follows it;
 2. backward search (newest first, slot <= deploy_slot) of the PDA's
    transactions, bounded by max_pages. Reaching the deploy slot of an
    earlier stored state falls back to that state.

Exhausting the history is a completed lookup with automation_found=false;
hitting the page bound or an upstream error fails the item.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

from orerecon.analyzer import analyze_transaction
from orerecon.decoder import OreAutomate
from orerecon.errors import DecodeError, UpstreamError
from orerecon.pda import automation_pda

if TYPE_CHECKING:
    from orerecon.helius import HeliusClient
    from orerecon.reconstruction import ReconstructionEngine
    from orerecon.storage import StorageManager

logger = logging.getLogger("automation")

MAX_ATTEMPTS = 5
DEFAULT_PRIORITY = 1000
DEFAULT_MAX_PAGES = 50
DEFAULT_PROCESS_COUNT = 5
MAX_PROCESS_COUNT = 50


class SearchBoundExceeded(UpstreamError):
    """The backward search used up its page budget without a verdict."""


@dataclass
class AutomateHit:
    signature: str
    ix_index: int
    slot: int
    automate: OreAutomate


@dataclass
class LookupResult:
    found: bool
    active: bool
    hit: Optional[AutomateHit]
    txns_searched: int
    pages_fetched: int
    source: str
    cached: Optional[dict] = None


def find_automate(tx: dict, authority: str, automation_address: str) -> Optional[AutomateHit]:
    """Latest Automate in `tx` signed by `authority` for its automation account."""
    try:
        analysis = analyze_transaction(tx)
    except (DecodeError, KeyError, TypeError, ValueError) as e:
        logger.debug("Skipping undecodable transaction during automation search: %s", e)
        return None
    hit = None
    for rec in analysis.instructions:
        payload = rec.parsed.data
        if not isinstance(payload, OreAutomate):
            continue
        if payload.signer != authority or payload.automation != automation_address:
            continue
        hit = AutomateHit(analysis.signature, rec.ix_index, analysis.slot, payload)
    return hit


class AutomationPipeline:
    def __init__(
        self,
        storage: "StorageManager",
        helius: "HeliusClient",
        reconstruction: "ReconstructionEngine",
        max_pages: int = DEFAULT_MAX_PAGES,
        page_limit: int = 100,
    ):
        self.storage = storage
        self.helius = helius
        self.reconstruction = reconstruction
        self.max_pages = max_pages
        self.page_limit = page_limit
        self._lock = asyncio.Lock()
        self._live = {
            "current_item_id": None,
            "current_signature": None,
            "current_authority": None,
            "started_at": None,
            "session_processed": 0,
            "session_succeeded": 0,
            "session_failed": 0,
        }

    # -- enqueue -----------------------------------------------------------

    async def enqueue(self, item: dict) -> bool:
        return await self.storage.automation_queue.enqueue(
            round_id=item["round_id"],
            miner_pubkey=item["miner_pubkey"],
            authority_pubkey=item["authority_pubkey"],
            automation_pda=item["automation_pda"],
            deploy_signature=item["deploy_signature"],
            deploy_ix_index=item.get("deploy_ix_index", 0),
            deploy_slot=item["deploy_slot"],
            priority=item.get("priority", DEFAULT_PRIORITY),
        )

    async def enqueue_round(self, round_id: int, priority: int = DEFAULT_PRIORITY) -> dict:
        """Queue lookups for every unmatched deploy of an already-fetched round."""
        deploys = await self.reconstruction.unmatched_deploys(round_id)
        queued = 0
        for d in deploys:
            added = await self.storage.automation_queue.enqueue(
                round_id=round_id,
                miner_pubkey=d.miner,
                authority_pubkey=d.authority,
                automation_pda=automation_pda(d.authority),
                deploy_signature=d.signature,
                deploy_ix_index=d.ix_index,
                deploy_slot=d.slot,
                priority=priority,
            )
            queued += 1 if added else 0
        return {"round_id": round_id, "candidates": len(deploys), "queued": queued,
                "already_queued": len(deploys) - queued}

    # -- processing --------------------------------------------------------

    async def process(self, count: int = DEFAULT_PROCESS_COUNT) -> List[dict]:
        """Claim and process up to `count` items, one at a time; empty while another batch runs."""
        count = max(1, min(count, MAX_PROCESS_COUNT))
        results = []
        if self._lock.locked():
            return results
        async with self._lock:
            for _ in range(count):
                item = await self.storage.automation_queue.claim_next()
                if item is None:
                    break
                results.append(await self._process_item(item))
        return results

    async def _process_item(self, item: dict) -> dict:
        started = time.monotonic()
        self._live.update(
            current_item_id=item["id"],
            current_signature=item["deploy_signature"],
            current_authority=item["authority_pubkey"],
            started_at=time.time(),
        )
        self._live["session_processed"] += 1
        try:
            result = await self._lookup(item)
            duration_ms = int((time.monotonic() - started) * 1000)
            await self.storage.automation_states.save(self._state_row(item, result, duration_ms))
            await self.storage.automation_queue.complete(
                item["id"], result.found, result.active,
                result.txns_searched, result.pages_fetched, duration_ms,
            )
        except UpstreamError as e:
            logger.warning("Automation lookup %d failed (attempt %d): %s", item["id"], item["attempts"], e)
            return await self._failed(item, str(e), started, e)
        except Exception as e:
            logger.exception("Unexpected error in automation lookup %d", item["id"])
            return await self._failed(item, f"{type(e).__name__}: {e}", started, e)
        finally:
            self._live.update(current_item_id=None, current_signature=None,
                              current_authority=None, started_at=None)

        self._live["session_succeeded"] += 1
        logger.info(
            "Automation lookup %d (%s): found=%s active=%s via %s, %d txns / %d pages",
            item["id"], item["authority_pubkey"], result.found, result.active,
            result.source, result.txns_searched, result.pages_fetched,
        )
        return {
            "id": item["id"],
            "status": "completed",
            "automation_found": result.found,
            "automation_active": result.active,
            "source": result.source,
        }

    async def _failed(self, item: dict, error: str, started: float, exc: Exception) -> dict:
        duration_ms = int((time.monotonic() - started) * 1000)
        searched = getattr(exc, "txns_searched", 0)
        pages = getattr(exc, "pages_fetched", 0)
        await self.storage.automation_queue.fail(item["id"], error, searched, pages, duration_ms)
        self._live["session_failed"] += 1
        return {"id": item["id"], "status": "failed", "error": error}

    async def _lookup(self, item: dict) -> LookupResult:
        authority = item["authority_pubkey"]
        deploy_slot = item["deploy_slot"]

        cached = await self.storage.automation_states.find_cached(authority, deploy_slot)
        if cached is not None:
            return self._from_cached(cached, 0, 0, "cache")

        fallback = await self.storage.automation_states.latest_before(authority, deploy_slot)
        token = None
        pages = 0
        searched = 0
        while pages < self.max_pages:
            page = await self.helius.get_transactions_for_address(
                item["automation_pda"],
                pagination_token=token,
                limit=self.page_limit,
                sort_order="desc",
                slot_lte=deploy_slot,
            )
            pages += 1
            for tx in page.transactions:
                slot = int(tx.get("slot") or 0)
                if fallback is not None and slot <= fallback["deploy_slot"]:
                    return self._from_cached(fallback, searched, pages, "fallback")
                searched += 1
                hit = find_automate(tx, authority, item["automation_pda"])
                if hit is not None:
                    active = not hit.automate.is_close
                    return LookupResult(True, active, hit, searched, pages, "search")
            token = page.pagination_token
            if not token or not page.transactions:
                if fallback is not None:
                    return self._from_cached(fallback, searched, pages, "fallback")
                return LookupResult(False, False, None, searched, pages, "exhausted")

        err = SearchBoundExceeded(
            f"no Automate found within {self.max_pages} pages ({searched} transactions)"
        )
        err.txns_searched = searched
        err.pages_fetched = pages
        raise err

    @staticmethod
    def _from_cached(state: dict, searched: int, pages: int, source: str) -> LookupResult:
        return LookupResult(
            found=state["automation_found"],
            active=state["automation_active"],
            hit=None,
            txns_searched=searched,
            pages_fetched=pages,
            source=source,
            cached=state,
        )

    @staticmethod
    def _state_row(item: dict, result: LookupResult, duration_ms: int) -> dict:
        row = {
            "round_id": item["round_id"],
            "miner_pubkey": item["miner_pubkey"],
            "authority_pubkey": item["authority_pubkey"],
            "deploy_signature": item["deploy_signature"],
            "deploy_ix_index": item["deploy_ix_index"],
            "deploy_slot": item["deploy_slot"],
            "automation_found": result.found,
            "automation_active": result.active,
            "txns_searched": result.txns_searched,
            "pages_fetched": result.pages_fetched,
            "fetch_duration_ms": duration_ms,
        }
        if result.hit is not None:
            a = result.hit.automate
            row.update(
                amount=a.amount, mask=a.mask, strategy=a.strategy, fee=a.fee, executor=a.executor,
                automate_signature=result.hit.signature, automate_ix_index=result.hit.ix_index,
                automate_slot=result.hit.slot,
            )
        elif result.cached is not None:
            c = result.cached
            row.update(
                amount=c["amount"], mask=c["mask"], strategy=c["strategy"], fee=c["fee"],
                executor=c["executor"], automate_signature=c["automate_signature"],
                automate_ix_index=c["automate_ix_index"], automate_slot=c["automate_slot"],
            )
        return row

    # -- controls & observability -----------------------------------------

    async def retry_failed(self) -> int:
        n = await self.storage.automation_queue.retry_failed(MAX_ATTEMPTS)
        if n:
            logger.info("Requeued %d failed automation lookups", n)
        return n

    async def sweep_stale(self, older_than_sec: float) -> int:
        n = await self.storage.automation_queue.sweep_stale(older_than_sec)
        if n:
            logger.warning("Returned %d stale automation lookups to pending", n)
        return n

    def live(self) -> dict:
        live = dict(self._live)
        started = live.pop("started_at")
        live["elapsed_ms"] = int((time.time() - started) * 1000) if started else None
        live["running"] = self._lock.locked()
        return live

    async def stats(self) -> dict:
        stats = await self.storage.automation_queue.stats()
        stats["live"] = self.live()
        return stats

    async def run_forever(self, interval_sec: float = 2.0, batch: int = DEFAULT_PROCESS_COUNT):
        while True:
            try:
                results = await self.process(batch)
            except Exception:
                logger.exception("Error in automation loop")
                await asyncio.sleep(5)
                continue
            if not results:
                await asyncio.sleep(interval_sec)
