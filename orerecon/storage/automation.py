import time
from typing import List, Optional

from ._base import BaseRepo

QUEUE_COLUMNS = (
    "id", "round_id", "miner_pubkey", "authority_pubkey", "automation_pda",
    "deploy_signature", "deploy_ix_index", "deploy_slot", "status", "priority",
    "attempts", "last_error", "txns_searched", "pages_fetched", "fetch_duration_ms",
    "automation_found", "automation_active", "created_at", "processing_started_at",
    "completed_at",
)

STATE_COLUMNS = (
    "id", "round_id", "miner_pubkey", "authority_pubkey", "deploy_signature",
    "deploy_ix_index", "deploy_slot", "automation_found", "automation_active",
    "amount", "mask", "strategy", "fee", "executor", "automate_signature",
    "automate_ix_index", "automate_slot", "txns_searched", "pages_fetched",
    "fetch_duration_ms", "created_at",
)

_SELECT_QUEUE = "SELECT " + ", ".join(QUEUE_COLUMNS) + " FROM automation_queue"
_SELECT_STATE = "SELECT " + ", ".join(STATE_COLUMNS) + " FROM automation_states"


def _queue_dict(row) -> dict:
    d = dict(zip(QUEUE_COLUMNS, row))
    for flag in ("automation_found", "automation_active"):
        if d[flag] is not None:
            d[flag] = bool(d[flag])
    return d


def _state_dict(row) -> dict:
    d = dict(zip(STATE_COLUMNS, row))
    d["automation_found"] = bool(d["automation_found"])
    d["automation_active"] = bool(d["automation_active"])
    return d


class AutomationQueueRepo(BaseRepo):
    """Lookups of automation state for deploys that produced no deploy log."""

    async def enqueue(
        self,
        round_id: int,
        miner_pubkey: str,
        authority_pubkey: str,
        automation_pda: str,
        deploy_signature: str,
        deploy_ix_index: int,
        deploy_slot: int,
        priority: int = 1000,
    ) -> bool:
        changed = await self._write(
            "INSERT OR IGNORE INTO automation_queue (round_id, miner_pubkey, authority_pubkey, "
            "automation_pda, deploy_signature, deploy_ix_index, deploy_slot, priority, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (round_id, miner_pubkey, authority_pubkey, automation_pda, deploy_signature,
             deploy_ix_index, deploy_slot, priority, time.time()),
        )
        return changed == 1

    async def claim_next(self) -> Optional[dict]:
        now = time.time()
        async with self._atomic() as db:
            async with db.execute(
                "SELECT id FROM automation_queue WHERE status = 'pending' "
                "ORDER BY priority, created_at, id LIMIT 1"
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                return None
            await db.execute(
                "UPDATE automation_queue SET status = 'processing', attempts = attempts + 1, "
                "processing_started_at = ?, last_error = NULL WHERE id = ?",
                (now, row[0]),
            )
            async with db.execute(_SELECT_QUEUE + " WHERE id = ?", (row[0],)) as cursor:
                claimed = await cursor.fetchone()
        return _queue_dict(claimed)

    async def complete(
        self,
        item_id: int,
        found: bool,
        active: bool,
        txns_searched: int,
        pages_fetched: int,
        fetch_duration_ms: int,
    ) -> None:
        await self._write(
            "UPDATE automation_queue SET status = 'completed', automation_found = ?, "
            "automation_active = ?, txns_searched = ?, pages_fetched = ?, fetch_duration_ms = ?, "
            "completed_at = ?, last_error = NULL WHERE id = ?",
            (1 if found else 0, 1 if active else 0, txns_searched, pages_fetched,
             fetch_duration_ms, time.time(), item_id),
        )

    async def fail(
        self,
        item_id: int,
        error: str,
        txns_searched: int = 0,
        pages_fetched: int = 0,
        fetch_duration_ms: int = 0,
    ) -> None:
        await self._write(
            "UPDATE automation_queue SET status = 'failed', last_error = ?, txns_searched = ?, "
            "pages_fetched = ?, fetch_duration_ms = ?, completed_at = ? WHERE id = ?",
            (error, txns_searched, pages_fetched, fetch_duration_ms, time.time(), item_id),
        )

    async def get(self, item_id: int) -> Optional[dict]:
        row = await self._fetchone(_SELECT_QUEUE + " WHERE id = ?", (item_id,))
        return _queue_dict(row) if row else None

    async def retry_failed(self, max_attempts: int) -> int:
        return await self._write(
            "UPDATE automation_queue SET status = 'pending', last_error = NULL, "
            "processing_started_at = NULL, completed_at = NULL "
            "WHERE status = 'failed' AND attempts < ?",
            (max_attempts,),
        )

    async def sweep_stale(self, older_than_sec: float) -> int:
        return await self._write(
            "UPDATE automation_queue SET status = 'pending', processing_started_at = NULL "
            "WHERE status = 'processing' AND processing_started_at < ?",
            (time.time() - older_than_sec,),
        )

    async def list_items(
        self,
        status: Optional[str] = None,
        round_id: Optional[int] = None,
        page: int = 1,
        limit: int = 50,
    ) -> dict:
        clauses = []
        params: list = []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if round_id is not None:
            clauses.append("round_id = ?")
            params.append(round_id)
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        total = await self._scalar("SELECT COUNT(*) FROM automation_queue" + where, tuple(params))
        rows = await self._fetchall(
            _SELECT_QUEUE + where + " ORDER BY priority, created_at, id LIMIT ? OFFSET ?",
            tuple(params) + (limit, (page - 1) * limit),
        )
        return {
            "items": [_queue_dict(r) for r in rows],
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": max(1, (total + limit - 1) // limit),
        }

    async def stats(self) -> dict:
        by_status = {"pending": 0, "processing": 0, "completed": 0, "failed": 0}
        for status, n in await self._fetchall(
            "SELECT status, COUNT(*) FROM automation_queue GROUP BY status"
        ):
            by_status[status] = n
        row = await self._fetchone(
            "SELECT COALESCE(SUM(automation_found), 0), COALESCE(SUM(automation_active), 0), "
            "COALESCE(SUM(txns_searched), 0), COALESCE(SUM(pages_fetched), 0), "
            "AVG(fetch_duration_ms) FROM automation_queue WHERE status = 'completed'"
        )
        return {
            **by_status,
            "total": sum(by_status.values()),
            "found": row[0],
            "active": row[1],
            "txns_searched": row[2],
            "pages_fetched": row[3],
            "avg_fetch_duration_ms": round(row[4] or 0.0, 1),
        }


class AutomationStateRepo(BaseRepo):
    """Recovered automation configs; also serves as the per-authority slot cache."""

    async def save(self, state: dict) -> None:
        await self._write(
            "INSERT OR REPLACE INTO automation_states (round_id, miner_pubkey, authority_pubkey, "
            "deploy_signature, deploy_ix_index, deploy_slot, automation_found, automation_active, "
            "amount, mask, strategy, fee, executor, automate_signature, automate_ix_index, "
            "automate_slot, txns_searched, pages_fetched, fetch_duration_ms, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                state["round_id"],
                state["miner_pubkey"],
                state["authority_pubkey"],
                state["deploy_signature"],
                state.get("deploy_ix_index", 0),
                state["deploy_slot"],
                1 if state.get("automation_found") else 0,
                1 if state.get("automation_active") else 0,
                state.get("amount", 0),
                state.get("mask", 0),
                state.get("strategy", 0),
                state.get("fee", 0),
                state.get("executor", ""),
                state.get("automate_signature", ""),
                state.get("automate_ix_index", 0),
                state.get("automate_slot", 0),
                state.get("txns_searched", 0),
                state.get("pages_fetched", 0),
                state.get("fetch_duration_ms", 0),
                time.time(),
            ),
        )

    async def find_cached(self, authority: str, deploy_slot: int) -> Optional[dict]:
        """A state whose Automate precedes `deploy_slot` and whose deploy follows it."""
        row = await self._fetchone(
            _SELECT_STATE + " WHERE authority_pubkey = ? "
            "AND automate_slot < ? AND deploy_slot > ? ORDER BY deploy_slot LIMIT 1",
            (authority, deploy_slot, deploy_slot),
        )
        return _state_dict(row) if row else None

    async def latest_before(self, authority: str, deploy_slot: int) -> Optional[dict]:
        """Most recent state recorded for an earlier deploy of the same authority."""
        row = await self._fetchone(
            _SELECT_STATE + " WHERE authority_pubkey = ? AND deploy_slot < ? "
            "ORDER BY deploy_slot DESC LIMIT 1",
            (authority, deploy_slot),
        )
        return _state_dict(row) if row else None

    async def list_for_authority(self, authority: str, limit: int = 100) -> List[dict]:
        rows = await self._fetchall(
            _SELECT_STATE + " WHERE authority_pubkey = ? ORDER BY deploy_slot DESC LIMIT ?",
            (authority, limit),
        )
        return [_state_dict(r) for r in rows]
