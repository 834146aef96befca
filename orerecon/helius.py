"""
helius.py - Helius JSON-RPC client for address transaction history.

Wraps `getTransactionsForAddress` (full details, json encoding, succeeded
only) with request spacing and bounded pagination. Transport failures,
HTTP errors and JSON-RPC errors all surface as HeliusError.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

import httpx

from orerecon.errors import HeliusError
from orerecon.pda import round_pda

logger = logging.getLogger("helius")

PAGE_LIMIT = 100
MIN_REQUEST_INTERVAL_SEC = 0.2
DEFAULT_MAX_PAGES = 200


@dataclass
class TransactionPage:
    transactions: List[dict] = field(default_factory=list)
    pagination_token: Optional[str] = None


class HeliusClient:
    def __init__(
        self,
        rpc_url: str,
        api_key: Optional[str] = None,
        min_interval_sec: float = MIN_REQUEST_INTERVAL_SEC,
        timeout_sec: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if api_key:
            sep = "&" if "?" in rpc_url else "?"
            rpc_url = f"{rpc_url}{sep}api-key={api_key}"
        self._rpc_url = rpc_url
        self._min_interval = min_interval_sec
        self._last_request_at = 0.0
        self._pace_lock = asyncio.Lock()
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_sec), transport=transport)
        self.requests_made = 0

    async def close(self):
        await self._client.aclose()

    async def _pace(self):
        async with self._pace_lock:
            wait = self._min_interval - (time.monotonic() - self._last_request_at)
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_request_at = time.monotonic()

    async def _rpc(self, method: str, params: list):
        await self._pace()
        body = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        self.requests_made += 1
        try:
            resp = await self._client.post(self._rpc_url, json=body)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as e:
            raise HeliusError(f"{method} request failed: {e}") from e
        except ValueError as e:
            raise HeliusError(f"{method} returned invalid JSON") from e
        if not isinstance(data, dict):
            raise HeliusError(f"{method} returned an unexpected payload")
        if data.get("error"):
            err = data["error"]
            if isinstance(err, dict):
                raise HeliusError(f"RPC error {err.get('code')}: {err.get('message', err)}")
            raise HeliusError(f"RPC error: {err}")
        if "result" not in data or data["result"] is None:
            raise HeliusError(f"{method} returned no result")
        return data["result"]

    async def get_transactions_for_address(
        self,
        address: str,
        pagination_token: Optional[str] = None,
        limit: int = PAGE_LIMIT,
        sort_order: str = "asc",
        slot_gte: Optional[int] = None,
        slot_lte: Optional[int] = None,
    ) -> TransactionPage:
        filters: dict = {"status": "succeeded"}
        slot_filter = {}
        if slot_gte is not None:
            slot_filter["gte"] = slot_gte
        if slot_lte is not None:
            slot_filter["lte"] = slot_lte
        if slot_filter:
            filters["slot"] = slot_filter

        opts = {
            "transactionDetails": "full",
            "encoding": "json",
            "sortOrder": sort_order,
            "limit": limit,
            "commitment": "finalized",
            "filters": filters,
        }
        if pagination_token:
            opts["paginationToken"] = pagination_token

        result = await self._rpc("getTransactionsForAddress", [address, opts])
        if not isinstance(result, dict) or not isinstance(result.get("data"), list):
            raise HeliusError("getTransactionsForAddress returned a malformed result")
        return TransactionPage(result["data"], result.get("paginationToken"))

    async def get_transactions_for_round(
        self,
        round_id: int,
        start_slot: Optional[int] = None,
        end_slot: Optional[int] = None,
        max_pages: int = DEFAULT_MAX_PAGES,
    ) -> List[dict]:
        """Every transaction touching the round PDA within the slot range, oldest first."""
        address = round_pda(round_id)
        transactions: List[dict] = []
        token = None
        pages = 0
        while True:
            if pages >= max_pages:
                raise HeliusError(
                    f"Round {round_id}: more than {max_pages} pages of transactions"
                )
            page = await self.get_transactions_for_address(
                address,
                pagination_token=token,
                sort_order="asc",
                slot_gte=start_slot or None,
                slot_lte=end_slot or None,
            )
            pages += 1
            transactions.extend(page.transactions)
            token = page.pagination_token
            if not token or not page.transactions:
                break
        logger.info("Round %d: fetched %d transactions in %d pages", round_id, len(transactions), pages)
        return transactions
