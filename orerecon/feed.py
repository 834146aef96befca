"""
feed.py - Client for the paginated round-metadata feed.

GET {feed_url}/events/reset?page=N returns the newest rounds first as
[signature_bytes, meta] pairs.
"""

import logging
from typing import List, Optional

import httpx

from orerecon.errors import FeedError
from orerecon.pda import pubkey_from_bytes

logger = logging.getLogger("feed")

_META_INT_FIELDS = (
    "round_id", "start_slot", "end_slot", "winning_square", "num_winners", "motherlode",
    "total_deployed", "total_vaulted", "total_winnings", "total_minted", "ts",
)


def parse_entry(entry) -> dict:
    """Turn one feed entry into a round summary dict."""
    if not isinstance(entry, (list, tuple)) or len(entry) != 2 or not isinstance(entry[1], dict):
        raise FeedError(f"malformed feed entry: {entry!r:.80}")
    meta = entry[1]
    try:
        summary = {name: int(meta[name]) for name in _META_INT_FIELDS}
        top_miner = pubkey_from_bytes(meta["top_miner"])
    except (KeyError, TypeError, ValueError) as e:
        raise FeedError(f"malformed round meta: {e}") from e
    summary["top_miner"] = top_miner
    summary["motherlode_hit"] = summary["motherlode"] > 0
    return summary


class RoundFeedClient:
    def __init__(
        self,
        feed_url: str,
        timeout_sec: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._feed_url = feed_url.rstrip("/")
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_sec), transport=transport)

    async def close(self):
        await self._client.aclose()

    async def get_page(self, page: int) -> List[dict]:
        url = f"{self._feed_url}/events/reset"
        try:
            resp = await self._client.get(url, params={"page": page})
        except httpx.HTTPError as e:
            raise FeedError(f"feed page {page} request failed: {e}") from e
        if resp.status_code != 200:
            raise FeedError(f"feed page {page} returned HTTP {resp.status_code}")
        try:
            entries = resp.json()
        except ValueError as e:
            raise FeedError(f"feed page {page} is not JSON") from e
        if not isinstance(entries, list):
            raise FeedError(f"feed page {page} is not a list")
        rounds = [parse_entry(e) for e in entries]
        logger.debug("Feed page %d: %d rounds", page, len(rounds))
        return rounds
