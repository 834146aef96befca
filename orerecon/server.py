"""
server.py - ORE round reconstruction server entry point.

Single-process server combining:
 - SQLite row store and analytical store via StorageManager
 - Helius RPC and round-feed clients
 - Round workflow, action queue, automation pipeline and backfill task
 - REST admin API (FastAPI on uvicorn, port 8090)

Usage:
    python -m orerecon.server [--api-port 8090] [--db-path data/recon.db] [--no-workers]
"""

import argparse
import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional

try:
    from fastapi import FastAPI
    import uvicorn
except ImportError:
    raise ImportError(
        "FastAPI and uvicorn are required for the server. "
        "Install with: pip install fastapi uvicorn pydantic"
    )

from orerecon import __version__
from orerecon.action_queue import STALE_AFTER_SEC, ActionQueue
from orerecon.automation import AutomationPipeline
from orerecon.backfill import BackfillTask
from orerecon.feed import RoundFeedClient
from orerecon.finalizer import Finalizer
from orerecon.helius import HeliusClient
from orerecon.reconstruction import ReconstructionEngine
from orerecon.routers import register_all_routers
from orerecon.storage import StorageManager
from orerecon.workflow import FinalizeGate, RoundWorkflow

logger = logging.getLogger("server")

DEFAULT_HELIUS_URL = "https://mainnet.helius-rpc.com"
DEFAULT_FEED_URL = "https://ore-bsm.onrender.com"
STALE_SWEEP_INTERVAL_SEC = 60


class ReconServer:
    """Wires storage, upstream clients and pipeline services behind one FastAPI app."""

    def __init__(
        self,
        api_port: int = 8090,
        host: str = "0.0.0.0",
        db_path: str = "data/recon.db",
        analytics_path: str = "data/analytics.db",
        helius_url: str = DEFAULT_HELIUS_URL,
        helius_api_key: Optional[str] = None,
        feed_url: str = DEFAULT_FEED_URL,
        finalize_gate: str = FinalizeGate.ADVISORY.value,
        enable_workers: bool = True,
        stale_after_sec: float = STALE_AFTER_SEC,
        helius=None,
        feed=None,
    ):
        self.api_port = api_port
        self.host = host
        self.db_path = db_path
        self.analytics_path = analytics_path
        self.helius_url = helius_url
        self.helius_api_key = helius_api_key
        self.feed_url = feed_url
        self.finalize_gate = FinalizeGate(finalize_gate)
        self.enable_workers = enable_workers
        self.stale_after_sec = stale_after_sec

        # Clients passed in are owned by the caller and not closed here
        self.helius = helius
        self.feed = feed
        self._owned_clients: List = []

        # Storage + services are initialized in the lifespan hook
        self.storage: Optional[StorageManager] = None
        self.reconstruction: Optional[ReconstructionEngine] = None
        self.finalizer: Optional[Finalizer] = None
        self.workflow: Optional[RoundWorkflow] = None
        self.queue: Optional[ActionQueue] = None
        self.automation: Optional[AutomationPipeline] = None
        self.backfill: Optional[BackfillTask] = None
        self._tasks: List[asyncio.Task] = []

        self.app = FastAPI(title="ORE Round Reconstruction", version=__version__, lifespan=self._lifespan)
        self.app.state.server = self
        register_all_routers(self.app)

    @property
    def workers_running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def _init_services(self):
        """Initialize storage and wire up services (must be called in async context)."""
        self.storage = StorageManager(self.db_path, self.analytics_path)
        await self.storage.initialize()

        if self.helius is None:
            self.helius = HeliusClient(self.helius_url, api_key=self.helius_api_key)
            self._owned_clients.append(self.helius)
        if self.feed is None:
            self.feed = RoundFeedClient(self.feed_url)
            self._owned_clients.append(self.feed)

        self.reconstruction = ReconstructionEngine(self.storage)
        self.finalizer = Finalizer(self.storage)
        self.workflow = RoundWorkflow(
            self.storage, self.helius, self.reconstruction, self.finalizer, self.finalize_gate,
        )
        self.queue = ActionQueue(self.storage, self.workflow, stale_after_sec=self.stale_after_sec)
        self.automation = AutomationPipeline(self.storage, self.helius, self.reconstruction)
        self.backfill = BackfillTask(self.storage, self.feed)

        logger.info("Services initialized (db=%s, analytics=%s, gate=%s)",
                    self.db_path, self.analytics_path, self.finalize_gate.value)

    # -------------------------------------------------------------------
    # Background workers
    # -------------------------------------------------------------------

    async def _stale_sweeper(self):
        """Return items stuck in processing (e.g. after a crash) to pending."""
        while True:
            try:
                await self.queue.sweep_stale()
                await self.automation.sweep_stale(self.stale_after_sec)
            except Exception:
                logger.exception("Error in stale sweep")
            await asyncio.sleep(STALE_SWEEP_INTERVAL_SEC)

    def _start_workers(self):
        self._tasks = [
            asyncio.create_task(self.queue.run_forever()),
            asyncio.create_task(self.automation.run_forever()),
            asyncio.create_task(self._stale_sweeper()),
        ]
        logger.info("Background workers started")

    async def _stop_workers(self):
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        await self._init_services()
        if self.enable_workers:
            self._start_workers()
        try:
            yield
        finally:
            await self.stop()

    async def stop(self):
        """Stop workers and any running backfill, then close clients and storage."""
        await self._stop_workers()
        if self.backfill and self.backfill.running:
            self.backfill.cancel()
            await self.backfill.wait()
        for client in self._owned_clients:
            await client.close()
        self._owned_clients = []
        if self.storage:
            await self.storage.close()
        logger.info("Server stopped")

    async def start(self):
        """Run the API server; storage and workers come up in the lifespan hook."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.api_port,
            log_level="info",
        )
        server = uvicorn.Server(config)
        logger.info("REST API starting on port %d", self.api_port)
        await server.serve()


def main():
    """CLI entry point for the reconstruction server."""
    parser = argparse.ArgumentParser(description="ORE Round Reconstruction Server")
    parser.add_argument("--api-port", type=int, default=8090, help="REST API port (default: 8090)")
    parser.add_argument("--host", default="0.0.0.0", help="Bind address (default: 0.0.0.0)")
    parser.add_argument("--db-path", default="data/recon.db", help="Row store path (default: data/recon.db)")
    parser.add_argument("--analytics-path", default="data/analytics.db",
                        help="Analytical store path (default: data/analytics.db)")
    parser.add_argument("--helius-url", default=DEFAULT_HELIUS_URL,
                        help="Helius RPC URL; HELIUS_API_KEY is appended as api-key")
    parser.add_argument("--feed-url", default=DEFAULT_FEED_URL, help="Round metadata feed base URL")
    parser.add_argument("--finalize-gate", default=FinalizeGate.ADVISORY.value,
                        choices=[g.value for g in FinalizeGate], help="Finalize policy (default: advisory)")
    parser.add_argument("--no-workers", action="store_true", help="Disable background queue and automation loops")
    parser.add_argument("--stale-after", type=float, default=STALE_AFTER_SEC,
                        help="Seconds before a processing item is considered stale (default: 600)")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level (default: INFO)")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(name)-10s] %(levelname)-5s %(message)s",
        datefmt="%H:%M:%S",
    )

    server = ReconServer(
        api_port=args.api_port,
        host=args.host,
        db_path=args.db_path,
        analytics_path=args.analytics_path,
        helius_url=args.helius_url,
        helius_api_key=os.environ.get("HELIUS_API_KEY"),
        feed_url=args.feed_url,
        finalize_gate=args.finalize_gate,
        enable_workers=not args.no_workers,
        stale_after_sec=args.stale_after,
    )

    logger.info("=" * 60)
    logger.info("  ORE Round Reconstruction Server")
    logger.info("  REST API:      http://%s:%d", args.host, args.api_port)
    logger.info("  Row store:     %s", args.db_path)
    logger.info("  Analytics:     %s", args.analytics_path)
    logger.info("  Finalize gate: %s", args.finalize_gate)
    logger.info("  Workers:       %s", "disabled" if args.no_workers else "enabled")
    logger.info("=" * 60)

    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()
