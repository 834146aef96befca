import asyncio
import logging
import os
from typing import Optional

try:
    import aiosqlite
except ImportError:
    raise ImportError(
        "aiosqlite is required for the storage layer. "
        "Install with: pip install aiosqlite"
    )

from ._migrate import run_analytics_migrations, run_migrations
from .action_queue import ActionQueueRepo
from .analytics import AnalyticsRepo
from .automation import AutomationQueueRepo, AutomationStateRepo
from .raw_transactions import RawTransactionRepo
from .rounds import RoundRepo
from .staged import StagedDeploymentRepo
from .workflow import WorkflowRepo

logger = logging.getLogger("storage")


async def _open(path: str) -> aiosqlite.Connection:
    if path != ":memory:":
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
    db = await aiosqlite.connect(path)
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA foreign_keys=ON")
    return db


class StorageManager:
    """Opens the row store and the analytical store, runs migrations, exposes repos."""

    def __init__(self, db_path: str = "data/recon.db", analytics_path: str = "data/analytics.db"):
        self.db_path = db_path
        self.analytics_path = analytics_path
        self._db: Optional[aiosqlite.Connection] = None
        self._analytics_db: Optional[aiosqlite.Connection] = None
        self.rounds: Optional[RoundRepo] = None
        self.workflow: Optional[WorkflowRepo] = None
        self.raw_transactions: Optional[RawTransactionRepo] = None
        self.staged: Optional[StagedDeploymentRepo] = None
        self.action_queue: Optional[ActionQueueRepo] = None
        self.automation_queue: Optional[AutomationQueueRepo] = None
        self.automation_states: Optional[AutomationStateRepo] = None
        self.analytics: Optional[AnalyticsRepo] = None

    async def initialize(self):
        self._db = await _open(self.db_path)
        await run_migrations(self._db, logger)
        self._analytics_db = await _open(self.analytics_path)
        await run_analytics_migrations(self._analytics_db, logger)
        self.attach(self._db, self._analytics_db)
        logger.info("Storage initialized: %s, %s", self.db_path, self.analytics_path)

    def attach(self, db: aiosqlite.Connection, analytics_db: aiosqlite.Connection):
        """Build repos over already-migrated connections; one write lock per connection."""
        lock = asyncio.Lock()
        self.rounds = RoundRepo(db, lock)
        self.workflow = WorkflowRepo(db, lock)
        self.raw_transactions = RawTransactionRepo(db, lock)
        self.staged = StagedDeploymentRepo(db, lock)
        self.action_queue = ActionQueueRepo(db, lock)
        self.automation_queue = AutomationQueueRepo(db, lock)
        self.automation_states = AutomationStateRepo(db, lock)
        self.analytics = AnalyticsRepo(analytics_db, asyncio.Lock())

    async def close(self):
        for db in (self._db, self._analytics_db):
            if db:
                await db.close()
        self._db = None
        self._analytics_db = None
        logger.info("Storage closed")
