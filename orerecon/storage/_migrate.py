import logging
import sqlite3
import time

from ._schema import (
    ANALYTICS_SCHEMA_SQL,
    ANALYTICS_SCHEMA_VERSION,
    SCHEMA_SQL,
    SCHEMA_VERSION,
)

logger = logging.getLogger("storage")


async def _current_version(db) -> int:
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cursor:
            row = await cursor.fetchone()
            if row and row[0] is not None:
                return row[0]
    except sqlite3.OperationalError:
        # fresh database: schema_version does not exist yet
        pass
    return 0


async def _apply(db, name: str, schema_sql: str, target: int, log):
    current_version = await _current_version(db)
    if current_version >= target:
        log.debug("%s schema up to date (v%d)", name, current_version)
        return

    log.info("Migrating %s database from v%d to v%d", name, current_version, target)
    await db.executescript(schema_sql)
    await db.execute(
        "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
        (target, time.time()),
    )
    await db.commit()
    log.info("%s migration complete (v%d)", name, target)


async def run_migrations(db, logger_override=None):
    await _apply(db, "workflow", SCHEMA_SQL, SCHEMA_VERSION, logger_override or logger)


async def run_analytics_migrations(db, logger_override=None):
    await _apply(db, "analytics", ANALYTICS_SCHEMA_SQL, ANALYTICS_SCHEMA_VERSION, logger_override or logger)
