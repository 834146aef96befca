"""
ORE Round Reconstruction - Server Package

Backfills historical ORE rounds, rebuilds each round's deployment ledger from
raw Solana transactions, reconciles it against program logs and the reported
round total, and commits verified rounds to the analytical store.
"""

__version__ = "0.1.0"

__all__ = [
    "action_queue",
    "analyzer",
    "automation",
    "backfill",
    "decoder",
    "errors",
    "feed",
    "finalizer",
    "helius",
    "pda",
    "reconciler",
    "reconstruction",
    "server",
    "storage",
    "workflow",
]
