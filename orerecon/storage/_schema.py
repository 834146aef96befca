SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version    INTEGER NOT NULL,
    applied_at REAL NOT NULL
);

-- Rounds: metadata from the round feed or live ingestion
CREATE TABLE IF NOT EXISTS rounds (
    round_id        INTEGER PRIMARY KEY,
    start_slot      INTEGER NOT NULL DEFAULT 0,
    end_slot        INTEGER NOT NULL DEFAULT 0,
    winning_square  INTEGER NOT NULL DEFAULT 0,
    top_miner       TEXT NOT NULL DEFAULT '',
    total_deployed  INTEGER NOT NULL DEFAULT 0,
    total_vaulted   INTEGER NOT NULL DEFAULT 0,
    total_winnings  INTEGER NOT NULL DEFAULT 0,
    total_minted    INTEGER NOT NULL DEFAULT 0,
    unique_miners   INTEGER NOT NULL DEFAULT 0,
    motherlode      INTEGER NOT NULL DEFAULT 0,
    motherlode_hit  INTEGER NOT NULL DEFAULT 0,
    source          TEXT NOT NULL DEFAULT 'backfill' CHECK (source IN ('live', 'backfill')),
    ts              INTEGER NOT NULL DEFAULT 0,
    created_at      REAL NOT NULL
);

-- Round workflow: five stage flags plus reconciliation results
CREATE TABLE IF NOT EXISTS round_status (
    round_id                INTEGER PRIMARY KEY,
    meta_fetched            INTEGER NOT NULL DEFAULT 0,
    meta_fetched_at         REAL,
    transactions_fetched    INTEGER NOT NULL DEFAULT 0,
    transactions_fetched_at REAL,
    transaction_count       INTEGER NOT NULL DEFAULT 0,
    reconstructed           INTEGER NOT NULL DEFAULT 0,
    reconstructed_at        REAL,
    deployment_count        INTEGER NOT NULL DEFAULT 0,
    parsed_total            INTEGER NOT NULL DEFAULT 0,
    logged_total            INTEGER NOT NULL DEFAULT 0,
    logged_vs_parsed_diff   INTEGER NOT NULL DEFAULT 0,
    discrepancy             INTEGER NOT NULL DEFAULT 0,
    unmatched_logged        INTEGER NOT NULL DEFAULT 0,
    invalid                 INTEGER NOT NULL DEFAULT 0,
    verified                INTEGER NOT NULL DEFAULT 0,
    verified_at             REAL,
    verification_notes      TEXT NOT NULL DEFAULT '',
    finalized               INTEGER NOT NULL DEFAULT 0,
    finalized_at            REAL,
    updated_at              REAL NOT NULL
);

-- Raw transactions fetched per round (immutable once stored)
CREATE TABLE IF NOT EXISTS raw_transactions (
    signature   TEXT PRIMARY KEY,
    round_id    INTEGER NOT NULL,
    slot        INTEGER NOT NULL DEFAULT 0,
    block_time  INTEGER NOT NULL DEFAULT 0,
    tx_type     TEXT NOT NULL DEFAULT 'deploy',
    signer      TEXT NOT NULL DEFAULT '',
    authority   TEXT NOT NULL DEFAULT '',
    raw_json    TEXT NOT NULL,
    fetched_at  REAL NOT NULL
);

-- Candidate deployments written by reconstruction, read by the finalizer
CREATE TABLE IF NOT EXISTS staged_deployments (
    round_id       INTEGER NOT NULL,
    miner_pubkey   TEXT NOT NULL,
    square_id      INTEGER NOT NULL CHECK (square_id BETWEEN 0 AND 24),
    amount         INTEGER NOT NULL,
    deployed_slot  INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (round_id, miner_pubkey, square_id)
);

-- Per-round action queue (single global worker)
CREATE TABLE IF NOT EXISTS action_queue (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    round_id      INTEGER NOT NULL,
    action        TEXT NOT NULL CHECK (action IN ('fetch_txns', 'reconstruct', 'finalize')),
    status        TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
    attempts      INTEGER NOT NULL DEFAULT 0,
    error         TEXT,
    created_at    REAL NOT NULL,
    started_at    REAL,
    completed_at  REAL
);

CREATE TABLE IF NOT EXISTS queue_control (
    id          INTEGER PRIMARY KEY CHECK (id = 1),
    paused      INTEGER NOT NULL DEFAULT 0,
    updated_at  REAL NOT NULL
);

-- Automation state lookups for deploys with no matching deploy log
CREATE TABLE IF NOT EXISTS automation_queue (
    id                     INTEGER PRIMARY KEY AUTOINCREMENT,
    round_id               INTEGER NOT NULL,
    miner_pubkey           TEXT NOT NULL,
    authority_pubkey       TEXT NOT NULL,
    automation_pda         TEXT NOT NULL,
    deploy_signature       TEXT NOT NULL,
    deploy_ix_index        INTEGER NOT NULL DEFAULT 0,
    deploy_slot            INTEGER NOT NULL,
    status                 TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
    priority               INTEGER NOT NULL DEFAULT 1000,
    attempts               INTEGER NOT NULL DEFAULT 0,
    last_error             TEXT,
    txns_searched          INTEGER NOT NULL DEFAULT 0,
    pages_fetched          INTEGER NOT NULL DEFAULT 0,
    fetch_duration_ms      INTEGER NOT NULL DEFAULT 0,
    automation_found       INTEGER,
    automation_active      INTEGER,
    created_at             REAL NOT NULL,
    processing_started_at  REAL,
    completed_at           REAL,
    UNIQUE (round_id, deploy_signature, deploy_ix_index)
);

-- Recovered automation configuration per queued deploy (doubles as slot cache)
CREATE TABLE IF NOT EXISTS automation_states (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    round_id            INTEGER NOT NULL,
    miner_pubkey        TEXT NOT NULL,
    authority_pubkey    TEXT NOT NULL,
    deploy_signature    TEXT NOT NULL,
    deploy_ix_index     INTEGER NOT NULL DEFAULT 0,
    deploy_slot         INTEGER NOT NULL,
    automation_found    INTEGER NOT NULL DEFAULT 0,
    automation_active   INTEGER NOT NULL DEFAULT 0,
    amount              INTEGER NOT NULL DEFAULT 0,
    mask                INTEGER NOT NULL DEFAULT 0,
    strategy            INTEGER NOT NULL DEFAULT 0,
    fee                 INTEGER NOT NULL DEFAULT 0,
    executor            TEXT NOT NULL DEFAULT '',
    automate_signature  TEXT NOT NULL DEFAULT '',
    automate_ix_index   INTEGER NOT NULL DEFAULT 0,
    automate_slot       INTEGER NOT NULL DEFAULT 0,
    txns_searched       INTEGER NOT NULL DEFAULT 0,
    pages_fetched       INTEGER NOT NULL DEFAULT 0,
    fetch_duration_ms   INTEGER NOT NULL DEFAULT 0,
    created_at          REAL NOT NULL,
    UNIQUE (deploy_signature, deploy_ix_index)
);

CREATE INDEX IF NOT EXISTS idx_round_status_stage ON round_status(finalized, reconstructed);
CREATE INDEX IF NOT EXISTS idx_raw_tx_round ON raw_transactions(round_id, slot);
CREATE INDEX IF NOT EXISTS idx_action_queue_status ON action_queue(status, id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_action_queue_active
    ON action_queue(round_id, action) WHERE status IN ('pending', 'processing');
CREATE INDEX IF NOT EXISTS idx_automation_queue_claim
    ON automation_queue(status, priority, created_at);
CREATE INDEX IF NOT EXISTS idx_automation_states_authority
    ON automation_states(authority_pubkey, deploy_slot);

INSERT OR IGNORE INTO queue_control (id, paused, updated_at) VALUES (1, 0, 0);
"""

ANALYTICS_SCHEMA_VERSION = 1

ANALYTICS_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version    INTEGER NOT NULL,
    applied_at REAL NOT NULL
);

-- One row per finalized round
CREATE TABLE IF NOT EXISTS finalized_rounds (
    round_id          INTEGER PRIMARY KEY,
    start_slot        INTEGER NOT NULL DEFAULT 0,
    end_slot          INTEGER NOT NULL DEFAULT 0,
    winning_square    INTEGER NOT NULL DEFAULT 0,
    top_miner         TEXT NOT NULL DEFAULT '',
    total_deployed    INTEGER NOT NULL DEFAULT 0,
    total_winnings    INTEGER NOT NULL DEFAULT 0,
    motherlode        INTEGER NOT NULL DEFAULT 0,
    motherlode_hit    INTEGER NOT NULL DEFAULT 0,
    unique_miners     INTEGER NOT NULL DEFAULT 0,
    deployment_count  INTEGER NOT NULL DEFAULT 0,
    deployments_sum   INTEGER NOT NULL DEFAULT 0,
    source            TEXT NOT NULL DEFAULT 'backfill',
    finalized_at      REAL NOT NULL
);

-- One row per miner per square per round
CREATE TABLE IF NOT EXISTS deployments (
    round_id       INTEGER NOT NULL,
    miner_pubkey   TEXT NOT NULL,
    square_id      INTEGER NOT NULL CHECK (square_id BETWEEN 0 AND 24),
    amount         INTEGER NOT NULL,
    deployed_slot  INTEGER NOT NULL DEFAULT 0,
    ore_earned     INTEGER NOT NULL DEFAULT 0,
    sol_earned     INTEGER NOT NULL DEFAULT 0,
    is_winner      INTEGER NOT NULL DEFAULT 0,
    is_top_miner   INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (round_id, miner_pubkey, square_id)
);

CREATE INDEX IF NOT EXISTS idx_deployments_miner ON deployments(miner_pubkey);
"""
