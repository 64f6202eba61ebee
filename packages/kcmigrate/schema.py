"""
Run State Database Schema

SQLite tables checkpointing run progress so an interrupted run can resume.

Tables:
- runs: one row per migration run
- step_results: one row per attempted version step

This is operational state, not the audit trail. The audit JSONL is the
durable record of what happened; these tables only answer "which steps of
this plan are already committed?".
"""

import sqlite3
from pathlib import Path

RUNS_TABLE = """
CREATE TABLE IF NOT EXISTS runs (
    run_id TEXT PRIMARY KEY,
    profile_name TEXT NOT NULL,
    plan_fingerprint TEXT NOT NULL,

    status TEXT NOT NULL,  -- running, completed, already_migrated, dry_run, aborted,
                           -- failed, needs_intervention, interrupted
    current_version TEXT NOT NULL,
    target_version TEXT NOT NULL,
    committed_version TEXT,
    current_index INTEGER NOT NULL DEFAULT 0,

    started_at TEXT NOT NULL,  -- ISO8601
    ended_at TEXT,             -- ISO8601

    error_code TEXT,
    error_message TEXT
);

CREATE INDEX IF NOT EXISTS idx_runs_profile ON runs(profile_name, plan_fingerprint);
CREATE INDEX IF NOT EXISTS idx_runs_started_at ON runs(started_at DESC);
"""

STEP_RESULTS_TABLE = """
CREATE TABLE IF NOT EXISTS step_results (
    run_id TEXT NOT NULL,
    ordinal INTEGER NOT NULL,

    from_version TEXT NOT NULL,
    to_version TEXT NOT NULL,
    state TEXT NOT NULL,  -- pending, backing_up, ..., committed, rolling_back, failed
    rolled_back INTEGER DEFAULT 0,  -- 0/1 boolean

    started_at TEXT NOT NULL,
    ended_at TEXT,

    artifact TEXT,  -- JSON BackupArtifact
    error_code TEXT,
    error_message TEXT,

    PRIMARY KEY (run_id, ordinal),
    FOREIGN KEY (run_id) REFERENCES runs(run_id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_step_results_state ON step_results(state);
"""


def init_state_db(db_path: Path) -> None:
    """Create tables if missing."""
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(db_path))
    try:
        conn.executescript(RUNS_TABLE)
        conn.executescript(STEP_RESULTS_TABLE)
        conn.commit()
    finally:
        conn.close()


def get_db_connection(db_path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    return conn
