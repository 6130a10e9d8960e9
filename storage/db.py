from __future__ import annotations

import os
import sqlite3


def connect(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, check_same_thread=False, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute('PRAGMA foreign_keys=ON')
    return conn


def ensure_maintenance_tables(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS maintenance_rules (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            enabled INTEGER NOT NULL DEFAULT 1,
            media_type TEXT NOT NULL,
            criteria TEXT NOT NULL,
            action_type TEXT NOT NULL,
            action_delay_days INTEGER,
            schedule TEXT,
            instances TEXT NOT NULL DEFAULT '[]',
            created_at REAL NOT NULL,
            updated_at REAL NOT NULL,
            last_run_at REAL
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS maintenance_scans (
            id TEXT PRIMARY KEY,
            rule_id TEXT NOT NULL REFERENCES maintenance_rules(id) ON DELETE CASCADE,
            status TEXT NOT NULL,
            started_at REAL NOT NULL,
            completed_at REAL,
            items_scanned INTEGER NOT NULL DEFAULT 0,
            items_flagged INTEGER NOT NULL DEFAULT 0,
            items_errored INTEGER NOT NULL DEFAULT 0,
            error TEXT,
            warnings TEXT NOT NULL DEFAULT '[]'
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS maintenance_candidates (
            id TEXT PRIMARY KEY,
            scan_id TEXT NOT NULL,
            rule_id TEXT NOT NULL REFERENCES maintenance_rules(id) ON DELETE CASCADE,
            media_type TEXT NOT NULL,
            identity_key TEXT NOT NULL,
            title TEXT NOT NULL,
            year INTEGER,
            ids TEXT NOT NULL DEFAULT '{}',
            review_status TEXT NOT NULL,
            flagged_at REAL NOT NULL,
            reviewed_at REAL,
            reviewed_by TEXT,
            deleted_at REAL,
            deletion_error TEXT,
            UNIQUE (rule_id, identity_key)
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS maintenance_deletion_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            candidate_id TEXT NOT NULL,
            rule_id TEXT NOT NULL,
            action_type TEXT NOT NULL,
            title TEXT NOT NULL,
            ids TEXT NOT NULL DEFAULT '{}',
            executed_at REAL NOT NULL
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS leases (
            name TEXT PRIMARY KEY,
            owner TEXT NOT NULL,
            expires_at REAL NOT NULL,
            acquired_at REAL NOT NULL,
            renewed_at REAL NOT NULL
        )
        """
    )
    cur.execute('CREATE INDEX IF NOT EXISTS idx_scans_rule ON maintenance_scans (rule_id, started_at)')
    cur.execute('CREATE INDEX IF NOT EXISTS idx_candidates_status ON maintenance_candidates (review_status, media_type)')
    cur.execute('CREATE INDEX IF NOT EXISTS idx_candidates_rule ON maintenance_candidates (rule_id, review_status)')
    conn.commit()


def init_db(db_path: str) -> None:
    parent = os.path.dirname(db_path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    conn = connect(db_path)
    try:
        ensure_maintenance_tables(conn)
    finally:
        conn.close()
