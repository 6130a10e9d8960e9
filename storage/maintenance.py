from __future__ import annotations

import json
import sqlite3
import time
import uuid
from typing import Any, Dict, Iterable, List, Optional, Tuple

from core.criteria import criteria_to_dict, parse_criteria
from core.models import Candidate, Rule, Scan, can_transition
from storage.db import connect, init_db


def new_id() -> str:
    return uuid.uuid4().hex


class MaintenanceStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        init_db(db_path)

    def _connect(self) -> sqlite3.Connection:
        return connect(self.db_path)

    # Rules

    def _row_to_rule(self, row: Optional[sqlite3.Row]) -> Optional[Rule]:
        if not row:
            return None
        return Rule(
            id=row['id'],
            name=row['name'],
            description=row['description'] or '',
            enabled=bool(row['enabled']),
            media_type=row['media_type'],
            criteria=parse_criteria(json.loads(row['criteria'])),
            action_type=row['action_type'],
            action_delay_days=row['action_delay_days'],
            schedule=row['schedule'],
            instances=json.loads(row['instances'] or '[]'),
            created_at=row['created_at'],
            updated_at=row['updated_at'],
            last_run_at=row['last_run_at'],
        )

    def save_rule(self, rule: Rule) -> None:
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO maintenance_rules (
                    id, name, description, enabled, media_type, criteria, action_type,
                    action_delay_days, schedule, instances, created_at, updated_at, last_run_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name=excluded.name,
                    description=excluded.description,
                    enabled=excluded.enabled,
                    media_type=excluded.media_type,
                    criteria=excluded.criteria,
                    action_type=excluded.action_type,
                    action_delay_days=excluded.action_delay_days,
                    schedule=excluded.schedule,
                    instances=excluded.instances,
                    updated_at=excluded.updated_at
                """,
                (
                    rule.id,
                    rule.name,
                    rule.description,
                    1 if rule.enabled else 0,
                    rule.media_type,
                    json.dumps(criteria_to_dict(rule.criteria)),
                    rule.action_type,
                    rule.action_delay_days,
                    rule.schedule,
                    json.dumps(list(rule.instances)),
                    rule.created_at,
                    rule.updated_at,
                    rule.last_run_at,
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        conn = self._connect()
        try:
            row = conn.execute('SELECT * FROM maintenance_rules WHERE id=?', (rule_id,)).fetchone()
            return self._row_to_rule(row)
        finally:
            conn.close()

    def list_rules(self, *, enabled_only: bool = False) -> List[Rule]:
        sql = 'SELECT * FROM maintenance_rules'
        if enabled_only:
            sql += ' WHERE enabled=1'
        sql += ' ORDER BY created_at, name'
        conn = self._connect()
        try:
            return [self._row_to_rule(r) for r in conn.execute(sql).fetchall()]
        finally:
            conn.close()

    def delete_rule(self, rule_id: str) -> bool:
        conn = self._connect()
        try:
            cur = conn.execute('DELETE FROM maintenance_rules WHERE id=?', (rule_id,))
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    def is_rule_enabled(self, rule_id: str) -> bool:
        conn = self._connect()
        try:
            row = conn.execute('SELECT enabled FROM maintenance_rules WHERE id=?', (rule_id,)).fetchone()
            return bool(row and row['enabled'])
        finally:
            conn.close()

    def set_rule_enabled(self, rule_id: str, enabled: bool, now: Optional[float] = None) -> bool:
        conn = self._connect()
        try:
            cur = conn.execute(
                'UPDATE maintenance_rules SET enabled=?, updated_at=? WHERE id=?',
                (1 if enabled else 0, now or time.time(), rule_id),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    def mark_rule_run(self, rule_id: str, ts: float) -> None:
        conn = self._connect()
        try:
            conn.execute('UPDATE maintenance_rules SET last_run_at=? WHERE id=?', (ts, rule_id))
            conn.commit()
        finally:
            conn.close()

    # Scans

    def _row_to_scan(self, row: Optional[sqlite3.Row]) -> Optional[Scan]:
        if not row:
            return None
        return Scan(
            id=row['id'],
            rule_id=row['rule_id'],
            status=row['status'],
            started_at=row['started_at'],
            completed_at=row['completed_at'],
            items_scanned=row['items_scanned'],
            items_flagged=row['items_flagged'],
            items_errored=row['items_errored'],
            error=row['error'],
            warnings=json.loads(row['warnings'] or '[]'),
        )

    def create_scan(self, rule_id: str, now: Optional[float] = None) -> Scan:
        scan = Scan(id=new_id(), rule_id=rule_id, status='PENDING', started_at=now or time.time())
        conn = self._connect()
        try:
            conn.execute(
                'INSERT INTO maintenance_scans (id, rule_id, status, started_at) VALUES (?, ?, ?, ?)',
                (scan.id, scan.rule_id, scan.status, scan.started_at),
            )
            conn.commit()
        finally:
            conn.close()
        return scan

    def save_scan(self, scan: Scan) -> None:
        conn = self._connect()
        try:
            conn.execute(
                """
                UPDATE maintenance_scans
                SET status=?, completed_at=?, items_scanned=?, items_flagged=?, items_errored=?, error=?, warnings=?
                WHERE id=?
                """,
                (
                    scan.status,
                    scan.completed_at,
                    scan.items_scanned,
                    scan.items_flagged,
                    scan.items_errored,
                    scan.error,
                    json.dumps(scan.warnings),
                    scan.id,
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def get_scan(self, scan_id: str) -> Optional[Scan]:
        conn = self._connect()
        try:
            return self._row_to_scan(conn.execute('SELECT * FROM maintenance_scans WHERE id=?', (scan_id,)).fetchone())
        finally:
            conn.close()

    def list_scans(self, rule_id: Optional[str] = None, limit: int = 50) -> List[Scan]:
        conn = self._connect()
        try:
            if rule_id:
                rows = conn.execute(
                    'SELECT * FROM maintenance_scans WHERE rule_id=? ORDER BY started_at DESC LIMIT ?',
                    (rule_id, limit),
                ).fetchall()
            else:
                rows = conn.execute('SELECT * FROM maintenance_scans ORDER BY started_at DESC LIMIT ?', (limit,)).fetchall()
            return [self._row_to_scan(r) for r in rows]
        finally:
            conn.close()

    # Candidates

    def _row_to_candidate(self, row: Optional[sqlite3.Row]) -> Optional[Candidate]:
        if not row:
            return None
        return Candidate(
            id=row['id'],
            scan_id=row['scan_id'],
            rule_id=row['rule_id'],
            media_type=row['media_type'],
            identity_key=row['identity_key'],
            title=row['title'],
            year=row['year'],
            ids=json.loads(row['ids'] or '{}'),
            review_status=row['review_status'],
            flagged_at=row['flagged_at'],
            reviewed_at=row['reviewed_at'],
            reviewed_by=row['reviewed_by'],
            deleted_at=row['deleted_at'],
            deletion_error=row['deletion_error'],
        )

    def upsert_candidate(self, scan_id: str, rule_id: str, item: Any, now: Optional[float] = None) -> str:
        """Record a match of ``item`` for a rule.

        Returns ``created`` for a new candidate, ``refreshed`` when a PENDING
        one is re-pointed at this scan (``flagged_at`` kept), and ``unchanged``
        for candidates a reviewer or the executor already decided.
        """
        now = now or time.time()
        key = item.identity_key
        ids_json = json.dumps({k: v for k, v in item.ids.items() if v is not None}, sort_keys=True)
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute('BEGIN IMMEDIATE')
            row = cur.execute(
                'SELECT id, review_status FROM maintenance_candidates WHERE rule_id=? AND identity_key=?',
                (rule_id, key),
            ).fetchone()
            if row is None:
                cur.execute(
                    """
                    INSERT INTO maintenance_candidates (
                        id, scan_id, rule_id, media_type, identity_key, title, year, ids, review_status, flagged_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'PENDING', ?)
                    """,
                    (new_id(), scan_id, rule_id, item.media_type, key, item.title, item.year, ids_json, now),
                )
                outcome = 'created'
            elif row['review_status'] == 'PENDING':
                cur.execute(
                    """
                    UPDATE maintenance_candidates SET scan_id=?, title=?, year=?, ids=?
                    WHERE id=? AND review_status='PENDING'
                    """,
                    (scan_id, item.title, item.year, ids_json, row['id']),
                )
                outcome = 'refreshed'
            else:
                outcome = 'unchanged'
            conn.commit()
            return outcome
        finally:
            conn.close()

    def get_candidate(self, candidate_id: str) -> Optional[Candidate]:
        conn = self._connect()
        try:
            row = conn.execute('SELECT * FROM maintenance_candidates WHERE id=?', (candidate_id,)).fetchone()
            return self._row_to_candidate(row)
        finally:
            conn.close()

    def list_candidates(
        self,
        *,
        review_status: Optional[str] = None,
        media_type: Optional[str] = None,
        rule_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 25,
    ) -> Tuple[List[Candidate], int]:
        where: List[str] = []
        params: List[Any] = []
        if review_status:
            where.append('review_status=?')
            params.append(review_status)
        if media_type:
            where.append('media_type=?')
            params.append(media_type)
        if rule_id:
            where.append('rule_id=?')
            params.append(rule_id)
        clause = (' WHERE ' + ' AND '.join(where)) if where else ''
        conn = self._connect()
        try:
            total = conn.execute(f'SELECT COUNT(*) FROM maintenance_candidates{clause}', params).fetchone()[0]
            rows = conn.execute(
                f'SELECT * FROM maintenance_candidates{clause} ORDER BY flagged_at DESC, id LIMIT ? OFFSET ?',
                params + [limit, offset],
            ).fetchall()
            return [self._row_to_candidate(r) for r in rows], int(total)
        finally:
            conn.close()

    def candidates_for_rule(self, rule_id: str, statuses: Iterable[str]) -> List[Candidate]:
        statuses = list(statuses)
        if not statuses:
            return []
        marks = ','.join('?' for _ in statuses)
        conn = self._connect()
        try:
            rows = conn.execute(
                f'SELECT * FROM maintenance_candidates WHERE rule_id=? AND review_status IN ({marks}) ORDER BY flagged_at',
                [rule_id] + statuses,
            ).fetchall()
            return [self._row_to_candidate(r) for r in rows]
        finally:
            conn.close()

    def transition_candidate(
        self,
        candidate_id: str,
        from_status: str,
        to_status: str,
        *,
        reviewer: Optional[str] = None,
        now: Optional[float] = None,
    ) -> bool:
        if not can_transition(from_status, to_status):
            raise ValueError(f'illegal review transition {from_status} -> {to_status}')
        now = now or time.time()
        if to_status == 'DELETED':
            sql = """
                UPDATE maintenance_candidates SET review_status=?, deleted_at=?, deletion_error=NULL
                WHERE id=? AND review_status=?
            """
            params: Tuple[Any, ...] = (to_status, now, candidate_id, from_status)
        else:
            sql = """
                UPDATE maintenance_candidates SET review_status=?, reviewed_at=?, reviewed_by=?
                WHERE id=? AND review_status=?
            """
            params = (to_status, now, reviewer, candidate_id, from_status)
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute('BEGIN IMMEDIATE')
            cur.execute(sql, params)
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    def record_deletion_error(self, candidate_id: str, message: Optional[str]) -> None:
        conn = self._connect()
        try:
            conn.execute('UPDATE maintenance_candidates SET deletion_error=? WHERE id=?', (message, candidate_id))
            conn.commit()
        finally:
            conn.close()

    def reset_candidates(self, rule_id: str) -> int:
        conn = self._connect()
        try:
            cur = conn.execute(
                "DELETE FROM maintenance_candidates WHERE rule_id=? AND review_status != 'DELETED'",
                (rule_id,),
            )
            conn.commit()
            return cur.rowcount
        finally:
            conn.close()

    def candidate_counts(self) -> Dict[str, int]:
        conn = self._connect()
        try:
            rows = conn.execute(
                'SELECT review_status, COUNT(*) AS n FROM maintenance_candidates GROUP BY review_status'
            ).fetchall()
            return {r['review_status']: r['n'] for r in rows}
        finally:
            conn.close()

    # Deletion log

    def log_deletion(self, candidate: Candidate, action_type: str, now: Optional[float] = None) -> None:
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO maintenance_deletion_log (candidate_id, rule_id, action_type, title, ids, executed_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (candidate.id, candidate.rule_id, action_type, candidate.title, json.dumps(candidate.ids), now or time.time()),
            )
            conn.commit()
        finally:
            conn.close()

    def list_deletion_log(self, limit: int = 50) -> List[Dict[str, Any]]:
        conn = self._connect()
        try:
            rows = conn.execute(
                'SELECT * FROM maintenance_deletion_log ORDER BY executed_at DESC, id DESC LIMIT ?', (limit,)
            ).fetchall()
            out = []
            for r in rows:
                d = dict(r)
                d['ids'] = json.loads(d.get('ids') or '{}')
                out.append(d)
            return out
        finally:
            conn.close()
