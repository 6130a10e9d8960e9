from __future__ import annotations

import asyncio
import logging
import os
import socket
import sqlite3
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from storage.db import connect, init_db


class LeaseBusy(RuntimeError):
    def __init__(self, name: str, owner: Optional[str]) -> None:
        super().__init__(f'lease {name} is held by {owner}')
        self.name = name
        self.owner = owner


def default_owner() -> str:
    return f'{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}'


class LeaseLock:
    """Time-bounded ownership row in the ``leases`` table.

    Whoever holds an unexpired row owns the named job. A holder renews the
    row from a background task; a row whose ``expires_at`` has passed can be
    taken over by any replica.
    """

    def __init__(
        self,
        db_path: str,
        name: str,
        owner: Optional[str] = None,
        *,
        lease_seconds: float = 30.0,
        renew_interval: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db_path = db_path
        self.name = name
        self.owner = owner or default_owner()
        self.lease_seconds = lease_seconds
        self.renew_interval = renew_interval
        self.clock = clock
        self.lost = False
        init_db(db_path)

    def current_owner(self) -> Optional[str]:
        conn = connect(self.db_path)
        try:
            row = conn.execute('SELECT owner, expires_at FROM leases WHERE name=?', (self.name,)).fetchone()
            if row is None or row['expires_at'] <= self.clock():
                return None
            return row['owner']
        finally:
            conn.close()

    def try_acquire(self) -> bool:
        now = self.clock()
        conn = connect(self.db_path)
        try:
            cur = conn.cursor()
            cur.execute('BEGIN IMMEDIATE')
            row = cur.execute('SELECT owner, expires_at FROM leases WHERE name=?', (self.name,)).fetchone()
            if row is not None and row['owner'] != self.owner and row['expires_at'] > now:
                conn.commit()
                return False
            cur.execute(
                """
                INSERT INTO leases (name, owner, expires_at, acquired_at, renewed_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    owner=excluded.owner,
                    expires_at=excluded.expires_at,
                    acquired_at=excluded.acquired_at,
                    renewed_at=excluded.renewed_at
                """,
                (self.name, self.owner, now + self.lease_seconds, now, now),
            )
            conn.commit()
            self.lost = False
            return True
        finally:
            conn.close()

    def renew(self) -> bool:
        now = self.clock()
        conn = connect(self.db_path)
        try:
            cur = conn.cursor()
            cur.execute('BEGIN IMMEDIATE')
            cur.execute(
                'UPDATE leases SET expires_at=?, renewed_at=? WHERE name=? AND owner=? AND expires_at > ?',
                (now + self.lease_seconds, now, self.name, self.owner, now),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    def release(self) -> None:
        conn = connect(self.db_path)
        try:
            conn.execute('DELETE FROM leases WHERE name=? AND owner=?', (self.name, self.owner))
            conn.commit()
        finally:
            conn.close()

    async def _renew_loop(self) -> None:
        while True:
            await asyncio.sleep(self.renew_interval)
            try:
                ok = self.renew()
            except sqlite3.Error as e:
                logging.warning(f'Lease {self.name}: renewal failed: {e}')
                ok = False
            if not ok:
                self.lost = True
                logging.warning(f'Lease {self.name}: lost by {self.owner}')
                return

    @asynccontextmanager
    async def held(self) -> AsyncIterator['LeaseLock']:
        if not self.try_acquire():
            raise LeaseBusy(self.name, self.current_owner())
        task = asyncio.create_task(self._renew_loop())
        try:
            yield self
        finally:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            if not self.lost:
                self.release()
