"""Grant Store: the single authoritative record of issued grants.

All reads and writes go through one SQLite connection guarded by a
re-entrant lock, so a ``check`` that starts after ``revoke`` returns always
observes the revocation. Expiry is evaluated at check time; the optional
sweeper only stamps rows for housekeeping.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from memgate.core.types import Grant, GrantStatus, Sensitivity, from_iso, to_iso, utcnow
from memgate.exceptions import GrantNotFound

logger = logging.getLogger(__name__)


class GrantStore:
    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        if db_path != ":memory:":
            db_dir = os.path.dirname(db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level="IMMEDIATE")
        if db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._conn.execute("PRAGMA synchronous=FULL")
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._sweeper: Optional[threading.Thread] = None
        self._stop_sweeper = threading.Event()
        self._init_db()

    def __repr__(self) -> str:
        return f"GrantStore(db_path={self.db_path!r})"

    def close(self) -> None:
        self.stop_sweeper()
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None  # type: ignore[assignment]

    def _init_db(self) -> None:
        with self._get_connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS grants (
                    id TEXT PRIMARY KEY,
                    agent_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    intent TEXT NOT NULL,
                    scopes TEXT NOT NULL DEFAULT '[]',
                    issued_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    revoked INTEGER NOT NULL DEFAULT 0,
                    revoked_at TEXT,
                    sensitivity_ceiling TEXT NOT NULL DEFAULT 'business',
                    audit_level TEXT NOT NULL DEFAULT 'standard',
                    approved_by TEXT,
                    swept_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_grants_agent_user ON grants(agent_id, user_id);
                CREATE INDEX IF NOT EXISTS idx_grants_expires ON grants(expires_at);
                """
            )

    @contextmanager
    def _get_connection(self):
        """Yield the persistent connection under the lock; one transaction per block."""
        with self._lock:
            if self._conn is None:
                raise RuntimeError("GrantStore is closed")
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    @staticmethod
    def _row_to_grant(row: sqlite3.Row) -> Grant:
        return Grant(
            grant_id=row["id"],
            agent_id=row["agent_id"],
            user_id=row["user_id"],
            intent=row["intent"],
            scopes=frozenset(json.loads(row["scopes"] or "[]")),
            issued_at=from_iso(row["issued_at"]),
            expires_at=from_iso(row["expires_at"]),
            revoked=bool(row["revoked"]),
            revoked_at=from_iso(row["revoked_at"]),
            sensitivity_ceiling=Sensitivity.parse(row["sensitivity_ceiling"], default=Sensitivity.BUSINESS),
            audit_level=row["audit_level"],
            approved_by=row["approved_by"],
        )

    # ------------------------------------------------------------------
    # Issue / read
    # ------------------------------------------------------------------

    def issue(self, grant: Grant) -> str:
        grant_id = grant.grant_id or str(uuid.uuid4())
        grant.grant_id = grant_id
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO grants (
                    id, agent_id, user_id, intent, scopes, issued_at, expires_at,
                    revoked, revoked_at, sensitivity_ceiling, audit_level, approved_by
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    grant_id,
                    grant.agent_id,
                    grant.user_id,
                    grant.intent,
                    json.dumps(sorted(grant.scopes)),
                    to_iso(grant.issued_at),
                    to_iso(grant.expires_at),
                    int(grant.revoked),
                    to_iso(grant.revoked_at),
                    grant.sensitivity_ceiling.value,
                    grant.audit_level,
                    grant.approved_by,
                ),
            )
        logger.debug("Issued grant %s agent=%s user=%s", grant_id, grant.agent_id, grant.user_id)
        return grant_id

    def get(self, grant_id: str) -> Grant:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM grants WHERE id = ?", (grant_id,)).fetchone()
        if row is None:
            raise GrantNotFound(grant_id)
        return self._row_to_grant(row)

    def check(self, grant_id: str, now: Optional[datetime] = None) -> GrantStatus:
        return self.get(grant_id).status(now)

    def list_grants(
        self,
        *,
        agent_id: Optional[str] = None,
        user_id: Optional[str] = None,
        active_only: bool = False,
        now: Optional[datetime] = None,
    ) -> List[Grant]:
        query = "SELECT * FROM grants WHERE 1=1"
        params: List[Any] = []
        if agent_id is not None:
            query += " AND agent_id = ?"
            params.append(agent_id)
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        query += " ORDER BY issued_at, id"
        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        grants = [self._row_to_grant(row) for row in rows]
        if active_only:
            now = now or utcnow()
            grants = [g for g in grants if g.status(now) == GrantStatus.VALID]
        return grants

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke(self, grant_id: str) -> bool:
        """Revoke a grant. Returns False if it was already revoked."""
        with self._get_connection() as conn:
            row = conn.execute("SELECT revoked FROM grants WHERE id = ?", (grant_id,)).fetchone()
            if row is None:
                raise GrantNotFound(grant_id)
            if row["revoked"]:
                return False
            conn.execute(
                "UPDATE grants SET revoked = 1, revoked_at = ? WHERE id = ?",
                (to_iso(utcnow()), grant_id),
            )
        logger.info("Revoked grant %s", grant_id)
        return True

    def revoke_all(self, agent_id: str, user_id: str) -> List[str]:
        """Revoke every live grant for (agent, user); returns the revoked ids."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT id FROM grants WHERE agent_id = ? AND user_id = ? AND revoked = 0",
                (agent_id, user_id),
            ).fetchall()
            ids = [row["id"] for row in rows]
            if ids:
                conn.execute(
                    "UPDATE grants SET revoked = 1, revoked_at = ? WHERE agent_id = ? AND user_id = ? AND revoked = 0",
                    (to_iso(utcnow()), agent_id, user_id),
                )
        logger.info("Revoked %d grant(s) for agent=%s user=%s", len(ids), agent_id, user_id)
        return ids

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Stamp expired, unswept grants. Rows are kept for audit linkage."""
        stamp = to_iso(now or utcnow())
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE grants SET swept_at = ? WHERE swept_at IS NULL AND revoked = 0 AND expires_at < ?",
                (stamp, stamp),
            )
            return cursor.rowcount

    def start_sweeper(self, interval_seconds: float) -> None:
        if interval_seconds <= 0 or self._sweeper is not None:
            return
        self._stop_sweeper.clear()

        def _loop() -> None:
            while not self._stop_sweeper.wait(interval_seconds):
                try:
                    swept = self.sweep()
                    if swept:
                        logger.debug("Sweeper stamped %d expired grant(s)", swept)
                except Exception:
                    logger.exception("Grant sweep failed")

        self._sweeper = threading.Thread(target=_loop, name="memgate-grant-sweeper", daemon=True)
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._stop_sweeper.set()
        self._sweeper.join(timeout=5)
        self._sweeper = None

    def stats(self) -> Dict[str, int]:
        with self._get_connection() as conn:
            total = conn.execute("SELECT COUNT(*) FROM grants").fetchone()[0]
            revoked = conn.execute("SELECT COUNT(*) FROM grants WHERE revoked = 1").fetchone()[0]
        return {"total": int(total), "revoked": int(revoked)}
