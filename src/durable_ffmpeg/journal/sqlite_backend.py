"""SQLite implementation of StepJournal.

This module provides the local, crash-safe step journal using:
- sqlite-utils for schema management and row queries
- WAL mode for concurrent readers while one request writes
- One shared connection guarded by a re-entrant lock (requests run in threads)
- Single-statement upserts so a crash never leaves a half-written record
- A step_transitions audit log
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlite_utils import Database

from .backends import StepJournal
from .models import StepRecord, StepStatus

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
-- One row per (request key, step name)
CREATE TABLE IF NOT EXISTS step_records (
    step_id TEXT PRIMARY KEY,
    request_key TEXT NOT NULL,
    step_name TEXT NOT NULL,
    status TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    result TEXT,
    error_kind TEXT,
    error_message TEXT,
    resume_after TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_steps_request ON step_records(request_key, created_at);

-- Parameters each key was first accepted with
CREATE TABLE IF NOT EXISTS job_requests (
    request_key TEXT PRIMARY KEY,
    request_hash TEXT NOT NULL,
    request TEXT NOT NULL,
    created_at TEXT NOT NULL
);

-- Terminal outcome, written once per key
CREATE TABLE IF NOT EXISTS job_outcomes (
    request_key TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    outcome TEXT NOT NULL,
    created_at TEXT NOT NULL
);

-- Step status log (audit trail)
CREATE TABLE IF NOT EXISTS step_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    step_id TEXT NOT NULL,
    request_key TEXT NOT NULL,
    from_status TEXT,
    to_status TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    error_snippet TEXT
);

CREATE INDEX IF NOT EXISTS idx_transitions_step ON step_transitions(step_id, timestamp);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteJournal(StepJournal):
    """SQLite-based step journal with ACID guarantees.

    Features:
    - WAL mode for better concurrent reads
    - Indexed lookups by step id and request key
    - INSERT OR IGNORE for first-writer-wins registration and outcomes
    - State transition logging for every status change
    """

    def __init__(self, db_path: str):
        """Initialize journal database.

        Args:
            db_path: Path to SQLite database file

        Creates schema if database doesn't exist.
        Enables WAL mode for concurrent performance.
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30)
        self.db = Database(conn)

        self.db.conn.execute("PRAGMA journal_mode=WAL")
        self.db.conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
        self.db.conn.commit()

        self._create_schema()

    def _create_schema(self):
        """Create tables and indexes if they don't exist."""
        with self._lock:
            self.db.executescript(SCHEMA_SQL)

    # --- step records -------------------------------------------------------

    def get_step(self, step_id: str) -> Optional[StepRecord]:
        with self._lock:
            rows = list(self.db["step_records"].rows_where("step_id = ?", [step_id]))
        if not rows:
            return None
        return self._row_to_record(rows[0])

    def begin_attempt(self, step_id: str, request_key: str, step_name: str) -> StepRecord:
        with self._lock:
            existing = self.get_step(step_id)
            if existing is not None and existing.status == StepStatus.COMPLETED:
                return existing

            now = _now()
            with self.db.conn:
                if existing is None:
                    self.db.execute(
                        """
                        INSERT INTO step_records (
                            step_id, request_key, step_name, status, attempts,
                            result, created_at, updated_at
                        ) VALUES (?, ?, ?, ?, 1, '{}', ?, ?)
                        """,
                        (step_id, request_key, step_name, StepStatus.PENDING.value, now, now),
                    )
                else:
                    self.db.execute(
                        """
                        UPDATE step_records
                        SET status = ?, attempts = attempts + 1, resume_after = NULL, updated_at = ?
                        WHERE step_id = ?
                        """,
                        (StepStatus.PENDING.value, now, step_id),
                    )
                self._log_transition(
                    step_id,
                    request_key,
                    existing.status.value if existing else None,
                    StepStatus.PENDING.value,
                )

            return self.get_step(step_id)

    def complete_step(
        self,
        step_id: str,
        result: Dict[str, Any],
        error_kind: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> StepRecord:
        with self._lock:
            existing = self._require(step_id)
            with self.db.conn:
                self.db.execute(
                    """
                    UPDATE step_records
                    SET status = ?, result = ?, error_kind = ?, error_message = ?,
                        resume_after = NULL, updated_at = ?
                    WHERE step_id = ?
                    """,
                    (
                        StepStatus.COMPLETED.value,
                        json.dumps(result or {}),
                        error_kind,
                        error_message,
                        _now(),
                        step_id,
                    ),
                )
                self._log_transition(
                    step_id,
                    existing.request_key,
                    existing.status.value,
                    StepStatus.COMPLETED.value,
                    error_message,
                )
            return self.get_step(step_id)

    def fail_step(self, step_id: str, error_kind: str, error_message: str) -> StepRecord:
        with self._lock:
            existing = self._require(step_id)
            with self.db.conn:
                self.db.execute(
                    """
                    UPDATE step_records
                    SET status = ?, error_kind = ?, error_message = ?, updated_at = ?
                    WHERE step_id = ?
                    """,
                    (StepStatus.FAILED.value, error_kind, error_message, _now(), step_id),
                )
                self._log_transition(
                    step_id,
                    existing.request_key,
                    existing.status.value,
                    StepStatus.FAILED.value,
                    error_message,
                )
            return self.get_step(step_id)

    def set_resume_after(self, step_id: str, resume_after: Optional[datetime]) -> None:
        with self._lock, self.db.conn:
            self.db.execute(
                "UPDATE step_records SET resume_after = ?, updated_at = ? WHERE step_id = ?",
                (resume_after.isoformat() if resume_after else None, _now(), step_id),
            )

    def list_steps(self, request_key: str) -> List[StepRecord]:
        with self._lock:
            rows = list(
                self.db["step_records"].rows_where(
                    "request_key = ?", [request_key], order_by="created_at, rowid"
                )
            )
        return [self._row_to_record(row) for row in rows]

    # --- requests and outcomes ---------------------------------------------

    def register_request(self, request_key: str, request_hash: str, request: Dict[str, Any]) -> str:
        with self._lock:
            with self.db.conn:
                self.db.execute(
                    """
                    INSERT OR IGNORE INTO job_requests (request_key, request_hash, request, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (request_key, request_hash, json.dumps(request, default=str), _now()),
                )
            return self.get_request(request_key)["request_hash"]

    def get_request(self, request_key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            rows = list(self.db["job_requests"].rows_where("request_key = ?", [request_key]))
        if not rows:
            return None
        row = dict(rows[0])
        row["request"] = json.loads(row["request"])
        return row

    def list_requests(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(
                self.db.query(
                    """
                    SELECT r.request_key, r.request_hash, r.created_at,
                           o.status AS outcome_status,
                           (SELECT COUNT(*) FROM step_records s
                            WHERE s.request_key = r.request_key AND s.status = ?) AS completed_steps
                    FROM job_requests r
                    LEFT JOIN job_outcomes o ON o.request_key = r.request_key
                    ORDER BY r.created_at, r.rowid
                    """,
                    [StepStatus.COMPLETED.value],
                )
            )

    def get_outcome(self, request_key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            rows = list(self.db["job_outcomes"].rows_where("request_key = ?", [request_key]))
        if not rows:
            return None
        return json.loads(rows[0]["outcome"])

    def record_outcome(self, request_key: str, outcome: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            with self.db.conn:
                cursor = self.db.execute(
                    """
                    INSERT OR IGNORE INTO job_outcomes (request_key, status, outcome, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (request_key, outcome.get("status", "unknown"), json.dumps(outcome), _now()),
                )
            if cursor.rowcount == 0:
                logger.info("outcome for %s already recorded; keeping the first", request_key)
            return self.get_outcome(request_key)

    # --- maintenance --------------------------------------------------------

    def clear(self, request_key: Optional[str] = None) -> int:
        where, params = ("WHERE request_key = ?", [request_key]) if request_key else ("", [])
        with self._lock:
            count = self.db.execute(
                f"""
                SELECT COUNT(*) FROM (
                    SELECT request_key FROM step_records {where}
                    UNION
                    SELECT request_key FROM job_requests {where}
                )
                """,
                params * 2,
            ).fetchone()[0]
            with self.db.conn:
                for table in ("step_transitions", "step_records", "job_outcomes", "job_requests"):
                    self.db.execute(f"DELETE FROM {table} {where}", params)
        logger.info("cleared %d request(s) from journal", count)
        return count

    def ping(self) -> bool:
        try:
            with self._lock:
                self.db.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error as e:
            logger.warning("journal unreachable: %s", e)
            return False

    def close(self) -> None:
        with self._lock:
            self.db.conn.close()

    # --- helpers ------------------------------------------------------------

    def _require(self, step_id: str) -> StepRecord:
        record = self.get_step(step_id)
        if record is None:
            raise KeyError(f"Step not found: {step_id}")
        return record

    def _log_transition(
        self,
        step_id: str,
        request_key: str,
        from_status: Optional[str],
        to_status: str,
        error: Optional[str] = None,
    ) -> None:
        """Log a step status change to the audit table.

        Runs inside the caller's transaction.
        """
        self.db.execute(
            """
            INSERT INTO step_transitions (step_id, request_key, from_status, to_status, timestamp, error_snippet)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (step_id, request_key, from_status, to_status, _now(), error[:200] if error else None),
        )

    def get_transitions(self, step_id: str) -> List[Dict[str, Any]]:
        """Return the audit trail of one step, oldest first."""
        with self._lock:
            return list(
                self.db["step_transitions"].rows_where(
                    "step_id = ?", [step_id], order_by="id"
                )
            )

    @staticmethod
    def _row_to_record(row: Dict[str, Any]) -> StepRecord:
        return StepRecord(
            step_id=row["step_id"],
            request_key=row["request_key"],
            step_name=row["step_name"],
            status=StepStatus(row["status"]),
            attempts=row["attempts"],
            result=json.loads(row["result"]) if row.get("result") else {},
            error_kind=row.get("error_kind"),
            error_message=row.get("error_message"),
            resume_after=_parse_time(row.get("resume_after")),
            created_at=_parse_time(row["created_at"]),
            updated_at=_parse_time(row["updated_at"]),
        )
