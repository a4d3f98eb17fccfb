"""
Repository pattern for data access.

Holds the only long-lived mutable state of the system: watermark alert
flags, rotation jobs and run locks. Every read-modify-write runs inside a
``BEGIN IMMEDIATE`` transaction so concurrent runs cannot interleave.
"""

import json
import logging
import os
import socket
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import RotationJob, UsageSnapshot
from ai_key_guard.core.errors import RunLockedError, StaleJobError

logger = logging.getLogger(__name__)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all tables if they don't exist.

    ``usage_snapshot`` is an append-only log: no UPDATE or DELETE is ever
    issued against it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS watermark_state (
                credential_id TEXT NOT NULL,
                scope TEXT NOT NULL,
                period_key TEXT NOT NULL,
                watermark INTEGER NOT NULL,
                alerted_at TEXT NOT NULL,
                PRIMARY KEY (credential_id, scope, period_key, watermark)
            );
            CREATE TABLE IF NOT EXISTS rotation_job (
                id TEXT PRIMARY KEY,
                state TEXT NOT NULL,
                payload TEXT NOT NULL,
                version INTEGER NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS run_lock (
                scope TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                acquired_at TEXT NOT NULL,
                expires_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS usage_snapshot (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                credential_id TEXT NOT NULL,
                usage_window TEXT NOT NULL,
                captured_at TEXT NOT NULL,
                availability TEXT NOT NULL,
                payload TEXT NOT NULL
            );
        """)
    finally:
        conn.close()


def insert_usage_snapshots(
    run_id: str,
    snapshots: List[UsageSnapshot],
    db_path: str = DEFAULT_DB_PATH,
) -> None:
    """Append snapshots of one run to the usage log atomically.

    Args:
        run_id: Identifier of the aggregation run
        snapshots: Snapshots to record
        db_path: Path to SQLite database file
    """
    if not snapshots:
        return

    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        for snapshot in snapshots:
            conn.execute("""
                INSERT INTO usage_snapshot
                (run_id, credential_id, usage_window, captured_at, availability, payload)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                run_id,
                snapshot.credential_id,
                snapshot.window.value,
                snapshot.captured_at.isoformat(),
                snapshot.availability.value,
                json.dumps(snapshot.to_dict(), sort_keys=True),
            ))
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()


def count_usage_snapshots(run_id: Optional[str] = None, db_path: str = DEFAULT_DB_PATH) -> int:
    conn = get_connection(db_path)
    try:
        if run_id is None:
            row = conn.execute("SELECT COUNT(*) FROM usage_snapshot").fetchone()
        else:
            row = conn.execute(
                "SELECT COUNT(*) FROM usage_snapshot WHERE run_id = ?", (run_id,)
            ).fetchone()
        return row[0]
    finally:
        conn.close()


class WatermarkRepository:
    """Per (credential, period, watermark) alerted flags."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        initialize_schema(db_path)

    def mark_alerted(
        self,
        credential_id: str,
        scope: str,
        period_key: str,
        watermark: int,
        alerted_at: datetime,
    ) -> bool:
        """Record a watermark as alerted.

        Returns:
            True if this call set the flag, False if it was already set
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                INSERT OR IGNORE INTO watermark_state
                (credential_id, scope, period_key, watermark, alerted_at)
                VALUES (?, ?, ?, ?, ?)
            """, (credential_id, scope, period_key, watermark, alerted_at.isoformat()))
            return cursor.rowcount == 1
        finally:
            conn.close()

    def is_alerted(self, credential_id: str, scope: str, period_key: str, watermark: int) -> bool:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT 1 FROM watermark_state
                WHERE credential_id = ? AND scope = ? AND period_key = ? AND watermark = ?
            """, (credential_id, scope, period_key, watermark)).fetchone()
            return row is not None
        finally:
            conn.close()

    def purge_before(self, scope: str, period_key: str) -> int:
        """Delete flags of periods older than ``period_key`` for a scope.

        Period keys are ISO dates or months, so they sort chronologically.
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM watermark_state WHERE scope = ? AND period_key < ?",
                (scope, period_key),
            )
            if cursor.rowcount:
                logger.info("Reset %d %s watermark(s) before %s", cursor.rowcount, scope, period_key)
            return cursor.rowcount
        finally:
            conn.close()


class RotationJobRepository:
    """Persistence for rotation jobs with optimistic versioning."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        initialize_schema(db_path)

    def create(self, job: RotationJob) -> None:
        job.version = 1
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO rotation_job (id, state, payload, version, updated_at)
                VALUES (?, ?, ?, ?, ?)
            """, (
                job.id,
                job.state.value,
                json.dumps(job.to_dict(), sort_keys=True),
                job.version,
                datetime.now(timezone.utc).isoformat(),
            ))
        finally:
            conn.close()

    def save(self, job: RotationJob) -> None:
        """Write the job if nobody else has written it since we read it.

        Raises:
            StaleJobError: If the stored version differs from ``job.version``
        """
        expected = job.version
        job.version = expected + 1
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                UPDATE rotation_job
                SET state = ?, payload = ?, version = ?, updated_at = ?
                WHERE id = ? AND version = ?
            """, (
                job.state.value,
                json.dumps(job.to_dict(), sort_keys=True),
                job.version,
                datetime.now(timezone.utc).isoformat(),
                job.id,
                expected,
            ))
            if cursor.rowcount != 1:
                job.version = expected
                raise StaleJobError(f"Rotation job {job.id} was modified concurrently (expected v{expected})")
        finally:
            conn.close()

    def get(self, job_id: str) -> Optional[RotationJob]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT payload, version FROM rotation_job WHERE id = ?", (job_id,)
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        job = RotationJob.from_dict(json.loads(row[0]))
        job.version = row[1]
        return job

    def list_jobs(self, active_only: bool = False) -> List[RotationJob]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT payload, version FROM rotation_job ORDER BY updated_at DESC"
            ).fetchall()
        finally:
            conn.close()
        jobs = []
        for payload, version in rows:
            job = RotationJob.from_dict(json.loads(payload))
            job.version = version
            if active_only and job.state.is_terminal:
                continue
            jobs.append(job)
        return jobs


class RunLock:
    """Run-level lock: at most one active run per scope.

    Example:
        >>> with RunLock("monitoring", db_path):
        ...     run_monitoring_pass(...)
    """

    def __init__(
        self,
        scope: str,
        db_path: str = DEFAULT_DB_PATH,
        ttl_seconds: float = 3600,
        owner: Optional[str] = None,
    ):
        self.scope = scope
        self.db_path = db_path
        self.ttl_seconds = ttl_seconds
        self.owner = owner or f"{os.getpid()}@{socket.gethostname()}/{uuid.uuid4().hex}"
        initialize_schema(db_path)

    def acquire(self) -> None:
        """Take the lock, replacing an expired holder.

        Raises:
            RunLockedError: If a live lock is held by another owner
        """
        now = datetime.now(timezone.utc)
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT owner, expires_at FROM run_lock WHERE scope = ?", (self.scope,)
            ).fetchone()
            if row is not None:
                owner, expires_at = row
                if owner != self.owner and datetime.fromisoformat(expires_at) > now:
                    conn.execute("ROLLBACK")
                    raise RunLockedError(self.scope, owner)
                if owner != self.owner:
                    logger.warning("Taking over expired run lock for '%s' from %s", self.scope, owner)
            conn.execute("""
                INSERT OR REPLACE INTO run_lock (scope, owner, acquired_at, expires_at)
                VALUES (?, ?, ?, ?)
            """, (
                self.scope,
                self.owner,
                now.isoformat(),
                (now + timedelta(seconds=self.ttl_seconds)).isoformat(),
            ))
            conn.execute("COMMIT")
        finally:
            conn.close()

    def release(self) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "DELETE FROM run_lock WHERE scope = ? AND owner = ?", (self.scope, self.owner)
            )
        finally:
            conn.close()

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()
