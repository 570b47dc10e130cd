"""Durable monitoring job store; the scheduler's in-process registry is rebuilt from it."""

import json
import sqlite3
from typing import Any, Iterable, Optional

import structlog

from autoentry.persistence.sqlite import SQLiteStore
from autoentry.utils.time import now_utc, parse_timestamp

from .models import JobStatus, MonitoringJob, job_key

logger = structlog.get_logger(__name__)


class JobStore(SQLiteStore):
    """SQLite-based monitoring job persistence layer."""

    table = "monitoring_jobs"

    def __init__(self, db_path: str = "autoentry.db"):
        super().__init__(db_path)

    def _init_database(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS monitoring_jobs (
                    job_id TEXT PRIMARY KEY,
                    analysis_id TEXT NOT NULL,
                    strategy_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    frequency_seconds INTEGER NOT NULL,
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    timeframes TEXT NOT NULL,
                    paused_reason TEXT,
                    last_checked_at TEXT,
                    last_result TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_status ON monitoring_jobs(status)
            """)
            conn.commit()

    def create(self, job: MonitoringJob) -> tuple[MonitoringJob, bool]:
        """
        Insert ``job`` unless a job with the same key exists.

        Returns:
            The stored job and whether this call created it
        """
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute("""
                    INSERT OR IGNORE INTO monitoring_jobs (
                        job_id, analysis_id, strategy_id, user_id, frequency_seconds,
                        attempt_count, max_attempts, status, timeframes, paused_reason,
                        last_checked_at, last_result, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    job.job_id, job.analysis_id, job.strategy_id, job.user_id,
                    job.frequency_seconds, job.attempt_count, job.max_attempts,
                    job.status.value, json.dumps(job.timeframes), job.paused_reason,
                    job.last_checked_at.isoformat() if job.last_checked_at else None,
                    json.dumps(job.last_result) if job.last_result is not None else None,
                    job.created_at.isoformat(), job.updated_at.isoformat(),
                ))
                conn.commit()
                created = cursor.rowcount == 1

        if created:
            logger.info("Monitoring job stored", job_id=job.job_id,
                        frequency_seconds=job.frequency_seconds, max_attempts=job.max_attempts)
            return job, True
        return self.get(job.job_id), False

    def get(self, job_id: str) -> Optional[MonitoringJob]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM monitoring_jobs WHERE job_id = ?",
                               (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def get_for(self, analysis_id: str, strategy_id: str) -> Optional[MonitoringJob]:
        return self.get(job_key(analysis_id, strategy_id))

    def list_jobs(self, statuses: Optional[Iterable[JobStatus]] = None) -> list[MonitoringJob]:
        with self._get_connection() as conn:
            if statuses is None:
                rows = conn.execute("SELECT * FROM monitoring_jobs ORDER BY created_at").fetchall()
            else:
                values = [s.value for s in statuses]
                placeholders = ", ".join("?" for _ in values)
                rows = conn.execute(
                    f"SELECT * FROM monitoring_jobs WHERE status IN ({placeholders}) "
                    "ORDER BY created_at",
                    values,
                ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def set_status(self, job_id: str, status: JobStatus,
                   paused_reason: Optional[str] = None) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute("""
                UPDATE monitoring_jobs SET status = ?, paused_reason = ?, updated_at = ?
                WHERE job_id = ?
            """, (status.value, paused_reason, now_utc().isoformat(), job_id))
            conn.commit()
            return cursor.rowcount == 1

    def increment_attempts(self, job_id: str) -> Optional[int]:
        """Atomically bump the persisted attempt counter and return the new value."""
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute("""
                    UPDATE monitoring_jobs SET attempt_count = attempt_count + 1, updated_at = ?
                    WHERE job_id = ?
                """, (now_utc().isoformat(), job_id))
                if cursor.rowcount != 1:
                    conn.commit()
                    return None
                row = conn.execute("SELECT attempt_count FROM monitoring_jobs WHERE job_id = ?",
                                   (job_id,)).fetchone()
                conn.commit()
                return row["attempt_count"]

    def record_check(self, job_id: str, result: dict[str, Any]) -> None:
        now = now_utc().isoformat()
        with self._get_connection() as conn:
            conn.execute("""
                UPDATE monitoring_jobs SET last_checked_at = ?, last_result = ?, updated_at = ?
                WHERE job_id = ?
            """, (now, json.dumps(result, default=str), now, job_id))
            conn.commit()

    def delete(self, job_id: str) -> bool:
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute("DELETE FROM monitoring_jobs WHERE job_id = ?", (job_id,))
                conn.commit()
                deleted = cursor.rowcount == 1
        if deleted:
            logger.info("Monitoring job removed", job_id=job_id)
        return deleted

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> MonitoringJob:
        """Convert database row to MonitoringJob object."""
        return MonitoringJob(
            analysis_id=row["analysis_id"],
            strategy_id=row["strategy_id"],
            user_id=row["user_id"],
            frequency_seconds=row["frequency_seconds"],
            max_attempts=row["max_attempts"],
            attempt_count=row["attempt_count"],
            status=JobStatus(row["status"]),
            timeframes=json.loads(row["timeframes"]),
            paused_reason=row["paused_reason"],
            last_checked_at=parse_timestamp(row["last_checked_at"]),
            last_result=json.loads(row["last_result"]) if row["last_result"] else None,
            created_at=parse_timestamp(row["created_at"]) or now_utc(),
            updated_at=parse_timestamp(row["updated_at"]) or now_utc(),
        )
