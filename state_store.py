from __future__ import annotations

import os
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------------
# Job records
# -----------------------------

class JobStatus(str, Enum):
    pending = "pending"
    running = "running"
    partial = "partial"
    completed = "completed"
    failed = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.partial, JobStatus.completed, JobStatus.failed})


class ItemResult(BaseModel):
    index: int
    status: Literal["success", "error"]
    ad_set_id: Optional[str] = None
    ad_id: Optional[str] = None
    error_message: Optional[str] = None
    error_code: Optional[Union[int, str]] = None

    @property
    def entity_id(self) -> Optional[str]:
        return self.ad_id


class FanOutJob(BaseModel):
    job_id: str
    source_campaign_id: str
    post_id: str
    requested_count: int = Field(ge=1)
    custom_budgets: List[int] = Field(default_factory=list)
    targeting_mode: Literal["default", "source", "custom"] = "default"
    targeting: Optional[Dict[str, Any]] = None
    user_id: Optional[str] = None

    # campaign_copy jobs build a new campaign from the source first and put the siblings there.
    mode: Literal["siblings", "campaign_copy"] = "siblings"
    copy_number: int = 1
    target_campaign_id: Optional[str] = None

    status: JobStatus = JobStatus.pending
    current_operation: str = "Queued"
    indices: List[int] = Field(default_factory=list)
    results: List[ItemResult] = Field(default_factory=list)
    ad_set_ids: Dict[int, str] = Field(default_factory=dict)
    error: Optional[str] = None
    cancel_requested: bool = False

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    def result_for(self, index: int) -> Optional[ItemResult]:
        for r in self.results:
            if r.index == index:
                return r
        return None

    def set_result(self, result: ItemResult) -> None:
        """Insert or replace the result for `result.index`, keeping index order."""
        kept = [r for r in self.results if r.index != result.index]
        kept.append(result)
        kept.sort(key=lambda r: r.index)
        self.results = kept

    def failed_indices(self) -> List[int]:
        return [r.index for r in self.results if r.status == "error"]

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.status == "success")

    @property
    def error_count(self) -> int:
        return sum(1 for r in self.results if r.status == "error")


def _statuses(values: Iterable[Union[str, JobStatus]]) -> List[str]:
    return [JobStatus(v).value for v in values]


# -----------------------------
# In-memory store
# -----------------------------

class MemoryJobStore:
    """Process-local job store. Jobs are lost on restart."""

    def __init__(self) -> None:
        self._jobs: Dict[str, FanOutJob] = {}
        self._cancel: Dict[str, bool] = {}
        self._lock = threading.Lock()

    def get(self, job_id: str) -> Optional[FanOutJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            out = job.model_copy(deep=True)
            out.cancel_requested = self._cancel.get(job_id, False)
            return out

    def put(self, job: FanOutJob) -> None:
        # cancel_requested is owned by request_cancel, never by put.
        with self._lock:
            self._jobs[job.job_id] = job.model_copy(deep=True)
            self._cancel.setdefault(job.job_id, False)

    def claim(self, job_id: str, from_statuses: Iterable[Union[str, JobStatus]]) -> Optional[FanOutJob]:
        allowed = set(_statuses(from_statuses))
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status.value not in allowed:
                return None
            if job.status in TERMINAL_STATUSES:
                self._cancel[job_id] = False
            job.status = JobStatus.running
            job.updated_at = utcnow()
        return self.get(job_id)

    def claim_next(self, *, stale_after_s: int = 1800) -> Optional[FanOutJob]:
        cutoff = utcnow() - timedelta(seconds=stale_after_s)
        with self._lock:
            candidates = [
                j for j in self._jobs.values()
                if j.status == JobStatus.pending or (j.status == JobStatus.running and j.updated_at < cutoff)
            ]
            if not candidates:
                return None
            job = min(candidates, key=lambda j: j.created_at)
            job.status = JobStatus.running
            job.updated_at = utcnow()
            job_id = job.job_id
        return self.get(job_id)

    def request_cancel(self, job_id: str) -> bool:
        with self._lock:
            if job_id not in self._jobs:
                return False
            self._cancel[job_id] = True
            return True

    def is_cancel_requested(self, job_id: str) -> bool:
        with self._lock:
            return self._cancel.get(job_id, False)

    def list_jobs(self, *, status: Optional[str] = None, limit: int = 50) -> List[FanOutJob]:
        with self._lock:
            ids = [
                j.job_id for j in sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)
                if status is None or j.status.value == status
            ][: int(limit)]
        return [job for job in (self.get(i) for i in ids) if job is not None]


# -----------------------------
# SQLite store
# -----------------------------

class StateStore:
    """SQLite-backed FanOutJob store.

    Each row holds one job serialized as JSON plus the columns that are
    updated independently of the payload:
      - status            (claimed atomically with a conditional UPDATE)
      - cancel_requested  (set by request_cancel only)

    Note on concurrency:
      - SQLite has no cross-host locking. For multi-instance deployments use
        StateStorePG with JOB_STORE_SOURCE=db.
    """

    def __init__(self, db_path: str = ".fanout_jobs.db"):
        self.db_path = db_path
        self._init()

    def _init(self) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS fanout_jobs (
                    job_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    cancel_requested INTEGER NOT NULL DEFAULT 0,
                    payload_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_fanout_jobs_status ON fanout_jobs(status, created_at)"
            )
            conn.commit()

    def _row_to_job(self, row: Any) -> FanOutJob:
        status, cancel_requested, payload_json = row
        job = FanOutJob.model_validate_json(payload_json)
        job.status = JobStatus(status)
        job.cancel_requested = bool(cancel_requested)
        return job

    def get(self, job_id: str) -> Optional[FanOutJob]:
        with sqlite3.connect(self.db_path) as conn:
            cur = conn.execute(
                "SELECT status, cancel_requested, payload_json FROM fanout_jobs WHERE job_id=?",
                (job_id,),
            )
            row = cur.fetchone()
        return self._row_to_job(row) if row else None

    def put(self, job: FanOutJob) -> None:
        payload = job.model_dump_json(exclude={"cancel_requested"})
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO fanout_jobs (job_id, status, payload_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(job_id) DO UPDATE SET
                    status=excluded.status,
                    payload_json=excluded.payload_json,
                    updated_at=excluded.updated_at
                """,
                (job.job_id, job.status.value, payload, job.created_at.isoformat(), job.updated_at.isoformat()),
            )
            conn.commit()

    def claim(self, job_id: str, from_statuses: Iterable[Union[str, JobStatus]]) -> Optional[FanOutJob]:
        allowed = _statuses(from_statuses)
        if not allowed:
            return None
        marks = ",".join("?" for _ in allowed)
        with sqlite3.connect(self.db_path) as conn:
            cur = conn.execute(
                f"""
                UPDATE fanout_jobs
                SET status='running',
                    cancel_requested=CASE WHEN status IN ('partial', 'failed') THEN 0 ELSE cancel_requested END,
                    updated_at=?
                WHERE job_id=? AND status IN ({marks})
                """,
                (utcnow().isoformat(), job_id, *allowed),
            )
            claimed = cur.rowcount == 1
            conn.commit()
        if not claimed:
            return None
        job = self.get(job_id)
        if job is not None:
            job.status = JobStatus.running
        return job

    def claim_next(self, *, stale_after_s: int = 1800) -> Optional[FanOutJob]:
        cutoff = (utcnow() - timedelta(seconds=stale_after_s)).isoformat()
        with sqlite3.connect(self.db_path) as conn:
            cur = conn.execute(
                """
                SELECT job_id, status FROM fanout_jobs
                WHERE status='pending' OR (status='running' AND updated_at < ?)
                ORDER BY created_at ASC
                LIMIT 1
                """,
                (cutoff,),
            )
            row = cur.fetchone()
        if not row:
            return None
        return self.claim(row[0], [row[1]])

    def request_cancel(self, job_id: str) -> bool:
        with sqlite3.connect(self.db_path) as conn:
            cur = conn.execute("UPDATE fanout_jobs SET cancel_requested=1 WHERE job_id=?", (job_id,))
            n = cur.rowcount
            conn.commit()
        return n == 1

    def is_cancel_requested(self, job_id: str) -> bool:
        with sqlite3.connect(self.db_path) as conn:
            cur = conn.execute("SELECT cancel_requested FROM fanout_jobs WHERE job_id=?", (job_id,))
            row = cur.fetchone()
        return bool(row and row[0])

    def list_jobs(self, *, status: Optional[str] = None, limit: int = 50) -> List[FanOutJob]:
        sql = "SELECT status, cancel_requested, payload_json FROM fanout_jobs"
        args: List[Any] = []
        if status:
            sql += " WHERE status=?"
            args.append(JobStatus(status).value)
        sql += " ORDER BY created_at DESC LIMIT ?"
        args.append(int(limit))
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(sql, args).fetchall()
        return [self._row_to_job(r) for r in rows]


def build_job_store(job_db_path: str = ".fanout_jobs.db", *, source: Optional[str] = None, database_url: Optional[str] = None):
    """Factory: memory (default), SQLite, or Postgres.

    Select with JOB_STORE_SOURCE:
      memory  - process-local
      sqlite  - JOB_DB_PATH file
      db      - Postgres at DATABASE_URL
    """
    source = (source if source is not None else os.getenv("JOB_STORE_SOURCE") or "").strip().lower()
    database_url = (database_url if database_url is not None else os.getenv("DATABASE_URL") or "").strip()
    if source == "db":
        if not database_url:
            raise ValueError("JOB_STORE_SOURCE=db but DATABASE_URL is not set.")
        from state_store_pg import StateStorePG

        return StateStorePG(database_url)
    if source == "sqlite":
        return StateStore(job_db_path)
    return MemoryJobStore()
