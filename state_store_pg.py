from __future__ import annotations

import json
from typing import Any, Iterable, List, Optional, Union

import psycopg

from state_store import FanOutJob, JobStatus, _statuses


class StateStorePG:
    """Postgres-backed FanOutJob store.

    Production backend: lets the API and the worker share job state.

    Claiming:
      - jobs start as status='pending'
      - the worker claims one with UPDATE ... WHERE status=... RETURNING
        (FOR UPDATE SKIP LOCKED so concurrent workers never pick the same row)
      - a 'running' job whose updated_at is older than the stale window is
        considered abandoned and may be claimed again (resume)
    """

    def __init__(self, database_url: str, *, table: str = "fanout_jobs"):
        self.database_url = database_url
        self.table = table
        self._init()

    def _conn(self):
        return psycopg.connect(self.database_url)

    def _init(self) -> None:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self.table} (
                      job_id TEXT PRIMARY KEY,
                      status TEXT NOT NULL,
                      cancel_requested BOOLEAN NOT NULL DEFAULT FALSE,
                      payload_json JSONB NOT NULL,
                      created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                      updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                    """
                )
                cur.execute(
                    f"""
                    CREATE INDEX IF NOT EXISTS idx_{self.table}_status
                    ON {self.table}(status, created_at)
                    """
                )
            conn.commit()

    @staticmethod
    def _row_to_job(row: Any) -> FanOutJob:
        status, cancel_requested, payload_json = row
        payload = payload_json if isinstance(payload_json, dict) else json.loads(payload_json)
        job = FanOutJob.model_validate(payload)
        job.status = JobStatus(status)
        job.cancel_requested = bool(cancel_requested)
        return job

    def get(self, job_id: str) -> Optional[FanOutJob]:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT status, cancel_requested, payload_json FROM {self.table} WHERE job_id=%s",
                    (job_id,),
                )
                row = cur.fetchone()
        return self._row_to_job(row) if row else None

    def put(self, job: FanOutJob) -> None:
        payload = job.model_dump_json(exclude={"cancel_requested"})
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO {self.table} (job_id, status, payload_json, created_at, updated_at)
                    VALUES (%s, %s, %s::jsonb, %s, %s)
                    ON CONFLICT (job_id) DO UPDATE SET
                      status=EXCLUDED.status,
                      payload_json=EXCLUDED.payload_json,
                      updated_at=EXCLUDED.updated_at
                    """,
                    (job.job_id, job.status.value, payload, job.created_at, job.updated_at),
                )
            conn.commit()

    def claim(self, job_id: str, from_statuses: Iterable[Union[str, JobStatus]]) -> Optional[FanOutJob]:
        allowed = _statuses(from_statuses)
        if not allowed:
            return None
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE {self.table}
                    SET status='running',
                        cancel_requested=CASE WHEN status IN ('partial', 'failed') THEN FALSE ELSE cancel_requested END,
                        updated_at=now()
                    WHERE job_id=%s AND status = ANY(%s)
                    RETURNING status, cancel_requested, payload_json
                    """,
                    (job_id, allowed),
                )
                row = cur.fetchone()
            conn.commit()
        return self._row_to_job(row) if row else None

    def claim_next(self, *, stale_after_s: int = 1800) -> Optional[FanOutJob]:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE {self.table}
                    SET status='running', updated_at=now()
                    WHERE job_id = (
                      SELECT job_id FROM {self.table}
                      WHERE status='pending'
                         OR (status='running' AND updated_at < (now() - make_interval(secs => %s)))
                      ORDER BY created_at ASC
                      LIMIT 1
                      FOR UPDATE SKIP LOCKED
                    )
                    RETURNING status, cancel_requested, payload_json
                    """,
                    (int(stale_after_s),),
                )
                row = cur.fetchone()
            conn.commit()
        return self._row_to_job(row) if row else None

    def request_cancel(self, job_id: str) -> bool:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"UPDATE {self.table} SET cancel_requested=TRUE WHERE job_id=%s",
                    (job_id,),
                )
                n = int(cur.rowcount or 0)
            conn.commit()
        return n == 1

    def is_cancel_requested(self, job_id: str) -> bool:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT cancel_requested FROM {self.table} WHERE job_id=%s", (job_id,))
                row = cur.fetchone()
        return bool(row and row[0])

    def list_jobs(self, *, status: Optional[str] = None, limit: int = 50) -> List[FanOutJob]:
        sql = f"SELECT status, cancel_requested, payload_json FROM {self.table}"
        args: List[Any] = []
        if status:
            sql += " WHERE status=%s"
            args.append(JobStatus(status).value)
        sql += " ORDER BY created_at DESC LIMIT %s"
        args.append(int(limit))
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, args)
                rows = cur.fetchall()
        return [self._row_to_job(r) for r in rows]
