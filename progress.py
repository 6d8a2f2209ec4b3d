"""Progress/state tracking for fan-out jobs.

Single writer per job: the orchestrator run that `attach`es a job is the only
caller of the record_* / set_operation / finish methods for it. Pollers use
`get_status` / `snapshot`, which read the persisted state and never mutate.
Cancellation is a separate flag in the store so a poller can set it without
touching the writer's record.
"""

from __future__ import annotations

import logging
import secrets
import time
from typing import Any, Dict, List, Optional

from errors import JobConflictError, JobNotFoundError
from state_store import FanOutJob, ItemResult, JobStatus, TERMINAL_STATUSES, utcnow

logger = logging.getLogger(__name__)


def new_job_id() -> str:
    return f"job_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class ProgressTracker:
    def __init__(self, store: Any):
        self.store = store
        self._live: Dict[str, FanOutJob] = {}

    # -----------------------------
    # Create / read
    # -----------------------------

    def create(
        self,
        *,
        source_campaign_id: str,
        post_id: str,
        requested_count: int,
        custom_budgets: Optional[List[int]] = None,
        targeting_mode: str = "default",
        targeting: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        mode: str = "siblings",
        copy_number: int = 1,
        job_id: Optional[str] = None,
    ) -> FanOutJob:
        job = FanOutJob(
            job_id=job_id or new_job_id(),
            source_campaign_id=source_campaign_id,
            post_id=post_id,
            requested_count=requested_count,
            custom_budgets=list(custom_budgets or []),
            targeting_mode=targeting_mode,
            targeting=targeting,
            user_id=user_id,
            mode=mode,
            copy_number=copy_number,
            indices=list(range(requested_count)),
        )
        self.store.put(job)
        logger.info(
            "Created %s job %s (%d siblings of campaign %s)",
            job.mode,
            job.job_id,
            requested_count,
            source_campaign_id,
        )
        return job

    def get_status(self, job_id: str) -> FanOutJob:
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def snapshot(self, job_id: str) -> Dict[str, Any]:
        return job_snapshot(self.get_status(job_id))

    def request_cancel(self, job_id: str) -> FanOutJob:
        job = self.get_status(job_id)
        if job.status in TERMINAL_STATUSES:
            raise JobConflictError(f"Job {job_id} already finished ({job.status.value}).", job_id=job_id, status=job.status.value)
        self.store.request_cancel(job_id)
        logger.info("Cancel requested for job %s", job_id)
        return self.get_status(job_id)

    def is_cancel_requested(self, job_id: str) -> bool:
        return bool(self.store.is_cancel_requested(job_id))

    # -----------------------------
    # Writer side
    # -----------------------------

    def attach(self, job: FanOutJob) -> None:
        self._live[job.job_id] = job

    def _owned(self, job_id: str) -> FanOutJob:
        job = self._live.get(job_id)
        if job is None:
            raise JobConflictError(f"Job {job_id} is not attached to a running orchestrator.", job_id=job_id)
        return job

    def _save(self, job: FanOutJob) -> None:
        job.updated_at = utcnow()
        self.store.put(job)

    def record_result(self, job_id: str, index: int, result: ItemResult) -> None:
        if result.index != index:
            result = result.model_copy(update={"index": index})
        job = self._owned(job_id)
        job.set_result(result)
        self._save(job)

    def record_results(self, job_id: str, results: List[ItemResult]) -> None:
        job = self._owned(job_id)
        for r in results:
            job.set_result(r)
        self._save(job)

    def record_target_campaign(self, job_id: str, campaign_id: str) -> None:
        job = self._owned(job_id)
        job.target_campaign_id = campaign_id
        self._save(job)

    def record_ad_sets(self, job_id: str, ad_set_ids: Dict[int, str]) -> None:
        job = self._owned(job_id)
        job.ad_set_ids.update(ad_set_ids)
        self._save(job)

    def set_operation(self, job_id: str, text: str) -> None:
        job = self._owned(job_id)
        job.current_operation = text
        self._save(job)

    def finish(self, job_id: str, status: JobStatus, *, error: Optional[str] = None, operation: Optional[str] = None) -> FanOutJob:
        job = self._owned(job_id)
        job.status = status
        job.error = error
        job.current_operation = operation or _final_operation(job)
        job.finished_at = utcnow()
        self._save(job)
        self._live.pop(job_id, None)
        logger.info(
            "Job %s finished: %s (%d ok, %d errors)",
            job_id,
            status.value,
            job.success_count,
            job.error_count,
        )
        return job


def _final_operation(job: FanOutJob) -> str:
    if job.status == JobStatus.completed:
        return f"Completed: {job.success_count} of {len(job.indices)} copies created"
    if job.status == JobStatus.partial:
        return f"Finished with warnings: {job.success_count} created, {job.error_count} failed"
    return "Failed"


def job_snapshot(job: FanOutJob) -> Dict[str, Any]:
    """Serializable progress view. Equal jobs give equal snapshots."""
    total = len(job.indices) or job.requested_count
    done = sum(1 for i in job.indices if job.result_for(i) is not None)
    return {
        "job_id": job.job_id,
        "status": job.status.value,
        "source_campaign_id": job.source_campaign_id,
        "post_id": job.post_id,
        "mode": job.mode,
        "target_campaign_id": job.target_campaign_id,
        "requested_count": job.requested_count,
        "total": total,
        "completed": done,
        "succeeded": job.success_count,
        "failed": job.error_count,
        "progress": int(done * 100 / total) if total else 0,
        "current_operation": job.current_operation,
        "cancel_requested": job.cancel_requested,
        "results": [r.model_dump(exclude_none=True) for r in job.results],
        "errors": [
            {"index": r.index, "message": r.error_message, "code": r.error_code}
            for r in job.results
            if r.status == "error"
        ],
        "error": job.error,
        "created_at": job.created_at.isoformat(),
        "updated_at": job.updated_at.isoformat(),
        "finished_at": job.finished_at.isoformat() if job.finished_at else None,
    }
