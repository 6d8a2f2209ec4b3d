"""Fan-out orchestrator: N sibling ad sets + ads that all reuse one seed post.

Job lifecycle:

    pending -> running -> completed | partial | failed

A run is an explicit two-phase pipeline:

    fetch_source()  ->  run_adset_phase() -> AdSetPhaseResult
                    ->  run_ad_phase(AdSetPhaseResult) -> AdPhaseResult

A "siblings" job puts the copies into the source campaign. A "campaign_copy"
job first creates a new (paused) campaign from the source's settings and puts
the copies there; the new campaign id is stored on the job so a retry reuses it.

Each phase submits chunked batch requests (<= 50 items), waits a fixed delay
between chunks, and checks for a cancel request before every chunk. Every
batch item is judged on its own: a failed item becomes a per-index error and
the run carries on. Nothing is retried automatically; `retry` runs only the
indices that have no successful result, reusing ad sets that were already
created for them.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from config import Credentials, Settings
from errors import (
    BudgetError,
    JobConflictError,
    JobNotFoundError,
    RemoteApiError,
    RemoteUnavailableError,
)
from graph_client import BatchRequest, BatchResponse
from progress import ProgressTracker
from state_store import FanOutJob, ItemResult, JobStatus
from wire_compiler import (
    AdSetParams,
    CampaignParams,
    TargetingSpec,
    compile_targeting,
    normalize_special_categories,
    restrict_targeting,
    sibling_ad,
)

logger = logging.getLogger(__name__)

SOURCE_FIELDS = (
    "id,name,status,objective,special_ad_categories,daily_budget,lifetime_budget,"
    "bid_strategy,account_id,"
    "adsets.limit(1){id,name,promoted_object,optimization_goal,billing_event,"
    "targeting,attribution_spec,bid_strategy,bid_amount}"
)

CANCELLED_MESSAGE = "cancelled before submission"


# -----------------------------
# Source configuration
# -----------------------------

@dataclass(frozen=True)
class SourceConfig:
    campaign_id: str
    name: str
    objective: Optional[str]
    special_ad_categories: List[str]
    daily_budget: Optional[int]
    lifetime_budget: Optional[int]
    bid_strategy: Optional[str]
    ad_set_id: str
    promoted_object: Optional[Dict[str, Any]]
    optimization_goal: str
    billing_event: str
    targeting: Optional[Dict[str, Any]] = None
    attribution_spec: Optional[List[Dict[str, Any]]] = None
    ad_set_bid_strategy: Optional[str] = None
    ad_set_bid_amount: Optional[int] = None

    @property
    def uses_campaign_budget(self) -> bool:
        return bool(self.daily_budget or self.lifetime_budget)

    @staticmethod
    def from_payload(payload: Dict[str, Any]) -> "SourceConfig":
        adsets = ((payload.get("adsets") or {}).get("data")) or []
        if not adsets:
            raise ValueError(f"Source campaign {payload.get('id')} has no ad sets to copy settings from.")
        first = adsets[0]

        def _int(v: Any) -> Optional[int]:
            return int(v) if v not in (None, "", "0", 0) else None

        return SourceConfig(
            campaign_id=str(payload.get("id")),
            name=str(payload.get("name") or "Campaign"),
            objective=payload.get("objective"),
            special_ad_categories=normalize_special_categories(payload.get("special_ad_categories")),
            daily_budget=_int(payload.get("daily_budget")),
            lifetime_budget=_int(payload.get("lifetime_budget")),
            bid_strategy=payload.get("bid_strategy"),
            ad_set_id=str(first.get("id") or ""),
            promoted_object=first.get("promoted_object") or None,
            optimization_goal=first.get("optimization_goal") or "OFFSITE_CONVERSIONS",
            billing_event=first.get("billing_event") or "IMPRESSIONS",
            targeting=first.get("targeting") or None,
            attribution_spec=first.get("attribution_spec") or None,
            ad_set_bid_strategy=first.get("bid_strategy"),
            ad_set_bid_amount=_int(first.get("bid_amount")),
        )


# -----------------------------
# Phase results
# -----------------------------

@dataclass
class AdSetPhaseResult:
    source: SourceConfig
    targets: List[int]
    ad_set_ids: Dict[int, str] = field(default_factory=dict)
    errors: Dict[int, ItemResult] = field(default_factory=dict)
    cancelled: bool = False


@dataclass
class AdPhaseResult:
    successes: Dict[int, ItemResult] = field(default_factory=dict)
    errors: Dict[int, ItemResult] = field(default_factory=dict)
    cancelled: bool = False


def normalize_custom_budgets(
    budgets: Optional[Sequence[int]],
    count: int,
    *,
    default_minor: int = 100,
    minimum_minor: int = 100,
) -> List[int]:
    """One budget per sibling: missing entries get `default_minor`, extra entries are dropped."""
    out: List[int] = []
    for i, b in enumerate(list(budgets or [])[:count]):
        value = int(b)
        if value < minimum_minor:
            raise BudgetError(f"custom_budgets[{i}]={value} is below the minimum of {minimum_minor} minor units.")
        out.append(value)
    out.extend([int(default_minor)] * (count - len(out)))
    return out


def _chunks(items: Sequence[Any], size: int) -> List[Sequence[Any]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class _Pacer:
    """Sleeps a fixed delay before every batch except the first one of a run."""

    def __init__(self, delay_s: float, sleep: Callable[[float], Awaitable[None]]):
        self.delay_s = delay_s
        self._sleep = sleep
        self._sent = 0

    async def wait(self) -> None:
        if self._sent and self.delay_s > 0:
            await self._sleep(self.delay_s)
        self._sent += 1


def _error_result(index: int, message: str, *, code: Any = None, ad_set_id: Optional[str] = None) -> ItemResult:
    return ItemResult(index=index, status="error", ad_set_id=ad_set_id, error_message=message, error_code=code)


def _batch_failure(e: Exception) -> Tuple[str, Any]:
    if isinstance(e, RemoteApiError):
        return e.message, e.code
    return str(e), "unavailable"


# -----------------------------
# Orchestrator
# -----------------------------

class FanOutOrchestrator:
    def __init__(
        self,
        client: Any,
        tracker: ProgressTracker,
        *,
        credentials: Credentials,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.tracker = tracker
        self.credentials = credentials
        self.settings = settings or Settings()
        self._sleep = sleep

    # -----------------------------
    # Claiming
    # -----------------------------

    def claim(self, job_id: str, *, retry: bool = False) -> FanOutJob:
        """Move a job to running. Fresh runs start from pending; retries from partial/failed."""
        from_statuses = [JobStatus.partial, JobStatus.failed] if retry else [JobStatus.pending]
        job = self.tracker.store.claim(job_id, from_statuses)
        if job is not None:
            return job
        existing = self.tracker.store.get(job_id)
        if existing is None:
            raise JobNotFoundError(job_id)
        raise JobConflictError(
            f"Job {job_id} is {existing.status.value}; cannot {'retry' if retry else 'start'} it.",
            job_id=job_id,
            status=existing.status.value,
        )

    async def run(self, job_id: str, *, retry: bool = False) -> FanOutJob:
        return await self.execute(self.claim(job_id, retry=retry))

    # -----------------------------
    # Source + sibling construction
    # -----------------------------

    async def fetch_source(self, campaign_id: str) -> SourceConfig:
        payload = await self.client.get_entity(campaign_id, SOURCE_FIELDS)
        return SourceConfig.from_payload(payload)

    def sibling_targeting(self, job: FanOutJob, source: SourceConfig) -> Dict[str, Any]:
        if job.targeting_mode == "source" and source.targeting:
            return restrict_targeting(source.targeting, source.special_ad_categories)
        if job.targeting_mode == "custom" and job.targeting:
            return restrict_targeting(job.targeting, source.special_ad_categories)
        return compile_targeting(TargetingSpec(), source.special_ad_categories)

    def build_adset_params(self, job: FanOutJob, source: SourceConfig, indices: Iterable[int]) -> Dict[int, AdSetParams]:
        budgets = normalize_custom_budgets(
            job.custom_budgets,
            job.requested_count,
            default_minor=self.settings.default_budget_minor,
            minimum_minor=self.settings.min_budget_minor,
        )
        targeting = self.sibling_targeting(job, source)
        campaign_id = job.target_campaign_id or source.campaign_id
        out: Dict[int, AdSetParams] = {}
        for i in indices:
            params: Dict[str, Any] = {
                "name": f"{source.name} - AdSet Copy {i + 1}",
                "campaign_id": campaign_id,
                "status": "ACTIVE",
                "billing_event": source.billing_event,
                "optimization_goal": source.optimization_goal,
                "targeting": targeting,
                "promoted_object": source.promoted_object,
                "attribution_spec": source.attribution_spec,
            }
            if not source.uses_campaign_budget:
                params["daily_budget"] = budgets[i]
                if source.ad_set_bid_strategy:
                    params["bid_strategy"] = source.ad_set_bid_strategy
            # Bid caps live on the ad set under either budget level.
            if source.ad_set_bid_amount:
                params["bid_amount"] = source.ad_set_bid_amount
            out[i] = AdSetParams(**params)
        return out

    def build_campaign_copy(self, job: FanOutJob, source: SourceConfig) -> CampaignParams:
        """Campaign for a campaign_copy job: the source's objective, categories, budget and bid strategy."""
        if not source.objective:
            raise ValueError(f"Source campaign {source.campaign_id} has no objective to copy.")
        params: Dict[str, Any] = {
            "name": f"{source.name} - Copy {job.copy_number}",
            "objective": source.objective,
            "status": "PAUSED",
            "special_ad_categories": list(source.special_ad_categories),
        }
        if source.uses_campaign_budget:
            if source.daily_budget:
                params["daily_budget"] = source.daily_budget
            else:
                params["lifetime_budget"] = source.lifetime_budget
            if source.bid_strategy:
                params["bid_strategy"] = source.bid_strategy
        else:
            params["is_adset_budget_sharing_enabled"] = False
        return CampaignParams(**params)

    async def ensure_target_campaign(self, job: FanOutJob, source: SourceConfig) -> str:
        """Campaign the siblings go into. A campaign_copy job creates its campaign once and reuses it on retry."""
        if job.mode != "campaign_copy":
            return source.campaign_id
        if job.target_campaign_id:
            return job.target_campaign_id
        self.tracker.set_operation(job.job_id, f"Creating campaign copy {job.copy_number}")
        campaign_id = await self.client.create_campaign(self.build_campaign_copy(job, source))
        self.tracker.record_target_campaign(job.job_id, campaign_id)
        logger.info("Job %s: created campaign copy %s from %s", job.job_id, campaign_id, source.campaign_id)
        return campaign_id

    # -----------------------------
    # Phases
    # -----------------------------

    async def _submit_chunks(
        self,
        job: FanOutJob,
        requests_: List[Tuple[int, BatchRequest]],
        *,
        label: str,
        pacer: _Pacer,
        on_chunk: Callable[[Sequence[Tuple[int, BatchRequest]], Optional[List[BatchResponse]], Optional[Exception]], None],
    ) -> List[int]:
        """Submit requests in chunks. Returns the indices left unsubmitted because of a cancel."""
        chunks = _chunks(requests_, self.settings.chunk_size)
        total = len(requests_)
        done = 0
        for chunk_no, chunk in enumerate(chunks):
            await pacer.wait()
            if self.tracker.is_cancel_requested(job.job_id):
                remaining = [i for c in chunks[chunk_no:] for i, _ in c]
                logger.info("Job %s cancelled; %d %s not submitted", job.job_id, len(remaining), label)
                return remaining

            self.tracker.set_operation(
                job.job_id,
                f"Creating {label} {done + 1}-{done + len(chunk)} of {total} (batch {chunk_no + 1}/{len(chunks)})",
            )
            try:
                responses = await self.client.batch_execute([r for _, r in chunk])
            except (RemoteApiError, RemoteUnavailableError) as e:
                logger.warning("Job %s: %s batch %d failed as a whole: %s", job.job_id, label, chunk_no + 1, e)
                on_chunk(chunk, None, e)
            else:
                on_chunk(chunk, responses, None)
            done += len(chunk)
        return []

    async def run_adset_phase(self, job: FanOutJob, source: SourceConfig, targets: List[int], pacer: _Pacer) -> AdSetPhaseResult:
        result = AdSetPhaseResult(source=source, targets=list(targets))
        for i in targets:
            if i in job.ad_set_ids:
                result.ad_set_ids[i] = job.ad_set_ids[i]

        to_create = [i for i in targets if i not in result.ad_set_ids]
        if not to_create:
            return result
        if len(to_create) < len(targets):
            logger.info("Job %s: reusing %d existing ad sets", job.job_id, len(targets) - len(to_create))

        params = self.build_adset_params(job, source, to_create)
        path = self.client.adsets_path()
        requests_ = [(i, BatchRequest("POST", path, params[i].to_form())) for i in to_create]

        def on_chunk(chunk, responses, exc) -> None:
            created: Dict[int, str] = {}
            errors: List[ItemResult] = []
            if exc is not None:
                msg, code = _batch_failure(exc)
                errors = [_error_result(i, f"Ad set: {msg}", code=code) for i, _ in chunk]
            else:
                for (i, _), resp in zip(chunk, responses):
                    if resp.ok and resp.entity_id:
                        created[i] = resp.entity_id
                    else:
                        errors.append(_error_result(i, f"Ad set: {resp.error_message}", code=resp.error_code))
            result.ad_set_ids.update(created)
            for e in errors:
                result.errors[e.index] = e
            if created:
                self.tracker.record_ad_sets(job.job_id, created)
            if errors:
                self.tracker.record_results(job.job_id, errors)

        remaining = await self._submit_chunks(job, requests_, label="ad sets", pacer=pacer, on_chunk=on_chunk)
        if remaining:
            result.cancelled = True
            cancelled = [_error_result(i, CANCELLED_MESSAGE, code="cancelled") for i in remaining]
            for e in cancelled:
                result.errors[e.index] = e
            self.tracker.record_results(job.job_id, cancelled)
        return result

    async def run_ad_phase(self, job: FanOutJob, phase: AdSetPhaseResult, pacer: _Pacer) -> AdPhaseResult:
        result = AdPhaseResult()
        pairs = [(i, phase.ad_set_ids[i]) for i in phase.targets if i in phase.ad_set_ids]
        if not pairs:
            return result
        if phase.cancelled:
            cancelled = [_error_result(i, CANCELLED_MESSAGE, code="cancelled", ad_set_id=a) for i, a in pairs]
            for e in cancelled:
                result.errors[e.index] = e
            self.tracker.record_results(job.job_id, cancelled)
            result.cancelled = True
            return result

        ad_set_for = dict(pairs)
        path = self.client.ads_path()
        requests_ = [
            (
                i,
                BatchRequest(
                    "POST",
                    path,
                    sibling_ad(
                        f"{phase.source.name} - Ad Copy {i + 1}",
                        ad_set_id,
                        job.post_id,
                        self.credentials.page_id,
                    ).to_form(),
                ),
            )
            for i, ad_set_id in pairs
        ]

        def on_chunk(chunk, responses, exc) -> None:
            out: List[ItemResult] = []
            if exc is not None:
                msg, code = _batch_failure(exc)
                out = [_error_result(i, f"Ad: {msg}", code=code, ad_set_id=ad_set_for[i]) for i, _ in chunk]
            else:
                for (i, _), resp in zip(chunk, responses):
                    if resp.ok and resp.entity_id:
                        out.append(ItemResult(index=i, status="success", ad_set_id=ad_set_for[i], ad_id=resp.entity_id))
                    else:
                        out.append(
                            _error_result(i, f"Ad: {resp.error_message}", code=resp.error_code, ad_set_id=ad_set_for[i])
                        )
            for r in out:
                (result.successes if r.status == "success" else result.errors)[r.index] = r
            self.tracker.record_results(job.job_id, out)

        remaining = await self._submit_chunks(job, requests_, label="ads", pacer=pacer, on_chunk=on_chunk)
        if remaining:
            result.cancelled = True
            cancelled = [_error_result(i, CANCELLED_MESSAGE, code="cancelled", ad_set_id=ad_set_for[i]) for i in remaining]
            for e in cancelled:
                result.errors[e.index] = e
            self.tracker.record_results(job.job_id, cancelled)
        return result

    # -----------------------------
    # Run
    # -----------------------------

    @staticmethod
    def pending_indices(job: FanOutJob) -> List[int]:
        """Indices without a successful result: everything on a fresh run, the failures on a retry."""
        succeeded = {r.index for r in job.results if r.status == "success"}
        return [i for i in job.indices if i not in succeeded]

    @staticmethod
    def terminal_status(job: FanOutJob) -> JobStatus:
        succeeded = {r.index for r in job.results if r.status == "success"}
        ok = sum(1 for i in job.indices if i in succeeded)
        if ok == len(job.indices):
            return JobStatus.completed
        if ok == 0:
            return JobStatus.failed
        return JobStatus.partial

    async def execute(self, job: FanOutJob) -> FanOutJob:
        """Run a claimed job to a terminal status."""
        tracker = self.tracker
        tracker.attach(job)
        targets = self.pending_indices(job)
        # Errors from an earlier run are replaced by this run's outcome.
        target_set = set(targets)
        job.results = [r for r in job.results if r.index not in target_set]
        job.error = None
        job.finished_at = None

        try:
            if tracker.is_cancel_requested(job.job_id):
                return tracker.finish(
                    job.job_id, self.terminal_status(job), error="Cancelled before start", operation="Cancelled"
                )

            tracker.set_operation(job.job_id, "Fetching source campaign configuration")
            try:
                source = await self.fetch_source(job.source_campaign_id)
            except (RemoteApiError, RemoteUnavailableError, ValueError) as e:
                logger.warning("Job %s: source campaign %s unavailable: %s", job.job_id, job.source_campaign_id, e)
                return tracker.finish(job.job_id, JobStatus.failed, error=f"Could not read source campaign: {e}")

            try:
                self.build_adset_params(job, source, targets[:1])
                if job.mode == "campaign_copy":
                    self.build_campaign_copy(job, source)
            except ValueError as e:
                return tracker.finish(job.job_id, JobStatus.failed, error=f"Invalid sibling configuration: {e}")
            if source.uses_campaign_budget and job.custom_budgets:
                logger.warning(
                    "Source campaign %s uses a campaign budget; per-sibling budgets for job %s are ignored",
                    source.campaign_id,
                    job.job_id,
                )

            try:
                await self.ensure_target_campaign(job, source)
            except (RemoteApiError, RemoteUnavailableError) as e:
                logger.warning("Job %s: campaign copy failed: %s", job.job_id, e)
                return tracker.finish(job.job_id, JobStatus.failed, error=f"Could not create campaign copy: {e}")

            pacer = _Pacer(self.settings.batch_delay_s, self._sleep)
            adsets = await self.run_adset_phase(job, source, targets, pacer)
            await self.run_ad_phase(job, adsets, pacer)

            status = self.terminal_status(job)
            return tracker.finish(job.job_id, status)
        except Exception as e:
            logger.exception("Job %s crashed", job.job_id)
            tracker.finish(job.job_id, JobStatus.failed, error=str(e))
            raise


# -----------------------------
# Background execution
# -----------------------------

class JobRunner:
    """Runs claimed jobs off the server's event loop; at most one run per job id in this process.

    `run_blocking` drives the async run on a loop of its own; the HTTP layer
    calls it from a threadpool thread.
    """

    def __init__(self) -> None:
        self._active: Set[str] = set()
        self._lock = threading.Lock()

    def is_running(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._active

    async def run(self, orchestrator: FanOutOrchestrator, job: FanOutJob) -> FanOutJob:
        with self._lock:
            if job.job_id in self._active:
                raise JobConflictError(f"Job {job.job_id} is already running.", job_id=job.job_id, status="running")
            self._active.add(job.job_id)
        try:
            return await orchestrator.execute(job)
        finally:
            with self._lock:
                self._active.discard(job.job_id)

    def run_blocking(self, orchestrator: FanOutOrchestrator, job: FanOutJob) -> FanOutJob:
        return asyncio.run(self.run(orchestrator, job))
