"""fanout.api

FastAPI service for the seed + fan-out flow.

Endpoints
---------
- GET  /                         -> basic root info
- GET  /health                   -> basic health check
- POST /seed                     -> JSON: build the seed campaign/ad set/ad
- POST /seed-multipart           -> multipart: plan JSON + optional image/video file
- GET  /post-id/{ad_id}          -> resolve the seed ad's post id (retries, then manual input)
- GET  /verify-post/{post_id}    -> check a manually entered post id
- POST /duplicate                -> start a fan-out job, returns job_id immediately
- POST /multiply                 -> copy the source campaign N times, one fan-out job per copy
- GET  /progress/{job_id}        -> job snapshot (poll this)
- POST /duplicate/{job_id}/cancel -> stop submitting further batches
- POST /duplicate/{job_id}/retry  -> re-run only the failed indices
- GET  /jobs                     -> recent jobs

Optional API Key
----------------
If you set SERVICE_API_KEY in the environment, requests must include:
  X-API-Key: <SERVICE_API_KEY>

Credentials
-----------
CREDENTIAL_SOURCE=env (default) uses META_ACCESS_TOKEN / META_AD_ACCOUNT_ID /
META_PAGE_ID / META_PIXEL_ID. CREDENTIAL_SOURCE=db looks the caller up by the
X-User-Id header in the ad_credentials table.

Execution
---------
JOB_EXECUTION=inline (default) runs fan-out jobs as background tasks in this
process. JOB_EXECUTION=worker leaves them pending for `worker.py`, which needs
JOB_STORE_SOURCE=db so both processes share state.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import BackgroundTasks, FastAPI, File, Form, Header, HTTPException, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from config import Credentials, Settings
from creative_resolver import CreativeResolver
from errors import (
    JobConflictError,
    JobNotFoundError,
    NotReadyError,
    RemoteApiError,
    RemoteUnavailableError,
    ValidationError,
)
from fanout import FanOutOrchestrator, JobRunner, normalize_custom_budgets
from graph_client import GraphClient
from media_store import MIN_MEDIA_BYTES, prepare_image, prepare_video
from progress import ProgressTracker
from seed_builder import SeedCampaignBuilder, SeedMedia, SeedRequest
from state_store import FanOutJob, build_job_store
from token_store import CredentialError, build_credential_provider
from wire_compiler import TargetingSpec, compile_targeting

logger = logging.getLogger(__name__)

app = FastAPI(title="Fan-out Orchestrator API", version="1.0.0")

RUNNER = JobRunner()
_STORE: Any = None


class DuplicateRequest(BaseModel):
    """Request body for /duplicate.

    {
      "campaign_id": "<seed campaign id>",
      "post_id": "<page_id>_<post_id>",
      "count": 49,
      "custom_budgets": [100, 150, ...]   # minor units, optional
    }
    """

    campaign_id: str = Field(min_length=1)
    post_id: str = Field(min_length=1)
    count: int = Field(default=49, ge=1)
    custom_budgets: Optional[List[int]] = Field(
        default=None,
        description="Per-sibling daily budgets in minor units. Short lists are padded with the default, long ones truncated.",
    )
    targeting_mode: Literal["default", "source", "custom"] = "default"
    targeting: Optional[TargetingSpec] = None


class MultiplyRequest(DuplicateRequest):
    """/multiply body: a /duplicate body plus how many campaign copies to create."""

    copies: int = Field(default=1, ge=1)


# -----------------------------
# Wiring (module-level so tests can swap them)
# -----------------------------

def get_settings() -> Settings:
    return Settings.from_env()


def get_store() -> Any:
    global _STORE
    if _STORE is None:
        s = get_settings()
        _STORE = build_job_store(s.job_db_path, source=s.job_store_source, database_url=s.database_url or "")
    return _STORE


def get_credentials(user_id: Optional[str]) -> Credentials:
    return build_credential_provider().get(user_id)


def build_client(credentials: Credentials, settings: Settings) -> Any:
    return GraphClient(credentials, settings)


def build_resolver(client: Any, credentials: Credentials, settings: Settings) -> CreativeResolver:
    return CreativeResolver(client, page_id=credentials.page_id, settings=settings)


def _require_api_key(x_api_key: Optional[str], settings: Settings) -> None:
    expected = (settings.service_api_key or "").strip()
    if not expected:
        return
    if not x_api_key or x_api_key.strip() != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


def _credentials_or_500(user_id: Optional[str]) -> Credentials:
    try:
        return get_credentials(user_id)
    except (CredentialError, ValueError) as e:
        raise HTTPException(status_code=500, detail=f"Server misconfigured: {e}")


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, PydanticValidationError):
        return HTTPException(status_code=422, detail=jsonable_encoder(e.errors()))
    if isinstance(e, (ValidationError, ValueError)):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, RemoteApiError):
        return HTTPException(
            status_code=502,
            detail={
                "message": str(e),
                "http_status": e.http_status,
                "meta_error": e.error,
            },
        )
    if isinstance(e, RemoteUnavailableError):
        return HTTPException(status_code=503, detail=str(e))
    if isinstance(e, JobNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, JobConflictError):
        return HTTPException(status_code=409, detail={"message": str(e), "status": e.status})
    logger.exception("Unhandled error")
    return HTTPException(status_code=500, detail=str(e))


def _run_job(orchestrator: FanOutOrchestrator, job: FanOutJob) -> None:
    """
    Background task: run a claimed job to a terminal status.

    Plain def: Starlette runs it in the threadpool, off the event loop that
    serves /progress polls.
    """
    try:
        RUNNER.run_blocking(orchestrator, job)
    except JobConflictError as e:
        logger.warning("Skipped background run: %s", e)
    except Exception:
        # execute() already recorded the job as failed.
        logger.exception("Background run for job %s crashed", job.job_id)


def _validate_fanout(req: DuplicateRequest, settings: Settings) -> Optional[Dict[str, Any]]:
    """Checks count and budgets; returns the compiled custom targeting, if any."""
    if req.count > settings.max_count:
        raise ValidationError(f"count must be <= {settings.max_count}")
    normalize_custom_budgets(
        req.custom_budgets,
        req.count,
        default_minor=settings.default_budget_minor,
        minimum_minor=settings.min_budget_minor,
    )
    if req.targeting_mode != "custom":
        return None
    if req.targeting is None:
        raise ValidationError("targeting_mode=custom requires targeting.")
    # Special-category restrictions are applied against the source campaign at run time.
    return compile_targeting(req.targeting)


def _dispatch(
    job: FanOutJob,
    tracker: ProgressTracker,
    credentials: Credentials,
    settings: Settings,
    background_tasks: BackgroundTasks,
) -> None:
    """Claim and schedule a pending job in this process (JOB_EXECUTION=inline)."""
    if settings.job_execution != "inline":
        return
    orchestrator = FanOutOrchestrator(
        build_client(credentials, settings),
        tracker,
        credentials=credentials,
        settings=settings,
    )
    try:
        claimed = orchestrator.claim(job.job_id)
    except Exception as e:
        raise _http_error(e) from e
    background_tasks.add_task(_run_job, orchestrator, claimed)


# -----------------------------
# Routes
# -----------------------------

@app.get("/")
def root() -> JSONResponse:
    return JSONResponse({"ok": True, "docs": "/docs", "health": "/health"})


@app.get("/health")
def health() -> Dict[str, Any]:
    return {"ok": True}


@app.post("/seed")
async def seed(
    req: SeedRequest,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> Dict[str, Any]:
    settings = get_settings()
    _require_api_key(x_api_key, settings)
    credentials = _credentials_or_500(x_user_id)

    client = build_client(credentials, settings)
    builder = SeedCampaignBuilder(
        client,
        credentials=credentials,
        settings=settings,
        resolver=build_resolver(client, credentials, settings),
    )
    try:
        result = await builder.build(req)
    except Exception as e:
        raise _http_error(e) from e
    return {"ok": True, "result": result.model_dump()}


@app.post("/seed-multipart")
async def seed_multipart(
    plan: str = Form(..., description="SeedRequest JSON as a string"),
    image_file: UploadFile | None = File(None, description="Image file (jpg/png/etc)"),
    video_file: UploadFile | None = File(None, description="Video file (mp4)"),
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> Dict[str, Any]:
    """Multipart variant of /seed: `plan` text field plus optional media file fields."""
    settings = get_settings()
    _require_api_key(x_api_key, settings)
    credentials = _credentials_or_500(x_user_id)

    debug: Dict[str, Any] = {}
    try:
        req = SeedRequest.model_validate(json.loads(plan))

        media = SeedMedia()
        if image_file is not None:
            raw = await image_file.read()
            debug["image_filename"] = image_file.filename
            debug["image_size_bytes"] = len(raw or b"")
            if not raw or len(raw) < MIN_MEDIA_BYTES:
                raise HTTPException(
                    status_code=422,
                    detail={"message": "Uploaded image_file is empty or too small.", **debug},
                )
            media.image = prepare_image(raw, filename=image_file.filename or "image.jpg")
            debug["jpeg_size_bytes"] = len(media.image.data)
        if video_file is not None:
            raw = await video_file.read()
            debug["video_filename"] = video_file.filename
            debug["video_size_bytes"] = len(raw or b"")
            media.video = prepare_video(raw, filename=video_file.filename or "video.mp4")

        client = build_client(credentials, settings)
        builder = SeedCampaignBuilder(
            client,
            credentials=credentials,
            settings=settings,
            resolver=build_resolver(client, credentials, settings),
        )
        result = await builder.build(req, media)
        return {"ok": True, "result": result.model_dump(), "debug": debug}

    except json.JSONDecodeError as e:
        raise HTTPException(status_code=422, detail=f"Invalid JSON in form field 'plan': {e}")
    except Exception as e:
        raise _http_error(e) from e


@app.get("/post-id/{ad_id}")
async def post_id(
    ad_id: str,
    wait: bool = True,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> Dict[str, Any]:
    """Resolve the post id behind an ad. `wait=false` makes a single attempt."""
    settings = get_settings()
    _require_api_key(x_api_key, settings)
    credentials = _credentials_or_500(x_user_id)
    resolver = build_resolver(build_client(credentials, settings), credentials, settings)

    try:
        if wait:
            resolution = await resolver.resolve_with_retry(ad_id)
        else:
            resolution = await resolver.require_post_id(ad_id)
    except NotReadyError:
        resolution = None
    except Exception as e:
        raise _http_error(e) from e

    if resolution is None:
        return {
            "ok": False,
            "requires_manual_input": True,
            "error": "Post id is not available yet. Enter it manually or try again later.",
        }
    return {
        "ok": True,
        "post_id": resolution.post_id,
        "source": resolution.source,
        "best_effort": resolution.best_effort,
    }


@app.get("/verify-post/{post_id}")
async def verify_post(
    post_id: str,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> Dict[str, Any]:
    settings = get_settings()
    _require_api_key(x_api_key, settings)
    credentials = _credentials_or_500(x_user_id)
    resolver = build_resolver(build_client(credentials, settings), credentials, settings)
    try:
        post = await resolver.verify_post(post_id)
    except Exception as e:
        raise _http_error(e) from e
    return {"ok": post is not None, "post_id": post_id, "post": post}


@app.post("/duplicate")
def duplicate(
    req: DuplicateRequest,
    background_tasks: BackgroundTasks,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> Dict[str, Any]:
    settings = get_settings()
    _require_api_key(x_api_key, settings)

    try:
        targeting = _validate_fanout(req, settings)
    except Exception as e:
        raise _http_error(e) from e

    credentials = _credentials_or_500(x_user_id)
    tracker = ProgressTracker(get_store())
    job = tracker.create(
        source_campaign_id=req.campaign_id,
        post_id=req.post_id,
        requested_count=req.count,
        custom_budgets=req.custom_budgets,
        targeting_mode=req.targeting_mode,
        targeting=targeting,
        user_id=x_user_id,
    )
    _dispatch(job, tracker, credentials, settings, background_tasks)

    return {"ok": True, "job_id": job.job_id, "status": "in_progress", "total": req.count}


@app.post("/multiply")
def multiply(
    req: MultiplyRequest,
    background_tasks: BackgroundTasks,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> Dict[str, Any]:
    """
    Create `copies` new campaigns from the source campaign's settings, each
    holding `count` ad set + ad copies of the post. One job per campaign copy;
    poll each with /progress/{job_id}.
    """
    settings = get_settings()
    _require_api_key(x_api_key, settings)

    try:
        if req.copies > settings.max_copies:
            raise ValidationError(f"copies must be <= {settings.max_copies}")
        targeting = _validate_fanout(req, settings)
    except Exception as e:
        raise _http_error(e) from e

    credentials = _credentials_or_500(x_user_id)
    tracker = ProgressTracker(get_store())
    job_ids: List[str] = []
    for n in range(1, req.copies + 1):
        job = tracker.create(
            source_campaign_id=req.campaign_id,
            post_id=req.post_id,
            requested_count=req.count,
            custom_budgets=req.custom_budgets,
            targeting_mode=req.targeting_mode,
            targeting=targeting,
            user_id=x_user_id,
            mode="campaign_copy",
            copy_number=n,
        )
        _dispatch(job, tracker, credentials, settings, background_tasks)
        job_ids.append(job.job_id)

    return {"ok": True, "job_ids": job_ids, "status": "in_progress", "copies": req.copies, "total": req.count}


@app.get("/progress/{job_id}")
def progress(
    job_id: str,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> Dict[str, Any]:
    settings = get_settings()
    _require_api_key(x_api_key, settings)
    try:
        return ProgressTracker(get_store()).snapshot(job_id)
    except Exception as e:
        raise _http_error(e) from e


@app.post("/duplicate/{job_id}/cancel")
def cancel(
    job_id: str,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> Dict[str, Any]:
    """Stop submitting further batches. Already submitted batches still complete."""
    settings = get_settings()
    _require_api_key(x_api_key, settings)
    tracker = ProgressTracker(get_store())
    try:
        tracker.request_cancel(job_id)
        return tracker.snapshot(job_id)
    except Exception as e:
        raise _http_error(e) from e


@app.post("/duplicate/{job_id}/retry")
def retry(
    job_id: str,
    background_tasks: BackgroundTasks,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> Dict[str, Any]:
    """Re-run the failed indices of a partial/failed job in this process."""
    settings = get_settings()
    _require_api_key(x_api_key, settings)
    tracker = ProgressTracker(get_store())

    try:
        existing = tracker.get_status(job_id)
        credentials = _credentials_or_500(x_user_id or existing.user_id)
        orchestrator = FanOutOrchestrator(
            build_client(credentials, settings),
            tracker,
            credentials=credentials,
            settings=settings,
        )
        claimed = orchestrator.claim(job_id, retry=True)
    except Exception as e:
        raise _http_error(e) from e

    retrying = FanOutOrchestrator.pending_indices(claimed)
    background_tasks.add_task(_run_job, orchestrator, claimed)
    return {"ok": True, "job_id": job_id, "status": "in_progress", "retrying": retrying}


@app.get("/jobs")
def jobs(
    status: Optional[str] = None,
    limit: int = 50,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> Dict[str, Any]:
    """Debug endpoint: list recent fan-out jobs."""
    settings = get_settings()
    _require_api_key(x_api_key, settings)
    try:
        rows = get_store().list_jobs(status=status, limit=int(limit))
    except Exception as e:
        raise _http_error(e) from e
    return {
        "ok": True,
        "jobs": [
            {
                "job_id": j.job_id,
                "status": j.status.value,
                "source_campaign_id": j.source_campaign_id,
                "requested_count": j.requested_count,
                "succeeded": j.success_count,
                "failed": j.error_count,
            }
            for j in rows
        ],
    }
