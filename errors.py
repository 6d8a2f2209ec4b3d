"""Exception taxonomy shared by the client, compiler, resolver and orchestrator."""

from __future__ import annotations

from typing import Any, Dict, Optional


# -----------------------------
# Input errors (never retried)
# -----------------------------

class ValidationError(ValueError):
    """Malformed or missing input, raised before any remote call."""


class ScheduleError(ValidationError):
    pass


class BudgetError(ValidationError):
    pass


# -----------------------------
# Remote platform errors
# -----------------------------

class RemoteApiError(RuntimeError):
    """The platform rejected a well-formed request.

    `code` / `subcode` / `trace_id` come straight from the Graph error body
    so callers can surface them verbatim.
    """

    def __init__(
        self,
        message: str,
        *,
        code: Any = None,
        http_status: int | None = None,
        subcode: Any = None,
        trace_id: str | None = None,
        error: dict | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.http_status = http_status
        self.subcode = subcode
        self.trace_id = trace_id
        self.error = error or {}

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], *, http_status: int | None = None) -> "RemoteApiError":
        error_obj = payload.get("error") if isinstance(payload, dict) else None
        if not isinstance(error_obj, dict):
            error_obj = {}
        msg = (
            error_obj.get("error_user_msg")
            or error_obj.get("message")
            or (payload.get("raw") if isinstance(payload, dict) else None)
            or "Unknown Meta API error"
        )
        return cls(
            str(msg),
            code=error_obj.get("code"),
            http_status=http_status,
            subcode=error_obj.get("error_subcode"),
            trace_id=error_obj.get("fbtrace_id"),
            error=error_obj,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "http_status": self.http_status,
            "subcode": self.subcode,
            "trace_id": self.trace_id,
        }

    def is_rate_limit(self) -> bool:
        # Graph throttling codes: 4 (app), 17 (user), 32 (page), 613 (custom), 80004 (ads management)
        if self.code in (4, 17, 32, 613, 80004):
            return True
        return any(p in self.message.lower() for p in ("too many calls", "rate limit", "request limit"))


class RemoteUnavailableError(RuntimeError):
    """Transport failure or timeout: the request may or may not have reached the platform."""


class NotReadyError(RuntimeError):
    """The creative's post id is not available yet; try again later."""


# -----------------------------
# Job errors
# -----------------------------

class JobNotFoundError(KeyError):
    def __init__(self, job_id: str):
        super().__init__(job_id)
        self.job_id = job_id

    def __str__(self) -> str:
        return f"Unknown job: {self.job_id}"


class JobConflictError(RuntimeError):
    """A job is already running, or is not in a state that allows the requested transition."""

    def __init__(self, message: str, *, job_id: Optional[str] = None, status: Optional[str] = None):
        super().__init__(message)
        self.job_id = job_id
        self.status = status
