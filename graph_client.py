"""Thin async transport for the Meta Graph / Marketing API.

Every instance is bound to one explicit `Credentials` value. Methods accept
wire-shaped parameter models (see `wire_compiler`) and return ids or raw
payload dicts. Blocking `requests` calls run in a worker thread so the
calling task suspends while the round trip is in flight.

Errors:
  - non-2xx / `error` in body  -> RemoteApiError
  - timeout / connection error -> RemoteUnavailableError
  - upload_image / upload_video return None instead of raising
No retries happen here; retry policy belongs to the resolver/orchestrator.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlencode

import requests

from config import Credentials, Settings
from errors import RemoteApiError, RemoteUnavailableError
from wire_compiler import AdParams, AdSetParams, CampaignParams

logger = logging.getLogger(__name__)

BATCH_ITEM_CAP = 50


@dataclass(frozen=True)
class BatchRequest:
    method: str
    relative_url: str
    body: Dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> Dict[str, Any]:
        item: Dict[str, Any] = {"method": self.method.upper(), "relative_url": self.relative_url.lstrip("/")}
        if self.body:
            item["body"] = urlencode(self.body)
        return item


@dataclass(frozen=True)
class BatchResponse:
    code: int
    body: Dict[str, Any]

    @property
    def ok(self) -> bool:
        return self.code == 200 and "error" not in self.body

    @property
    def entity_id(self) -> Optional[str]:
        v = self.body.get("id")
        return str(v) if v else None

    @property
    def error_message(self) -> Optional[str]:
        if self.ok:
            return None
        err = self.body.get("error")
        if isinstance(err, dict):
            return str(err.get("error_user_msg") or err.get("message") or "Unknown batch item error")
        if self.code == 0:
            return "No response for batch item"
        return f"Batch item failed with code {self.code}"

    @property
    def error_code(self) -> Any:
        err = self.body.get("error")
        if isinstance(err, dict):
            return err.get("code")
        return self.code or None

    @staticmethod
    def from_wire(item: Any) -> "BatchResponse":
        # The platform returns null for items it did not process.
        if not isinstance(item, dict):
            return BatchResponse(code=0, body={})
        raw_body = item.get("body")
        body: Dict[str, Any]
        if isinstance(raw_body, str) and raw_body:
            try:
                parsed = json.loads(raw_body)
                body = parsed if isinstance(parsed, dict) else {"data": parsed}
            except json.JSONDecodeError:
                body = {"raw": raw_body}
        elif isinstance(raw_body, dict):
            body = raw_body
        else:
            body = {}
        return BatchResponse(code=int(item.get("code") or 0), body=body)


class GraphClient:
    def __init__(self, credentials: Credentials, settings: Optional[Settings] = None, *, session: Optional[requests.Session] = None):
        self.credentials = credentials
        self.settings = settings or Settings()
        self.session = session or requests.Session()
        self.base_url = f"https://graph.facebook.com/{self.settings.api_version}"
        self.video_base_url = f"https://graph-video.facebook.com/{self.settings.api_version}"

    # -----------------------------
    # Transport
    # -----------------------------

    def _auth_fields(self) -> Dict[str, str]:
        out = {"access_token": self.credentials.bearer_token}
        if self.credentials.app_secret:
            out["appsecret_proof"] = hmac.new(
                self.credentials.app_secret.encode("utf-8"),
                self.credentials.bearer_token.encode("utf-8"),
                hashlib.sha256,
            ).hexdigest()
        return out

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        data: Optional[dict] = None,
        files: Optional[dict] = None,
        timeout: Optional[float] = None,
        use_video: bool = False,
    ) -> Any:
        base = self.video_base_url if use_video else self.base_url
        url = base + "/" + path.lstrip("/") if path else base
        params = dict(params or {})
        data = dict(data or {})

        # Graph API accepts access_token as query or form field.
        # GET and multipart uploads send it as query, other writes as form field.
        if method.upper() == "GET" or files is not None:
            params.update(self._auth_fields())
        else:
            data.update(self._auth_fields())

        logger.debug("Graph %s %s", method.upper(), path or "/")
        try:
            resp = self.session.request(
                method=method.upper(),
                url=url,
                params=params,
                data=data or None,
                files=files,
                timeout=timeout or self.settings.timeout_s,
            )
        except requests.Timeout as e:
            raise RemoteUnavailableError(f"Timed out calling Meta API ({method.upper()} {path}): {e}") from e
        except requests.RequestException as e:
            raise RemoteUnavailableError(f"Network error calling Meta API ({method.upper()} {path}): {e}") from e

        # Meta often returns JSON even for errors.
        try:
            payload = resp.json()
        except ValueError:
            payload = {"raw": resp.text}

        if resp.status_code >= 400 or (isinstance(payload, dict) and "error" in payload):
            if not isinstance(payload, dict):
                payload = {"raw": str(payload)}
            raise RemoteApiError.from_payload(payload, http_status=resp.status_code)
        return payload

    async def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        return await asyncio.to_thread(self._request, method, path, **kwargs)

    # -----------------------------
    # Create
    # -----------------------------

    async def create_campaign(self, params: CampaignParams) -> str:
        payload = await self._call("POST", f"/{self.credentials.account_path}/campaigns", data=params.to_form())
        return str(payload["id"])

    async def create_adset(self, params: AdSetParams) -> str:
        payload = await self._call("POST", f"/{self.credentials.account_path}/adsets", data=params.to_form())
        return str(payload["id"])

    async def create_ad(self, params: AdParams) -> str:
        payload = await self._call("POST", f"/{self.credentials.account_path}/ads", data=params.to_form())
        return str(payload["id"])

    # -----------------------------
    # Media (returns None on failure)
    # -----------------------------

    async def upload_image(self, image_bytes: bytes, *, filename: str = "image.jpg") -> Optional[str]:
        """Upload JPEG bytes and return the image_hash, or None if the upload failed."""
        files = {"filename": (filename, image_bytes, "image/jpeg")}
        try:
            payload = await self._call(
                "POST",
                f"/{self.credentials.account_path}/adimages",
                files=files,
                timeout=self.settings.image_timeout_s,
            )
        except (RemoteApiError, RemoteUnavailableError) as e:
            logger.warning("Image upload failed, continuing without image: %s", e)
            return None

        images = payload.get("images") or {}
        if not images:
            logger.warning("Image upload did not return images: %s", payload)
            return None
        first_key = next(iter(images.keys()))
        return (images[first_key] or {}).get("hash") or first_key

    async def upload_video(
        self,
        *,
        video_bytes: Optional[bytes] = None,
        filename: str = "video.mp4",
        file_url: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Optional[str]:
        """Upload a video (bytes or remote file_url) and return the AdVideo id, or None on failure."""
        data: Dict[str, Any] = {}
        files = None
        if name:
            data["name"] = name
        if file_url:
            data["file_url"] = file_url
        elif video_bytes is not None:
            files = {"source": (filename, video_bytes, "video/mp4")}
        else:
            raise ValueError("Provide video_bytes or file_url.")

        try:
            payload = await self._call(
                "POST",
                f"/{self.credentials.account_path}/advideos",
                data=data,
                files=files,
                timeout=self.settings.video_timeout_s,
                use_video=True,
            )
        except (RemoteApiError, RemoteUnavailableError) as e:
            logger.warning("Video upload failed, continuing without video: %s", e)
            return None

        video_id = str(payload.get("id") or "").strip()
        return video_id or None

    # -----------------------------
    # Read
    # -----------------------------

    async def get_entity(self, object_id: str, fields: str) -> dict:
        return await self._call("GET", f"/{object_id}", params={"fields": fields})

    async def list_edge(self, object_id: str, edge: str, *, params: Optional[dict] = None) -> List[dict]:
        payload = await self._call("GET", f"/{object_id}/{edge}", params=params or {})
        data = payload.get("data") or []
        return data if isinstance(data, list) else []

    async def list_video_thumbnails(self, video_id: str, *, limit: int = 10) -> List[dict]:
        """Return available thumbnails for a video (each item typically includes 'uri')."""
        vid = (video_id or "").strip()
        if not vid:
            return []
        return await self.list_edge(
            vid,
            "thumbnails",
            params={"fields": "id,uri,is_preferred,width,height", "limit": str(limit)},
        )

    # -----------------------------
    # Batch
    # -----------------------------

    async def batch_execute(self, requests_: Sequence[BatchRequest]) -> List[BatchResponse]:
        """Submit up to 50 requests through the native batch endpoint.

        Result order matches request order. Chunking larger sets is the caller's job.
        """
        if not requests_:
            return []
        if len(requests_) > BATCH_ITEM_CAP:
            raise ValueError(f"Batch of {len(requests_)} exceeds the platform cap of {BATCH_ITEM_CAP} items.")

        batch = json.dumps([r.to_wire() for r in requests_], separators=(",", ":"))
        payload = await self._call("POST", "", data={"batch": batch, "include_headers": "false"})
        if not isinstance(payload, list):
            raise RemoteApiError(f"Unexpected batch response: {payload!r}")

        out = [BatchResponse.from_wire(item) for item in payload]
        # Pad if the platform returned fewer entries than requested.
        while len(out) < len(requests_):
            out.append(BatchResponse(code=0, body={}))
        return out

    def adsets_path(self) -> str:
        return f"{self.credentials.account_path}/adsets"

    def ads_path(self) -> str:
        return f"{self.credentials.account_path}/ads"
