"""Resolve the durable post id behind a seed ad's creative.

The platform renders the creative asynchronously, so the post id is often
missing for several seconds after the ad is created. `resolve_post_id`
returns None for "not yet"; `resolve_with_retry` wraps it in a bounded
backoff and gives up with None, at which point callers ask for manual input.

Lookup order:
  1. ad -> creative{effective_object_story_id}; if the expanded field is empty,
     fetch the creative by id.
  2. Best-effort fallback: the page's most recent post from the last 15 minutes.
     This can pick an unrelated post if the page published organically in that
     window. Results from this tier are flagged `source="page_fallback"`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Sequence

from config import Settings
from errors import NotReadyError, RemoteApiError, RemoteUnavailableError

logger = logging.getLogger(__name__)

AD_CREATIVE_FIELDS = "creative{id,effective_object_story_id,object_story_id}"
CREATIVE_FIELDS = "effective_object_story_id,object_story_id"
POST_FIELDS = "id,message,created_time"


@dataclass(frozen=True)
class PostResolution:
    post_id: str
    source: str  # "creative" | "page_fallback"

    @property
    def best_effort(self) -> bool:
        return self.source == "page_fallback"


def _parse_created_time(value: Any) -> Optional[datetime]:
    if not value:
        return None
    s = str(value).strip().replace("Z", "+00:00")
    # Graph returns offsets like +0000
    if len(s) >= 5 and s[-5] in "+-" and s[-3] != ":":
        s = s[:-2] + ":" + s[-2:]
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class CreativeResolver:
    def __init__(
        self,
        client: Any,
        *,
        page_id: str,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.page_id = page_id
        self.settings = settings or Settings()
        self._sleep = sleep
        self._clock = clock

    async def _from_creative(self, ad_id: str) -> Optional[str]:
        ad = await self.client.get_entity(ad_id, AD_CREATIVE_FIELDS)
        creative = ad.get("creative") or {}
        post_id = creative.get("effective_object_story_id")
        if post_id:
            return str(post_id)

        creative_id = creative.get("id")
        if not creative_id:
            return None
        creative = await self.client.get_entity(str(creative_id), CREATIVE_FIELDS)
        post_id = creative.get("effective_object_story_id") or creative.get("object_story_id")
        return str(post_id) if post_id else None

    async def _from_recent_page_posts(self) -> Optional[str]:
        window = int(self.settings.fallback_window_s)
        now = self._clock()
        try:
            posts = await self.client.list_edge(
                self.page_id,
                "posts",
                params={"fields": "id,created_time", "since": str(int(now - window)), "limit": "10"},
            )
        except RemoteApiError as e:
            logger.warning("Page post fallback unavailable for page %s: %s", self.page_id, e)
            return None

        best_id: Optional[str] = None
        best_ts: Optional[datetime] = None
        for post in posts:
            created = _parse_created_time(post.get("created_time"))
            if not post.get("id") or created is None:
                continue
            if now - created.timestamp() > window:
                continue
            if best_ts is None or created > best_ts:
                best_id, best_ts = str(post["id"]), created
        return best_id

    async def resolve(self, ad_id: str) -> Optional[PostResolution]:
        post_id = await self._from_creative(ad_id)
        if post_id:
            return PostResolution(post_id=post_id, source="creative")

        post_id = await self._from_recent_page_posts()
        if post_id:
            logger.warning(
                "Post id for ad %s taken from page %s recent posts (best-effort): %s",
                ad_id,
                self.page_id,
                post_id,
            )
            return PostResolution(post_id=post_id, source="page_fallback")
        return None

    async def resolve_post_id(self, ad_id: str) -> Optional[str]:
        resolution = await self.resolve(ad_id)
        return resolution.post_id if resolution else None

    async def require_post_id(self, ad_id: str) -> PostResolution:
        resolution = await self.resolve(ad_id)
        if resolution is None:
            raise NotReadyError(f"Post id for ad {ad_id} is not available yet.")
        return resolution

    async def resolve_with_retry(
        self,
        ad_id: str,
        *,
        initial_wait_s: Optional[float] = None,
        delays_s: Optional[Sequence[float]] = None,
    ) -> Optional[PostResolution]:
        """Retry `resolve` with backoff. Returns None once the retry budget is spent."""
        initial = self.settings.resolver_initial_wait_s if initial_wait_s is None else initial_wait_s
        delays = self.settings.resolver_delays_s if delays_s is None else delays_s

        if initial > 0:
            await self._sleep(initial)

        for attempt, delay in enumerate(delays, start=1):
            if delay > 0:
                await self._sleep(delay)
            try:
                resolution = await self.require_post_id(ad_id)
            except (NotReadyError, RemoteUnavailableError) as e:
                logger.info("Post id attempt %d/%d for ad %s: %s", attempt, len(delays), ad_id, e)
                continue
            logger.info("Resolved post id for ad %s on attempt %d: %s", ad_id, attempt, resolution.post_id)
            return resolution

        logger.warning("Post id for ad %s not resolved after %d attempts; manual input required", ad_id, len(delays))
        return None

    async def verify_post(self, post_id: str) -> Optional[dict]:
        """Return the post's id/message/created_time, or None if the platform does not know it."""
        try:
            return await self.client.get_entity(post_id, POST_FIELDS)
        except RemoteApiError as e:
            logger.info("Post %s could not be verified: %s", post_id, e)
            return None
