"""Build the seed campaign -> ad set -> ad in sequence.

Everything is compiled and validated first, so bad input fails before any
remote call. After that each step depends on the id from the previous one;
the first error aborts the build and propagates. Media upload failures are
not errors: the ad is built without that media.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from config import Credentials, Settings
from creative_resolver import CreativeResolver
from errors import RemoteApiError, RemoteUnavailableError
from media_store import PreparedMedia
from wire_compiler import (
    AdCreativeSpec,
    CampaignConfig,
    MediaRefs,
    MediaType,
    TargetingSpec,
    compile_ad,
    compile_adset,
    compile_campaign,
    compile_creative,
)

logger = logging.getLogger(__name__)


class SeedRequest(BaseModel):
    campaign: CampaignConfig
    targeting: TargetingSpec = Field(default_factory=TargetingSpec)
    creative: AdCreativeSpec
    resolve_post_id: bool = False


class SeedResult(BaseModel):
    campaign_id: str
    ad_set_id: str
    ad_id: str
    post_id: Optional[str] = None
    post_id_source: Optional[str] = None
    requires_manual_input: bool = False
    media: Dict[str, Any] = Field(default_factory=dict)


@dataclass
class SeedMedia:
    image: Optional[PreparedMedia] = None
    video: Optional[PreparedMedia] = None
    card_images: List[Optional[PreparedMedia]] = field(default_factory=list)


def _pick_video_thumbnail_uri(thumbnails: List[dict]) -> Optional[str]:
    """Pick the best thumbnail uri from Meta's thumbnail list."""
    for t in thumbnails:
        if t.get("is_preferred") and (t.get("uri") or "").strip():
            return str(t["uri"]).strip()
    for t in thumbnails:
        uri = (t.get("uri") or "").strip()
        if uri:
            return uri
    return None


class SeedCampaignBuilder:
    def __init__(
        self,
        client: Any,
        *,
        credentials: Credentials,
        settings: Optional[Settings] = None,
        resolver: Optional[CreativeResolver] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.credentials = credentials
        self.settings = settings or Settings()
        self.resolver = resolver
        self._sleep = sleep

    async def wait_for_video_thumbnail(self, video_id: str, *, timeout_s: int = 60, poll_s: int = 5) -> Optional[str]:
        """Poll until the platform has generated a thumbnail for the video."""
        attempts = max(1, int(timeout_s) // max(1, int(poll_s)))
        for attempt in range(attempts):
            try:
                uri = _pick_video_thumbnail_uri(await self.client.list_video_thumbnails(video_id))
            except (RemoteApiError, RemoteUnavailableError) as e:
                # Thumbnails may fail while the video is still processing.
                logger.debug("Thumbnail poll %d for video %s failed: %s", attempt + 1, video_id, e)
                uri = None
            if uri:
                return uri
            await self._sleep(poll_s)
        logger.warning("No thumbnail for video %s after %ss", video_id, timeout_s)
        return None

    async def upload_media(self, creative: AdCreativeSpec, media: Optional[SeedMedia]) -> MediaRefs:
        media = media or SeedMedia()
        refs = MediaRefs()

        if creative.media_type == MediaType.video:
            if media.video is not None:
                refs.video_id = await self.client.upload_video(video_bytes=media.video.data, filename=media.video.filename)
            elif creative.video_url:
                refs.video_id = await self.client.upload_video(file_url=creative.video_url)
            if refs.video_id:
                refs.thumbnail_url = await self.wait_for_video_thumbnail(refs.video_id)

        if media.image is not None:
            refs.image_hash = await self.client.upload_image(media.image.data, filename=media.image.filename)

        if creative.media_type == MediaType.carousel:
            for img in media.card_images:
                if img is None:
                    refs.card_image_hashes.append(None)
                    continue
                refs.card_image_hashes.append(await self.client.upload_image(img.data, filename=img.filename))
        return refs

    async def build(self, request: SeedRequest, media: Optional[SeedMedia] = None) -> SeedResult:
        config = request.campaign
        minimum = self.settings.min_budget_minor

        # Compile up front; raises ValidationError before any remote call.
        campaign_params = compile_campaign(config, minimum_minor=minimum)
        adset_params = compile_adset(
            config,
            request.targeting,
            campaign_id="0",
            credentials=self.credentials,
            minimum_minor=minimum,
        )

        campaign_id = await self.client.create_campaign(campaign_params)
        logger.info("Seed campaign created: %s", campaign_id)

        ad_set_id = await self.client.create_adset(adset_params.model_copy(update={"campaign_id": campaign_id}))
        logger.info("Seed ad set created: %s", ad_set_id)

        refs = await self.upload_media(request.creative, media)
        story = compile_creative(request.creative, page_id=self.credentials.page_id, media=refs)
        ad_id = await self.client.create_ad(
            compile_ad(config.ad_name or f"{config.name} - Ad", ad_set_id, story, status=config.status)
        )
        logger.info("Seed ad created: %s", ad_id)

        result = SeedResult(
            campaign_id=campaign_id,
            ad_set_id=ad_set_id,
            ad_id=ad_id,
            media={k: v for k, v in vars(refs).items() if v},
        )

        if request.resolve_post_id and self.resolver is not None:
            resolution = await self.resolver.resolve_with_retry(ad_id)
            if resolution is None:
                result.requires_manual_input = True
            else:
                result.post_id = resolution.post_id
                result.post_id_source = resolution.source
        return result
