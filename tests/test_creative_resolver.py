import asyncio
from datetime import datetime, timezone

import pytest

from config import Settings
from creative_resolver import CreativeResolver, PostResolution
from errors import NotReadyError, RemoteApiError, RemoteUnavailableError
from fakes import FakeGraphClient

NOW = 1_700_000_000


def _graph_time(ts):
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S+0000")


def _resolver(client, fake_sleep, **settings_kw):
    settings = Settings(resolver_initial_wait_s=0, resolver_delays_s=(0, 0, 0, 0), **settings_kw)
    return CreativeResolver(client, page_id="page_1", settings=settings, sleep=fake_sleep, clock=lambda: NOW)


def _ad_lookups(client, ad_id):
    return [c for c in client.calls if c[0] == "get_entity" and c[1] == ad_id]


def test_post_id_appears_on_third_attempt(fake_sleep):
    client = FakeGraphClient()
    client.entities["ad_1"] = [
        {"id": "ad_1"},
        {"id": "ad_1"},
        {"id": "ad_1", "creative": {"id": "c1", "effective_object_story_id": "page_1_post_5"}},
    ]
    resolver = _resolver(client, fake_sleep)

    assert asyncio.run(resolver.resolve_post_id("ad_1")) is None
    assert asyncio.run(resolver.resolve_post_id("ad_1")) is None
    assert asyncio.run(resolver.resolve_post_id("ad_1")) == "page_1_post_5"
    assert len(_ad_lookups(client, "ad_1")) == 3


def test_retry_returns_once_the_post_id_exists(fake_sleep):
    client = FakeGraphClient()
    client.entities["ad_1"] = [
        {"id": "ad_1"},
        {"id": "ad_1"},
        {"id": "ad_1", "creative": {"effective_object_story_id": "page_1_post_5"}},
    ]
    resolution = asyncio.run(_resolver(client, fake_sleep).resolve_with_retry("ad_1"))

    assert resolution == PostResolution(post_id="page_1_post_5", source="creative")
    assert not resolution.best_effort
    assert len(_ad_lookups(client, "ad_1")) == 3


def test_creative_without_expanded_field_is_fetched_by_id(fake_sleep):
    client = FakeGraphClient()
    client.entities["ad_2"] = {"creative": {"id": "c2"}}
    client.entities["c2"] = {"object_story_id": "page_1_post_7"}

    resolution = asyncio.run(_resolver(client, fake_sleep).resolve("ad_2"))

    assert resolution.post_id == "page_1_post_7"
    assert resolution.source == "creative"


def test_page_post_fallback_is_flagged_best_effort(fake_sleep):
    client = FakeGraphClient()
    client.page_posts = [
        {"id": "page_1_old", "created_time": _graph_time(NOW - 3600)},
        {"id": "page_1_recent", "created_time": _graph_time(NOW - 30)},
        {"id": "page_1_earlier", "created_time": _graph_time(NOW - 300)},
    ]

    resolution = asyncio.run(_resolver(client, fake_sleep).resolve("ad_x"))

    assert resolution.post_id == "page_1_recent"
    assert resolution.source == "page_fallback"
    assert resolution.best_effort


def test_exhausted_retries_return_none_after_backoff(fake_sleep, sleeps):
    client = FakeGraphClient()
    resolver = _resolver(client, fake_sleep)

    result = asyncio.run(resolver.resolve_with_retry("ad_missing", initial_wait_s=8, delays_s=(0, 3, 4)))

    assert result is None
    assert sleeps == [8, 3, 4]
    assert len(_ad_lookups(client, "ad_missing")) == 3


def test_require_post_id_raises_not_ready(fake_sleep):
    with pytest.raises(NotReadyError):
        asyncio.run(_resolver(FakeGraphClient(), fake_sleep).require_post_id("ad_missing"))


def test_transport_errors_are_retried(fake_sleep):
    client = FakeGraphClient()
    client.entities["ad_3"] = [
        RemoteUnavailableError("timed out"),
        {"creative": {"effective_object_story_id": "page_1_post_3"}},
    ]
    resolution = asyncio.run(_resolver(client, fake_sleep).resolve_with_retry("ad_3"))
    assert resolution.post_id == "page_1_post_3"


def test_verify_post(fake_sleep):
    client = FakeGraphClient()
    client.entities["page_1_post_1"] = {"id": "page_1_post_1", "message": "hello"}
    client.entities["bogus"] = RemoteApiError("Unsupported get request", code=100, http_status=400)
    resolver = _resolver(client, fake_sleep)

    assert asyncio.run(resolver.verify_post("page_1_post_1"))["message"] == "hello"
    assert asyncio.run(resolver.verify_post("bogus")) is None
