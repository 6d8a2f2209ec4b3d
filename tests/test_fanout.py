import asyncio
import json
import logging

import pytest

from config import Settings
from errors import BudgetError, JobConflictError, RemoteApiError, RemoteUnavailableError
from fakes import FailingClient, FakeGraphClient, ad_creative, source_payload
from fanout import CANCELLED_MESSAGE, FanOutOrchestrator, JobRunner, normalize_custom_budgets
from state_store import JobStatus


def _orchestrator(client, tracker, credentials, fake_sleep, settings=None):
    return FanOutOrchestrator(
        client,
        tracker,
        credentials=credentials,
        settings=settings or Settings(batch_delay_s=1.0),
        sleep=fake_sleep,
    )


def _run(orchestrator, tracker, count, **kw):
    job = tracker.create(source_campaign_id="cmp_1", post_id="page_1_post_9", requested_count=count, **kw)
    return asyncio.run(orchestrator.run(job.job_id))


def test_fanout_49_with_two_failures_is_partial(tracker, credentials, fake_sleep):
    client = FakeGraphClient(fail_adsets={3, 17})
    job = _run(_orchestrator(client, tracker, credentials, fake_sleep), tracker, 49)

    assert job.status == JobStatus.partial
    assert len(job.results) == 49
    assert [r.index for r in job.results] == list(range(49))
    assert job.success_count == 47
    assert job.failed_indices() == [3, 17]
    assert job.result_for(3).error_message.startswith("Ad set:")

    ad_batches = [b for b in client.batches if b[0] == "ad"]
    submitted_ads = [i for b in ad_batches for i in b[1]]
    assert 3 not in submitted_ads and 17 not in submitted_ads
    assert len(submitted_ads) == 47


def test_all_success_completes_and_ads_reuse_the_post(tracker, credentials, fake_sleep):
    client = FakeGraphClient()
    job = _run(_orchestrator(client, tracker, credentials, fake_sleep), tracker, 5)

    assert job.status == JobStatus.completed
    assert job.error_count == 0
    assert job.result_for(2).ad_set_id == "adset_2"
    assert job.result_for(2).ad_id == "ad_2"

    ad_bodies = [body for kind, _, bodies in client.batches if kind == "ad" for body in bodies]
    assert len(ad_bodies) == 5
    for body in ad_bodies:
        assert ad_creative(body) == {"object_story_id": "page_1_post_9", "page_id": "page_1"}
    assert ad_bodies[0]["name"] == "Seed - Ad Copy 1"


def test_source_fetch_failure_fails_job_without_creating_anything(tracker, credentials, fake_sleep):
    client = FakeGraphClient(fail_source=True)
    job = _run(_orchestrator(client, tracker, credentials, fake_sleep), tracker, 10)

    assert job.status == JobStatus.failed
    assert "Could not read source campaign" in job.error
    assert client.batches == []
    assert job.results == []


def test_source_without_ad_sets_fails_job(tracker, credentials, fake_sleep):
    payload = source_payload()
    payload["adsets"] = {"data": []}
    client = FakeGraphClient(source=payload)
    job = _run(_orchestrator(client, tracker, credentials, fake_sleep), tracker, 3)

    assert job.status == JobStatus.failed
    assert client.batches == []


def test_chunks_respect_size_and_ad_sets_finish_before_ads(tracker, credentials, fake_sleep, sleeps):
    client = FakeGraphClient()
    settings = Settings(chunk_size=10, batch_delay_s=1.0)
    job = _run(_orchestrator(client, tracker, credentials, fake_sleep, settings), tracker, 25)

    assert job.status == JobStatus.completed
    assert [(kind, len(idx)) for kind, idx, _ in client.batches] == [
        ("adset", 10), ("adset", 10), ("adset", 5),
        ("ad", 10), ("ad", 10), ("ad", 5),
    ]
    # fixed delay between consecutive batches, none before the first
    assert sleeps == [1.0] * 5


def test_sibling_ad_sets_copy_source_conversion_settings(tracker, credentials, fake_sleep):
    promoted = {"pixel_id": "pixel_1", "custom_event_type": "PURCHASE"}
    client = FakeGraphClient(source=source_payload(promoted_object=promoted, optimization_goal="OFFSITE_CONVERSIONS"))
    _run(_orchestrator(client, tracker, credentials, fake_sleep), tracker, 2)

    body = client.batches[0][2][0]
    assert json.loads(body["promoted_object"]) == promoted
    assert body["optimization_goal"] == "OFFSITE_CONVERSIONS"
    assert body["billing_event"] == "IMPRESSIONS"
    assert body["campaign_id"] == "cmp_1"
    assert body["name"] == "Seed - AdSet Copy 1"
    assert body["daily_budget"] == "100"


def test_custom_budgets_apply_per_index(tracker, credentials, fake_sleep):
    client = FakeGraphClient()
    _run(_orchestrator(client, tracker, credentials, fake_sleep), tracker, 3, custom_budgets=[250, 500])

    budgets = [body["daily_budget"] for body in client.batches[0][2]]
    assert budgets == ["250", "500", "100"]


def test_campaign_budget_source_omits_sibling_budgets(tracker, credentials, fake_sleep):
    client = FakeGraphClient(source=source_payload(daily_budget=5000))
    _run(_orchestrator(client, tracker, credentials, fake_sleep), tracker, 2)

    for body in client.batches[0][2]:
        assert "daily_budget" not in body


def test_campaign_budget_source_keeps_ad_set_bid_amount(tracker, credentials, fake_sleep):
    payload = source_payload(daily_budget=5000)
    payload["bid_strategy"] = "LOWEST_COST_WITH_BID_CAP"
    payload["adsets"]["data"][0]["bid_amount"] = "250"
    client = FakeGraphClient(source=payload)
    job = _run(_orchestrator(client, tracker, credentials, fake_sleep), tracker, 2)

    assert job.status == JobStatus.completed
    for body in client.batches[0][2]:
        assert body["bid_amount"] == "250"
        assert "daily_budget" not in body
        assert "bid_strategy" not in body


def test_budget_warning_only_when_caller_sent_budgets(tracker, credentials, fake_sleep, caplog):
    client = FakeGraphClient(source=source_payload(daily_budget=5000))
    orchestrator = _orchestrator(client, tracker, credentials, fake_sleep)

    with caplog.at_level(logging.WARNING, logger="fanout"):
        _run(orchestrator, tracker, 2)
    assert "are ignored" not in caplog.text

    with caplog.at_level(logging.WARNING, logger="fanout"):
        _run(orchestrator, tracker, 2, custom_budgets=[300])
    assert caplog.text.count("are ignored") == 1


# -----------------------------
# campaign copies
# -----------------------------

def _run_copy(orchestrator, tracker, count, copy_number=1):
    job = tracker.create(
        source_campaign_id="cmp_1",
        post_id="page_1_post_9",
        requested_count=count,
        mode="campaign_copy",
        copy_number=copy_number,
    )
    return asyncio.run(orchestrator.run(job.job_id))


def test_campaign_copy_creates_campaign_then_siblings_inside_it(tracker, credentials, fake_sleep):
    client = FakeGraphClient(source=source_payload(categories=["HOUSING"]))
    job = _run_copy(_orchestrator(client, tracker, credentials, fake_sleep), tracker, 3, copy_number=2)

    assert job.status == JobStatus.completed
    assert job.target_campaign_id == "cmp_new"

    campaigns = [c[1] for c in client.calls if c[0] == "create_campaign"]
    assert len(campaigns) == 1
    form = campaigns[0].to_form()
    assert form["name"] == "Seed - Copy 2"
    assert form["objective"] == "OUTCOME_LEADS"
    assert form["status"] == "PAUSED"
    assert json.loads(form["special_ad_categories"]) == ["HOUSING"]
    assert form["is_adset_budget_sharing_enabled"] == "false"
    assert "daily_budget" not in form

    adset_bodies = [b for kind, _, bodies in client.batches if kind == "adset" for b in bodies]
    assert {b["campaign_id"] for b in adset_bodies} == {"cmp_new"}
    assert [b["daily_budget"] for b in adset_bodies] == ["100", "100", "100"]
    ad_bodies = [b for kind, _, bodies in client.batches if kind == "ad" for b in bodies]
    assert all(ad_creative(b)["object_story_id"] == "page_1_post_9" for b in ad_bodies)


def test_campaign_copy_carries_campaign_budget_and_bid_strategy(tracker, credentials, fake_sleep):
    payload = source_payload(daily_budget=5000)
    payload["bid_strategy"] = "COST_CAP"
    client = FakeGraphClient(source=payload)
    _run_copy(_orchestrator(client, tracker, credentials, fake_sleep), tracker, 1)

    form = next(c[1] for c in client.calls if c[0] == "create_campaign").to_form()
    assert form["daily_budget"] == "5000"
    assert form["bid_strategy"] == "COST_CAP"
    assert "is_adset_budget_sharing_enabled" not in form
    assert "daily_budget" not in client.batches[0][2][0]


def test_campaign_copy_retry_reuses_the_new_campaign(tracker, credentials, fake_sleep):
    first = FakeGraphClient(fail_adsets={1})
    job = _run_copy(_orchestrator(first, tracker, credentials, fake_sleep), tracker, 3)
    assert job.status == JobStatus.partial

    second = FakeGraphClient()
    job = asyncio.run(_orchestrator(second, tracker, credentials, fake_sleep).run(job.job_id, retry=True))

    assert job.status == JobStatus.completed
    assert "create_campaign" not in second.call_names()
    assert [b["campaign_id"] for b in second.batches[0][2]] == ["cmp_new"]


def test_campaign_copy_failure_fails_job_before_any_batch(tracker, credentials, fake_sleep):
    client = FailingClient("create_campaign", RemoteApiError("Invalid objective", code=100, http_status=400))
    job = _run_copy(_orchestrator(client, tracker, credentials, fake_sleep), tracker, 3)

    assert job.status == JobStatus.failed
    assert "Could not create campaign copy" in job.error
    assert job.target_campaign_id is None
    assert client.batches == []


@pytest.mark.parametrize("category", ["HOUSING", "EMPLOYMENT", "CREDIT"])
def test_restricted_category_siblings_have_restricted_targeting(tracker, credentials, fake_sleep, category):
    client = FakeGraphClient(source=source_payload(categories=[category]))
    _run(_orchestrator(client, tracker, credentials, fake_sleep), tracker, 1)

    targeting = json.loads(client.batches[0][2][0]["targeting"])
    assert targeting["age_min"] == 18
    assert "age_max" not in targeting
    assert "genders" not in targeting


def test_source_targeting_mode_reuses_source_targeting(tracker, credentials, fake_sleep):
    src_targeting = {"geo_locations": {"countries": ["CA"]}, "age_min": 25, "age_max": 40, "genders": [2]}
    client = FakeGraphClient(source=source_payload(targeting=src_targeting))
    _run(_orchestrator(client, tracker, credentials, fake_sleep), tracker, 1, targeting_mode="source")

    assert json.loads(client.batches[0][2][0]["targeting"]) == src_targeting


def test_cancel_during_ad_set_phase_stops_future_chunks(tracker, store, credentials, fake_sleep):
    holder = {}

    def on_batch(n, requests_):
        if n == 0:
            store.request_cancel(holder["job_id"])

    client = FakeGraphClient(on_batch=on_batch)
    orchestrator = _orchestrator(client, tracker, credentials, fake_sleep, Settings(chunk_size=10))
    job = tracker.create(source_campaign_id="cmp_1", post_id="p", requested_count=25)
    holder["job_id"] = job.job_id
    job = asyncio.run(orchestrator.run(job.job_id))

    assert len(client.batches) == 1
    assert job.status == JobStatus.failed
    assert len(job.results) == 25
    assert all(r.error_code == "cancelled" for r in job.results)
    assert job.result_for(24).error_message == CANCELLED_MESSAGE
    # ad sets created before the cancel are kept for a retry
    assert sorted(job.ad_set_ids) == list(range(10))


def test_cancel_during_ad_phase_keeps_finished_items(tracker, store, credentials, fake_sleep):
    holder = {}

    def on_batch(n, requests_):
        if n == 3:
            store.request_cancel(holder["job_id"])

    client = FakeGraphClient(on_batch=on_batch)
    orchestrator = _orchestrator(client, tracker, credentials, fake_sleep, Settings(chunk_size=10))
    job = tracker.create(source_campaign_id="cmp_1", post_id="p", requested_count=25)
    holder["job_id"] = job.job_id
    job = asyncio.run(orchestrator.run(job.job_id))

    assert job.status == JobStatus.partial
    assert job.success_count == 10
    assert job.failed_indices() == list(range(10, 25))


def test_cancel_before_start_finishes_without_calls(tracker, store, credentials, fake_sleep):
    client = FakeGraphClient()
    orchestrator = _orchestrator(client, tracker, credentials, fake_sleep)
    job = tracker.create(source_campaign_id="cmp_1", post_id="p", requested_count=3)
    tracker.request_cancel(job.job_id)

    job = asyncio.run(orchestrator.run(job.job_id))

    assert job.status == JobStatus.failed
    assert job.error == "Cancelled before start"
    assert client.calls == [] and client.batches == []


def test_whole_batch_failure_is_recorded_per_item(tracker, credentials, fake_sleep):
    client = FakeGraphClient(raise_on_batch={0: RemoteUnavailableError("connection reset")})
    orchestrator = _orchestrator(client, tracker, credentials, fake_sleep, Settings(chunk_size=2))
    job = _run(orchestrator, tracker, 4)

    assert job.status == JobStatus.partial
    assert job.failed_indices() == [0, 1]
    assert job.result_for(0).error_code == "unavailable"
    assert job.success_count == 2


def test_retry_only_touches_failed_indices_and_reuses_ad_sets(tracker, credentials, fake_sleep):
    first = FakeGraphClient(fail_adsets={4}, fail_ads={1})
    job = _run(_orchestrator(first, tracker, credentials, fake_sleep), tracker, 6)
    assert job.status == JobStatus.partial
    assert job.failed_indices() == [1, 4]

    second = FakeGraphClient()
    orchestrator = _orchestrator(second, tracker, credentials, fake_sleep)
    job = asyncio.run(orchestrator.run(job.job_id, retry=True))

    assert job.status == JobStatus.completed
    assert len(job.results) == 6
    adset_batches = [b for b in second.batches if b[0] == "adset"]
    ad_batches = [b for b in second.batches if b[0] == "ad"]
    assert [idx for _, idx, _ in adset_batches] == [[4]]
    assert [idx for _, idx, _ in ad_batches] == [[1, 4]]
    # index 1 keeps the ad set created by the first run
    assert job.result_for(1).ad_set_id == "adset_1"


def test_retry_of_completed_job_conflicts(tracker, credentials, fake_sleep):
    client = FakeGraphClient()
    orchestrator = _orchestrator(client, tracker, credentials, fake_sleep)
    job = _run(orchestrator, tracker, 1)

    with pytest.raises(JobConflictError):
        orchestrator.claim(job.job_id, retry=True)


def test_start_of_running_job_conflicts(tracker, credentials, fake_sleep):
    orchestrator = _orchestrator(FakeGraphClient(), tracker, credentials, fake_sleep)
    job = tracker.create(source_campaign_id="cmp_1", post_id="p", requested_count=1)
    orchestrator.claim(job.job_id)

    with pytest.raises(JobConflictError):
        orchestrator.claim(job.job_id)


def test_job_runner_rejects_second_run_of_same_job(tracker, credentials, fake_sleep):
    runner = JobRunner()
    orchestrator = _orchestrator(FakeGraphClient(), tracker, credentials, fake_sleep)
    job = tracker.create(source_campaign_id="cmp_1", post_id="p", requested_count=1)
    claimed = orchestrator.claim(job.job_id)

    async def scenario():
        runner._active.add(claimed.job_id)
        with pytest.raises(JobConflictError):
            await runner.run(orchestrator, claimed)
        runner._active.discard(claimed.job_id)
        return await runner.run(orchestrator, claimed)

    finished = asyncio.run(scenario())
    assert finished.status == JobStatus.completed
    assert not runner.is_running(job.job_id)


def test_job_runner_run_blocking_drives_its_own_loop(tracker, credentials, fake_sleep):
    runner = JobRunner()
    orchestrator = _orchestrator(FakeGraphClient(), tracker, credentials, fake_sleep)
    job = tracker.create(source_campaign_id="cmp_1", post_id="p", requested_count=2)

    finished = runner.run_blocking(orchestrator, orchestrator.claim(job.job_id))

    assert finished.status == JobStatus.completed
    assert not runner.is_running(job.job_id)


def test_normalize_custom_budgets_pads_and_truncates():
    assert normalize_custom_budgets(None, 3) == [100, 100, 100]
    assert normalize_custom_budgets([200], 3) == [200, 100, 100]
    assert normalize_custom_budgets([200, 300, 400, 500], 2) == [200, 300]
    assert normalize_custom_budgets([], 2, default_minor=150) == [150, 150]


def test_normalize_custom_budgets_rejects_below_minimum():
    with pytest.raises(BudgetError):
        normalize_custom_budgets([100, 99], 2)
