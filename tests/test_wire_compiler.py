import json
from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from config import Credentials
from errors import BudgetError, ScheduleError, ValidationError
from wire_compiler import (
    AdCreativeSpec,
    AdSetParams,
    CampaignConfig,
    MediaRefs,
    TargetingSpec,
    compile_adset,
    compile_budget,
    compile_campaign,
    compile_creative,
    compile_targeting,
    map_objective,
    parse_money,
    restrict_targeting,
    sibling_ad,
    validate_schedule,
)

CREDS = Credentials(bearer_token="t", ad_account_id="1", page_id="page_1", pixel_id="px_1")
START = 1_700_000_000


# -----------------------------
# Budgets
# -----------------------------

def test_compile_budget_rounds_half_up_to_minor_units():
    assert compile_budget(1.00) == 100
    assert compile_budget("49.999") == 5000
    assert compile_budget("$1,234.50") == 123450
    assert compile_budget(Decimal("2.005")) == 201


def test_compile_budget_rejects_below_minimum():
    with pytest.raises(BudgetError):
        compile_budget("0.99")
    assert compile_budget("0.50", minimum_minor=1) == 50


@pytest.mark.parametrize("raw", ["abc", "NaN", True])
def test_parse_money_rejects_garbage(raw):
    with pytest.raises(BudgetError):
        parse_money(raw)


# -----------------------------
# Schedules
# -----------------------------

def test_lifetime_schedule_requires_24_hours():
    with pytest.raises(ScheduleError):
        validate_schedule("lifetime", START, START + 86399)
    assert validate_schedule("lifetime", START, START + 86400) == (START, START + 86400)


def test_lifetime_schedule_requires_end_and_defaults_start_to_now():
    with pytest.raises(ScheduleError):
        validate_schedule("lifetime", START, None)
    assert validate_schedule("lifetime", None, START + 2 * 86400, now=START) == (START, START + 2 * 86400)


def test_daily_schedule_is_optional_but_ordered():
    assert validate_schedule("daily") == (None, None)
    assert validate_schedule("daily", "2024-01-01T00:00:00Z", None) == (1704067200, None)
    with pytest.raises(ScheduleError):
        validate_schedule("daily", START, START)


# -----------------------------
# Targeting
# -----------------------------

def test_default_targeting_is_us_adults():
    assert compile_targeting(None) == {"geo_locations": {"countries": ["US"]}, "age_min": 18, "age_max": 65}


@pytest.mark.parametrize("category", ["HOUSING", "EMPLOYMENT", "CREDIT", "financial_products_services"])
def test_restricted_categories_strip_age_max_and_genders(category):
    spec = TargetingSpec(age_min=25, age_max=40, genders=["female"])
    out = compile_targeting(spec, [category])
    assert out["age_min"] == 18
    assert "age_max" not in out
    assert "genders" not in out


def test_single_gender_is_encoded():
    assert compile_targeting(TargetingSpec(genders=["male"]))["genders"] == [1]
    assert "genders" not in compile_targeting(TargetingSpec(genders=["male", "female"]))


def test_geo_keys():
    spec = TargetingSpec(regions=["CA", "dc", "9999"], zips=["90210", "US:10001"], cities=["2420605"])
    geo = compile_targeting(spec)["geo_locations"]
    assert geo["regions"] == [{"key": "3847"}, {"key": "3893"}, {"key": "9999"}]
    assert geo["zips"] == [{"key": "US:90210"}, {"key": "US:10001"}]
    assert geo["cities"] == [{"key": "2420605"}]
    assert "countries" not in geo


def test_unknown_region_is_rejected():
    with pytest.raises(ValidationError):
        compile_targeting(TargetingSpec(regions=["ZZ"]))


def test_manual_placements():
    spec = TargetingSpec(placement_type="manual", placements={"facebook": ["feed"], "instagram": ["stream", "story"]})
    out = compile_targeting(spec)
    assert out["publisher_platforms"] == ["facebook", "instagram"]
    assert out["instagram_positions"] == ["stream", "story"]

    with pytest.raises(PydanticValidationError):
        TargetingSpec(placement_type="manual")


def test_compile_targeting_is_deterministic():
    spec = TargetingSpec(countries=["us", "ca"], age_min=21)
    assert compile_targeting(spec, ["NONE"]) == compile_targeting(spec, [])


def test_restrict_targeting_leaves_unrestricted_alone():
    t = {"geo_locations": {"countries": ["US"]}, "age_min": 30, "age_max": 50, "genders": [1]}
    assert restrict_targeting(t, []) == t
    assert restrict_targeting(t, ["HOUSING"]) == {"geo_locations": {"countries": ["US"]}, "age_min": 18}


# -----------------------------
# Campaign / ad set
# -----------------------------

def test_map_objective_aliases():
    assert map_objective("leads") == "OUTCOME_LEADS"
    assert map_objective("conversions") == "OUTCOME_SALES"
    assert map_objective("PHONE_CALL") == "OUTCOME_LEADS"
    assert map_objective("OUTCOME_TRAFFIC") == "OUTCOME_TRAFFIC"
    assert map_objective(None) == "OUTCOME_LEADS"


def test_campaign_config_budget_rules():
    with pytest.raises(PydanticValidationError):
        CampaignConfig(name="x", daily_budget=1, lifetime_budget=5)
    with pytest.raises(PydanticValidationError):
        CampaignConfig(name="x", budget_type="lifetime", daily_budget=1)
    with pytest.raises(PydanticValidationError):
        CampaignConfig(name="x", daily_budget=1, bid_strategy="LOWEST_COST_WITH_BID_CAP")


def test_campaign_budget_level():
    cfg = CampaignConfig(name="Seed", daily_budget="5", budget_level="campaign", special_ad_categories="housing")
    params = compile_campaign(cfg)
    assert params.daily_budget == 500
    assert params.special_ad_categories == ["HOUSING"]

    adset = compile_adset(cfg, None, campaign_id="c1", credentials=CREDS)
    assert adset.daily_budget is None


def test_compile_adset_lifetime_budget_with_schedule():
    cfg = CampaignConfig(
        name="Seed",
        budget_type="lifetime",
        lifetime_budget="70",
        start_time=START,
        end_time=START + 7 * 86400,
        attribution_setting="7_day_click_1_day_view",
        conversion_event="purchase",
    )
    adset = compile_adset(cfg, TargetingSpec(), campaign_id="c1", credentials=CREDS)
    assert adset.lifetime_budget == 7000
    assert (adset.start_time, adset.end_time) == (START, START + 7 * 86400)
    assert adset.promoted_object == {"pixel_id": "px_1", "custom_event_type": "PURCHASE"}
    assert adset.attribution_spec == [
        {"event_type": "CLICK_THROUGH", "window_days": 7},
        {"event_type": "VIEW_THROUGH", "window_days": 1},
    ]


def test_calls_conversion_location():
    cfg = CampaignConfig(name="Seed", daily_budget="1", conversion_location="calls")
    adset = compile_adset(cfg, None, campaign_id="c1", credentials=CREDS)
    assert adset.optimization_goal == "QUALITY_CALL"
    assert adset.promoted_object == {"page_id": "page_1"}


def test_adset_params_require_end_time_for_lifetime_budget():
    with pytest.raises(PydanticValidationError):
        AdSetParams(name="a", campaign_id="c", targeting={}, lifetime_budget=1000)


def test_to_form_json_encodes_nested_values():
    params = AdSetParams(name="a", campaign_id="c", targeting={"age_min": 18}, daily_budget=100)
    form = params.to_form()
    assert form["targeting"] == '{"age_min":18}'
    assert form["daily_budget"] == "100"
    assert "lifetime_budget" not in form


# -----------------------------
# Creative / ads
# -----------------------------

def test_creative_text_limits():
    with pytest.raises(PydanticValidationError):
        AdCreativeSpec(primary_text="x" * 126, headline="h", url="https://e.com")
    with pytest.raises(PydanticValidationError):
        AdCreativeSpec(primary_text="p", headline="h" * 41, url="https://e.com")


def test_carousel_card_count():
    with pytest.raises(PydanticValidationError):
        AdCreativeSpec(media_type="carousel", primary_text="p", headline="h", url="https://e.com", cards=[{}])

    spec = AdCreativeSpec(
        media_type="carousel",
        primary_text="p",
        headline="h",
        url="https://e.com",
        cards=[{"headline": "One"}, {"headline": "Two", "image_url": "https://img/2.jpg"}],
    )
    story = compile_creative(spec, page_id="page_1", media=MediaRefs(card_image_hashes=["h1"]))
    children = story["link_data"]["child_attachments"]
    assert children[0]["image_hash"] == "h1"
    assert children[1]["picture"] == "https://img/2.jpg"
    assert children[1]["call_to_action"] == {"type": "LEARN_MORE", "value": {"link": "https://e.com"}}


def test_video_without_video_id_falls_back_to_link_ad():
    spec = AdCreativeSpec(media_type="video", primary_text="p", headline="h", url="https://e.com")
    story = compile_creative(spec, page_id="page_1", media=MediaRefs())
    assert "video_data" not in story
    assert story["link_data"]["link"] == "https://e.com"


def test_lead_form_destination():
    spec = AdCreativeSpec(primary_text="p", headline="h", destination="lead_form", lead_form_id="lf_1")
    cta = compile_creative(spec, page_id="page_1")["link_data"]["call_to_action"]
    assert cta == {"type": "LEARN_MORE", "value": {"lead_gen_form_id": "lf_1"}}


def test_sibling_ad_reuses_post():
    form = sibling_ad("Copy 1", "adset_1", "page_1_post_1", "page_1").to_form()
    assert json.loads(form["creative"]) == {"object_story_id": "page_1_post_1", "page_id": "page_1"}
    assert form["adset_id"] == "adset_1"
    assert form["status"] == "ACTIVE"
