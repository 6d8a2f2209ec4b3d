"""Input models, per-endpoint wire models and the pure functions between them.

Nothing in this module talks to the network. Every input is validated here
so a malformed request fails before the first remote call.

Wire conventions (must match the Graph API exactly):
  - snake_case keys
  - budgets / bid amounts as integer minor currency units
  - nested objects (targeting, promoted_object, creative, ...) JSON-encoded as strings
  - schedule timestamps as unix seconds
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from config import Credentials
from errors import BudgetError, ScheduleError, ValidationError

SECONDS_PER_DAY = 86400

# Categories that strip age_max and genders and pin age_min to 18.
RESTRICTED_CATEGORIES = frozenset({"HOUSING", "EMPLOYMENT", "CREDIT", "FINANCIAL_PRODUCTS_SERVICES"})

# Facebook region keys for US states.
US_STATE_REGION_KEYS: Dict[str, str] = {
    "AL": "3843", "AK": "3844", "AZ": "3845", "AR": "3846", "CA": "3847",
    "CO": "3848", "CT": "3849", "DE": "3850", "FL": "3851", "GA": "3852",
    "HI": "3853", "ID": "3854", "IL": "3855", "IN": "3856", "IA": "3857",
    "KS": "3858", "KY": "3859", "LA": "3860", "ME": "3861", "MD": "3862",
    "MA": "3863", "MI": "3864", "MN": "3865", "MS": "3866", "MO": "3867",
    "MT": "3868", "NE": "3869", "NV": "3870", "NH": "3871", "NJ": "3872",
    "NM": "3873", "NY": "3874", "NC": "3875", "ND": "3876", "OH": "3877",
    "OK": "3878", "OR": "3879", "PA": "3880", "RI": "3881", "SC": "3882",
    "SD": "3883", "TN": "3884", "TX": "3885", "UT": "3886", "VT": "3887",
    "VA": "3888", "WA": "3889", "WV": "3890", "WI": "3891", "WY": "3892",
    "DC": "3893",
}

VALID_OBJECTIVES = frozenset({
    "OUTCOME_LEADS", "OUTCOME_SALES", "OUTCOME_TRAFFIC", "OUTCOME_AWARENESS",
    "OUTCOME_ENGAGEMENT", "OUTCOME_APP_PROMOTION",
})

OBJECTIVE_ALIASES: Dict[str, str] = {
    "leads": "OUTCOME_LEADS",
    "conversions": "OUTCOME_SALES",
    "sales": "OUTCOME_SALES",
    "traffic": "OUTCOME_TRAFFIC",
    "awareness": "OUTCOME_AWARENESS",
    "engagement": "OUTCOME_ENGAGEMENT",
    "app_promotion": "OUTCOME_APP_PROMOTION",
    "phone_call": "OUTCOME_LEADS",
    "calls": "OUTCOME_LEADS",
}

ATTRIBUTION_WINDOWS: Dict[str, List[Tuple[str, int]]] = {
    "1_day_click": [("CLICK_THROUGH", 1)],
    "7_day_click": [("CLICK_THROUGH", 7)],
    "1_day_click_1_day_view": [("CLICK_THROUGH", 1), ("VIEW_THROUGH", 1)],
    "7_day_click_1_day_view": [("CLICK_THROUGH", 7), ("VIEW_THROUGH", 1)],
    "28_day_click_1_day_view": [("CLICK_THROUGH", 28), ("VIEW_THROUGH", 1)],
}


# -----------------------------
# Enums
# -----------------------------

class BuyingType(str, Enum):
    AUCTION = "AUCTION"
    RESERVED = "RESERVED"


class BidStrategy(str, Enum):
    LOWEST_COST_WITHOUT_CAP = "LOWEST_COST_WITHOUT_CAP"
    LOWEST_COST_WITH_BID_CAP = "LOWEST_COST_WITH_BID_CAP"
    COST_CAP = "COST_CAP"
    LOWEST_COST_WITH_MIN_ROAS = "LOWEST_COST_WITH_MIN_ROAS"


class BudgetType(str, Enum):
    daily = "daily"
    lifetime = "lifetime"


class BudgetLevel(str, Enum):
    campaign = "campaign"
    adset = "adset"


class ConversionLocation(str, Enum):
    website = "website"
    app = "app"
    calls = "calls"
    none = "none"


class Gender(str, Enum):
    male = "male"
    female = "female"
    all = "all"


class PlacementType(str, Enum):
    automatic = "automatic"
    manual = "manual"


class MediaType(str, Enum):
    single_image = "single_image"
    video = "video"
    carousel = "carousel"


class DestinationType(str, Enum):
    url = "url"
    none = "none"
    lead_form = "lead_form"
    call = "call"


class CallToAction(str, Enum):
    LEARN_MORE = "LEARN_MORE"
    SHOP_NOW = "SHOP_NOW"
    SIGN_UP = "SIGN_UP"
    APPLY_NOW = "APPLY_NOW"
    GET_QUOTE = "GET_QUOTE"
    GET_OFFER = "GET_OFFER"
    CONTACT_US = "CONTACT_US"
    DOWNLOAD = "DOWNLOAD"
    SUBSCRIBE = "SUBSCRIBE"
    ORDER_NOW = "ORDER_NOW"
    BOOK_TRAVEL = "BOOK_TRAVEL"
    CALL_NOW = "CALL_NOW"
    NO_BUTTON = "NO_BUTTON"


# -----------------------------
# Scalar helpers
# -----------------------------

def map_objective(objective: Optional[str]) -> str:
    """Map legacy names and aliases onto OUTCOME_* objectives (default OUTCOME_LEADS)."""
    raw = (objective or "").strip()
    if raw.upper() == "PHONE_CALL":
        return "OUTCOME_LEADS"
    if raw.upper() in VALID_OBJECTIVES:
        return raw.upper()
    return OBJECTIVE_ALIASES.get(raw.lower(), "OUTCOME_LEADS")


def normalize_special_categories(categories: Optional[Iterable[str]]) -> List[str]:
    out: List[str] = []
    for c in categories or []:
        v = str(c or "").strip().upper()
        if not v or v == "NONE" or v in out:
            continue
        out.append(v)
    return out


def parse_money(amount: Union[str, int, float, Decimal]) -> Decimal:
    """Parse '$1,234.50', 1234.5, '49.999' into a Decimal in major units."""
    if isinstance(amount, bool):
        raise BudgetError(f"Invalid budget amount: {amount!r}")
    if isinstance(amount, Decimal):
        return amount
    raw = str(amount).replace("$", "").replace(",", "").replace(" ", "").strip()
    try:
        value = Decimal(raw)
    except InvalidOperation as e:
        raise BudgetError(f"Invalid budget amount: {amount!r}") from e
    if not value.is_finite():
        raise BudgetError(f"Invalid budget amount: {amount!r}")
    return value


def compile_budget(
    amount: Union[str, int, float, Decimal],
    *,
    minor_per_unit: int = 100,
    minimum_minor: int = 100,
) -> int:
    """Major-unit amount -> integer minor units, rounding half up.

    compile_budget(1.00) == 100, compile_budget(49.999) == 5000.
    Raises BudgetError below `minimum_minor`.
    """
    value = parse_money(amount) * Decimal(minor_per_unit)
    minor = int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if minor < minimum_minor:
        raise BudgetError(
            f"Budget {amount} is below the minimum of {Decimal(minimum_minor) / Decimal(minor_per_unit)}"
        )
    return minor


def _to_unix(value: Union[None, int, float, str, datetime]) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())
    if isinstance(value, (int, float)):
        return int(value)
    s = str(value).strip()
    if s.isdigit():
        return int(s)
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError as e:
        raise ScheduleError(f"Invalid timestamp: {value!r}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def validate_schedule(
    budget_type: Union[str, BudgetType],
    start: Union[None, int, float, str, datetime] = None,
    end: Union[None, int, float, str, datetime] = None,
    *,
    now: Optional[int] = None,
) -> Tuple[Optional[int], Optional[int]]:
    """Validate a schedule window and return (start_ts, end_ts) in unix seconds.

    lifetime: end is required, start defaults to now, end - start >= 24h.
    daily: both optional; when both are given end must be after start.
    """
    bt = BudgetType(budget_type)
    start_ts = _to_unix(start)
    end_ts = _to_unix(end)

    if bt == BudgetType.lifetime:
        if end_ts is None:
            raise ScheduleError("Lifetime budgets require an end time.")
        if start_ts is None:
            start_ts = int(now if now is not None else time.time())
        if end_ts - start_ts < SECONDS_PER_DAY:
            raise ScheduleError("Lifetime budgets require the schedule to span at least 24 hours.")
        return start_ts, end_ts

    if start_ts is not None and end_ts is not None and end_ts <= start_ts:
        raise ScheduleError("End time must be after start time.")
    return start_ts, end_ts


# -----------------------------
# Input models
# -----------------------------

class PlacementSpec(BaseModel):
    facebook: List[str] = Field(default_factory=list)
    instagram: List[str] = Field(default_factory=list)
    audience_network: List[str] = Field(default_factory=list)
    messenger: List[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.facebook or self.instagram or self.audience_network or self.messenger)


class TargetingSpec(BaseModel):
    countries: List[str] = Field(default_factory=list)
    regions: List[str] = Field(default_factory=list, description="US state codes or raw region keys")
    cities: List[str] = Field(default_factory=list, description="City keys")
    zips: List[str] = Field(default_factory=list, description="Postal codes or 'US:12345' keys")
    age_min: int = Field(default=18, ge=13, le=65)
    age_max: int = Field(default=65, ge=13, le=65)
    genders: List[Gender] = Field(default_factory=lambda: [Gender.all])
    placement_type: PlacementType = PlacementType.automatic
    placements: PlacementSpec = Field(default_factory=PlacementSpec)

    @model_validator(mode="after")
    def _check(self) -> "TargetingSpec":
        if self.age_min > self.age_max:
            raise ValueError("age_min must be <= age_max")
        if self.placement_type == PlacementType.manual and self.placements.is_empty():
            raise ValueError("Manual placements require at least one position list.")
        return self


class CampaignConfig(BaseModel):
    """Normalized seed configuration. Budgets are major currency units here."""

    name: str = Field(min_length=1)
    objective: str = "OUTCOME_LEADS"
    buying_type: BuyingType = BuyingType.AUCTION
    special_ad_categories: List[str] = Field(default_factory=list)
    bid_strategy: Optional[BidStrategy] = None
    bid_amount: Optional[Union[float, str]] = None

    budget_level: BudgetLevel = BudgetLevel.adset
    budget_type: BudgetType = BudgetType.daily
    daily_budget: Optional[Union[float, str]] = None
    lifetime_budget: Optional[Union[float, str]] = None
    start_time: Optional[Union[int, str, datetime]] = None
    end_time: Optional[Union[int, str, datetime]] = None

    conversion_location: ConversionLocation = ConversionLocation.website
    conversion_event: str = "LEAD"
    performance_goal: Optional[str] = None
    attribution_setting: Optional[str] = None
    application_id: Optional[str] = None
    app_store_url: Optional[str] = None

    status: str = "ACTIVE"
    ad_set_name: Optional[str] = None
    ad_name: Optional[str] = None

    @field_validator("objective", mode="before")
    @classmethod
    def _map_objective(cls, v: Any) -> str:
        return map_objective(v)

    @field_validator("special_ad_categories", mode="before")
    @classmethod
    def _normalize_categories(cls, v: Any) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        return normalize_special_categories(v)

    @model_validator(mode="after")
    def _check_budget(self) -> "CampaignConfig":
        if self.daily_budget is not None and self.lifetime_budget is not None:
            raise ValueError("daily_budget and lifetime_budget are mutually exclusive.")
        if self.budget_type == BudgetType.daily and self.daily_budget is None:
            raise ValueError("budget_type=daily requires daily_budget.")
        if self.budget_type == BudgetType.lifetime and self.lifetime_budget is None:
            raise ValueError("budget_type=lifetime requires lifetime_budget.")
        if self.bid_strategy in (BidStrategy.LOWEST_COST_WITH_BID_CAP, BidStrategy.COST_CAP) and self.bid_amount is None:
            raise ValueError(f"bid_strategy={self.bid_strategy.value} requires bid_amount.")
        if self.attribution_setting and self.attribution_setting not in ATTRIBUTION_WINDOWS:
            raise ValueError(f"Unsupported attribution_setting: {self.attribution_setting}")
        return self

    @property
    def budget_amount(self) -> Union[float, str]:
        return self.daily_budget if self.budget_type == BudgetType.daily else self.lifetime_budget


class CarouselCard(BaseModel):
    headline: Optional[str] = Field(default=None, max_length=40)
    description: Optional[str] = Field(default=None, max_length=30)
    link: Optional[str] = None
    call_to_action: Optional[CallToAction] = None
    image_hash: Optional[str] = None
    image_url: Optional[str] = None


class AdCreativeSpec(BaseModel):
    media_type: MediaType = MediaType.single_image
    primary_text: str = Field(max_length=125)
    headline: str = Field(max_length=40)
    description: Optional[str] = Field(default=None, max_length=30)
    call_to_action: CallToAction = CallToAction.LEARN_MORE
    destination: DestinationType = DestinationType.url
    url: Optional[str] = None
    display_link: Optional[str] = None
    lead_form_id: Optional[str] = None
    phone_number: Optional[str] = None
    image_hash: Optional[str] = None
    image_url: Optional[str] = None
    video_url: Optional[str] = None
    cards: List[CarouselCard] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check(self) -> "AdCreativeSpec":
        if self.media_type == MediaType.carousel:
            if not 2 <= len(self.cards) <= 10:
                raise ValueError("Carousel ads need between 2 and 10 cards.")
        elif self.cards:
            raise ValueError("cards are only allowed for carousel ads.")

        if self.destination == DestinationType.url and not (self.url or "").strip():
            raise ValueError("destination=url requires url.")
        if self.destination == DestinationType.lead_form and not self.lead_form_id:
            raise ValueError("destination=lead_form requires lead_form_id.")
        if self.destination == DestinationType.call and not self.phone_number:
            raise ValueError("destination=call requires phone_number.")
        return self


@dataclass
class MediaRefs:
    """Platform handles for uploaded media. Any of them may be missing."""

    image_hash: Optional[str] = None
    video_id: Optional[str] = None
    thumbnail_url: Optional[str] = None
    card_image_hashes: List[Optional[str]] = field(default_factory=list)


# -----------------------------
# Wire models
# -----------------------------

class _WireModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    def to_form(self) -> Dict[str, str]:
        """Render as Graph form fields: nested objects become JSON strings."""
        out: Dict[str, str] = {}
        for k, v in self.model_dump(exclude_none=True).items():
            if isinstance(v, (dict, list)):
                out[k] = json.dumps(v, separators=(",", ":"))
            elif isinstance(v, bool):
                out[k] = "true" if v else "false"
            else:
                out[k] = str(v)
        return out


class CampaignParams(_WireModel):
    name: str
    objective: str
    status: str = "ACTIVE"
    special_ad_categories: List[str] = Field(default_factory=list)
    buying_type: Optional[str] = None
    bid_strategy: Optional[str] = None
    daily_budget: Optional[int] = None
    lifetime_budget: Optional[int] = None
    is_adset_budget_sharing_enabled: Optional[bool] = None

    @model_validator(mode="after")
    def _one_budget(self) -> "CampaignParams":
        if self.daily_budget is not None and self.lifetime_budget is not None:
            raise ValueError("daily_budget and lifetime_budget are mutually exclusive.")
        return self


class AdSetParams(_WireModel):
    name: str
    campaign_id: str
    status: str = "ACTIVE"
    billing_event: str = "IMPRESSIONS"
    optimization_goal: str = "OFFSITE_CONVERSIONS"
    targeting: Dict[str, Any]
    daily_budget: Optional[int] = None
    lifetime_budget: Optional[int] = None
    bid_amount: Optional[int] = None
    bid_strategy: Optional[str] = None
    promoted_object: Optional[Dict[str, Any]] = None
    attribution_spec: Optional[List[Dict[str, Any]]] = None
    start_time: Optional[int] = None
    end_time: Optional[int] = None

    @model_validator(mode="after")
    def _check(self) -> "AdSetParams":
        if self.daily_budget is not None and self.lifetime_budget is not None:
            raise ValueError("daily_budget and lifetime_budget are mutually exclusive.")
        if self.lifetime_budget is not None and self.end_time is None:
            raise ValueError("lifetime_budget requires end_time.")
        return self


class AdParams(_WireModel):
    name: str
    adset_id: str
    creative: Dict[str, Any]
    status: str = "ACTIVE"


# -----------------------------
# Targeting
# -----------------------------

def _region_key(region: str) -> str:
    code = str(region or "").strip().upper()
    if code in US_STATE_REGION_KEYS:
        return US_STATE_REGION_KEYS[code]
    if code.isdigit():
        return code
    raise ValidationError(f"Unknown region: {region!r}")


def _zip_key(value: str) -> str:
    v = str(value or "").strip()
    return v if ":" in v else f"US:{v}"


def compile_targeting(spec: Optional[TargetingSpec], special_categories: Iterable[str] = ()) -> Dict[str, Any]:
    """TargetingSpec -> Graph targeting dict. Deterministic for equal inputs."""
    spec = spec or TargetingSpec()
    restricted = bool(RESTRICTED_CATEGORIES.intersection(normalize_special_categories(special_categories)))

    geo: Dict[str, Any] = {}
    if spec.countries:
        geo["countries"] = [c.strip().upper() for c in spec.countries if c.strip()]
    if spec.regions:
        geo["regions"] = [{"key": _region_key(r)} for r in spec.regions]
    if spec.cities:
        geo["cities"] = [{"key": str(c).strip()} for c in spec.cities if str(c).strip()]
    if spec.zips:
        geo["zips"] = [{"key": _zip_key(z)} for z in spec.zips if str(z).strip()]
    if not geo:
        geo["countries"] = ["US"]

    out: Dict[str, Any] = {"geo_locations": geo}

    if restricted:
        out["age_min"] = 18
    else:
        out["age_min"] = int(spec.age_min)
        out["age_max"] = int(spec.age_max)
        genders = set(spec.genders)
        if Gender.all not in genders and genders:
            codes = sorted({1 if g == Gender.male else 2 for g in genders})
            if len(codes) == 1:
                out["genders"] = codes

    if spec.placement_type == PlacementType.manual:
        p = spec.placements
        platforms: List[str] = []
        for platform, positions in (
            ("facebook", p.facebook),
            ("instagram", p.instagram),
            ("audience_network", p.audience_network),
            ("messenger", p.messenger),
        ):
            if positions:
                platforms.append(platform)
                out[f"{platform}_positions"] = list(positions)
        out["publisher_platforms"] = platforms

    return out


def restrict_targeting(targeting: Dict[str, Any], special_categories: Iterable[str]) -> Dict[str, Any]:
    """Apply special-category restrictions to an already-compiled targeting dict."""
    if not RESTRICTED_CATEGORIES.intersection(normalize_special_categories(special_categories)):
        return dict(targeting)
    out = {k: v for k, v in targeting.items() if k not in {"age_max", "genders"}}
    out["age_min"] = 18
    return out


# -----------------------------
# Ad set derivations
# -----------------------------

def optimization_goal_for(config: CampaignConfig) -> str:
    if config.conversion_location == ConversionLocation.calls:
        return "QUALITY_CALL"
    if config.performance_goal == "maximize_conversions":
        return "OFFSITE_CONVERSIONS"
    if config.performance_goal == "maximize_leads":
        return "LEAD_GENERATION"
    if config.conversion_location == ConversionLocation.none:
        if config.objective == "OUTCOME_TRAFFIC":
            return "LINK_CLICKS"
        if config.objective == "OUTCOME_AWARENESS":
            return "REACH"
    if (config.conversion_event or "").strip().lower() == "viewcontent":
        return "LANDING_PAGE_VIEWS"
    return "OFFSITE_CONVERSIONS"


def promoted_object_for(config: CampaignConfig, credentials: Credentials) -> Optional[Dict[str, Any]]:
    event = "PURCHASE" if (config.conversion_event or "").strip().upper() == "PURCHASE" else "LEAD"

    if config.conversion_location == ConversionLocation.calls:
        return {"page_id": credentials.page_id}
    if config.conversion_location == ConversionLocation.website:
        if not credentials.pixel_id:
            raise ValidationError("Website conversions require a pixel id.")
        return {"pixel_id": credentials.pixel_id, "custom_event_type": event}
    if config.conversion_location == ConversionLocation.app:
        app_id = config.application_id or credentials.app_id
        if not app_id or not config.app_store_url:
            raise ValidationError("App conversions require application_id and app_store_url.")
        return {"application_id": app_id, "object_store_url": config.app_store_url, "custom_event_type": event}
    return None


def attribution_spec_for(setting: Optional[str]) -> Optional[List[Dict[str, Any]]]:
    if not setting:
        return None
    windows = ATTRIBUTION_WINDOWS.get(setting)
    if windows is None:
        raise ValidationError(f"Unsupported attribution_setting: {setting}")
    return [{"event_type": event, "window_days": days} for event, days in windows]


# -----------------------------
# Campaign / ad set / ad
# -----------------------------

def compile_campaign(config: CampaignConfig, *, minimum_minor: int = 100) -> CampaignParams:
    params: Dict[str, Any] = {
        "name": config.name,
        "objective": config.objective,
        "status": config.status,
        "special_ad_categories": list(config.special_ad_categories),
        "buying_type": config.buying_type.value,
    }
    if config.budget_level == BudgetLevel.campaign:
        budget = compile_budget(config.budget_amount, minimum_minor=minimum_minor)
        params[f"{config.budget_type.value}_budget"] = budget
        if config.bid_strategy:
            params["bid_strategy"] = config.bid_strategy.value
    else:
        params["is_adset_budget_sharing_enabled"] = False
    return CampaignParams(**params)


def compile_adset(
    config: CampaignConfig,
    targeting: Optional[TargetingSpec],
    *,
    campaign_id: str,
    credentials: Credentials,
    minimum_minor: int = 100,
    now: Optional[int] = None,
) -> AdSetParams:
    start_ts, end_ts = validate_schedule(config.budget_type, config.start_time, config.end_time, now=now)

    params: Dict[str, Any] = {
        "name": config.ad_set_name or f"{config.name} - AdSet",
        "campaign_id": campaign_id,
        "status": config.status,
        "billing_event": "IMPRESSIONS",
        "optimization_goal": optimization_goal_for(config),
        "targeting": compile_targeting(targeting, config.special_ad_categories),
        "promoted_object": promoted_object_for(config, credentials),
        "attribution_spec": attribution_spec_for(config.attribution_setting),
        "start_time": start_ts,
        "end_time": end_ts,
    }
    if config.budget_level == BudgetLevel.adset:
        params[f"{config.budget_type.value}_budget"] = compile_budget(config.budget_amount, minimum_minor=minimum_minor)
        if config.bid_strategy:
            params["bid_strategy"] = config.bid_strategy.value
    if config.bid_amount is not None:
        params["bid_amount"] = compile_budget(config.bid_amount, minimum_minor=1)
    return AdSetParams(**params)


def _cta(kind: CallToAction, link: Optional[str], spec: AdCreativeSpec) -> Optional[Dict[str, Any]]:
    if kind == CallToAction.NO_BUTTON or spec.destination == DestinationType.none:
        return None
    if spec.destination == DestinationType.lead_form:
        return {"type": kind.value, "value": {"lead_gen_form_id": spec.lead_form_id}}
    if spec.destination == DestinationType.call:
        return {"type": CallToAction.CALL_NOW.value, "value": {"link": f"tel:{spec.phone_number}"}}
    return {"type": kind.value, "value": {"link": link}}


def _destination_link(spec: AdCreativeSpec) -> Optional[str]:
    if spec.destination == DestinationType.url:
        return spec.url
    if spec.destination == DestinationType.lead_form:
        return spec.url or "http://fb.me/"
    if spec.destination == DestinationType.call:
        return spec.url or f"tel:{spec.phone_number}"
    return spec.url


def compile_creative(spec: AdCreativeSpec, *, page_id: str, media: Optional[MediaRefs] = None) -> Dict[str, Any]:
    """AdCreativeSpec + uploaded media -> object_story_spec.

    Missing media is allowed: a video without a video id falls back to a link ad.
    """
    media = media or MediaRefs()
    link = _destination_link(spec)
    cta = _cta(spec.call_to_action, link, spec)

    if spec.media_type == MediaType.video and media.video_id:
        video_data: Dict[str, Any] = {
            "video_id": media.video_id,
            "message": spec.primary_text,
            "title": spec.headline,
        }
        if spec.description:
            video_data["link_description"] = spec.description
        if cta:
            video_data["call_to_action"] = cta
        if media.image_hash:
            video_data["image_hash"] = media.image_hash
        elif media.thumbnail_url:
            video_data["image_url"] = media.thumbnail_url
        return {"page_id": page_id, "video_data": video_data}

    if spec.media_type == MediaType.carousel:
        children: List[Dict[str, Any]] = []
        for i, card in enumerate(spec.cards):
            child: Dict[str, Any] = {
                "link": card.link or link,
                "name": card.headline or spec.headline,
            }
            desc = card.description or spec.description
            if desc:
                child["description"] = desc
            image_hash = media.card_image_hashes[i] if i < len(media.card_image_hashes) else None
            if image_hash or card.image_hash:
                child["image_hash"] = image_hash or card.image_hash
            elif card.image_url:
                child["picture"] = card.image_url
            card_cta = _cta(card.call_to_action or spec.call_to_action, child["link"], spec)
            if card_cta:
                child["call_to_action"] = card_cta
            children.append(child)
        link_data: Dict[str, Any] = {
            "link": link,
            "message": spec.primary_text,
            "child_attachments": children,
            "multi_share_optimized": True,
        }
        return {"page_id": page_id, "link_data": {k: v for k, v in link_data.items() if v is not None}}

    link_data = {
        "link": link,
        "message": spec.primary_text,
        "name": spec.headline,
        "description": spec.description,
        "caption": spec.display_link,
        "call_to_action": cta,
        "image_hash": media.image_hash or spec.image_hash,
    }
    if not link_data["image_hash"] and spec.image_url:
        link_data["picture"] = spec.image_url
    return {"page_id": page_id, "link_data": {k: v for k, v in link_data.items() if v is not None}}


def compile_ad(name: str, adset_id: str, object_story_spec: Dict[str, Any], *, status: str = "ACTIVE") -> AdParams:
    return AdParams(name=name, adset_id=adset_id, creative={"object_story_spec": object_story_spec}, status=status)


def sibling_ad(name: str, adset_id: str, post_id: str, page_id: str) -> AdParams:
    """Ad that reuses an existing post instead of a freshly uploaded creative."""
    return AdParams(
        name=name,
        adset_id=adset_id,
        creative={"object_story_id": post_id, "page_id": page_id},
        status="ACTIVE",
    )
