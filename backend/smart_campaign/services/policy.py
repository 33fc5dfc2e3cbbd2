"""
Policy Engine — pure decision logic for creative rotation.
Plateau detection, variant-count planning and guardrail constants.
No I/O: callers pass everything in and enforce the guardrails themselves.
"""

import math
from datetime import datetime
from typing import Any, Mapping, Optional, Union

from smart_campaign.schemas import StopRules, Thresholds, VariantPlan, WindowMetrics
from smart_campaign.utils import hours_between, parse_datetime, safe_float, utcnow

WINDOWS = {"RECENT_DAYS": 3, "PRIOR_DAYS": 3}

DEFAULT_THRESHOLDS = Thresholds()

DEFAULT_STOP_RULES = StopRules()

VARIANTS = {
    "DEFAULT_COUNT_PER_TYPE": 2,
    "FALLBACK_COUNT_PER_TYPE": 1,
    "MIN_DAILY_BUDGET_FOR_AB": 20,
    "MIN_FLIGHT_HOURS_FOR_AB": 48,
}

LIMITS = {
    "MAX_NEW_ADS_PER_RUN_PER_ADSET": 2,
    "MIN_HOURS_BETWEEN_RUNS": 24,
    "MIN_HOURS_BETWEEN_NEW_ADS": 72,
    "PLATEAU_CONFIRM_HOURS": 36,
    "MIN_HOURS_LEFT_TO_SPAWN": 24,
}

ASSET_TYPES = ("image", "video", "both")

# UI / legacy spellings of the stop-rule keys
STOP_RULE_ALIASES = {
    "spendPerAdUSD": "spend_per_ad",
    "spendPerAd": "spend_per_ad",
    "impressionsPerAd": "impressions_per_ad",
    "clicksPerAd": "clicks_per_ad",
    "timeCapHours": "time_cap_hours",
    "MIN_SPEND_PER_AD": "spend_per_ad",
    "MIN_IMPRESSIONS_PER_AD": "impressions_per_ad",
    "MIN_CLICKS_PER_AD": "clicks_per_ad",
    "MAX_TEST_HOURS": "time_cap_hours",
}

# Lower is better for cost KPIs
COST_KPIS = {"cpc", "cpm"}


def _metrics(m: Union[WindowMetrics, Mapping, None]) -> WindowMetrics:
    if isinstance(m, WindowMetrics):
        return m
    return WindowMetrics(**{k: v for k, v in dict(m or {}).items() if k in WindowMetrics.model_fields})


def is_plateau(
    recent: Union[WindowMetrics, Mapping, None],
    prior: Union[WindowMetrics, Mapping, None],
    thresholds: Optional[Thresholds] = None,
) -> bool:
    """
    True when the recent window shows stagnation against the prior one.

    Gates: too few recent impressions or too little recent spend is noise,
    never a plateau. Past the gates, a relative CTR drop of at least
    ``ctr_drop_pct`` or a recent frequency of at least ``freq_max`` (fatigue)
    counts as a plateau. The CTR drop is 0 when the prior CTR is 0.
    """
    t = thresholds or DEFAULT_THRESHOLDS
    r = _metrics(recent)
    p = _metrics(prior)

    if r.impressions < t.min_impressions:
        return False
    if r.spend < t.min_spend:
        return False

    ctr_drop = (p.ctr - r.ctr) / p.ctr if p.ctr > 0 else 0.0
    if ctr_drop >= t.ctr_drop_pct:
        return True
    if r.frequency >= t.freq_max:
        return True
    return False


def normalize_asset_types(asset_types: Optional[str]) -> str:
    value = str(asset_types or "both").strip().lower()
    if value in ("images",):
        value = "image"
    elif value in ("videos",):
        value = "video"
    return value if value in ASSET_TYPES else "both"


def _wanted_kinds(asset_types: Optional[str]) -> tuple[bool, bool]:
    value = normalize_asset_types(asset_types)
    return value in ("image", "both"), value in ("video", "both")


def _override_counts(override: Any) -> Optional[tuple[int, int]]:
    """Accept an int (same count per kind) or a mapping with images/videos (or image/video)."""
    if override is None or isinstance(override, bool):
        return None
    if isinstance(override, Mapping):
        images = override.get("images", override.get("image", 0))
        videos = override.get("videos", override.get("video", 0))
        return max(0, int(safe_float(images))), max(0, int(safe_float(videos)))
    count = safe_float(override, default=-1)
    if count < 0:
        return None
    return int(count), int(count)


def decide_variant_plan(
    asset_types: Optional[str] = "both",
    daily_budget: Any = 0,
    flight_hours: Any = 0,
    override_count_per_type: Any = None,
    force_two_per_type: bool = False,
) -> VariantPlan:
    """
    How many new image/video variants to generate this cycle.

    Precedence: ``force_two_per_type`` (2 per requested kind), then an
    explicit ``override_count_per_type`` taken verbatim, then the
    budget/flight heuristic: A/B testing (2 per kind) needs both enough
    daily budget and a long enough flight, otherwise 1 per kind.
    Kinds not in ``asset_types`` are always 0.
    """
    want_image, want_video = _wanted_kinds(asset_types)

    if force_two_per_type:
        n = VARIANTS["DEFAULT_COUNT_PER_TYPE"]
        return VariantPlan(images=n if want_image else 0, videos=n if want_video else 0)

    override = _override_counts(override_count_per_type)
    if override is not None:
        images, videos = override
        return VariantPlan(images=images if want_image else 0, videos=videos if want_video else 0)

    can_ab = (
        safe_float(daily_budget) >= VARIANTS["MIN_DAILY_BUDGET_FOR_AB"]
        and safe_float(flight_hours) >= VARIANTS["MIN_FLIGHT_HOURS_FOR_AB"]
    )
    n = VARIANTS["DEFAULT_COUNT_PER_TYPE"] if can_ab else VARIANTS["FALLBACK_COUNT_PER_TYPE"]
    return VariantPlan(images=n if want_image else 0, videos=n if want_video else 0)


def clamp_plan(plan: VariantPlan, max_per_kind: int) -> VariantPlan:
    cap = max(0, int(max_per_kind))
    return VariantPlan(images=min(plan.images, cap), videos=min(plan.videos, cap))


def resolve_flight_hours(
    start_at: Any = None,
    end_at: Any = None,
    fallback_hours: Any = 0,
    now: Optional[datetime] = None,
) -> float:
    """Hours of flight left: (end - (start or now)), floored at 0 and rounded; else the fallback."""
    end = parse_datetime(end_at)
    if end is not None:
        start = parse_datetime(start_at) or (now or utcnow())
        return max(0, round(hours_between(end, start)))
    return max(0.0, safe_float(fallback_hours))


def merge_thresholds(stored: Optional[Mapping] = None) -> Thresholds:
    """Defaults overlaid by whatever the config stored (unknown keys ignored)."""
    merged = DEFAULT_THRESHOLDS.model_dump()
    for key, value in dict(stored or {}).items():
        key = key.lower()
        if key in merged and value is not None:
            merged[key] = safe_float(value, merged[key])
    return Thresholds(**merged)


def merge_stop_rules(stored: Optional[Mapping] = None) -> StopRules:
    merged = DEFAULT_STOP_RULES.model_dump()
    for key, value in dict(stored or {}).items():
        key = STOP_RULE_ALIASES.get(key, key)
        if key in merged and value is not None:
            merged[key] = safe_float(value, merged[key])
    return StopRules(**merged)


def evaluate_stop_flags(
    recent: Union[WindowMetrics, Mapping, None],
    created_at: Any,
    stop_rules: Optional[StopRules] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Whether an ad has gathered enough evidence (spend, impressions, clicks or age) to be judged."""
    s = stop_rules or DEFAULT_STOP_RULES
    r = _metrics(recent)
    created = parse_datetime(created_at)
    flags = {
        "spend": r.spend >= s.spend_per_ad,
        "impressions": r.impressions >= s.impressions_per_ad,
        "clicks": r.clicks >= s.clicks_per_ad,
        "time": created is not None and hours_between(now or utcnow(), created) >= s.time_cap_hours,
    }
    return {"flags": flags, "any": any(flags.values())}


def kpi_sort_key(kpi: str, metrics: Optional[WindowMetrics]):
    """
    Sort key so that ``sorted(...)`` puts the best ad first.
    Cost KPIs rank ascending with undefined values last; others rank
    descending with undefined values as 0.
    """
    m = metrics or WindowMetrics()
    value = getattr(m, kpi, None)
    if kpi in COST_KPIS:
        if value is None or not math.isfinite(value) or (kpi == "cpc" and m.clicks <= 0) or (kpi == "cpm" and m.impressions <= 0):
            return (1, 0.0)
        return (0, value)
    return (0, -safe_float(value))


def pick_champion(ad_ids: list[str], ad_metrics: Mapping[str, Any]) -> Optional[str]:
    """
    The ad that keeps running once a test round is decided: lowest recent
    CPC (no clicks counts as infinite), ties broken by higher CTR, then by
    listing order.
    """
    best_id, best_cpc, best_ctr = None, math.inf, -1.0
    for ad_id in ad_ids:
        windows = ad_metrics.get(ad_id)
        recent = _metrics(getattr(windows, "recent", None) if windows is not None else None)
        cpc = recent.spend / recent.clicks if recent.clicks > 0 else math.inf
        ctr = recent.ctr
        if best_id is None or cpc < best_cpc - 1e-9 or (abs(cpc - best_cpc) <= 1e-9 and ctr > best_ctr):
            best_id, best_cpc, best_ctr = ad_id, cpc, ctr
    return best_id


def flight_hours_left(
    start_at: Any = None,
    end_at: Any = None,
    fallback_hours: Any = 0,
    now: Optional[datetime] = None,
) -> Optional[float]:
    """Hours left in the flight, or None when the config carries no flight window at all."""
    if parse_datetime(end_at) is None and safe_float(fallback_hours) <= 0:
        return None
    now = now or utcnow()
    start = parse_datetime(start_at)
    # A flight that already started counts down from now
    if start is not None and start < now:
        start = now
    return resolve_flight_hours(start_at=start, end_at=end_at, fallback_hours=fallback_hours, now=now)
