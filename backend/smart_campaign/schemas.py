"""
Transient engine types passed between Analyzer, Policy, Generator and Deployer.
None of these are persisted directly; the run ledger stores their dumps.
"""

from typing import Optional
from pydantic import BaseModel, Field, field_validator
from smart_campaign.utils import safe_float


class WindowMetrics(BaseModel):
    """Aggregate metrics for one entity over one date window. Bad values coerce to 0."""
    impressions: float = 0.0
    clicks: float = 0.0
    spend: float = 0.0
    ctr: float = 0.0
    cpm: float = 0.0
    frequency: float = 0.0
    cpc: Optional[float] = None  # undefined without clicks

    @field_validator("impressions", "clicks", "spend", "ctr", "cpm", "frequency", mode="before")
    @classmethod
    def _coerce(cls, v):
        return safe_float(v)

    @field_validator("cpc", mode="before")
    @classmethod
    def _coerce_cpc(cls, v):
        if v is None:
            return None
        f = safe_float(v, default=-1.0)
        return f if f >= 0 else None

    @classmethod
    def from_insights_row(cls, row: Optional[dict]) -> "WindowMetrics":
        """Build from a Graph insights row; cpc is derived from spend / clicks."""
        row = row or {}
        clicks = safe_float(row.get("clicks"))
        spend = safe_float(row.get("spend"))
        return cls(
            impressions=row.get("impressions"),
            clicks=clicks,
            spend=spend,
            ctr=row.get("ctr"),
            cpm=row.get("cpm"),
            frequency=row.get("frequency"),
            cpc=(spend / clicks) if clicks > 0 else None,
        )


class EntityWindows(BaseModel):
    recent: WindowMetrics = Field(default_factory=WindowMetrics)
    prior: WindowMetrics = Field(default_factory=WindowMetrics)


class Thresholds(BaseModel):
    min_impressions: float = 1500
    min_spend: float = 5
    ctr_drop_pct: float = 0.20
    freq_max: float = 2.0


class StopRules(BaseModel):
    spend_per_ad: float = 20
    impressions_per_ad: float = 3000
    clicks_per_ad: float = 30
    time_cap_hours: float = 48


class VariantPlan(BaseModel):
    images: int = 0
    videos: int = 0

    @property
    def total(self) -> int:
        return self.images + self.videos


class DateRange(BaseModel):
    since: str
    until: str


class Analysis(BaseModel):
    campaign_id: str
    as_of: str
    recent_range: DateRange
    prior_range: DateRange
    kpi: str = "cpc"
    adset_ids: list[str] = Field(default_factory=list)
    ad_ids_by_adset: dict[str, list[str]] = Field(default_factory=dict)
    adset_metrics: dict[str, EntityWindows] = Field(default_factory=dict)
    ad_metrics: dict[str, EntityWindows] = Field(default_factory=dict)
    plateau_by_adset: dict[str, bool] = Field(default_factory=dict)
    winners_by_adset: dict[str, list[str]] = Field(default_factory=dict)
    losers_by_adset: dict[str, list[str]] = Field(default_factory=dict)
    stop_flags_by_ad: dict[str, dict] = Field(default_factory=dict)
    errors: list[dict] = Field(default_factory=list)

    @property
    def plateau_detected(self) -> bool:
        return any(self.plateau_by_adset.values())


class CreativeVariant(BaseModel):
    """Opaque rendered variant. ``variant_id`` carries the img_/vid_ kind prefix."""
    variant_id: str
    kind: str  # image / video
    image_url: Optional[str] = None
    video_url: Optional[str] = None
    fb_video_id: Optional[str] = None
    thumbnail_url: Optional[str] = None
    ad_copy: str = ""


class GenerationResult(BaseModel):
    variants: list[CreativeVariant] = Field(default_factory=list)
    requested: VariantPlan = Field(default_factory=VariantPlan)
    shortfall: VariantPlan = Field(default_factory=VariantPlan)
    errors: list[dict] = Field(default_factory=list)


class DeployResult(BaseModel):
    created_ads_by_adset: dict[str, list[str]] = Field(default_factory=dict)
    paused_ads_by_adset: dict[str, list[str]] = Field(default_factory=dict)
    variant_map_by_adset: dict[str, dict[str, str]] = Field(default_factory=dict)
    skipped_pauses: dict[str, str] = Field(default_factory=dict)
    errors: list[dict] = Field(default_factory=list)

    @property
    def created_count(self) -> int:
        return sum(len(v) for v in self.created_ads_by_adset.values())
