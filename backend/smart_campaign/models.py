"""
Smart Campaign Engine — Database Models
Per-campaign optimization configs, the append-only run ledger, and the
creative deployment history.
"""

import uuid
import enum
from datetime import datetime, timezone
from sqlalchemy import (
    String, Text, Float, Integer, Boolean, DateTime,
    JSON, ForeignKey, Index, UniqueConstraint, Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from smart_campaign.database import Base


def _utcnow() -> datetime:
    """Naive UTC now — matches DB columns (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class CredentialStatus(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    ERROR = "error"


class RunMode(str, enum.Enum):
    INITIAL = "initial"
    PLATEAU = "plateau"
    STOP_RULES_COMMIT = "stop_rules_commit"


class RunStatus(str, enum.Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"


class CreativeKind(str, enum.Enum):
    IMAGE = "image"
    VIDEO = "video"


# ══════════════════════════════════════════════════════════════════════
#  PLATFORM CREDENTIAL: the single Meta user token for this deployment
# ══════════════════════════════════════════════════════════════════════

class PlatformCredential(Base):
    """Meta user access token used for every Graph API call (one per deployment)."""
    __tablename__ = "platform_credentials"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)  # encrypted
    token_expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=CredentialStatus.ACTIVE.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)


# ══════════════════════════════════════════════════════════════════════
#  SMART CONFIGS: One optimization config per monitored campaign
# ══════════════════════════════════════════════════════════════════════

class SmartConfig(Base):
    """Creative-rotation settings and guardrail state for one Meta campaign."""
    __tablename__ = "smart_configs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    page_id: Mapped[str] = mapped_column(String(64), nullable=False)
    link: Mapped[str] = mapped_column(Text, nullable=True)
    kpi: Mapped[str] = mapped_column(String(20), default="cpc")
    asset_types: Mapped[str] = mapped_column(String(10), default="both")  # image, video, both
    daily_budget: Mapped[float] = mapped_column(Float, default=0.0)
    flight_start: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    flight_end: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    flight_hours: Mapped[float] = mapped_column(Float, default=0.0)
    # int (same count for every requested kind) or {"images": n, "videos": m}
    override_count_per_type: Mapped[dict] = mapped_column(JSON, nullable=True)
    force_two_per_type: Mapped[bool] = mapped_column(Boolean, default=False)
    thresholds: Mapped[dict] = mapped_column(JSON, nullable=True)
    stop_rules: Mapped[dict] = mapped_column(JSON, nullable=True)
    # {form, answers, url} handed to the renderer on scheduled runs
    creative_context: Mapped[dict] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_run_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    total_runs: Mapped[int] = mapped_column(Integer, default=0)
    # {"adsets": {adset_id: {champion_ad_id, winner_committed_at, plateau_since, last_spawn_at}}}
    state: Mapped[dict] = mapped_column(JSON, nullable=True)
    # Cross-process run lease
    lock_token: Mapped[str] = mapped_column(String(64), nullable=True)
    locked_until: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("campaign_id", name="uq_smart_config_campaign"),
        Index("ix_smart_configs_is_active", "is_active"),
    )


# ══════════════════════════════════════════════════════════════════════
#  SMART RUNS: Append-only ledger of executed cycles
# ══════════════════════════════════════════════════════════════════════

class SmartRun(Base):
    """One executed optimization cycle. Never updated after insert."""
    __tablename__ = "smart_runs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    mode: Mapped[str] = mapped_column(String(20), nullable=False)  # initial / plateau / stop_rules_commit
    trigger: Mapped[str] = mapped_column(String(20), default="manual")  # manual / sweep
    status: Mapped[str] = mapped_column(String(20), default=RunStatus.COMPLETED.value)
    dry_run: Mapped[bool] = mapped_column(Boolean, default=False)
    plateau_by_adset: Mapped[dict] = mapped_column(JSON, nullable=True)
    variant_plan: Mapped[dict] = mapped_column(JSON, nullable=True)
    created_ads_by_adset: Mapped[dict] = mapped_column(JSON, nullable=True)
    paused_ads_by_adset: Mapped[dict] = mapped_column(JSON, nullable=True)
    variant_map_by_adset: Mapped[dict] = mapped_column(JSON, nullable=True)
    champion_by_adset: Mapped[dict] = mapped_column(JSON, nullable=True)
    shortfall: Mapped[dict] = mapped_column(JSON, nullable=True)
    errors: Mapped[list] = mapped_column(JSON, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    completed_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    creatives: Mapped[list["CreativeHistory"]] = relationship("CreativeHistory", back_populates="run")

    __table_args__ = (
        Index("ix_smart_runs_campaign_id", "campaign_id"),
        Index("ix_smart_runs_completed_at", "completed_at"),
    )


# ══════════════════════════════════════════════════════════════════════
#  CREATIVE HISTORY: One row per ad created by a run
# ══════════════════════════════════════════════════════════════════════

class CreativeHistory(Base):
    """An ad created from a generated variant."""
    __tablename__ = "creative_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    run_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("smart_runs.id", ondelete="CASCADE"), nullable=True)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False)
    adset_id: Mapped[str] = mapped_column(String(64), nullable=False)
    ad_id: Mapped[str] = mapped_column(String(64), nullable=False)
    variant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(10), nullable=False)  # image / video
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    run: Mapped["SmartRun"] = relationship("SmartRun", back_populates="creatives")

    __table_args__ = (
        Index("ix_creative_history_campaign_id", "campaign_id"),
        Index("ix_creative_history_adset_created", "adset_id", "created_at"),
    )
