"""Create smart_configs, smart_runs, creative_history and platform_credentials.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    existing = set(sa.inspect(conn).get_table_names())

    if "platform_credentials" not in existing:
        op.create_table(
            "platform_credentials",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("access_token", sa.Text(), nullable=False),
            sa.Column("token_expires_at", sa.DateTime(), nullable=True),
            sa.Column("status", sa.String(20), nullable=True, server_default="active"),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.PrimaryKeyConstraint("id"),
        )

    if "smart_configs" not in existing:
        op.create_table(
            "smart_configs",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("campaign_id", sa.String(64), nullable=False),
            sa.Column("account_id", sa.String(64), nullable=False),
            sa.Column("page_id", sa.String(64), nullable=False),
            sa.Column("link", sa.Text(), nullable=True),
            sa.Column("kpi", sa.String(20), nullable=True, server_default="cpc"),
            sa.Column("asset_types", sa.String(10), nullable=True, server_default="both"),
            sa.Column("daily_budget", sa.Float(), nullable=True, server_default="0"),
            sa.Column("flight_start", sa.DateTime(), nullable=True),
            sa.Column("flight_end", sa.DateTime(), nullable=True),
            sa.Column("flight_hours", sa.Float(), nullable=True, server_default="0"),
            sa.Column("override_count_per_type", sa.JSON(), nullable=True),
            sa.Column("force_two_per_type", sa.Boolean(), nullable=True, server_default=sa.false()),
            sa.Column("thresholds", sa.JSON(), nullable=True),
            sa.Column("stop_rules", sa.JSON(), nullable=True),
            sa.Column("creative_context", sa.JSON(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
            sa.Column("last_run_at", sa.DateTime(), nullable=True),
            sa.Column("total_runs", sa.Integer(), nullable=True, server_default="0"),
            sa.Column("state", sa.JSON(), nullable=True),
            sa.Column("lock_token", sa.String(64), nullable=True),
            sa.Column("locked_until", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("campaign_id", name="uq_smart_config_campaign"),
        )
        op.create_index("ix_smart_configs_is_active", "smart_configs", ["is_active"], unique=False)

    if "smart_runs" not in existing:
        op.create_table(
            "smart_runs",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("campaign_id", sa.String(64), nullable=False),
            sa.Column("account_id", sa.String(64), nullable=False),
            sa.Column("mode", sa.String(20), nullable=False),
            sa.Column("trigger", sa.String(20), nullable=True, server_default="manual"),
            sa.Column("status", sa.String(20), nullable=True, server_default="completed"),
            sa.Column("dry_run", sa.Boolean(), nullable=True, server_default=sa.false()),
            sa.Column("plateau_by_adset", sa.JSON(), nullable=True),
            sa.Column("variant_plan", sa.JSON(), nullable=True),
            sa.Column("created_ads_by_adset", sa.JSON(), nullable=True),
            sa.Column("paused_ads_by_adset", sa.JSON(), nullable=True),
            sa.Column("variant_map_by_adset", sa.JSON(), nullable=True),
            sa.Column("champion_by_adset", sa.JSON(), nullable=True),
            sa.Column("shortfall", sa.JSON(), nullable=True),
            sa.Column("errors", sa.JSON(), nullable=True),
            sa.Column("started_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.Column("completed_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_smart_runs_campaign_id", "smart_runs", ["campaign_id"], unique=False)
        op.create_index("ix_smart_runs_completed_at", "smart_runs", ["completed_at"], unique=False)

    if "creative_history" not in existing:
        op.create_table(
            "creative_history",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("run_id", sa.Uuid(), nullable=True),
            sa.Column("campaign_id", sa.String(64), nullable=False),
            sa.Column("adset_id", sa.String(64), nullable=False),
            sa.Column("ad_id", sa.String(64), nullable=False),
            sa.Column("variant_id", sa.String(64), nullable=False),
            sa.Column("kind", sa.String(10), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.ForeignKeyConstraint(["run_id"], ["smart_runs.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_creative_history_campaign_id", "creative_history", ["campaign_id"], unique=False)
        op.create_index(
            "ix_creative_history_adset_created", "creative_history", ["adset_id", "created_at"], unique=False,
        )


def downgrade() -> None:
    op.drop_index("ix_creative_history_adset_created", table_name="creative_history")
    op.drop_index("ix_creative_history_campaign_id", table_name="creative_history")
    op.drop_table("creative_history")
    op.drop_index("ix_smart_runs_completed_at", table_name="smart_runs")
    op.drop_index("ix_smart_runs_campaign_id", table_name="smart_runs")
    op.drop_table("smart_runs")
    op.drop_index("ix_smart_configs_is_active", table_name="smart_configs")
    op.drop_table("smart_configs")
    op.drop_table("platform_credentials")
