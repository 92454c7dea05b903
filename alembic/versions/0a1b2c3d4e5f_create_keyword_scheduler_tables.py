"""create keyword scheduler tables

Revision ID: 0a1b2c3d4e5f
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op
from keyword_scheduler.models.base import StringUUID

# revision identifiers, used by Alembic.
revision: str = "0a1b2c3d4e5f"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "entities",
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("category", sa.String(length=20), nullable=False),
        sa.Column("last_updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("quality_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("locality_key", sa.String(length=255), nullable=True),
        sa.Column("last_selected_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("entity_id", name=op.f("pk_entities")),
    )
    op.create_index(op.f("ix_entities_category"), "entities", ["category"])
    op.create_index(op.f("ix_entities_locality_key"), "entities", ["locality_key"])

    op.create_table(
        "engagement_events",
        sa.Column("id", StringUUID(), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("event_type", sa.String(length=20), nullable=False),
        sa.Column("user_id", StringUUID(), nullable=True),
        sa.Column("search_id", sa.String(length=64), nullable=True),
        sa.Column("coverage_key", sa.String(length=255), nullable=True),
        sa.Column(
            "occurred_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(
            ["entity_id"],
            ["entities.entity_id"],
            name=op.f("fk_engagement_events_entity_id_entities"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_engagement_events")),
    )
    op.create_index(
        "ix_engagement_events_entity_occurred",
        "engagement_events",
        ["entity_id", "occurred_at"],
    )
    op.create_index("ix_engagement_events_search_id", "engagement_events", ["search_id"])
    op.create_index(
        op.f("ix_engagement_events_coverage_key"), "engagement_events", ["coverage_key"]
    )

    op.create_table(
        "demand_metrics",
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("window_days", sa.Integer(), nullable=False),
        sa.Column("distinct_favoriters", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("distinct_high_intent_users", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("distinct_query_users", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("query_credit", sa.Float(), nullable=False, server_default="0"),
        sa.Column("computed_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["entity_id"],
            ["entities.entity_id"],
            name=op.f("fk_demand_metrics_entity_id_entities"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("entity_id", "window_days", name=op.f("pk_demand_metrics")),
    )

    op.create_table(
        "coverage_areas",
        sa.Column("id", StringUUID(), nullable=False),
        sa.Column("coverage_key", sa.String(length=255), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        sa.Column("source_type", sa.String(length=20), nullable=False, server_default="full"),
        sa.Column(
            "execution_targets",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("avg_posts_per_day", sa.Float(), nullable=True),
        sa.Column("safe_interval_days", sa.Float(), nullable=False, server_default="7"),
        sa.Column("center_latitude", sa.Float(), nullable=True),
        sa.Column("center_longitude", sa.Float(), nullable=True),
        sa.Column("viewport_ne_lat", sa.Float(), nullable=True),
        sa.Column("viewport_ne_lng", sa.Float(), nullable=True),
        sa.Column("viewport_sw_lat", sa.Float(), nullable=True),
        sa.Column("viewport_sw_lng", sa.Float(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_coverage_areas")),
        sa.UniqueConstraint("coverage_key", name=op.f("uq_coverage_areas_coverage_key")),
    )
    op.create_index(op.f("ix_coverage_areas_is_active"), "coverage_areas", ["is_active"])

    op.create_table(
        "unmet_demand_terms",
        sa.Column("id", StringUUID(), nullable=False),
        sa.Column("term", sa.String(length=255), nullable=False),
        sa.Column("normalized_term", sa.String(length=255), nullable=False),
        sa.Column("coverage_key", sa.String(length=255), nullable=False),
        sa.Column("reason", sa.String(length=20), nullable=False),
        sa.Column("distinct_user_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_outcome", sa.String(length=20), nullable=True),
        sa.Column("cooldown_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("linked_entity_id", sa.String(length=64), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["linked_entity_id"],
            ["entities.entity_id"],
            name=op.f("fk_unmet_demand_terms_linked_entity_id_entities"),
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_unmet_demand_terms")),
        sa.UniqueConstraint(
            "normalized_term",
            "reason",
            "coverage_key",
            name=op.f("uq_unmet_demand_terms_normalized_term_reason_coverage_key"),
        ),
    )
    op.create_index(
        "ix_unmet_demand_terms_coverage_seen",
        "unmet_demand_terms",
        ["coverage_key", "last_seen_at"],
    )
    op.create_index(
        op.f("ix_unmet_demand_terms_cooldown_until"), "unmet_demand_terms", ["cooldown_until"]
    )

    op.create_table(
        "unmet_demand_contributions",
        sa.Column("request_id", StringUUID(), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "last_seen_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(
            ["request_id"],
            ["unmet_demand_terms.id"],
            name=op.f("fk_unmet_demand_contributions_request_id_unmet_demand_terms"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("request_id", "user_id", name=op.f("pk_unmet_demand_contributions")),
    )
    op.create_index(
        op.f("ix_unmet_demand_contributions_created_at"),
        "unmet_demand_contributions",
        ["created_at"],
    )
    op.create_index(
        op.f("ix_unmet_demand_contributions_last_seen_at"),
        "unmet_demand_contributions",
        ["last_seen_at"],
    )

    op.create_table(
        "keyword_attempt_history",
        sa.Column("coverage_key", sa.String(length=255), nullable=False),
        sa.Column("normalized_term", sa.String(length=255), nullable=False),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_outcome", sa.String(length=20), nullable=True),
        sa.Column("cooldown_until", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint(
            "coverage_key", "normalized_term", name=op.f("pk_keyword_attempt_history")
        ),
    )
    op.create_index(
        op.f("ix_keyword_attempt_history_cooldown_until"),
        "keyword_attempt_history",
        ["cooldown_until"],
    )

    op.create_table(
        "cycle_records",
        sa.Column("cycle_id", StringUUID(), nullable=False),
        sa.Column("coverage_key", sa.String(length=255), nullable=False),
        sa.Column("source", sa.String(length=20), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("selected_keywords", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("deduped_out_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("budget_by_slice", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("summary", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.PrimaryKeyConstraint("cycle_id", name=op.f("pk_cycle_records")),
    )
    op.create_index(
        "ix_cycle_records_coverage_finished",
        "cycle_records",
        ["coverage_key", "finished_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_cycle_records_coverage_finished", table_name="cycle_records")
    op.drop_table("cycle_records")
    op.drop_index(
        op.f("ix_keyword_attempt_history_cooldown_until"), table_name="keyword_attempt_history"
    )
    op.drop_table("keyword_attempt_history")
    op.drop_index(
        op.f("ix_unmet_demand_contributions_last_seen_at"), table_name="unmet_demand_contributions"
    )
    op.drop_index(
        op.f("ix_unmet_demand_contributions_created_at"), table_name="unmet_demand_contributions"
    )
    op.drop_table("unmet_demand_contributions")
    op.drop_index(op.f("ix_unmet_demand_terms_cooldown_until"), table_name="unmet_demand_terms")
    op.drop_index("ix_unmet_demand_terms_coverage_seen", table_name="unmet_demand_terms")
    op.drop_table("unmet_demand_terms")
    op.drop_index(op.f("ix_coverage_areas_is_active"), table_name="coverage_areas")
    op.drop_table("coverage_areas")
    op.drop_table("demand_metrics")
    op.drop_index(op.f("ix_engagement_events_coverage_key"), table_name="engagement_events")
    op.drop_index("ix_engagement_events_search_id", table_name="engagement_events")
    op.drop_index("ix_engagement_events_entity_occurred", table_name="engagement_events")
    op.drop_table("engagement_events")
    op.drop_index(op.f("ix_entities_locality_key"), table_name="entities")
    op.drop_index(op.f("ix_entities_category"), table_name="entities")
    op.drop_table("entities")
