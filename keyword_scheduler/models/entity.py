"""Entity catalog, source engagement events and cached demand metrics."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from keyword_scheduler.models.base import Base, StringUUID, TimestampMixin, UUIDMixin

EntityCategory = Literal["place", "dish", "attribute"]
EngagementEventType = Literal["favorite", "view", "selection", "search"]


class Entity(Base, TimestampMixin):
    """A named thing eligible for refresh, owned by the enrichment pipeline."""

    __tablename__ = "entities"

    entity_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    last_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    quality_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    locality_key: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    # Written by this service after an entity-backed term is selected
    last_selected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Entity {self.entity_id} {self.category}:{self.name}>"


class EngagementEvent(Base, UUIDMixin):
    """Raw user action against an entity (written by the event ingestion service)."""

    __tablename__ = "engagement_events"
    __table_args__ = (
        Index("ix_engagement_events_entity_occurred", "entity_id", "occurred_at"),
        Index("ix_engagement_events_search_id", "search_id"),
    )

    entity_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("entities.entity_id", ondelete="CASCADE"),
        nullable=False,
    )
    event_type: Mapped[str] = mapped_column(String(20), nullable=False)
    user_id: Mapped[str | None] = mapped_column(StringUUID(), nullable=True)
    search_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    coverage_key: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class DemandMetric(Base):
    """Windowed distinct-user demand aggregate for one entity.

    Rows are replaced wholesale on every recomputation.
    """

    __tablename__ = "demand_metrics"

    entity_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("entities.entity_id", ondelete="CASCADE"),
        primary_key=True,
    )
    window_days: Mapped[int] = mapped_column(Integer, primary_key=True)
    distinct_favoriters: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    distinct_high_intent_users: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    distinct_query_users: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    query_credit: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<DemandMetric {self.entity_id} window={self.window_days}d>"
