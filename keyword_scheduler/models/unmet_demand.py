"""Unmet-demand terms and the per-user rows that back their distinct counts."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from keyword_scheduler.models.base import Base, StringUUID, TimestampMixin, UUIDMixin

UnmetReason = Literal["unresolved", "low_result"]


class UnmetDemandTerm(Base, UUIDMixin, TimestampMixin):
    """User-stated term that did not map to an entity or produced poor results."""

    __tablename__ = "unmet_demand_terms"
    __table_args__ = (
        UniqueConstraint("normalized_term", "reason", "coverage_key"),
        Index("ix_unmet_demand_terms_coverage_seen", "coverage_key", "last_seen_at"),
    )

    term: Mapped[str] = mapped_column(String(255), nullable=False)
    normalized_term: Mapped[str] = mapped_column(String(255), nullable=False)
    coverage_key: Mapped[str] = mapped_column(String(255), nullable=False)
    reason: Mapped[str] = mapped_column(String(20), nullable=False)
    distinct_user_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_outcome: Mapped[str | None] = mapped_column(String(20), nullable=True)
    cooldown_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    linked_entity_id: Mapped[str | None] = mapped_column(
        String(64),
        ForeignKey("entities.entity_id", ondelete="SET NULL"),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<UnmetDemandTerm {self.coverage_key}:{self.normalized_term} ({self.reason})>"


class UnmetDemandContribution(Base):
    """One distinct user's contribution to an unmet-demand term.

    ``created_at`` is the first request and ``last_seen_at`` the latest one;
    repeats from the same user move ``last_seen_at`` only.
    """

    __tablename__ = "unmet_demand_contributions"

    request_id: Mapped[str] = mapped_column(
        StringUUID(),
        ForeignKey("unmet_demand_terms.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )
    last_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )
