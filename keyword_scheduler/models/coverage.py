"""Coverage area registry."""

from __future__ import annotations

from typing import Literal

from sqlalchemy import Boolean, Float, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from keyword_scheduler.models.base import Base, TimestampMixin, UUIDMixin

CoverageSourceType = Literal["full", "identity-only"]


class CoverageArea(Base, UUIDMixin, TimestampMixin):
    """Canonical identity of a locality and the search targets that serve it."""

    __tablename__ = "coverage_areas"

    coverage_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source_type: Mapped[str] = mapped_column(String(20), default="full", nullable=False)
    execution_targets: Mapped[list[str]] = mapped_column(JSONB, default=list, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)

    # Activity-derived cadence
    avg_posts_per_day: Mapped[float | None] = mapped_column(Float, nullable=True)
    safe_interval_days: Mapped[float] = mapped_column(Float, default=7.0, nullable=False)

    # Geometry
    center_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    center_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    viewport_ne_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    viewport_ne_lng: Mapped[float | None] = mapped_column(Float, nullable=True)
    viewport_sw_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    viewport_sw_lng: Mapped[float | None] = mapped_column(Float, nullable=True)

    def __repr__(self) -> str:
        return f"<CoverageArea {self.coverage_key} ({self.source_type})>"
