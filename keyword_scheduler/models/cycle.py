"""Append-only cycle records."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from sqlalchemy import DateTime, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from keyword_scheduler.models.base import Base, StringUUID

CycleSource = Literal["scheduled", "hot_spike", "manual"]


class CycleRecord(Base):
    """One finished scheduling run for a coverage area. Never updated."""

    __tablename__ = "cycle_records"
    __table_args__ = (
        Index("ix_cycle_records_coverage_finished", "coverage_key", "finished_at"),
    )

    cycle_id: Mapped[str] = mapped_column(StringUUID(), primary_key=True)
    coverage_key: Mapped[str] = mapped_column(String(255), nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    selected_keywords: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, nullable=False)
    deduped_out_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    budget_by_slice: Mapped[dict[str, int]] = mapped_column(JSONB, nullable=False)
    summary: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)

    def __repr__(self) -> str:
        return f"<CycleRecord {self.cycle_id} {self.coverage_key} ({self.source})>"
