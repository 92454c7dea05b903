"""Per-coverage attempt history for dispatched keyword terms."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from keyword_scheduler.models.base import Base, TimestampMixin

KeywordAttemptOutcome = Literal["success", "no_results", "error", "deferred"]


class KeywordAttemptHistory(Base, TimestampMixin):
    """Last attempt, outcome and cooldown for one term in one coverage area."""

    __tablename__ = "keyword_attempt_history"

    coverage_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    normalized_term: Mapped[str] = mapped_column(String(255), primary_key=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_success_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_outcome: Mapped[str | None] = mapped_column(String(20), nullable=True)
    cooldown_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
