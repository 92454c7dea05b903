"""Cycle record schemas."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class SelectedKeyword(BaseModel):
    """One entry of a cycle's final list, as consumed by search execution."""

    normalized_term: str
    display_term: str
    slice: Literal["refresh", "demand", "unmet", "explore"]
    score: float
    source_entity_id: str | None = None
    source_request_id: str | None = None


class CycleSummary(BaseModel):
    """Cycle-level accounting used for observability."""

    sub_budgets: dict[str, int] = Field(default_factory=dict)
    candidate_counts: dict[str, int] = Field(default_factory=dict)
    underfilled_by_slice: dict[str, dict[str, int]] = Field(default_factory=dict)
    dropped: list[dict[str, Any]] = Field(default_factory=list)
    degraded_signals: list[dict[str, str]] = Field(default_factory=list)
    redistributed: int = 0
    safe_interval_days: float = 7.0
    execution_targets: list[str] = Field(default_factory=list)
    dispatched: bool = False
    recorded: bool = False
    cancelled_after_dispatch: bool = False


class CycleRecordSchema(BaseModel):
    """Schema for a finished cycle."""

    cycle_id: str
    coverage_key: str
    source: Literal["scheduled", "hot_spike", "manual"]
    started_at: datetime
    finished_at: datetime
    selected_keywords: list[SelectedKeyword] = Field(default_factory=list)
    deduped_out_count: int = 0
    budget_by_slice: dict[str, int] = Field(default_factory=dict)
    summary: CycleSummary = Field(default_factory=CycleSummary)

    model_config = {"from_attributes": True}

    def find_keyword(self, normalized_term: str) -> SelectedKeyword | None:
        for keyword in self.selected_keywords:
            if keyword.normalized_term == normalized_term:
                return keyword
        return None

    def to_row_values(self) -> dict[str, Any]:
        """Column values for the append-only ``cycle_records`` table."""
        payload = self.model_dump(mode="json")
        return {
            "cycle_id": self.cycle_id,
            "coverage_key": self.coverage_key,
            "source": self.source,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "selected_keywords": payload["selected_keywords"],
            "deduped_out_count": self.deduped_out_count,
            "budget_by_slice": dict(self.budget_by_slice),
            "summary": payload["summary"],
        }
