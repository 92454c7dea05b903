"""Domain types shared by the keyword selection pipeline."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

KeywordSlice = Literal["refresh", "demand", "unmet", "explore"]
KeywordOutcome = Literal["success", "no_results", "error", "deferred"]
CycleSource = Literal["scheduled", "hot_spike", "manual"]
UnmetReason = Literal["unresolved", "low_result"]
DropReason = Literal["duplicate", "cross_slice_duplicate", "invalid", "cooldown"]

# Merge order for the allocator, highest priority first.
SLICE_PRIORITY: tuple[KeywordSlice, ...] = ("unmet", "refresh", "demand", "explore")
ALL_SLICES: tuple[KeywordSlice, ...] = ("refresh", "demand", "unmet", "explore")
KEYWORD_OUTCOMES: frozenset[str] = frozenset({"success", "no_results", "error", "deferred"})
UNMET_REASONS: frozenset[str] = frozenset({"unresolved", "low_result"})
CYCLE_SOURCES: frozenset[str] = frozenset({"scheduled", "hot_spike", "manual"})

_EARTH_RADIUS_KM = 6371.0088


@dataclass(slots=True, frozen=True)
class KeywordCandidate:
    """One scored term competing for a slot in a cycle."""

    normalized_term: str
    display_term: str
    slice: KeywordSlice
    score: float
    source_entity_id: str | None = None
    source_request_id: str | None = None

    @property
    def tie_break_key(self) -> str:
        """Stable secondary ordering key for equal scores."""
        return self.source_entity_id or self.source_request_id or self.normalized_term

    def to_dict(self) -> dict[str, Any]:
        return {
            "normalized_term": self.normalized_term,
            "display_term": self.display_term,
            "slice": self.slice,
            "score": self.score,
            "source_entity_id": self.source_entity_id,
            "source_request_id": self.source_request_id,
        }


@dataclass(slots=True, frozen=True)
class EntitySnapshot:
    """Read-only view of a catalog entity at cycle time."""

    entity_id: str
    name: str
    category: str
    last_updated_at: datetime
    quality_score: float = 0.0
    locality_key: str | None = None
    last_selected_at: datetime | None = None


@dataclass(slots=True, frozen=True)
class DemandSignals:
    """Windowed distinct-user demand for one entity."""

    entity_id: str
    window_days: int
    distinct_favoriters: int = 0
    distinct_high_intent_users: int = 0
    distinct_query_users: int = 0
    query_credit: float = 0.0
    computed_at: datetime | None = None
    degraded: bool = False

    @classmethod
    def zero(
        cls,
        entity_id: str,
        window_days: int,
        *,
        computed_at: datetime | None = None,
        degraded: bool = False,
    ) -> "DemandSignals":
        return cls(
            entity_id=entity_id,
            window_days=window_days,
            computed_at=computed_at,
            degraded=degraded,
        )

    @property
    def has_signal(self) -> bool:
        return (
            self.distinct_favoriters > 0
            or self.distinct_high_intent_users > 0
            or self.query_credit > 0
        )


@dataclass(slots=True, frozen=True)
class TrendSignals:
    """Query-user counts used by the explore slice."""

    entity_id: str
    recent_query_users: int = 0
    previous_query_users: int = 0
    local_query_users: int = 0
    global_query_users: int = 0


@dataclass(slots=True, frozen=True)
class DedupeDrop:
    """A candidate removed before or during allocation, with the reason."""

    normalized_term: str
    display_term: str
    slice: KeywordSlice
    reason: DropReason
    score: float
    kept_slice: KeywordSlice | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "normalized_term": self.normalized_term,
            "display_term": self.display_term,
            "slice": self.slice,
            "dedupe_reason": self.reason,
            "score": self.score,
            "kept_slice": self.kept_slice,
        }


@dataclass(slots=True)
class DedupeResult:
    kept: list[KeywordCandidate] = field(default_factory=list)
    dropped: list[DedupeDrop] = field(default_factory=list)


@dataclass(slots=True)
class AllocationResult:
    """Final ordered list plus the per-slice accounting for the cycle record."""

    final_list: list[KeywordCandidate]
    sub_budgets: dict[str, int]
    budget_by_slice: dict[str, int]
    underfilled_by_slice: dict[str, dict[str, int]] = field(default_factory=dict)
    dropped: list[DedupeDrop] = field(default_factory=list)
    redistributed: int = 0

    @property
    def deduped_out_count(self) -> int:
        return sum(
            1 for drop in self.dropped if drop.reason in {"duplicate", "cross_slice_duplicate"}
        )


@dataclass(slots=True, frozen=True)
class LocalityHint:
    """Caller-supplied locality: an explicit key, coordinates, and/or admin names."""

    coverage_key: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    locality: str | None = None
    region: str | None = None
    country: str | None = None
    display_name: str | None = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def describe(self) -> str:
        parts = [
            f"{name}={value}"
            for name, value in (
                ("coverage_key", self.coverage_key),
                ("lat", self.latitude),
                ("lng", self.longitude),
                ("locality", self.locality),
                ("region", self.region),
                ("country", self.country),
            )
            if value not in (None, "")
        ]
        return ", ".join(parts) or "<empty hint>"


@dataclass(slots=True, frozen=True)
class CoverageAreaView:
    """Immutable coverage area snapshot used during a cycle."""

    coverage_key: str
    display_name: str | None = None
    source_type: str = "full"
    execution_targets: tuple[str, ...] = ()
    safe_interval_days: float = 7.0
    center_latitude: float | None = None
    center_longitude: float | None = None
    viewport_ne_lat: float | None = None
    viewport_ne_lng: float | None = None
    viewport_sw_lat: float | None = None
    viewport_sw_lng: float | None = None
    is_active: bool = True

    @property
    def is_executable(self) -> bool:
        return self.source_type == "full" and bool(self.execution_targets)

    @property
    def has_viewport(self) -> bool:
        return None not in (
            self.viewport_ne_lat,
            self.viewport_ne_lng,
            self.viewport_sw_lat,
            self.viewport_sw_lng,
        )

    def _longitude_span(self) -> float:
        assert self.viewport_ne_lng is not None and self.viewport_sw_lng is not None
        span = self.viewport_ne_lng - self.viewport_sw_lng
        # Viewports crossing the antimeridian have sw_lng > ne_lng.
        return span if span >= 0 else span + 360.0

    def contains(self, latitude: float, longitude: float) -> bool:
        if not self.has_viewport:
            return False
        assert self.viewport_sw_lat is not None and self.viewport_ne_lat is not None
        assert self.viewport_sw_lng is not None and self.viewport_ne_lng is not None
        if not self.viewport_sw_lat <= latitude <= self.viewport_ne_lat:
            return False
        if self.viewport_sw_lng <= self.viewport_ne_lng:
            return self.viewport_sw_lng <= longitude <= self.viewport_ne_lng
        return longitude >= self.viewport_sw_lng or longitude <= self.viewport_ne_lng

    @property
    def viewport_area(self) -> float:
        """Viewport size in squared degrees (only used for relative comparison)."""
        if not self.has_viewport:
            return math.inf
        assert self.viewport_sw_lat is not None and self.viewport_ne_lat is not None
        return (self.viewport_ne_lat - self.viewport_sw_lat) * self._longitude_span()

    def distance_km(self, latitude: float, longitude: float) -> float:
        if self.center_latitude is None or self.center_longitude is None:
            return math.inf
        return haversine_km(self.center_latitude, self.center_longitude, latitude, longitude)


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two coordinates in kilometers."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * _EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))
