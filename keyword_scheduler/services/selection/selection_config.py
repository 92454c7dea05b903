"""Immutable selection configuration passed into every cycle."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from keyword_scheduler.config import Settings

QualityPolicy = Literal["exclude", "dampen"]
QueryAttribution = Literal["distinct_user", "split", "per_search"]
NormalizationStrategy = Literal["basic", "folded"]

_SHARE_TOLERANCE = 1e-6


def _default_shares() -> dict[str, float]:
    return {"refresh": 0.40, "demand": 0.32, "unmet": 0.20, "explore": 0.08}


@dataclass(slots=True, frozen=True)
class SelectionConfig:
    """Every weight, threshold and budget share used by the selection pipeline."""

    cycle_budget: int = 25
    slice_shares: dict[str, float] = field(default_factory=_default_shares)
    redistribute_unused_budget: bool = True

    # Refresh
    staleness_horizon_days: float = 120.0
    min_staleness_days: float = 14.0
    quality_floor: float = 0.3
    quality_policy: QualityPolicy = "dampen"

    # Demand
    demand_window_days: int = 30
    demand_weight_favorites: float = 0.4
    demand_weight_high_intent: float = 0.4
    demand_weight_query: float = 0.2
    favorite_users_cap: int = 10
    high_intent_users_cap: int = 25
    query_users_cap: int = 50
    query_attribution: QueryAttribution = "distinct_user"

    # Unmet demand
    unmet_min_users: int = 1
    unmet_users_cap: int = 25
    unmet_half_life_days: float = 7.0
    no_results_penalty: float = 0.3
    no_results_penalty_window_days: float = 60.0
    no_results_cooldown_floor_days: float = 60.0
    no_results_cooldown_multiplier: float = 3.0
    error_cooldown_hours: float = 24.0
    deferred_cooldown_hours: float = 6.0
    hot_spike_threshold: int = 5
    contribution_retention_days: int = 90

    # Explore
    trend_window_days: int = 7
    explore_recent_attempt_days: float = 30.0
    explore_high_intent_floor: int = 2
    explore_favorite_floor: int = 1
    explore_unmet_floor: int = 2

    # Normalization
    normalization_strategy: NormalizationStrategy = "basic"
    max_term_length: int = 100

    def __post_init__(self) -> None:
        if self.cycle_budget < 0:
            raise ValueError("cycle_budget must be >= 0")
        missing = {"refresh", "demand", "unmet", "explore"} - set(self.slice_shares)
        if missing:
            raise ValueError(f"slice_shares missing slices: {sorted(missing)}")
        if any(share < 0 for share in self.slice_shares.values()):
            raise ValueError("slice_shares must be non-negative")
        total = math.fsum(self.slice_shares.values())
        if abs(total - 1.0) > _SHARE_TOLERANCE:
            raise ValueError(f"slice_shares must sum to 1.0, got {total:.6f}")
        if self.staleness_horizon_days <= 0:
            raise ValueError("staleness_horizon_days must be > 0")
        if self.unmet_half_life_days <= 0:
            raise ValueError("unmet_half_life_days must be > 0")

    @classmethod
    def from_settings(cls, settings: "Settings") -> "SelectionConfig":
        """Build the per-run configuration from application settings."""
        return cls(
            cycle_budget=settings.cycle_budget,
            slice_shares={
                "refresh": settings.slice_share_refresh,
                "demand": settings.slice_share_demand,
                "unmet": settings.slice_share_unmet,
                "explore": settings.slice_share_explore,
            },
            redistribute_unused_budget=settings.redistribute_unused_budget,
            staleness_horizon_days=settings.staleness_horizon_days,
            min_staleness_days=settings.min_staleness_days,
            quality_floor=settings.quality_floor,
            quality_policy=settings.quality_policy,
            demand_window_days=settings.demand_window_days,
            demand_weight_favorites=settings.demand_weight_favorites,
            demand_weight_high_intent=settings.demand_weight_high_intent,
            demand_weight_query=settings.demand_weight_query,
            favorite_users_cap=settings.favorite_users_cap,
            high_intent_users_cap=settings.high_intent_users_cap,
            query_users_cap=settings.query_users_cap,
            query_attribution=settings.query_attribution,
            unmet_min_users=settings.unmet_min_users,
            unmet_users_cap=settings.unmet_users_cap,
            unmet_half_life_days=settings.unmet_half_life_days,
            no_results_penalty=settings.no_results_penalty,
            no_results_penalty_window_days=settings.no_results_penalty_window_days,
            no_results_cooldown_floor_days=settings.no_results_cooldown_floor_days,
            no_results_cooldown_multiplier=settings.no_results_cooldown_multiplier,
            error_cooldown_hours=settings.error_cooldown_hours,
            deferred_cooldown_hours=settings.deferred_cooldown_hours,
            hot_spike_threshold=settings.hot_spike_threshold,
            contribution_retention_days=settings.contribution_retention_days,
            trend_window_days=settings.trend_window_days,
            explore_recent_attempt_days=settings.explore_recent_attempt_days,
            explore_high_intent_floor=settings.explore_high_intent_floor,
            explore_favorite_floor=settings.explore_favorite_floor,
            explore_unmet_floor=settings.explore_unmet_floor,
            normalization_strategy=settings.normalization_strategy,
            max_term_length=settings.max_term_length,
        )
