"""Per-cycle budget slicing and priority-ordered merge across slices."""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping, Sequence

from keyword_scheduler.core.exceptions import AllocationUnderfill
from keyword_scheduler.services.selection.selection_config import SelectionConfig
from keyword_scheduler.services.selection.types import (
    ALL_SLICES,
    SLICE_PRIORITY,
    AllocationResult,
    DedupeDrop,
    KeywordCandidate,
)

logger = logging.getLogger(__name__)

# Guards against 0.32 * 25 landing just below 8.0.
_FLOOR_EPSILON = 1e-9


def compute_sub_budgets(cycle_budget: int, shares: Mapping[str, float]) -> dict[str, int]:
    """Floor each slice's share of the budget and give the remainder to refresh."""
    budget = max(0, int(cycle_budget))
    sub_budgets = {
        slice_name: int(math.floor(budget * shares.get(slice_name, 0.0) + _FLOOR_EPSILON))
        for slice_name in ALL_SLICES
    }
    remainder = budget - sum(sub_budgets.values())
    if remainder > 0:
        sub_budgets["refresh"] += remainder
    return sub_budgets


class _SliceMerger:
    """Walks each slice pool once, skipping terms already taken by earlier picks."""

    def __init__(self, pools: Mapping[str, Sequence[KeywordCandidate]]) -> None:
        self._pools = pools
        self._cursors = {slice_name: 0 for slice_name in pools}
        self._taken: dict[str, KeywordCandidate] = {}
        self.final_list: list[KeywordCandidate] = []
        self.dropped: list[DedupeDrop] = []

    def fill(self, slice_name: str, quota: int) -> int:
        pool = self._pools[slice_name]
        added = 0
        while added < quota and self._cursors[slice_name] < len(pool):
            candidate = pool[self._cursors[slice_name]]
            self._cursors[slice_name] += 1
            holder = self._taken.get(candidate.normalized_term)
            if holder is not None:
                reason = "duplicate" if holder.slice == candidate.slice else "cross_slice_duplicate"
                self.dropped.append(
                    DedupeDrop(
                        normalized_term=candidate.normalized_term,
                        display_term=candidate.display_term,
                        slice=candidate.slice,
                        reason=reason,
                        score=candidate.score,
                        kept_slice=holder.slice,
                    )
                )
                continue
            self._taken[candidate.normalized_term] = candidate
            self.final_list.append(candidate)
            added += 1
        return added


def allocate(
    cycle_budget: int,
    refresh: Sequence[KeywordCandidate],
    demand: Sequence[KeywordCandidate],
    unmet: Sequence[KeywordCandidate],
    explore: Sequence[KeywordCandidate],
    *,
    config: SelectionConfig,
) -> AllocationResult:
    """Merge the four slice pools into one bounded, distinct final list.

    Each pool must already be deduplicated and score-sorted. Slices are merged
    in priority order (unmet, refresh, demand, explore), each up to its
    sub-budget; a term taken by a higher-priority slice is dropped from lower
    ones and the lower slice backfills from its own pool. When enabled,
    budget left by exhausted slices is then offered to the remaining
    candidates of every slice, again in priority order.
    """
    pools: dict[str, Sequence[KeywordCandidate]] = {
        "refresh": refresh,
        "demand": demand,
        "unmet": unmet,
        "explore": explore,
    }
    sub_budgets = compute_sub_budgets(cycle_budget, config.slice_shares)
    merger = _SliceMerger(pools)
    filled = {slice_name: 0 for slice_name in ALL_SLICES}
    underfilled: dict[str, dict[str, int]] = {}

    for slice_name in SLICE_PRIORITY:
        requested = sub_budgets[slice_name]
        filled[slice_name] = merger.fill(slice_name, requested)
        if filled[slice_name] < requested:
            shortfall = AllocationUnderfill(slice_name, requested, filled[slice_name])
            underfilled[slice_name] = {"requested": requested, "filled": filled[slice_name]}
            logger.info(shortfall.message, extra=shortfall.details)

    redistributed = 0
    if config.redistribute_unused_budget:
        remaining = max(0, cycle_budget) - len(merger.final_list)
        for slice_name in SLICE_PRIORITY:
            if remaining <= 0:
                break
            added = merger.fill(slice_name, remaining)
            filled[slice_name] += added
            redistributed += added
            remaining -= added

    return AllocationResult(
        final_list=merger.final_list,
        sub_budgets=sub_budgets,
        budget_by_slice=filled,
        underfilled_by_slice=underfilled,
        dropped=merger.dropped,
        redistributed=redistributed,
    )
