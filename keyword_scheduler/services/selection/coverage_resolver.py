"""Locality hint resolution to canonical coverage areas."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from time import monotonic

from keyword_scheduler.core.db_kernel import DbKernelError
from keyword_scheduler.core.exceptions import UnresolvableLocality
from keyword_scheduler.repositories.coverage_repository import CoverageRepository
from keyword_scheduler.services.selection.normalization import slugify
from keyword_scheduler.services.selection.types import CoverageAreaView, LocalityHint

logger = logging.getLogger(__name__)

SAFE_INTERVAL_POSTS_BUDGET = 750.0
MIN_SAFE_INTERVAL_DAYS = 7.0
MAX_SAFE_INTERVAL_DAYS = 60.0
DEFAULT_SAFE_INTERVAL_DAYS = 7.0


def calculate_safe_interval_days(avg_posts_per_day: float | None) -> float:
    """Days between heavy refresh passes: ``750 / posts per day`` clamped to [7, 60]."""
    if avg_posts_per_day is None or avg_posts_per_day <= 0:
        return DEFAULT_SAFE_INTERVAL_DAYS
    interval = SAFE_INTERVAL_POSTS_BUDGET / avg_posts_per_day
    return max(MIN_SAFE_INTERVAL_DAYS, min(MAX_SAFE_INTERVAL_DAYS, interval))


def canonical_coverage_key(hint: LocalityHint) -> str | None:
    """``locality_region_country`` slug, or None when locality or country is missing."""
    locality = slugify(hint.locality)
    country = slugify(hint.country)
    if not locality or not country:
        return None
    parts = [locality, slugify(hint.region), country]
    return "_".join(part for part in parts if part)


class CoverageResolver:
    """Resolves hints by exact key, then smallest enclosing viewport, then synthesis.

    Active areas are cached in-process; when a cache refresh fails the stale
    copy keeps serving until the next successful read.
    """

    def __init__(
        self,
        *,
        repository: CoverageRepository | None = None,
        cache_ttl_seconds: float = 300.0,
        read_timeout_seconds: float = 20.0,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self.repository = repository or CoverageRepository()
        self.cache_ttl_seconds = cache_ttl_seconds
        self.read_timeout_seconds = read_timeout_seconds
        self._clock = clock
        self._cached: list[CoverageAreaView] | None = None
        self._cached_at = 0.0
        self._lock = asyncio.Lock()

    def invalidate(self) -> None:
        self._cached = None

    async def active_areas(self) -> list[CoverageAreaView]:
        async with self._lock:
            fresh = (
                self._cached is not None
                and self._clock() - self._cached_at < self.cache_ttl_seconds
            )
            if fresh:
                return list(self._cached or [])
            try:
                areas = await asyncio.wait_for(
                    self.repository.list_active(),
                    timeout=self.read_timeout_seconds,
                )
            except (DbKernelError, TimeoutError):
                if self._cached is None:
                    raise
                logger.warning(
                    "Coverage cache refresh failed, serving stale copy",
                    extra={"cached_areas": len(self._cached)},
                )
                return list(self._cached)
            self._cached = areas
            self._cached_at = self._clock()
            return list(areas)

    async def resolve(self, hint: LocalityHint, *, allow_create: bool = True) -> CoverageAreaView:
        areas = await self.active_areas()
        by_key = {area.coverage_key: area for area in areas}

        if hint.coverage_key:
            exact = by_key.get(hint.coverage_key)
            if exact is None:
                exact = await self._get_by_key(hint.coverage_key)
            if exact is not None:
                return exact

        if hint.has_coordinates:
            enclosing = self._smallest_enclosing(areas, hint)
            if enclosing is not None:
                return enclosing

        key = canonical_coverage_key(hint)
        if key is None:
            raise UnresolvableLocality(hint.describe())
        if key in by_key:
            return by_key[key]
        stored = await self._get_by_key(key)
        if stored is not None:
            return stored
        if not allow_create:
            raise UnresolvableLocality(hint.describe())

        area = await self.repository.insert_identity_only(
            coverage_key=key,
            display_name=hint.display_name or ", ".join(
                part for part in (hint.locality, hint.region, hint.country) if part
            ),
            center_latitude=hint.latitude,
            center_longitude=hint.longitude,
        )
        self.invalidate()
        return area

    async def _get_by_key(self, coverage_key: str) -> CoverageAreaView | None:
        return await asyncio.wait_for(
            self.repository.get_by_key(coverage_key),
            timeout=self.read_timeout_seconds,
        )

    @staticmethod
    def _smallest_enclosing(
        areas: list[CoverageAreaView],
        hint: LocalityHint,
    ) -> CoverageAreaView | None:
        assert hint.latitude is not None and hint.longitude is not None
        latitude, longitude = hint.latitude, hint.longitude
        enclosing = [area for area in areas if area.contains(latitude, longitude)]
        if not enclosing:
            return None
        return min(
            enclosing,
            key=lambda area: (
                area.viewport_area,
                area.distance_km(latitude, longitude),
                area.coverage_key,
            ),
        )


class CoverageRegistry:
    """Operator-side updates to coverage activity."""

    def __init__(self, *, repository: CoverageRepository | None = None) -> None:
        self.repository = repository or CoverageRepository()

    async def update_activity(self, coverage_key: str, avg_posts_per_day: float | None) -> float:
        """Store observed activity and return the derived safe interval."""
        safe_interval = calculate_safe_interval_days(avg_posts_per_day)
        updated = await self.repository.update_activity(
            coverage_key,
            avg_posts_per_day=avg_posts_per_day,
            safe_interval_days=safe_interval,
        )
        if not updated:
            logger.warning("Coverage area not found for activity update", extra={"coverage_key": coverage_key})
        return safe_interval
