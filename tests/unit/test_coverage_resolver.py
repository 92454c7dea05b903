"""Tests for locality resolution, the area cache and safe intervals."""

from __future__ import annotations

import asyncio

import pytest

from keyword_scheduler.core.db_kernel import TransientDbError
from keyword_scheduler.core.exceptions import UnresolvableLocality
from keyword_scheduler.services.selection.coverage_resolver import (
    CoverageRegistry,
    CoverageResolver,
    calculate_safe_interval_days,
    canonical_coverage_key,
)
from keyword_scheduler.services.selection.types import CoverageAreaView, LocalityHint


def _area(key: str, *, ne: tuple[float, float], sw: tuple[float, float], center: tuple[float, float] | None = None) -> CoverageAreaView:
    center = center or ((ne[0] + sw[0]) / 2, (ne[1] + sw[1]) / 2)
    return CoverageAreaView(
        coverage_key=key,
        display_name=key,
        execution_targets=(f"target:{key}",),
        center_latitude=center[0],
        center_longitude=center[1],
        viewport_ne_lat=ne[0],
        viewport_ne_lng=ne[1],
        viewport_sw_lat=sw[0],
        viewport_sw_lng=sw[1],
    )


METRO = _area("austin_metro_tx_us", ne=(30.6, -97.4), sw=(30.0, -98.1))
CITY = _area("austin_tx_us", ne=(30.45, -97.6), sw=(30.15, -97.9))


class _FakeCoverageRepository:
    def __init__(self, areas: list[CoverageAreaView]) -> None:
        self.areas = list(areas)
        self.list_calls = 0
        self.fail_list = False
        self.inserted: list[dict] = []
        self.activity: dict[str, tuple[float | None, float]] = {}
        self.key_delay_seconds = 0.0

    async def list_active(self) -> list[CoverageAreaView]:
        self.list_calls += 1
        if self.fail_list:
            raise TransientDbError("connection refused")
        return list(self.areas)

    async def get_by_key(self, coverage_key: str) -> CoverageAreaView | None:
        if self.key_delay_seconds:
            await asyncio.sleep(self.key_delay_seconds)
        return next((area for area in self.areas if area.coverage_key == coverage_key), None)

    async def insert_identity_only(self, *, coverage_key, display_name, center_latitude, center_longitude):
        self.inserted.append({"coverage_key": coverage_key, "display_name": display_name})
        area = CoverageAreaView(
            coverage_key=coverage_key,
            display_name=display_name,
            source_type="identity_only",
            center_latitude=center_latitude,
            center_longitude=center_longitude,
        )
        self.areas.append(area)
        return area

    async def update_activity(self, coverage_key, *, avg_posts_per_day, safe_interval_days) -> bool:
        if coverage_key not in {area.coverage_key for area in self.areas}:
            return False
        self.activity[coverage_key] = (avg_posts_per_day, safe_interval_days)
        return True


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.parametrize(
    ("avg", "expected"),
    [(None, 7.0), (0, 7.0), (500, 7.0), (50, 15.0), (5, 60.0), (12.5, 60.0)],
)
def test_safe_interval_is_clamped(avg: float | None, expected: float) -> None:
    assert calculate_safe_interval_days(avg) == pytest.approx(expected)


def test_canonical_key_requires_locality_and_country() -> None:
    assert canonical_coverage_key(LocalityHint(locality="Austin", region="TX", country="US")) == "austin_tx_us"
    assert canonical_coverage_key(LocalityHint(locality="São Paulo", country="Brazil")) == "sao_paulo_brazil"
    assert canonical_coverage_key(LocalityHint(locality="Austin")) is None
    assert canonical_coverage_key(LocalityHint(country="US")) is None


@pytest.mark.asyncio
async def test_exact_key_wins_over_coordinates() -> None:
    resolver = CoverageResolver(repository=_FakeCoverageRepository([METRO, CITY]))

    area = await resolver.resolve(LocalityHint(coverage_key="austin_metro_tx_us", latitude=30.27, longitude=-97.74))

    assert area is METRO


@pytest.mark.asyncio
async def test_coordinates_resolve_to_smallest_enclosing_area() -> None:
    resolver = CoverageResolver(repository=_FakeCoverageRepository([METRO, CITY]))

    inside_both = await resolver.resolve(LocalityHint(latitude=30.27, longitude=-97.74))
    metro_only = await resolver.resolve(LocalityHint(latitude=30.55, longitude=-97.5))

    assert inside_both is CITY
    assert metro_only is METRO


@pytest.mark.asyncio
async def test_equal_viewports_break_ties_by_center_distance() -> None:
    west = _area("west_tx_us", ne=(31.0, -97.0), sw=(30.0, -98.0), center=(30.5, -97.9))
    east = _area("east_tx_us", ne=(31.0, -97.0), sw=(30.0, -98.0), center=(30.5, -97.1))
    resolver = CoverageResolver(repository=_FakeCoverageRepository([west, east]))

    area = await resolver.resolve(LocalityHint(latitude=30.5, longitude=-97.2))

    assert area is east


@pytest.mark.asyncio
async def test_antimeridian_viewport_contains_both_sides() -> None:
    fiji = _area("suva_fj", ne=(-15.0, -178.0), sw=(-21.0, 176.0), center=(-18.0, 178.5))
    resolver = CoverageResolver(repository=_FakeCoverageRepository([fiji]))

    assert await resolver.resolve(LocalityHint(latitude=-18.1, longitude=179.5)) is fiji
    assert await resolver.resolve(LocalityHint(latitude=-18.1, longitude=-179.5)) is fiji


@pytest.mark.asyncio
async def test_unknown_locality_synthesizes_identity_only_area() -> None:
    repository = _FakeCoverageRepository([CITY])
    resolver = CoverageResolver(repository=repository)
    hint = LocalityHint(locality="Marfa", region="TX", country="US", latitude=30.3, longitude=-104.0)

    area = await resolver.resolve(hint)
    again = await resolver.resolve(hint)

    assert area.coverage_key == "marfa_tx_us"
    assert area.is_executable is False
    assert again.coverage_key == "marfa_tx_us"
    assert repository.inserted == [{"coverage_key": "marfa_tx_us", "display_name": "Marfa, TX, US"}]


@pytest.mark.asyncio
async def test_synthesis_disabled_raises_unresolvable() -> None:
    resolver = CoverageResolver(repository=_FakeCoverageRepository([]))

    with pytest.raises(UnresolvableLocality):
        await resolver.resolve(LocalityHint(locality="Marfa", country="US"), allow_create=False)


@pytest.mark.asyncio
async def test_hint_without_usable_data_is_unresolvable() -> None:
    repository = _FakeCoverageRepository([CITY])
    resolver = CoverageResolver(repository=repository)

    with pytest.raises(UnresolvableLocality):
        await resolver.resolve(LocalityHint(coverage_key="nowhere"))
    with pytest.raises(UnresolvableLocality):
        await resolver.resolve(LocalityHint(latitude=0.0, longitude=0.0))
    assert repository.inserted == []


@pytest.mark.asyncio
async def test_active_areas_are_cached_until_ttl() -> None:
    clock = _Clock()
    repository = _FakeCoverageRepository([CITY])
    resolver = CoverageResolver(repository=repository, cache_ttl_seconds=60, clock=clock)

    await resolver.active_areas()
    clock.now += 30
    await resolver.active_areas()
    assert repository.list_calls == 1

    clock.now += 31
    await resolver.active_areas()
    assert repository.list_calls == 2


@pytest.mark.asyncio
async def test_stale_cache_serves_when_refresh_fails() -> None:
    clock = _Clock()
    repository = _FakeCoverageRepository([CITY])
    resolver = CoverageResolver(repository=repository, cache_ttl_seconds=60, clock=clock)
    await resolver.active_areas()

    repository.fail_list = True
    clock.now += 120

    assert await resolver.active_areas() == [CITY]


@pytest.mark.asyncio
async def test_cold_cache_failure_propagates() -> None:
    repository = _FakeCoverageRepository([CITY])
    repository.fail_list = True
    resolver = CoverageResolver(repository=repository)

    with pytest.raises(TransientDbError):
        await resolver.active_areas()


@pytest.mark.asyncio
async def test_registry_updates_activity_with_derived_interval() -> None:
    repository = _FakeCoverageRepository([CITY])
    registry = CoverageRegistry(repository=repository)

    interval = await registry.update_activity("austin_tx_us", 25.0)

    assert interval == pytest.approx(30.0)
    assert repository.activity["austin_tx_us"] == (25.0, pytest.approx(30.0))
    assert await registry.update_activity("missing", 25.0) == pytest.approx(30.0)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "hint",
    [
        LocalityHint(coverage_key="denver_co_us"),
        LocalityHint(locality="Denver", region="CO", country="US"),
    ],
)
async def test_key_lookups_are_time_boxed(hint: LocalityHint) -> None:
    repository = _FakeCoverageRepository([CITY])
    repository.key_delay_seconds = 1.0
    resolver = CoverageResolver(repository=repository, read_timeout_seconds=0.01)

    with pytest.raises(TimeoutError):
        await resolver.resolve(hint)
    assert repository.inserted == []
