"""Unit tests for log formatting and cycle context binding."""

from __future__ import annotations

import json
import logging

from keyword_scheduler.core.logging import CycleContextFilter, JSONExtrasFormatter, bind_cycle_context


def _record(message: str, **extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="keyword_scheduler.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_appends_sorted_extras_as_json() -> None:
    formatter = JSONExtrasFormatter(datefmt="%Y-%m-%d")
    line = formatter.format(_record("Cycle finished", coverage_key="austin_tx_us", selected_count=5))

    prefix, _, extras = line.partition(" {")
    assert "| INFO     | keyword_scheduler.test | Cycle finished" in prefix
    assert json.loads("{" + extras) == {"coverage_key": "austin_tx_us", "selected_count": 5}


def test_formatter_without_extras_has_no_json_suffix() -> None:
    line = JSONExtrasFormatter().format(_record("plain"))

    assert line.endswith("| plain")


def test_cycle_context_is_copied_onto_records_inside_block() -> None:
    context_filter = CycleContextFilter()

    with bind_cycle_context(cycle_id="c1", source="manual"):
        with bind_cycle_context(coverage_key="austin_tx_us"):
            inner = _record("inner")
            context_filter.filter(inner)
        outer = _record("outer", source="explicit")
        context_filter.filter(outer)
    after = _record("after")
    context_filter.filter(after)

    assert (inner.cycle_id, inner.source, inner.coverage_key) == ("c1", "manual", "austin_tx_us")
    assert outer.source == "explicit"
    assert not hasattr(outer, "coverage_key")
    assert not hasattr(after, "cycle_id")


def test_bind_cycle_context_skips_none_values() -> None:
    context_filter = CycleContextFilter()

    with bind_cycle_context(cycle_id="c1", coverage_key=None):
        record = _record("msg")
        context_filter.filter(record)

    assert record.cycle_id == "c1"
    assert not hasattr(record, "coverage_key")
