"""Tests for PostgREST query-string parsing."""

from datetime import UTC, datetime, timedelta, timezone

import pytest

from maintenance_agent.query_filters import (
    Condition,
    _split_top_level,
    parse_query_params,
    query_ts,
)


class TestQueryTs:
    def test_uses_z_suffix(self):
        ts = query_ts(datetime(2026, 3, 2, 12, 0, tzinfo=UTC))
        assert ts == "2026-03-02T12:00:00.000000Z"
        assert "+" not in ts

    def test_converts_to_utc(self):
        plus_two = timezone(timedelta(hours=2))
        assert query_ts(datetime(2026, 3, 2, 14, 0, tzinfo=plus_two)).startswith(
            "2026-03-02T12:00:00"
        )

    def test_naive_is_treated_as_utc(self):
        assert query_ts(datetime(2026, 3, 2, 12, 0)) == "2026-03-02T12:00:00.000000Z"


def test_split_top_level_ignores_nested_commas():
    assert _split_top_level("a.eq.1,b.in.(x,y),c.is.null") == [
        "a.eq.1",
        "b.in.(x,y)",
        "c.is.null",
    ]


class TestParseQueryParams:
    def test_empty(self):
        parsed = parse_query_params(None)
        assert parsed.conditions == []
        assert parsed.limit is None

    def test_comparisons_order_and_limit(self):
        parsed = parse_query_params(
            "status=eq.pending&attempts=lt.3&order=priority.asc,created_at.desc&limit=5"
        )
        assert parsed.conditions == [
            Condition("status", "eq", "pending"),
            Condition("attempts", "lt", "3"),
        ]
        assert parsed.order == [("priority", False), ("created_at", True)]
        assert parsed.limit == 5

    def test_in_and_null_tests(self):
        parsed = parse_query_params(
            "status=in.(pending,in_progress)&scheduled_for=is.null&claimed_by=not.is.null"
        )
        assert parsed.conditions == [
            Condition("status", "in", ["pending", "in_progress"]),
            Condition("scheduled_for", "is_null"),
            Condition("claimed_by", "not_null"),
        ]

    def test_or_group_keeps_timestamp_intact(self):
        parsed = parse_query_params(
            "or=(scheduled_for.is.null,scheduled_for.lte.2026-03-02T12:00:00.000000Z)"
        )
        assert parsed.any_of == [
            [
                Condition("scheduled_for", "is_null"),
                Condition("scheduled_for", "lte", "2026-03-02T12:00:00.000000Z"),
            ]
        ]

    def test_select_is_ignored(self):
        assert parse_query_params("select=id,title").conditions == []

    def test_unknown_operator_raises(self):
        with pytest.raises(ValueError, match="Unsupported filter operator"):
            parse_query_params("title=like.*foo*")
