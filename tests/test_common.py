import uuid
from datetime import datetime, timedelta, timezone

import pytest

from copytrade.common import (
    AuditAction,
    AuditEvent,
    AuditSink,
    EntityType,
    ImportJobStatus,
    NotFoundError,
    Pagination,
    PaginatedResult,
    RepositoryError,
    StrategyStatus,
    SubscriptionStatus,
    TimeRange,
    UserRole,
    as_datetime,
    new_uuid,
    page_count,
)


def test_set_defaults_fills_missing_values():
    pagination = Pagination()
    pagination.set_defaults()
    assert (pagination.page, pagination.limit, pagination.offset) == (1, 20, 0)


def test_set_defaults_caps_limit():
    pagination = Pagination(page=2, limit=500)
    pagination.set_defaults()
    assert pagination.limit == 100
    assert pagination.offset == pagination.limit


def test_set_defaults_computes_offset():
    pagination = Pagination(page=3, limit=10)
    pagination.set_defaults()
    assert pagination.offset == 20


def test_set_defaults_fixes_negative_page():
    pagination = Pagination(page=-4, limit=5)
    pagination.set_defaults()
    assert pagination.page == 1
    assert pagination.offset == 0


def test_page_count_covers_all_items():
    for limit in (1, 3, 7, 20):
        for total in range(0, 50):
            pages = page_count(total, limit)
            assert pages * limit >= total
            assert max(pages - 1, 0) * limit < total or total == 0


def test_page_count_of_nothing_is_zero():
    assert page_count(0, 20) == 0


def test_page_count_rejects_non_positive_limit():
    with pytest.raises(ValueError):
        page_count(10, 0)


def test_paginated_result_holds_data():
    result = PaginatedResult(data=["a", "b"], total=2, page=1, limit=20, total_pages=1)
    assert result.data == ["a", "b"]
    assert result.total == len(result.data)


def test_enums_parse_source_values():
    assert StrategyStatus("preparing") is StrategyStatus.PREPARING
    assert SubscriptionStatus("suspended") is SubscriptionStatus.SUSPENDED
    assert ImportJobStatus("running") is ImportJobStatus.RUNNING
    assert UserRole("investor") is UserRole.INVESTOR
    with pytest.raises(ValueError):
        UserRole("admin")


def test_new_uuid_is_random_and_unique():
    first, second = new_uuid(), new_uuid()
    assert first.version == 4
    assert first != second
    assert isinstance(first, uuid.UUID)


def test_time_range_defaults_to_unbounded():
    window = TimeRange()
    assert window.start is None and window.end is None


def test_as_datetime_parses_text():
    assert as_datetime("2024-01-02 03:04:05") == datetime(2024, 1, 2, 3, 4, 5)
    parsed = as_datetime("2024-01-02T03:04:05Z")
    assert parsed.utcoffset() == timedelta(0)


def test_as_datetime_passes_through():
    moment = datetime(2023, 5, 6, tzinfo=timezone.utc)
    assert as_datetime(moment) is moment
    assert as_datetime(None) is None


def test_audit_sink_collects_events():
    sink = AuditSink()
    event = AuditEvent(entity_type=EntityType.USER, entity_id=7, action=AuditAction.CREATE, new_value="x")
    sink.record(event)
    assert sink.events == [event]
    assert event.old_value is None and event.changes is None


def test_not_found_is_a_repository_error():
    error = NotFoundError("user not found: 5")
    assert str(error) == "user not found: 5"
    assert issubclass(NotFoundError, RepositoryError)
    assert not issubclass(RepositoryError, NotFoundError)