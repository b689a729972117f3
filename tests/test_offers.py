import sqlite3
from datetime import datetime, timezone

import pytest

from copytrade.common import AuditAction, AuditSink, EntityType, NotFoundError, OfferStatus
from copytrade.db import Database
from copytrade.offers import (
    ChangeOfferStatusRequest,
    CreateOfferRequest,
    OfferFilter,
    OfferRepository,
    OfferService,
    UpdateOfferRequest,
)
from copytrade.strategies import StrategyRepository

SCHEMA = """
CREATE TABLE strategies (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    master_user_id INTEGER,
    master_account_id INTEGER,
    title TEXT,
    description TEXT,
    status TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);
CREATE VIEW vw_strategy_performance AS
    SELECT id, title, status, 0 AS total_subscriptions, 0 AS active_subscriptions,
           0 AS total_copied_trades, 0.0 AS total_profit, 0.0 AS total_commissions, updated_at
    FROM strategies;
CREATE TABLE offers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    strategy_id INTEGER,
    name TEXT,
    status TEXT,
    performance_fee_percent REAL,
    management_fee_percent REAL,
    registration_fee_amount REAL,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);
"""


@pytest.fixture
def conn():
    connection = sqlite3.connect(":memory:")
    connection.create_function("now", 0, lambda: datetime.now(timezone.utc).isoformat())
    connection.executescript(SCHEMA)
    yield connection
    connection.close()


@pytest.fixture
def db(conn):
    return Database(conn)


@pytest.fixture
def strategy_id(conn):
    cursor = conn.execute(
        "INSERT INTO strategies (master_user_id, master_account_id, title, description, status)"
        " VALUES (1, 10, 'Alpha', '', 'active')"
    )
    conn.commit()
    return cursor.lastrowid


@pytest.fixture
def audit():
    return AuditSink()


@pytest.fixture
def service(db, audit):
    return OfferService(OfferRepository(db), StrategyRepository(db), audit)


def test_create_sets_active_status_and_records_audit(service, audit, strategy_id):
    offer = service.create(
        CreateOfferRequest(strategy_id, "Gold", performance_fee_percent=20.0)
    )
    assert offer.status is OfferStatus.ACTIVE
    assert offer.name == "Gold"
    assert offer.performance_fee_percent == 20.0
    assert offer.management_fee_percent is None
    assert [e.action for e in audit.events] == [AuditAction.CREATE]
    assert audit.events[0].entity_type is EntityType.OFFER
    assert audit.events[0].new_value == offer


def test_create_for_missing_strategy_raises(service, db, audit):
    with pytest.raises(NotFoundError):
        service.create(CreateOfferRequest(999, "Ghost"))
    assert OfferRepository(db).get_by_strategy_id(999) == []
    assert audit.events == []


def test_get_by_id_roundtrip_and_missing(service, strategy_id):
    offer = service.create(CreateOfferRequest(strategy_id, "Silver", registration_fee_amount=5.5))
    assert service.get_by_id(offer.id) == offer
    assert service.get_by_id(offer.id + 100) is None


def test_update_changes_only_given_fields(service, audit, strategy_id):
    offer = service.create(
        CreateOfferRequest(strategy_id, "Gold", performance_fee_percent=20.0,
                           management_fee_percent=2.0)
    )
    updated = service.update(offer.id, UpdateOfferRequest(name="Platinum"))
    assert updated.name == "Platinum"
    assert updated.performance_fee_percent == offer.performance_fee_percent
    assert updated.management_fee_percent == offer.management_fee_percent
    event = audit.events[-1]
    assert event.action is AuditAction.UPDATE
    assert event.old_value.name == "Gold"
    assert event.new_value.name == "Platinum"


def test_update_without_fields_returns_current(service, strategy_id):
    offer = service.create(CreateOfferRequest(strategy_id, "Gold"))
    assert service.update(offer.id, UpdateOfferRequest()) == offer


def test_update_missing_offer_raises(service):
    with pytest.raises(NotFoundError):
        service.update(42, UpdateOfferRequest(name="X"))


def test_change_status_records_old_and_new(service, audit, strategy_id):
    offer = service.create(CreateOfferRequest(strategy_id, "Gold"))
    changed = service.change_status(offer.id, ChangeOfferStatusRequest("archived"))
    assert changed.status is OfferStatus.ARCHIVED
    event = audit.events[-1]
    assert event.action is AuditAction.STATUS_CHANGE
    assert event.changes == {
        "old_status": OfferStatus.ACTIVE,
        "new_status": OfferStatus.ARCHIVED,
    }


def test_change_status_missing_offer_raises(service):
    with pytest.raises(NotFoundError):
        service.change_status(7, ChangeOfferStatusRequest(OfferStatus.DELETED))


def test_change_status_request_rejects_unknown_status():
    with pytest.raises(ValueError):
        ChangeOfferStatusRequest("suspended")


def test_list_filters_and_paginates(service, conn, strategy_id):
    for name in ("A", "B", "C"):
        service.create(CreateOfferRequest(strategy_id, name))
    other = conn.execute(
        "INSERT INTO strategies (master_user_id, master_account_id, title, description, status)"
        " VALUES (2, 20, 'Beta', '', 'active')"
    ).lastrowid
    conn.commit()
    service.create(CreateOfferRequest(other, "D"))

    page = service.list(OfferFilter(strategy_id=strategy_id, limit=2))
    assert page.total == 3
    assert page.page == 1
    assert page.limit == 2
    assert len(page.data) == 2
    assert page.total_pages == 2
    assert all(o.strategy_id == strategy_id for o in page.data)

    second = service.list(OfferFilter(strategy_id=strategy_id, page=2, limit=2))
    ids = {o.id for o in page.data} | {o.id for o in second.data}
    assert len(ids) == 3


def test_list_by_status_and_limit_clamp(service, strategy_id):
    first = service.create(CreateOfferRequest(strategy_id, "A"))
    service.create(CreateOfferRequest(strategy_id, "B"))
    service.change_status(first.id, ChangeOfferStatusRequest("deleted"))
    result = service.list(OfferFilter(status="deleted", limit=500))
    assert result.limit == 100
    assert [o.id for o in result.data] == [first.id]


def test_active_by_strategy_excludes_archived(db, service, strategy_id):
    kept = service.create(CreateOfferRequest(strategy_id, "A"))
    dropped = service.create(CreateOfferRequest(strategy_id, "B"))
    service.change_status(dropped.id, ChangeOfferStatusRequest("archived"))
    repo = OfferRepository(db)
    assert [o.id for o in repo.get_active_by_strategy_id(strategy_id)] == [kept.id]
    assert {o.id for o in repo.get_by_strategy_id(strategy_id)} == {kept.id, dropped.id}