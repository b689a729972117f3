"""Offers published for strategies: entities, storage and the audited service."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional, Union

from copytrade.common import (
    AuditAction,
    AuditEvent,
    AuditSink,
    EntityType,
    NotFoundError,
    OfferStatus,
    PaginatedResult,
    Pagination,
    RepositoryError,
    as_datetime,
    page_count,
)
from copytrade.db import Database
from copytrade.strategies import StrategyRepository

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id, strategy_id, name, status, performance_fee_percent, management_fee_percent, "
    "registration_fee_amount, created_at, updated_at"
)


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


def _status(value: Union[OfferStatus, str, None]) -> Optional[OfferStatus]:
    if value is None or value == "":
        return None
    return OfferStatus(value)


@dataclass
class Offer:
    id: int
    strategy_id: int
    name: str
    status: OfferStatus
    performance_fee_percent: Optional[float] = None
    management_fee_percent: Optional[float] = None
    registration_fee_amount: Optional[float] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.status = OfferStatus(self.status)
        self.performance_fee_percent = _optional_float(self.performance_fee_percent)
        self.management_fee_percent = _optional_float(self.management_fee_percent)
        self.registration_fee_amount = _optional_float(self.registration_fee_amount)
        self.created_at = as_datetime(self.created_at)
        self.updated_at = as_datetime(self.updated_at)


@dataclass
class CreateOfferRequest:
    strategy_id: int
    name: str
    performance_fee_percent: Optional[float] = None
    management_fee_percent: Optional[float] = None
    registration_fee_amount: Optional[float] = None


@dataclass
class UpdateOfferRequest:
    name: Optional[str] = None
    performance_fee_percent: Optional[float] = None
    management_fee_percent: Optional[float] = None
    registration_fee_amount: Optional[float] = None


@dataclass
class ChangeOfferStatusRequest:
    status: OfferStatus

    def __post_init__(self) -> None:
        self.status = OfferStatus(self.status)


@dataclass(kw_only=True)
class OfferFilter(Pagination):
    strategy_id: int = 0
    status: Optional[OfferStatus] = None

    def __post_init__(self) -> None:
        self.status = _status(self.status)


class OfferRepository:
    """Stores offers in the ``offers`` table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def create(self, request: CreateOfferRequest) -> Offer:
        query = f"""
            INSERT INTO offers (strategy_id, name, status, performance_fee_percent, management_fee_percent, registration_fee_amount)
            VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING {_COLUMNS}
        """
        params = (
            request.strategy_id,
            request.name,
            OfferStatus.ACTIVE.value,
            request.performance_fee_percent,
            request.management_fee_percent,
            request.registration_fee_amount,
        )
        try:
            row = self._db.fetch_one(query, params)
        except RepositoryError as exc:
            logger.error(
                "Failed to create offer strategy_id=%s name=%s: %s",
                request.strategy_id,
                request.name,
                exc,
            )
            raise RepositoryError(f"create offer: {exc}") from exc
        if row is None:
            raise RepositoryError("create offer: no row returned")
        offer = Offer(**row)
        logger.info("Offer created id=%s strategy_id=%s", offer.id, offer.strategy_id)
        return offer

    def get_by_id(self, offer_id: int) -> Optional[Offer]:
        query = f"SELECT {_COLUMNS} FROM offers WHERE id = $1"
        try:
            row = self._db.fetch_one(query, (offer_id,))
        except RepositoryError as exc:
            logger.error("Failed to get offer by ID id=%s: %s", offer_id, exc)
            raise RepositoryError(f"get offer by id: {exc}") from exc
        return Offer(**row) if row is not None else None

    def list(self, offer_filter: OfferFilter) -> PaginatedResult[Offer]:
        offer_filter.set_defaults()
        conditions: List[str] = []
        args: list = []
        if offer_filter.strategy_id:
            args.append(offer_filter.strategy_id)
            conditions.append(f"strategy_id = ${len(args)}")
        if offer_filter.status is not None:
            args.append(offer_filter.status.value)
            conditions.append(f"status = ${len(args)}")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        try:
            total = self._db.fetch_value(f"SELECT COUNT(*) FROM offers {where}", args)
        except RepositoryError as exc:
            logger.error("Failed to count offers: %s", exc)
            raise RepositoryError(f"count offers: {exc}") from exc

        query = f"""
            SELECT {_COLUMNS}
            FROM offers
            {where}
            ORDER BY created_at DESC
            LIMIT ${len(args) + 1} OFFSET ${len(args) + 2}
        """
        try:
            rows = self._db.fetch_all(query, [*args, offer_filter.limit, offer_filter.offset])
        except RepositoryError as exc:
            logger.error("Failed to list offers: %s", exc)
            raise RepositoryError(f"list offers: {exc}") from exc

        total = int(total or 0)
        return PaginatedResult(
            data=[Offer(**row) for row in rows],
            total=total,
            page=offer_filter.page,
            limit=offer_filter.limit,
            total_pages=page_count(total, offer_filter.limit),
        )

    def update(self, offer_id: int, request: UpdateOfferRequest) -> Optional[Offer]:
        changes = {
            "name": request.name,
            "performance_fee_percent": request.performance_fee_percent,
            "management_fee_percent": request.management_fee_percent,
            "registration_fee_amount": request.registration_fee_amount,
        }
        set_clauses: List[str] = []
        args: list = []
        for column, value in changes.items():
            if value is not None:
                args.append(value)
                set_clauses.append(f"{column} = ${len(args)}")
        if not set_clauses:
            return self.get_by_id(offer_id)

        set_clauses.append("updated_at = now()")
        args.append(offer_id)
        query = f"""
            UPDATE offers
            SET {', '.join(set_clauses)}
            WHERE id = ${len(args)}
            RETURNING {_COLUMNS}
        """
        try:
            row = self._db.fetch_one(query, args)
        except RepositoryError as exc:
            logger.error("Failed to update offer id=%s: %s", offer_id, exc)
            raise RepositoryError(f"update offer: {exc}") from exc
        if row is None:
            raise NotFoundError(f"offer not found: {offer_id}")
        offer = Offer(**row)
        logger.info("Offer updated id=%s", offer.id)
        return offer

    def change_status(self, offer_id: int, request: ChangeOfferStatusRequest) -> Offer:
        query = f"""
            UPDATE offers
            SET status = $1, updated_at = now()
            WHERE id = $2
            RETURNING {_COLUMNS}
        """
        try:
            row = self._db.fetch_one(query, (request.status.value, offer_id))
        except RepositoryError as exc:
            logger.error(
                "Failed to change offer status id=%s status=%s: %s",
                offer_id,
                request.status.value,
                exc,
            )
            raise RepositoryError(f"change offer status: {exc}") from exc
        if row is None:
            raise NotFoundError(f"offer not found: {offer_id}")
        offer = Offer(**row)
        logger.info("Offer status changed id=%s status=%s", offer.id, offer.status.value)
        return offer

    def get_by_strategy_id(self, strategy_id: int) -> List[Offer]:
        query = f"""
            SELECT {_COLUMNS}
            FROM offers
            WHERE strategy_id = $1
            ORDER BY created_at DESC
        """
        return self._fetch_offers(query, strategy_id, "get offers by strategy id")

    def get_active_by_strategy_id(self, strategy_id: int) -> List[Offer]:
        query = f"""
            SELECT {_COLUMNS}
            FROM offers
            WHERE strategy_id = $1 AND status = 'active'
            ORDER BY created_at DESC
        """
        return self._fetch_offers(query, strategy_id, "get active offers by strategy id")

    def _fetch_offers(self, query: str, strategy_id: int, action: str) -> List[Offer]:
        try:
            rows = self._db.fetch_all(query, (strategy_id,))
        except RepositoryError as exc:
            logger.error("Failed to %s strategy_id=%s: %s", action, strategy_id, exc)
            raise RepositoryError(f"{action}: {exc}") from exc
        return [Offer(**row) for row in rows]


def _record(sink: AuditSink, event: AuditEvent) -> None:
    # Auditing is best effort: a failure never undoes the change itself.
    try:
        sink.record(event)
    except Exception:
        logger.warning(
            "Failed to record audit event for %s %s",
            event.entity_type.value,
            event.entity_id,
            exc_info=True,
        )


class OfferService:
    """Offer operations that check the strategy and keep an audit trail."""

    def __init__(
        self,
        repository: OfferRepository,
        strategies: StrategyRepository,
        audit: Optional[AuditSink] = None,
    ) -> None:
        self._repository = repository
        self._strategies = strategies
        self._audit = audit if audit is not None else AuditSink()

    def create(self, request: CreateOfferRequest) -> Offer:
        logger.info("Creating offer strategy_id=%s name=%s", request.strategy_id, request.name)
        if self._strategies.get_by_id(request.strategy_id) is None:
            raise NotFoundError("strategy not found")
        offer = self._repository.create(request)
        _record(
            self._audit,
            AuditEvent(EntityType.OFFER, offer.id, AuditAction.CREATE, new_value=offer),
        )
        return offer

    def get_by_id(self, offer_id: int) -> Optional[Offer]:
        logger.info("Getting offer by ID id=%s", offer_id)
        return self._repository.get_by_id(offer_id)

    def list(self, offer_filter: OfferFilter) -> PaginatedResult[Offer]:
        offer_filter.set_defaults()
        logger.info("Listing offers filter=%s", offer_filter)
        return self._repository.list(offer_filter)

    def update(self, offer_id: int, request: UpdateOfferRequest) -> Offer:
        logger.info("Updating offer id=%s", offer_id)
        old_offer = self._repository.get_by_id(offer_id)
        offer = self._repository.update(offer_id, request)
        if offer is None:
            raise NotFoundError(f"offer not found: {offer_id}")
        _record(
            self._audit,
            AuditEvent(
                EntityType.OFFER,
                offer.id,
                AuditAction.UPDATE,
                old_value=old_offer,
                new_value=offer,
            ),
        )
        return offer

    def change_status(self, offer_id: int, request: ChangeOfferStatusRequest) -> Offer:
        logger.info("Changing offer status id=%s status=%s", offer_id, request.status.value)
        old_offer = self._repository.get_by_id(offer_id)
        offer = self._repository.change_status(offer_id, request)
        _record(
            self._audit,
            AuditEvent(
                EntityType.OFFER,
                offer.id,
                AuditAction.STATUS_CHANGE,
                old_value=old_offer,
                new_value=offer,
                changes={
                    "old_status": old_offer.status if old_offer else None,
                    "new_status": offer.status,
                },
            ),
        )
        return offer