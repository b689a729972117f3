"""Subscriptions of investors to offers: entities, storage and service."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Union

from copytrade.common import (
    AuditAction,
    AuditEvent,
    AuditSink,
    EntityType,
    NotFoundError,
    PaginatedResult,
    Pagination,
    RepositoryError,
    SubscriptionStatus,
    as_datetime,
    page_count,
)
from copytrade.db import Database

logger = logging.getLogger(__name__)

_COLUMNS = "id, investor_user_id, investor_account_id, offer_id, status, created_at, updated_at"
_HISTORY_COLUMNS = "id, subscription_id, old_status, new_status, reason, changed_by, created_at"

_SETTABLE_STATUSES = frozenset(
    {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.ARCHIVED,
        SubscriptionStatus.SUSPENDED,
        SubscriptionStatus.DELETED,
    }
)


def _status(value: Union[SubscriptionStatus, str, None]) -> Optional[SubscriptionStatus]:
    if value is None or value == "":
        return None
    return SubscriptionStatus(value)


@dataclass
class Subscription:
    id: int
    investor_user_id: int
    investor_account_id: int
    offer_id: int
    status: SubscriptionStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.status = SubscriptionStatus(self.status)
        self.created_at = as_datetime(self.created_at)
        self.updated_at = as_datetime(self.updated_at)


@dataclass
class CreateSubscriptionRequest:
    investor_user_id: int
    investor_account_id: int
    offer_id: int


@dataclass
class UpdateSubscriptionRequest:
    """A subscription has no directly editable fields yet."""


@dataclass
class ChangeSubscriptionStatusRequest:
    status: SubscriptionStatus
    status_reason: str = ""

    def __post_init__(self) -> None:
        self.status = SubscriptionStatus(self.status)
        if self.status not in _SETTABLE_STATUSES:
            raise ValueError(f"status cannot be set to {self.status.value}")


@dataclass
class SubscriptionStatusHistory:
    id: int
    subscription_id: int
    old_status: SubscriptionStatus
    new_status: SubscriptionStatus
    reason: str = ""
    changed_by: int = 0
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.old_status = SubscriptionStatus(self.old_status)
        self.new_status = SubscriptionStatus(self.new_status)
        self.reason = self.reason or ""
        self.changed_by = int(self.changed_by or 0)
        self.created_at = as_datetime(self.created_at)


@dataclass(kw_only=True)
class SubscriptionFilter(Pagination):
    user_id: int = 0
    offer_id: int = 0
    status: Optional[SubscriptionStatus] = None

    def __post_init__(self) -> None:
        self.status = _status(self.status)


class SubscriptionRepository:
    """Stores subscriptions and their status history."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def create(self, request: CreateSubscriptionRequest) -> Subscription:
        query = f"""
            INSERT INTO subscriptions (investor_user_id, investor_account_id, offer_id, status)
            VALUES ($1, $2, $3, $4)
            RETURNING {_COLUMNS}
        """
        params = (
            request.investor_user_id,
            request.investor_account_id,
            request.offer_id,
            SubscriptionStatus.PREPARING.value,
        )
        try:
            row = self._db.fetch_one(query, params)
        except RepositoryError as exc:
            logger.error(
                "Failed to create subscription investor_account_id=%s offer_id=%s: %s",
                request.investor_account_id,
                request.offer_id,
                exc,
            )
            raise RepositoryError(f"create subscription: {exc}") from exc
        if row is None:
            raise RepositoryError("create subscription: no row returned")
        subscription = Subscription(**row)
        logger.info("Subscription created id=%s offer_id=%s", subscription.id, subscription.offer_id)
        return subscription

    def get_by_id(self, subscription_id: int) -> Optional[Subscription]:
        query = f"SELECT {_COLUMNS} FROM subscriptions WHERE id = $1"
        try:
            row = self._db.fetch_one(query, (subscription_id,))
        except RepositoryError as exc:
            logger.error("Failed to get subscription by ID id=%s: %s", subscription_id, exc)
            raise RepositoryError(f"get subscription by id: {exc}") from exc
        return Subscription(**row) if row is not None else None

    def list(self, subscription_filter: SubscriptionFilter) -> PaginatedResult[Subscription]:
        subscription_filter.set_defaults()
        conditions = []
        args: list = []
        if subscription_filter.user_id:
            args.append(subscription_filter.user_id)
            conditions.append(f"investor_user_id = ${len(args)}")
        if subscription_filter.offer_id:
            args.append(subscription_filter.offer_id)
            conditions.append(f"offer_id = ${len(args)}")
        if subscription_filter.status is not None:
            args.append(subscription_filter.status.value)
            conditions.append(f"status = ${len(args)}")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        try:
            total = self._db.fetch_value(f"SELECT COUNT(*) FROM subscriptions {where}", args)
        except RepositoryError as exc:
            logger.error("Failed to count subscriptions: %s", exc)
            raise RepositoryError(f"count subscriptions: {exc}") from exc

        query = f"""
            SELECT {_COLUMNS}
            FROM subscriptions
            {where}
            ORDER BY created_at DESC
            LIMIT ${len(args) + 1} OFFSET ${len(args) + 2}
        """
        try:
            rows = self._db.fetch_all(
                query, [*args, subscription_filter.limit, subscription_filter.offset]
            )
        except RepositoryError as exc:
            logger.error("Failed to list subscriptions: %s", exc)
            raise RepositoryError(f"list subscriptions: {exc}") from exc

        total = int(total or 0)
        return PaginatedResult(
            data=[Subscription(**row) for row in rows],
            total=total,
            page=subscription_filter.page,
            limit=subscription_filter.limit,
            total_pages=page_count(total, subscription_filter.limit),
        )

    def update(
        self, subscription_id: int, request: UpdateSubscriptionRequest
    ) -> Optional[Subscription]:
        return self.get_by_id(subscription_id)

    def change_status(
        self,
        subscription_id: int,
        request: ChangeSubscriptionStatusRequest,
        changed_by: int,
    ) -> Subscription:
        current = self.get_by_id(subscription_id)
        if current is None:
            raise NotFoundError(f"subscription not found: {subscription_id}")

        update_query = f"""
            UPDATE subscriptions
            SET status = $1, updated_at = now()
            WHERE id = $2
            RETURNING {_COLUMNS}
        """
        history_query = """
            INSERT INTO subscription_status_history (subscription_id, old_status, new_status, reason, changed_by)
            VALUES ($1, $2, $3, $4, $5)
        """
        with self._db.transaction():
            try:
                row = self._db.fetch_one(update_query, (request.status.value, subscription_id))
            except RepositoryError as exc:
                logger.error(
                    "Failed to change subscription status id=%s status=%s: %s",
                    subscription_id,
                    request.status.value,
                    exc,
                )
                raise RepositoryError(f"change subscription status: {exc}") from exc
            if row is None:
                raise NotFoundError(f"subscription not found: {subscription_id}")
            try:
                self._db.execute(
                    history_query,
                    (
                        subscription_id,
                        current.status.value,
                        request.status.value,
                        request.status_reason,
                        changed_by,
                    ),
                )
            except RepositoryError as exc:
                logger.warning(
                    "Failed to record status history id=%s: %s", subscription_id, exc
                )

        subscription = Subscription(**row)
        logger.info(
            "Subscription status changed id=%s old_status=%s new_status=%s",
            subscription.id,
            current.status.value,
            subscription.status.value,
        )
        return subscription

    def get_status_history(self, subscription_id: int) -> List[SubscriptionStatusHistory]:
        query = f"""
            SELECT {_HISTORY_COLUMNS}
            FROM subscription_status_history
            WHERE subscription_id = $1
            ORDER BY created_at DESC
        """
        try:
            rows = self._db.fetch_all(query, (subscription_id,))
        except RepositoryError as exc:
            logger.error(
                "Failed to get subscription status history id=%s: %s", subscription_id, exc
            )
            raise RepositoryError(f"get subscription status history: {exc}") from exc
        return [SubscriptionStatusHistory(**row) for row in rows]

    def get_active_by_strategy_id(self, strategy_id: int) -> List[Subscription]:
        query = """
            SELECT s.id, s.investor_user_id, s.investor_account_id, s.offer_id, s.status, s.created_at, s.updated_at
            FROM subscriptions s
            JOIN offers o ON s.offer_id = o.id
            WHERE o.strategy_id = $1 AND s.status = 'active'
            ORDER BY s.created_at DESC
        """
        try:
            rows = self._db.fetch_all(query, (strategy_id,))
        except RepositoryError as exc:
            logger.error(
                "Failed to get active subscriptions by strategy ID strategy_id=%s: %s",
                strategy_id,
                exc,
            )
            raise RepositoryError(f"get active subscriptions by strategy id: {exc}") from exc
        return [Subscription(**row) for row in rows]

    def get_by_offer_id(self, offer_id: int) -> List[Subscription]:
        query = f"""
            SELECT {_COLUMNS}
            FROM subscriptions
            WHERE offer_id = $1
            ORDER BY created_at DESC
        """
        try:
            rows = self._db.fetch_all(query, (offer_id,))
        except RepositoryError as exc:
            logger.error("Failed to get subscriptions by offer ID offer_id=%s: %s", offer_id, exc)
            raise RepositoryError(f"get subscriptions by offer id: {exc}") from exc
        return [Subscription(**row) for row in rows]

    def archive_by_strategy_id(self, strategy_id: int, reason: str) -> int:
        """Archive every active subscription of the strategy; return how many."""
        query = """
            UPDATE subscriptions
            SET status = 'archived', updated_at = now()
            WHERE status = 'active'
            AND offer_id IN (SELECT id FROM offers WHERE strategy_id = $1)
        """
        try:
            affected = self._db.execute(query, (strategy_id,))
        except RepositoryError as exc:
            logger.error(
                "Failed to archive subscriptions by strategy ID strategy_id=%s reason=%s: %s",
                strategy_id,
                reason,
                exc,
            )
            raise RepositoryError(f"archive subscriptions by strategy id: {exc}") from exc
        logger.info(
            "Subscriptions archived by strategy ID strategy_id=%s count=%s reason=%s",
            strategy_id,
            affected,
            reason,
        )
        return affected


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


class SubscriptionService:
    """Subscription operations with an audit trail."""

    def __init__(
        self, repository: SubscriptionRepository, audit: Optional[AuditSink] = None
    ) -> None:
        self._repository = repository
        self._audit = audit if audit is not None else AuditSink()

    def create(self, request: CreateSubscriptionRequest) -> Subscription:
        logger.info(
            "Creating subscription investor_account_id=%s offer_id=%s",
            request.investor_account_id,
            request.offer_id,
        )
        subscription = self._repository.create(request)
        _record(
            self._audit,
            AuditEvent(
                EntityType.SUBSCRIPTION, subscription.id, AuditAction.CREATE, new_value=subscription
            ),
        )
        return subscription

    def get_by_id(self, subscription_id: int) -> Optional[Subscription]:
        logger.info("Getting subscription by ID id=%s", subscription_id)
        return self._repository.get_by_id(subscription_id)

    def list(self, subscription_filter: SubscriptionFilter) -> PaginatedResult[Subscription]:
        subscription_filter.set_defaults()
        logger.info("Listing subscriptions filter=%s", subscription_filter)
        return self._repository.list(subscription_filter)

    def update(self, subscription_id: int, request: UpdateSubscriptionRequest) -> Subscription:
        logger.info("Updating subscription id=%s", subscription_id)
        old_subscription = self._repository.get_by_id(subscription_id)
        subscription = self._repository.update(subscription_id, request)
        if subscription is None:
            raise NotFoundError(f"subscription not found: {subscription_id}")
        _record(
            self._audit,
            AuditEvent(
                EntityType.SUBSCRIPTION,
                subscription.id,
                AuditAction.UPDATE,
                old_value=old_subscription,
                new_value=subscription,
            ),
        )
        return subscription

    def change_status(
        self,
        subscription_id: int,
        request: ChangeSubscriptionStatusRequest,
        changed_by: int,
    ) -> Subscription:
        logger.info(
            "Changing subscription status id=%s status=%s", subscription_id, request.status.value
        )
        old_subscription = self._repository.get_by_id(subscription_id)
        subscription = self._repository.change_status(subscription_id, request, changed_by)
        _record(
            self._audit,
            AuditEvent(
                EntityType.SUBSCRIPTION,
                subscription.id,
                AuditAction.STATUS_CHANGE,
                old_value=old_subscription,
                new_value=subscription,
                changes={
                    "old_status": old_subscription.status if old_subscription else None,
                    "new_status": subscription.status,
                    "status_reason": request.status_reason,
                },
            ),
        )
        return subscription

    def get_status_history(self, subscription_id: int) -> List[SubscriptionStatusHistory]:
        logger.info("Getting subscription status history id=%s", subscription_id)
        return self._repository.get_status_history(subscription_id)