"""Trading strategies: entities, storage and the service that audits changes."""

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
    StrategyStatus,
    as_datetime,
    page_count,
)
from copytrade.db import Database
from copytrade.subscriptions import SubscriptionRepository

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id, master_user_id, master_account_id, title, description, status, created_at, updated_at"
)
_PERFORMANCE_COLUMNS = (
    "id, title, status, total_subscriptions, active_subscriptions, "
    "total_copied_trades, total_profit, total_commissions, updated_at"
)

_SETTABLE_STATUSES = frozenset(
    {StrategyStatus.ACTIVE, StrategyStatus.ARCHIVED, StrategyStatus.DELETED}
)
_CLOSING_STATUSES = frozenset({StrategyStatus.ARCHIVED, StrategyStatus.DELETED})


def _status(value: Union[StrategyStatus, str, None]) -> Optional[StrategyStatus]:
    if value is None or value == "":
        return None
    return StrategyStatus(value)


@dataclass
class Strategy:
    id: int
    master_user_id: int
    master_account_id: int
    title: str
    description: str
    status: StrategyStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.description = self.description or ""
        self.status = StrategyStatus(self.status)
        self.created_at = as_datetime(self.created_at)
        self.updated_at = as_datetime(self.updated_at)


@dataclass
class StrategyPerformance:
    """A strategy together with its aggregated subscription and trade figures."""

    id: int
    title: str
    status: StrategyStatus
    total_subscriptions: int = 0
    active_subscriptions: int = 0
    total_copied_trades: int = 0
    total_profit: float = 0.0
    total_commissions: float = 0.0
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.status = StrategyStatus(self.status)
        self.total_subscriptions = int(self.total_subscriptions or 0)
        self.active_subscriptions = int(self.active_subscriptions or 0)
        self.total_copied_trades = int(self.total_copied_trades or 0)
        self.total_profit = float(self.total_profit or 0)
        self.total_commissions = float(self.total_commissions or 0)
        self.updated_at = as_datetime(self.updated_at)


@dataclass
class CreateStrategyRequest:
    account_id: int
    user_id: int
    nickname: str
    summary: str = ""
    payment_account_id: Optional[int] = None
    avatar_url: str = ""


@dataclass
class UpdateStrategyRequest:
    nickname: Optional[str] = None
    summary: Optional[str] = None
    payment_account_id: Optional[int] = None
    avatar_url: Optional[str] = None


@dataclass
class ChangeStrategyStatusRequest:
    status: StrategyStatus
    status_reason: str = ""

    def __post_init__(self) -> None:
        self.status = StrategyStatus(self.status)
        if self.status not in _SETTABLE_STATUSES:
            raise ValueError(f"status cannot be set to {self.status.value}")


@dataclass(kw_only=True)
class StrategyFilter(Pagination):
    status: Optional[StrategyStatus] = None
    min_roi: Optional[float] = None
    max_drawdown_pct: Optional[float] = None
    risk_score: Optional[int] = None

    def __post_init__(self) -> None:
        self.status = _status(self.status)


@dataclass
class StrategySummary:
    strategy_id: int
    total_profit: float


class StrategyRepository:
    """Stores strategies and reads their performance view."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def create(self, request: CreateStrategyRequest) -> Strategy:
        query = f"""
            INSERT INTO strategies (master_user_id, master_account_id, title, description, status)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING {_COLUMNS}
        """
        params = (
            request.user_id,
            request.account_id,
            request.nickname,
            request.summary,
            StrategyStatus.PREPARING.value,
        )
        try:
            row = self._db.fetch_one(query, params)
        except RepositoryError as exc:
            logger.error(
                "Failed to create strategy nickname=%s account_id=%s: %s",
                request.nickname,
                request.account_id,
                exc,
            )
            raise RepositoryError(f"create strategy: {exc}") from exc
        if row is None:
            raise RepositoryError("create strategy: no row returned")
        strategy = Strategy(**row)
        logger.info("Strategy created id=%s title=%s", strategy.id, strategy.title)
        return strategy

    def get_by_id(self, strategy_id: int) -> Optional[StrategyPerformance]:
        query = f"SELECT {_PERFORMANCE_COLUMNS} FROM vw_strategy_performance WHERE id = $1"
        try:
            row = self._db.fetch_one(query, (strategy_id,))
        except RepositoryError as exc:
            logger.error("Failed to get strategy by ID id=%s: %s", strategy_id, exc)
            raise RepositoryError(f"failed to get strategy by ID: {exc}") from exc
        return StrategyPerformance(**row) if row is not None else None

    def get_base_by_id(self, strategy_id: int) -> Optional[Strategy]:
        return self._fetch_strategy(
            f"SELECT {_COLUMNS} FROM strategies WHERE id = $1",
            strategy_id,
            "get strategy base by id",
        )

    def list(self, strategy_filter: StrategyFilter) -> PaginatedResult[StrategyPerformance]:
        conditions = []
        args: list = []
        if strategy_filter.status is not None:
            args.append(strategy_filter.status.value)
            conditions.append(f"status = ${len(args)}")
        if strategy_filter.min_roi is not None:
            args.append(strategy_filter.min_roi)
            conditions.append(f"roi >= ${len(args)}")
        if strategy_filter.max_drawdown_pct is not None:
            args.append(strategy_filter.max_drawdown_pct)
            conditions.append(f"max_drawdown_pct <= ${len(args)}")
        if strategy_filter.risk_score is not None:
            args.append(strategy_filter.risk_score)
            conditions.append(f"risk_score = ${len(args)}")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        try:
            total = self._db.fetch_value(f"SELECT COUNT(*) FROM vw_strategy_performance {where}", args)
        except RepositoryError as exc:
            raise RepositoryError(f"count failed: {exc}") from exc

        strategy_filter.set_defaults()
        query = f"""
            SELECT {_PERFORMANCE_COLUMNS}
            FROM vw_strategy_performance
            {where}
            ORDER BY total_profit DESC
            LIMIT {int(strategy_filter.limit)} OFFSET {int(strategy_filter.offset)}
        """
        try:
            rows = self._db.fetch_all(query, args)
        except RepositoryError as exc:
            raise RepositoryError(f"list failed: {exc}") from exc

        total = int(total or 0)
        return PaginatedResult(
            data=[StrategyPerformance(**row) for row in rows],
            total=total,
            page=strategy_filter.page,
            limit=strategy_filter.limit,
            total_pages=page_count(total, strategy_filter.limit),
        )

    def update(self, strategy_id: int, request: UpdateStrategyRequest) -> Optional[Strategy]:
        changes = {"title": request.nickname, "description": request.summary}
        set_clauses = []
        args: list = []
        for column, value in changes.items():
            if value is not None:
                args.append(value)
                set_clauses.append(f"{column} = ${len(args)}")
        if not set_clauses:
            return self.get_base_by_id(strategy_id)

        set_clauses.append("updated_at = now()")
        args.append(strategy_id)
        query = f"""
            UPDATE strategies
            SET {', '.join(set_clauses)}
            WHERE id = ${len(args)}
            RETURNING {_COLUMNS}
        """
        try:
            row = self._db.fetch_one(query, args)
        except RepositoryError as exc:
            logger.error("Failed to update strategy id=%s: %s", strategy_id, exc)
            raise RepositoryError(f"update strategy: {exc}") from exc
        if row is None:
            raise NotFoundError(f"strategy not found: {strategy_id}")
        strategy = Strategy(**row)
        logger.info("Strategy updated id=%s", strategy.id)
        return strategy

    def change_status(self, strategy_id: int, request: ChangeStrategyStatusRequest) -> Strategy:
        query = f"""
            UPDATE strategies
            SET status = $1, updated_at = now()
            WHERE id = $2
            RETURNING {_COLUMNS}
        """
        try:
            row = self._db.fetch_one(query, (request.status.value, strategy_id))
        except RepositoryError as exc:
            logger.error(
                "Failed to change strategy status id=%s status=%s: %s",
                strategy_id,
                request.status.value,
                exc,
            )
            raise RepositoryError(f"change strategy status: {exc}") from exc
        if row is None:
            raise NotFoundError(f"strategy not found: {strategy_id}")
        strategy = Strategy(**row)
        logger.info("Strategy status changed id=%s status=%s", strategy.id, strategy.status.value)
        return strategy

    def get_by_account_id(self, account_id: int) -> Optional[Strategy]:
        query = f"""
            SELECT {_COLUMNS}
            FROM strategies
            WHERE master_account_id = $1
            ORDER BY created_at DESC
            LIMIT 1
        """
        return self._fetch_strategy(query, account_id, "get strategy by account id")

    def get_active_by_id(self, strategy_id: int) -> Optional[Strategy]:
        query = f"SELECT {_COLUMNS} FROM strategies WHERE id = $1 AND status = 'active'"
        return self._fetch_strategy(query, strategy_id, "get active strategy by id")

    def get_summary(self, strategy_id: int) -> StrategySummary:
        logger.info("Getting strategy summary id=%s", strategy_id)
        query = "SELECT fn_get_strategy_total_profit($1) AS total_profit"
        try:
            value = self._db.fetch_value(query, (strategy_id,))
        except RepositoryError as exc:
            raise RepositoryError(f"get strategy total profit: {exc}") from exc
        return StrategySummary(strategy_id=strategy_id, total_profit=float(value or 0))

    def _fetch_strategy(self, query: str, key: int, action: str) -> Optional[Strategy]:
        try:
            row = self._db.fetch_one(query, (key,))
        except RepositoryError as exc:
            logger.error("Failed to %s key=%s: %s", action, key, exc)
            raise RepositoryError(f"{action}: {exc}") from exc
        return Strategy(**row) if row is not None else None


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


class StrategyService:
    """Strategy operations with an audit trail and subscription archiving."""

    def __init__(
        self,
        repository: StrategyRepository,
        subscriptions: SubscriptionRepository,
        audit: Optional[AuditSink] = None,
    ) -> None:
        self._repository = repository
        self._subscriptions = subscriptions
        self._audit = audit if audit is not None else AuditSink()

    def create(self, request: CreateStrategyRequest) -> Strategy:
        logger.info(
            "Creating strategy nickname=%s account_id=%s", request.nickname, request.account_id
        )
        strategy = self._repository.create(request)
        _record(
            self._audit,
            AuditEvent(EntityType.STRATEGY, strategy.id, AuditAction.CREATE, new_value=strategy),
        )
        return strategy

    def get_by_id(self, strategy_id: int) -> Optional[StrategyPerformance]:
        logger.info("Getting strategy by ID id=%s", strategy_id)
        return self._repository.get_by_id(strategy_id)

    def list(self, strategy_filter: StrategyFilter) -> PaginatedResult[StrategyPerformance]:
        strategy_filter.set_defaults()
        logger.info("Listing strategies filter=%s", strategy_filter)
        return self._repository.list(strategy_filter)

    def update(self, strategy_id: int, request: UpdateStrategyRequest) -> Optional[Strategy]:
        logger.info("Updating strategy id=%s", strategy_id)
        old_strategy = self._repository.get_base_by_id(strategy_id)
        strategy = self._repository.update(strategy_id, request)
        _record(
            self._audit,
            AuditEvent(
                EntityType.STRATEGY,
                strategy_id,
                AuditAction.UPDATE,
                old_value=old_strategy,
                new_value=strategy,
            ),
        )
        return strategy

    def change_status(self, strategy_id: int, request: ChangeStrategyStatusRequest) -> Strategy:
        logger.info(
            "Changing strategy status id=%s status=%s", strategy_id, request.status.value
        )
        old_strategy = self._repository.get_by_id(strategy_id)

        if request.status in _CLOSING_STATUSES:
            reason = request.status_reason or f"strategy_{request.status.value}"
            try:
                self._subscriptions.archive_by_strategy_id(strategy_id, reason)
            except RepositoryError as exc:
                logger.warning("Failed to archive subscriptions: %s", exc)

        strategy = self._repository.change_status(strategy_id, request)
        _record(
            self._audit,
            AuditEvent(
                EntityType.STRATEGY,
                strategy.id,
                AuditAction.STATUS_CHANGE,
                old_value=old_strategy,
                new_value=strategy,
                changes={
                    "old_status": old_strategy.status if old_strategy else None,
                    "new_status": strategy.status,
                    "status_reason": request.status_reason,
                },
            ),
        )
        return strategy

    def get_summary(self, strategy_id: int) -> StrategySummary:
        logger.info("Getting strategy summary id=%s", strategy_id)
        return self._repository.get_summary(strategy_id)