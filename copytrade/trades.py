"""Master trades and the copies made of them for subscribers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from copytrade.common import (
    NotFoundError,
    PaginatedResult,
    Pagination,
    RepositoryError,
    as_datetime,
    page_count,
)
from copytrade.db import Database

logger = logging.getLogger(__name__)

_TRADE_COLUMNS = (
    "id, strategy_id, master_account_id, symbol, volume_lots, direction, open_time, "
    "close_time, open_price, close_price, profit, commission, swap, created_at"
)
_COPIED_COLUMNS = (
    "id, trade_id, subscription_id, investor_account_id, volume_lots, profit, "
    "commission, swap, open_time, close_time, created_at"
)


class TradeDirection(str, Enum):
    BUY = "buy"
    SELL = "sell"


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


@dataclass
class Trade:
    id: int
    strategy_id: int
    master_account_id: int
    symbol: str
    volume_lots: float
    direction: TradeDirection
    open_time: Optional[datetime]
    open_price: float
    close_time: Optional[datetime] = None
    close_price: Optional[float] = None
    profit: Optional[float] = None
    commission: Optional[float] = None
    swap: Optional[float] = None
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.direction = TradeDirection(self.direction)
        self.volume_lots = float(self.volume_lots)
        self.open_price = float(self.open_price)
        self.open_time = as_datetime(self.open_time)
        self.close_time = as_datetime(self.close_time)
        self.close_price = _optional_float(self.close_price)
        self.profit = _optional_float(self.profit)
        self.commission = _optional_float(self.commission)
        self.swap = _optional_float(self.swap)
        self.created_at = as_datetime(self.created_at)


@dataclass
class CopiedTrade:
    id: int
    trade_id: int
    subscription_id: int
    investor_account_id: int
    volume_lots: float
    open_time: Optional[datetime]
    profit: Optional[float] = None
    commission: Optional[float] = None
    swap: Optional[float] = None
    close_time: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.volume_lots = float(self.volume_lots)
        self.open_time = as_datetime(self.open_time)
        self.close_time = as_datetime(self.close_time)
        self.profit = _optional_float(self.profit)
        self.commission = _optional_float(self.commission)
        self.swap = _optional_float(self.swap)
        self.created_at = as_datetime(self.created_at)


@dataclass
class CreateTradeRequest:
    strategy_id: int
    master_account_id: int
    symbol: str
    direction: TradeDirection
    volume_lots: float
    open_price: float
    open_time: datetime

    def __post_init__(self) -> None:
        self.direction = TradeDirection(self.direction)


@dataclass
class CreateCopiedTradeRequest:
    trade_id: int
    subscription_id: int
    investor_account_id: int
    volume_lots: float
    open_time: datetime


@dataclass(kw_only=True)
class TradeFilter(Pagination):
    """Trades of one strategy (0 for all) opened within an optional window."""

    strategy_id: int = 0
    start: Optional[datetime] = None
    end: Optional[datetime] = None


@dataclass(kw_only=True)
class CopiedTradeFilter(Pagination):
    subscription_id: int = 0
    trade_id: int = 0


def _time_conditions(trade_filter: Optional[TradeFilter], args: list) -> List[str]:
    conditions: List[str] = []
    if trade_filter is None:
        return conditions
    if trade_filter.start is not None:
        args.append(trade_filter.start)
        conditions.append(f"open_time >= ${len(args)}")
    if trade_filter.end is not None:
        args.append(trade_filter.end)
        conditions.append(f"open_time <= ${len(args)}")
    return conditions


class TradeRepository:
    """Stores master trades in the ``trades`` table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def create(self, request: CreateTradeRequest) -> Trade:
        query = f"""
            INSERT INTO trades (strategy_id, master_account_id, symbol, volume_lots, direction, open_time, open_price)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            RETURNING {_TRADE_COLUMNS}
        """
        params = (
            request.strategy_id,
            request.master_account_id,
            request.symbol,
            request.volume_lots,
            request.direction.value,
            request.open_time,
            request.open_price,
        )
        try:
            row = self._db.fetch_one(query, params)
        except RepositoryError as exc:
            logger.error(
                "Failed to create trade strategy_id=%s symbol=%s: %s",
                request.strategy_id,
                request.symbol,
                exc,
            )
            raise RepositoryError(f"create trade: {exc}") from exc
        if row is None:
            raise RepositoryError("create trade: no row returned")
        trade = Trade(**row)
        logger.info(
            "Trade created id=%s strategy_id=%s symbol=%s", trade.id, trade.strategy_id, trade.symbol
        )
        return trade

    def get_by_id(self, trade_id: int) -> Optional[Trade]:
        query = f"SELECT {_TRADE_COLUMNS} FROM trades WHERE id = $1"
        try:
            row = self._db.fetch_one(query, (trade_id,))
        except RepositoryError as exc:
            logger.error("Failed to get trade by ID id=%s: %s", trade_id, exc)
            raise RepositoryError(f"get trade by id: {exc}") from exc
        return Trade(**row) if row is not None else None

    def list(self, trade_filter: TradeFilter) -> PaginatedResult[Trade]:
        trade_filter.set_defaults()
        args: list = []
        conditions: List[str] = []
        if trade_filter.strategy_id:
            args.append(trade_filter.strategy_id)
            conditions.append(f"strategy_id = ${len(args)}")
        conditions.extend(_time_conditions(trade_filter, args))
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        try:
            total = self._db.fetch_value(f"SELECT COUNT(*) FROM trades {where}", args)
        except RepositoryError as exc:
            logger.error("Failed to count trades: %s", exc)
            raise RepositoryError(f"count trades: {exc}") from exc

        query = f"""
            SELECT {_TRADE_COLUMNS}
            FROM trades
            {where}
            ORDER BY open_time DESC
            LIMIT ${len(args) + 1} OFFSET ${len(args) + 2}
        """
        try:
            rows = self._db.fetch_all(query, [*args, trade_filter.limit, trade_filter.offset])
        except RepositoryError as exc:
            logger.error("Failed to list trades: %s", exc)
            raise RepositoryError(f"list trades: {exc}") from exc

        total = int(total or 0)
        return PaginatedResult(
            data=[Trade(**row) for row in rows],
            total=total,
            page=trade_filter.page,
            limit=trade_filter.limit,
            total_pages=page_count(total, trade_filter.limit),
        )

    def get_by_strategy_id(
        self, strategy_id: int, trade_filter: Optional[TradeFilter] = None
    ) -> List[Trade]:
        args: list = [strategy_id]
        conditions = ["strategy_id = $1", *_time_conditions(trade_filter, args)]
        query = f"""
            SELECT {_TRADE_COLUMNS}
            FROM trades
            WHERE {' AND '.join(conditions)}
            ORDER BY open_time DESC
        """
        try:
            rows = self._db.fetch_all(query, args)
        except RepositoryError as exc:
            logger.error(
                "Failed to get trades by strategy ID strategy_id=%s: %s", strategy_id, exc
            )
            raise RepositoryError(f"get trades by strategy id: {exc}") from exc
        return [Trade(**row) for row in rows]

    def update_profit(self, trade_id: int, profit: float) -> None:
        try:
            affected = self._db.execute(
                "UPDATE trades SET profit = $1 WHERE id = $2", (profit, trade_id)
            )
        except RepositoryError as exc:
            logger.error("Failed to update trade profit id=%s profit=%s: %s", trade_id, profit, exc)
            raise RepositoryError(f"update trade profit: {exc}") from exc
        if affected == 0:
            raise NotFoundError(f"trade not found: {trade_id}")
        logger.info("Trade profit updated id=%s profit=%s", trade_id, profit)

    def close_trade(self, trade_id: int, close_price: float, close_time: datetime) -> None:
        try:
            affected = self._db.execute(
                "UPDATE trades SET close_price = $1, close_time = $2 WHERE id = $3",
                (close_price, close_time, trade_id),
            )
        except RepositoryError as exc:
            logger.error(
                "Failed to close trade id=%s close_price=%s: %s", trade_id, close_price, exc
            )
            raise RepositoryError(f"close trade: {exc}") from exc
        if affected == 0:
            raise NotFoundError(f"trade not found: {trade_id}")
        logger.info("Trade closed id=%s close_price=%s", trade_id, close_price)


class CopiedTradeRepository:
    """Stores subscriber copies of trades in the ``copied_trades`` table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def create(self, request: CreateCopiedTradeRequest) -> CopiedTrade:
        query = f"""
            INSERT INTO copied_trades (trade_id, subscription_id, investor_account_id, volume_lots, open_time)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING {_COPIED_COLUMNS}
        """
        params = (
            request.trade_id,
            request.subscription_id,
            request.investor_account_id,
            request.volume_lots,
            request.open_time,
        )
        try:
            row = self._db.fetch_one(query, params)
        except RepositoryError as exc:
            logger.error(
                "Failed to create copied trade trade_id=%s subscription_id=%s: %s",
                request.trade_id,
                request.subscription_id,
                exc,
            )
            raise RepositoryError(f"create copied trade: {exc}") from exc
        if row is None:
            raise RepositoryError("create copied trade: no row returned")
        copied = CopiedTrade(**row)
        logger.info("Copied trade created id=%s trade_id=%s", copied.id, copied.trade_id)
        return copied

    def get_by_id(self, copied_trade_id: int) -> Optional[CopiedTrade]:
        query = f"SELECT {_COPIED_COLUMNS} FROM copied_trades WHERE id = $1"
        try:
            row = self._db.fetch_one(query, (copied_trade_id,))
        except RepositoryError as exc:
            logger.error("Failed to get copied trade by ID id=%s: %s", copied_trade_id, exc)
            raise RepositoryError(f"get copied trade by id: {exc}") from exc
        return CopiedTrade(**row) if row is not None else None

    def list(self, copied_filter: CopiedTradeFilter) -> PaginatedResult[CopiedTrade]:
        copied_filter.set_defaults()
        args: list = []
        conditions: List[str] = []
        if copied_filter.subscription_id:
            args.append(copied_filter.subscription_id)
            conditions.append(f"subscription_id = ${len(args)}")
        if copied_filter.trade_id:
            args.append(copied_filter.trade_id)
            conditions.append(f"trade_id = ${len(args)}")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        try:
            total = self._db.fetch_value(f"SELECT COUNT(*) FROM copied_trades {where}", args)
        except RepositoryError as exc:
            logger.error("Failed to count copied trades: %s", exc)
            raise RepositoryError(f"count copied trades: {exc}") from exc

        query = f"""
            SELECT {_COPIED_COLUMNS}
            FROM copied_trades
            {where}
            ORDER BY open_time DESC
            LIMIT ${len(args) + 1} OFFSET ${len(args) + 2}
        """
        try:
            rows = self._db.fetch_all(query, [*args, copied_filter.limit, copied_filter.offset])
        except RepositoryError as exc:
            logger.error("Failed to list copied trades: %s", exc)
            raise RepositoryError(f"list copied trades: {exc}") from exc

        total = int(total or 0)
        return PaginatedResult(
            data=[CopiedTrade(**row) for row in rows],
            total=total,
            page=copied_filter.page,
            limit=copied_filter.limit,
            total_pages=page_count(total, copied_filter.limit),
        )

    def get_by_subscription_id(self, subscription_id: int) -> List[CopiedTrade]:
        query = f"""
            SELECT {_COPIED_COLUMNS}
            FROM copied_trades
            WHERE subscription_id = $1
            ORDER BY open_time DESC
        """
        try:
            rows = self._db.fetch_all(query, (subscription_id,))
        except RepositoryError as exc:
            logger.error(
                "Failed to get copied trades by subscription ID subscription_id=%s: %s",
                subscription_id,
                exc,
            )
            raise RepositoryError(f"get copied trades by subscription id: {exc}") from exc
        return [CopiedTrade(**row) for row in rows]

    def get_by_trade_id(self, trade_id: int) -> List[CopiedTrade]:
        query = f"""
            SELECT {_COPIED_COLUMNS}
            FROM copied_trades
            WHERE trade_id = $1
            ORDER BY created_at DESC
        """
        try:
            rows = self._db.fetch_all(query, (trade_id,))
        except RepositoryError as exc:
            logger.error("Failed to get copied trades by trade ID trade_id=%s: %s", trade_id, exc)
            raise RepositoryError(f"get copied trades by trade id: {exc}") from exc
        return [CopiedTrade(**row) for row in rows]

    def update_profit(self, copied_trade_id: int, profit: float) -> None:
        try:
            affected = self._db.execute(
                "UPDATE copied_trades SET profit = $1 WHERE id = $2", (profit, copied_trade_id)
            )
        except RepositoryError as exc:
            logger.error(
                "Failed to update copied trade profit id=%s profit=%s: %s",
                copied_trade_id,
                profit,
                exc,
            )
            raise RepositoryError(f"update copied trade profit: {exc}") from exc
        if affected == 0:
            raise NotFoundError(f"copied trade not found: {copied_trade_id}")
        logger.info("Copied trade profit updated id=%s profit=%s", copied_trade_id, profit)

    def close_trade(self, copied_trade_id: int, close_time: datetime) -> None:
        try:
            affected = self._db.execute(
                "UPDATE copied_trades SET close_time = $1 WHERE id = $2",
                (close_time, copied_trade_id),
            )
        except RepositoryError as exc:
            logger.error("Failed to close copied trade id=%s: %s", copied_trade_id, exc)
            raise RepositoryError(f"close copied trade: {exc}") from exc
        if affected == 0:
            raise NotFoundError(f"copied trade not found: {copied_trade_id}")
        logger.info("Copied trade closed id=%s", copied_trade_id)