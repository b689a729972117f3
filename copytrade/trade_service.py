"""Trade operations: recording master trades and copying them to subscribers."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from copytrade.common import (
    AuditAction,
    AuditEvent,
    AuditSink,
    EntityType,
    NotFoundError,
    PaginatedResult,
    RepositoryError,
    SubscriptionStatus,
)
from copytrade.subscriptions import Subscription, SubscriptionRepository
from copytrade.trades import (
    CopiedTrade,
    CopiedTradeFilter,
    CopiedTradeRepository,
    CreateCopiedTradeRequest,
    CreateTradeRequest,
    Trade,
    TradeFilter,
    TradeRepository,
)

logger = logging.getLogger(__name__)


@dataclass
class CopyTradeRequest:
    """Subscriptions to copy to; empty means every active one of the strategy."""

    subscription_ids: List[int] = field(default_factory=list)


class TradeService:
    """Creates and lists trades and fans them out to subscriptions."""

    def __init__(
        self,
        trades: TradeRepository,
        copied_trades: CopiedTradeRepository,
        subscriptions: SubscriptionRepository,
        audit: Optional[AuditSink] = None,
    ) -> None:
        self._trades = trades
        self._copied = copied_trades
        self._subscriptions = subscriptions
        self._audit = audit if audit is not None else AuditSink()

    def create(self, request: CreateTradeRequest) -> Trade:
        logger.info(
            "Creating trade strategy_id=%s symbol=%s direction=%s volume_lots=%s",
            request.strategy_id,
            request.symbol,
            request.direction.value,
            request.volume_lots,
        )
        trade = self._trades.create(request)
        try:
            self._audit.record(
                AuditEvent(EntityType.TRADE, trade.id, AuditAction.CREATE, new_value=trade)
            )
        except Exception:
            logger.warning("Failed to record audit event for trade %s", trade.id, exc_info=True)
        return trade

    def get_by_id(self, trade_id: int) -> Optional[Trade]:
        logger.info("Getting trade by ID id=%s", trade_id)
        return self._trades.get_by_id(trade_id)

    def list(self, trade_filter: TradeFilter) -> PaginatedResult[Trade]:
        trade_filter.set_defaults()
        logger.info("Listing trades filter=%s", trade_filter)
        return self._trades.list(trade_filter)

    def copy_trade(
        self, trade_id: int, request: Optional[CopyTradeRequest] = None
    ) -> List[CopiedTrade]:
        """Copy a trade to active subscriptions; failed copies are skipped."""
        request = request if request is not None else CopyTradeRequest()
        logger.info(
            "Copying trade trade_id=%s subscription_ids=%s", trade_id, request.subscription_ids
        )
        trade = self._trades.get_by_id(trade_id)
        if trade is None:
            raise NotFoundError("trade not found")

        if request.subscription_ids:
            targets = list(self._selected_active(request.subscription_ids))
        else:
            targets = self._subscriptions.get_active_by_strategy_id(trade.strategy_id)

        copied: List[CopiedTrade] = []
        for subscription in targets:
            copy_request = CreateCopiedTradeRequest(
                trade_id=trade.id,
                subscription_id=subscription.id,
                investor_account_id=subscription.investor_account_id,
                volume_lots=trade.volume_lots,
                open_time=datetime.now(timezone.utc),
            )
            try:
                copied.append(self._copied.create(copy_request))
            except RepositoryError as exc:
                logger.error(
                    "Failed to create copied trade subscription_id=%s: %s", subscription.id, exc
                )

        logger.info("Trade copied trade_id=%s copied_count=%s", trade_id, len(copied))
        return copied

    def _selected_active(self, subscription_ids: List[int]):
        for subscription_id in subscription_ids:
            try:
                subscription: Optional[Subscription] = self._subscriptions.get_by_id(
                    subscription_id
                )
            except RepositoryError as exc:
                logger.warning("Failed to get subscription %s: %s", subscription_id, exc)
                continue
            if subscription is not None and subscription.status is SubscriptionStatus.ACTIVE:
                yield subscription

    def list_copied_trades(self, copied_filter: CopiedTradeFilter) -> PaginatedResult[CopiedTrade]:
        copied_filter.set_defaults()
        logger.info("Listing copied trades filter=%s", copied_filter)
        return self._copied.list(copied_filter)