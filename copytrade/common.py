"""Shared value types, status enums, pagination and audit primitives."""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, List, Optional, TypeVar

T = TypeVar("T")

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 20
MAX_LIMIT = 100

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Raised when a storage operation fails."""


class NotFoundError(RepositoryError):
    """Raised when an entity that must exist is missing."""


@dataclass
class Pagination:
    """Page number and size, with the offset derived from them."""

    page: int = 0
    limit: int = 0
    offset: int = 0

    def set_defaults(self) -> None:
        """Clamp page and limit to sane values and compute the offset."""
        if self.page <= 0:
            self.page = DEFAULT_PAGE
        if self.limit <= 0:
            self.limit = DEFAULT_LIMIT
        if self.limit > MAX_LIMIT:
            self.limit = MAX_LIMIT
        self.offset = (self.page - 1) * self.limit


def page_count(total: int, limit: int) -> int:
    """Number of pages needed to show ``total`` items ``limit`` at a time."""
    if limit <= 0:
        raise ValueError("limit must be positive")
    return math.ceil(total / limit)


@dataclass
class PaginatedResult(Generic[T]):
    """One page of results together with the overall totals."""

    data: List[T]
    total: int
    page: int
    limit: int
    total_pages: int


class StrategyStatus(str, Enum):
    PREPARING = "preparing"
    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"


class OfferStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"


class SubscriptionStatus(str, Enum):
    PREPARING = "preparing"
    ACTIVE = "active"
    ARCHIVED = "archived"
    SUSPENDED = "suspended"
    DELETED = "deleted"


class ImportJobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class AuditOperation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class UserRole(str, Enum):
    MASTER = "master"
    INVESTOR = "investor"


class FeeInterval(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass
class TimeRange:
    """An optional time window; a missing bound means unbounded."""

    start: Optional[datetime] = None
    end: Optional[datetime] = None


def new_uuid() -> uuid.UUID:
    """Return a fresh random UUID."""
    return uuid.uuid4()


def as_datetime(value: Any) -> Optional[datetime]:
    """Turn a value read from the database into a ``datetime``."""
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


class EntityType(str, Enum):
    USER = "user"
    STRATEGY = "strategy"
    OFFER = "offer"
    SUBSCRIPTION = "subscription"
    TRADE = "trade"


class AuditAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    STATUS_CHANGE = "status_change"


@dataclass
class AuditEvent:
    """A change made to an entity, with its state before and after."""

    entity_type: EntityType
    entity_id: int
    action: AuditAction
    old_value: Any = None
    new_value: Any = None
    changes: Optional[dict] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AuditSink:
    """Collects audit events in memory; subclasses may persist them."""

    def __init__(self) -> None:
        self.events: List[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)