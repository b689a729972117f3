"""Data types for batch import jobs and their errors."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional, Type, TypeVar, Union

from copytrade.common import ImportJobStatus, Pagination, as_datetime

E = TypeVar("E", bound=Enum)


class ImportJobType(str, Enum):
    TRADES = "trades"
    ACCOUNTS = "accounts"
    STATISTICS = "statistics"


def _optional_enum(enum_cls: Type[E], value: Union[E, str, None]) -> Optional[E]:
    if value is None or value == "":
        return None
    return enum_cls(value)


@dataclass
class ImportJob:
    """A batch import run and its progress counters."""

    id: int = 0
    type: ImportJobType = ImportJobType.TRADES
    status: ImportJobStatus = ImportJobStatus.PENDING
    file_name: Optional[str] = None
    total_rows: int = 0
    processed_rows: int = 0
    error_rows: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.type = ImportJobType(self.type)
        self.status = ImportJobStatus(self.status)
        self.started_at = as_datetime(self.started_at)
        self.finished_at = as_datetime(self.finished_at)
        self.created_at = as_datetime(self.created_at)


@dataclass
class ImportJobError:
    """One failed row (or a whole-job failure) of an import job."""

    id: int = 0
    job_id: int = 0
    row_number: Optional[int] = None
    raw_data: Optional[str] = None
    error_message: str = ""
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if isinstance(self.raw_data, (bytes, bytearray)):
            self.raw_data = bytes(self.raw_data).decode("utf-8")
        self.created_at = as_datetime(self.created_at)


@dataclass
class ImportJobSummary:
    total_rows: int = 0
    processed_rows: int = 0
    error_rows: int = 0
    errors_by_type: Dict[str, int] = field(default_factory=dict)
    duration: timedelta = field(default_factory=timedelta)


@dataclass
class CreateImportJobRequest:
    type: ImportJobType
    file_name: str = ""

    def __post_init__(self) -> None:
        self.type = ImportJobType(self.type)


@dataclass
class ImportTradesRequest:
    strategy_id: int
    account_id: int
    file_format: str


@dataclass(kw_only=True)
class JobFilter(Pagination):
    type: Optional[ImportJobType] = None
    status: Optional[ImportJobStatus] = None

    def __post_init__(self) -> None:
        self.type = _optional_enum(ImportJobType, self.type)
        self.status = _optional_enum(ImportJobStatus, self.status)


@dataclass(kw_only=True)
class ErrorFilter(Pagination):
    pass