"""Batch import of trades from CSV or JSON files, tracked as import jobs."""

from __future__ import annotations

import csv
import io
import json
import logging
import re
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, BinaryIO, Dict, List, Optional, Union

from copytrade.common import ImportJobStatus, NotFoundError, PaginatedResult, RepositoryError
from copytrade.import_models import (
    CreateImportJobRequest,
    ErrorFilter,
    ImportJob,
    ImportJobError,
    ImportJobSummary,
    ImportJobType,
    ImportTradesRequest,
    JobFilter,
)
from copytrade.import_repository import ImportRepository
from copytrade.trades import CreateTradeRequest, TradeDirection, TradeRepository

logger = logging.getLogger(__name__)

Record = Dict[str, str]

_PROGRESS_EVERY = 100
_RFC3339 = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})$"
)
_PLAIN = re.compile(r"^(\d{4})-(\d{2})-(\d{2}) (\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?$")
_FLOAT = re.compile(
    r"^[+-]?(?:(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?|inf|infinity|nan)$", re.IGNORECASE
)


def _as_text(data: Union[bytes, str]) -> str:
    return data.decode("utf-8") if isinstance(data, (bytes, bytearray)) else data


def parse_csv(data: Union[bytes, str]) -> List[Record]:
    """Read a CSV document whose first row names the columns."""
    reader = csv.reader(io.StringIO(_as_text(data)))
    rows = (row for row in reader if row)
    try:
        header = next(rows, None)
        if header is None:
            raise ValueError("read CSV header: EOF")
        records: List[Record] = []
        for row in rows:
            if len(row) != len(header):
                raise ValueError(
                    f"read CSV row: record on line {reader.line_num}: wrong number of fields"
                )
            records.append(dict(zip(header, row)))
    except csv.Error as exc:
        raise ValueError(f"read CSV row: {exc}") from exc
    return records


def _format_number(value: Union[int, float]) -> str:
    number = float(value)
    if number.is_integer() and abs(number) < 1e21:
        return str(int(number))
    return repr(number)


def _as_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "<nil>"
    if isinstance(value, (int, float)):
        return _format_number(value)
    if isinstance(value, list):
        return "[" + " ".join(_as_string(item) for item in value) + "]"
    if isinstance(value, dict):
        items = " ".join(f"{key}:{_as_string(value[key])}" for key in sorted(value))
        return f"map[{items}]"
    return str(value)


def parse_json(data: Union[bytes, str]) -> List[Record]:
    """Read a JSON array of objects, turning every value into a string."""
    try:
        document = json.loads(_as_text(data))
    except ValueError as exc:
        raise ValueError(f"parse JSON: {exc}") from exc
    if document is None:
        return []
    if not isinstance(document, list):
        raise ValueError("parse JSON: expected an array of objects")
    records: List[Record] = []
    for item in document:
        if item is None:
            item = {}
        if not isinstance(item, dict):
            raise ValueError("parse JSON: expected an array of objects")
        records.append({key: _as_string(value) for key, value in item.items()})
    return records


def _first_present(record: Record, *keys: str) -> Optional[str]:
    for key in keys:
        value = record.get(key)
        if value:
            return value
    return None


def _parse_float(text: str, field: str) -> float:
    if not _FLOAT.match(text):
        raise ValueError(f"invalid {field}: parsing {text!r}: invalid syntax")
    return float(text)


def _parse_time(text: str) -> datetime:
    match = _RFC3339.match(text)
    if match:
        zone = match.group(8)
        if zone == "Z":
            tz = timezone.utc
        else:
            sign = 1 if zone[0] == "+" else -1
            hours, minutes = int(zone[1:3]), int(zone[4:6])
            tz = timezone(sign * timedelta(hours=hours, minutes=minutes))
    else:
        match = _PLAIN.match(text)
        if not match:
            raise ValueError(f"invalid open_time format: cannot parse {text!r}")
        tz = timezone.utc
    year, month, day, hour, minute, second = (int(part) for part in match.groups()[:6])
    fraction = match.group(7) or ""
    microsecond = int((fraction + "000000")[:6])
    try:
        return datetime(year, month, day, hour, minute, second, microsecond, tzinfo=tz)
    except ValueError as exc:
        raise ValueError(f"invalid open_time format: {exc}") from exc


def map_record_to_trade_request(
    record: Record, strategy_id: int, account_id: int
) -> CreateTradeRequest:
    """Build a trade request from one imported row, or raise ValueError."""
    symbol = record.get("symbol")
    if not symbol:
        raise ValueError("missing required field: symbol")

    direction_text = _first_present(record, "direction", "type")
    if direction_text is None:
        raise ValueError("missing required field: direction")

    volume_text = _first_present(record, "volume_lots", "volume")
    if volume_text is None:
        raise ValueError("missing required field: volume_lots")
    volume = _parse_float(volume_text, "volume_lots")

    open_price_text = record.get("open_price")
    if not open_price_text:
        raise ValueError("missing required field: open_price")
    open_price = _parse_float(open_price_text, "open_price")

    open_time_text = record.get("open_time")
    if not open_time_text:
        raise ValueError("missing required field: open_time")
    open_time = _parse_time(open_time_text)

    try:
        direction = TradeDirection(direction_text)
    except ValueError as exc:
        raise ValueError(f"invalid direction: {direction_text}") from exc

    return CreateTradeRequest(
        strategy_id=strategy_id,
        master_account_id=account_id,
        symbol=symbol,
        direction=direction,
        volume_lots=volume,
        open_price=open_price,
        open_time=open_time,
    )


def _raw_json(record: Record) -> str:
    text = json.dumps(record, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    for char, escape in (
        ("<", "\\u003c"),
        (">", "\\u003e"),
        ("&", "\\u0026"),
        ("\u2028", "\\u2028"),
        ("\u2029", "\\u2029"),
    ):
        text = text.replace(char, escape)
    return text


class ImportService:
    """Creates import jobs and runs trade imports, recording per-row errors."""

    def __init__(
        self,
        repository: ImportRepository,
        trades: TradeRepository,
        background: bool = True,
    ) -> None:
        self._repository = repository
        self._trades = trades
        self._background = background

    def create_job(self, request: CreateImportJobRequest) -> ImportJob:
        job = ImportJob(type=request.type, file_name=request.file_name)
        try:
            created = self._repository.create_job(job)
        except RepositoryError as exc:
            raise RepositoryError(f"create job: {exc}") from exc
        logger.info("Import job created id=%s type=%s", created.id, created.type.value)
        return created

    def import_trades(
        self, request: ImportTradesRequest, file: BinaryIO, file_name: str
    ) -> ImportJob:
        """Create a trades job and process the file, in the background by default.

        The job is returned as it was created; its progress is read back later.
        """
        job = ImportJob(type=ImportJobType.TRADES, file_name=file_name)
        try:
            created = self._repository.create_job(job)
        except RepositoryError as exc:
            raise RepositoryError(f"create import job: {exc}") from exc
        logger.info(
            "Trade import job created job_id=%s strategy_id=%s file_format=%s",
            created.id,
            request.strategy_id,
            request.file_format,
        )

        try:
            data = file.read()
        except OSError as exc:
            self._fail_job(created.id, f"Failed to read file: {exc}")
            return created
        if isinstance(data, str):
            data = data.encode("utf-8")

        if self._background:
            worker = threading.Thread(
                target=self.process_trade_import,
                args=(created.id, request, data),
                daemon=True,
            )
            worker.start()
        else:
            self.process_trade_import(created.id, request, data)
        return created

    def process_trade_import(
        self, job_id: int, request: ImportTradesRequest, data: Union[bytes, str]
    ) -> None:
        """Parse the file, create one trade per row and finish the job."""
        started = time.monotonic()
        parsers = {"csv": parse_csv, "json": parse_json}
        parser = parsers.get(request.file_format)
        if parser is None:
            self._fail_job(job_id, f"Unsupported file format: {request.file_format}")
            return
        try:
            records = parser(data)
        except (ValueError, UnicodeDecodeError) as exc:
            self._fail_job(job_id, f"Failed to parse file: {exc}")
            return

        total_rows = len(records)
        try:
            self._repository.start_job(job_id, total_rows)
        except RepositoryError as exc:
            logger.error("Failed to start import job job_id=%s: %s", job_id, exc)
            return

        processed_rows = 0
        job_errors: List[ImportJobError] = []
        for row_number, record in enumerate(records, start=1):
            message = self._import_row(record, request)
            if message is not None:
                job_errors.append(
                    ImportJobError(
                        job_id=job_id,
                        row_number=row_number,
                        raw_data=_raw_json(record),
                        error_message=message,
                    )
                )
                continue
            processed_rows += 1
            if processed_rows % _PROGRESS_EVERY == 0:
                self._report_progress(job_id, processed_rows, len(job_errors))

        error_rows = len(job_errors)
        if job_errors:
            try:
                self._repository.create_errors_batch(job_errors)
            except RepositoryError as exc:
                logger.error("Failed to save import errors job_id=%s: %s", job_id, exc)

        self._report_progress(job_id, processed_rows, error_rows)

        final_status = ImportJobStatus.SUCCESS
        if error_rows > 0 and processed_rows == 0:
            final_status = ImportJobStatus.FAILED
        try:
            self._repository.complete_job(job_id, final_status)
        except RepositoryError as exc:
            logger.error("Failed to complete import job job_id=%s: %s", job_id, exc)

        logger.info(
            "Trade import completed job_id=%s total_rows=%s processed=%s errors=%s duration=%.3fs",
            job_id,
            total_rows,
            processed_rows,
            error_rows,
            time.monotonic() - started,
        )

    def _import_row(self, record: Record, request: ImportTradesRequest) -> Optional[str]:
        try:
            trade_request = map_record_to_trade_request(
                record, request.strategy_id, request.account_id
            )
        except ValueError as exc:
            return str(exc)
        try:
            self._trades.create(trade_request)
        except RepositoryError as exc:
            return f"Failed to create trade: {exc}"
        return None

    def _report_progress(self, job_id: int, processed_rows: int, error_rows: int) -> None:
        try:
            self._repository.update_job_progress(job_id, processed_rows, error_rows)
        except RepositoryError as exc:
            logger.debug("Failed to update import progress job_id=%s: %s", job_id, exc)

    def _fail_job(self, job_id: int, message: str) -> None:
        try:
            self._repository.create_error(ImportJobError(job_id=job_id, error_message=message))
        except RepositoryError:
            logger.debug("Failed to record import failure job_id=%s", job_id, exc_info=True)
        try:
            self._repository.complete_job(job_id, ImportJobStatus.FAILED)
        except RepositoryError:
            logger.debug("Failed to mark import job failed job_id=%s", job_id, exc_info=True)
        logger.error("Import job failed job_id=%s error=%s", job_id, message)

    def get_job_by_id(self, job_id: int) -> Optional[ImportJob]:
        try:
            return self._repository.get_job_by_id(job_id)
        except RepositoryError as exc:
            raise RepositoryError(f"get job by id: {exc}") from exc

    def list_jobs(self, job_filter: JobFilter) -> PaginatedResult[ImportJob]:
        job_filter.set_defaults()
        return self._repository.list_jobs(job_filter)

    def get_job_errors(
        self, job_id: int, error_filter: ErrorFilter
    ) -> PaginatedResult[ImportJobError]:
        error_filter.set_defaults()
        return self._repository.get_job_errors(job_id, error_filter)

    def get_job_summary(self, job_id: int) -> ImportJobSummary:
        try:
            job = self._repository.get_job_by_id(job_id)
        except RepositoryError as exc:
            raise RepositoryError(f"get job: {exc}") from exc
        if job is None:
            raise NotFoundError(f"job not found: {job_id}")
        duration = timedelta()
        if job.started_at is not None and job.finished_at is not None:
            duration = job.finished_at - job.started_at
        return ImportJobSummary(
            total_rows=job.total_rows,
            processed_rows=job.processed_rows,
            error_rows=job.error_rows,
            duration=duration,
        )