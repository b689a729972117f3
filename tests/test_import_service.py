import io
import json
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from copytrade.common import ImportJobStatus, NotFoundError
from copytrade.db import Database
from copytrade.import_models import (
    CreateImportJobRequest,
    ErrorFilter,
    ImportJobType,
    ImportTradesRequest,
    JobFilter,
)
from copytrade.import_repository import ImportRepository
from copytrade.import_service import (
    ImportService,
    map_record_to_trade_request,
    parse_csv,
    parse_json,
)
from copytrade.trades import TradeDirection, TradeRepository

sqlite3.register_adapter(datetime, lambda value: value.isoformat(" "))

SCHEMA = """
CREATE TABLE import_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL,
    status TEXT NOT NULL,
    file_name TEXT,
    total_rows INTEGER NOT NULL DEFAULT 0,
    processed_rows INTEGER NOT NULL DEFAULT 0,
    error_rows INTEGER NOT NULL DEFAULT 0,
    started_at TEXT,
    finished_at TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now'))
);
CREATE TABLE import_job_errors (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id INTEGER NOT NULL,
    row_number INTEGER,
    raw_data TEXT,
    error_message TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now'))
);
CREATE TABLE trades (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    strategy_id INTEGER NOT NULL,
    master_account_id INTEGER NOT NULL,
    symbol TEXT NOT NULL CHECK (symbol <> 'FAIL'),
    volume_lots REAL NOT NULL,
    direction TEXT NOT NULL,
    open_time TEXT NOT NULL,
    close_time TEXT,
    open_price REAL NOT NULL,
    close_price REAL,
    profit REAL,
    commission REAL,
    swap REAL,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now'))
);
"""

HEADER = "symbol,direction,volume_lots,open_price,open_time\n"
GOOD_CSV = HEADER + "EURUSD,buy,1.5,1.1,2024-01-15T10:30:00Z\nGBPUSD,sell,0.5,1.25,2024-01-15 11:00:00\n"


@pytest.fixture
def env():
    connection = sqlite3.connect(":memory:")
    connection.executescript(SCHEMA)
    db = Database(connection)
    repo = ImportRepository(db)
    service = ImportService(repo, TradeRepository(db), background=False)
    yield service, db
    connection.close()


def _request(file_format="csv"):
    return ImportTradesRequest(strategy_id=7, account_id=9, file_format=file_format)


def _run(service, content, file_format="csv"):
    created = service.import_trades(_request(file_format), io.BytesIO(content.encode()), "f")
    return created, service.get_job_by_id(created.id)


def test_parse_csv_maps_header_to_values():
    records = parse_csv(b"a,b\n1,2\n\n3,4\n")
    assert records == [{"a": "1", "b": "2"}, {"a": "3", "b": "4"}]


def test_parse_csv_empty_has_no_header():
    with pytest.raises(ValueError, match="read CSV header"):
        parse_csv(b"")


def test_parse_csv_rejects_wrong_field_count():
    with pytest.raises(ValueError, match="read CSV row"):
        parse_csv("a,b\n1,2,3\n")


def test_parse_json_string_values():
    data = json.dumps([{"symbol": "EURUSD", "open_price": "1.1"}])
    assert parse_json(data) == [{"symbol": "EURUSD", "open_price": "1.1"}]


def test_parse_json_converts_other_values():
    records = parse_json('[{"volume": 1.5, "flag": true, "count": 100}, null]')
    assert records[0]["volume"] == "1.5"
    assert records[0]["flag"] == "true"
    assert records[0]["count"] == "100"
    assert records[1] == {}


def test_parse_json_null_is_empty_and_garbage_fails():
    assert parse_json("null") == []
    with pytest.raises(ValueError, match="parse JSON"):
        parse_json("{not json")
    with pytest.raises(ValueError, match="parse JSON"):
        parse_json('{"a": "b"}')


def test_map_record_builds_request():
    record = {
        "symbol": "EURUSD",
        "direction": "buy",
        "volume_lots": "1.5",
        "open_price": "1.1",
        "open_time": "2024-01-15T10:30:00Z",
    }
    request = map_record_to_trade_request(record, 7, 9)
    assert request.strategy_id == 7
    assert request.master_account_id == 9
    assert request.symbol == "EURUSD"
    assert request.direction is TradeDirection.BUY
    assert request.volume_lots == 1.5
    assert request.open_price == 1.1
    assert request.open_time == datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)


def test_map_record_uses_fallback_keys_and_plain_time():
    record = {
        "symbol": "GBPUSD",
        "type": "sell",
        "volume": "2",
        "open_price": "1.25",
        "open_time": "2024-01-15 11:00:00",
    }
    request = map_record_to_trade_request(record, 1, 2)
    assert request.direction is TradeDirection.SELL
    assert request.volume_lots == 2.0
    assert request.open_time == datetime(2024, 1, 15, 11, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "missing, message",
    [
        ("symbol", "missing required field: symbol"),
        ("direction", "missing required field: direction"),
        ("volume_lots", "missing required field: volume_lots"),
        ("open_price", "missing required field: open_price"),
        ("open_time", "missing required field: open_time"),
    ],
)
def test_map_record_reports_missing_field(missing, message):
    record = {
        "symbol": "EURUSD",
        "direction": "buy",
        "volume_lots": "1",
        "open_price": "1",
        "open_time": "2024-01-15T10:30:00Z",
    }
    record[missing] = ""
    with pytest.raises(ValueError, match=message):
        map_record_to_trade_request(record, 1, 1)


def test_map_record_rejects_bad_numbers_and_times():
    base = {
        "symbol": "EURUSD",
        "direction": "buy",
        "volume_lots": "1",
        "open_price": "1",
        "open_time": "2024-01-15T10:30:00Z",
    }
    with pytest.raises(ValueError, match="invalid volume_lots"):
        map_record_to_trade_request({**base, "volume_lots": "abc"}, 1, 1)
    with pytest.raises(ValueError, match="invalid open_price"):
        map_record_to_trade_request({**base, "open_price": "x"}, 1, 1)
    with pytest.raises(ValueError, match="invalid open_time format"):
        map_record_to_trade_request({**base, "open_time": "15/01/2024"}, 1, 1)


def test_create_job(env):
    service, _ = env
    job = service.create_job(CreateImportJobRequest(type="accounts", file_name="a.csv"))
    assert job.type is ImportJobType.ACCOUNTS
    assert job.status is ImportJobStatus.PENDING
    assert service.get_job_by_id(job.id) == job


def test_import_trades_success(env):
    service, db = env
    created, job = _run(service, GOOD_CSV)
    assert created.status is ImportJobStatus.PENDING
    assert job.status is ImportJobStatus.SUCCESS
    assert (job.total_rows, job.processed_rows, job.error_rows) == (2, 2, 0)
    assert db.fetch_value("SELECT COUNT(*) FROM trades WHERE strategy_id = 7") == 2


def test_import_trades_json(env):
    service, db = env
    content = json.dumps(
        [
            {
                "symbol": "EURUSD",
                "direction": "buy",
                "volume_lots": 1.5,
                "open_price": 1.1,
                "open_time": "2024-01-15T10:30:00Z",
            }
        ]
    )
    _, job = _run(service, content, "json")
    assert job.status is ImportJobStatus.SUCCESS
    assert db.fetch_value("SELECT symbol FROM trades") == "EURUSD"


def test_import_trades_records_row_errors(env):
    service, _ = env
    content = (
        HEADER
        + "EURUSD,buy,1.5,1.1,2024-01-15T10:30:00Z\n"
        + ",buy,1,1,2024-01-15T10:30:00Z\n"
        + "FAIL,buy,1,1,2024-01-15T10:30:00Z\n"
    )
    _, job = _run(service, content)
    assert job.status is ImportJobStatus.SUCCESS
    assert (job.processed_rows, job.error_rows) == (1, 2)

    errors = service.get_job_errors(job.id, ErrorFilter()).data
    assert [error.row_number for error in errors] == [2, 3]
    assert errors[0].error_message == "missing required field: symbol"
    assert errors[1].error_message.startswith("Failed to create trade:")
    assert json.loads(errors[0].raw_data)["direction"] == "buy"


def test_import_fails_when_no_row_succeeds(env):
    service, _ = env
    _, job = _run(service, HEADER + ",buy,1,1,2024-01-15T10:30:00Z\n")
    assert job.status is ImportJobStatus.FAILED


def test_unsupported_format_fails_job(env):
    service, _ = env
    _, job = _run(service, GOOD_CSV, "xml")
    assert job.status is ImportJobStatus.FAILED
    errors = service.get_job_errors(job.id, ErrorFilter()).data
    assert errors[0].error_message == "Unsupported file format: xml"
    assert errors[0].row_number is None


def test_parse_failure_fails_job(env):
    service, _ = env
    _, job = _run(service, "{broken", "json")
    assert job.status is ImportJobStatus.FAILED
    errors = service.get_job_errors(job.id, ErrorFilter()).data
    assert errors[0].error_message.startswith("Failed to parse file: parse JSON")


class _BrokenFile:
    def read(self):
        raise OSError("disk gone")


def test_read_failure_fails_job(env):
    service, _ = env
    created = service.import_trades(_request(), _BrokenFile(), "f")
    job = service.get_job_by_id(created.id)
    assert job.status is ImportJobStatus.FAILED
    errors = service.get_job_errors(job.id, ErrorFilter()).data
    assert errors[0].error_message == "Failed to read file: disk gone"


def test_list_jobs_returns_created_jobs(env):
    service, _ = env
    first, _ = _run(service, GOOD_CSV)
    result = service.list_jobs(JobFilter(type="trades"))
    assert [job.id for job in result.data] == [first.id]
    assert result.limit == 20


def test_job_summary(env):
    service, _ = env
    created, _ = _run(service, GOOD_CSV)
    summary = service.get_job_summary(created.id)
    assert (summary.total_rows, summary.processed_rows, summary.error_rows) == (2, 2, 0)
    assert summary.duration >= timedelta(0)


def test_job_summary_without_start_has_zero_duration(env):
    service, _ = env
    job = service.create_job(CreateImportJobRequest(type="trades"))
    assert service.get_job_summary(job.id).duration == timedelta(0)


def test_job_summary_missing_job(env):
    service, _ = env
    with pytest.raises(NotFoundError, match="job not found: 404"):
        service.get_job_summary(404)