import sqlite3
from datetime import datetime

import pytest

from copytrade.common import ImportJobStatus, NotFoundError, RepositoryError
from copytrade.db import Database
from copytrade.import_models import (
    ErrorFilter,
    ImportJob,
    ImportJobError,
    ImportJobType,
    JobFilter,
)
from copytrade.import_repository import ImportRepository

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
"""


@pytest.fixture
def repo():
    connection = sqlite3.connect(":memory:")
    connection.executescript(SCHEMA)
    yield ImportRepository(Database(connection))
    connection.close()


def _job(repo, job_type=ImportJobType.TRADES, file_name="trades.csv"):
    return repo.create_job(ImportJob(type=job_type, file_name=file_name))


def test_create_job_is_pending_with_zero_counters(repo):
    job = _job(repo)
    assert job.id > 0
    assert job.status is ImportJobStatus.PENDING
    assert job.type is ImportJobType.TRADES
    assert job.file_name == "trades.csv"
    assert (job.total_rows, job.processed_rows, job.error_rows) == (0, 0, 0)
    assert job.created_at is not None


def test_get_job_by_id_round_trip(repo):
    job = _job(repo)
    assert repo.get_job_by_id(job.id) == job


def test_get_missing_job_returns_none(repo):
    assert repo.get_job_by_id(999) is None


def test_list_jobs_filters_by_type_and_status(repo):
    trades = _job(repo)
    accounts = _job(repo, ImportJobType.ACCOUNTS, "accounts.csv")
    repo.update_job_status(accounts.id, ImportJobStatus.FAILED)

    by_type = repo.list_jobs(JobFilter(type="trades"))
    assert [job.id for job in by_type.data] == [trades.id]
    assert by_type.total == 1

    by_status = repo.list_jobs(JobFilter(status="failed"))
    assert [job.id for job in by_status.data] == [accounts.id]


def test_list_jobs_paginates(repo):
    ids = {_job(repo).id for _ in range(3)}
    first = repo.list_jobs(JobFilter(page=1, limit=2))
    second = repo.list_jobs(JobFilter(page=2, limit=2))
    assert first.total == 3
    assert first.total_pages == 2
    assert len(first.data) == 2
    assert {job.id for job in first.data + second.data} == ids


def test_list_jobs_applies_default_pagination(repo):
    _job(repo)
    result = repo.list_jobs(JobFilter())
    assert (result.page, result.limit) == (1, 20)


def test_update_missing_job_raises_not_found(repo):
    with pytest.raises(NotFoundError, match="import job not found: 42"):
        repo.update_job_status(42, ImportJobStatus.RUNNING)
    with pytest.raises(NotFoundError):
        repo.update_job_progress(42, 1, 1)
    with pytest.raises(NotFoundError):
        repo.start_job(42, 10)
    with pytest.raises(NotFoundError):
        repo.complete_job(42, ImportJobStatus.SUCCESS)


def test_start_progress_and_complete(repo):
    job = _job(repo)
    repo.start_job(job.id, 7)
    running = repo.get_job_by_id(job.id)
    assert running.status is ImportJobStatus.RUNNING
    assert running.total_rows == 7
    assert running.started_at is not None
    assert running.finished_at is None

    repo.update_job_progress(job.id, 5, 2)
    repo.complete_job(job.id, "success")
    done = repo.get_job_by_id(job.id)
    assert (done.processed_rows, done.error_rows) == (5, 2)
    assert done.status is ImportJobStatus.SUCCESS
    assert done.finished_at >= done.started_at


def test_create_error_returns_stored_row(repo):
    job = _job(repo)
    stored = repo.create_error(
        ImportJobError(job_id=job.id, row_number=3, raw_data='{"a":"b"}', error_message="bad")
    )
    assert stored.id > 0
    assert (stored.job_id, stored.row_number, stored.raw_data, stored.error_message) == (
        job.id,
        3,
        '{"a":"b"}',
        "bad",
    )


def test_errors_batch_sorted_and_counted(repo):
    job = _job(repo)
    repo.create_errors_batch(
        [
            ImportJobError(job_id=job.id, row_number=number, error_message=f"row {number}")
            for number in (3, 1, 2)
        ]
    )
    assert repo.count_job_errors(job.id) == 3
    page = repo.get_job_errors(job.id, ErrorFilter())
    assert [error.row_number for error in page.data] == [1, 2, 3]
    assert page.total == 3


def test_errors_batch_empty_is_noop(repo):
    job = _job(repo)
    repo.create_errors_batch([])
    assert repo.count_job_errors(job.id) == 0


def test_errors_batch_rolls_back_on_failure(repo):
    job = _job(repo)
    batch = [
        ImportJobError(job_id=job.id, row_number=1, error_message="first"),
        ImportJobError(job_id=job.id, row_number=2, error_message=None),
    ]
    with pytest.raises(RepositoryError, match="insert import error"):
        repo.create_errors_batch(batch)
    assert repo.count_job_errors(job.id) == 0


def test_get_job_errors_paginates(repo):
    job = _job(repo)
    repo.create_errors_batch(
        [ImportJobError(job_id=job.id, row_number=n, error_message="x") for n in (1, 2, 3)]
    )
    page = repo.get_job_errors(job.id, ErrorFilter(page=2, limit=2))
    assert [error.row_number for error in page.data] == [3]
    assert page.page == 2