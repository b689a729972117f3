"""Storage for batch import jobs and the errors recorded while running them."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence, Union

from copytrade.common import (
    ImportJobStatus,
    NotFoundError,
    PaginatedResult,
    RepositoryError,
    page_count,
)
from copytrade.db import Database
from copytrade.import_models import ErrorFilter, ImportJob, ImportJobError, JobFilter

logger = logging.getLogger(__name__)

_JOB_COLUMNS = (
    "id, type, status, file_name, total_rows, processed_rows, error_rows, "
    "started_at, finished_at, created_at"
)
_ERROR_COLUMNS = "id, job_id, row_number, raw_data, error_message, created_at"

_INSERT_ERROR = """
    INSERT INTO import_job_errors (job_id, row_number, raw_data, error_message)
    VALUES ($1, $2, $3, $4)
"""


def _status_value(status: Union[ImportJobStatus, str]) -> str:
    return ImportJobStatus(status).value


def _error_params(job_error: ImportJobError) -> tuple:
    return (
        job_error.job_id,
        job_error.row_number,
        job_error.raw_data,
        job_error.error_message,
    )


class ImportRepository:
    """Reads and writes the ``import_jobs`` and ``import_job_errors`` tables."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def create_job(self, job: ImportJob) -> ImportJob:
        """Insert a new pending job and return it as stored."""
        query = f"""
            INSERT INTO import_jobs (type, status, file_name)
            VALUES ($1, $2, $3)
            RETURNING {_JOB_COLUMNS}
        """
        params = (job.type.value, ImportJobStatus.PENDING.value, job.file_name)
        try:
            row = self._db.fetch_one(query, params)
        except RepositoryError as exc:
            logger.error("Failed to create import job type=%s: %s", job.type.value, exc)
            raise RepositoryError(f"create import job: {exc}") from exc
        if row is None:
            raise RepositoryError("create import job: no row returned")
        created = ImportJob(**row)
        logger.info("Import job created id=%s type=%s", created.id, created.type.value)
        return created

    def get_job_by_id(self, job_id: int) -> Optional[ImportJob]:
        """Return the job, or None when there is no job with that id."""
        query = f"SELECT {_JOB_COLUMNS} FROM import_jobs WHERE id = $1"
        try:
            row = self._db.fetch_one(query, (job_id,))
        except RepositoryError as exc:
            logger.error("Failed to get import job by ID id=%s: %s", job_id, exc)
            raise RepositoryError(f"get import job by id: {exc}") from exc
        return ImportJob(**row) if row is not None else None

    def list_jobs(self, job_filter: JobFilter) -> PaginatedResult[ImportJob]:
        """One page of jobs matching the filter, newest first."""
        job_filter.set_defaults()
        conditions: List[str] = []
        args: list = []
        if job_filter.type is not None:
            args.append(job_filter.type.value)
            conditions.append(f"type = ${len(args)}")
        if job_filter.status is not None:
            args.append(job_filter.status.value)
            conditions.append(f"status = ${len(args)}")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        try:
            total = self._db.fetch_value(f"SELECT COUNT(*) FROM import_jobs {where}", args)
        except RepositoryError as exc:
            logger.error("Failed to count import jobs: %s", exc)
            raise RepositoryError(f"count import jobs: {exc}") from exc

        query = f"""
            SELECT {_JOB_COLUMNS}
            FROM import_jobs
            {where}
            ORDER BY created_at DESC
            LIMIT ${len(args) + 1} OFFSET ${len(args) + 2}
        """
        try:
            rows = self._db.fetch_all(query, [*args, job_filter.limit, job_filter.offset])
        except RepositoryError as exc:
            logger.error("Failed to list import jobs: %s", exc)
            raise RepositoryError(f"list import jobs: {exc}") from exc

        total = int(total or 0)
        return PaginatedResult(
            data=[ImportJob(**row) for row in rows],
            total=total,
            page=job_filter.page,
            limit=job_filter.limit,
            total_pages=page_count(total, job_filter.limit),
        )

    def _update(self, query: str, params: Sequence, job_id: int, action: str) -> None:
        try:
            affected = self._db.execute(query, params)
        except RepositoryError as exc:
            logger.error("Failed to %s id=%s: %s", action, job_id, exc)
            raise RepositoryError(f"{action}: {exc}") from exc
        if affected == 0:
            raise NotFoundError(f"import job not found: {job_id}")

    def update_job_status(self, job_id: int, status: Union[ImportJobStatus, str]) -> None:
        value = _status_value(status)
        self._update(
            "UPDATE import_jobs SET status = $1 WHERE id = $2",
            (value, job_id),
            job_id,
            "update import job status",
        )
        logger.info("Import job status updated id=%s status=%s", job_id, value)

    def update_job_progress(self, job_id: int, processed_rows: int, error_rows: int) -> None:
        self._update(
            """
            UPDATE import_jobs
            SET processed_rows = $1, error_rows = $2
            WHERE id = $3
            """,
            (processed_rows, error_rows, job_id),
            job_id,
            "update import job progress",
        )

    def start_job(self, job_id: int, total_rows: int) -> None:
        """Mark the job running, stamp its start time and record the row count."""
        self._update(
            """
            UPDATE import_jobs
            SET status = $1, started_at = $2, total_rows = $3
            WHERE id = $4
            """,
            (ImportJobStatus.RUNNING.value, datetime.now(timezone.utc), total_rows, job_id),
            job_id,
            "start import job",
        )
        logger.info("Import job started id=%s total_rows=%s", job_id, total_rows)

    def complete_job(self, job_id: int, status: Union[ImportJobStatus, str]) -> None:
        """Set the final status and stamp the finish time."""
        value = _status_value(status)
        self._update(
            """
            UPDATE import_jobs
            SET status = $1, finished_at = $2
            WHERE id = $3
            """,
            (value, datetime.now(timezone.utc), job_id),
            job_id,
            "complete import job",
        )
        logger.info("Import job completed id=%s status=%s", job_id, value)

    def create_error(self, job_error: ImportJobError) -> ImportJobError:
        query = f"{_INSERT_ERROR} RETURNING {_ERROR_COLUMNS}"
        try:
            row = self._db.fetch_one(query, _error_params(job_error))
        except RepositoryError as exc:
            logger.error("Failed to create import error job_id=%s: %s", job_error.job_id, exc)
            raise RepositoryError(f"create import error: {exc}") from exc
        if row is None:
            raise RepositoryError("create import error: no row returned")
        return ImportJobError(**row)

    def create_errors_batch(self, job_errors: Iterable[ImportJobError]) -> None:
        """Insert all errors in one transaction; nothing is kept if one fails."""
        errors = list(job_errors)
        if not errors:
            return
        with self._db.transaction():
            for job_error in errors:
                try:
                    self._db.execute(_INSERT_ERROR, _error_params(job_error))
                except RepositoryError as exc:
                    logger.error(
                        "Failed to insert import error in batch job_id=%s: %s",
                        job_error.job_id,
                        exc,
                    )
                    raise RepositoryError(f"insert import error: {exc}") from exc
        logger.info("Import errors batch created count=%s", len(errors))

    def get_job_errors(
        self, job_id: int, error_filter: ErrorFilter
    ) -> PaginatedResult[ImportJobError]:
        """One page of a job's errors, ordered by row number."""
        error_filter.set_defaults()
        total = self.count_job_errors(job_id)
        query = f"""
            SELECT {_ERROR_COLUMNS}
            FROM import_job_errors
            WHERE job_id = $1
            ORDER BY row_number ASC, created_at ASC
            LIMIT $2 OFFSET $3
        """
        try:
            rows = self._db.fetch_all(query, (job_id, error_filter.limit, error_filter.offset))
        except RepositoryError as exc:
            logger.error("Failed to get import job errors job_id=%s: %s", job_id, exc)
            raise RepositoryError(f"get import job errors: {exc}") from exc
        return PaginatedResult(
            data=[ImportJobError(**row) for row in rows],
            total=total,
            page=error_filter.page,
            limit=error_filter.limit,
            total_pages=page_count(total, error_filter.limit),
        )

    def count_job_errors(self, job_id: int) -> int:
        query = "SELECT COUNT(*) FROM import_job_errors WHERE job_id = $1"
        try:
            count = self._db.fetch_value(query, (job_id,))
        except RepositoryError as exc:
            logger.error("Failed to count import job errors job_id=%s: %s", job_id, exc)
            raise RepositoryError(f"count import job errors: {exc}") from exc
        return int(count or 0)