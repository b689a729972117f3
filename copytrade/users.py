"""Users: entities, storage and the service that audits changes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from copytrade.common import (
    AuditAction,
    AuditEvent,
    AuditSink,
    EntityType,
    NotFoundError,
    PaginatedResult,
    Pagination,
    RepositoryError,
    UserRole,
    as_datetime,
    page_count,
)
from copytrade.db import Database

logger = logging.getLogger(__name__)

_COLUMNS = "id, name, email, role, created_at, updated_at"


def _role(value: Union[UserRole, str, None]) -> Optional[UserRole]:
    if value is None or value == "":
        return None
    return UserRole(value)


@dataclass
class User:
    id: int
    name: str
    email: str
    role: UserRole
    is_deleted: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.role = UserRole(self.role)
        self.is_deleted = bool(self.is_deleted)
        self.created_at = as_datetime(self.created_at)
        self.updated_at = as_datetime(self.updated_at)


@dataclass
class CreateUserRequest:
    name: str
    email: str
    role: UserRole

    def __post_init__(self) -> None:
        self.role = UserRole(self.role)


@dataclass
class UpdateUserRequest:
    name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[UserRole] = None

    def __post_init__(self) -> None:
        self.role = _role(self.role)


@dataclass(kw_only=True)
class UserFilter(Pagination):
    name: str = ""
    role: Optional[UserRole] = None

    def __post_init__(self) -> None:
        self.role = _role(self.role)


class UserRepository:
    """Stores users in the ``users`` table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def create(self, request: CreateUserRequest) -> User:
        query = f"""
            INSERT INTO users (name, email, role)
            VALUES ($1, $2, $3)
            RETURNING {_COLUMNS}
        """
        try:
            row = self._db.fetch_one(query, (request.name, request.email, request.role.value))
        except RepositoryError as exc:
            logger.error("Failed to create user email=%s: %s", request.email, exc)
            raise RepositoryError(f"create user: {exc}") from exc
        if row is None:
            raise RepositoryError("create user: no row returned")
        user = User(**row)
        logger.info("User created id=%s email=%s", user.id, user.email)
        return user

    def get_by_id(self, user_id: int) -> Optional[User]:
        query = f"SELECT {_COLUMNS} FROM users WHERE id = $1"
        try:
            row = self._db.fetch_one(query, (user_id,))
        except RepositoryError as exc:
            logger.error("Failed to get user by ID id=%s: %s", user_id, exc)
            raise RepositoryError(f"get user by id: {exc}") from exc
        return User(**row) if row is not None else None

    def list(self, user_filter: UserFilter) -> PaginatedResult[User]:
        user_filter.set_defaults()
        conditions = []
        args: list = []
        if user_filter.name:
            args.append(f"%{user_filter.name}%")
            conditions.append(f"LOWER(name) LIKE LOWER(${len(args)})")
        if user_filter.role is not None:
            args.append(user_filter.role.value)
            conditions.append(f"role = ${len(args)}")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        try:
            total = self._db.fetch_value(f"SELECT COUNT(*) FROM users {where}", args)
        except RepositoryError as exc:
            logger.error("Failed to count users: %s", exc)
            raise RepositoryError(f"count users: {exc}") from exc

        query = f"""
            SELECT {_COLUMNS}
            FROM users
            {where}
            ORDER BY created_at DESC
            LIMIT ${len(args) + 1} OFFSET ${len(args) + 2}
        """
        try:
            rows = self._db.fetch_all(query, [*args, user_filter.limit, user_filter.offset])
        except RepositoryError as exc:
            logger.error("Failed to list users: %s", exc)
            raise RepositoryError(f"list users: {exc}") from exc

        total = int(total or 0)
        return PaginatedResult(
            data=[User(**row) for row in rows],
            total=total,
            page=user_filter.page,
            limit=user_filter.limit,
            total_pages=page_count(total, user_filter.limit),
        )

    def update(self, user_id: int, request: UpdateUserRequest) -> Optional[User]:
        changes = {
            "name": request.name,
            "email": request.email,
            "role": request.role.value if request.role is not None else None,
        }
        set_clauses = []
        args: list = []
        for column, value in changes.items():
            if value is not None:
                args.append(value)
                set_clauses.append(f"{column} = ${len(args)}")
        if not set_clauses:
            return self.get_by_id(user_id)

        set_clauses.append("updated_at = now()")
        args.append(user_id)
        query = f"""
            UPDATE users
            SET {', '.join(set_clauses)}
            WHERE id = ${len(args)}
            RETURNING {_COLUMNS}
        """
        try:
            row = self._db.fetch_one(query, args)
        except RepositoryError as exc:
            logger.error("Failed to update user id=%s: %s", user_id, exc)
            raise RepositoryError(f"update user: {exc}") from exc
        if row is None:
            raise NotFoundError(f"user not found: {user_id}")
        user = User(**row)
        logger.info("User updated id=%s", user.id)
        return user

    def delete(self, user_id: int) -> None:
        try:
            affected = self._db.execute("DELETE FROM users WHERE id = $1", (user_id,))
        except RepositoryError as exc:
            logger.error("Failed to delete user id=%s: %s", user_id, exc)
            raise RepositoryError(f"delete user: {exc}") from exc
        if affected == 0:
            raise NotFoundError(f"user not found: {user_id}")
        logger.info("User deleted id=%s", user_id)


def _record(sink: AuditSink, event: AuditEvent) -> None:
    # Auditing is best effort: a failure never undoes the change itself.
    try:
        sink.record(event)
    except Exception:
        logger.warning("Failed to record audit event for %s %s", event.entity_type.value, event.entity_id, exc_info=True)


class UserService:
    """User operations with an audit trail."""

    def __init__(self, repository: UserRepository, audit: Optional[AuditSink] = None) -> None:
        self._repository = repository
        self._audit = audit if audit is not None else AuditSink()

    def create(self, request: CreateUserRequest) -> User:
        logger.info("Creating user name=%s", request.name)
        user = self._repository.create(request)
        _record(self._audit, AuditEvent(EntityType.USER, user.id, AuditAction.CREATE, new_value=user))
        return user

    def get_by_id(self, user_id: int) -> Optional[User]:
        logger.info("Getting user by ID id=%s", user_id)
        return self._repository.get_by_id(user_id)

    def list(self, user_filter: UserFilter) -> PaginatedResult[User]:
        user_filter.set_defaults()
        logger.info("Listing users filter=%s", user_filter)
        return self._repository.list(user_filter)

    def update(self, user_id: int, request: UpdateUserRequest) -> Optional[User]:
        logger.info("Updating user id=%s", user_id)
        old_user = self._repository.get_by_id(user_id)
        user = self._repository.update(user_id, request)
        _record(
            self._audit,
            AuditEvent(EntityType.USER, user_id, AuditAction.UPDATE, old_value=old_user, new_value=user),
        )
        return user

    def delete(self, user_id: int) -> None:
        logger.info("Deleting user id=%s", user_id)
        old_user = self._repository.get_by_id(user_id)
        self._repository.delete(user_id)
        _record(self._audit, AuditEvent(EntityType.USER, user_id, AuditAction.DELETE, old_value=old_user))