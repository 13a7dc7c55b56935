"""Persistence of users and their dates of birth."""
from __future__ import annotations

from datetime import date
from typing import List, Optional

import asyncpg

from .database import ConnectionManager, ConstraintViolationError
from .models import User


def _translate_violation(exc: asyncpg.IntegrityConstraintViolationError) -> ConstraintViolationError:
    constraint = getattr(exc, "constraint_name", None)
    if isinstance(exc, asyncpg.UniqueViolationError):
        return ConstraintViolationError(
            "Resource already exists",
            kind=ConstraintViolationError.UNIQUE,
            constraint=constraint,
        )
    return ConstraintViolationError(str(exc), kind=ConstraintViolationError.CHECK, constraint=constraint)


class UserRepository:
    """Queries against the ``users`` table.

    Lookups go through the read pool and writes through the write pool.
    """

    def __init__(self, manager: ConnectionManager) -> None:
        self._manager = manager

    async def find_by_username(self, username: str) -> Optional[User]:
        pool = self._manager.get_read_pool()
        row = await pool.fetchrow("SELECT * FROM users WHERE username = $1", username)
        if row is None:
            return None
        return User.from_row(row)

    async def create_user(self, username: str, date_of_birth: date) -> User:
        pool = self._manager.get_write_pool()
        try:
            row = await pool.fetchrow(
                """
                INSERT INTO users (username, date_of_birth)
                VALUES ($1, $2)
                RETURNING *
                """,
                username,
                date_of_birth,
            )
        except (asyncpg.UniqueViolationError, asyncpg.CheckViolationError) as exc:
            raise _translate_violation(exc) from exc
        return User.from_row(row)

    async def update_user(self, username: str, date_of_birth: date) -> Optional[User]:
        pool = self._manager.get_write_pool()
        try:
            row = await pool.fetchrow(
                """
                UPDATE users
                SET date_of_birth = $2
                WHERE username = $1
                RETURNING *
                """,
                username,
                date_of_birth,
            )
        except (asyncpg.UniqueViolationError, asyncpg.CheckViolationError) as exc:
            raise _translate_violation(exc) from exc
        if row is None:
            return None
        return User.from_row(row)

    async def list_users(self, limit: int = 100, offset: int = 0) -> List[User]:
        if limit < 1:
            raise ValueError("limit must be positive")
        if offset < 0:
            raise ValueError("offset must not be negative")
        pool = self._manager.get_read_pool()
        rows = await pool.fetch(
            """
            SELECT * FROM users
            ORDER BY created_at DESC
            LIMIT $1 OFFSET $2
            """,
            limit,
            offset,
        )
        return [User.from_row(row) for row in rows]


__all__ = ["UserRepository"]
