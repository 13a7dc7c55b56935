"""Shared fixtures: in-memory stand-ins for asyncpg pools."""

from __future__ import annotations

import itertools
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import asyncpg
import pytest

from birthdays.calculator import today_utc
from birthdays.config import DatabaseSettings, EndpointSettings, PoolSettings


class FakeUserStore:
    """Mimics the ``users`` table, including its unique and check constraints."""

    def __init__(self) -> None:
        self.rows: Dict[str, Dict[str, Any]] = {}
        self._ids = itertools.count(1)

    def insert(self, username: str, date_of_birth: date) -> Dict[str, Any]:
        self._check(username, date_of_birth)
        if username in self.rows:
            raise asyncpg.UniqueViolationError(
                'duplicate key value violates unique constraint "users_username_key"'
            )
        now = datetime.now(timezone.utc)
        row = {
            "id": next(self._ids),
            "username": username,
            "date_of_birth": date_of_birth,
            "created_at": now,
            "updated_at": now,
        }
        self.rows[username] = row
        return dict(row)

    def update(self, username: str, date_of_birth: date) -> Optional[Dict[str, Any]]:
        row = self.rows.get(username)
        if row is None:
            return None
        self._check(username, date_of_birth)
        row["date_of_birth"] = date_of_birth
        row["updated_at"] = datetime.now(timezone.utc)
        return dict(row)

    def find(self, username: str) -> Optional[Dict[str, Any]]:
        row = self.rows.get(username)
        return dict(row) if row is not None else None

    def listing(self, limit: int, offset: int) -> List[Dict[str, Any]]:
        ordered = sorted(self.rows.values(), key=lambda row: (row["created_at"], row["id"]), reverse=True)
        return [dict(row) for row in ordered[offset : offset + limit]]

    @staticmethod
    def _check(username: str, date_of_birth: date) -> None:
        if not (username.isascii() and username.isalpha()):
            raise asyncpg.CheckViolationError('new row violates check constraint "users_username_check"')
        if date_of_birth >= today_utc():
            raise asyncpg.CheckViolationError('new row violates check constraint "users_date_of_birth_check"')


class FakePool:
    """Implements the subset of :class:`birthdays.database.ConnectionPool` used by the service."""

    def __init__(self, name: str, store: Optional[FakeUserStore] = None) -> None:
        self.name = name
        self.store = store if store is not None else FakeUserStore()
        self.queries: List[str] = []
        self.close_calls = 0
        self.probe_error: Optional[BaseException] = None
        self.schema_error: Optional[BaseException] = None
        self.close_error: Optional[BaseException] = None

    @staticmethod
    def _normalise(query: str) -> str:
        return " ".join(query.split())

    async def fetchval(self, query: str, *args: Any) -> Any:
        self.queries.append(self._normalise(query))
        if self.probe_error is not None:
            raise self.probe_error
        return 1

    async def execute(self, query: str, *args: Any) -> str:
        self.queries.append(self._normalise(query))
        if self.schema_error is not None:
            raise self.schema_error
        return "CREATE TRIGGER"

    async def fetchrow(self, query: str, *args: Any) -> Optional[Dict[str, Any]]:
        sql = self._normalise(query)
        self.queries.append(sql)
        if sql.startswith("INSERT INTO users"):
            return self.store.insert(*args)
        if sql.startswith("UPDATE users"):
            return self.store.update(*args)
        if sql.startswith("SELECT * FROM users WHERE username"):
            return self.store.find(*args)
        raise AssertionError(f"Unexpected query: {sql}")

    async def fetch(self, query: str, *args: Any) -> List[Dict[str, Any]]:
        sql = self._normalise(query)
        self.queries.append(sql)
        if "ORDER BY created_at DESC" in sql:
            return self.store.listing(*args)
        raise AssertionError(f"Unexpected query: {sql}")

    async def close(self) -> None:
        self.close_calls += 1
        if self.close_error is not None:
            raise self.close_error


class FakePoolFactory:
    """Pool factory that records every pool it opens and can fail on demand.

    ``failures`` lists, per call, an exception to raise instead of opening a
    pool; ``None`` entries (or running past the end) open a pool normally.
    """

    def __init__(
        self,
        store: Optional[FakeUserStore] = None,
        failures: Optional[List[Optional[BaseException]]] = None,
    ) -> None:
        self.store = store if store is not None else FakeUserStore()
        self.failures = list(failures or [])
        self.calls: List[Dict[str, Any]] = []
        self.pools: List[FakePool] = []
        self.configure: Optional[Callable[[FakePool], None]] = None

    async def __call__(self, endpoint: EndpointSettings, settings: PoolSettings, *, name: str) -> FakePool:
        self.calls.append({"endpoint": endpoint, "settings": settings, "name": name})
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure
        pool = FakePool(name, store=self.store)
        if self.configure is not None:
            self.configure(pool)
        self.pools.append(pool)
        return pool


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture()
def shared_settings() -> DatabaseSettings:
    return DatabaseSettings(primary=EndpointSettings(host="db-primary"))


@pytest.fixture()
def replica_settings() -> DatabaseSettings:
    return DatabaseSettings(
        primary=EndpointSettings(host="db-primary"),
        read_replica=EndpointSettings(host="db-replica", port=6432),
    )


@pytest.fixture()
def user_store() -> FakeUserStore:
    return FakeUserStore()


@pytest.fixture()
def pool_factory(user_store: FakeUserStore) -> FakePoolFactory:
    return FakePoolFactory(store=user_store)


@pytest.fixture()
def make_pool_factory() -> Callable[..., FakePoolFactory]:
    return FakePoolFactory


@pytest.fixture()
def sleeper() -> SleepRecorder:
    return SleepRecorder()
