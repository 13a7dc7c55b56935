"""Repository and greeting service behaviour against an in-memory pool."""

from __future__ import annotations

from datetime import date

import anyio
import pytest

from birthdays.database import ConnectionManager, ConstraintViolationError, DatabaseNotInitializedError
from birthdays.greetings import CREATED, UPDATED, GreetingService
from birthdays.users import UserRepository


@pytest.fixture()
def manager(shared_settings, pool_factory, sleeper) -> ConnectionManager:
    manager = ConnectionManager(shared_settings, pool_factory=pool_factory, sleep=sleeper)
    anyio.run(manager.initialize)
    return manager


@pytest.fixture()
def repository(manager: ConnectionManager) -> UserRepository:
    return UserRepository(manager)


def test_saved_user_round_trips(repository: UserRepository) -> None:
    service = GreetingService(repository)

    outcome = anyio.run(service.save_or_update, "alice", date(1990, 5, 15))
    user = anyio.run(repository.find_by_username, "alice")

    assert outcome == CREATED
    assert user is not None
    assert user.username == "alice"
    assert user.date_of_birth == date(1990, 5, 15)
    assert user.created_at is not None


def test_second_save_updates_in_place(repository: UserRepository, user_store) -> None:
    service = GreetingService(repository)

    anyio.run(service.save_or_update, "bob", date(1985, 3, 20))
    outcome = anyio.run(service.save_or_update, "bob", date(1985, 3, 21))

    assert outcome == UPDATED
    assert len(user_store.rows) == 1
    user = anyio.run(repository.find_by_username, "bob")
    assert user.date_of_birth == date(1985, 3, 21)


def test_unknown_user_has_no_greeting(repository: UserRepository) -> None:
    service = GreetingService(repository, clock=lambda: date(2024, 5, 15))

    assert anyio.run(service.get_message, "ghost") is None
    assert anyio.run(repository.find_by_username, "ghost") is None


def test_greeting_uses_injected_clock(repository: UserRepository) -> None:
    service = GreetingService(repository, clock=lambda: date(2024, 5, 15))
    anyio.run(service.save_or_update, "alice", date(1990, 5, 20))

    assert anyio.run(service.get_message, "alice") == "Hello, alice! Your birthday is in 5 day(s)"
    assert anyio.run(service.get_message, "alice", date(2024, 5, 20)) == "Hello, alice! Happy birthday!"


def test_duplicate_insert_is_reported_as_unique_violation(repository: UserRepository) -> None:
    anyio.run(repository.create_user, "carol", date(1970, 1, 1))

    with pytest.raises(ConstraintViolationError) as excinfo:
        anyio.run(repository.create_user, "carol", date(1971, 1, 1))

    assert excinfo.value.kind == ConstraintViolationError.UNIQUE
    assert str(excinfo.value) == "Resource already exists"


def test_store_check_constraint_is_reported(repository: UserRepository) -> None:
    with pytest.raises(ConstraintViolationError) as excinfo:
        anyio.run(repository.create_user, "dave", date(2999, 1, 1))

    assert excinfo.value.kind == ConstraintViolationError.CHECK
    assert "check constraint" in str(excinfo.value)


def test_update_of_missing_user_returns_none(repository: UserRepository) -> None:
    assert anyio.run(repository.update_user, "nobody", date(1990, 1, 1)) is None


def test_list_users_orders_newest_first(repository: UserRepository) -> None:
    for name in ("anna", "bert", "cleo"):
        anyio.run(repository.create_user, name, date(1990, 1, 1))

    users = anyio.run(repository.list_users, 2, 0)
    rest = anyio.run(repository.list_users, 2, 2)

    assert [user.username for user in users] == ["cleo", "bert"]
    assert [user.username for user in rest] == ["anna"]


def test_list_users_rejects_bad_paging(repository: UserRepository) -> None:
    with pytest.raises(ValueError):
        anyio.run(repository.list_users, 0, 0)
    with pytest.raises(ValueError):
        anyio.run(repository.list_users, 10, -1)


def test_reads_and_writes_use_their_own_pools(replica_settings, pool_factory, sleeper) -> None:
    manager = ConnectionManager(replica_settings, pool_factory=pool_factory, sleep=sleeper)
    anyio.run(manager.initialize)
    repository = UserRepository(manager)
    write_pool, read_pool = pool_factory.pools

    anyio.run(GreetingService(repository).save_or_update, "erin", date(1999, 9, 9))

    assert any(query.startswith("INSERT INTO users") for query in write_pool.queries)
    assert any(query.startswith("SELECT * FROM users WHERE username") for query in read_pool.queries)
    assert not any(query.startswith("INSERT") for query in read_pool.queries)


def test_repository_requires_initialized_manager(shared_settings, pool_factory, sleeper) -> None:
    repository = UserRepository(ConnectionManager(shared_settings, pool_factory=pool_factory, sleep=sleeper))

    with pytest.raises(DatabaseNotInitializedError):
        anyio.run(repository.find_by_username, "alice")
