"""Save dates of birth and turn them into greetings."""
from __future__ import annotations

import logging
from datetime import date
from typing import Callable, Optional

from .calculator import compute_message, today_utc
from .users import UserRepository

logger = logging.getLogger("birthdays.greetings")

CREATED = "created"
UPDATED = "updated"


class GreetingService:
    def __init__(self, users: UserRepository, *, clock: Callable[[], date] = today_utc) -> None:
        self._users = users
        self._clock = clock

    async def save_or_update(self, username: str, date_of_birth: date) -> str:
        """Store ``date_of_birth`` for ``username``, creating the user on first save.

        Returns ``"created"`` or ``"updated"``. Concurrent first saves for the
        same username are not serialized here; the loser surfaces as a
        :class:`~birthdays.database.ConstraintViolationError`.
        """

        existing = await self._users.find_by_username(username)
        if existing is not None:
            updated = await self._users.update_user(username, date_of_birth)
            if updated is not None:
                logger.info("Updated birthday for existing user: %s", username)
                return UPDATED
            # The row vanished between lookup and update; fall through to insert.

        await self._users.create_user(username, date_of_birth)
        logger.info("Created new user: %s", username)
        return CREATED

    async def get_message(self, username: str, today: Optional[date] = None) -> Optional[str]:
        """Return the greeting for ``username`` or ``None`` when the user is unknown."""

        user = await self._users.find_by_username(username)
        if user is None:
            return None
        return compute_message(username, user.date_of_birth, today or self._clock())


__all__ = ["CREATED", "GreetingService", "UPDATED"]
