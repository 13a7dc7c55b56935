"""Domain models for the birthday greeting service."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Mapping, Optional


@dataclass(frozen=True)
class User:
    """Represents a person whose date of birth is stored in the database."""

    id: int
    username: str
    date_of_birth: date
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "User":
        return cls(
            id=int(row["id"]),
            username=str(row["username"]),
            date_of_birth=row["date_of_birth"],
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


__all__ = ["User"]
