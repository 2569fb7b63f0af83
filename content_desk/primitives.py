"""
Shared primitives: identifiers, clock helpers and the acting identity.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict
from ulid import ULID

from .enums import Role
from .errors import ValidationError

Clock = Callable[[], datetime]


_ulid_lock = threading.Lock()
_last_ulid: Optional[ULID] = None


def generate_ulid() -> str:
    """Generate a ULID string for primary keys.

    Ids are strictly increasing within the process: a ULID minted in the same
    millisecond as the previous one is the previous one plus one.
    """
    global _last_ulid
    with _ulid_lock:
        candidate = ULID()
        if _last_ulid is not None and int(candidate) <= int(_last_ulid):
            candidate = ULID.from_int(int(_last_ulid) + 1)
        _last_ulid = candidate
        return str(candidate)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC.

    SQLite hands back naive datetimes for ``DateTime(timezone=True)``
    columns; those are stored in UTC, so naive values are tagged as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def resolve_timezone(name: str) -> ZoneInfo:
    """Return the IANA zone, raising ValidationError for unknown names."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone: {name}") from None


def to_utc(when: datetime, tz_name: str) -> datetime:
    """Interpret a naive datetime in ``tz_name`` and convert to UTC."""
    if when.tzinfo is None:
        when = when.replace(tzinfo=resolve_timezone(tz_name))
    return as_utc(when)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def enum_value(value: Any) -> Any:
    """Return ``value.value`` for enum members, the value itself otherwise."""
    return getattr(value, "value", value)


class Actor(BaseModel):
    """Identity of whoever performs an operation."""

    model_config = ConfigDict(frozen=True)

    actor_id: str
    role: Role

    def has_role(self, *roles: Role) -> bool:
        return self.role in roles


SYSTEM_ACTOR = Actor(actor_id="scheduler", role=Role.SYSTEM)
