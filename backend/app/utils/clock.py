from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol
from uuid import UUID, uuid4


def utcnow() -> datetime:
    """Naive UTC timestamp, the format stored in every datetime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class IdGenerator(Protocol):
    def new_id(self) -> UUID:
        ...


class SystemClock:
    def now(self) -> datetime:
        return utcnow()


class FrozenClock:
    """Clock pinned to a given instant; tests move it with ``advance``."""

    def __init__(self, current: datetime) -> None:
        self.current = current

    def now(self) -> datetime:
        return self.current

    def set(self, current: datetime) -> None:
        self.current = current

    def advance(self, **delta: float) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current


class Uuid4Generator:
    def new_id(self) -> UUID:
        return uuid4()
