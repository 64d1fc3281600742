from typing import Iterator

from sqlmodel import Session

from app.db.session import get_session
from app.utils.clock import Clock, SystemClock


def get_db() -> Iterator[Session]:
    yield from get_session()


def get_clock() -> Clock:
    return SystemClock()
