from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from app.core.exceptions import BillingError, InternalError
from app.core.logging_setup import logger


@contextmanager
def atomic(session: Session, operation: str) -> Iterator[Session]:
    """Run a block as one unit of work: commit on success, roll back on any error.

    Typed billing errors pass through untouched; persistence failures surface
    as ``InternalError`` so callers know they may retry.
    """
    try:
        yield session
        session.commit()
    except BillingError:
        session.rollback()
        raise
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error("Falha de persistência em %s: %s", operation, exc)
        raise InternalError(f"{operation} failed", {"error": str(exc)}) from exc
    except BaseException:
        session.rollback()
        raise
