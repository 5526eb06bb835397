"""Queries against the visitor event table."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .models import EventKind, VisitEvent

logger = logging.getLogger(__name__)

PRIVACY_EXPORT_PAGE_SIZE = 250
PRIVACY_ERASE_BATCH_SIZE = 500


class StoreUnavailable(Exception):
    """Raised when the event store cannot be read or written."""


@contextmanager
def guard_store(db: Session, action: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        logger.exception("Event store failed to %s", action)
        db.rollback()
        raise StoreUnavailable(f"Failed to {action}") from exc


def insert_event(
    db: Session,
    *,
    ts: datetime,
    event: EventKind,
    url: str,
    user_id: Optional[int] = None,
    email: Optional[str] = None,
    ip: Optional[bytes] = None,
    user_agent: Optional[str] = None,
) -> VisitEvent:
    record = VisitEvent(
        ts=ts,
        event=event,
        url=url,
        user_id=user_id,
        email=email,
        ip=ip,
        user_agent=user_agent,
    )
    with guard_store(db, "insert event"):
        db.add(record)
        db.commit()
        db.refresh(record)
    return record


def delete_older_than(db: Session, cutoff: datetime) -> int:
    with guard_store(db, "delete expired events"):
        result = db.execute(delete(VisitEvent).where(VisitEvent.ts < cutoff))
        db.commit()
    return result.rowcount or 0


def delete_all(db: Session) -> int:
    with guard_store(db, "clear events"):
        result = db.execute(delete(VisitEvent))
        db.commit()
    return result.rowcount or 0


def count_events(db: Session) -> int:
    with guard_store(db, "count events"):
        return db.execute(select(func.count(VisitEvent.id))).scalar_one()


def list_page(db: Session, page: int, per_page: int) -> List[VisitEvent]:
    """Newest first."""
    stmt = (
        select(VisitEvent)
        .order_by(VisitEvent.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    with guard_store(db, "list events"):
        return list(db.execute(stmt).scalars())


def iter_events(db: Session, batch_size: int = 500) -> Iterator[VisitEvent]:
    """Stream every event, newest first, loading ``batch_size`` rows at a time."""
    stmt = (
        select(VisitEvent)
        .order_by(VisitEvent.id.desc())
        .execution_options(yield_per=batch_size)
    )
    with guard_store(db, "stream events"):
        yield from db.execute(stmt).scalars()


def events_for_email(
    db: Session, email: str, page: int = 1, per_page: int = PRIVACY_EXPORT_PAGE_SIZE
) -> Tuple[List[VisitEvent], bool]:
    """One page of an address's events, oldest first, and whether it was the last."""
    stmt = (
        select(VisitEvent)
        .where(VisitEvent.email == email)
        .order_by(VisitEvent.id.asc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    with guard_store(db, "export events by email"):
        rows = list(db.execute(stmt).scalars())
    return rows, len(rows) < per_page


def erase_email(
    db: Session, email: str, batch_size: int = PRIVACY_ERASE_BATCH_SIZE
) -> Tuple[int, bool]:
    """Delete up to ``batch_size`` events for ``email``.

    Returns the number removed and whether nothing is left to erase.
    """
    ids = (
        select(VisitEvent.id)
        .where(VisitEvent.email == email)
        .order_by(VisitEvent.id.asc())
        .limit(batch_size)
    )
    with guard_store(db, "erase events by email"):
        batch = list(db.execute(ids).scalars())
        if batch:
            db.execute(delete(VisitEvent).where(VisitEvent.id.in_(batch)))
        db.commit()
    return len(batch), len(batch) < batch_size
