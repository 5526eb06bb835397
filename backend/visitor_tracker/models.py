"""SQLAlchemy models for the visitor event log."""
from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import BigInteger, Column, DateTime, Enum, Integer, LargeBinary, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()

URL_MAX_LENGTH = 2048
USER_AGENT_MAX_LENGTH = 512


class EventKind(str, enum.Enum):
    VIEW = "view"
    LOGIN = "login"


def current_timestamp() -> datetime:
    """Naive UTC time at second resolution, the store's clock."""

    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


class VisitEvent(Base):
    __tablename__ = "visitor_events"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    ts = Column(DateTime, default=current_timestamp, nullable=False, index=True)
    user_id = Column(BigInteger, nullable=True)
    email = Column(String(255), nullable=True, index=True)
    ip = Column(LargeBinary(16), nullable=True)
    url = Column(Text, nullable=False)
    user_agent = Column(String(USER_AGENT_MAX_LENGTH), nullable=True)
    event = Column(
        Enum(
            EventKind,
            name="visitor_event_kind",
            values_callable=lambda kinds: [kind.value for kind in kinds],
        ),
        nullable=False,
        default=EventKind.VIEW,
        index=True,
    )
