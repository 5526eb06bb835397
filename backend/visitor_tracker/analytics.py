"""KPI, daily and top page aggregation over the event log."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, case, distinct, func, select
from sqlalchemy.orm import Session

from .models import EventKind, VisitEvent
from .store import guard_store

TOP_PAGES_LIMIT = 15


@dataclass(frozen=True)
class AnalyticsFilter:
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    event: Optional[EventKind] = None
    include_guests: bool = True

    def conditions(self) -> list:
        clauses = []
        if self.date_from is not None:
            clauses.append(VisitEvent.ts >= datetime.combine(self.date_from, time.min))
        if self.date_to is not None:
            # Inclusive through the end of the ``date_to`` day.
            end = datetime.combine(self.date_to + timedelta(days=1), time.min)
            clauses.append(VisitEvent.ts < end)
        if self.event is not None:
            clauses.append(VisitEvent.event == EventKind(self.event))
        if not self.include_guests:
            clauses.append(VisitEvent.email.is_not(None))
            clauses.append(VisitEvent.email != "")
        return clauses


@dataclass
class Kpis:
    total: int = 0
    views: int = 0
    logins: int = 0
    unique: int = 0


@dataclass
class DailyCount:
    day: str
    count: int


@dataclass
class PageCount:
    url: str
    count: int


@dataclass
class AnalyticsResult:
    kpis: Kpis = field(default_factory=Kpis)
    daily: List[DailyCount] = field(default_factory=list)
    top_pages: List[PageCount] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "kpis": {
                "total": self.kpis.total,
                "views": self.kpis.views,
                "logins": self.kpis.logins,
                "unique": self.kpis.unique,
            },
            "daily": [{"day": row.day, "count": row.count} for row in self.daily],
            "top_pages": [{"url": row.url, "count": row.count} for row in self.top_pages],
        }


def _day_label(value: Any) -> str:
    if isinstance(value, (date, datetime)):
        return value.strftime("%Y-%m-%d")
    return str(value)


def _kpis(db: Session, where) -> Kpis:
    email = func.nullif(VisitEvent.email, "")
    stmt = select(
        func.count(VisitEvent.id),
        func.sum(case((VisitEvent.event == EventKind.VIEW, 1), else_=0)),
        func.sum(case((VisitEvent.event == EventKind.LOGIN, 1), else_=0)),
        func.count(distinct(email)),
    ).where(where)
    total, views, logins, unique = db.execute(stmt).one()
    return Kpis(total=total or 0, views=int(views or 0), logins=int(logins or 0), unique=unique or 0)


def _daily(db: Session, where) -> List[DailyCount]:
    day = func.date(VisitEvent.ts).label("day")
    stmt = (
        select(day, func.count(VisitEvent.id))
        .where(where)
        .group_by(day)
        .order_by(day.asc())
    )
    return [DailyCount(day=_day_label(d), count=c) for d, c in db.execute(stmt)]


def _top_pages(db: Session, where, limit: int) -> List[PageCount]:
    hits = func.count(VisitEvent.id).label("hits")
    stmt = (
        select(VisitEvent.url, hits)
        .where(where)
        .group_by(VisitEvent.url)
        .order_by(hits.desc(), func.min(VisitEvent.id).asc())
        .limit(limit)
    )
    return [PageCount(url=url, count=count) for url, count in db.execute(stmt)]


def aggregate(
    db: Session, filters: AnalyticsFilter, top_pages_limit: int = TOP_PAGES_LIMIT
) -> AnalyticsResult:
    """Compute KPIs, the daily series and top pages for ``filters``.

    Every output is computed over the same filtered record set, so excluding
    guests removes email-less records from all three.
    """

    where = and_(True, *filters.conditions())
    with guard_store(db, "aggregate events"):
        return AnalyticsResult(
            kpis=_kpis(db, where),
            daily=_daily(db, where),
            top_pages=_top_pages(db, where, top_pages_limit),
        )
