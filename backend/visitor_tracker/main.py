"""FastAPI application entrypoint for the visitor tracker."""
from __future__ import annotations

import logging
import math
import threading
import time
from contextlib import asynccontextmanager
from datetime import date
from typing import Iterator, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from . import schemas, store
from .analytics import AnalyticsFilter, aggregate
from .auth import verify_admin
from .config import (
    get_log_level,
    get_retention_interval_seconds,
    get_session_secret,
    get_site_url,
    get_stats_rate_limit,
    load_settings,
)
from .database import SessionLocal, init_db
from .export import CSV_FILENAME, iter_csv
from .identity import sanitize_email, session_claims
from .ingest import RequestContext, ingest
from .models import EventKind
from .retention import RetentionWorker
from .store import StoreUnavailable
from .tokens import SESSION_COOKIE

logging.basicConfig(level=get_log_level())
logger = logging.getLogger(__name__)

init_db()

EVENTS_PER_PAGE = 50

_retention_worker = RetentionWorker(SessionLocal, get_retention_interval_seconds())


@asynccontextmanager
async def lifespan(_: FastAPI):
    await _retention_worker.start()
    try:
        yield
    finally:
        await _retention_worker.stop()


app = FastAPI(
    title="Visitor Tracker API",
    description="Records site visits and logins and serves retention-bounded analytics.",
    version="1.1.2",
    lifespan=lifespan,
)


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(_: Request, exc: StoreUnavailable) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Event store unavailable"},
    )


class RateLimitError(Exception):
    """Raised when a caller exceeds the configured rate limit."""


class FixedWindowRateLimiter:
    """Simple in-memory fixed window rate limiter keyed by identifier."""

    def __init__(self, max_requests: int, window_seconds: int) -> None:
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._counters: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()

    def check(self, key: str) -> None:
        now = time.monotonic()
        with self._lock:
            count, window_start = self._counters.get(key, (0, now))
            if now - window_start >= self._window_seconds:
                count = 0
                window_start = now
            if count >= self._max_requests:
                raise RateLimitError(f"Rate limit exceeded for key {key}")
            self._counters[key] = (count + 1, window_start)


def _get_rate_limiter() -> FixedWindowRateLimiter:
    return FixedWindowRateLimiter(*get_stats_rate_limit())


_stats_rate_limiter = _get_rate_limiter()


def _record(db: Session, context: RequestContext) -> schemas.IngestOut:
    try:
        outcome = ingest(
            db,
            context,
            load_settings(),
            secret=get_session_secret(),
            site_url=get_site_url(),
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return schemas.IngestOut(recorded=outcome.recorded, outcome=outcome)


@app.post("/collect", response_model=schemas.IngestOut, status_code=status.HTTP_202_ACCEPTED)
def collect_view(
    body: schemas.CollectIn,
    request: Request,
    db: Session = Depends(get_db),
) -> schemas.IngestOut:
    """Record a page view for the calling browser."""
    context = RequestContext(
        event=EventKind.VIEW,
        url=body.url or request.headers.get("referer"),
        user_agent=request.headers.get("user-agent"),
        headers=dict(request.headers),
        remote_addr=request.client.host if request.client else None,
        session_cookie=request.cookies.get(SESSION_COOKIE),
    )
    return _record(db, context)


@app.post("/events", response_model=schemas.IngestOut)
def ingest_event(
    event_in: schemas.EventIn,
    _: dict = Depends(verify_admin),
    db: Session = Depends(get_db),
) -> schemas.IngestOut:
    return _record(db, event_in.to_context())


@app.get("/events", response_model=schemas.EventPage)
def list_events(
    page: int = Query(1, ge=1),
    _: dict = Depends(verify_admin),
    db: Session = Depends(get_db),
) -> schemas.EventPage:
    total = store.count_events(db)
    rows = store.list_page(db, page, EVENTS_PER_PAGE)
    return schemas.EventPage(
        total=total,
        page=page,
        pages=max(1, math.ceil(total / EVENTS_PER_PAGE)),
        items=[schemas.EventOut.model_validate(row) for row in rows],
    )


@app.delete("/events", response_model=schemas.ClearOut)
def clear_events(
    _: dict = Depends(verify_admin),
    db: Session = Depends(get_db),
) -> schemas.ClearOut:
    deleted = store.delete_all(db)
    logger.info("Cleared %d events", deleted)
    return schemas.ClearOut(deleted=deleted)


def _parse_day(value: Optional[str], field: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"{field} must be a YYYY-MM-DD date",
        ) from exc


def _parse_event(value: Optional[str]) -> Optional[EventKind]:
    if not value:
        return None
    try:
        return EventKind(value)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="event must be 'view' or 'login'",
        ) from exc


@app.get("/stats", response_model=schemas.StatsOut)
def fetch_stats(
    request: Request,
    date_from: Optional[str] = Query(None, alias="from"),
    date_to: Optional[str] = Query(None, alias="to"),
    event: Optional[str] = Query(None),
    guests: bool = Query(False),
    _: dict = Depends(verify_admin),
    db: Session = Depends(get_db),
) -> schemas.StatsOut:
    client_identifier = "anonymous"
    if request.client:
        client_identifier = request.client.host or client_identifier

    try:
        _stats_rate_limiter.check(client_identifier)
    except RateLimitError:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Rate limit exceeded")

    filters = AnalyticsFilter(
        date_from=_parse_day(date_from, "from"),
        date_to=_parse_day(date_to, "to"),
        event=_parse_event(event),
        include_guests=guests,
    )
    return schemas.StatsOut.model_validate(aggregate(db, filters).as_dict())


def _stream_csv() -> Iterator[str]:
    # The response outlives request-scoped dependencies, so it owns its session.
    with SessionLocal() as db:
        yield from iter_csv(store.iter_events(db))


@app.get("/export.csv")
def export_csv(_: dict = Depends(verify_admin)) -> StreamingResponse:
    return StreamingResponse(
        _stream_csv(),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{CSV_FILENAME}"'},
    )


@app.get("/privacy/export", response_model=schemas.PrivacyExportOut)
def privacy_export(
    email: str = Query(...),
    page: int = Query(1, ge=1),
    _: dict = Depends(verify_admin),
    db: Session = Depends(get_db),
) -> schemas.PrivacyExportOut:
    rows, done = store.events_for_email(db, sanitize_email(email) or email, page)
    return schemas.PrivacyExportOut(
        data=[schemas.EventOut.model_validate(row) for row in rows],
        done=done,
    )


@app.post("/privacy/erase", response_model=schemas.PrivacyEraseOut)
def privacy_erase(
    body: schemas.PrivacyEraseIn,
    _: dict = Depends(verify_admin),
    db: Session = Depends(get_db),
) -> schemas.PrivacyEraseOut:
    removed, done = store.erase_email(db, sanitize_email(body.email) or body.email)
    return schemas.PrivacyEraseOut(items_removed=removed > 0, removed=removed, done=done)


@app.get("/session", response_model=schemas.SessionOut)
def session_status(request: Request, _: dict = Depends(verify_admin)) -> schemas.SessionOut:
    """Report whether the caller carries a valid ``tgfg_session`` cookie."""
    claims = session_claims(request.cookies.get(SESSION_COOKIE), get_session_secret())
    if not claims:
        return schemas.SessionOut(detected=False)
    return schemas.SessionOut(detected=True, email=sanitize_email(claims.get("email")))


def reset_application_state() -> None:
    """Reset mutable globals for test isolation."""

    global _stats_rate_limiter
    _stats_rate_limiter = _get_rate_limiter()
