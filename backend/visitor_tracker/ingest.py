"""Recording of view and login events."""
from __future__ import annotations

import enum
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Mapping, Optional

from sqlalchemy.orm import Session

from . import store
from .addresses import normalize_ip
from .config import TrackerSettings
from .identity import Account, resolve_email, session_claims
from .models import URL_MAX_LENGTH, USER_AGENT_MAX_LENGTH, EventKind, current_timestamp
from .tokens import Secret

logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


class IngestOutcome(str, enum.Enum):
    RECORDED = "recorded"
    SUPPRESSED_ROLE = "suppressed_role"
    SUPPRESSED_GUEST = "suppressed_guest"

    @property
    def recorded(self) -> bool:
        return self is IngestOutcome.RECORDED


@dataclass(frozen=True)
class RequestContext:
    """What the host site knows about the request being tracked."""

    event: EventKind = EventKind.VIEW
    url: Optional[str] = None
    user_agent: Optional[str] = None
    headers: Mapping[str, str] = field(default_factory=dict)
    remote_addr: Optional[str] = None
    session_cookie: Optional[str] = None
    account: Optional[Account] = None


def clean_url(url: Optional[str]) -> str:
    if not url:
        return ""
    return _CONTROL_CHARS.sub("", url.strip())[:URL_MAX_LENGTH]


def _clean_user_agent(user_agent: Optional[str]) -> Optional[str]:
    if not user_agent:
        return None
    # Capped in bytes; a multibyte character split at the limit is dropped.
    return user_agent.encode("utf-8")[:USER_AGENT_MAX_LENGTH].decode("utf-8", errors="ignore")


def suppression_reason(
    context: RequestContext, settings: TrackerSettings
) -> Optional[IngestOutcome]:
    account = context.account
    if account is not None:
        if settings.excluded_roles & set(account.roles):
            return IngestOutcome.SUPPRESSED_ROLE
        return None
    if not settings.track_guests:
        return IngestOutcome.SUPPRESSED_GUEST
    return None


def ingest(
    db: Session,
    context: RequestContext,
    settings: TrackerSettings,
    secret: Optional[Secret] = None,
    now: Optional[datetime] = None,
    site_url: Optional[str] = None,
) -> IngestOutcome:
    """Apply the tracking policy to ``context`` and store the event if allowed.

    Suppression is reported through the returned outcome, not raised. Store
    failures propagate as :class:`store.StoreUnavailable`.
    """

    event = EventKind(context.event)
    if event is EventKind.LOGIN and context.account is None:
        raise ValueError("Login events require an authenticated account")

    reason = suppression_reason(context, settings)
    if reason is not None:
        logger.debug("Not recording %s event: %s", event.value, reason.value)
        return reason

    url = clean_url(context.url)
    if not url and event is EventKind.LOGIN:
        url = clean_url(site_url)
    if not url:
        raise ValueError("An event URL is required")

    if now is None:
        ts, unix_now = current_timestamp(), time.time()
    else:
        now = _as_naive_utc(now)
        ts, unix_now = now.replace(microsecond=0), _unix(now)
    claims = session_claims(context.session_cookie, secret, unix_now)
    store.insert_event(
        db,
        ts=ts,
        event=event,
        url=url,
        user_id=context.account.id if context.account is not None else None,
        email=resolve_email(claims, context.account),
        ip=normalize_ip(context.headers, context.remote_addr, settings.anonymize_ip),
        user_agent=_clean_user_agent(context.user_agent),
    )
    return IngestOutcome.RECORDED


def _as_naive_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts
    return ts.astimezone(timezone.utc).replace(tzinfo=None)


def _unix(ts: datetime) -> float:
    # Store timestamps are naive UTC.
    return (ts - datetime(1970, 1, 1)).total_seconds()
