"""Pydantic models for request and response bodies."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .addresses import unpack_ip
from .identity import Account
from .ingest import IngestOutcome, RequestContext
from .models import EventKind


class AccountIn(BaseModel):
    id: int
    email: Optional[str] = None
    roles: List[str] = Field(default_factory=list)

    def to_account(self) -> Account:
        return Account(id=self.id, email=self.email, roles=frozenset(self.roles))


class EventIn(BaseModel):
    event: EventKind = Field(EventKind.VIEW, description="view or login")
    url: Optional[str] = Field(None, description="Full URL of the tracked request")
    user_agent: Optional[str] = None
    headers: Dict[str, str] = Field(
        default_factory=dict,
        description="Proxy headers of the tracked request, e.g. CF-Connecting-IP",
    )
    remote_addr: Optional[str] = Field(None, description="Direct peer address")
    session_cookie: Optional[str] = Field(None, description="Raw tgfg_session cookie value")
    account: Optional[AccountIn] = None

    def to_context(self) -> RequestContext:
        return RequestContext(
            event=self.event,
            url=self.url,
            user_agent=self.user_agent,
            headers=dict(self.headers),
            remote_addr=self.remote_addr,
            session_cookie=self.session_cookie,
            account=self.account.to_account() if self.account else None,
        )


class CollectIn(BaseModel):
    url: Optional[str] = Field(None, description="Page URL; defaults to the Referer header")


class IngestOut(BaseModel):
    recorded: bool
    outcome: IngestOutcome


class EventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    ts: datetime
    user_id: Optional[int] = None
    email: Optional[str] = None
    ip: str = ""
    event: EventKind
    url: str
    user_agent: Optional[str] = None

    @field_validator("ip", mode="before")
    @classmethod
    def _render_ip(cls, value: object) -> str:
        if isinstance(value, (bytes, bytearray, memoryview)):
            return unpack_ip(bytes(value))
        return value or ""


class EventPage(BaseModel):
    total: int
    page: int
    pages: int
    items: List[EventOut]


class ClearOut(BaseModel):
    deleted: int


class KpisOut(BaseModel):
    total: int
    views: int
    logins: int
    unique: int


class DailyOut(BaseModel):
    day: str
    count: int


class PageOut(BaseModel):
    url: str
    count: int


class StatsOut(BaseModel):
    kpis: KpisOut
    daily: List[DailyOut]
    top_pages: List[PageOut]


class PrivacyExportOut(BaseModel):
    data: List[EventOut]
    done: bool


class PrivacyEraseIn(BaseModel):
    email: str


class PrivacyEraseOut(BaseModel):
    items_removed: bool
    items_retained: bool = False
    removed: int
    done: bool


class SessionOut(BaseModel):
    detected: bool
    email: Optional[str] = None
