"""Attribution of events to an email address."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Mapping, Optional

from email_validator import EmailNotValidError, validate_email

from .tokens import (
    MalformedToken,
    Secret,
    SignatureMismatch,
    TokenExpired,
    decode_session_token,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Account:
    """A locally authenticated account, as supplied by the host site."""

    id: int
    email: Optional[str] = None
    roles: FrozenSet[str] = field(default_factory=frozenset)


def sanitize_email(value: Any) -> Optional[str]:
    """Return the normalized address, or ``None`` if it is not a valid one."""

    if not isinstance(value, str) or not value.strip():
        return None
    try:
        result = validate_email(value.strip(), check_deliverability=False)
    except EmailNotValidError:
        return None
    return result.normalized


def resolve_identity(
    cookie_value: str, secret: Secret, now: Optional[float] = None
) -> Dict[str, Any]:
    """Decode a session cookie, raising :class:`VerificationError` on failure."""

    return decode_session_token(cookie_value, secret, now)


def session_claims(
    cookie_value: Optional[str], secret: Optional[Secret], now: Optional[float] = None
) -> Optional[Dict[str, Any]]:
    """Like :func:`resolve_identity` but a rejected cookie yields ``None``."""

    if not cookie_value:
        return None
    if not secret:
        logger.warning("Session cookie present but no signing secret is configured")
        return None
    try:
        return resolve_identity(cookie_value, secret, now)
    except SignatureMismatch:
        logger.warning("Rejected session cookie with an invalid signature")
    except TokenExpired:
        logger.info("Ignoring expired session cookie")
    except MalformedToken as exc:
        logger.info("Ignoring malformed session cookie: %s", exc)
    return None


def resolve_email(
    claims: Optional[Mapping[str, Any]], account: Optional[Account]
) -> Optional[str]:
    """Pick the attribution email for an event.

    A valid email from the session token wins over the local account's email,
    even when both are present.
    """

    if claims:
        email = sanitize_email(claims.get("email"))
        if email:
            return email
    if account is not None:
        return sanitize_email(account.email)
    return None
