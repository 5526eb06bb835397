"""Verification of signed ``tgfg_session`` identity tokens.

Tokens are compact ``header.payload.signature`` strings. The signature is the
unpadded URL-safe base64 HMAC-SHA256 of ``header.payload``. Nothing here
touches the request object so the functions can be called with raw values.
"""
from __future__ import annotations

import hmac
import json
import math
import time
from typing import Any, Dict, Mapping, Optional, Union

import jwt
from jwt.algorithms import HMACAlgorithm
from jwt.utils import base64url_decode, base64url_encode

SESSION_COOKIE = "tgfg_session"
ALGORITHM = "HS256"

Secret = Union[str, bytes]

_hs256 = HMACAlgorithm(HMACAlgorithm.SHA256)


class VerificationError(Exception):
    """Base class for rejected session tokens."""


class MalformedToken(VerificationError):
    """The token is not structurally a signed session token."""


class SignatureMismatch(VerificationError):
    """The signature does not match the token contents."""


class TokenExpired(VerificationError):
    """The token's ``exp`` claim is in the past."""


def _signature(signing_input: bytes, secret: Secret) -> bytes:
    key = _hs256.prepare_key(secret)
    return base64url_encode(_hs256.sign(signing_input, key))


def _expiry(payload: Mapping[str, Any]) -> float:
    exp = payload.get("exp")
    if exp is None or exp == "" or isinstance(exp, bool):
        raise MalformedToken("Token has no exp claim")
    try:
        expires_at = float(exp)
    except (TypeError, ValueError, OverflowError) as exc:
        raise MalformedToken("Token exp claim is not numeric") from exc
    if not math.isfinite(expires_at):
        raise MalformedToken("Token exp claim is not finite")
    return expires_at


def decode_session_token(
    token: str, secret: Secret, now: Optional[float] = None
) -> Dict[str, Any]:
    """Verify ``token`` against ``secret`` and return its payload.

    ``now`` is a Unix timestamp and defaults to the current time.
    """

    parts = token.split(".")
    if len(parts) != 3:
        raise MalformedToken(f"Expected 3 token segments, got {len(parts)}")
    header, payload_segment, signature = parts

    expected = _signature(f"{header}.{payload_segment}".encode("utf-8"), secret)
    if not hmac.compare_digest(expected, signature.encode("utf-8", "replace")):
        raise SignatureMismatch("Token signature does not match")

    try:
        payload = json.loads(base64url_decode(payload_segment))
    except ValueError as exc:
        raise MalformedToken("Token payload is not valid base64 JSON") from exc
    if not isinstance(payload, dict):
        raise MalformedToken("Token payload is not an object")

    expires_at = _expiry(payload)
    if now is None:
        now = time.time()
    if now >= expires_at:
        raise TokenExpired("Token expired")
    return payload


def encode_session_token(claims: Mapping[str, Any], secret: Secret) -> str:
    """Issue a session token that :func:`decode_session_token` accepts."""

    return jwt.encode(dict(claims), secret, algorithm=ALGORITHM)
