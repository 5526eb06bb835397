"""Bearer JWT authentication for the admin endpoints."""
from __future__ import annotations

from typing import Dict

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import get_site_secret

ALGORITHM = "HS256"
REQUIRED_CLAIMS = ("exp", "sub")
CAPABILITIES_CLAIM = "capabilities"
REQUIRED_CAPABILITY = "manage_options"
auth_scheme = HTTPBearer(auto_error=False)


def _get_admin_secret() -> str:
    secret = get_site_secret()
    if not secret:
        raise RuntimeError("VISITOR_TRACKER_SECRET_KEY must be set to validate admin tokens.")
    return secret


def verify_admin(credentials: HTTPAuthorizationCredentials = Depends(auth_scheme)) -> Dict:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")

    try:
        payload = jwt.decode(
            credentials.credentials,
            _get_admin_secret(),
            algorithms=[ALGORITHM],
            options={"require": list(REQUIRED_CLAIMS)},
        )
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired") from exc
    except jwt.MissingRequiredClaimError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing claim") from exc
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc

    capabilities = payload.get(CAPABILITIES_CLAIM) or []
    if REQUIRED_CAPABILITY not in capabilities:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient capability",
        )
    return payload
