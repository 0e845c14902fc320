from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import jwt
from fastapi import HTTPException

JWT_SECRET = os.environ.get("THUNDERHEAD_JWT_SECRET")  # if set, admin calls need a bearer token
JWT_ISSUER = os.environ.get("THUNDERHEAD_JWT_ISSUER", "thunderhead")
JWT_AUDIENCE = os.environ.get("THUNDERHEAD_JWT_AUDIENCE", "thunderhead-ops")
JWT_ALG = "HS256"
JWT_TTL_SECONDS = int(os.environ.get("THUNDERHEAD_JWT_TTL_SECONDS", "3600"))

# Header API key; also guards token minting
API_KEY = os.environ.get("THUNDERHEAD_API_KEY")

ADMIN_ROLE = "admin"


@dataclass
class Principal:
    sub: str
    role: str = "viewer"
    claims: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def _require_api_key(x_api_key: Optional[str]) -> None:
    if API_KEY and x_api_key != API_KEY:
        raise HTTPException(status_code=401, detail="Unauthorized")


def _require_bearer(authorization: Optional[str]) -> Principal:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    token = authorization.split(" ", 1)[1].strip()
    try:
        payload = jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[JWT_ALG],
            audience=JWT_AUDIENCE,
            issuer=JWT_ISSUER,
            options={"require": ["exp", "iat", "sub"]},
        )
    except jwt.PyJWTError as e:
        raise HTTPException(status_code=401, detail=f"Invalid token: {e}")
    return Principal(sub=str(payload["sub"]), role=str(payload.get("role", "viewer")), claims=payload)


def authenticate(x_api_key: Optional[str], authorization: Optional[str]) -> Principal:
    # Bearer tokens when JWT is configured, otherwise the API key (if any).
    if JWT_SECRET:
        return _require_bearer(authorization)
    _require_api_key(x_api_key)
    return Principal(sub="api_key_user", role=ADMIN_ROLE if API_KEY else "anonymous")


def require_admin(x_api_key: Optional[str], authorization: Optional[str]) -> Principal:
    """Guard for the cache/job admin endpoints.

    With neither JWT nor an API key configured the admin surface is closed.
    """
    if not JWT_SECRET and not API_KEY:
        raise HTTPException(status_code=401, detail="Admin access is not configured")
    principal = authenticate(x_api_key, authorization)
    if not principal.is_admin:
        raise HTTPException(status_code=403, detail="Admin role required")
    return principal


def mint_token(sub: str, role: str = "viewer", now: Optional[int] = None) -> str:
    if not JWT_SECRET:
        raise RuntimeError("THUNDERHEAD_JWT_SECRET is not set")
    iat = int(time.time()) if now is None else now
    payload = {
        "iss": JWT_ISSUER,
        "aud": JWT_AUDIENCE,
        "sub": sub,
        "role": role,
        "iat": iat,
        "exp": iat + JWT_TTL_SECONDS,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)
