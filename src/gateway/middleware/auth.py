"""JWT bearer tokens for the governance API.

- No token -> 401
- Invalid/expired token -> 401
- Valid token -> user_id, org_id and role on request.state

Uses PyJWT (HS256). Secret must come from environment, never hardcoded.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from uuid import UUID

import jwt

from src.shared.errors import AuthenticationError

_ALGORITHM = "HS256"
_BEARER = "Bearer "


@dataclass(frozen=True)
class TokenPayload:
    """Decoded JWT payload."""

    user_id: UUID
    org_id: UUID
    role: str = "member"


def encode_token(
    *,
    user_id: UUID,
    org_id: UUID,
    secret: str,
    role: str = "member",
    ttl_seconds: int = 3600,
) -> str:
    """Create a signed JWT containing user_id, org_id, and role."""
    now = int(time.time())
    payload = {
        "sub": str(user_id),
        "org": str(org_id),
        "role": role,
        "iat": now,
        "exp": now + ttl_seconds,
    }
    return jwt.encode(payload, secret, algorithm=_ALGORITHM)


def decode_token(token: str, *, secret: str) -> TokenPayload:
    """Decode and validate a JWT. Raises AuthenticationError on failure."""
    try:
        data = jwt.decode(token, secret, algorithms=[_ALGORITHM])
        return TokenPayload(
            user_id=UUID(data["sub"]),
            org_id=UUID(data["org"]),
            role=data.get("role", "member"),
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Token expired") from exc
    except (jwt.InvalidTokenError, KeyError, ValueError) as exc:
        raise AuthenticationError(f"Invalid token: {exc}") from exc


def authenticate_header(auth_header: str, *, secret: str) -> TokenPayload:
    """Validate an ``Authorization: Bearer <jwt>`` header value."""
    if not auth_header.startswith(_BEARER):
        raise AuthenticationError("Missing or malformed Authorization header")
    return decode_token(auth_header[len(_BEARER) :], secret=secret)
