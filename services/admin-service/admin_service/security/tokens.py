"""Bearer tokens handed to admins after a successful login."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

import jwt

from ..config import get_settings

_ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ["sub", "iat", "exp"]


@dataclass(frozen=True, slots=True)
class AccessClaims:
    """Verified claims of an admin access token."""

    account_id: str
    role: str
    email: str | None
    issued_at: int
    expires_at: int


def issue_access_token(*, subject: str, role: str, email: str, now: datetime) -> tuple[str, int]:
    """Sign a token for ``subject`` and return it with its TTL in seconds.

    ``iat`` is ``now`` in whole epoch seconds, taken from the same clock that
    stamps password changes.
    """
    settings = get_settings()
    issued_at = int(now.timestamp())
    payload = {
        "iss": settings.jwt_issuer,
        "sub": subject,
        "role": role,
        "email": email,
        "iat": issued_at,
        "exp": issued_at + settings.jwt_ttl_seconds,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=_ALGORITHM), settings.jwt_ttl_seconds


def decode_access_token(token: str, now: datetime | None = None) -> AccessClaims:
    """Verify signature, issuer and expiry.

    When ``now`` is given, expiry is checked against it instead of the wall
    clock, matching tokens issued with that clock.

    Raises
    ------
    jwt.PyJWTError
        When the token is malformed, expired, missing a required claim or
        signed for another issuer.
    """
    settings = get_settings()
    options: dict = {"require": _REQUIRED_CLAIMS}
    if now is not None:
        options.update(verify_exp=False, verify_iat=False)
    payload = jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[_ALGORITHM],
        issuer=settings.jwt_issuer,
        options=options,
    )
    claims = AccessClaims(
        account_id=payload["sub"],
        role=payload.get("role", "user"),
        email=payload.get("email"),
        issued_at=int(payload["iat"]),
        expires_at=int(payload["exp"]),
    )
    if now is not None and int(now.timestamp()) >= claims.expires_at:
        raise jwt.ExpiredSignatureError("Signature has expired")
    return claims
