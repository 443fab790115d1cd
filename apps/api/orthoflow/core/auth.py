from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from orthoflow.core.config import get_settings

ANONYMOUS_SUBJECT = "anonymous"


@dataclass
class AuthUser:
    sub: str
    roles: list[str] = field(default_factory=list)

    @classmethod
    def guest(cls) -> AuthUser:
        return cls(sub=ANONYMOUS_SUBJECT, roles=["guest"])


def bearer_token(request: Request) -> str | None:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def decode_claims(token: str | None) -> dict[str, Any] | None:
    """Verified JWT claims, or None when the token is absent or invalid."""
    if not token:
        return None
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def roles_from_claims(claims: dict[str, Any]) -> list[str]:
    # Practice-management tokens carry "roles"; service tokens carry a space-delimited "scope".
    raw = claims.get("roles")
    if isinstance(raw, list):
        return [str(role) for role in raw]
    scope = claims.get("scope")
    if isinstance(scope, str):
        return scope.split()
    return []


async def get_current_user(request: Request) -> AuthUser:
    claims = decode_claims(bearer_token(request))
    if claims is None:
        return AuthUser.guest()
    return AuthUser(sub=str(claims.get("sub", ANONYMOUS_SUBJECT)), roles=roles_from_claims(claims))
