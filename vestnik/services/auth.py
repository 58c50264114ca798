from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from vestnik.core.config import settings

bearer = HTTPBearer(auto_error=False)

STAFF_ROLES = frozenset({"author", "editor", "admin"})
EDITOR_ROLES = frozenset({"editor", "admin"})
ADMIN_ROLES = frozenset({"admin"})


@dataclass(slots=True)
class AuthUser:
    user_id: str
    email: str
    roles: list[str]


def _decode_token(token: str) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "algorithms": [settings.jwt_algorithm],
        "leeway": settings.jwt_exp_leeway_seconds,
    }

    if settings.jwt_audience:
        kwargs["audience"] = settings.jwt_audience
    else:
        kwargs["options"] = {"verify_aud": False}

    if settings.jwt_issuer:
        kwargs["issuer"] = settings.jwt_issuer

    try:
        payload = jwt.decode(token, settings.jwt_secret, **kwargs)
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc

    return payload


def _parse_payload(payload: dict[str, Any]) -> AuthUser:
    user_id = str(payload.get("sub") or payload.get("user_id") or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid sub claim")

    roles = payload.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]
    if not isinstance(roles, list):
        roles = []

    return AuthUser(
        user_id=user_id,
        email=str(payload.get("email") or "").strip().lower(),
        roles=[str(r).strip().lower() for r in roles if str(r).strip()],
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
) -> AuthUser:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return _parse_payload(_decode_token(credentials.credentials))


def require_role(user: AuthUser, allowed: set[str] | frozenset[str]) -> None:
    if not set(allowed).intersection(user.roles):
        raise HTTPException(status_code=403, detail="Forbidden")


def role_guard(allowed: frozenset[str]) -> Callable[..., Any]:
    async def _guard(current_user: AuthUser = Depends(get_current_user)) -> AuthUser:
        require_role(current_user, allowed)
        return current_user

    return _guard
