from __future__ import annotations

from dataclasses import dataclass, field

from fastapi import Depends, HTTPException, status
from jose import JWTError, jwt
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.config import get_settings


READ_PERMISSIONS = {"workflows.read", "automations.read", "ledger.read"}
WRITE_PERMISSIONS = {"workflows.execute", "automations.manage", "automations.execute", "ledger.manage"}

ROLE_PERMISSIONS: dict[str, set[str]] = {
    "guest": set(READ_PERMISSIONS),
    "user": READ_PERMISSIONS | WRITE_PERMISSIONS,
    "admin": READ_PERMISSIONS | WRITE_PERMISSIONS | {"system.metrics.read"},
}


@dataclass
class AuthUser:
    sub: str
    roles: list[str]


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


async def get_auth_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub="anonymous", roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub="anonymous", roles=["guest"])

    subject = str(payload.get("sub", "anonymous"))
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    return AuthUser(sub=subject, roles=[str(role) for role in roles])


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    permissions: set[str] = set()
    for role in auth_user.roles:
        permissions.add(role)
        permissions |= ROLE_PERMISSIONS.get(role.lower(), set())
    return ActorUser(user_id=auth_user.sub, permissions=permissions, correlation_id=correlation_id)


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")
