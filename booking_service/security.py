from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .rbac import Role

bearer_scheme = HTTPBearer(auto_error=False)

# highest privilege wins when a token carries several roles
_ROLE_PRIORITY = (Role.ADMIN, Role.WORKER, Role.CUSTOMER)


@dataclass(frozen=True)
class Actor:
    id: str
    role: Role


SYSTEM_ACTOR = Actor(id="system", role=Role.SYSTEM)


def actor_from_token(token: str, secret: str, algorithm: str) -> Actor:
    try:
        payload = jwt.decode(token, secret, algorithms=[algorithm])
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    sub = payload.get("sub")
    token_roles = payload.get("roles")
    if not sub or not isinstance(token_roles, list) or not token_roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Roles missing in token",
        )

    roles = {str(r).strip().lower() for r in token_roles}
    for role in _ROLE_PRIORITY:
        if role.value in roles:
            return Actor(id=str(sub), role=role)

    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Access forbidden for this role",
    )


def get_current_actor(
    request: Request,
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Actor:
    token = None
    if creds and creds.scheme.lower() == "bearer":
        token = creds.credentials

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Bearer token",
        )

    settings = request.app.state.ctx.settings
    actor = actor_from_token(token, settings.jwt_secret, settings.jwt_algorithm)

    request.state.user_sub = actor.id
    request.state.user_roles = [actor.role.value]
    return actor
