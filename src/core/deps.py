"""FastAPI dependencies for authentication/authorization."""

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from src.core.security import TokenDecodeError, read_claims
from src.shared.enums import UserRole
from src.shared.schemas import Actor

bearer_scheme = HTTPBearer(auto_error=False)


def _resolve_actor(credentials: HTTPAuthorizationCredentials | None) -> Actor:
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing authentication")
    try:
        user_id, role = read_claims(credentials.credentials)
    except TokenDecodeError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    return Actor(user_id=user_id, role=role)


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials | None = Security(bearer_scheme),
) -> Actor:
    return _resolve_actor(credentials)


def require_role(*roles: UserRole):
    """Dependency factory restricting an endpoint to ``roles``."""

    async def dependency(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
        return actor

    return dependency


# Front desk: check-ins and payments.
require_front_desk = require_role(UserRole.STAFF, UserRole.ADMIN)
require_admin = require_role(UserRole.ADMIN)
