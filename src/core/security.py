"""Security helpers for JWT handling.

Sessions are issued by the hospital identity service; this backend verifies
the token and reads two claims: ``sub`` (the user id) and ``role``.
"""

from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from src.shared.enums import UserRole

from .config import settings


class TokenDecodeError(Exception):
    """Raised when a JWT cannot be decoded or is invalid."""


def create_access_token(subject: str, role: str, expires_minutes: int | None = None) -> str:
    """Create a signed JWT (used by tooling and tests)."""
    expire_in = expires_minutes or settings.jwt_expires_in_minutes
    to_encode: dict[str, Any] = {
        "sub": subject,
        "role": role,
        "exp": datetime.now(tz=timezone.utc) + timedelta(minutes=expire_in),
    }
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> dict[str, Any]:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise TokenDecodeError("Invalid token") from exc


def read_claims(token: str) -> tuple[str, UserRole]:
    """Return ``(user_id, role)`` from a verified token."""
    payload = decode_access_token(token)
    user_id = payload.get("sub")
    raw_role = payload.get("role")
    if not user_id or not raw_role:
        raise TokenDecodeError("Invalid token payload")
    try:
        role = UserRole(raw_role)
    except ValueError as exc:
        raise TokenDecodeError(f"Unknown role {raw_role!r}") from exc
    return str(user_id), role
