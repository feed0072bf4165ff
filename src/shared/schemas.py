"""Common Pydantic schemas."""

from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict

from src.shared.enums import UserRole

T = TypeVar("T")


class ResponseEnvelope(BaseModel, Generic[T]):
    """Standard API envelope."""

    success: bool = True
    data: T | None = None
    message: str | None = None


class Actor(BaseModel):
    """The authenticated caller as seen by the service layer."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    role: UserRole
