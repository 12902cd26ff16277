"""User schemas (DTOs)."""

from datetime import datetime

from pydantic import BaseModel


class UserResponse(BaseModel):
    """Public view of a user account."""

    id: int
    email: str
    username: str
    bio: str | None = None
    email_verified: bool
    created_at: datetime

    model_config = {"from_attributes": True}
