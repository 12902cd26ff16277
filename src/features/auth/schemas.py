"""Authentication schemas (principal, DTOs and input rule sets)."""

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from src.features.user.schemas import UserResponse

USERNAME_PATTERN = r"^[a-zA-Z0-9_-]+$"


@dataclass(frozen=True)
class Principal:
    """Identity of the caller, derived from a verified access token."""

    id: int
    email: str
    username: str

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "Principal":
        return cls(id=int(claims["user_id"]), email=claims.get("email", ""), username=claims.get("username", ""))


# Input rule sets consumed by AuthGate.validate_input
REGISTRATION_RULES = {
    "username": {
        "required": True,
        "min": 3,
        "max": 50,
        "regex": USERNAME_PATTERN,
        "unique": {"collection": "users", "column": "username"},
    },
    "email": {
        "required": True,
        "email": True,
        "max": 255,
        "unique": {"collection": "users", "column": "email"},
    },
    "password": {"required": True, "password": True},
    "bio": {"max": 500},
}

LOGIN_RULES = {
    "email": {"required": True, "email": True},
    "password": {"required": True, "min": 1},
}

PASSWORD_RESET_REQUEST_RULES = {
    "email": {"required": True, "email": True},
}

PASSWORD_RESET_RULES = {
    "token": {"required": True, "min": 10},
    "password": {"required": True, "password": True},
}

TOKEN_RULES = {
    "token": {"required": True},
}

REFRESH_RULES = {
    "refresh_token": {"required": True},
}


# Response schemas
class TokenPair(BaseModel):
    """JWT token response."""

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int  # seconds


class AccessTokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int


class AuthResponse(BaseModel):
    """Login/registration response."""

    user: UserResponse
    tokens: TokenPair
    message: str | None = None
    warning: str | None = None


class MessageResponse(BaseModel):
    message: str


class CsrfTokenResponse(BaseModel):
    csrf_token: str
