"""Signed bearer tokens (HS256 JWT) for authentication."""

import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol

import jwt
from jwt.exceptions import InvalidSignatureError, InvalidTokenError

from src.config.settings import ConfigurationError, Settings


class TokenType(StrEnum):
    """Purpose a token was issued for (stored in the ``type`` claim)."""

    ACCESS = "access"
    REFRESH = "refresh"
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


class TokenError(StrEnum):
    """Reason a token failed verification."""

    MALFORMED = "malformed"
    SIGNATURE_INVALID = "signature_invalid"
    EXPIRED = "expired"
    WRONG_TYPE = "wrong_type"


ERROR_MESSAGES = {
    TokenError.MALFORMED: "Invalid token format",
    TokenError.SIGNATURE_INVALID: "Invalid token signature",
    TokenError.EXPIRED: "Token expired",
    TokenError.WRONG_TYPE: "Invalid token type",
}


@dataclass(frozen=True)
class TokenVerification:
    """Outcome of ``TokenCodec.verify``."""

    valid: bool
    claims: dict[str, Any] | None = None
    error: TokenError | None = None

    @property
    def message(self) -> str | None:
        return ERROR_MESSAGES[self.error] if self.error else None


class TokenSubject(Protocol):
    id: int
    email: str
    username: str


class TokenCodec:
    """Issue and verify signed, time-limited tokens.

    Verification is a pure function of the token, the secret and the clock.
    The clock used to stamp ``iat``/``exp`` is the same one used to check
    expiry, so PyJWT's wall-clock ``exp`` validation is turned off.
    """

    REQUIRED_CLAIMS = ["exp", "iat", "user_id"]

    def __init__(self, secret: str | None, algorithm: str = "HS256", clock: Callable[[], float] = time.time):
        if not secret:
            raise ConfigurationError("A signing secret is required to issue tokens")
        self._secret = secret
        self.algorithm = algorithm
        self.clock = clock

    def now(self) -> int:
        return int(self.clock())

    def issue(self, claims: dict[str, Any], ttl: int, token_type: TokenType = TokenType.ACCESS) -> str:
        """Sign ``claims`` with ``iat = now`` and ``exp = now + ttl`` (seconds).

        Args:
            claims: Identity claims; must include ``user_id``
            ttl: Lifetime in seconds
            token_type: Purpose of the token

        Returns:
            Encoded JWT string

        """
        issued_at = self.now()
        payload = {
            **claims,
            "iat": issued_at,
            "exp": issued_at + ttl,
            "type": token_type.value,
        }
        return jwt.encode(payload, self._secret, algorithm=self.algorithm)

    def verify(self, token: str, expected_type: TokenType | None = None) -> TokenVerification:
        """Check signature, structure, expiry and (optionally) type of a token."""
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                options={"verify_exp": False, "verify_iat": False, "require": self.REQUIRED_CLAIMS},
            )
        except InvalidSignatureError:
            return TokenVerification(valid=False, error=TokenError.SIGNATURE_INVALID)
        except InvalidTokenError:
            return TokenVerification(valid=False, error=TokenError.MALFORMED)

        expires_at = claims.get("exp")
        if isinstance(expires_at, bool) or not isinstance(expires_at, int | float):
            return TokenVerification(valid=False, error=TokenError.MALFORMED)

        if self.now() > expires_at:
            return TokenVerification(valid=False, error=TokenError.EXPIRED)

        if expected_type is not None and claims.get("type") != expected_type.value:
            return TokenVerification(valid=False, error=TokenError.WRONG_TYPE)

        return TokenVerification(valid=True, claims=claims)


class TokenIssuer:
    """Issues the platform's token kinds with lifetimes taken from settings."""

    def __init__(self, codec: TokenCodec, settings: Settings):
        self.codec = codec
        self.settings = settings

    @staticmethod
    def identity_claims(user: TokenSubject) -> dict[str, Any]:
        return {"user_id": user.id, "email": user.email, "username": user.username}

    def access_token(self, user: TokenSubject) -> str:
        return self.codec.issue(
            self.identity_claims(user), self.settings.access_token_expire_seconds, TokenType.ACCESS
        )

    def refresh_token(self, user: TokenSubject) -> str:
        return self.codec.issue(
            {"user_id": user.id}, self.settings.refresh_token_expire_seconds, TokenType.REFRESH
        )

    def email_verification_token(self, user: TokenSubject) -> str:
        return self.codec.issue(
            {"user_id": user.id}, self.settings.email_verification_expire_seconds, TokenType.EMAIL_VERIFICATION
        )

    def password_reset_token(self, user: TokenSubject, fingerprint: str) -> str:
        """Reset token bound to a fingerprint of the current password hash."""
        return self.codec.issue(
            {"user_id": user.id, "pwd": fingerprint},
            self.settings.password_reset_expire_seconds,
            TokenType.PASSWORD_RESET,
        )

    def token_pair(self, user: TokenSubject) -> dict[str, Any]:
        return {
            "access_token": self.access_token(user),
            "refresh_token": self.refresh_token(user),
            "token_type": "Bearer",
            "expires_in": self.settings.access_token_expire_seconds,
        }
