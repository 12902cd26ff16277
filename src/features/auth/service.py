"""Authentication service layer."""

import hashlib
import hmac
import logging
from typing import Any

from fastapi import HTTPException, status

from src.features.user.models import User
from src.features.user.repository import SqlAlchemyUserRepository

from .exceptions import AuthenticationError, ValidationError
from .jwt_utils import TokenIssuer, TokenType
from .mailer import AccountMailer

logger = logging.getLogger(__name__)


def password_fingerprint(hashed_password: str) -> str:
    """Short digest of a password hash; changes whenever the password does."""
    return hashlib.sha256(hashed_password.encode()).hexdigest()[:16]


class AuthService:
    """Account authentication, registration and token flows.

    Verification and reset tokens are handed to ``mailer`` for delivery.
    """

    def __init__(self, users: SqlAlchemyUserRepository, issuer: TokenIssuer, mailer: AccountMailer):
        self.users = users
        self.issuer = issuer
        self.mailer = mailer

    async def _claimed_user(self, claims: dict[str, Any]) -> User | None:
        try:
            user_id = int(claims["user_id"])
        except (TypeError, ValueError):
            return None
        return await self.users.find_by_id(user_id)

    async def authenticate_user(self, email: str, password: str) -> User | None:
        """Return the user for a matching e-mail/password pair, otherwise None."""
        user = await self.users.find_by_email(email)
        if user is None:
            return None

        if not user.verify_password(password):
            logger.info(f"Failed login for {email}")
            return None

        return user

    async def register_user(self, data: dict[str, Any]) -> User:
        """Create an account from already-validated registration input."""
        user = User(
            email=data["email"],
            username=data["username"],
            bio=data.get("bio"),
            hashed_password=User.hash_password(data["password"]),
            email_verified=False,
        )
        await self.users.add(user)
        logger.info(f"New user registered: {user.username} ({user.email})")
        return user

    async def send_email_verification(self, user: User) -> bool:
        """Issue a verification token and mail it; False if delivery failed."""
        token = self.issuer.email_verification_token(user)
        sent = await self.mailer.send_email_verification(user, token)
        if not sent:
            logger.warning(f"Verification email could not be sent to user {user.id}")
        return sent

    async def refresh_access_token(self, refresh_token: str) -> dict[str, Any]:
        """Exchange a refresh token for a new access token.

        Raises:
            AuthenticationError: If the refresh token is invalid or its user is gone.

        """
        verification = self.issuer.codec.verify(refresh_token, expected_type=TokenType.REFRESH)
        if not verification.valid:
            raise AuthenticationError(verification.message, reason=verification.error)

        user = await self._claimed_user(verification.claims)
        if user is None:
            raise AuthenticationError("User not found")

        return {
            "access_token": self.issuer.access_token(user),
            "token_type": "Bearer",
            "expires_in": self.issuer.settings.access_token_expire_seconds,
        }

    async def request_password_reset(self, email: str) -> str | None:
        """Mail a reset token to ``email`` if such an account exists.

        Returns:
            The issued token, or None for unknown addresses

        """
        user = await self.users.find_by_email(email)
        if user is None:
            logger.info(f"Password reset requested for unknown email {email}")
            return None

        token = self.issuer.password_reset_token(user, password_fingerprint(user.hashed_password))
        if not await self.mailer.send_password_reset(user, token):
            logger.error(f"Failed to send password reset email for user {user.id}")
        return token

    async def reset_password(self, token: str, new_password: str) -> User:
        """Set a new password using a reset token.

        The token stops working once the password it was issued against changes.

        Raises:
            ValidationError: If the token is invalid, expired or already used.

        """
        invalid = ValidationError("Invalid or expired reset token", errors={"token": ["Invalid or expired reset token"]})

        verification = self.issuer.codec.verify(token, expected_type=TokenType.PASSWORD_RESET)
        if not verification.valid:
            raise invalid

        user = await self._claimed_user(verification.claims)
        if user is None:
            raise invalid

        fingerprint = str(verification.claims.get("pwd", ""))
        if not hmac.compare_digest(fingerprint.encode(), password_fingerprint(user.hashed_password).encode()):
            raise invalid

        user.hashed_password = User.hash_password(new_password)
        logger.info(f"Password reset for user {user.id}")
        return user

    async def verify_email(self, token: str) -> tuple[User, bool]:
        """Mark the token's account as verified.

        Returns:
            (user, already_verified)

        Raises:
            ValidationError: If the token is invalid or not a verification token
            HTTPException: 404 if the account no longer exists

        """
        verification = self.issuer.codec.verify(token, expected_type=TokenType.EMAIL_VERIFICATION)
        if not verification.valid:
            raise ValidationError(
                "Invalid or expired verification token",
                errors={"token": [verification.message or "Invalid token"]},
            )

        user = await self._claimed_user(verification.claims)
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

        if user.email_verified:
            return user, True

        user.email_verified = True
        logger.info(f"Email verified for user {user.id}")
        return user, False

    async def resend_verification(self, email: str) -> bool:
        """Mail a fresh verification token to an unverified account, if any.

        Returns:
            True only when a message was sent
        """
        user = await self.users.find_by_email(email)
        if user is None or user.email_verified:
            return False
        return await self.send_email_verification(user)
