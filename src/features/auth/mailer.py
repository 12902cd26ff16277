"""Account e-mail delivery (verification and password-reset links)."""

import logging
from typing import Protocol

from src.features.user.models import User

logger = logging.getLogger(__name__)


class AccountMailer(Protocol):
    """Delivers tokens to account holders.

    Each method returns False when the message could not be sent.
    """

    async def send_email_verification(self, user: User, token: str) -> bool: ...

    async def send_password_reset(self, user: User, token: str) -> bool: ...


class LoggingMailer:
    """Mailer that writes messages to the log instead of sending them.

    Installed by default; swap in a real transport on ``app.state.mailer``.
    """

    async def send_email_verification(self, user: User, token: str) -> bool:
        logger.info(f"Verification email queued for {user.email}")
        logger.debug(f"Verification token for user {user.id}: {token}")
        return True

    async def send_password_reset(self, user: User, token: str) -> bool:
        logger.info(f"Password reset email queued for {user.email}")
        logger.debug(f"Password reset token for user {user.id}: {token}")
        return True
