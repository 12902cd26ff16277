"""Authentication gate: bearer-token authentication and access checks.

The gate never writes responses. Failures are raised as ``GateError``
subclasses and rendered by the exception handler in ``src.main``.
"""

import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

from fastapi.security.utils import get_authorization_scheme_param

from src.features.user.repository import UserRepository
from src.shared.validators.rules import InputValidator

from .exceptions import AuthenticationError, AuthorizationError, ValidationError
from .jwt_utils import ERROR_MESSAGES, TokenCodec, TokenError, TokenType
from .schemas import Principal

logger = logging.getLogger(__name__)


class HasHeaders(Protocol):
    headers: Mapping[str, str]


def bearer_token(headers: Mapping[str, str]) -> str | None:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    scheme, credentials = get_authorization_scheme_param(headers.get("authorization") or headers.get("Authorization"))
    credentials = credentials.strip()
    if scheme.lower() != "bearer" or not credentials or len(credentials.split()) != 1:
        return None
    return credentials


class AuthGate:
    """Authenticate requests and enforce ownership/verification requirements.

    Args:
        codec: Token codec used to verify bearer tokens
        users: User repository, required only for ``require_verified_email``
        validator: Input validator used by ``validate_input``

    """

    def __init__(
        self,
        codec: TokenCodec,
        users: UserRepository | None = None,
        validator: InputValidator | None = None,
    ):
        self.codec = codec
        self.users = users
        self.validator = validator or InputValidator()

    def authenticate(self, request: HasHeaders) -> Principal:
        """Return the principal for a request carrying a valid access token.

        Raises:
            AuthenticationError: If the token is missing, malformed, badly
                signed, expired or not an access token.

        """
        token = bearer_token(request.headers)
        if not token:
            raise AuthenticationError("Authorization token missing", reason="missing")

        verification = self.codec.verify(token, expected_type=TokenType.ACCESS)
        if not verification.valid:
            logger.info(f"Rejected bearer token: {verification.error}")
            raise AuthenticationError(verification.message, reason=verification.error)

        try:
            return Principal.from_claims(verification.claims)
        except (TypeError, ValueError):
            logger.info("Rejected bearer token: non-numeric user_id claim")
            raise AuthenticationError(ERROR_MESSAGES[TokenError.MALFORMED], reason=TokenError.MALFORMED) from None

    def try_authenticate(self, request: HasHeaders) -> Principal | None:
        """Like ``authenticate`` but returns None instead of raising."""
        try:
            return self.authenticate(request)
        except AuthenticationError:
            return None

    def authorize_ownership(
        self,
        principal: Principal,
        resource_owner_id: int | str | None = None,
        required_role: str | None = None,
    ) -> None:
        """Require that ``principal`` owns the resource when an owner is given.

        ``required_role`` is accepted for call-site compatibility; there is no
        role system, so it is not checked.

        Raises:
            AuthorizationError: If the principal is not the resource owner.

        """
        if resource_owner_id is not None and str(resource_owner_id) != str(principal.id):
            raise AuthorizationError("Access denied - not resource owner")

    async def require_verified_email(self, principal: Principal) -> Principal:
        """Require that the principal's account has a verified e-mail address.

        Raises:
            AuthorizationError: If the account is gone or not verified.

        """
        if self.users is None:
            raise RuntimeError("AuthGate needs a user repository to check e-mail verification")

        user = await self.users.find_by_id(principal.id)
        if user is None or not user.email_verified:
            raise AuthorizationError("Email verification required")
        return principal

    async def validate_input(self, request: Any, rules: Mapping[str, Mapping[str, Any]]) -> dict[str, Any]:
        """Parse the JSON body of ``request`` and validate it against ``rules``.

        Raises:
            ValidationError: If the body is not a JSON object or a rule fails.

        """
        body = await request.body()
        try:
            data = json.loads(body) if body else None
        except ValueError:
            raise ValidationError("Invalid JSON input") from None

        return await self.validator.validate(data, rules)
