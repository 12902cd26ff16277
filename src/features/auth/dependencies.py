"""Authentication and abuse-protection dependencies for FastAPI."""

from dataclasses import dataclass

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.database.dependencies import get_db_session
from src.features.security.client_ip import client_ip_from_request
from src.features.security.csrf import CsrfGuard
from src.features.security.rate_limiter import RateLimitDecision, RateLimiter
from src.features.user.repository import SqlAlchemyUserRepository
from src.shared.validators.rules import InputValidator

from .gate import AuthGate
from .jwt_utils import TokenCodec, TokenIssuer
from .mailer import AccountMailer
from .schemas import Principal


def get_token_codec(request: Request) -> TokenCodec:
    return request.app.state.token_codec


def get_token_issuer(request: Request) -> TokenIssuer:
    return request.app.state.token_issuer


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_csrf_guard(request: Request) -> CsrfGuard:
    return request.app.state.csrf_guard


def get_mailer(request: Request) -> AccountMailer:
    return request.app.state.mailer


def get_session_id(request: Request) -> str:
    """Session identifier assigned by ``ClientSessionMiddleware``."""
    session_id = getattr(request.state, "session_id", None)
    if not session_id:
        raise RuntimeError("ClientSessionMiddleware must be installed to use session-backed protections")
    return session_id


def get_client_id(request: Request) -> str:
    return client_ip_from_request(request)


async def get_user_repository(session: AsyncSession = Depends(get_db_session)) -> SqlAlchemyUserRepository:
    return SqlAlchemyUserRepository(session)


def get_auth_gate(codec: TokenCodec = Depends(get_token_codec)) -> AuthGate:
    """Gate for token checks only (no database access)."""
    return AuthGate(codec)


async def get_validating_gate(
    codec: TokenCodec = Depends(get_token_codec),
    users: SqlAlchemyUserRepository = Depends(get_user_repository),
) -> AuthGate:
    """Gate wired to the user repository for verification and uniqueness checks."""
    return AuthGate(codec, users=users, validator=InputValidator(uniqueness=users))


def get_current_principal(request: Request, gate: AuthGate = Depends(get_auth_gate)) -> Principal:
    """Get the authenticated principal from the bearer token.

    Raises:
        AuthenticationError: If the token is missing or invalid

    """
    principal = gate.authenticate(request)
    request.state.principal = principal
    return principal


def get_optional_principal(request: Request, gate: AuthGate = Depends(get_auth_gate)) -> Principal | None:
    """Get the principal if a valid token is provided, otherwise None.
    Useful for endpoints that work with or without authentication.
    """
    return gate.try_authenticate(request)


async def get_verified_principal(
    principal: Principal = Depends(get_current_principal),
    gate: AuthGate = Depends(get_validating_gate),
) -> Principal:
    """Authenticated principal whose account has a verified e-mail address."""
    return await gate.require_verified_email(principal)


async def csrf_protect(
    request: Request,
    session_id: str = Depends(get_session_id),
    guard: CsrfGuard = Depends(get_csrf_guard),
) -> None:
    """Reject state-changing requests without the session's CSRF token."""
    await guard.validate_request(request, session_id)


@dataclass
class RateLimitedAttempt:
    """Handle for reporting how a rate-limited attempt ended."""

    limiter: RateLimiter
    action: str
    client_id: str
    session_id: str

    async def success(self) -> None:
        await self.limiter.record_success(self.action, self.client_id, self.session_id)

    async def failure(self) -> RateLimitDecision:
        return await self.limiter.record_failure(self.action, self.client_id, self.session_id)


def rate_limit(action: str):
    """Dependency factory to throttle failed attempts at a sensitive action.

    Usage:
        attempt: RateLimitedAttempt = Depends(rate_limit("login"))
        ...
        await attempt.success()
    """

    async def limiter_dependency(
        session_id: str = Depends(get_session_id),
        client_id: str = Depends(get_client_id),
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> RateLimitedAttempt:
        await limiter.enforce(action, client_id, session_id)
        return RateLimitedAttempt(limiter, action, client_id, session_id)

    return limiter_dependency
