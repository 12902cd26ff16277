"""Authentication router (tokens, registration, verification and CSRF endpoints)."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.database.dependencies import get_db_session
from src.features.security.csrf import CsrfGuard
from src.features.user.repository import SqlAlchemyUserRepository
from src.features.user.schemas import UserResponse

from .dependencies import (
    RateLimitedAttempt,
    csrf_protect,
    get_csrf_guard,
    get_current_principal,
    get_mailer,
    get_session_id,
    get_token_issuer,
    get_user_repository,
    get_validating_gate,
    rate_limit,
)
from .exceptions import InvalidCredentialsError
from .gate import AuthGate
from .jwt_utils import TokenIssuer
from .mailer import AccountMailer
from .schemas import (
    LOGIN_RULES,
    PASSWORD_RESET_REQUEST_RULES,
    PASSWORD_RESET_RULES,
    REFRESH_RULES,
    REGISTRATION_RULES,
    TOKEN_RULES,
    AccessTokenResponse,
    AuthResponse,
    CsrfTokenResponse,
    MessageResponse,
    Principal,
    TokenPair,
)
from .service import AuthService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["Authentication"])

UNVERIFIED_WARNING = "Please verify your email address to access all features."
VERIFICATION_NOT_SENT_WARNING = (
    "Account created but verification email could not be sent. You can request a new verification email."
)
RESET_SENT_MESSAGE = "If the email exists, a password reset link has been sent"
VERIFICATION_SENT_MESSAGE = "If the email exists and is not verified, a verification email has been sent"


def get_auth_service(
    users: SqlAlchemyUserRepository = Depends(get_user_repository),
    issuer: TokenIssuer = Depends(get_token_issuer),
    mailer: AccountMailer = Depends(get_mailer),
) -> AuthService:
    return AuthService(users, issuer, mailer)


@router.get("/csrf-token", response_model=CsrfTokenResponse)
async def csrf_token(session_id: str = Depends(get_session_id), guard: CsrfGuard = Depends(get_csrf_guard)):
    """Get the CSRF token for this session (send it as `_token` or `X-CSRF-Token`)."""
    return CsrfTokenResponse(csrf_token=await guard.issue(session_id))


@router.post(
    "/register",
    response_model=AuthResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(csrf_protect)],
)
async def register(
    request: Request,
    attempt: RateLimitedAttempt = Depends(rate_limit("register")),
    gate: AuthGate = Depends(get_validating_gate),
    service: AuthService = Depends(get_auth_service),
    issuer: TokenIssuer = Depends(get_token_issuer),
    session: AsyncSession = Depends(get_db_session),
):
    """Register a new account.

    - **username**: 3-50 characters, letters, digits, `_` and `-`
    - **email**: Unique e-mail address
    - **password**: At least 8 characters with upper, lower, digit and special character
    - **bio**: Optional, up to 500 characters
    """
    data = await gate.validate_input(request, REGISTRATION_RULES)
    user = await service.register_user(data)
    await session.commit()

    await attempt.success()
    sent = await service.send_email_verification(user)

    return AuthResponse(
        user=UserResponse.model_validate(user),
        tokens=TokenPair(**issuer.token_pair(user)),
        message="Registration successful. Please check your email to verify your account.",
        warning=None if sent else VERIFICATION_NOT_SENT_WARNING,
    )


@router.post("/login", response_model=AuthResponse, dependencies=[Depends(csrf_protect)])
async def login(
    request: Request,
    attempt: RateLimitedAttempt = Depends(rate_limit("login")),
    gate: AuthGate = Depends(get_validating_gate),
    service: AuthService = Depends(get_auth_service),
    issuer: TokenIssuer = Depends(get_token_issuer),
):
    """Login with e-mail and password and get JWT tokens."""
    data = await gate.validate_input(request, LOGIN_RULES)
    user = await service.authenticate_user(data["email"], data["password"])

    if user is None:
        await attempt.failure()
        raise InvalidCredentialsError()

    await attempt.success()
    logger.info(f"User logged in: {user.username}")

    return AuthResponse(
        user=UserResponse.model_validate(user),
        tokens=TokenPair(**issuer.token_pair(user)),
        warning=None if user.email_verified else UNVERIFIED_WARNING,
    )


@router.post("/refresh", response_model=AccessTokenResponse)
async def refresh(
    request: Request,
    gate: AuthGate = Depends(get_validating_gate),
    service: AuthService = Depends(get_auth_service),
):
    """Exchange a refresh token for a new access token."""
    data = await gate.validate_input(request, REFRESH_RULES)
    return AccessTokenResponse(**await service.refresh_access_token(data["refresh_token"]))


@router.post("/logout", response_model=MessageResponse)
async def logout(principal: Principal = Depends(get_current_principal)):
    """Acknowledge logout; tokens are stateless and expire on their own."""
    logger.info(f"User logged out: {principal.username}")
    return MessageResponse(message="Logout successful")


@router.post("/forgot-password", response_model=MessageResponse, dependencies=[Depends(csrf_protect)])
async def forgot_password(
    request: Request,
    attempt: RateLimitedAttempt = Depends(rate_limit("forgot_password")),
    gate: AuthGate = Depends(get_validating_gate),
    service: AuthService = Depends(get_auth_service),
):
    """Request a password reset link. The response never reveals whether the account exists."""
    data = await gate.validate_input(request, PASSWORD_RESET_REQUEST_RULES)
    await service.request_password_reset(data["email"])
    return MessageResponse(message=RESET_SENT_MESSAGE)


@router.post("/reset-password", response_model=MessageResponse, dependencies=[Depends(csrf_protect)])
async def reset_password(
    request: Request,
    gate: AuthGate = Depends(get_validating_gate),
    service: AuthService = Depends(get_auth_service),
    session: AsyncSession = Depends(get_db_session),
):
    """Set a new password using a reset token."""
    data = await gate.validate_input(request, PASSWORD_RESET_RULES)
    await service.reset_password(data["token"], data["password"])
    await session.commit()
    return MessageResponse(message="Password reset successfully")


@router.post("/verify-email", dependencies=[Depends(csrf_protect)])
async def verify_email(
    request: Request,
    attempt: RateLimitedAttempt = Depends(rate_limit("verify_email")),
    gate: AuthGate = Depends(get_validating_gate),
    service: AuthService = Depends(get_auth_service),
    session: AsyncSession = Depends(get_db_session),
):
    """Verify an e-mail address with the token from the verification link."""
    data = await gate.validate_input(request, TOKEN_RULES)
    user, already_verified = await service.verify_email(data["token"])
    await attempt.success()

    if already_verified:
        return {"message": "Email is already verified"}

    await session.commit()
    return {"message": "Email verified successfully", "user": UserResponse.model_validate(user)}


@router.post("/resend-verification", response_model=MessageResponse, dependencies=[Depends(csrf_protect)])
async def resend_verification(
    request: Request,
    attempt: RateLimitedAttempt = Depends(rate_limit("resend_verification")),
    gate: AuthGate = Depends(get_validating_gate),
    service: AuthService = Depends(get_auth_service),
):
    """Send a new verification e-mail. The response never reveals whether the account exists."""
    data = await gate.validate_input(request, PASSWORD_RESET_REQUEST_RULES)
    await service.resend_verification(data["email"])
    return MessageResponse(message=VERIFICATION_SENT_MESSAGE)


@router.get("/me", response_model=UserResponse)
async def me(
    principal: Principal = Depends(get_current_principal),
    users: SqlAlchemyUserRepository = Depends(get_user_repository),
):
    """Get the authenticated user's profile."""
    user = await users.find_by_id(principal.id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return UserResponse.model_validate(user)
