"""Tests for the auth feature.
Covers: AuthService, the authentication endpoints, CSRF and rate limiting over HTTP.
"""

import pytest
from fastapi import HTTPException, status

from src.config.settings import settings
from src.features.auth.exceptions import AuthenticationError, ValidationError
from src.features.auth.jwt_utils import TokenType
from src.features.auth.mailer import LoggingMailer
from src.features.auth.service import AuthService, password_fingerprint
from src.features.user.repository import SqlAlchemyUserRepository

AUTH_PREFIX = f"{settings.api_prefix}/auth"


@pytest.fixture
def service(session, issuer, mailer):
    return AuthService(SqlAlchemyUserRepository(session), issuer, mailer)


# AuthService


class TestAuthenticateUser:
    """Unit tests for AuthService.authenticate_user."""

    async def test_success(self, service, make_user):
        await make_user(email="login@example.com", password="Pass123!")
        user = await service.authenticate_user("login@example.com", "Pass123!")
        assert user is not None
        assert user.email == "login@example.com"

    async def test_returns_none_for_unknown_email(self, service):
        assert await service.authenticate_user("ghost@example.com", "Pass123!") is None

    async def test_returns_none_for_wrong_password(self, service, make_user):
        await make_user(email="wp@example.com", password="RealPass123!")
        assert await service.authenticate_user("wp@example.com", "WrongPass!") is None


class TestRegisterUser:
    async def test_creates_unverified_user(self, service):
        user = await service.register_user(
            {"username": "newbie", "email": "newbie@example.com", "password": "NewPass123!", "bio": "Hello"}
        )

        assert user.id is not None
        assert user.email_verified is False
        assert user.bio == "Hello"
        assert user.hashed_password != "NewPass123!"
        assert user.verify_password("NewPass123!")


class TestRefreshAccessToken:
    async def test_success(self, service, issuer, codec, make_user):
        user = await make_user()

        result = await service.refresh_access_token(issuer.refresh_token(user))

        assert result["token_type"] == "Bearer"
        assert result["expires_in"] == settings.access_token_expire_seconds
        assert codec.verify(result["access_token"], expected_type=TokenType.ACCESS).claims["user_id"] == user.id

    async def test_rejects_access_token(self, service, issuer, make_user):
        user = await make_user()

        with pytest.raises(AuthenticationError, match="Invalid token type"):
            await service.refresh_access_token(issuer.access_token(user))

    async def test_rejects_expired_token(self, service, issuer, clock, make_user):
        user = await make_user()
        token = issuer.refresh_token(user)
        clock.advance(settings.refresh_token_expire_seconds + 1)

        with pytest.raises(AuthenticationError, match="Token expired"):
            await service.refresh_access_token(token)

    async def test_rejects_deleted_user(self, service, codec):
        token = codec.issue({"user_id": 999}, ttl=60, token_type=TokenType.REFRESH)

        with pytest.raises(AuthenticationError, match="User not found"):
            await service.refresh_access_token(token)


class TestPasswordReset:
    async def test_unknown_email_returns_none(self, service):
        assert await service.request_password_reset("ghost@example.com") is None

    async def test_reset_changes_password(self, service, make_user):
        user = await make_user(email="reset@example.com", password="OldPass123!")
        token = await service.request_password_reset("reset@example.com")

        await service.reset_password(token, "NewPass123!")

        assert user.verify_password("NewPass123!")
        assert not user.verify_password("OldPass123!")

    async def test_token_is_single_use(self, service, make_user):
        await make_user(email="once@example.com", password="OldPass123!")
        token = await service.request_password_reset("once@example.com")
        await service.reset_password(token, "NewPass123!")

        with pytest.raises(ValidationError, match="Invalid or expired reset token"):
            await service.reset_password(token, "Another123!")

    async def test_expired_token(self, service, clock, make_user):
        await make_user(email="late@example.com")
        token = await service.request_password_reset("late@example.com")
        clock.advance(settings.password_reset_expire_seconds + 1)

        with pytest.raises(ValidationError) as exc_info:
            await service.reset_password(token, "NewPass123!")

        assert exc_info.value.errors == {"token": ["Invalid or expired reset token"]}

    async def test_verification_token_is_not_a_reset_token(self, service, issuer, make_user):
        user = await make_user()

        with pytest.raises(ValidationError):
            await service.reset_password(issuer.email_verification_token(user), "NewPass123!")

    def test_fingerprint_tracks_hash(self):
        assert password_fingerprint("a") == password_fingerprint("a")
        assert password_fingerprint("a") != password_fingerprint("b")
        assert len(password_fingerprint("a")) == 16


class TestVerifyEmail:
    async def test_marks_verified(self, service, issuer, make_user):
        user = await make_user()

        verified, already = await service.verify_email(issuer.email_verification_token(user))

        assert verified.id == user.id
        assert verified.email_verified is True
        assert already is False

    async def test_already_verified(self, service, issuer, make_user):
        user = await make_user(email_verified=True)

        _, already = await service.verify_email(issuer.email_verification_token(user))

        assert already is True

    async def test_rejects_access_token(self, service, issuer, make_user):
        user = await make_user()

        with pytest.raises(ValidationError) as exc_info:
            await service.verify_email(issuer.access_token(user))

        assert exc_info.value.errors == {"token": ["Invalid token type"]}

    async def test_missing_user(self, service, codec):
        token = codec.issue({"user_id": 999}, ttl=60, token_type=TokenType.EMAIL_VERIFICATION)

        with pytest.raises(HTTPException) as exc_info:
            await service.verify_email(token)

        assert exc_info.value.status_code == status.HTTP_404_NOT_FOUND


class TestResendVerification:
    async def test_unverified_user_gets_token(self, service, codec, mailer, make_user):
        user = await make_user(email="unverified@example.com")

        assert await service.resend_verification("unverified@example.com") is True

        token = mailer.last_token("verification", "unverified@example.com")
        claims = codec.verify(token, expected_type=TokenType.EMAIL_VERIFICATION).claims
        assert claims["user_id"] == user.id

    async def test_verified_or_unknown_user_gets_nothing(self, service, mailer, make_user):
        await make_user(email="done@example.com", email_verified=True)

        assert await service.resend_verification("done@example.com") is False
        assert await service.resend_verification("ghost@example.com") is False
        assert mailer.sent == []

    async def test_delivery_failure(self, service, mailer, make_user):
        await make_user(email="bounce@example.com")
        mailer.fail = True

        assert await service.resend_verification("bounce@example.com") is False


class TestLoggingMailer:
    async def test_reports_delivery(self, make_user):
        user = await make_user()
        mailer = LoggingMailer()

        assert await mailer.send_email_verification(user, "token") is True
        assert await mailer.send_password_reset(user, "token") is True


# Endpoints


class TestRegisterEndpoint:
    async def test_register_success(self, csrf_client, codec):
        response = await csrf_client.post(
            f"{AUTH_PREFIX}/register",
            json={"username": "writer", "email": "writer@example.com", "password": "WriterPass1!"},
        )

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert data["user"]["username"] == "writer"
        assert data["user"]["email_verified"] is False
        assert "hashed_password" not in data["user"]
        assert data["tokens"]["token_type"] == "Bearer"
        assert codec.verify(data["tokens"]["access_token"], expected_type=TokenType.ACCESS).valid
        assert data["warning"] is None

    async def test_register_delivers_usable_verification_token(self, csrf_client, mailer):
        await csrf_client.post(
            f"{AUTH_PREFIX}/register",
            json={"username": "mailed", "email": "mailed@example.com", "password": "MailedPass1!"},
        )
        token = mailer.last_token("verification", "mailed@example.com")

        response = await csrf_client.post(f"{AUTH_PREFIX}/verify-email", json={"token": token})

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["user"]["email_verified"] is True

    async def test_register_warns_when_email_not_sent(self, csrf_client, mailer):
        mailer.fail = True

        response = await csrf_client.post(
            f"{AUTH_PREFIX}/register",
            json={"username": "nomail", "email": "nomail@example.com", "password": "NoMailPass1!"},
        )

        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["warning"] == (
            "Account created but verification email could not be sent. You can request a new verification email."
        )

    async def test_register_duplicate_returns_422(self, csrf_client, make_user):
        await make_user(username="taken", email="taken@example.com")

        response = await csrf_client.post(
            f"{AUTH_PREFIX}/register",
            json={"username": "taken", "email": "taken@example.com", "password": "WriterPass1!"},
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["details"] == {"username": ["Username already exists"], "email": ["Email already exists"]}

    async def test_register_weak_password(self, csrf_client):
        response = await csrf_client.post(
            f"{AUTH_PREFIX}/register",
            json={"username": "weak", "email": "weak@example.com", "password": "weakpass"},
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT
        assert response.json()["error"]["details"]["password"] == [
            "Password must contain at least one uppercase letter"
        ]

    async def test_register_invalid_json(self, csrf_client):
        response = await csrf_client.post(
            f"{AUTH_PREFIX}/register",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT
        assert response.json()["error"]["message"] == "Invalid JSON input"


class TestLoginEndpoint:
    async def test_login_success(self, csrf_client, make_user):
        await make_user(email="login@example.com", password="Pass123!", email_verified=True)

        response = await csrf_client.post(
            f"{AUTH_PREFIX}/login",
            json={"email": "login@example.com", "password": "Pass123!"},
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["user"]["email"] == "login@example.com"
        assert "access_token" in data["tokens"]
        assert "refresh_token" in data["tokens"]
        assert data["warning"] is None

    async def test_login_unverified_warns(self, csrf_client, make_user):
        await make_user(email="fresh@example.com", password="Pass123!")

        response = await csrf_client.post(
            f"{AUTH_PREFIX}/login",
            json={"email": "fresh@example.com", "password": "Pass123!"},
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["warning"] is not None

    async def test_login_wrong_password_returns_401(self, csrf_client, make_user):
        await make_user(email="wp@example.com", password="RealPass123!")

        response = await csrf_client.post(
            f"{AUTH_PREFIX}/login",
            json={"email": "wp@example.com", "password": "WrongPass!"},
        )

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.headers["www-authenticate"] == "Bearer"
        assert response.json() == {
            "success": False,
            "error": {"code": "AUTHENTICATION_ERROR", "message": "Invalid email or password"},
        }

    async def test_login_unknown_user_returns_401(self, csrf_client):
        response = await csrf_client.post(
            f"{AUTH_PREFIX}/login",
            json={"email": "ghost@example.com", "password": "Pass123!"},
        )

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    async def test_login_missing_fields_returns_422(self, csrf_client):
        response = await csrf_client.post(f"{AUTH_PREFIX}/login", json={"email": "only-this@example.com"})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT
        assert response.json()["error"]["details"] == {"password": ["Password is required"]}

    async def test_login_lockout_after_repeated_failures(self, csrf_client, make_user, clock):
        await make_user(email="target@example.com", password="RightPass123!")
        proxy = {"X-Forwarded-For": "203.0.113.5"}
        start = clock.now

        for _ in range(5):
            response = await csrf_client.post(
                f"{AUTH_PREFIX}/login",
                json={"email": "target@example.com", "password": "WrongPass1!"},
                headers=proxy,
            )
            assert response.status_code == status.HTTP_401_UNAUTHORIZED

        clock.advance(10)
        response = await csrf_client.post(
            f"{AUTH_PREFIX}/login",
            json={"email": "target@example.com", "password": "RightPass123!"},
            headers=proxy,
        )

        assert response.status_code == status.HTTP_429_TOO_MANY_REQUESTS
        assert response.headers["retry-after"] == "890"
        error = response.json()["error"]
        assert error["code"] == "RATE_LIMITED"
        assert error["retry_after"] == 890
        assert error["blocked_until"] == start + 900
        assert error["message"] == "Too many attempts. Blocked for 890 more seconds."

        clock.now = start + 901
        response = await csrf_client.post(
            f"{AUTH_PREFIX}/login",
            json={"email": "target@example.com", "password": "RightPass123!"},
            headers=proxy,
        )

        assert response.status_code == status.HTTP_200_OK

    async def test_lockout_is_per_client_address(self, csrf_client, make_user):
        await make_user(email="shared@example.com", password="RightPass123!")

        for _ in range(5):
            await csrf_client.post(
                f"{AUTH_PREFIX}/login",
                json={"email": "shared@example.com", "password": "WrongPass1!"},
                headers={"X-Forwarded-For": "203.0.113.5"},
            )

        response = await csrf_client.post(
            f"{AUTH_PREFIX}/login",
            json={"email": "shared@example.com", "password": "RightPass123!"},
            headers={"X-Forwarded-For": "198.51.100.7"},
        )

        assert response.status_code == status.HTTP_200_OK


class TestRefreshEndpoint:
    async def test_refresh_success(self, csrf_client, make_user):
        await make_user(email="refresh@example.com", password="Pass123!")
        login = await csrf_client.post(
            f"{AUTH_PREFIX}/login",
            json={"email": "refresh@example.com", "password": "Pass123!"},
        )
        refresh_token = login.json()["tokens"]["refresh_token"]

        response = await csrf_client.post(f"{AUTH_PREFIX}/refresh", json={"refresh_token": refresh_token})

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["token_type"] == "Bearer"
        assert "access_token" in response.json()

    async def test_refresh_with_invalid_token_returns_401(self, client):
        response = await client.post(f"{AUTH_PREFIX}/refresh", json={"refresh_token": "not.a.token"})

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["error"]["message"] == "Invalid token format"


class TestLogoutEndpoint:
    async def test_logout_success(self, client, make_user, bearer):
        user = await make_user()

        response = await client.post(f"{AUTH_PREFIX}/logout", headers=bearer(user))

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"message": "Logout successful"}

    async def test_logout_requires_token(self, client):
        response = await client.post(f"{AUTH_PREFIX}/logout")

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["error"]["message"] == "Authorization token missing"


class TestMeEndpoint:
    async def test_me(self, client, make_user, bearer):
        user = await make_user(username="reader")

        response = await client.get(f"{AUTH_PREFIX}/me", headers=bearer(user))

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["username"] == "reader"

    async def test_me_expired_token(self, client, make_user, bearer, clock):
        user = await make_user()
        headers = bearer(user)
        clock.advance(settings.access_token_expire_seconds + 1)

        response = await client.get(f"{AUTH_PREFIX}/me", headers=headers)

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["error"]["message"] == "Token expired"

    async def test_me_deleted_user(self, client, codec):
        token = codec.issue({"user_id": 999, "email": "x@example.com", "username": "x"}, ttl=60)

        response = await client.get(f"{AUTH_PREFIX}/me", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == status.HTTP_404_NOT_FOUND


class TestPasswordResetEndpoints:
    async def test_forgot_password_same_response_for_any_email(self, csrf_client, make_user):
        await make_user(email="known@example.com")

        known = await csrf_client.post(f"{AUTH_PREFIX}/forgot-password", json={"email": "known@example.com"})
        unknown = await csrf_client.post(f"{AUTH_PREFIX}/forgot-password", json={"email": "ghost@example.com"})

        assert known.status_code == unknown.status_code == status.HTTP_200_OK
        assert known.json() == unknown.json()

    async def test_forgot_password_delivers_reset_token(self, csrf_client, mailer, make_user):
        await make_user(email="known@example.com")

        await csrf_client.post(f"{AUTH_PREFIX}/forgot-password", json={"email": "known@example.com"})
        await csrf_client.post(f"{AUTH_PREFIX}/forgot-password", json={"email": "ghost@example.com"})

        assert [(kind, email) for kind, email, _ in mailer.sent] == [("password_reset", "known@example.com")]

    async def test_reset_password_flow(self, csrf_client, mailer, make_user):
        await make_user(email="flow@example.com", password="OldPass123!")
        await csrf_client.post(f"{AUTH_PREFIX}/forgot-password", json={"email": "flow@example.com"})
        token = mailer.last_token("password_reset", "flow@example.com")

        response = await csrf_client.post(
            f"{AUTH_PREFIX}/reset-password", json={"token": token, "password": "NewPass123!"}
        )
        assert response.status_code == status.HTTP_200_OK

        login = await csrf_client.post(
            f"{AUTH_PREFIX}/login", json={"email": "flow@example.com", "password": "NewPass123!"}
        )
        assert login.status_code == status.HTTP_200_OK

    async def test_reset_password_bad_token(self, csrf_client):
        response = await csrf_client.post(
            f"{AUTH_PREFIX}/reset-password", json={"token": "x" * 20, "password": "NewPass123!"}
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT
        assert response.json()["error"]["message"] == "Invalid or expired reset token"


class TestEmailVerificationEndpoints:
    async def test_verify_email(self, csrf_client, issuer, make_user):
        user = await make_user()

        response = await csrf_client.post(
            f"{AUTH_PREFIX}/verify-email", json={"token": issuer.email_verification_token(user)}
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["message"] == "Email verified successfully"
        assert response.json()["user"]["email_verified"] is True

    async def test_verify_email_twice(self, csrf_client, issuer, make_user):
        user = await make_user()
        token = issuer.email_verification_token(user)

        await csrf_client.post(f"{AUTH_PREFIX}/verify-email", json={"token": token})
        response = await csrf_client.post(f"{AUTH_PREFIX}/verify-email", json={"token": token})

        assert response.json() == {"message": "Email is already verified"}

    async def test_verify_email_invalid_token(self, csrf_client):
        response = await csrf_client.post(f"{AUTH_PREFIX}/verify-email", json={"token": "garbage"})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT
        assert response.json()["error"]["details"] == {"token": ["Invalid token format"]}

    async def test_resend_verification(self, csrf_client, mailer, make_user):
        await make_user(email="resend@example.com")

        response = await csrf_client.post(f"{AUTH_PREFIX}/resend-verification", json={"email": "resend@example.com"})

        assert response.status_code == status.HTTP_200_OK
        assert "message" in response.json()

        token = mailer.last_token("verification", "resend@example.com")
        verify = await csrf_client.post(f"{AUTH_PREFIX}/verify-email", json={"token": token})
        assert verify.json()["message"] == "Email verified successfully"


class TestHealth:
    async def test_root_and_health(self, client):
        assert (await client.get("/")).json() == {"message": settings.app_name, "status": "running"}
        assert (await client.get("/health")).json() == {"status": "healthy"}
