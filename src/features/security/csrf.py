"""Anti-forgery tokens for state-changing requests."""

import hmac
import json
import logging
import secrets

from fastapi import Request

from src.features.auth.exceptions import AuthorizationError
from src.features.session.store import SessionStore

logger = logging.getLogger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})

CSRF_HEADER = "X-CSRF-Token"
CSRF_BODY_FIELD = "_token"


class CsrfGuard:
    """Issue one token per session and require it on state-changing methods."""

    SESSION_KEY = "csrf_token"

    def __init__(self, store: SessionStore):
        self.store = store

    async def issue(self, session_id: str) -> str:
        """Return the session's token, generating it on first use."""
        token = await self.store.get(session_id, self.SESSION_KEY)
        if not token:
            token = secrets.token_hex(32)
            await self.store.set(session_id, self.SESSION_KEY, token)
        return token

    async def validate(self, session_id: str, method: str, submitted: str | None) -> None:
        """Check a submitted token against the session's token.

        Raises:
            AuthorizationError: For unsafe methods when the token is missing,
                the session has none, or they differ.

        """
        if method.upper() in SAFE_METHODS:
            return

        expected = await self.store.get(session_id, self.SESSION_KEY)
        if not submitted or not expected or not hmac.compare_digest(str(expected).encode(), str(submitted).encode()):
            logger.warning(f"CSRF token mismatch on {method.upper()} for session {session_id[:8]}...")
            raise AuthorizationError("CSRF token mismatch")

    async def validate_request(self, request: Request, session_id: str) -> None:
        """Validate using the ``_token`` body field, falling back to the ``X-CSRF-Token`` header."""
        if request.method.upper() in SAFE_METHODS:
            return
        submitted = await extract_submitted_token(request)
        await self.validate(session_id, request.method, submitted)


async def extract_submitted_token(request: Request) -> str | None:
    token = None
    body = await request.body()
    if body:
        try:
            payload = json.loads(body)
        except ValueError:
            payload = None
        if isinstance(payload, dict) and isinstance(payload.get(CSRF_BODY_FIELD), str):
            token = payload[CSRF_BODY_FIELD]
    return token or request.headers.get(CSRF_HEADER)
