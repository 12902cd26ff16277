"""Middleware that binds every request to a client session."""

import re
from collections.abc import Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from .store import new_session_id

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{32,128}$")


class ClientSessionMiddleware(BaseHTTPMiddleware):
    """Read the session cookie, or start a new session when it is absent.

    The identifier is stored in ``request.state.session_id`` for the gate's
    dependencies. Unrecognised cookie values are replaced rather than trusted.
    """

    def __init__(self, app, cookie_name: str, secure: bool = False):
        super().__init__(app)
        self.cookie_name = cookie_name
        self.secure = secure

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        session_id = request.cookies.get(self.cookie_name)
        is_new = session_id is None or not SESSION_ID_PATTERN.match(session_id)
        if is_new:
            session_id = new_session_id()

        request.state.session_id = session_id

        response: Response = await call_next(request)

        if is_new:
            response.set_cookie(
                self.cookie_name,
                session_id,
                httponly=True,
                samesite="lax",
                secure=self.secure,
            )
        return response
