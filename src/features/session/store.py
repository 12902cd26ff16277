"""Session stores keyed by an explicit client-session identifier."""

import copy
import logging
import secrets
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from .models import ClientSession

logger = logging.getLogger(__name__)


def new_session_id() -> str:
    """Generate an unguessable session identifier."""
    return secrets.token_urlsafe(32)


class SessionStore(Protocol):
    """Mutable per-session storage shared across requests from one client.

    Reads and writes are independent calls; a read-modify-write by the caller
    is not isolated from a concurrent request carrying the same session id.
    """

    async def get(self, session_id: str, key: str) -> Any | None: ...

    async def set(self, session_id: str, key: str, value: Any) -> None: ...


class InMemorySessionStore:
    """Process-local session store.

    Values are deep-copied on the way in and out so callers cannot mutate
    stored state without calling ``set``, matching an external store.
    """

    def __init__(self):
        self._sessions: dict[str, dict[str, Any]] = {}

    async def get(self, session_id: str, key: str) -> Any | None:
        value = self._sessions.get(session_id, {}).get(key)
        return copy.deepcopy(value)

    async def set(self, session_id: str, key: str, value: Any) -> None:
        self._sessions.setdefault(session_id, {})[key] = copy.deepcopy(value)

    def clear(self) -> None:
        self._sessions.clear()


class DatabaseSessionStore:
    """Session store persisted in the ``client_sessions`` table.

    Args:
        session_factory: Callable returning an async context manager that yields
            an ``AsyncSession`` and commits on exit (``src.database.client.get_session``).

    """

    def __init__(self, session_factory: Callable[[], AbstractAsyncContextManager[AsyncSession]]):
        self.session_factory = session_factory

    async def get(self, session_id: str, key: str) -> Any | None:
        async with self.session_factory() as db:
            record = await db.get(ClientSession, session_id)
            if record is None:
                return None
            return record.data.get(key)

    async def set(self, session_id: str, key: str, value: Any) -> None:
        async with self.session_factory() as db:
            record = await db.get(ClientSession, session_id)

            if record is None:
                record = ClientSession(session_id=session_id, data={})
                db.add(record)
                logger.debug(f"Created client session {session_id[:8]}...")

            # Reassign so SQLAlchemy detects the change on the JSON column
            record.data = {**record.data, key: value}
