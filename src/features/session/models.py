"""Server-side client session records."""

from typing import Any

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from src.database.base import Base, TimestampMixin


class ClientSession(Base, TimestampMixin):
    """Key/value bag for one browser or API client session.

    Holds rate-limit counters and the CSRF token; lives as long as the
    session cookie that carries ``session_id``.
    """

    __tablename__ = "client_sessions"

    session_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
