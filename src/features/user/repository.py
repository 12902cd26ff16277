"""User lookups consumed by the authentication gate and validators."""

from typing import Protocol

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import User


class UserRepository(Protocol):
    """Read access to user records."""

    async def find_by_id(self, user_id: int) -> User | None: ...

    async def find_by_email(self, email: str) -> User | None: ...


class SqlAlchemyUserRepository:
    """User repository backed by an async SQLAlchemy session."""

    # Collections and columns that the `unique` validation rule may query
    UNIQUE_COLUMNS = {
        "users": {"username": User.username, "email": User.email},
    }

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_by_id(self, user_id: int) -> User | None:
        stmt = select(User).where(User.id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_email(self, email: str) -> User | None:
        stmt = select(User).where(User.email == email)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def exists(self, collection: str, column: str, value: object, exclude_id: int | None = None) -> bool:
        """Check whether another record already holds `value` in `collection.column`.

        Raises:
            ValueError: If the collection/column pair is not allowed for lookups.

        """
        try:
            target = self.UNIQUE_COLUMNS[collection][column]
        except KeyError:
            raise ValueError(f"Uniqueness lookups are not supported for {collection}.{column}") from None

        stmt = select(func.count()).select_from(User).where(target == value)
        if exclude_id is not None:
            stmt = stmt.where(User.id != exclude_id)
        result = await self.session.execute(stmt)
        return (result.scalar_one() or 0) > 0

    async def add(self, user: User) -> User:
        self.session.add(user)
        await self.session.flush()
        await self.session.refresh(user)
        return user
