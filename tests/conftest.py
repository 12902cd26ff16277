"""Test configuration and fixtures.

Each test gets:
1. A fresh in-memory SQLite database (aiosqlite) with the schema created
2. A fresh session store, rate limiter and CSRF guard on ``app.state``
3. A controllable clock shared by the token codec and the rate limiter
"""

from collections.abc import AsyncGenerator
from pathlib import Path

from dotenv import load_dotenv

# Load test environment variables before the settings object is created
test_env_path = Path(__file__).parent.parent / ".env.test"
load_dotenv(test_env_path, override=True)

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from src.config.settings import settings  # noqa: E402
from src.database.base import Base  # noqa: E402
from src.database.dependencies import get_db_session  # noqa: E402
from src.features.auth.jwt_utils import TokenCodec, TokenIssuer  # noqa: E402
from src.features.security.csrf import CSRF_HEADER, CsrfGuard  # noqa: E402
from src.features.security.rate_limiter import RateLimiter  # noqa: E402
from src.features.session.models import ClientSession  # noqa: E402, F401
from src.features.session.store import InMemorySessionStore  # noqa: E402
from src.features.user.models import User  # noqa: E402
from src.main import app, limiter  # noqa: E402

AUTH_PREFIX = f"{settings.api_prefix}/auth"
START_TIME = 1_700_000_000


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingMailer:
    """Mailer that keeps every message instead of sending it."""

    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []
        self.fail = False

    async def send_email_verification(self, user: User, token: str) -> bool:
        return self._record("verification", user, token)

    async def send_password_reset(self, user: User, token: str) -> bool:
        return self._record("password_reset", user, token)

    def _record(self, kind: str, user: User, token: str) -> bool:
        if self.fail:
            return False
        self.sent.append((kind, user.email, token))
        return True

    def last_token(self, kind: str, email: str) -> str:
        return [token for k, e, token in self.sent if k == kind and e == email][-1]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


# Database Setup - Function Scope (fresh in-memory database per test)


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine]:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession]:
    async with session_factory() as async_session:
        yield async_session


# FastAPI Client & Dependency Overrides


@pytest_asyncio.fixture(autouse=True)
async def override_get_db_session(session: AsyncSession):
    """Override the database session dependency with the test session."""

    async def _get_test_session():
        yield session

    app.dependency_overrides[get_db_session] = _get_test_session
    yield
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def security_components(clock: FakeClock, mailer: RecordingMailer):
    """Install fresh session-backed components on ``app.state`` for each test."""
    previous = {
        name: getattr(app.state, name)
        for name in ("token_codec", "token_issuer", "mailer", "session_store", "rate_limiter", "csrf_guard")
    }

    store = InMemorySessionStore()
    codec = TokenCodec(settings.signing_secret(), algorithm=settings.jwt_algorithm, clock=clock)

    app.state.token_codec = codec
    app.state.token_issuer = TokenIssuer(codec, settings)
    app.state.mailer = mailer
    app.state.session_store = store
    app.state.rate_limiter = RateLimiter(store, rules=settings.rate_limits, clock=clock)
    app.state.csrf_guard = CsrfGuard(store)
    limiter.reset()

    yield app.state

    for name, value in previous.items():
        setattr(app.state, name, value)


@pytest.fixture
def codec(security_components) -> TokenCodec:
    return security_components.token_codec


@pytest.fixture
def issuer(security_components) -> TokenIssuer:
    return security_components.token_issuer


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP test client.

    Cookies persist across requests, so the client keeps one session.
    """
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest_asyncio.fixture
async def csrf_client(client: AsyncClient) -> AsyncClient:
    """Client whose session already holds a CSRF token, sent on every request."""
    response = await client.get(f"{AUTH_PREFIX}/csrf-token")
    client.headers[CSRF_HEADER] = response.json()["csrf_token"]
    return client


# Test User Factories


@pytest_asyncio.fixture
async def make_user(session: AsyncSession):
    """Factory fixture to create test users with custom fields.

    Usage:
        user = await make_user()                          # defaults
        verified = await make_user(email_verified=True)   # verified account
    """
    counter = 0  # Counter for unique email/username generation

    async def _factory(
        email=None,
        username=None,
        password="TestPass123!",
        email_verified=False,
        **kwargs,
    ) -> User:
        nonlocal counter
        counter += 1

        if email is None:
            email = f"testuser{counter}@example.com"
        if username is None:
            username = f"testuser{counter}"

        user = User(
            email=email,
            username=username,
            hashed_password=User.hash_password(password),
            email_verified=email_verified,
            **kwargs,
        )

        session.add(user)
        await session.flush()
        await session.refresh(user)
        return user

    yield _factory


@pytest.fixture
def bearer(issuer: TokenIssuer):
    """Build an Authorization header carrying an access token for ``user``."""

    def _headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {issuer.access_token(user)}"}

    return _headers
