import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from src.config.settings import Settings, settings
from src.database.client import close_db, create_tables, get_session, init_db
from src.features.auth.exceptions import GateError
from src.features.auth.jwt_utils import TokenCodec, TokenIssuer
from src.features.auth.mailer import LoggingMailer
from src.features.auth.router import router as auth_router
from src.features.security.client_ip import client_ip_from_request
from src.features.security.csrf import CsrfGuard
from src.features.security.rate_limiter import RateLimiter
from src.features.session.middleware import ClientSessionMiddleware
from src.features.session.store import DatabaseSessionStore, InMemorySessionStore, SessionStore

logger = logging.getLogger(__name__)

# Coarse per-IP request ceiling; per-action throttling lives in RateLimiter
limiter = Limiter(key_func=client_ip_from_request, default_limits=[settings.global_rate_limit])


async def rate_limit_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle global rate limit exceeded errors."""
    return JSONResponse(
        status_code=429,
        content={"success": False, "error": {"code": "RATE_LIMITED", "message": "Rate limit exceeded"}},
    )


async def gate_error_handler(request: Request, exc: GateError) -> JSONResponse:
    """Render gate errors as the JSON error envelope."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=exc.headers)


def build_session_store(config: Settings) -> SessionStore:
    if config.session_backend == "database":
        return DatabaseSessionStore(get_session)
    return InMemorySessionStore()


def configure_security(app: FastAPI, config: Settings) -> None:
    """Attach the token, mail, session, CSRF and rate-limit components to ``app.state``.

    Raises:
        ConfigurationError: If no usable signing secret is configured.

    """
    codec = TokenCodec(config.signing_secret(), algorithm=config.jwt_algorithm)
    store = build_session_store(config)

    app.state.token_codec = codec
    app.state.token_issuer = TokenIssuer(codec, config)
    app.state.mailer = LoggingMailer()
    app.state.session_store = store
    app.state.rate_limiter = RateLimiter(store, rules=config.rate_limits)
    app.state.csrf_guard = CsrfGuard(store)

    logger.info(f"Security components configured (session backend: {config.session_backend})")


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Handle startup and shutdown events."""
    # Startup
    logging.basicConfig(level=settings.log_level)
    await init_db()
    await create_tables()
    yield
    # Shutdown
    await close_db()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

configure_security(app, settings)
app.add_exception_handler(GateError, gate_error_handler)

# Add rate limiting middleware
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    ClientSessionMiddleware,
    cookie_name=settings.session_cookie_name,
    secure=settings.session_cookie_secure,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Router Registration
app.include_router(auth_router, prefix=settings.api_prefix)


@app.get("/")
async def root():
    return {"message": settings.app_name, "status": "running"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
