import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from . import models  # noqa: F401 - Main models
from . import models_tradieconnect  # noqa: F401 - TradieConnect models
from . import models_webhooks  # noqa: F401 - Webhook models
from .config import DATABASE_URL, TRADIECONNECT_AUTH_URL, TRADIECONNECT_DEFAULT_REFERER
from .database import Base, build_engine, build_session_factory
from .domain.integrations.tradieconnect.crypto import CredentialVault
from .domain.integrations.tradieconnect.exceptions import (
    DecryptionError,
    ReconnectRequired,
    RemoteRequestError,
    RemoteUnauthorized,
    RemoteUnavailable,
    TradieConnectNotConfigured,
    TranslationInvariantViolation,
)
from .domain.integrations.tradieconnect.router import callback_router as tradieconnect_callback_router
from .domain.integrations.tradieconnect.router import router as tradieconnect_router
from .domain.webhooks.router import router as webhooks_router
from .queue import ArqDeliveryQueue

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


def _reconnect_auth_url() -> Optional[str]:
    try:
        referer = CredentialVault().encrypt_url_parameter(TRADIECONNECT_DEFAULT_REFERER)
    except TradieConnectNotConfigured:
        return None
    return f"{TRADIECONNECT_AUTH_URL.rstrip('/')}/?r={referer}"


def register_exception_handlers(app: FastAPI) -> None:
    """Map TradieConnect failures onto HTTP responses"""

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Validation error for {request.url.path}: {exc.errors()}")
        return JSONResponse(status_code=422, content={"detail": exc.errors()})

    @app.exception_handler(ReconnectRequired)
    async def reconnect_required_handler(request: Request, exc: ReconnectRequired):
        logger.warning(f"🔌 TradieConnect reconnect required for {request.url.path}: {exc.reason}")
        return JSONResponse(
            status_code=409,
            content={
                "error": "reconnect_required",
                "detail": exc.reason,
                "action": "reconnect",
                "auth_url": _reconnect_auth_url(),
            },
        )

    @app.exception_handler(RemoteUnauthorized)
    async def remote_unauthorized_handler(request: Request, exc: RemoteUnauthorized):
        # Only reachable outside the session manager, which converts 401s to reconnects
        return JSONResponse(
            status_code=409,
            content={"error": "reconnect_required", "detail": str(exc), "action": "reconnect"},
        )

    @app.exception_handler(RemoteUnavailable)
    async def remote_unavailable_handler(request: Request, exc: RemoteUnavailable):
        logger.warning(f"⚠️ TradieConnect unavailable for {request.url.path}: {exc}")
        return JSONResponse(
            status_code=503,
            content={"error": "tradieconnect_unavailable", "detail": "TradieConnect is temporarily unavailable"},
        )

    @app.exception_handler(RemoteRequestError)
    async def remote_request_error_handler(request: Request, exc: RemoteRequestError):
        logger.error(f"❌ TradieConnect rejected request for {request.url.path} ({exc.status_code}): {exc.detail[:200]}")
        return JSONResponse(
            status_code=502,
            content={"error": "tradieconnect_error", "detail": str(exc), "upstream_status": exc.status_code},
        )

    @app.exception_handler(TranslationInvariantViolation)
    async def translation_error_handler(request: Request, exc: TranslationInvariantViolation):
        return JSONResponse(
            status_code=422,
            content={"error": "unknown_questions", "detail": str(exc), "question_ids": exc.question_ids},
        )

    @app.exception_handler(DecryptionError)
    async def decryption_error_handler(request: Request, exc: DecryptionError):
        logger.error(f"❌ Decryption failed for {request.url.path}: {exc}")
        return JSONResponse(status_code=400, content={"error": "decryption_failed", "detail": str(exc)})

    @app.exception_handler(TradieConnectNotConfigured)
    async def not_configured_handler(request: Request, exc: TradieConnectNotConfigured):
        logger.error(f"❌ TradieConnect is not configured: {exc}")
        return JSONResponse(
            status_code=500,
            content={"error": "tradieconnect_not_configured", "detail": "TradieConnect integration is not configured"},
        )


def create_app(database_url: Optional[str] = None, session_factory: Optional[sessionmaker] = None) -> FastAPI:
    """Build the API. Tests pass their own session factory."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Application starting up...")
        engine = None
        if session_factory is None:
            engine = build_engine(database_url or DATABASE_URL)
            app.state.session_factory = build_session_factory(engine)
            try:
                Base.metadata.create_all(bind=engine, checkfirst=True)
                logger.info("Database tables created successfully")
            except Exception as e:
                error_msg = str(e)
                if "already exists" in error_msg or "duplicate key" in error_msg:
                    logger.info("Database tables already exist (created by another worker)")
                else:
                    logger.error(f"Failed to create database tables: {e}")
        app.state.webhook_queue = ArqDeliveryQueue()

        yield

        logger.info("Application shutting down...")
        await app.state.webhook_queue.close()
        if engine is not None:
            engine.dispose()

    app = FastAPI(title="TradieApp API", version="1.0.0", lifespan=lifespan)
    if session_factory is not None:
        app.state.session_factory = session_factory

    register_exception_handlers(app)

    app.include_router(tradieconnect_router)
    app.include_router(tradieconnect_callback_router)
    app.include_router(webhooks_router)

    @app.get("/health")
    def health():
        return {"status": "healthy"}

    return app


app = create_app()
