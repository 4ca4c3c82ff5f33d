"""
Token Vault API.

Routes:
- /api/token-management -> encrypted credential lifecycle (bearer auth)
- /health               -> liveness check (public)
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api.endpoints import token_management
from .core.config import Settings, settings
from .core.database import create_schema
from .core.errors import RecordNotFoundError, TokenVaultError
from .core.logging import get_logger, setup_logging
from .dependencies import build_container
from .middleware.auth import BearerAuthMiddleware
from .middleware.request_context import RequestContextMiddleware


setup_logging(level=settings.LOG_LEVEL, format_style=settings.LOG_FORMAT)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app_settings: Settings = app.state.settings
    services = build_container(app_settings)
    app.state.services = services
    if app_settings.DATABASE_URL.startswith("sqlite"):
        await create_schema(services.db_engine)

    health = services.crypto.health_status()
    logger.info(
        "Token Vault API starting",
        extra={"key_id": health.key_id, "key_source": health.key_source},
    )
    yield

    logger.info("Shutting down...")
    await services.db_engine.dispose()


async def record_not_found_handler(request: Request, exc: RecordNotFoundError):
    return JSONResponse(status_code=404, content={"success": False, "error": "Account not found"})


async def token_vault_error_handler(request: Request, exc: TokenVaultError):
    # Crypto and storage details stay in the logs
    logger.error(
        "Token management request failed",
        extra={"path": request.url.path, "error_type": type(exc).__name__},
    )
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


async def health():
    return {"status": "healthy"}


def create_app(app_settings: Settings = settings) -> FastAPI:
    app = FastAPI(
        title=app_settings.PROJECT_NAME,
        description="Encrypted OAuth credential storage and rotation",
        lifespan=lifespan,
    )
    app.state.settings = app_settings

    # Starlette runs the last added middleware first
    app.add_middleware(BearerAuthMiddleware, tokens=app_settings.API_TOKENS)
    app.add_middleware(RequestContextMiddleware)

    app.include_router(
        token_management.router,
        prefix=f"{app_settings.API_PREFIX}/token-management",
    )
    app.add_exception_handler(RecordNotFoundError, record_not_found_handler)
    app.add_exception_handler(TokenVaultError, token_vault_error_handler)
    app.add_api_route("/health", health, methods=["GET"])
    return app


app = create_app()
