from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine

from .connectors import build_default_registry
from .core.config import Settings
from .core.crypto import CryptoEngine, load_default_engine
from .core.database import create_engine, create_session_factory
from .core.policy import RotationPolicy
from .repositories import AccountRepository
from .services import CredentialLifecycleManager


@dataclass
class ServiceContainer:
    db_engine: AsyncEngine
    crypto: CryptoEngine
    manager: CredentialLifecycleManager


def build_container(app_settings: Settings) -> ServiceContainer:
    db_engine = create_engine(app_settings.DATABASE_URL, echo=app_settings.DEBUG)
    crypto = load_default_engine(app_settings)
    repository = AccountRepository(
        create_session_factory(db_engine), timeout=app_settings.STORE_TIMEOUT_SECONDS
    )
    manager = CredentialLifecycleManager(
        crypto,
        repository,
        build_default_registry(app_settings),
        policy=RotationPolicy.from_settings(app_settings),
        refresh_timeout=app_settings.REFRESH_TIMEOUT_SECONDS,
    )
    return ServiceContainer(db_engine=db_engine, crypto=crypto, manager=manager)


def get_container(request: Request) -> ServiceContainer:
    """Services built from the settings the app was created with.

    The lifespan normally builds them at startup; without one (e.g. a bare
    ASGI transport) they are built on first use.
    """
    state = request.app.state
    container = getattr(state, "services", None)
    if container is None:
        container = build_container(state.settings)
        state.services = container
    return container


def get_crypto_engine(request: Request) -> CryptoEngine:
    return get_container(request).crypto


def get_lifecycle_manager(request: Request) -> CredentialLifecycleManager:
    return get_container(request).manager


def get_current_user_id(request: Request) -> str:
    """Caller identity resolved by BearerAuthMiddleware."""
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(status_code=401, detail="unauthorized")
    return user_id
