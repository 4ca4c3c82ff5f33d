"""
Bearer token authentication.

Every request except the liveness check must include:
    Authorization: Bearer <token>

The token resolves to a user id through settings.API_TOKENS
({token: user_id}); the user id is stored in request.state.user_id.
"""
from typing import Mapping, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from ..core.crypto import CryptoEngine
from ..core.logging import get_logger

logger = get_logger(__name__)

PUBLIC_PATHS = frozenset({"/health"})


class BearerAuthMiddleware(BaseHTTPMiddleware):
    """Rejects requests without a known bearer token with 401."""

    def __init__(self, app, tokens: Optional[Mapping[str, str]] = None):
        super().__init__(app)
        self.tokens = dict(tokens or {})

    async def dispatch(self, request: Request, call_next):
        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        user_id = self._resolve(request.headers.get("authorization", ""))
        if user_id is None:
            logger.warning(
                "Rejected unauthenticated request",
                extra={"path": request.url.path, "method": request.method},
            )
            return JSONResponse(
                status_code=401,
                content={"success": False, "error": "Unauthorized"},
                headers={"WWW-Authenticate": "Bearer"},
            )

        request.state.user_id = user_id
        return await call_next(request)

    def _resolve(self, auth_header: str) -> Optional[str]:
        if not auth_header.lower().startswith("bearer "):
            return None
        presented = auth_header.split(" ", 1)[1].strip()
        if not presented:
            return None

        # Compare against every configured token so timing does not reveal a match
        matched = None
        for token, user_id in self.tokens.items():
            if CryptoEngine.secure_compare(presented, token):
                matched = user_id
        return matched
