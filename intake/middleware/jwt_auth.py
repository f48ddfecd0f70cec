"""JWT Authentication Middleware for the intake service.

Reads the access token from the ``access_token`` cookie or an
``Authorization: Bearer`` header, verifies it with the RS256 public key and
attaches the user to ``request.state.user`` for downstream dependencies.

JWT claims (from the auth service):
  - sub        : username
  - userId     : UUID string
  - email      : user email
  - tokenType  : "ACCESS"
  - iss        : issuer configured as ``jwt_issuer``
"""

import logging
from typing import Optional, Dict, Any

import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from intake.config.settings import settings

logger = logging.getLogger(__name__)

# Routes that bypass JWT authentication
_PUBLIC_PREFIXES = ("/health", "/docs", "/openapi.json", "/redoc")


def _is_public_route(path: str) -> bool:
    return path == "/" or any(path == p or path.startswith(p) for p in _PUBLIC_PREFIXES)


def _load_public_key() -> Optional[str]:
    """Read the RSA public key PEM from disk."""
    try:
        with open(settings.jwt_public_key_path, "r") as fh:
            key = fh.read().strip()
        logger.info("JWT public key loaded from %s", settings.jwt_public_key_path)
        return key
    except FileNotFoundError:
        logger.warning(
            "JWT public key not found at '%s'. Set jwt_public_key_path in your .env file.",
            settings.jwt_public_key_path,
        )
        return None
    except OSError as exc:
        logger.error("Failed to load JWT public key: %s", exc)
        return None


def decode_jwt(token: str, public_key: str) -> Optional[Dict[str, Any]]:
    """Decode and verify a JWT.

    Returns the payload dict, or None if the token is invalid or expired.
    """
    try:
        return jwt.decode(
            token,
            public_key,
            algorithms=[settings.jwt_algorithm],
            issuer=settings.jwt_issuer,
            options={"verify_aud": False, "verify_exp": True, "verify_iss": True},
        )
    except ExpiredSignatureError:
        logger.debug("JWT token has expired")
        return None
    except InvalidTokenError as exc:
        logger.debug("Invalid JWT token: %s", exc)
        return None


def _payload_to_user(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "user_id": payload.get("userId", ""),
        "username": payload.get("sub", ""),
        "email": payload.get("email", ""),
        "token_type": payload.get("tokenType", ""),
        "scope": payload.get("scope", ""),
    }


def _extract_token(request: Request) -> Optional[str]:
    token = request.cookies.get(settings.jwt_access_cookie_name)
    if token:
        return token

    authorization = request.headers.get("Authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return None


class JWTAuthMiddleware(BaseHTTPMiddleware):
    """Starlette middleware that enforces JWT authentication on non-public routes."""

    def __init__(self, app, public_key: Optional[str] = None) -> None:
        super().__init__(app)
        self._public_key: Optional[str] = public_key or _load_public_key()

    def _ensure_key(self) -> bool:
        """Lazy-reload the public key if it wasn't available at boot."""
        if not self._public_key:
            self._public_key = _load_public_key()
        return self._public_key is not None

    @staticmethod
    def _unauthorized(detail: str) -> JSONResponse:
        return JSONResponse(status_code=401, content={"detail": detail, "error": "UNAUTHORIZED"})

    async def dispatch(self, request: Request, call_next):
        # CORS preflight carries no credentials
        if request.method == "OPTIONS" or _is_public_route(request.url.path):
            return await call_next(request)

        if not self._ensure_key():
            logger.error(
                "JWT public key unavailable, cannot authenticate request to %s",
                request.url.path,
            )
            return JSONResponse(
                status_code=503,
                content={
                    "detail": "Authentication service unavailable (public key not configured).",
                    "error": "SERVICE_UNAVAILABLE",
                },
            )

        token = _extract_token(request)
        payload = decode_jwt(token, self._public_key) if token else None
        if not payload or payload.get("tokenType") != "ACCESS":
            logger.warning("Unauthenticated request: %s %s", request.method, request.url.path)
            return self._unauthorized("Authentication required. Provide a valid access token.")

        request.state.user = _payload_to_user(payload)
        return await call_next(request)
