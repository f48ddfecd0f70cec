"""FastAPI dependencies for authentication and service access.

The JWTAuthMiddleware (registered in main.py) verifies the access token and
stores the decoded user in ``request.state.user``:

    {
        "user_id":    str,   # UUID
        "username":   str,
        "email":      str,
        "token_type": str,   # "ACCESS"
        "scope":      str,
    }
"""

from typing import Dict, Any

from fastapi import HTTPException, Request, status
import logging

from intake.agents.orchestrator import IntakeOrchestrator

logger = logging.getLogger(__name__)

_orchestrator: IntakeOrchestrator = None


async def get_current_user(request: Request) -> Dict[str, Any]:
    """Return the authenticated user attached by JWTAuthMiddleware.

    Raises:
        HTTP 401 if the middleware did not populate request.state.user
    """
    user: Dict[str, Any] | None = getattr(request.state, "user", None)

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated. Provide a valid access token.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not user.get("user_id"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User identity missing from token.",
        )

    logger.debug("Authenticated user: %s (%s)", user.get("username"), user.get("user_id"))
    return user


def get_orchestrator() -> IntakeOrchestrator:
    """Get or create the shared IntakeOrchestrator."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = IntakeOrchestrator()
    return _orchestrator
