"""
Shared dependencies for API endpoints.

Includes:
- The application's VoteGuard (built at startup, see core.events)
- Optional caller identity from a Bearer JWT
"""

from typing import Annotated

import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from core.security import decode_token
from services.vote_guard import VoteGuard

logger = structlog.get_logger(__name__)

security_optional = HTTPBearer(auto_error=False)


def get_vote_guard(request: Request) -> VoteGuard:
    """Return the VoteGuard created by the startup handler."""
    guard = getattr(request.app.state, "vote_guard", None)
    if guard is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Voting is not available yet",
        )
    return guard


async def get_principal_id_optional(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security_optional)],
) -> str | None:
    """
    Optionally extract the caller's identity from a JWT.

    Returns None if no token is provided or the token is invalid; the caller
    is then treated as anonymous. Does not raise.
    """
    if credentials is None:
        return None

    payload = decode_token(credentials.credentials)
    if payload is None:
        logger.info("invalid_identity_token_ignored")
        return None

    subject = payload.get("sub")
    return str(subject) if subject else None
