"""
Anonymous voting endpoints.

The vote endpoint hands the raw JSON body to the VoteGuard, which does its
own validation so that every rejection, including a malformed body, comes
back in the same {error, reason} shape.
"""

import json
from typing import Annotated, Any, Optional

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.deps import get_principal_id_optional, get_vote_guard
from schemas.vote import TimeChallengeResponse, VoteErrorResponse, VoteSuccessResponse
from services.fingerprint import get_client_ip
from services.vote_guard import CallerContext, VoteGuard

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post(
    "",
    response_model=VoteSuccessResponse,
    responses={
        400: {"model": VoteErrorResponse},
        403: {"model": VoteErrorResponse},
        429: {"model": VoteErrorResponse},
        500: {"model": VoteErrorResponse},
    },
)
async def cast_vote(
    request: Request,
    guard: Annotated[VoteGuard, Depends(get_vote_guard)],
    principal_id: Annotated[Optional[str], Depends(get_principal_id_optional)],
) -> JSONResponse:
    """
    Toggle a like on a post.

    Returns the new like state when the vote is admitted. Rejections carry a
    reason and, where possible, a remedy: retryAfter for rate limits,
    requireCaptcha, or requireProofOfWork with a fresh challenge.
    """
    payload: Any
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        payload = None

    caller = CallerContext(client_ip=get_client_ip(request), principal_id=principal_id)
    decision = await guard.admit(payload, caller)

    return JSONResponse(status_code=decision.status_code, content=decision.to_response())


@router.get("/challenge", response_model=TimeChallengeResponse)
async def get_time_challenge(
    guard: Annotated[VoteGuard, Depends(get_vote_guard)],
) -> TimeChallengeResponse:
    """
    Issue a time challenge.

    The client fetches one when the page loads and submits it with the vote;
    votes submitted before the minimum dwell time are rejected.
    """
    challenge = guard.issue_time_challenge()
    return TimeChallengeResponse(
        token=challenge.token,
        issued_at=challenge.issued_at,
        expires_at=challenge.expires_at,
    )
