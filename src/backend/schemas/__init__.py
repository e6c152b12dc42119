"""Schemas module initialization."""

from schemas.vote import (
    ProofOfWorkSolution,
    RateLimitInfo,
    TimeChallengeResponse,
    TimeChallengeSubmission,
    VoteErrorResponse,
    VoteRequest,
    VoteSuccessResponse,
)

__all__ = [
    "ProofOfWorkSolution",
    "RateLimitInfo",
    "TimeChallengeResponse",
    "TimeChallengeSubmission",
    "VoteErrorResponse",
    "VoteRequest",
    "VoteSuccessResponse",
]
