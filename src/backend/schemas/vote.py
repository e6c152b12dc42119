"""
Vote submission schemas.

The wire format is camelCase (browser client); Python attributes are
snake_case. Responses are dumped with by_alias=True and exclude_none=True.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from services.behavior import ACTION_LOG_CAPACITY, ActionEvent
from services.fingerprint import DeviceFingerprint


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProofOfWorkSolution(CamelModel):
    """Client's answer to a proof-of-work challenge."""

    challenge: str = Field(..., min_length=1, max_length=256)
    solution: str = Field(..., min_length=1, max_length=32)
    # Informational only; the required prefix comes from the signed challenge
    expected_prefix: Optional[str] = None


class TimeChallengeSubmission(CamelModel):
    """A previously issued time challenge, handed back on submission."""

    token: str = Field(..., min_length=1, max_length=128)
    issued_at: int
    expires_at: int


class VoteRequest(CamelModel):
    """Vote (like toggle) request with abuse-prevention signals attached."""

    post_id: str = Field(..., min_length=1, max_length=64)
    session_id: str = Field(..., min_length=1, max_length=128)
    fingerprint: DeviceFingerprint

    captcha_token: Optional[str] = Field(None, max_length=4096)
    proof_of_work: Optional[ProofOfWorkSolution] = None
    honeypot: str = ""
    time_challenge: Optional[TimeChallengeSubmission] = None
    timestamp: Optional[int] = None  # client submission time, epoch ms
    action_log: Optional[list[ActionEvent]] = None

    @field_validator("honeypot", mode="before")
    @classmethod
    def empty_honeypot(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("action_log")
    @classmethod
    def keep_recent_actions(cls, v: Optional[list[ActionEvent]]) -> Optional[list[ActionEvent]]:
        """Only the most recent actions are analysed."""
        if v is None:
            return v
        return v[-ACTION_LOG_CAPACITY:]


class RateLimitInfo(CamelModel):
    remaining: int
    reset_time: int  # epoch ms


class VoteSuccessResponse(CamelModel):
    """Response after an admitted vote."""

    success: bool = True
    liked: bool
    rate_limit: Optional[RateLimitInfo] = None


class VoteErrorResponse(CamelModel):
    """Rejection with a machine-readable reason and, where possible, a remedy."""

    error: str
    reason: str
    require_captcha: Optional[bool] = None
    require_proof_of_work: Optional[bool] = None
    challenge: Optional[str] = None
    expected_prefix: Optional[str] = None
    challenge_expires_at: Optional[int] = None
    retry_after: Optional[int] = None  # epoch ms


class TimeChallengeResponse(CamelModel):
    token: str
    issued_at: int
    expires_at: int
