"""Python client for the vote API."""

from client.fingerprint import collect_fingerprint, new_session_id
from client.secure_vote import (
    SecureVoteClient,
    VoteRefused,
    VoteRejected,
    VoteResult,
)
from services.behavior import ActionLog

__all__ = [
    "ActionLog",
    "SecureVoteClient",
    "VoteRefused",
    "VoteRejected",
    "VoteResult",
    "collect_fingerprint",
    "new_session_id",
]
