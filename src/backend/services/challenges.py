"""
Challenge layers: honeypot, proof of work and time challenges.

Challenges are self-verifying: the server recomputes signatures instead of
storing issued challenges. Single use is enforced separately by the
ChallengeLedger, which remembers redeemed challenges until they would have
expired anyway.
"""

import hashlib
import secrets
from typing import Callable, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field

from core.exceptions import ProofOfWorkTooDifficult
from core.security import sign, signatures_match
from services.state_store import StateStore, now_ms

logger = structlog.get_logger(__name__)

POW_MAX_ATTEMPTS = 1_000_000
SIGNATURE_LENGTH = 32


# =============================================================================
# Honeypot
# =============================================================================


def validate_honeypot(value: str) -> bool:
    """
    A honeypot field is rendered invisible and out of tab order, so only
    automated form fillers ever put something in it.
    """
    return value == ""


# =============================================================================
# Proof of Work
# =============================================================================


class ProofOfWorkChallenge(BaseModel):
    """Hash-prefix puzzle handed to a client flagged as bot-like."""

    model_config = ConfigDict(populate_by_name=True)

    challenge: str
    expected_prefix: str = Field(..., alias="expectedPrefix")
    difficulty: int
    expires_at: int = Field(..., alias="expiresAt")


def verify_proof_of_work(challenge: str, solution: str, required_prefix: str) -> bool:
    """True iff sha256(challenge + solution) starts with required_prefix."""
    digest = hashlib.sha256(f"{challenge}{solution}".encode()).hexdigest()
    return digest.startswith(required_prefix)


def solve_proof_of_work(challenge: str, required_prefix: str, max_attempts: int = POW_MAX_ATTEMPTS) -> str:
    """
    Brute-force a nonce for challenge, counting up from 0.

    Raises:
        ProofOfWorkTooDifficult: no solution within max_attempts
    """
    for nonce in range(max_attempts):
        solution = str(nonce)
        if verify_proof_of_work(challenge, solution, required_prefix):
            return solution
    raise ProofOfWorkTooDifficult(max_attempts)


class ProofOfWorkIssuer:
    """
    Issues signed proof-of-work challenges.

    Challenge format: "<nonce>.<issued_ms>.<difficulty>.<signature>". The
    difficulty a solution must meet is read from the signed challenge, never
    from the client's claimed prefix.
    """

    def __init__(self, secret: str, ttl_ms: int, clock: Callable[[], int] = now_ms):
        self._secret = secret
        self.ttl_ms = ttl_ms
        self._clock = clock

    def generate(self, difficulty: int) -> ProofOfWorkChallenge:
        issued_at = self._clock()
        body = f"{secrets.token_hex(8)}.{issued_at}.{difficulty}"
        challenge = f"{body}.{sign(body, self._secret)[:SIGNATURE_LENGTH]}"
        return ProofOfWorkChallenge(
            challenge=challenge,
            expected_prefix=required_prefix(difficulty),
            difficulty=difficulty,
            expires_at=issued_at + self.ttl_ms,
        )

    def authenticate(self, challenge: str) -> Optional[int]:
        """Return the signed difficulty of a genuine, unexpired challenge, else None."""
        parts = challenge.split(".")
        if len(parts) != 4:
            return None
        nonce, issued_raw, difficulty_raw, signature = parts
        body = f"{nonce}.{issued_raw}.{difficulty_raw}"
        if not signatures_match(sign(body, self._secret)[:SIGNATURE_LENGTH], signature):
            return None
        try:
            issued_at = int(issued_raw)
            difficulty = int(difficulty_raw)
        except ValueError:
            return None
        if self._clock() > issued_at + self.ttl_ms:
            logger.debug("pow_challenge_expired", issued_at=issued_at)
            return None
        return difficulty

    def verify(self, challenge: str, solution: str) -> bool:
        """Authenticate challenge and check the solution meets its difficulty."""
        difficulty = self.authenticate(challenge)
        if difficulty is None:
            return False
        return verify_proof_of_work(challenge, solution, required_prefix(difficulty))


def required_prefix(difficulty: int) -> str:
    return "0" * difficulty


# =============================================================================
# Time Challenge
# =============================================================================


class TimeChallenge(BaseModel):
    """Signed issuance timestamp the client must hold for a minimum dwell time."""

    model_config = ConfigDict(populate_by_name=True)

    token: str
    issued_at: int = Field(..., alias="issuedAt")
    expires_at: int = Field(..., alias="expiresAt")


class TimeChallengeIssuer:
    """
    Issues and verifies time challenges.

    A token is HMAC(secret, "issued_at:expires_at"), so nobody without the
    secret can mint one for an arbitrary window. Redemption is rejected when
    it comes before the minimum dwell time or after expiry.
    """

    def __init__(
        self,
        secret: str,
        ttl_ms: int = 30_000,
        min_dwell_ms: int = 2_000,
        clock: Callable[[], int] = now_ms,
    ):
        self._secret = secret
        self.ttl_ms = ttl_ms
        self.min_dwell_ms = min_dwell_ms
        self._clock = clock

    def _token(self, issued_at: int, expires_at: int) -> str:
        return sign(f"{issued_at}:{expires_at}", self._secret)

    def generate(self) -> TimeChallenge:
        issued_at = self._clock()
        expires_at = issued_at + self.ttl_ms
        return TimeChallenge(token=self._token(issued_at, expires_at), issued_at=issued_at, expires_at=expires_at)

    def verify(self, token: str, issued_at: int, expires_at: int, submitted_at: int) -> bool:
        if not signatures_match(self._token(issued_at, expires_at), token):
            logger.debug("time_challenge_forged")
            return False

        now = self._clock()
        if now > expires_at:
            logger.debug("time_challenge_expired", expired_ms_ago=now - expires_at)
            return False

        # A client clock running ahead must not buy extra dwell time
        elapsed = min(submitted_at, now) - issued_at
        if elapsed < self.min_dwell_ms:
            logger.debug("time_challenge_too_fast", elapsed_ms=elapsed)
            return False

        return True


# =============================================================================
# Replay protection
# =============================================================================


class ChallengeLedger:
    """Single-use tracking for redeemed challenges."""

    def __init__(self, store: StateStore):
        self.store = store

    async def consume(self, kind: str, identifier: str, ttl_ms: int) -> bool:
        """
        Mark a challenge as redeemed.

        Returns False if it was already redeemed within ttl_ms.
        """
        digest = hashlib.sha256(identifier.encode()).hexdigest()[:32]
        return await self.store.claim(f"{StateStore.PREFIX_CONSUMED}{kind}:{digest}", max(ttl_ms, 1))
