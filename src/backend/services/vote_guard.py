"""
Vote admission pipeline.

Every vote passes through the same ordered stages and stops at the first
rejection:

    1. request validation            400
    2. honeypot                      fake 200, nothing stored
    3. IP rate limit                 429
    4. session rate limit            429
    5. fingerprint reuse/reputation  403 requireCaptcha
    6. behavior analysis             403 requireProofOfWork + challenge
    7. time challenge                403
    8. CAPTCHA                       403
    9. post-level anomaly            403 requireCaptcha
       redeem PoW and time challenge 403 on replay
   10. atomic like toggle            500 on storage failure
   11. behavior history (best effort)
   12. success response

Stages return decisions. Infrastructure failures raise StorageError (or time
out) and are mapped to a generic 500 once, in admit().
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from core.config import Settings
from core.exceptions import StorageError
from core.security import hash_ip, partial_ip
from repositories.provider import LikeRepositoryProtocol
from schemas.vote import (
    ProofOfWorkSolution,
    RateLimitInfo,
    TimeChallengeSubmission,
    VoteErrorResponse,
    VoteRequest,
    VoteSuccessResponse,
)
from services.anomaly import VotingAnomalyDetector
from services.behavior import BehaviorHistory, ReputationScorer, analyze_behavior
from services.captcha import CaptchaVerifier
from services.challenges import (
    ChallengeLedger,
    ProofOfWorkChallenge,
    ProofOfWorkIssuer,
    TimeChallenge,
    TimeChallengeIssuer,
    required_prefix,
    validate_honeypot,
    verify_proof_of_work,
)
from services.fingerprint import generate_fingerprint
from services.rate_limiter import RateLimiter
from services.state_store import StateStore, now_ms

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class Rejection(str, Enum):
    """Why a vote was not admitted."""

    VALIDATION_ERROR = "validation_error"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    VERIFICATION_REQUIRED = "verification_required"
    VERIFICATION_FAILED = "verification_failed"
    STORAGE_FAILURE = "storage_failure"


REJECTION_STATUS = {
    Rejection.VALIDATION_ERROR: 400,
    Rejection.RATE_LIMIT_EXCEEDED: 429,
    Rejection.VERIFICATION_REQUIRED: 403,
    Rejection.VERIFICATION_FAILED: 403,
    Rejection.STORAGE_FAILURE: 500,
}


class Escalation(BaseModel):
    """Remedy the client can apply before resubmitting."""

    require_captcha: bool = False
    require_proof_of_work: bool = False
    challenge: Optional[ProofOfWorkChallenge] = None


class VoteDecision(BaseModel):
    """Outcome of one pass through the pipeline."""

    admitted: bool = False
    liked: bool = False
    rejection: Optional[Rejection] = None
    reason: Optional[str] = None
    message: Optional[str] = None
    rate_limit_remaining: Optional[int] = None
    rate_limit_reset_at: Optional[int] = None
    retry_after: Optional[int] = None
    escalation: Optional[Escalation] = None
    # Honeypot: reported to the caller as a success, but nothing was stored
    deceptive: bool = False

    @property
    def status_code(self) -> int:
        if self.rejection is None:
            return 200
        return REJECTION_STATUS[self.rejection]

    def to_response(self) -> dict[str, Any]:
        """Wire body for this decision (camelCase, no null fields)."""
        if self.deceptive:
            return VoteSuccessResponse(liked=True).model_dump(by_alias=True, exclude_none=True)

        if self.rejection is None:
            rate_limit = None
            if self.rate_limit_remaining is not None and self.rate_limit_reset_at is not None:
                rate_limit = RateLimitInfo(remaining=self.rate_limit_remaining, reset_time=self.rate_limit_reset_at)
            return VoteSuccessResponse(liked=self.liked, rate_limit=rate_limit).model_dump(
                by_alias=True, exclude_none=True
            )

        body = VoteErrorResponse(
            error=self.message or "Request rejected",
            reason=self.reason or self.rejection.value,
            retry_after=self.retry_after,
        )
        if self.escalation:
            if self.escalation.require_captcha:
                body.require_captcha = True
            if self.escalation.require_proof_of_work:
                body.require_proof_of_work = True
            if self.escalation.challenge:
                body.challenge = self.escalation.challenge.challenge
                body.expected_prefix = self.escalation.challenge.expected_prefix
                body.challenge_expires_at = self.escalation.challenge.expires_at
        return body.model_dump(by_alias=True, exclude_none=True)


def reject(
    rejection: Rejection,
    reason: str,
    message: str,
    *,
    retry_after: Optional[int] = None,
    escalation: Optional[Escalation] = None,
) -> VoteDecision:
    return VoteDecision(
        rejection=rejection,
        reason=reason,
        message=message,
        retry_after=retry_after,
        escalation=escalation,
    )


@dataclass
class CallerContext:
    """Transport-level facts about the caller."""

    client_ip: str
    principal_id: Optional[str] = None  # verified identity, if any

    @property
    def authenticated(self) -> bool:
        return self.principal_id is not None


@dataclass
class _Verification:
    """Signals gathered on the way to the commit stage."""

    flagged: bool = False
    proof_of_work_completed: bool = False
    time_challenge_verified: bool = False
    captcha_verified: bool = False
    proof_of_work: Optional[ProofOfWorkSolution] = None
    proof_of_work_difficulty: int = 0
    time_challenge: Optional[TimeChallengeSubmission] = None


class VoteGuard:
    """Runs the admission pipeline for anonymous votes."""

    def __init__(
        self,
        settings: Settings,
        store: StateStore,
        likes: LikeRepositoryProtocol,
        captcha: CaptchaVerifier,
        clock: Callable[[], int] = now_ms,
    ):
        self.settings = settings
        self.store = store
        self.likes = likes
        self.captcha = captcha
        self._clock = clock

        self.rate_limiter = RateLimiter(store, clock=clock)
        self.ledger = ChallengeLedger(store)
        self.history = BehaviorHistory(
            store,
            max_entries=settings.BEHAVIOR_HISTORY_MAX_ENTRIES,
            ttl_seconds=settings.BEHAVIOR_HISTORY_TTL_SECONDS,
            clock=clock,
        )
        self.pow_issuer = ProofOfWorkIssuer(settings.SECRET_KEY, settings.POW_CHALLENGE_TTL_MS, clock=clock)
        self.time_issuer = TimeChallengeIssuer(
            settings.time_challenge_secret,
            ttl_ms=settings.TIME_CHALLENGE_TTL_MS,
            min_dwell_ms=settings.TIME_CHALLENGE_MIN_DWELL_MS,
            clock=clock,
        )
        self.anomaly = VotingAnomalyDetector(
            likes,
            window_minutes=settings.ANOMALY_WINDOW_MINUTES,
            burst_threshold=settings.ANOMALY_BURST_THRESHOLD,
            min_unique_ips=settings.ANOMALY_MIN_UNIQUE_IPS,
            sample_limit=settings.ANOMALY_SAMPLE_LIMIT,
            clock=self._utcnow,
        )
        self.reputation = ReputationScorer(self.history) if settings.REPUTATION_ENABLED else None

    def _utcnow(self) -> datetime:
        return datetime.fromtimestamp(self._clock() / 1000, tz=timezone.utc)

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self.settings.STORAGE_TIMEOUT_SECONDS)

    def issue_time_challenge(self) -> TimeChallenge:
        return self.time_issuer.generate()

    async def admit(self, payload: Any, caller: CallerContext) -> VoteDecision:
        """Run a raw vote payload through every stage."""
        try:
            return await self._run(payload, caller)
        except (StorageError, asyncio.TimeoutError) as e:
            logger.error("vote_storage_failure", error=str(e) or type(e).__name__, error_type=type(e).__name__)
            return reject(Rejection.STORAGE_FAILURE, "storage_failure", "Failed to process vote")

    async def _run(self, payload: Any, caller: CallerContext) -> VoteDecision:
        # 1. Validation
        try:
            request = VoteRequest.model_validate(payload)
        except ValidationError as e:
            logger.info("vote_rejected", reason="invalid_request", errors=e.error_count())
            return reject(Rejection.VALIDATION_ERROR, "invalid_request", "Missing required fields")

        session_id = caller.principal_id or request.session_id

        # 2. Honeypot
        if not validate_honeypot(request.honeypot):
            logger.warning("honeypot_triggered", session_id=session_id, post_id=request.post_id)
            return VoteDecision(deceptive=True, liked=True, reason="honeypot")

        ip_hash = hash_ip(caller.client_ip, self.settings.ip_hash_salt)

        # 3-4. Rate limits
        ip_limit = await self._bounded(
            self.rate_limiter.check_rate_limit(
                f"ip:{ip_hash}",
                self.settings.IP_RATE_LIMIT_MAX,
                self.settings.IP_RATE_LIMIT_WINDOW_MS,
            )
        )
        if not ip_limit.allowed:
            logger.info("vote_rejected", reason="ip_rate_limited", ip_hash=ip_hash[:8])
            return reject(
                Rejection.RATE_LIMIT_EXCEEDED,
                "ip_rate_limited",
                "Too many requests from this IP",
                retry_after=ip_limit.reset_time,
            )

        session_limit = await self._bounded(
            self.rate_limiter.check_rate_limit(
                f"session:{session_id}",
                self.settings.SESSION_RATE_LIMIT_MAX,
                self.settings.SESSION_RATE_LIMIT_WINDOW_MS,
            )
        )
        if not session_limit.allowed:
            logger.info("vote_rejected", reason="session_rate_limited", session_id=session_id)
            return reject(
                Rejection.RATE_LIMIT_EXCEEDED,
                "session_rate_limited",
                "Too many requests",
                retry_after=session_limit.reset_time,
            )

        # 5. Fingerprint reuse
        fingerprint_hash = generate_fingerprint(request.fingerprint, self.settings.fingerprint_salt)
        decision = await self._check_fingerprint(request, session_id, fingerprint_hash)
        if decision:
            return decision

        verification = _Verification()

        # 6. Behavior
        decision = await self._check_behavior(request, session_id, verification)
        if decision:
            return decision

        # 7. Time challenge
        if request.time_challenge is not None:
            if not self._verify_time_challenge(request.time_challenge, request.timestamp):
                logger.info("vote_rejected", reason="time_challenge_failed", session_id=session_id)
                return reject(Rejection.VERIFICATION_FAILED, "time_challenge_failed", "Invalid request timing")
            verification.time_challenge_verified = True
            verification.time_challenge = request.time_challenge

        # 8. CAPTCHA
        if request.captcha_token:
            if not await self.captcha.verify(request.captcha_token, caller.client_ip):
                logger.info("vote_rejected", reason="captcha_failed", session_id=session_id)
                return reject(Rejection.VERIFICATION_FAILED, "captcha_failed", "CAPTCHA verification failed")
            verification.captcha_verified = True

        # 9. Post-level anomaly
        if not verification.captcha_verified:
            report = await self._bounded(self.anomaly.detect(request.post_id))
            if report.suspicious:
                logger.warning(
                    "vote_anomaly_detected",
                    post_id=request.post_id,
                    votes=report.vote_count,
                    unique_ips=report.unique_ips,
                )
                return reject(
                    Rejection.VERIFICATION_REQUIRED,
                    "vote_anomaly",
                    report.reason or "Unusual voting pattern detected",
                    escalation=Escalation(require_captcha=True),
                )

        # Challenges are single use, spent only once every check has passed
        decision = await self._redeem_challenges(session_id, verification)
        if decision:
            return decision

        # 10. Commit
        metadata = {
            "timestamp": self._utcnow().isoformat(),
            "clientIp": partial_ip(caller.client_ip),
            "captchaVerified": verification.captcha_verified,
            "proofOfWorkCompleted": verification.proof_of_work_completed,
            "timeChallengeVerified": verification.time_challenge_verified,
            "authenticated": caller.authenticated,
        }
        liked = await self._bounded(
            self.likes.toggle_like(
                post_id=request.post_id,
                session_id=session_id,
                ip_hash=ip_hash,
                fingerprint_hash=fingerprint_hash,
                user_agent=request.fingerprint.user_agent,
                metadata=metadata,
            )
        )
        logger.info(
            "vote_audit",
            post_id=request.post_id,
            liked=liked,
            ip_hash=ip_hash[:8],
            fingerprint=fingerprint_hash[:8],
            **metadata,
        )

        # 11. History
        await self._record_history(session_id, request.post_id, verification.flagged)

        # 12. Respond with the tighter of the two limits
        return VoteDecision(
            admitted=True,
            liked=liked,
            rate_limit_remaining=min(ip_limit.remaining, session_limit.remaining),
            rate_limit_reset_at=max(ip_limit.reset_time, session_limit.reset_time),
        )

    async def _check_fingerprint(
        self, request: VoteRequest, session_id: str, fingerprint_hash: str
    ) -> Optional[VoteDecision]:
        if request.captcha_token:
            return None

        since = self._utcnow() - timedelta(minutes=self.settings.FINGERPRINT_WINDOW_MINUTES)
        sessions = await self._bounded(self.likes.recent_fingerprint_sessions(fingerprint_hash, since))
        if len(sessions) > self.settings.FINGERPRINT_MAX_SESSIONS:
            logger.warning(
                "fingerprint_reuse_detected",
                fingerprint=fingerprint_hash[:8],
                sessions=len(sessions),
            )
            return reject(
                Rejection.VERIFICATION_REQUIRED,
                "fingerprint_reuse",
                "Additional verification required",
                escalation=Escalation(require_captcha=True),
            )

        if self.reputation is not None:
            score = await self._bounded(self.reputation.score(session_id))
            if score < self.settings.REPUTATION_CAPTCHA_THRESHOLD:
                logger.info("low_reputation_session", session_id=session_id, score=score)
                return reject(
                    Rejection.VERIFICATION_REQUIRED,
                    "low_reputation",
                    "Additional verification required",
                    escalation=Escalation(require_captcha=True),
                )

        return None

    async def _check_behavior(
        self, request: VoteRequest, session_id: str, verification: _Verification
    ) -> Optional[VoteDecision]:
        if not request.action_log:
            return None

        actions = request.action_log[-self.settings.ACTION_LOG_MAX_EVENTS :]
        analysis = analyze_behavior(actions, self.settings.BEHAVIOR_BOT_THRESHOLD)
        if not analysis.is_bot:
            return None

        verification.flagged = True
        difficulty = (
            self.settings.POW_DIFFICULTY_HIGH
            if analysis.confidence >= self.settings.POW_HIGH_CONFIDENCE
            else self.settings.POW_DIFFICULTY
        )
        logger.warning(
            "bot_behavior_detected",
            session_id=session_id,
            confidence=analysis.confidence,
            reasons=analysis.reasons,
        )

        if request.proof_of_work is not None and self._verify_proof_of_work(request.proof_of_work, difficulty):
            verification.proof_of_work_completed = True
            verification.proof_of_work = request.proof_of_work
            verification.proof_of_work_difficulty = difficulty
            return None

        return self._proof_of_work_escalation(difficulty, invalid=request.proof_of_work is not None)

    def _proof_of_work_escalation(self, difficulty: int, invalid: bool) -> VoteDecision:
        challenge = self.pow_issuer.generate(difficulty)
        return reject(
            Rejection.VERIFICATION_REQUIRED,
            "proof_of_work_invalid" if invalid else "proof_of_work_required",
            "Please complete verification",
            escalation=Escalation(require_proof_of_work=True, challenge=challenge),
        )

    def _verify_proof_of_work(self, submission: ProofOfWorkSolution, difficulty: int) -> bool:
        signed_difficulty = self.pow_issuer.authenticate(submission.challenge)
        if signed_difficulty is None or signed_difficulty < difficulty:
            return False
        return verify_proof_of_work(submission.challenge, submission.solution, required_prefix(signed_difficulty))

    def _verify_time_challenge(self, submission: TimeChallengeSubmission, submitted_at: Optional[int]) -> bool:
        return self.time_issuer.verify(
            submission.token,
            submission.issued_at,
            submission.expires_at,
            submitted_at if submitted_at is not None else self._clock(),
        )

    async def _redeem_challenges(self, session_id: str, verification: _Verification) -> Optional[VoteDecision]:
        """Spend the verified challenges; a second redemption is a replay."""
        if verification.proof_of_work is not None:
            challenge = verification.proof_of_work.challenge
            if not await self._bounded(self.ledger.consume("pow", challenge, self.pow_issuer.ttl_ms)):
                logger.warning("pow_challenge_replayed", session_id=session_id)
                return self._proof_of_work_escalation(verification.proof_of_work_difficulty, invalid=True)

        if verification.time_challenge is not None:
            token = verification.time_challenge.token
            ttl_ms = verification.time_challenge.expires_at - self._clock()
            if not await self._bounded(self.ledger.consume("time", token, ttl_ms)):
                logger.warning("time_challenge_replayed", session_id=session_id)
                return reject(Rejection.VERIFICATION_FAILED, "time_challenge_failed", "Invalid request timing")

        return None

    async def _record_history(self, session_id: str, post_id: str, flagged: bool) -> None:
        try:
            await self._bounded(self.history.record(session_id, post_id, success=True, flagged=flagged))
        except (StorageError, asyncio.TimeoutError) as e:
            logger.warning("behavior_history_write_failed", session_id=session_id, error=str(e))
