"""
Async client for the vote endpoint.

Mirrors what the browser does around a like click: keeps the action log,
sends the fingerprint and an empty honeypot, holds a time challenge from
page start, and answers proof-of-work and CAPTCHA escalations by
resubmitting once.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog

from client.fingerprint import new_session_id
from services.behavior import ActionLog
from services.challenges import solve_proof_of_work
from services.fingerprint import DeviceFingerprint
from services.state_store import now_ms

logger = structlog.get_logger(__name__)

# Clicks sooner than this after start are refused locally
MIN_INTERACTION_DELAY_MS = 1000
# Actions sent with each vote
ACTIONS_PER_VOTE = 20

CaptchaProvider = Callable[[], Awaitable[str]]


class VoteRefused(Exception):
    """The client declined to send the vote."""

    def __init__(self, message: str, retry_after: Optional[int] = None):
        self.message = message
        self.retry_after = retry_after
        super().__init__(message)


class VoteRejected(Exception):
    """The server rejected the vote."""

    def __init__(self, status_code: int, body: dict[str, Any]):
        self.status_code = status_code
        self.body = body
        self.error = body.get("error", "Failed to vote")
        self.reason = body.get("reason")
        self.retry_after = body.get("retryAfter")
        super().__init__(f"{status_code}: {self.error}")


@dataclass
class RateLimitState:
    remaining: int
    reset_time: int


@dataclass
class VoteResult:
    liked: bool
    rate_limit: Optional[RateLimitState] = None


class SecureVoteClient:
    """
    Casts votes for one anonymous (or token-identified) session.

    Args:
        base_url: Service root, e.g. "https://api.example.com"
        fingerprint: Device attributes sent with each vote
        session_id: Anonymous session id; generated when omitted
        captcha_provider: Coroutine returning a CAPTCHA token, called when the
            server asks for one
        auth_token: Optional identity JWT, sent as a Bearer token
        http_client: Shared httpx client; one is created when omitted
    """

    def __init__(
        self,
        base_url: str,
        fingerprint: DeviceFingerprint,
        session_id: Optional[str] = None,
        *,
        captcha_provider: Optional[CaptchaProvider] = None,
        auth_token: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        max_pow_attempts: Optional[int] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.base_url = base_url.rstrip("/")
        self.fingerprint = fingerprint
        self.session_id = session_id or new_session_id()
        self.captcha_provider = captcha_provider
        self.auth_token = auth_token
        self.max_pow_attempts = max_pow_attempts
        self._clock = clock
        self._http_client = http_client
        self._owns_client = http_client is None
        self.timeout = timeout

        self.started_at = clock()
        self.actions = ActionLog(clock=clock)
        self.rate_limit: Optional[RateLimitState] = None
        self._time_challenge: Optional[dict[str, Any]] = None

    async def __aenter__(self) -> "SecureVoteClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    def record_action(self, action: str) -> None:
        """Log a user interaction (mouse_move, scroll, key_press, ...)."""
        self.actions.record(action)

    async def prepare(self) -> None:
        """Fetch a time challenge; call when the page loads."""
        response = await self._client().get(f"{self.base_url}/api/v1/vote/challenge", headers=self._headers())
        response.raise_for_status()
        self._time_challenge = response.json()

    async def vote(self, post_id: str) -> VoteResult:
        """
        Toggle a like on post_id.

        Raises:
            VoteRefused: refused locally (too early, or rate limited)
            VoteRejected: refused by the server after any retries
        """
        self.actions.record("click_like")
        now = self._clock()

        if now - self.started_at < MIN_INTERACTION_DELAY_MS:
            raise VoteRefused("Please wait a moment before voting")

        if self.rate_limit and self.rate_limit.remaining == 0 and self.rate_limit.reset_time > now:
            wait_seconds = -(-(self.rate_limit.reset_time - now) // 1000)
            raise VoteRefused(
                f"Please wait {wait_seconds} seconds before voting again",
                retry_after=self.rate_limit.reset_time,
            )

        body: dict[str, Any] = {
            "postId": post_id,
            "sessionId": self.session_id,
            "fingerprint": self.fingerprint.model_dump(by_alias=True, exclude_none=True),
            "honeypot": "",
            "timestamp": now,
            "actionLog": [a.model_dump() for a in self.actions.snapshot(last=ACTIONS_PER_VOTE)],
        }
        # Time challenges are single use
        if self._time_challenge is not None:
            body["timeChallenge"] = self._time_challenge
            self._time_challenge = None

        escalations_answered: set[str] = set()
        while True:
            status_code, data = await self._submit(body)
            if status_code == 200:
                return self._accept(data)

            body.pop("timeChallenge", None)
            if data.get("requireProofOfWork") and data.get("challenge") and "pow" not in escalations_answered:
                escalations_answered.add("pow")
                body["proofOfWork"] = await self._solve(data["challenge"], data.get("expectedPrefix", ""))
                continue

            if data.get("requireCaptcha") and self.captcha_provider and "captcha" not in escalations_answered:
                escalations_answered.add("captcha")
                body["captchaToken"] = await self.captcha_provider()
                continue

            if status_code == 429 and data.get("retryAfter"):
                self.rate_limit = RateLimitState(remaining=0, reset_time=int(data["retryAfter"]))

            logger.info("vote_rejected", post_id=post_id, status_code=status_code, reason=data.get("reason"))
            raise VoteRejected(status_code, data)

    async def _submit(self, body: dict[str, Any]) -> tuple[int, dict[str, Any]]:
        response = await self._client().post(f"{self.base_url}/api/v1/vote", json=body, headers=self._headers())
        try:
            data = response.json()
        except ValueError:
            data = {"error": response.text or "Failed to vote"}
        return response.status_code, data if isinstance(data, dict) else {"error": "Failed to vote"}

    async def _solve(self, challenge: str, expected_prefix: str) -> dict[str, str]:
        # Expected work is 16 ** len(prefix) hashes
        attempts = self.max_pow_attempts or 8 * 16 ** len(expected_prefix)
        logger.debug("solving_proof_of_work", prefix_length=len(expected_prefix), max_attempts=attempts)
        solution = await asyncio.to_thread(solve_proof_of_work, challenge, expected_prefix, attempts)
        return {"challenge": challenge, "solution": solution, "expectedPrefix": expected_prefix}

    def _accept(self, data: dict[str, Any]) -> VoteResult:
        rate_limit = data.get("rateLimit")
        if rate_limit:
            self.rate_limit = RateLimitState(remaining=rate_limit["remaining"], reset_time=rate_limit["resetTime"])
        return VoteResult(liked=bool(data.get("liked")), rate_limit=self.rate_limit if rate_limit else None)
