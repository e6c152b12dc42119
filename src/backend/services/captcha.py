"""
CAPTCHA verification against an hCaptcha-compatible siteverify endpoint.

Verification fails closed: transport errors, timeouts, non-200 responses and
malformed bodies all count as a failed CAPTCHA. Without a configured secret
the result is the explicit CAPTCHA_FAIL_OPEN flag, which settings refuse to
enable in production.
"""

from typing import Optional

import httpx
import structlog

from core.config import Settings

logger = structlog.get_logger(__name__)


class CaptchaVerifier:
    """Server-to-server CAPTCHA token verification."""

    def __init__(
        self,
        secret: Optional[str],
        verify_url: str,
        timeout: float = 5.0,
        fail_open: bool = False,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._secret = secret
        self.verify_url = verify_url
        self.timeout = timeout
        self.fail_open = fail_open
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings, client: Optional[httpx.AsyncClient] = None) -> "CaptchaVerifier":
        return cls(
            secret=settings.CAPTCHA_SECRET,
            verify_url=settings.CAPTCHA_VERIFY_URL,
            timeout=settings.CAPTCHA_TIMEOUT_SECONDS,
            fail_open=settings.CAPTCHA_FAIL_OPEN,
            client=client,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._secret)

    async def verify(self, token: str, remote_ip: Optional[str] = None) -> bool:
        """
        Verify a CAPTCHA token with the provider.

        Returns:
            True only when the provider positively confirms the token
        """
        if not self._secret:
            logger.warning("captcha_secret_not_configured", fail_open=self.fail_open)
            return self.fail_open

        if not token:
            return False

        data = {"secret": self._secret, "response": token}
        if remote_ip:
            data["remoteip"] = remote_ip

        try:
            if self._client is not None:
                response = await self._client.post(self.verify_url, data=data, timeout=self.timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(self.verify_url, data=data, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.error("captcha_verification_error", error=str(e), error_type=type(e).__name__)
            return False

        if response.status_code != 200:
            logger.warning("captcha_provider_rejected", status_code=response.status_code)
            return False

        try:
            result = response.json()
        except ValueError:
            logger.warning("captcha_provider_malformed_response")
            return False

        success = isinstance(result, dict) and result.get("success") is True
        if not success:
            logger.info("captcha_failed", error_codes=result.get("error-codes") if isinstance(result, dict) else None)
        return success
