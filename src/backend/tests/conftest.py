"""
Pytest fixtures for VibeGuard backend tests.
"""

import os
from collections.abc import AsyncGenerator, Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

# Set test environment variables before importing app
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "false")
# Keep proof-of-work cheap in tests
os.environ.setdefault("POW_DIFFICULTY", "2")
os.environ.setdefault("POW_DIFFICULTY_HIGH", "3")
# In-memory storage only
os.environ["DATABASE_URL"] = ""
os.environ["REDIS_URL"] = ""
os.environ["CAPTCHA_SECRET"] = ""

from core.config import Settings  # noqa: E402
from repositories.memory_like_repository import InMemoryLikeRepository  # noqa: E402
from services.captcha import CaptchaVerifier  # noqa: E402
from services.state_store import InMemoryStateStore, now_ms  # noqa: E402
from services.vote_guard import VoteGuard  # noqa: E402


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int | None = None):
        self.now = start if start is not None else now_ms()

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Use asyncio backend for async tests."""
    return "asyncio"


@pytest.fixture
def test_settings() -> Settings:
    """Settings with production-like thresholds and cheap proof of work."""
    return Settings(
        SECRET_KEY="test-secret-key-for-testing",
        APP_ENV="test",
        DATABASE_URL=None,
        REDIS_URL=None,
        CAPTCHA_SECRET="captcha-secret",
        POW_DIFFICULTY=2,
        POW_DIFFICULTY_HIGH=3,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def state_store(clock: FakeClock) -> InMemoryStateStore:
    return InMemoryStateStore(clock=clock)


@pytest.fixture
def like_repository() -> InMemoryLikeRepository:
    return InMemoryLikeRepository()


@pytest.fixture
def mock_captcha() -> MagicMock:
    """CAPTCHA verifier that accepts only the token "valid-captcha"."""
    verifier = MagicMock(spec=CaptchaVerifier)
    verifier.verify = AsyncMock(side_effect=lambda token, remote_ip=None: token == "valid-captcha")
    verifier.is_configured = True
    return verifier


@pytest.fixture
def vote_guard(
    test_settings: Settings,
    state_store: InMemoryStateStore,
    like_repository: InMemoryLikeRepository,
    mock_captcha: MagicMock,
    clock: FakeClock,
) -> VoteGuard:
    return VoteGuard(test_settings, state_store, like_repository, mock_captcha, clock=clock)


@pytest.fixture
def fingerprint_data() -> dict[str, Any]:
    """Browser fingerprint as sent by the web client."""
    return {
        "userAgent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
        "screenResolution": "1920x1080",
        "timezone": "Europe/Berlin",
        "language": "de-DE",
        "platform": "Win32",
        "hardwareConcurrency": 8,
        "deviceMemory": 8,
        "colorDepth": 24,
        "pixelRatio": 1,
        "touchSupport": False,
        "canvas": "data:image/png;base64,iVBORw0KGgo",
        "webgl": "Google Inc. (NVIDIA)ANGLE (NVIDIA GeForce GTX 1080)",
    }


@pytest.fixture
def vote_payload(fingerprint_data: dict[str, Any]) -> Callable[..., dict[str, Any]]:
    """Factory for vote request bodies."""

    def _make(post_id: str = "post-123", session_id: str = "anon_1_abc", **extra: Any) -> dict[str, Any]:
        payload = {
            "postId": post_id,
            "sessionId": session_id,
            "fingerprint": dict(fingerprint_data),
            "honeypot": "",
        }
        payload.update(extra)
        return payload

    return _make


@pytest.fixture
async def app() -> AsyncGenerator[Any, None]:
    """FastAPI application with startup/shutdown handlers run around each test."""
    from core.events import create_start_app_handler, create_stop_app_handler
    from main import app as fastapi_app

    await create_start_app_handler(fastapi_app)()
    yield fastapi_app
    await create_stop_app_handler(fastapi_app)()


@pytest.fixture
async def client(app: Any) -> AsyncGenerator[AsyncClient, None]:
    """Create async test client."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"Origin": "http://localhost:3000"},
    ) as ac:
        yield ac


@pytest.fixture
def mock_session() -> AsyncMock:
    """Create mock database session."""
    session = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.execute = AsyncMock()
    return session
