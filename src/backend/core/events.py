"""
Application lifecycle event handlers.

Builds the shared state store, the like repository, the CAPTCHA HTTP client
and the VoteGuard on startup, and releases them on shutdown.
"""

from typing import Callable

import httpx
import structlog
from fastapi import FastAPI

from core.config import settings
from db.session import close_db
from repositories.provider import create_like_repository
from services.captcha import CaptchaVerifier
from services.state_store import create_state_store
from services.vote_guard import VoteGuard

logger = structlog.get_logger(__name__)


def create_start_app_handler(app: FastAPI) -> Callable:
    """Create startup event handler."""

    async def start_app() -> None:
        logger.info("Starting VibeGuard API...")

        store = create_state_store(settings.REDIS_URL)
        likes = await create_like_repository(settings)

        captcha_client = httpx.AsyncClient(timeout=settings.CAPTCHA_TIMEOUT_SECONDS)
        captcha = CaptchaVerifier.from_settings(settings, client=captcha_client)
        if not captcha.is_configured:
            logger.warning("captcha_not_configured", fail_open=settings.CAPTCHA_FAIL_OPEN)

        app.state.state_store = store
        app.state.like_repository = likes
        app.state.captcha_client = captcha_client
        app.state.vote_guard = VoteGuard(settings, store, likes, captcha)

        logger.info("VibeGuard API started successfully")

    return start_app


def create_stop_app_handler(app: FastAPI) -> Callable:
    """Create shutdown event handler."""

    async def stop_app() -> None:
        logger.info("Shutting down VibeGuard API...")

        captcha_client = getattr(app.state, "captcha_client", None)
        if captcha_client is not None:
            await captcha_client.aclose()

        store = getattr(app.state, "state_store", None)
        if store is not None:
            try:
                await store.close()
            except Exception as e:
                logger.warning("state_store_close_failed", error=str(e))

        await close_db()

        logger.info("VibeGuard API shutdown complete")

    return stop_app
